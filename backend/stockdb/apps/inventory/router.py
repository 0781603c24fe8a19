from __future__ import annotations

from typing import List

from fastapi import APIRouter, Depends, Query, Response, status
from sqlalchemy.orm import Session

from stockdb.database import get_db, get_read_db
from stockdb.security import Actor, require_roles

from . import schemas, services

router = APIRouter(prefix="/inventory", tags=["inventory"])

INVENTORY_READ_ROLES = ["STOCK_MANAGER", "ORDER_SERVICE", "SYNC_OPERATOR", "VIEWER"]
INVENTORY_WRITE_ROLES = ["STOCK_MANAGER"]
ORDER_ROLES = ["STOCK_MANAGER", "ORDER_SERVICE"]


def _batch_response(result: services.BatchResult, response: Response) -> services.BatchResult:
    if not result.ok:
        response.status_code = status.HTTP_409_CONFLICT
    return result


@router.post(
    "/items",
    response_model=schemas.StockItemRead,
    status_code=status.HTTP_201_CREATED,
)
def create_item(
    payload: schemas.StockItemCreate,
    db: Session = Depends(get_db),
    actor: Actor = Depends(require_roles(*INVENTORY_WRITE_ROLES)),
):
    item = services.create_item(db, data=payload, actor_id=actor.id)
    db.commit()
    db.refresh(item)
    return item


@router.get("/items/{item_id}", response_model=schemas.StockItemRead)
def get_item(
    item_id: int,
    db: Session = Depends(get_read_db),
    actor: Actor = Depends(require_roles(*INVENTORY_READ_ROLES)),
):
    return services.get_item(db, item_id)


@router.patch("/items/{item_id}", response_model=schemas.StockItemRead)
def update_item(
    item_id: int,
    payload: schemas.StockItemUpdate,
    db: Session = Depends(get_db),
    actor: Actor = Depends(require_roles(*INVENTORY_WRITE_ROLES)),
):
    item = services.update_item_metadata(db, item_id=item_id, data=payload)
    db.commit()
    db.refresh(item)
    return item


@router.post("/items/{item_id}/deactivate", response_model=schemas.StockItemRead)
def deactivate_item(
    item_id: int,
    db: Session = Depends(get_db),
    actor: Actor = Depends(require_roles(*INVENTORY_WRITE_ROLES)),
):
    item = services.deactivate_item(db, item_id=item_id, actor_id=actor.id)
    db.commit()
    db.refresh(item)
    return item


@router.post("/items/{item_id}/deduct", response_model=schemas.AdjustmentResultRead)
def deduct_stock(
    item_id: int,
    payload: schemas.StockQuantityRequest,
    db: Session = Depends(get_db),
    actor: Actor = Depends(require_roles(*ORDER_ROLES)),
):
    result = services.deduct(
        db,
        item_id,
        payload.quantity,
        entry_type=payload.entry_type or services.EntryType.SALE,
        reference_type=payload.reference_type,
        reference_id=payload.reference_id,
        actor_id=actor.id,
        note=payload.note,
    )
    db.commit()
    return result


@router.post("/items/{item_id}/add", response_model=schemas.AdjustmentResultRead)
def add_stock(
    item_id: int,
    payload: schemas.StockQuantityRequest,
    db: Session = Depends(get_db),
    actor: Actor = Depends(require_roles(*ORDER_ROLES)),
):
    result = services.add(
        db,
        item_id,
        payload.quantity,
        entry_type=payload.entry_type or services.EntryType.RESTOCK,
        reference_type=payload.reference_type,
        reference_id=payload.reference_id,
        actor_id=actor.id,
        note=payload.note,
    )
    db.commit()
    return result


@router.post("/items/{item_id}/set", response_model=schemas.AdjustmentResultRead)
def set_stock(
    item_id: int,
    payload: schemas.StockSetRequest,
    db: Session = Depends(get_db),
    actor: Actor = Depends(require_roles(*INVENTORY_WRITE_ROLES)),
):
    result = services.set_absolute(
        db,
        item_id,
        payload.target_quantity,
        entry_type=payload.entry_type,
        reference_type=payload.reference_type or "manual",
        reference_id=payload.reference_id,
        actor_id=actor.id,
        note=payload.note,
    )
    db.commit()
    return result


@router.post("/items/{item_id}/adjust", response_model=schemas.AdjustmentResultRead)
def adjust_stock(
    item_id: int,
    payload: schemas.StockAdjustRequest,
    db: Session = Depends(get_db),
    actor: Actor = Depends(require_roles(*INVENTORY_WRITE_ROLES)),
):
    result = services.adjust(db, item_id, payload.quantity_change, actor_id=actor.id, note=payload.note)
    db.commit()
    return result


@router.post("/orders/{order_id}/fulfil", response_model=schemas.BatchResultRead)
def fulfil_order(
    order_id: str,
    payload: schemas.OrderLinesRequest,
    response: Response,
    db: Session = Depends(get_db),
    actor: Actor = Depends(require_roles(*ORDER_ROLES)),
):
    lines = [services.StockLine(item_id=line.item_id, quantity=line.quantity) for line in payload.lines]
    result = services.deduct_for_order(
        db,
        lines=lines,
        order_id=order_id,
        actor_id=actor.id,
        note=payload.note or "Order completion",
    )
    db.commit()
    return _batch_response(result, response)


@router.post("/orders/{order_id}/restore", response_model=schemas.BatchResultRead)
def restore_order(
    order_id: str,
    payload: schemas.OrderLinesRequest,
    response: Response,
    db: Session = Depends(get_db),
    actor: Actor = Depends(require_roles(*ORDER_ROLES)),
):
    lines = [services.StockLine(item_id=line.item_id, quantity=line.quantity) for line in payload.lines]
    result = services.restore_for_order(
        db,
        lines=lines,
        order_id=order_id,
        actor_id=actor.id,
        note=payload.note or "Order cancellation",
    )
    db.commit()
    return _batch_response(result, response)


@router.post("/bulk-import", response_model=schemas.BatchResultRead)
def bulk_import(
    payload: schemas.BulkImportRequest,
    response: Response,
    db: Session = Depends(get_db),
    actor: Actor = Depends(require_roles(*INVENTORY_WRITE_ROLES)),
):
    updates = [
        services.StockLine(item_id=line.item_id, quantity=line.target_quantity)
        for line in payload.updates
    ]
    result = services.bulk_set_absolute(
        db,
        updates=updates,
        reference_id=payload.reference_id,
        actor_id=actor.id,
        note=payload.note or "Bulk import",
    )
    db.commit()
    return _batch_response(result, response)


@router.get("/items/{item_id}/ledger", response_model=schemas.LedgerPageRead)
def item_ledger(
    item_id: int,
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    db: Session = Depends(get_read_db),
    actor: Actor = Depends(require_roles(*INVENTORY_READ_ROLES)),
):
    page = services.ledger_history(db, item_id=item_id, limit=limit, offset=offset)
    return schemas.LedgerPageRead.model_validate(page)


@router.get("/low-stock", response_model=List[schemas.LowStockItemRead])
def low_stock(
    limit: int = Query(20, ge=1, le=200),
    db: Session = Depends(get_read_db),
    actor: Actor = Depends(require_roles(*INVENTORY_READ_ROLES)),
):
    return services.low_stock_report(db, limit=limit)
