from __future__ import annotations

import logging
from functools import lru_cache
from typing import List, Optional

from fastapi import APIRouter, BackgroundTasks, Depends, Header, Query, Request, status
from fastapi.concurrency import run_in_threadpool
from sqlalchemy.orm import Session

from stockdb.database import get_db, get_read_db, get_session_factory
from stockdb.errors import StockError
from stockdb.security import Actor, require_roles

from . import models, schemas, services
from .orchestrator import SyncOrchestrator, SyncSettings

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/sync", tags=["sync"])

SYNC_ADMIN_ROLES = ["SYNC_OPERATOR"]
SYNC_READ_ROLES = ["SYNC_OPERATOR", "STOCK_MANAGER", "VIEWER"]


@lru_cache(maxsize=1)
def get_orchestrator() -> SyncOrchestrator:
    """One orchestrator per process, so a cancel request reaches the run it names."""
    return SyncOrchestrator(get_session_factory(), SyncSettings.from_env())


def _execute_in_background(orchestrator: SyncOrchestrator, run_id: str, payload) -> None:
    try:
        orchestrator.execute_run(run_id, payload)
    except StockError as exc:
        logger.warning("background sync run did not start", extra={"run_id": run_id, "code": exc.code})
    except Exception:
        logger.exception("background sync run crashed", extra={"run_id": run_id})


@router.get("/sources", response_model=List[schemas.SourceRead])
def list_sources(
    active_only: bool = Query(False),
    db: Session = Depends(get_read_db),
    actor: Actor = Depends(require_roles(*SYNC_READ_ROLES)),
):
    return [services.source_view(source) for source in services.list_sources(db, active_only=active_only)]


@router.post(
    "/sources",
    response_model=schemas.SourceRead,
    status_code=status.HTTP_201_CREATED,
)
def create_source(
    payload: schemas.SourceCreate,
    db: Session = Depends(get_db),
    actor: Actor = Depends(require_roles(*SYNC_ADMIN_ROLES)),
):
    source = services.create_source(db, data=payload, actor_id=actor.id)
    db.commit()
    db.refresh(source)
    return services.source_view(source)


@router.get("/sources/{source_id}", response_model=schemas.SourceRead)
def get_source(
    source_id: str,
    db: Session = Depends(get_read_db),
    actor: Actor = Depends(require_roles(*SYNC_READ_ROLES)),
):
    return services.source_view(services.get_source(db, source_id))


@router.patch("/sources/{source_id}", response_model=schemas.SourceRead)
def update_source(
    source_id: str,
    payload: schemas.SourceUpdate,
    db: Session = Depends(get_db),
    actor: Actor = Depends(require_roles(*SYNC_ADMIN_ROLES)),
):
    source = services.update_source(db, source_id=source_id, data=payload, actor_id=actor.id)
    db.commit()
    db.refresh(source)
    return services.source_view(source)


@router.post(
    "/sources/{source_id}/runs",
    response_model=schemas.SyncRunRead,
    status_code=status.HTTP_202_ACCEPTED,
)
def trigger_run(
    source_id: str,
    background_tasks: BackgroundTasks,
    payload: Optional[schemas.RunCreateRequest] = None,
    wait: bool = Query(False),
    db: Session = Depends(get_read_db),
    orchestrator: SyncOrchestrator = Depends(get_orchestrator),
    actor: Actor = Depends(require_roles(*SYNC_ADMIN_ROLES)),
):
    body = payload.payload if payload else None
    trigger = models.SyncTrigger.UPLOAD if body is not None else models.SyncTrigger.MANUAL
    run_id = orchestrator.start_run(source_id, trigger=trigger, triggered_by=actor.id)
    if wait:
        return orchestrator.execute_run(run_id, body)
    background_tasks.add_task(_execute_in_background, orchestrator, run_id, body)
    return services.get_run(db, run_id)


@router.get("/sources/{source_id}/runs", response_model=schemas.SyncRunPage)
def list_runs(
    source_id: str,
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    db: Session = Depends(get_read_db),
    actor: Actor = Depends(require_roles(*SYNC_READ_ROLES)),
):
    total, runs = services.list_runs(db, source_id=source_id, limit=limit, offset=offset)
    return schemas.SyncRunPage(
        total=total,
        limit=limit,
        offset=offset,
        runs=[schemas.SyncRunRead.model_validate(run) for run in runs],
    )


@router.get("/runs/{run_id}", response_model=schemas.SyncRunRead)
def get_run(
    run_id: str,
    db: Session = Depends(get_read_db),
    actor: Actor = Depends(require_roles(*SYNC_READ_ROLES)),
):
    return services.get_run(db, run_id)


@router.post("/runs/{run_id}/cancel", response_model=schemas.RunCancelRead)
def cancel_run(
    run_id: str,
    orchestrator: SyncOrchestrator = Depends(get_orchestrator),
    actor: Actor = Depends(require_roles(*SYNC_ADMIN_ROLES)),
):
    return schemas.RunCancelRead(run_id=run_id, cancelled=orchestrator.cancel(run_id))


@router.post("/sources/{source_id}/test-connection", response_model=schemas.ConnectionTestRead)
def test_connection(
    source_id: str,
    orchestrator: SyncOrchestrator = Depends(get_orchestrator),
    actor: Actor = Depends(require_roles(*SYNC_ADMIN_ROLES)),
):
    return orchestrator.test_connection(source_id)


@router.post("/sources/{source_id}/push", response_model=schemas.PushResultRead)
def push_inventory(
    source_id: str,
    payload: Optional[schemas.PushRequest] = None,
    orchestrator: SyncOrchestrator = Depends(get_orchestrator),
    actor: Actor = Depends(require_roles(*SYNC_ADMIN_ROLES)),
):
    item_ids = payload.item_ids if payload else None
    return orchestrator.push_source(source_id, item_ids, triggered_by=actor.id)


@router.get("/sources/{source_id}/transactions", response_model=schemas.SourceTransactionPage)
def list_transactions(
    source_id: str,
    direction: Optional[models.TransactionDirection] = Query(None),
    status_filter: Optional[models.TransactionStatus] = Query(None, alias="status"),
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    db: Session = Depends(get_read_db),
    actor: Actor = Depends(require_roles(*SYNC_READ_ROLES)),
):
    total, rows = services.list_transactions(
        db,
        source_id=source_id,
        limit=limit,
        offset=offset,
        direction=direction,
        status=status_filter,
    )
    return schemas.SourceTransactionPage(
        total=total,
        limit=limit,
        offset=offset,
        transactions=[schemas.SourceTransactionRead.model_validate(row) for row in rows],
    )


@router.post("/webhooks/{source_key}", response_model=schemas.WebhookResultRead)
async def receive_webhook(
    source_key: str,
    request: Request,
    orchestrator: SyncOrchestrator = Depends(get_orchestrator),
    signature: Optional[str] = Header(None, alias="X-Signature"),
    idempotency_key: Optional[str] = Header(None, alias="Idempotency-Key"),
    event_type: Optional[str] = Header(None, alias="X-Event-Type"),
):
    raw_body = await request.body()
    return await run_in_threadpool(
        orchestrator.ingest_webhook,
        source_key,
        raw_body,
        signature,
        idempotency_key,
        event_type,
    )


@router.get("/alerts/stale", response_model=List[schemas.SyncAlertRead])
def stale_sources(
    orchestrator: SyncOrchestrator = Depends(get_orchestrator),
    actor: Actor = Depends(require_roles(*SYNC_READ_ROLES)),
):
    return orchestrator.stale_alerts(emit=False)
