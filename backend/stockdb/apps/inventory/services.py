from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from typing import Callable, Iterable, List, Optional, Sequence

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from stockdb.errors import (
    ConcurrencyConflict,
    InsufficientStockError,
    NotFoundError,
    StockError,
    ValidationError,
)

from . import ledger, models, schemas

logger = logging.getLogger(__name__)

TRACKING_DISABLED = "Inventory tracking disabled"

EntryType = models.LedgerEntryTypeEnum


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def normalize_sku(sku: str) -> str:
    return (sku or "").strip().upper()


@dataclass
class AdjustmentResult:
    item_id: int
    sku: Optional[str]
    before: int
    after: int
    delta: int
    entry_type: Optional[EntryType] = None
    entry_id: Optional[int] = None
    skipped: bool = False
    reason: Optional[str] = None


@dataclass
class StockLine:
    item_id: int
    quantity: int


@dataclass
class BatchLineResult:
    index: int
    item_id: int
    status: str
    before: Optional[int] = None
    after: Optional[int] = None
    delta: Optional[int] = None
    entry_id: Optional[int] = None
    error_code: Optional[str] = None
    error: Optional[str] = None


@dataclass
class BatchResult:
    ok: bool
    lines: List[BatchLineResult] = field(default_factory=list)

    @property
    def failed_lines(self) -> List[BatchLineResult]:
        return [line for line in self.lines if line.status == "failed"]


# ---------------------------------------------------------------------------
# ITEM LOOKUPS & MAINTENANCE
# ---------------------------------------------------------------------------


def get_item(db: Session, item_id: int) -> models.StockItem:
    item = db.query(models.StockItem).filter(models.StockItem.id == item_id).first()
    if not item:
        raise NotFoundError(f"Stock item {item_id} not found.", details={"item_id": item_id})
    return item


def get_item_by_sku(db: Session, sku: str) -> Optional[models.StockItem]:
    return db.query(models.StockItem).filter(models.StockItem.sku == normalize_sku(sku)).first()


def current_quantity(db: Session, item_id: int) -> int:
    return get_item(db, item_id).current_quantity


def create_item(
    db: Session,
    *,
    data: schemas.StockItemCreate,
    actor_id: Optional[str] = None,
    is_placeholder: bool = False,
) -> models.StockItem:
    sku = normalize_sku(data.sku)
    if not sku:
        raise ValidationError("sku is required.")
    if get_item_by_sku(db, sku):
        raise ValidationError(f"Stock item with SKU {sku} already exists.", details={"sku": sku})
    if data.parent_id is not None:
        get_item(db, data.parent_id)
    if data.opening_quantity < 0 and not data.allow_backorder:
        raise ValidationError("opening_quantity cannot be negative without backorder.")

    item = models.StockItem(
        sku=sku,
        name=data.name.strip(),
        category=data.category,
        price=data.price,
        parent_id=data.parent_id,
        track_inventory=data.track_inventory,
        allow_backorder=data.allow_backorder,
        low_stock_threshold=data.low_stock_threshold,
        current_quantity=0 if data.track_inventory else data.opening_quantity,
        ledger_sequence=0,
        is_active=True,
        is_placeholder=is_placeholder,
    )
    db.add(item)
    db.flush()

    if data.track_inventory and data.opening_quantity:
        _mutate(
            db,
            item_id=item.id,
            delta=data.opening_quantity,
            entry_type=EntryType.RESTOCK if data.opening_quantity > 0 else EntryType.ADJUSTMENT,
            reference_type="item",
            reference_id=str(item.id),
            actor_id=actor_id,
            note="Opening balance",
        )
    logger.info(
        "stock item created",
        extra={"item_id": item.id, "sku": sku, "placeholder": is_placeholder, "actor_id": actor_id},
    )
    return item


def ensure_placeholder_item(
    db: Session,
    *,
    sku: str,
    name: Optional[str],
    price: Optional[Decimal],
) -> tuple[models.StockItem, bool]:
    """
    Return the item for `sku`, creating a zero-quantity placeholder if needed.

    A concurrent creator of the same SKU loses on the unique constraint; the
    savepoint keeps the surrounding transaction usable and the existing row
    is returned instead.
    """
    sku = normalize_sku(sku)
    existing = get_item_by_sku(db, sku)
    if existing:
        return existing, False
    item = models.StockItem(
        sku=sku,
        name=(name or sku).strip()[:255] or sku,
        price=price,
        track_inventory=True,
        allow_backorder=False,
        current_quantity=0,
        ledger_sequence=0,
        is_active=True,
        is_placeholder=True,
    )
    try:
        with db.begin_nested():
            db.add(item)
            db.flush()
    except IntegrityError:
        existing = get_item_by_sku(db, sku)
        if not existing:
            raise
        return existing, False
    return item, True


def update_item_metadata(db: Session, *, item_id: int, data: schemas.StockItemUpdate) -> models.StockItem:
    item = get_item(db, item_id)
    changes = data.model_dump(exclude_unset=True)
    for key, value in changes.items():
        setattr(item, key, value)
    if changes:
        item.is_placeholder = False
    db.flush()
    return item


def deactivate_item(db: Session, *, item_id: int, actor_id: Optional[str] = None) -> models.StockItem:
    item = get_item(db, item_id)
    item.is_active = False
    db.flush()
    logger.info("stock item deactivated", extra={"item_id": item.id, "actor_id": actor_id})
    return item


# ---------------------------------------------------------------------------
# CORE MUTATION
# ---------------------------------------------------------------------------


def _lock_item(db: Session, item_id: int) -> models.StockItem:
    item = (
        db.query(models.StockItem)
        .filter(models.StockItem.id == item_id)
        .populate_existing()
        .with_for_update()
        .first()
    )
    if not item:
        raise NotFoundError(f"Stock item {item_id} not found.", details={"item_id": item_id})
    return item


def _mutate_once(
    db: Session,
    *,
    item_id: int,
    delta: Optional[int],
    target: Optional[int],
    entry_type: EntryType,
    decrease_entry_type: Optional[EntryType],
    reference_type: Optional[str],
    reference_id: Optional[str],
    actor_id: Optional[str],
    note: Optional[str],
) -> AdjustmentResult:
    item = _lock_item(db, item_id)
    before = item.current_quantity

    if not item.track_inventory:
        logger.info("stock tracking disabled, skipping", extra={"item_id": item.id, "sku": item.sku})
        return AdjustmentResult(
            item_id=item.id,
            sku=item.sku,
            before=before,
            after=before,
            delta=0,
            skipped=True,
            reason=TRACKING_DISABLED,
        )

    if target is not None:
        if target < 0 and not item.allow_backorder:
            raise ValidationError(
                "Target quantity cannot be negative for items without backorder.",
                details={"item_id": item.id, "target": target},
            )
        delta = target - before
        if delta == 0:
            return AdjustmentResult(item_id=item.id, sku=item.sku, before=before, after=before, delta=0)

    after = before + delta
    if abs(after) > models.MAX_QUANTITY:
        raise ValidationError(
            "Resulting quantity is out of range.",
            details={"item_id": item.id, "before": before, "delta": delta, "limit": models.MAX_QUANTITY},
        )
    if delta < 0 and after < 0 and not item.allow_backorder:
        raise InsufficientStockError(item_id=item.id, sku=item.sku, available=before, requested=-delta)

    kind = decrease_entry_type if (delta < 0 and decrease_entry_type) else entry_type
    previous_sequence = item.ledger_sequence
    sequence = previous_sequence + 1

    outcome = db.execute(
        update(models.StockItem)
        .where(
            models.StockItem.id == item.id,
            models.StockItem.current_quantity == before,
            models.StockItem.ledger_sequence == previous_sequence,
        )
        .values(current_quantity=after, ledger_sequence=sequence, updated_at=_utcnow())
        .execution_options(synchronize_session=False)
    )
    if outcome.rowcount != 1:
        raise ConcurrencyConflict(
            f"Stock item {item.id} changed while it was being adjusted.",
            details={"item_id": item.id, "expected_quantity": before, "expected_sequence": previous_sequence},
        )

    entry_id = ledger.append(
        db,
        models.StockLedgerEntry(
            item_id=item.id,
            sequence=sequence,
            delta_quantity=delta,
            quantity_before=before,
            quantity_after=after,
            entry_type=kind,
            reference_type=reference_type,
            reference_id=reference_id,
            actor_id=actor_id,
            note=note,
        ),
    )
    db.expire(item, ["current_quantity", "ledger_sequence", "updated_at"])

    logger.debug(
        "stock adjusted",
        extra={"item_id": item.id, "before": before, "after": after, "entry_type": kind.value},
    )
    return AdjustmentResult(
        item_id=item.id,
        sku=item.sku,
        before=before,
        after=after,
        delta=delta,
        entry_type=kind,
        entry_id=entry_id,
    )


def _mutate(
    db: Session,
    *,
    item_id: int,
    delta: Optional[int] = None,
    target: Optional[int] = None,
    entry_type: EntryType,
    decrease_entry_type: Optional[EntryType] = None,
    reference_type: Optional[str] = None,
    reference_id: Optional[str] = None,
    actor_id: Optional[str] = None,
    note: Optional[str] = None,
) -> AdjustmentResult:
    kwargs = dict(
        item_id=item_id,
        delta=delta,
        target=target,
        entry_type=EntryType(entry_type),
        decrease_entry_type=EntryType(decrease_entry_type) if decrease_entry_type else None,
        reference_type=reference_type,
        reference_id=reference_id,
        actor_id=actor_id,
        note=note,
    )
    try:
        return _mutate_once(db, **kwargs)
    except ConcurrencyConflict as exc:
        # Nothing was written before the guarded update failed.
        logger.warning("stock adjustment conflict, retrying once", extra=exc.details)
        return _mutate_once(db, **kwargs)


def _require_positive(quantity: int) -> None:
    if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity <= 0:
        raise ValidationError("quantity must be a positive integer.", details={"quantity": quantity})


def deduct(
    db: Session,
    item_id: int,
    quantity: int,
    *,
    entry_type: EntryType = EntryType.SALE,
    reference_type: Optional[str] = None,
    reference_id: Optional[str] = None,
    actor_id: Optional[str] = None,
    note: Optional[str] = None,
) -> AdjustmentResult:
    _require_positive(quantity)
    return _mutate(
        db,
        item_id=item_id,
        delta=-quantity,
        entry_type=entry_type,
        reference_type=reference_type,
        reference_id=reference_id,
        actor_id=actor_id,
        note=note,
    )


def add(
    db: Session,
    item_id: int,
    quantity: int,
    *,
    entry_type: EntryType = EntryType.RESTOCK,
    reference_type: Optional[str] = None,
    reference_id: Optional[str] = None,
    actor_id: Optional[str] = None,
    note: Optional[str] = None,
) -> AdjustmentResult:
    _require_positive(quantity)
    return _mutate(
        db,
        item_id=item_id,
        delta=quantity,
        entry_type=entry_type,
        reference_type=reference_type,
        reference_id=reference_id,
        actor_id=actor_id,
        note=note,
    )


def set_absolute(
    db: Session,
    item_id: int,
    target_quantity: int,
    *,
    entry_type: EntryType = EntryType.SYNC,
    decrease_entry_type: Optional[EntryType] = None,
    reference_type: Optional[str] = None,
    reference_id: Optional[str] = None,
    actor_id: Optional[str] = None,
    note: Optional[str] = None,
) -> AdjustmentResult:
    if isinstance(target_quantity, bool) or not isinstance(target_quantity, int):
        raise ValidationError("target_quantity must be an integer.", details={"target": target_quantity})
    return _mutate(
        db,
        item_id=item_id,
        target=target_quantity,
        entry_type=entry_type,
        decrease_entry_type=decrease_entry_type,
        reference_type=reference_type,
        reference_id=reference_id,
        actor_id=actor_id,
        note=note,
    )


def adjust(
    db: Session,
    item_id: int,
    quantity_change: int,
    *,
    actor_id: Optional[str],
    note: Optional[str] = None,
) -> AdjustmentResult:
    """Administrative signed correction, attributed to `actor_id`."""
    if not quantity_change:
        raise ValidationError("quantity_change must be non-zero.")
    common = dict(
        entry_type=EntryType.ADJUSTMENT,
        reference_type="manual",
        reference_id=actor_id,
        actor_id=actor_id,
        note=note or "Manual adjustment",
    )
    if quantity_change > 0:
        return add(db, item_id, quantity_change, **common)
    return deduct(db, item_id, -quantity_change, **common)


# ---------------------------------------------------------------------------
# BATCHES
# ---------------------------------------------------------------------------


def _lock_in_order(db: Session, item_ids: Iterable[int]) -> None:
    ids = sorted(set(item_ids))
    if not ids:
        return
    (
        db.query(models.StockItem)
        .filter(models.StockItem.id.in_(ids))
        .order_by(models.StockItem.id.asc())
        .populate_existing()
        .with_for_update()
        .all()
    )


def _run_batch(
    db: Session,
    items: Sequence,
    apply_line: Callable[[object], AdjustmentResult],
) -> BatchResult:
    results: List[BatchLineResult] = []
    failed = False
    savepoint = db.begin_nested()
    try:
        # Row locks are taken in id order so two batches never wait on each other in a cycle.
        _lock_in_order(db, [line.item_id for line in items])
        for index, line in enumerate(items):
            if failed:
                results.append(BatchLineResult(index=index, item_id=line.item_id, status="not_attempted"))
                continue
            try:
                outcome = apply_line(line)
            except StockError as exc:
                failed = True
                results.append(
                    BatchLineResult(
                        index=index,
                        item_id=line.item_id,
                        status="failed",
                        error_code=exc.code,
                        error=exc.message,
                    )
                )
                continue
            results.append(
                BatchLineResult(
                    index=index,
                    item_id=line.item_id,
                    status="skipped" if outcome.skipped else "applied",
                    before=outcome.before,
                    after=outcome.after,
                    delta=outcome.delta,
                    entry_id=outcome.entry_id,
                )
            )
    except Exception:
        savepoint.rollback()
        raise

    if failed:
        savepoint.rollback()
        for line_result in results:
            if line_result.status == "applied":
                line_result.status = "rolled_back"
                line_result.after = line_result.before
                line_result.entry_id = None
        logger.warning(
            "stock batch rolled back",
            extra={"failed_lines": [r.index for r in results if r.status == "failed"], "lines": len(results)},
        )
        return BatchResult(ok=False, lines=results)

    savepoint.commit()
    return BatchResult(ok=True, lines=results)


def deduct_for_order(
    db: Session,
    *,
    lines: Sequence[StockLine],
    order_id: str,
    actor_id: Optional[str] = None,
    note: str = "Order completion",
) -> BatchResult:
    result = _run_batch(
        db,
        lines,
        lambda line: deduct(
            db,
            line.item_id,
            line.quantity,
            entry_type=EntryType.SALE,
            reference_type="order",
            reference_id=str(order_id),
            actor_id=actor_id,
            note=note,
        ),
    )
    logger.info("order stock deducted", extra={"order_id": order_id, "ok": result.ok, "lines": len(lines)})
    return result


def restore_for_order(
    db: Session,
    *,
    lines: Sequence[StockLine],
    order_id: str,
    actor_id: Optional[str] = None,
    note: str = "Order cancellation",
) -> BatchResult:
    result = _run_batch(
        db,
        lines,
        lambda line: add(
            db,
            line.item_id,
            line.quantity,
            entry_type=EntryType.RETURN,
            reference_type="order",
            reference_id=str(order_id),
            actor_id=actor_id,
            note=note,
        ),
    )
    logger.info("order stock restored", extra={"order_id": order_id, "ok": result.ok, "lines": len(lines)})
    return result


def bulk_set_absolute(
    db: Session,
    *,
    updates: Sequence[StockLine],
    reference_id: Optional[str] = None,
    actor_id: Optional[str] = None,
    note: str = "Bulk import",
) -> BatchResult:
    """Set each line's item to `quantity` exactly; unchanged lines write nothing."""
    return _run_batch(
        db,
        updates,
        lambda line: set_absolute(
            db,
            line.item_id,
            line.quantity,
            entry_type=EntryType.RESTOCK,
            decrease_entry_type=EntryType.ADJUSTMENT,
            reference_type="import",
            reference_id=reference_id,
            actor_id=actor_id,
            note=note,
        ),
    )


# ---------------------------------------------------------------------------
# READ MODELS
# ---------------------------------------------------------------------------


def ledger_history(db: Session, *, item_id: int, limit: int = 50, offset: int = 0) -> ledger.LedgerPage:
    get_item(db, item_id)
    return ledger.history(db, item_id=item_id, limit=limit, offset=offset)


def verify_item_ledger(db: Session, *, item_id: int) -> ledger.ChainReport:
    return ledger.verify_chain(db, get_item(db, item_id))


def low_stock_report(db: Session, *, limit: int = 20) -> List[models.StockItem]:
    return (
        db.query(models.StockItem)
        .filter(
            models.StockItem.track_inventory.is_(True),
            models.StockItem.is_active.is_(True),
            models.StockItem.current_quantity <= models.StockItem.low_stock_threshold,
        )
        .order_by(models.StockItem.current_quantity.asc(), models.StockItem.id.asc())
        .limit(max(1, min(limit, ledger.MAX_PAGE_SIZE)))
        .all()
    )
