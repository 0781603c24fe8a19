from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Tuple

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from stockdb.apps.inventory import services as inventory_services
from stockdb.apps.inventory.models import LedgerEntryTypeEnum, StockItem
from stockdb.errors import NotFoundError, StockError

from . import models
from .adapters import ExternalSourceRecord

logger = logging.getLogger(__name__)

ACTION_CREATED = "created"
ACTION_UPDATED = "updated"
ACTION_SKIPPED = "skipped"


@dataclass
class RecordOutcome:
    external_sku: str
    item_id: int
    action: str
    before: int
    after: int
    delta: int
    entry_id: Optional[int] = None

    @property
    def entry_written(self) -> bool:
        return self.entry_id is not None


@dataclass
class ReconcileSummary:
    created: int = 0
    updated: int = 0
    skipped: int = 0
    failed: int = 0
    entries_written: int = 0
    failures: List[Dict[str, object]] = field(default_factory=list)

    def add(self, outcome: RecordOutcome) -> None:
        if outcome.action == ACTION_CREATED:
            self.created += 1
        elif outcome.action == ACTION_SKIPPED:
            self.skipped += 1
        else:
            self.updated += 1
        if outcome.entry_written:
            self.entries_written += 1

    def fail(self, external_sku: Optional[str], exc: BaseException) -> None:
        code, message = describe_failure(exc)
        self.failed += 1
        self.failures.append({"external_sku": external_sku, "code": code, "message": message})


def describe_failure(exc: BaseException) -> Tuple[str, str]:
    """Failure code and message recorded for a record that could not be applied."""
    if isinstance(exc, StockError):
        return exc.code, exc.message
    if isinstance(exc, IntegrityError):
        return "INTEGRITY_ERROR", str(exc.orig)
    if isinstance(exc, SQLAlchemyError):
        return "DATABASE_ERROR", type(exc).__name__
    return "INTERNAL_ERROR", str(exc) or type(exc).__name__


def _entry_types(source: models.ExternalSource):
    try:
        entry_type = LedgerEntryTypeEnum(source.entry_type or LedgerEntryTypeEnum.SYNC.value)
    except ValueError:
        entry_type = LedgerEntryTypeEnum.SYNC
    # A restock feed that lowers stock is recorded as a correction, not a negative restock.
    decrease = LedgerEntryTypeEnum.ADJUSTMENT if entry_type == LedgerEntryTypeEnum.RESTOCK else None
    return entry_type, decrease


def _find_link(db: Session, source_id: str, external_sku: str) -> Optional[models.SourceItemLink]:
    return (
        db.query(models.SourceItemLink)
        .filter(
            models.SourceItemLink.source_id == source_id,
            models.SourceItemLink.external_sku == external_sku,
        )
        .first()
    )


def _record_link(
    db: Session,
    source: models.ExternalSource,
    record: ExternalSourceRecord,
    external_sku: str,
    item_id: int,
    link: Optional[models.SourceItemLink],
) -> None:
    if link is None:
        link = models.SourceItemLink(source_id=source.id, external_sku=external_sku, item_id=item_id)
        try:
            with db.begin_nested():
                db.add(link)
                db.flush()
        except IntegrityError:
            link = _find_link(db, source.id, external_sku)
            if link is None:
                raise
    link.external_name = record.name
    link.external_price = record.price
    link.last_reported_quantity = record.quantity
    link.last_seen_at = record.fetched_at
    db.flush()


def reconcile_record(
    db: Session,
    source: models.ExternalSource,
    record: ExternalSourceRecord,
    run_id: Optional[str] = None,
    *,
    reference_type: str = "sync_run",
    note: Optional[str] = None,
    actor_id: Optional[str] = None,
) -> RecordOutcome:
    """
    Bring one item's quantity in line with what the source reports.

    The item is found through this source's SKU link, then by our own SKU.
    Unknown SKUs become zero-quantity placeholders when the source allows it,
    otherwise NotFoundError. Name, category and price of existing items are
    left alone; what the source says about them is kept on the link.
    The caller owns the transaction.
    """
    external_sku = inventory_services.normalize_sku(record.external_sku)
    link = _find_link(db, source.id, external_sku)
    item = None
    if link is not None:
        item = db.get(StockItem, link.item_id)
    if item is None:
        item = inventory_services.get_item_by_sku(db, external_sku)

    action = ACTION_UPDATED
    if item is None:
        if not source.create_missing_items:
            raise NotFoundError(
                f"No stock item matches SKU {external_sku}.",
                details={"external_sku": external_sku, "source_id": source.id},
            )
        item, created = inventory_services.ensure_placeholder_item(
            db,
            sku=external_sku,
            name=record.name,
            price=record.price,
        )
        if created:
            action = ACTION_CREATED
            logger.info(
                "placeholder item created from sync",
                extra={"item_id": item.id, "sku": external_sku, "source_id": source.id, "run_id": run_id},
            )

    entry_type, decrease_entry_type = _entry_types(source)
    result = inventory_services.set_absolute(
        db,
        item.id,
        record.quantity,
        entry_type=entry_type,
        decrease_entry_type=decrease_entry_type,
        reference_type=reference_type,
        reference_id=source.id,
        actor_id=actor_id,
        note=note or (f"Sync run {run_id}" if run_id else f"Sync from {source.source_key}"),
    )
    _record_link(db, source, record, external_sku, item.id, link)

    if result.skipped:
        action = ACTION_SKIPPED
    return RecordOutcome(
        external_sku=external_sku,
        item_id=item.id,
        action=action,
        before=result.before,
        after=result.after,
        delta=result.delta,
        entry_id=result.entry_id,
    )


def reconcile_records(
    db: Session,
    source: models.ExternalSource,
    records: Iterable[ExternalSourceRecord],
    *,
    run_id: Optional[str] = None,
    reference_type: str = "sync_run",
    note: Optional[str] = None,
    actor_id: Optional[str] = None,
) -> ReconcileSummary:
    """Apply records one after another, each in its own savepoint."""
    summary = ReconcileSummary()
    for record in records:
        try:
            with db.begin_nested():
                outcome = reconcile_record(
                    db,
                    source,
                    record,
                    run_id,
                    reference_type=reference_type,
                    note=note,
                    actor_id=actor_id,
                )
        except StockError as exc:
            logger.warning(
                "record reconciliation failed",
                extra={"source_id": source.id, "external_sku": record.external_sku, "code": exc.code},
            )
            summary.fail(record.external_sku, exc)
            continue
        except Exception as exc:
            # The savepoint is already rolled back; the rest of the batch still applies.
            logger.exception(
                "record reconciliation crashed",
                extra={"source_id": source.id, "external_sku": record.external_sku},
            )
            summary.fail(record.external_sku, exc)
            continue
        summary.add(outcome)
    return summary
