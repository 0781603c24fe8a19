"""
Append-only ledger store.

Entries are numbered per item (1, 2, 3 ...) with no gaps; the pair
(item_id, sequence) is unique, so two writers that both believe they are
appending entry N cannot both commit. Rows are never rewritten (see the
mapper listeners in models.py).
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import List, Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from stockdb.errors import ValidationError

from . import models

MAX_PAGE_SIZE = 200


@dataclass
class LedgerPage:
    item_id: int
    total: int
    limit: int
    offset: int
    entries: List[models.StockLedgerEntry]


@dataclass
class ChainReport:
    item_id: int
    current_quantity: int
    latest_quantity: Optional[int]
    entry_count: int
    problems: List[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.problems


def append(db: Session, entry: models.StockLedgerEntry) -> int:
    if entry.quantity_after != entry.quantity_before + entry.delta_quantity:
        raise ValidationError(
            "Ledger entry arithmetic does not add up.",
            details={
                "quantity_before": entry.quantity_before,
                "delta_quantity": entry.delta_quantity,
                "quantity_after": entry.quantity_after,
            },
        )
    db.add(entry)
    db.flush()
    return entry.id


def latest_entry(db: Session, item_id: int) -> Optional[models.StockLedgerEntry]:
    return (
        db.query(models.StockLedgerEntry)
        .filter(models.StockLedgerEntry.item_id == item_id)
        .order_by(models.StockLedgerEntry.sequence.desc())
        .first()
    )


def latest(db: Session, item_id: int) -> Optional[int]:
    entry = latest_entry(db, item_id)
    return entry.quantity_after if entry else None


def history(db: Session, *, item_id: int, limit: int = 50, offset: int = 0) -> LedgerPage:
    limit = max(1, min(limit, MAX_PAGE_SIZE))
    offset = max(0, offset)
    base = db.query(models.StockLedgerEntry).filter(models.StockLedgerEntry.item_id == item_id)
    total = base.with_entities(func.count(models.StockLedgerEntry.id)).scalar() or 0
    entries = (
        base.order_by(models.StockLedgerEntry.sequence.desc())
        .offset(offset)
        .limit(limit)
        .all()
    )
    return LedgerPage(item_id=item_id, total=total, limit=limit, offset=offset, entries=entries)


def verify_chain(db: Session, item: models.StockItem) -> ChainReport:
    """Walk an item's entries in order and report any break in the chain."""
    entries = (
        db.query(models.StockLedgerEntry)
        .filter(models.StockLedgerEntry.item_id == item.id)
        .order_by(models.StockLedgerEntry.sequence.asc())
        .all()
    )
    report = ChainReport(
        item_id=item.id,
        current_quantity=item.current_quantity,
        latest_quantity=entries[-1].quantity_after if entries else None,
        entry_count=len(entries),
    )

    previous_after = 0
    for expected_sequence, entry in enumerate(entries, start=1):
        if entry.sequence != expected_sequence:
            report.problems.append(f"sequence gap: expected {expected_sequence}, found {entry.sequence}")
        if entry.quantity_before != previous_after:
            report.problems.append(
                f"entry {entry.sequence} starts at {entry.quantity_before}, previous ended at {previous_after}"
            )
        if entry.quantity_after != entry.quantity_before + entry.delta_quantity:
            report.problems.append(f"entry {entry.sequence} arithmetic mismatch")
        previous_after = entry.quantity_after

    if item.ledger_sequence != len(entries):
        report.problems.append(f"item records {item.ledger_sequence} entries, ledger holds {len(entries)}")
    # Untracked items may carry a quantity that was never written to the ledger.
    if item.track_inventory and item.current_quantity != previous_after:
        report.problems.append(f"item quantity {item.current_quantity} drifted from ledger {previous_after}")
    return report
