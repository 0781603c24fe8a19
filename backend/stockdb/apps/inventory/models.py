from __future__ import annotations

import enum
from datetime import datetime, timezone

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    Enum as SAEnum,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    event,
)
from sqlalchemy.orm import relationship

from stockdb.database import Base
from stockdb.errors import LedgerImmutableError


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class LedgerEntryTypeEnum(str, enum.Enum):
    SALE = "sale"
    RETURN = "return"
    ADJUSTMENT = "adjustment"
    RESTOCK = "restock"
    SYNC = "sync"


# Quantities live in 32-bit INTEGER columns.
MAX_QUANTITY = 2_147_483_647


class StockItem(Base):
    __tablename__ = "stock_items"
    __table_args__ = (
        UniqueConstraint("sku", name="uq_stock_items_sku"),
        Index("ix_stock_items_low_stock", "track_inventory", "is_active", "current_quantity"),
        CheckConstraint("ledger_sequence >= 0", name="ck_stock_items_ledger_sequence"),
    )

    id = Column(Integer, primary_key=True, index=True)
    sku = Column(String(64), nullable=False, index=True)
    name = Column(String(255), nullable=False)
    category = Column(String(128), nullable=True)
    price = Column(Numeric(12, 2), nullable=True)
    parent_id = Column(Integer, ForeignKey("stock_items.id", ondelete="SET NULL"), nullable=True, index=True)

    track_inventory = Column(Boolean, nullable=False, default=True)
    allow_backorder = Column(Boolean, nullable=False, default=False)
    current_quantity = Column(Integer, nullable=False, default=0)
    low_stock_threshold = Column(Integer, nullable=False, default=5)
    ledger_sequence = Column(Integer, nullable=False, default=0)

    is_active = Column(Boolean, nullable=False, default=True, index=True)
    is_placeholder = Column(Boolean, nullable=False, default=False)

    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow)

    parent = relationship("StockItem", remote_side=[id], lazy="select")

    @property
    def is_low_stock(self) -> bool:
        return bool(self.track_inventory) and self.current_quantity <= self.low_stock_threshold

    def __repr__(self) -> str:
        return f"<StockItem id={self.id} sku={self.sku} qty={self.current_quantity}>"


class StockLedgerEntry(Base):
    __tablename__ = "stock_ledger_entries"
    __table_args__ = (
        UniqueConstraint("item_id", "sequence", name="uq_stock_ledger_item_sequence"),
        Index("ix_stock_ledger_item_created", "item_id", "created_at"),
        Index("ix_stock_ledger_reference", "reference_type", "reference_id"),
        CheckConstraint(
            "quantity_after = quantity_before + delta_quantity",
            name="ck_stock_ledger_chain_arithmetic",
        ),
    )

    id = Column(Integer, primary_key=True, index=True)
    item_id = Column(Integer, ForeignKey("stock_items.id", ondelete="RESTRICT"), nullable=False, index=True)
    sequence = Column(Integer, nullable=False)

    delta_quantity = Column(Integer, nullable=False)
    quantity_before = Column(Integer, nullable=False)
    quantity_after = Column(Integer, nullable=False)
    entry_type = Column(
        SAEnum(
            LedgerEntryTypeEnum,
            name="stock_ledger_entry_type_enum",
            native_enum=False,
            values_callable=lambda enum_cls: [member.value for member in enum_cls],
        ),
        nullable=False,
        index=True,
    )

    reference_type = Column(String(64), nullable=True)
    reference_id = Column(String(64), nullable=True)
    actor_id = Column(String(64), nullable=True, index=True)
    note = Column(Text, nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)

    item = relationship("StockItem", lazy="joined")

    def __repr__(self) -> str:
        return (
            f"<StockLedgerEntry item={self.item_id} seq={self.sequence} "
            f"delta={self.delta_quantity} after={self.quantity_after}>"
        )


@event.listens_for(StockLedgerEntry, "before_update")
def _block_ledger_update(mapper, connection, target):  # noqa: ARG001
    raise LedgerImmutableError(
        "Ledger entries are append-only and cannot be modified.",
        details={"entry_id": target.id, "item_id": target.item_id},
    )


@event.listens_for(StockLedgerEntry, "before_delete")
def _block_ledger_delete(mapper, connection, target):  # noqa: ARG001
    raise LedgerImmutableError(
        "Ledger entries are append-only and cannot be deleted.",
        details={"entry_id": target.id, "item_id": target.item_id},
    )
