from __future__ import annotations

import enum
from datetime import datetime, timezone

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Enum as SAEnum,
    ForeignKey,
    Index,
    Integer,
    JSON,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship

from stockdb.database import Base
from stockdb.ids import new_event_id, new_run_id, new_source_id, new_transaction_id


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _values(enum_cls):
    return [member.value for member in enum_cls]


class SourceAuthType(str, enum.Enum):
    NONE = "none"
    BASIC = "basic"
    BEARER = "bearer"
    API_KEY = "api_key"


class SyncRunStatus(str, enum.Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class SyncTrigger(str, enum.Enum):
    MANUAL = "manual"
    SCHEDULED = "scheduled"
    UPLOAD = "upload"
    WEBHOOK = "webhook"


class TransactionDirection(str, enum.Enum):
    INBOUND = "inbound"
    OUTBOUND = "outbound"


class TransactionStatus(str, enum.Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


TRANSACTION_FETCH = "inventory_fetch"
TRANSACTION_PUSH = "inventory_push"


class ExternalSource(Base):
    """A vendor catalog or point-of-sale system that reports stock levels."""

    __tablename__ = "external_sources"
    __table_args__ = (
        UniqueConstraint("source_key", name="uq_external_sources_key"),
    )

    id = Column(String(36), primary_key=True, default=new_source_id)
    source_key = Column(String(64), nullable=False, index=True)
    display_name = Column(String(128), nullable=False)
    source_type = Column(String(32), nullable=False, index=True)
    endpoint_url = Column(String(512), nullable=True)
    auth_type = Column(
        SAEnum(SourceAuthType, name="source_auth_type", native_enum=False, values_callable=_values),
        nullable=False,
        default=SourceAuthType.NONE,
    )
    # Fernet tokens; plaintext never reaches the database.
    credentials_encrypted = Column(Text, nullable=True)
    webhook_secret_encrypted = Column(Text, nullable=True)
    field_map = Column(JSON, nullable=True)

    create_missing_items = Column(Boolean, nullable=False, default=False)
    entry_type = Column(String(16), nullable=False, default="sync")
    max_concurrency = Column(Integer, nullable=True)
    sync_interval_minutes = Column(Integer, nullable=True)
    is_active = Column(Boolean, nullable=False, default=True, index=True)

    # Outbound inventory push; off until a push_url is configured and enabled.
    push_enabled = Column(Boolean, nullable=False, default=False)
    push_url = Column(String(512), nullable=True)
    last_pushed_at = Column(DateTime(timezone=True), nullable=True)

    last_synced_at = Column(DateTime(timezone=True), nullable=True)
    last_success_at = Column(DateTime(timezone=True), nullable=True, index=True)
    last_error = Column(Text, nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow)

    def __repr__(self) -> str:
        return f"<ExternalSource id={self.id} key={self.source_key} type={self.source_type}>"


class SourceItemLink(Base):
    __tablename__ = "source_item_links"
    __table_args__ = (
        UniqueConstraint("source_id", "external_sku", name="uq_source_item_links_source_sku"),
        Index("ix_source_item_links_item", "item_id"),
    )

    id = Column(Integer, primary_key=True, index=True)
    source_id = Column(
        String(36),
        ForeignKey("external_sources.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    item_id = Column(Integer, ForeignKey("stock_items.id", ondelete="CASCADE"), nullable=False)
    external_sku = Column(String(64), nullable=False)
    external_name = Column(String(255), nullable=True)
    external_price = Column(Numeric(12, 2), nullable=True)
    last_reported_quantity = Column(Integer, nullable=True)
    last_seen_at = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)

    def __repr__(self) -> str:
        return f"<SourceItemLink source={self.source_id} sku={self.external_sku} item={self.item_id}>"


class SyncRun(Base):
    __tablename__ = "sync_runs"
    __table_args__ = (
        Index("ix_sync_runs_source_started", "source_id", "started_at"),
    )

    id = Column(String(36), primary_key=True, default=new_run_id)
    source_id = Column(
        String(36),
        ForeignKey("external_sources.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    trigger = Column(
        SAEnum(SyncTrigger, name="sync_trigger", native_enum=False, values_callable=_values),
        nullable=False,
        default=SyncTrigger.MANUAL,
    )
    status = Column(
        SAEnum(SyncRunStatus, name="sync_run_status", native_enum=False, values_callable=_values),
        nullable=False,
        default=SyncRunStatus.PENDING,
        index=True,
    )
    started_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    completed_at = Column(DateTime(timezone=True), nullable=True)

    total_records = Column(Integer, nullable=False, default=0)
    created = Column(Integer, nullable=False, default=0)
    updated = Column(Integer, nullable=False, default=0)
    failed = Column(Integer, nullable=False, default=0)
    skipped = Column(Integer, nullable=False, default=0)
    entries_written = Column(Integer, nullable=False, default=0)

    error_json = Column(JSON, nullable=True)
    failures_json = Column(JSON, nullable=True)
    triggered_by = Column(String(64), nullable=True)

    source = relationship("ExternalSource", lazy="joined")

    def __repr__(self) -> str:
        return f"<SyncRun id={self.id} source={self.source_id} status={self.status}>"


class InboundWebhookEvent(Base):
    __tablename__ = "sync_inbound_events"
    __table_args__ = (
        UniqueConstraint("source_id", "idempotency_key", name="uq_sync_inbound_source_idempotency"),
        Index("ix_sync_inbound_received_at", "received_at"),
    )

    id = Column(String(36), primary_key=True, default=new_event_id)
    source_id = Column(
        String(36),
        ForeignKey("external_sources.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    event_type = Column(String(128), nullable=False, index=True)
    payload_json = Column(JSON, nullable=True)
    payload_hash = Column(String(64), nullable=False, index=True)
    idempotency_key = Column(String(128), nullable=True)
    signature_valid = Column(Boolean, nullable=False, default=False)

    received_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    processed_at = Column(DateTime(timezone=True), nullable=True)
    result_json = Column(JSON, nullable=True)
    error = Column(Text, nullable=True)

    def __repr__(self) -> str:
        return f"<InboundWebhookEvent id={self.id} type={self.event_type} source={self.source_id}>"


class SourceTransaction(Base):
    """
    One request exchanged with a source: a catalog fetch or an item push.

    Rows are opened as pending before the request goes out and closed as
    completed or failed once the source answers. Credentials and response
    bodies are never stored here.
    """

    __tablename__ = "sync_source_transactions"
    __table_args__ = (
        Index("ix_sync_source_transactions_source_created", "source_id", "created_at"),
    )

    id = Column(String(36), primary_key=True, default=new_transaction_id)
    source_id = Column(
        String(36),
        ForeignKey("external_sources.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    run_id = Column(String(36), ForeignKey("sync_runs.id", ondelete="SET NULL"), nullable=True, index=True)
    transaction_type = Column(String(32), nullable=False, index=True)
    direction = Column(
        SAEnum(TransactionDirection, name="sync_transaction_direction", native_enum=False, values_callable=_values),
        nullable=False,
    )
    entity_type = Column(String(32), nullable=True)
    entity_id = Column(String(64), nullable=True)
    status = Column(
        SAEnum(TransactionStatus, name="sync_transaction_status", native_enum=False, values_callable=_values),
        nullable=False,
        default=TransactionStatus.PENDING,
        index=True,
    )
    request_json = Column(JSON, nullable=True)
    response_status = Column(Integer, nullable=True)
    error = Column(Text, nullable=True)
    elapsed_ms = Column(Integer, nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    processed_at = Column(DateTime(timezone=True), nullable=True)

    def __repr__(self) -> str:
        return f"<SourceTransaction id={self.id} type={self.transaction_type} status={self.status}>"
