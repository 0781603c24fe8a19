from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import func
from sqlalchemy.orm import Session

from stockdb import vault
from stockdb.errors import AuthError, FormatError, NotFoundError, ValidationError

from . import adapters, models, schemas

logger = logging.getLogger(__name__)

MAX_RUN_PAGE_SIZE = 200
MAX_TRANSACTION_PAGE_SIZE = 200


def _as_aware(value: Optional[datetime]) -> Optional[datetime]:
    # SQLite hands timestamps back without tzinfo; everything is stored in UTC.
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _check_field_map(source_type: str, field_map: Optional[Dict[str, Any]]) -> None:
    if source_type in adapters.ADAPTERS:
        return
    try:
        adapters.GenericMappingAdapter("validation", field_map)
    except FormatError as exc:
        raise ValidationError(exc.message, details=exc.details) from exc


def _check_push_settings(source: models.ExternalSource) -> None:
    if source.push_enabled and not source.push_url:
        raise ValidationError(
            "Inventory push needs a push_url.",
            details={"source_key": source.source_key},
        )


# ---------------------------------------------------------------------------
# SOURCES
# ---------------------------------------------------------------------------


def get_source(db: Session, source_id: str) -> models.ExternalSource:
    source = db.get(models.ExternalSource, source_id)
    if not source:
        raise NotFoundError(f"Source {source_id} not found.", details={"source_id": source_id})
    return source


def get_source_by_key(db: Session, source_key: str) -> Optional[models.ExternalSource]:
    return (
        db.query(models.ExternalSource)
        .filter(models.ExternalSource.source_key == source_key)
        .first()
    )


def list_sources(db: Session, *, active_only: bool = False) -> List[models.ExternalSource]:
    query = db.query(models.ExternalSource)
    if active_only:
        query = query.filter(models.ExternalSource.is_active.is_(True))
    return query.order_by(models.ExternalSource.source_key.asc()).all()


def create_source(
    db: Session,
    *,
    data: schemas.SourceCreate,
    actor_id: Optional[str] = None,
) -> models.ExternalSource:
    if get_source_by_key(db, data.source_key):
        raise ValidationError(
            f"Source key {data.source_key} is already in use.",
            details={"source_key": data.source_key},
        )
    source_type = data.source_type.strip().lower()
    _check_field_map(source_type, data.field_map)

    source = models.ExternalSource(
        source_key=data.source_key,
        display_name=data.display_name,
        source_type=source_type,
        endpoint_url=data.endpoint_url,
        auth_type=data.auth_type,
        credentials_encrypted=vault.encrypt_credentials(data.credentials),
        webhook_secret_encrypted=vault.encrypt_secret(data.webhook_secret) if data.webhook_secret else None,
        field_map=data.field_map,
        create_missing_items=data.create_missing_items,
        entry_type=data.entry_type,
        max_concurrency=data.max_concurrency,
        sync_interval_minutes=data.sync_interval_minutes,
        is_active=data.is_active,
        push_enabled=data.push_enabled,
        push_url=data.push_url,
    )
    _check_push_settings(source)
    db.add(source)
    db.flush()
    logger.info(
        "external source created",
        extra={"source_id": source.id, "source_key": source.source_key, "source_type": source_type, "actor_id": actor_id},
    )
    return source


def update_source(
    db: Session,
    *,
    source_id: str,
    data: schemas.SourceUpdate,
    actor_id: Optional[str] = None,
) -> models.ExternalSource:
    source = get_source(db, source_id)
    changes = data.model_dump(exclude_unset=True)

    if "credentials" in changes:
        source.credentials_encrypted = vault.encrypt_credentials(changes.pop("credentials"))
    if "webhook_secret" in changes:
        secret = changes.pop("webhook_secret")
        source.webhook_secret_encrypted = vault.encrypt_secret(secret) if secret else None
    if "field_map" in changes:
        _check_field_map(source.source_type, changes["field_map"])

    for key, value in changes.items():
        setattr(source, key, value)
    _check_push_settings(source)
    db.flush()
    logger.info("external source updated", extra={"source_id": source.id, "fields": sorted(data.model_fields_set), "actor_id": actor_id})
    return source


def source_view(source: models.ExternalSource) -> schemas.SourceRead:
    """Read model with credentials masked; plaintext never leaves this function."""
    try:
        credentials = vault.mask_credentials(vault.decrypt_credentials(source.credentials_encrypted))
    except AuthError:
        logger.warning("source credentials could not be decrypted", extra={"source_id": source.id})
        credentials = {}
    return schemas.SourceRead(
        id=source.id,
        source_key=source.source_key,
        display_name=source.display_name,
        source_type=source.source_type,
        endpoint_url=source.endpoint_url,
        auth_type=source.auth_type,
        field_map=source.field_map,
        create_missing_items=source.create_missing_items,
        entry_type=source.entry_type,
        max_concurrency=source.max_concurrency,
        sync_interval_minutes=source.sync_interval_minutes,
        is_active=source.is_active,
        push_enabled=source.push_enabled,
        push_url=source.push_url,
        credentials=credentials,
        has_webhook_secret=bool(source.webhook_secret_encrypted),
        last_synced_at=source.last_synced_at,
        last_success_at=source.last_success_at,
        last_error=source.last_error,
        last_pushed_at=source.last_pushed_at,
        created_at=source.created_at,
        updated_at=source.updated_at,
    )


def due_sources(db: Session, *, now: datetime) -> List[models.ExternalSource]:
    """Active, scheduled sources whose interval has elapsed since their last sync."""
    due = []
    for source in list_sources(db, active_only=True):
        if not source.sync_interval_minutes or not source.endpoint_url:
            continue
        last = _as_aware(source.last_synced_at)
        if last is None or last + timedelta(minutes=source.sync_interval_minutes) <= now:
            due.append(source)
    return due


# ---------------------------------------------------------------------------
# RUNS
# ---------------------------------------------------------------------------


def get_run(db: Session, run_id: str) -> models.SyncRun:
    run = db.get(models.SyncRun, run_id)
    if not run:
        raise NotFoundError(f"Sync run {run_id} not found.", details={"run_id": run_id})
    return run


def list_runs(
    db: Session,
    *,
    source_id: str,
    limit: int = 50,
    offset: int = 0,
) -> Tuple[int, List[models.SyncRun]]:
    get_source(db, source_id)
    limit = max(1, min(limit, MAX_RUN_PAGE_SIZE))
    offset = max(0, offset)
    base = db.query(models.SyncRun).filter(models.SyncRun.source_id == source_id)
    total = base.with_entities(func.count(models.SyncRun.id)).scalar() or 0
    runs = (
        base.order_by(models.SyncRun.started_at.desc(), models.SyncRun.id.desc())
        .offset(offset)
        .limit(limit)
        .all()
    )
    return total, runs


# ---------------------------------------------------------------------------
# TRANSACTION LOG
# ---------------------------------------------------------------------------


def open_transaction(
    db: Session,
    *,
    source_id: str,
    transaction_type: str,
    direction: models.TransactionDirection,
    entity_type: Optional[str] = None,
    entity_id: Optional[str] = None,
    run_id: Optional[str] = None,
    request: Optional[Dict[str, Any]] = None,
    now: Optional[datetime] = None,
) -> models.SourceTransaction:
    """Add a pending transaction row; the caller commits."""
    txn = models.SourceTransaction(
        source_id=source_id,
        run_id=run_id,
        transaction_type=transaction_type,
        direction=models.TransactionDirection(direction),
        entity_type=entity_type,
        entity_id=entity_id,
        status=models.TransactionStatus.PENDING,
        request_json=request,
        created_at=now or datetime.now(timezone.utc),
    )
    db.add(txn)
    db.flush()
    return txn


def close_transaction(
    txn: models.SourceTransaction,
    *,
    error: Optional[str] = None,
    response_status: Optional[int] = None,
    elapsed_ms: Optional[int] = None,
    now: Optional[datetime] = None,
) -> models.SourceTransaction:
    txn.status = models.TransactionStatus.FAILED if error else models.TransactionStatus.COMPLETED
    txn.error = error[:1000] if error else None
    txn.response_status = response_status
    txn.elapsed_ms = elapsed_ms
    txn.processed_at = now or datetime.now(timezone.utc)
    return txn


def list_transactions(
    db: Session,
    *,
    source_id: str,
    limit: int = 50,
    offset: int = 0,
    direction: Optional[models.TransactionDirection] = None,
    status: Optional[models.TransactionStatus] = None,
) -> Tuple[int, List[models.SourceTransaction]]:
    get_source(db, source_id)
    limit = max(1, min(limit, MAX_TRANSACTION_PAGE_SIZE))
    offset = max(0, offset)
    base = db.query(models.SourceTransaction).filter(models.SourceTransaction.source_id == source_id)
    if direction is not None:
        base = base.filter(models.SourceTransaction.direction == models.TransactionDirection(direction))
    if status is not None:
        base = base.filter(models.SourceTransaction.status == models.TransactionStatus(status))
    total = base.with_entities(func.count(models.SourceTransaction.id)).scalar() or 0
    rows = (
        base.order_by(models.SourceTransaction.created_at.desc(), models.SourceTransaction.id.desc())
        .offset(offset)
        .limit(limit)
        .all()
    )
    return total, rows
