from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Iterable, List, Optional

from sqlalchemy import or_
from sqlalchemy.orm import Session

from . import models

logger = logging.getLogger(__name__)

REPEATED_FAILURE = "repeated_failure"
STALE_SOURCE = "stale_source"
RUN_FAILED = "run_failed"


@dataclass(frozen=True)
class SyncAlert:
    kind: str
    source_id: str
    source_key: str
    message: str
    details: Dict[str, Any] = field(default_factory=dict)


AlertHook = Callable[[SyncAlert], None]


def log_alert(alert: SyncAlert) -> None:
    logger.warning(
        "sync alert: %s",
        alert.message,
        extra={"kind": alert.kind, "source_id": alert.source_id, "source_key": alert.source_key},
    )


def emit(hooks: Iterable[AlertHook], alert: SyncAlert) -> None:
    """Deliver an alert to every hook; a failing hook never affects the run."""
    for hook in hooks:
        try:
            hook(alert)
        except Exception:  # noqa: BLE001
            logger.warning(
                "sync alert hook failed",
                exc_info=True,
                extra={"kind": alert.kind, "source_id": alert.source_id},
            )


def run_failed_alert(source: models.ExternalSource, run: models.SyncRun) -> SyncAlert:
    error = run.error_json or {}
    return SyncAlert(
        kind=RUN_FAILED,
        source_id=source.id,
        source_key=source.source_key,
        message=f"Sync run {run.id} for {source.source_key} failed: {error.get('message', 'unknown error')}",
        details={"run_id": run.id, "code": error.get("code"), "attempts": error.get("attempts")},
    )


def repeated_failure_alert(
    db: Session,
    source: models.ExternalSource,
    *,
    threshold: int,
) -> Optional[SyncAlert]:
    """Alert when the last `threshold` finished runs of a source all failed."""
    if threshold <= 0:
        return None
    recent = (
        db.query(models.SyncRun.status)
        .filter(
            models.SyncRun.source_id == source.id,
            models.SyncRun.status.in_([models.SyncRunStatus.COMPLETED, models.SyncRunStatus.FAILED]),
        )
        .order_by(models.SyncRun.started_at.desc(), models.SyncRun.id.desc())
        .limit(threshold)
        .all()
    )
    if len(recent) < threshold:
        return None
    if any(status != models.SyncRunStatus.FAILED for (status,) in recent):
        return None
    return SyncAlert(
        kind=REPEATED_FAILURE,
        source_id=source.id,
        source_key=source.source_key,
        message=f"Last {threshold} sync runs for {source.source_key} failed.",
        details={"threshold": threshold, "last_error": source.last_error},
    )


def find_stale_sources(db: Session, *, window: timedelta, now: datetime) -> List[models.ExternalSource]:
    cutoff = now - window
    return (
        db.query(models.ExternalSource)
        .filter(
            models.ExternalSource.is_active.is_(True),
            or_(
                models.ExternalSource.last_success_at.is_(None),
                models.ExternalSource.last_success_at < cutoff,
            ),
        )
        .order_by(models.ExternalSource.source_key.asc())
        .all()
    )


def stale_source_alerts(db: Session, *, window: timedelta, now: datetime) -> List[SyncAlert]:
    alerts = []
    for source in find_stale_sources(db, window=window, now=now):
        last = source.last_success_at.isoformat() if source.last_success_at else None
        alerts.append(
            SyncAlert(
                kind=STALE_SOURCE,
                source_id=source.id,
                source_key=source.source_key,
                message=(
                    f"{source.source_key} has not synced successfully since {last}."
                    if last
                    else f"{source.source_key} has never synced successfully."
                ),
                details={"last_success_at": last, "window_minutes": int(window.total_seconds() // 60)},
            )
        )
    return alerts
