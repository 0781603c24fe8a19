"""Scheduled source sync runner.

Intended for cron (e.g. every 5 minutes) to:
 - run every active source whose sync interval has elapsed
 - raise staleness alerts for sources without a recent successful run

Safe to overlap with manual runs: each run reconciles against the ledger
with absolute targets, so repeating one writes nothing new.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy.orm import sessionmaker

from stockdb.database import WriteSessionLocal
from stockdb.errors import StockError
from stockdb.logging_config import configure_logging
from stockdb.apps.sync import services as sync_services
from stockdb.apps.sync.models import SyncRunStatus, SyncTrigger
from stockdb.apps.sync.orchestrator import SyncOrchestrator, SyncSettings

logger = logging.getLogger(__name__)


def run(
    session_factory: sessionmaker = WriteSessionLocal,
    *,
    orchestrator: Optional[SyncOrchestrator] = None,
    now: Optional[datetime] = None,
) -> dict:
    """Execute due syncs and the staleness check; return a summary dict."""
    now = now or datetime.now(timezone.utc)
    orchestrator = orchestrator or SyncOrchestrator(session_factory, SyncSettings.from_env())

    db = session_factory()
    try:
        due_ids = [source.id for source in sync_services.due_sources(db, now=now)]
    finally:
        db.close()

    summary = {"due": len(due_ids), "completed": 0, "failed": 0, "errors": 0, "stale": 0}
    for source_id in due_ids:
        try:
            result = orchestrator.run_source(source_id, trigger=SyncTrigger.SCHEDULED, triggered_by="scheduler")
        except StockError as exc:
            summary["errors"] += 1
            logger.warning("scheduled sync could not start", extra={"source_id": source_id, "code": exc.code})
            continue
        except Exception:
            summary["errors"] += 1
            logger.exception("scheduled sync crashed", extra={"source_id": source_id})
            continue
        if result.status == SyncRunStatus.COMPLETED:
            summary["completed"] += 1
        else:
            summary["failed"] += 1

    summary["stale"] = len(orchestrator.stale_alerts())
    return summary


if __name__ == "__main__":
    configure_logging()
    result = run()
    print("Sync runner completed:", result)
