"""
Sync orchestrator.

One run = fetch (or take an uploaded payload) -> parse -> reconcile every
record -> finish the run row -> alert. Records that share a SKU are applied
in order by one worker; different SKUs run in parallel on a bounded thread
pool, each record in its own session and transaction. Cancelling a run (or
hitting the run deadline) stops new records from starting; whatever was
already committed stays.
"""

from __future__ import annotations

import hashlib
import json
import logging
import os
import threading
import time
from collections import OrderedDict
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from stockdb import vault
from stockdb.apps.inventory.models import StockItem
from stockdb.apps.inventory.services import normalize_sku
from stockdb.errors import (
    AuthError,
    FormatError,
    NetworkError,
    NotFoundError,
    RunCancelledError,
    StockError,
    ValidationError,
)

from . import alerts, models, reconciliation
from . import services as sync_services
from .adapters import ExternalSourceRecord, ParseResult, build_adapter
from .client import ConnectionProbe, SourceClient

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _float_list(raw: str, default: Tuple[float, ...]) -> Tuple[float, ...]:
    try:
        values = tuple(float(part) for part in raw.split(",") if part.strip())
    except ValueError:
        return default
    return values if all(v >= 0 for v in values) else default


@dataclass(frozen=True)
class SyncSettings:
    retry_delays: Tuple[float, ...] = (1.0, 5.0, 15.0)
    http_timeout_sec: float = 30.0
    max_workers: int = 4
    max_run_seconds: float = 900.0
    stale_after_minutes: int = 1440
    failure_alert_threshold: int = 3
    max_failure_details: int = 50

    @classmethod
    def from_env(cls, environ: Optional[Dict[str, str]] = None) -> "SyncSettings":
        env = os.environ if environ is None else environ
        defaults = cls()
        return cls(
            retry_delays=_float_list(env.get("SYNC_RETRY_DELAYS", ""), defaults.retry_delays)
            if env.get("SYNC_RETRY_DELAYS")
            else defaults.retry_delays,
            http_timeout_sec=float(env.get("SYNC_HTTP_TIMEOUT_SEC", defaults.http_timeout_sec)),
            max_workers=max(1, int(env.get("SYNC_MAX_WORKERS", defaults.max_workers))),
            max_run_seconds=float(env.get("SYNC_MAX_RUN_SECONDS", defaults.max_run_seconds)),
            stale_after_minutes=int(env.get("SYNC_STALE_AFTER_MINUTES", defaults.stale_after_minutes)),
            failure_alert_threshold=int(
                env.get("SYNC_FAILURE_ALERT_THRESHOLD", defaults.failure_alert_threshold)
            ),
            max_failure_details=int(env.get("SYNC_MAX_FAILURE_DETAILS", defaults.max_failure_details)),
        )

    @property
    def stale_window(self) -> timedelta:
        return timedelta(minutes=self.stale_after_minutes)


@dataclass
class WebhookResult:
    event_id: str
    event_type: str
    duplicate: bool = False
    processed: bool = False
    run_id: Optional[str] = None
    reason: Optional[str] = None
    summary: Dict[str, Any] = field(default_factory=dict)


@dataclass
class PushResult:
    source_id: str
    total: int = 0
    successful: int = 0
    failed: int = 0
    skipped: int = 0
    errors: List[Dict[str, Any]] = field(default_factory=list)

    def fail(self, item_id: int, sku: str, code: str, message: str) -> None:
        self.failed += 1
        self.errors.append({"item_id": item_id, "sku": sku, "code": code, "message": message})


class _RunState:
    """Counters shared by the worker threads of one run."""

    def __init__(self, max_failure_details: int):
        self.lock = threading.Lock()
        self.summary = reconciliation.ReconcileSummary()
        self.max_failure_details = max_failure_details
        self.stopped = False

    def success(self, outcome: reconciliation.RecordOutcome) -> None:
        with self.lock:
            self.summary.add(outcome)

    def failure(self, external_sku: Optional[str], code: str, message: str) -> None:
        with self.lock:
            self.summary.failed += 1
            if len(self.summary.failures) < self.max_failure_details:
                self.summary.failures.append({"external_sku": external_sku, "code": code, "message": message})

    def stop(self, skipped: int) -> None:
        with self.lock:
            self.stopped = True
            self.summary.skipped += skipped


class SyncOrchestrator:
    def __init__(
        self,
        session_factory: sessionmaker,
        settings: Optional[SyncSettings] = None,
        client: Optional[SourceClient] = None,
        alert_hooks: Iterable[alerts.AlertHook] = (),
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], datetime] = _utcnow,
        monotonic: Callable[[], float] = time.monotonic,
    ):
        self.session_factory = session_factory
        self.settings = settings or SyncSettings.from_env()
        self.client = client or SourceClient(timeout=self.settings.http_timeout_sec)
        self.alert_hooks = list(alert_hooks) or [alerts.log_alert]
        self._sleep = sleep
        self._clock = clock
        self._monotonic = monotonic
        self._cancel_events: Dict[str, threading.Event] = {}
        self._cancel_lock = threading.Lock()

    # ------------------------------------------------------------------
    # RUN LIFECYCLE
    # ------------------------------------------------------------------

    def start_run(
        self,
        source_id: str,
        *,
        trigger: models.SyncTrigger = models.SyncTrigger.MANUAL,
        triggered_by: Optional[str] = None,
    ) -> str:
        """Create a pending run row and return its id."""
        db = self.session_factory()
        try:
            source = self._get_source(db, source_id)
            if not source.is_active:
                raise ValidationError(f"Source {source.source_key} is inactive.", details={"source_id": source.id})
            run = models.SyncRun(
                source_id=source.id,
                trigger=models.SyncTrigger(trigger),
                status=models.SyncRunStatus.PENDING,
                started_at=self._clock(),
                triggered_by=triggered_by,
            )
            db.add(run)
            db.commit()
            run_id = run.id
        finally:
            db.close()
        with self._cancel_lock:
            self._cancel_events.setdefault(run_id, threading.Event())
        return run_id

    def run_source(
        self,
        source_id: str,
        payload: Any = None,
        *,
        trigger: models.SyncTrigger = models.SyncTrigger.MANUAL,
        triggered_by: Optional[str] = None,
    ) -> models.SyncRun:
        run_id = self.start_run(source_id, trigger=trigger, triggered_by=triggered_by)
        return self.execute_run(run_id, payload)

    def cancel(self, run_id: str) -> bool:
        """
        Ask a run to stop. Returns False when the run already finished.

        A run that this process is not executing (still pending, or owned by
        a worker that died) is closed out directly.
        """
        with self._cancel_lock:
            event = self._cancel_events.get(run_id)
        if event is not None:
            event.set()
            logger.info("sync run cancellation requested", extra={"run_id": run_id})
            return True

        db = self.session_factory()
        try:
            run = db.get(models.SyncRun, run_id)
            if run is None:
                raise NotFoundError(f"Sync run {run_id} not found.", details={"run_id": run_id})
            if run.status in (models.SyncRunStatus.COMPLETED, models.SyncRunStatus.FAILED):
                return False
            run.status = models.SyncRunStatus.FAILED
            run.completed_at = self._clock()
            run.error_json = RunCancelledError("Sync run was cancelled.").to_dict()
            db.commit()
            return True
        finally:
            db.close()

    def execute_run(self, run_id: str, payload: Any = None) -> models.SyncRun:
        with self._cancel_lock:
            cancel_event = self._cancel_events.setdefault(run_id, threading.Event())
        deadline = self._monotonic() + self.settings.max_run_seconds
        try:
            return self._execute(run_id, payload, cancel_event, deadline)
        finally:
            with self._cancel_lock:
                self._cancel_events.pop(run_id, None)

    def _execute(self, run_id: str, payload: Any, cancel_event: threading.Event, deadline: float) -> models.SyncRun:
        db = self.session_factory()
        try:
            run = db.get(models.SyncRun, run_id)
            if run is None:
                raise NotFoundError(f"Sync run {run_id} not found.", details={"run_id": run_id})
            if run.status == models.SyncRunStatus.FAILED and (run.error_json or {}).get("code") == RunCancelledError.code:
                return run
            if run.status != models.SyncRunStatus.PENDING:
                raise ValidationError(
                    f"Sync run {run_id} is already {run.status.value}.",
                    details={"run_id": run_id, "status": run.status.value},
                )
            source = self._get_source(db, run.source_id)
            run.status = models.SyncRunStatus.PROCESSING
            db.commit()
            logger.info(
                "sync run started",
                extra={"run_id": run.id, "source_id": source.id, "trigger": run.trigger.value},
            )

            if cancel_event.is_set():
                error = RunCancelledError("Sync run was cancelled.", details={"reason": "cancelled"}).to_dict()
                error["attempts"] = 0
                return self._finish(db, run, source, error=error)

            try:
                parsed, attempts = self._load_records(db, run.id, source, payload, cancel_event, deadline)
            except StockError as exc:
                error = exc.to_dict()
                error["attempts"] = getattr(exc, "attempts", 1)
                return self._finish(db, run, source, error=error)
            except Exception as exc:
                logger.exception("sync run fetch or parse crashed", extra={"run_id": run.id, "source_id": source.id})
                db.rollback()
                return self._finish(db, run, source, error=_internal_error(exc, getattr(exc, "attempts", 1)))

            state = _RunState(self.settings.max_failure_details)
            for rejected in parsed.rejected:
                state.failure(rejected.external_sku, "FORMAT_ERROR", f"row {rejected.index}: {rejected.reason}")
            run.total_records = parsed.total
            db.commit()

            try:
                self._reconcile_all(source, run.id, parsed.records, state, cancel_event, deadline)
            except Exception as exc:
                logger.exception("sync run crashed", extra={"run_id": run.id, "source_id": source.id})
                db.rollback()
                return self._finish(db, run, source, state=state, error=_internal_error(exc, attempts))

            error = None
            if state.stopped:
                reason = "cancelled" if cancel_event.is_set() else "deadline exceeded"
                error = RunCancelledError(
                    f"Sync run was {reason}.",
                    details={"reason": reason},
                ).to_dict()
                error["attempts"] = attempts
            return self._finish(db, run, source, state=state, error=error)
        finally:
            db.close()

    # ------------------------------------------------------------------
    # FETCH & PARSE
    # ------------------------------------------------------------------

    def _load_records(
        self,
        db: Session,
        run_id: str,
        source: models.ExternalSource,
        payload: Any,
        cancel_event: threading.Event,
        deadline: float,
    ) -> Tuple[ParseResult, int]:
        adapter = build_adapter(source, clock=self._clock)
        if payload is not None:
            return adapter.parse(payload), 1

        txn = sync_services.open_transaction(
            db,
            source_id=source.id,
            transaction_type=models.TRANSACTION_FETCH,
            direction=models.TransactionDirection.INBOUND,
            entity_type="catalog",
            run_id=run_id,
            request={"method": "GET"},
            now=self._clock(),
        )
        db.commit()
        try:
            response, attempts = self._with_retry(
                lambda: self.client.fetch(source),
                source=source,
                cancel_event=cancel_event,
                deadline=deadline,
            )
        except Exception as exc:
            txn.request_json = {"method": "GET", "attempts": getattr(exc, "attempts", 1)}
            self._close_failed(db, txn, exc)
            raise
        txn.request_json = {"method": "GET", "attempts": attempts}
        sync_services.close_transaction(
            txn,
            response_status=response.status,
            elapsed_ms=response.elapsed_ms,
            now=self._clock(),
        )
        db.commit()

        body = response.body
        try:
            return adapter.parse(body), attempts
        except StockError as exc:
            exc.attempts = attempts
            raise

    def _with_retry(
        self,
        call: Callable[[], Any],
        *,
        source: models.ExternalSource,
        cancel_event: threading.Event,
        deadline: float,
    ) -> Tuple[Any, int]:
        delays = list(self.settings.retry_delays)
        attempt = 0
        while True:
            attempt += 1
            try:
                return call(), attempt
            except NetworkError as exc:
                if attempt > len(delays):
                    exc.attempts = attempt
                    raise
                delay = delays[attempt - 1]
                logger.warning(
                    "source call failed, retrying",
                    extra={"source_id": source.id, "attempt": attempt, "delay_sec": delay, "code": exc.code},
                )
                if cancel_event.is_set() or self._monotonic() + delay >= deadline:
                    exc.attempts = attempt
                    raise
                self._sleep(delay)
            except StockError as exc:
                exc.attempts = attempt
                raise

    # ------------------------------------------------------------------
    # RECONCILE
    # ------------------------------------------------------------------

    def _reconcile_all(
        self,
        source: models.ExternalSource,
        run_id: str,
        records: List[ExternalSourceRecord],
        state: _RunState,
        cancel_event: threading.Event,
        deadline: float,
    ) -> None:
        groups: "OrderedDict[str, List[ExternalSourceRecord]]" = OrderedDict()
        for record in records:
            groups.setdefault(normalize_sku(record.external_sku), []).append(record)
        if not groups:
            return

        workers = min(source.max_concurrency or self.settings.max_workers, len(groups))
        source_id = source.id

        def should_stop() -> bool:
            return cancel_event.is_set() or self._monotonic() >= deadline

        def process_group(group: List[ExternalSourceRecord]) -> None:
            for position, record in enumerate(group):
                if should_stop():
                    state.stop(len(group) - position)
                    return
                self._reconcile_one(source_id, run_id, record, state)

        with ThreadPoolExecutor(max_workers=max(1, workers), thread_name_prefix="sync") as pool:
            futures = [pool.submit(process_group, group) for group in groups.values()]
            for future in futures:
                future.result()

    def _reconcile_one(
        self,
        source_id: str,
        run_id: str,
        record: ExternalSourceRecord,
        state: _RunState,
    ) -> None:
        db = self.session_factory()
        try:
            source = self._get_source(db, source_id)
            outcome = reconciliation.reconcile_record(db, source, record, run_id)
            db.commit()
        except StockError as exc:
            db.rollback()
            state.failure(record.external_sku, exc.code, exc.message)
            return
        except Exception as exc:
            db.rollback()
            if not isinstance(exc, IntegrityError):
                logger.exception(
                    "record reconciliation crashed",
                    extra={"run_id": run_id, "source_id": source_id, "external_sku": record.external_sku},
                )
            state.failure(record.external_sku, *reconciliation.describe_failure(exc))
            return
        finally:
            db.close()
        state.success(outcome)

    # ------------------------------------------------------------------
    # FINISH & ALERT
    # ------------------------------------------------------------------

    def _finish(
        self,
        db: Session,
        run: models.SyncRun,
        source: models.ExternalSource,
        *,
        state: Optional[_RunState] = None,
        error: Optional[Dict[str, Any]] = None,
    ) -> models.SyncRun:
        now = self._clock()
        if state is not None:
            summary = state.summary
            run.created = summary.created
            run.updated = summary.updated
            run.failed = summary.failed
            run.skipped = summary.skipped
            run.entries_written = summary.entries_written
            run.failures_json = summary.failures or None
        run.completed_at = now
        run.error_json = error
        run.status = models.SyncRunStatus.FAILED if error else models.SyncRunStatus.COMPLETED

        source.last_synced_at = now
        if error:
            source.last_error = f"{error.get('code')}: {error.get('message')}"[:1000]
        else:
            source.last_success_at = now
            source.last_error = None
        db.commit()

        logger.info(
            "sync run finished",
            extra={
                "run_id": run.id,
                "source_id": source.id,
                "status": run.status.value,
                "total": run.total_records,
                "records_created": run.created,
                "records_updated": run.updated,
                "records_failed": run.failed,
                "records_skipped": run.skipped,
                "entries_written": run.entries_written,
            },
        )

        if error:
            if error.get("code") != RunCancelledError.code:
                alerts.emit(self.alert_hooks, alerts.run_failed_alert(source, run))
            repeated = alerts.repeated_failure_alert(
                db, source, threshold=self.settings.failure_alert_threshold
            )
            if repeated:
                alerts.emit(self.alert_hooks, repeated)
        return run

    def stale_alerts(self, *, emit: bool = True) -> List[alerts.SyncAlert]:
        db = self.session_factory()
        try:
            found = alerts.stale_source_alerts(db, window=self.settings.stale_window, now=self._clock())
        finally:
            db.close()
        if emit:
            for alert in found:
                alerts.emit(self.alert_hooks, alert)
        return found

    # ------------------------------------------------------------------
    # OUTBOUND PUSH
    # ------------------------------------------------------------------

    def push_source(
        self,
        source_id: str,
        item_ids: Optional[Iterable[int]] = None,
        *,
        triggered_by: Optional[str] = None,
    ) -> PushResult:
        """
        Send our quantities for active items to the source, one request per item.

        Every item gets its own outbound transaction row. A failed item is
        recorded and the push moves on; untracked items are skipped.
        """
        db = self.session_factory()
        try:
            source = self._get_source(db, source_id)
            if not source.is_active:
                raise ValidationError(f"Source {source.source_key} is inactive.", details={"source_id": source.id})
            if not source.push_enabled or not source.push_url:
                raise ValidationError(
                    f"Inventory push is not enabled for source {source.source_key}.",
                    details={"source_id": source.id},
                )
            adapter = build_adapter(source, clock=self._clock)
            query = db.query(StockItem).filter(StockItem.is_active.is_(True))
            if item_ids is not None:
                query = query.filter(StockItem.id.in_(list(item_ids)))
            items = query.order_by(StockItem.id.asc()).all()
            result = PushResult(source_id=source.id, total=len(items))
            # Nothing above wrote; end the read so the lock is free during requests.
            db.commit()

            never_cancelled = threading.Event()
            deadline = self._monotonic() + self.settings.max_run_seconds
            for position, item in enumerate(items):
                if self._monotonic() >= deadline:
                    result.skipped += len(items) - position
                    logger.warning("inventory push deadline exceeded", extra={"source_id": source.id})
                    break
                if not item.track_inventory:
                    result.skipped += 1
                    continue
                self._push_one(db, source, adapter, item, result, never_cancelled, deadline)

            source.last_pushed_at = self._clock()
            db.commit()
        finally:
            db.close()

        logger.info(
            "inventory push finished",
            extra={
                "source_id": source_id,
                "triggered_by": triggered_by,
                "total": result.total,
                "successful": result.successful,
                "failed": result.failed,
                "skipped": result.skipped,
            },
        )
        return result

    def _push_one(
        self,
        db: Session,
        source: models.ExternalSource,
        adapter,
        item: StockItem,
        result: PushResult,
        cancel_event: threading.Event,
        deadline: float,
    ) -> None:
        item_id, sku = item.id, item.sku
        txn = sync_services.open_transaction(
            db,
            source_id=source.id,
            transaction_type=models.TRANSACTION_PUSH,
            direction=models.TransactionDirection.OUTBOUND,
            entity_type="stock_item",
            entity_id=str(item_id),
            request={"sku": sku, "inventory_quantity": item.current_quantity},
            now=self._clock(),
        )
        db.commit()
        try:
            document = adapter.to_external(item)
            response, attempts = self._with_retry(
                lambda: self.client.push(source, sku, document),
                source=source,
                cancel_event=cancel_event,
                deadline=deadline,
            )
        except Exception as exc:
            if not isinstance(exc, StockError):
                logger.exception("inventory push crashed", extra={"source_id": source.id, "item_id": item_id})
            self._close_failed(db, txn, exc)
            result.fail(item_id, sku, *reconciliation.describe_failure(exc))
            return

        txn.request_json = dict(txn.request_json or {}, method=response.method, attempts=attempts)
        sync_services.close_transaction(
            txn,
            response_status=response.status,
            elapsed_ms=response.elapsed_ms,
            now=self._clock(),
        )
        db.commit()
        result.successful += 1

    def _close_failed(self, db: Session, txn: models.SourceTransaction, exc: Exception) -> None:
        code, message = reconciliation.describe_failure(exc)
        status = exc.details.get("status") if isinstance(exc, StockError) else None
        sync_services.close_transaction(txn, error=f"{code}: {message}", response_status=status, now=self._clock())
        db.commit()

    # ------------------------------------------------------------------
    # WEBHOOKS & CONNECTIVITY
    # ------------------------------------------------------------------

    def ingest_webhook(
        self,
        source_key: str,
        raw_body: bytes,
        signature: Optional[str],
        idempotency_key: Optional[str] = None,
        event_type: Optional[str] = None,
    ) -> WebhookResult:
        db = self.session_factory()
        try:
            source = (
                db.query(models.ExternalSource)
                .filter(models.ExternalSource.source_key == source_key)
                .first()
            )
            if not source or not source.is_active:
                raise NotFoundError(f"Source {source_key} not found.", details={"source_key": source_key})

            adapter = build_adapter(source, clock=self._clock)
            payload_hash = hashlib.sha256(raw_body).hexdigest()
            key = (idempotency_key or "").strip() or payload_hash

            secret = vault.decrypt_secret(source.webhook_secret_encrypted) if source.webhook_secret_encrypted else None
            signature_valid = bool(secret and signature and vault.verify_signature(raw_body, signature, secret))

            if not signature_valid:
                # Rejected deliveries are kept for audit without claiming the idempotency key.
                db.add(
                    models.InboundWebhookEvent(
                        source_id=source.id,
                        event_type=(event_type or "unknown")[:128],
                        payload_hash=payload_hash,
                        idempotency_key=None,
                        signature_valid=False,
                        received_at=self._clock(),
                        error="Invalid signature." if secret else "Missing webhook secret for source.",
                    )
                )
                db.commit()
                logger.warning("webhook signature rejected", extra={"source_id": source.id})
                raise AuthError("Invalid webhook signature.", details={"source_key": source_key})

            existing = (
                db.query(models.InboundWebhookEvent)
                .filter(
                    models.InboundWebhookEvent.source_id == source.id,
                    models.InboundWebhookEvent.idempotency_key == key,
                )
                .first()
            )
            if existing:
                return self._duplicate(existing)

            payload = _decode_payload(raw_body)
            resolved_type = event_type or adapter.event_type(payload)
            event = models.InboundWebhookEvent(
                source_id=source.id,
                event_type=resolved_type[:128],
                payload_json=payload,
                payload_hash=payload_hash,
                idempotency_key=key,
                signature_valid=True,
                received_at=self._clock(),
            )
            try:
                with db.begin_nested():
                    db.add(event)
                    db.flush()
            except IntegrityError:
                existing = (
                    db.query(models.InboundWebhookEvent)
                    .filter(
                        models.InboundWebhookEvent.source_id == source.id,
                        models.InboundWebhookEvent.idempotency_key == key,
                    )
                    .first()
                )
                if existing is None:
                    raise
                return self._duplicate(existing)

            result = WebhookResult(event_id=event.id, event_type=resolved_type)
            if not adapter.handles_event(resolved_type):
                result.reason = "Unhandled event type"
                event.processed_at = self._clock()
                event.result_json = {"processed": False, "reason": result.reason}
                db.commit()
                return result

            try:
                parsed = adapter.parse_webhook(payload)
            except StockError as exc:
                event.error = exc.message
                event.processed_at = self._clock()
                db.commit()
                raise
            except Exception as exc:
                logger.exception("webhook payload could not be parsed", extra={"source_id": source.id, "event_id": event.id})
                event.error = f"Malformed payload: {type(exc).__name__}"
                event.processed_at = self._clock()
                db.commit()
                raise FormatError(
                    "Webhook payload could not be parsed.",
                    details={"event_id": event.id, "exception": type(exc).__name__},
                ) from exc

            run = models.SyncRun(
                source_id=source.id,
                trigger=models.SyncTrigger.WEBHOOK,
                status=models.SyncRunStatus.PROCESSING,
                started_at=self._clock(),
                total_records=parsed.total,
                triggered_by=f"webhook:{event.id}",
            )
            db.add(run)
            db.flush()

            summary = reconciliation.reconcile_records(
                db,
                source,
                parsed.records,
                run_id=run.id,
                reference_type="webhook",
                note=f"Webhook event {event.id}",
            )
            for rejected in parsed.rejected:
                summary.fail(rejected.external_sku, _rejected_error(rejected))

            now = self._clock()
            run.created = summary.created
            run.updated = summary.updated
            run.failed = summary.failed
            run.skipped = summary.skipped
            run.entries_written = summary.entries_written
            run.failures_json = summary.failures[: self.settings.max_failure_details] or None
            run.status = models.SyncRunStatus.COMPLETED
            run.completed_at = now
            source.last_synced_at = now
            source.last_success_at = now
            source.last_error = None

            result.processed = True
            result.run_id = run.id
            result.summary = {
                "created": summary.created,
                "updated": summary.updated,
                "failed": summary.failed,
                "skipped": summary.skipped,
                "entries_written": summary.entries_written,
            }
            event.processed_at = now
            event.result_json = dict(result.summary, processed=True, run_id=run.id)
            db.commit()
            logger.info(
                "webhook processed",
                extra={"source_id": source.id, "event_id": event.id, "event_type": resolved_type, "summary": result.summary},
            )
            return result
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    @staticmethod
    def _duplicate(event: models.InboundWebhookEvent) -> WebhookResult:
        stored = event.result_json or {}
        return WebhookResult(
            event_id=event.id,
            event_type=event.event_type,
            duplicate=True,
            processed=bool(stored.get("processed")),
            run_id=stored.get("run_id"),
            reason="Duplicate delivery",
            summary={k: v for k, v in stored.items() if k not in ("processed", "run_id", "reason")},
        )

    def test_connection(self, source_id: str) -> ConnectionProbe:
        db = self.session_factory()
        try:
            source = self._get_source(db, source_id)
            probe = self.client.probe(source)
        finally:
            db.close()
        logger.info(
            "source connection tested",
            extra={"source_id": source_id, "ok": probe.ok, "status": probe.status, "error_code": probe.error_code},
        )
        return probe

    @staticmethod
    def _get_source(db: Session, source_id: str) -> models.ExternalSource:
        source = db.get(models.ExternalSource, source_id)
        if source is None:
            raise NotFoundError(f"Source {source_id} not found.", details={"source_id": source_id})
        return source


def _decode_payload(raw_body: bytes) -> Any:
    try:
        return json.loads(raw_body.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise FormatError("Webhook body is not valid JSON.") from exc


def _rejected_error(rejected) -> StockError:
    return FormatError(f"row {rejected.index}: {rejected.reason}")


def _internal_error(exc: Exception, attempts: int) -> Dict[str, Any]:
    return {
        "code": "INTERNAL_ERROR",
        "message": str(exc) or type(exc).__name__,
        "details": {"exception": type(exc).__name__},
        "attempts": attempts,
    }
