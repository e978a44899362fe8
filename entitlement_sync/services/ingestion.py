"""
Webhook ingestion pipeline.

    body -> adapter.normalize -> parse_order_envelope     (MalformedPayloadError: nothing logged)
         -> EventLogStore.record                          (committed before any processing)
         -> ReconciliationEngine.reconcile                (worker thread, own session, timeout)
         -> EventLogStore.mark_outcome                    (same row, addressed by log id)

The event log and the reconciliation run use separate sessions so a rollback inside
reconciliation can never undo the log row. On timeout the row is left processed=false
with no error, which distinguishes "never finished" from "finished and failed"; writes
already made by the still-running worker are kept, and a retry is safe because grants
and revokes are idempotent.
"""
import logging
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeoutError
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional
from sqlalchemy.orm import Session

from entitlement_sync.adapters import PayloadAdapter, get_adapter
from entitlement_sync.config import Settings, settings as default_settings
from entitlement_sync.errors import MalformedPayloadError, StoreUnavailableError
from entitlement_sync.schemas import OrderEnvelope, parse_order_envelope
from entitlement_sync.services.entitlements import EntitlementStore
from entitlement_sync.services.event_log import EventLogStore
from entitlement_sync.services.notifications import NotificationEmitter
from entitlement_sync.services.reconciliation import ReconciliationEngine, ReconciliationResult
from entitlement_sync.services.resolver import EntityResolver

logger = logging.getLogger(__name__)

EngineFactory = Callable[[Session, str], ReconciliationEngine]


@dataclass
class IngestOutcome:
    """What the HTTP boundary needs to build its response."""
    success: bool
    message: str
    log_id: Optional[str] = None
    retryable: bool = False
    error_code: Optional[str] = None
    result: Optional[ReconciliationResult] = None

    @classmethod
    def from_result(cls, log_id: str, result: ReconciliationResult) -> "IngestOutcome":
        if result.processed:
            message = "Webhook processed successfully"
        else:
            message = f"Failed to process webhook: {result.error_message}"
        return cls(
            success=result.processed,
            message=message,
            log_id=log_id,
            retryable=result.retryable,
            error_code=result.error_code,
            result=result,
        )


class WebhookIngestor:
    """Runs the full ingestion pipeline for one request at a time; holds no per-request state."""

    def __init__(
        self,
        session_factory: Callable[[], Session],
        settings: Optional[Settings] = None,
        adapter: Optional[PayloadAdapter] = None,
        engine_factory: Optional[EngineFactory] = None,
    ):
        self.session_factory = session_factory
        self.settings = settings or default_settings
        self.adapter = adapter or get_adapter(self.settings.webhook_source)
        self.engine_factory = engine_factory or self._build_engine
        self._executor = ThreadPoolExecutor(
            max_workers=self.settings.reconcile_max_workers,
            thread_name_prefix="reconcile",
        )

    def _build_engine(self, db: Session, source: str) -> ReconciliationEngine:
        return ReconciliationEngine(
            resolver=EntityResolver(db, source),
            entitlements=EntitlementStore(db),
            notifier=NotificationEmitter(db),
            settings=self.settings,
        )

    def parse(self, body: Any, adapter: Optional[PayloadAdapter] = None) -> OrderEnvelope:
        """
        Normalize and validate a raw body.

        Raises:
            MalformedPayloadError: If the body does not fit the order event shape
        """
        normalized = (adapter or self.adapter).normalize(body)
        return parse_order_envelope(normalized, self.settings.grant_events)

    def ingest(self, body: Dict[str, Any]) -> IngestOutcome:
        """
        Record and reconcile one webhook body.

        Raises:
            MalformedPayloadError: Before anything is written, if the body is unusable
        """
        envelope = self.parse(body)

        log_db = self.session_factory()
        try:
            log_store = EventLogStore(log_db, self.settings.error_message_max_length)
            try:
                log_id = log_store.record(envelope.event, body, source=self.adapter.name)
            except StoreUnavailableError as e:
                # The one unrecordable case: the event log itself is down
                logger.error(f"Webhook for order {envelope.order_id} could not be recorded: {e}")
                return IngestOutcome(
                    success=False,
                    message="Webhook could not be recorded; retry later",
                    retryable=True,
                    error_code=e.code,
                )
            return self._reconcile_and_record(log_store, log_id, envelope, self.adapter.name)
        finally:
            log_db.close()

    def replay(self, log_id: str) -> IngestOutcome:
        """
        Re-run a stored payload through reconciliation, updating its existing log row.

        Raises:
            LookupError: If no log row has this id
        """
        log_db = self.session_factory()
        try:
            log_store = EventLogStore(log_db, self.settings.error_message_max_length)
            row = log_store.get(log_id)
            if row is None:
                raise LookupError(f"Webhook log {log_id} not found")

            source = row.source
            try:
                adapter = get_adapter(source)
            except ValueError:
                logger.warning(f"Webhook log {log_id} has unknown source {source!r}; using {self.adapter.name}")
                adapter = self.adapter
                source = adapter.name

            try:
                envelope = self.parse(row.payload, adapter=adapter)
            except MalformedPayloadError as e:
                log_store.mark_outcome(log_id, False, str(e))
                return IngestOutcome(success=False, message=str(e), log_id=log_id, error_code=e.code)

            logger.info(f"Replaying webhook log {log_id} (type: {envelope.event}, order: {envelope.order_id})")
            return self._reconcile_and_record(log_store, log_id, envelope, source)
        finally:
            log_db.close()

    def _reconcile_and_record(self, log_store: EventLogStore, log_id: str, envelope: OrderEnvelope, source: str) -> IngestOutcome:
        future = self._executor.submit(self._run_engine, envelope, source)
        timeout = self.settings.reconcile_timeout_seconds
        try:
            result = future.result(timeout=timeout)
        except FutureTimeoutError:
            logger.error(
                f"Reconciliation of webhook log {log_id} (order {envelope.order_id}) exceeded {timeout}s; "
                f"leaving it unprocessed"
            )
            return IngestOutcome(
                success=False,
                message=f"Processing did not finish within {timeout}s; retry later",
                log_id=log_id,
                retryable=True,
                error_code="reconcile_timeout",
            )
        except Exception as e:
            logger.error(f"Reconciliation of webhook log {log_id} crashed: {e}", exc_info=True)
            result = ReconciliationResult(
                processed=False,
                retryable=True,
                error_code="unexpected_error",
                error_message=f"unexpected_error: {e}",
            )

        try:
            log_store.mark_outcome(log_id, result.processed, result.error_message)
        except StoreUnavailableError as e:
            # Row stays processed=false; replaying it is safe
            logger.error(f"Could not record outcome for webhook log {log_id}: {e}")

        return IngestOutcome.from_result(log_id, result)

    def _run_engine(self, envelope: OrderEnvelope, source: str) -> ReconciliationResult:
        db = self.session_factory()
        try:
            return self.engine_factory(db, source).reconcile(envelope)
        finally:
            db.close()

    def shutdown(self, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait)
