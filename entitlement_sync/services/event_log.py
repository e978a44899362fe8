"""
Webhook event log.

Every request that passes envelope validation gets exactly one webhook_logs row, written
and committed before any reconciliation runs. The same row (addressed by the id returned
from record()) is later updated with the outcome. Rows are never deleted here.
"""
import uuid
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional
from sqlalchemy.orm import Session
from sqlalchemy.exc import SQLAlchemyError

from entitlement_sync.errors import StoreUnavailableError
from entitlement_sync.models import WebhookLog

logger = logging.getLogger(__name__)

DEFAULT_ERROR_MAX_LENGTH = 1000


class EventLogStore:
    """Append-only store of inbound webhook events and their processing outcome."""

    def __init__(self, db: Session, error_max_length: int = DEFAULT_ERROR_MAX_LENGTH):
        self.db = db
        self.error_max_length = error_max_length

    def record(self, event_type: str, payload: Dict[str, Any], source: str = "unknown") -> str:
        """
        Insert a new unprocessed log row and commit it.

        Args:
            event_type: Event tag from the payload (e.g. 'order.paid')
            payload: Raw request body as received
            source: Adapter name the request came through

        Returns:
            log_id: Id of the new row, used to address the outcome update

        Raises:
            StoreUnavailableError: If the row cannot be written
        """
        log_id = str(uuid.uuid4())
        row = WebhookLog(
            id=log_id,
            source=source,
            event_type=event_type or "unknown",
            payload=payload,
            processed=False,
        )
        try:
            self.db.add(row)
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(f"Failed to record webhook event (type: {event_type}): {e}", exc_info=True)
            raise StoreUnavailableError(f"Failed to record webhook event: {e}") from e

        logger.info(f"Recorded webhook log {log_id} (type: {event_type}, source: {source})")
        return log_id

    def mark_outcome(self, log_id: str, processed: bool, error: Optional[str] = None) -> None:
        """
        Update a log row with the processing outcome.

        processed_at is set only when processed is True. error may accompany a processed
        outcome (partial-skip notes) and is truncated to error_max_length.

        Raises:
            StoreUnavailableError: If the update fails or the row does not exist
        """
        values = {
            "processed": processed,
            "processed_at": datetime.now(timezone.utc) if processed else None,
            "error_message": error[:self.error_max_length] if error else None,
            "updated_at": datetime.now(timezone.utc),
        }
        try:
            updated = (
                self.db.query(WebhookLog)
                .filter(WebhookLog.id == log_id)
                .update(values, synchronize_session=False)
            )
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(f"Failed to mark webhook log {log_id} outcome: {e}", exc_info=True)
            raise StoreUnavailableError(f"Failed to update webhook log {log_id}: {e}") from e

        if not updated:
            raise StoreUnavailableError(f"Webhook log {log_id} not found", code="log_row_missing")

        logger.info(f"Webhook log {log_id} marked processed={processed} error={values['error_message']!r}")

    def get(self, log_id: str) -> Optional[WebhookLog]:
        """Fetch a log row by id (operator tooling and replay)."""
        try:
            return self.db.query(WebhookLog).filter(WebhookLog.id == log_id).first()
        except SQLAlchemyError as e:
            self.db.rollback()
            raise StoreUnavailableError(f"Failed to read webhook log {log_id}: {e}") from e

    def list_unprocessed(self, limit: int = 100) -> List[WebhookLog]:
        """Oldest-first list of rows that never reached processed=true."""
        try:
            return (
                self.db.query(WebhookLog)
                .filter(WebhookLog.processed.is_(False))
                .order_by(WebhookLog.created_at.asc())
                .limit(limit)
                .all()
            )
        except SQLAlchemyError as e:
            self.db.rollback()
            raise StoreUnavailableError(f"Failed to list unprocessed webhook logs: {e}") from e
