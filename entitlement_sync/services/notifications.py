"""
In-app notification emitter.
"""
import logging
from sqlalchemy.orm import Session
from sqlalchemy.exc import SQLAlchemyError

from entitlement_sync.errors import NotificationError
from entitlement_sync.models import Notification

logger = logging.getLogger(__name__)


class NotificationEmitter:
    """Creates unread inbox notifications. Best-effort: callers catch NotificationError."""

    def __init__(self, db: Session):
        self.db = db

    def notify(self, user_id: str, title: str, message: str, type: str) -> None:
        try:
            self.db.add(Notification(
                user_id=user_id,
                title=title,
                message=message,
                type=type,
                is_read=False,
            ))
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            raise NotificationError(f"Failed to create notification for user {user_id}: {e}") from e

        logger.info(f"Created {type} notification for user {user_id}")
