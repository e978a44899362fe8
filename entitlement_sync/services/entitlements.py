"""
Entitlement store (user_products).

The unique index on (user_id, product_id) is the idempotency guard for grants. The
exists() pre-check only saves a failed insert; a concurrent duplicate delivery that
slips past it surfaces as EntitlementConflictError, which callers treat as
"already granted".
"""
import logging
from datetime import datetime, timezone
from typing import Optional
from sqlalchemy.orm import Session
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from entitlement_sync.errors import EntitlementConflictError, StoreUnavailableError
from entitlement_sync.models import UserProduct

logger = logging.getLogger(__name__)

UNIQUE_CONSTRAINT = "uq_user_products_user_product"
# SQLite reports the columns instead of the constraint name
_SQLITE_UNIQUE_MESSAGE = "UNIQUE constraint failed: user_products.user_id, user_products.product_id"


def _is_duplicate_entitlement(error: IntegrityError) -> bool:
    """True only for a violation of the (user_id, product_id) unique constraint."""
    diag = getattr(error.orig, "diag", None)
    constraint_name = getattr(diag, "constraint_name", None)
    if constraint_name:
        return constraint_name == UNIQUE_CONSTRAINT
    message = str(error.orig)
    return UNIQUE_CONSTRAINT in message or _SQLITE_UNIQUE_MESSAGE in message


class EntitlementStore:
    """Reads and writes user_products rows on behalf of the reconciliation engine."""

    def __init__(self, db: Session):
        self.db = db

    def exists(self, user_id: str, product_id: str) -> bool:
        try:
            row = (
                self.db.query(UserProduct.id)
                .filter(UserProduct.user_id == user_id, UserProduct.product_id == product_id)
                .first()
            )
        except SQLAlchemyError as e:
            self.db.rollback()
            raise StoreUnavailableError(f"Failed to check entitlement: {e}") from e
        return row is not None

    def get(self, user_id: str, product_id: str) -> Optional[UserProduct]:
        try:
            return (
                self.db.query(UserProduct)
                .filter(UserProduct.user_id == user_id, UserProduct.product_id == product_id)
                .first()
            )
        except SQLAlchemyError as e:
            self.db.rollback()
            raise StoreUnavailableError(f"Failed to read entitlement: {e}") from e

    def grant(self, user_id: str, product_id: str, order_id: Optional[str]) -> None:
        """
        Insert an entitlement with provenance order_id, progress 0 and no completed items.

        Commits immediately so earlier grants in the same order survive a later failure.

        Raises:
            EntitlementConflictError: If (user_id, product_id) already exists
            StoreUnavailableError: On any other store failure
        """
        row = UserProduct(
            user_id=user_id,
            product_id=product_id,
            order_id=order_id,
            purchased_at=datetime.now(timezone.utc),
            progress=0,
            completed_items=[],
        )
        try:
            self.db.add(row)
            self.db.commit()
        except IntegrityError as e:
            self.db.rollback()
            if not _is_duplicate_entitlement(e):
                logger.error(f"Integrity error granting product {product_id} to user {user_id}: {e}", exc_info=True)
                raise StoreUnavailableError(f"Failed to grant entitlement: {e}") from e
            logger.info(f"Entitlement for user {user_id} product {product_id} already exists (lost insert race)")
            raise EntitlementConflictError(user_id, product_id) from e
        except SQLAlchemyError as e:
            self.db.rollback()
            raise StoreUnavailableError(f"Failed to grant entitlement: {e}") from e

        logger.info(f"Granted product {product_id} to user {user_id} (order {order_id})")

    def revoke_by_order(self, order_id: str, product_id: str) -> int:
        """
        Delete the entitlement for product_id whose provenance is order_id.

        Entitlements created by another order (or granted manually) are untouched.

        Returns:
            Number of rows deleted (0 when already revoked or never granted by this order)
        """
        try:
            deleted = (
                self.db.query(UserProduct)
                .filter(UserProduct.order_id == order_id, UserProduct.product_id == product_id)
                .delete(synchronize_session=False)
            )
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            raise StoreUnavailableError(f"Failed to revoke entitlement: {e}") from e

        logger.info(f"Revoked product {product_id} for order {order_id} (rows deleted: {deleted})")
        return deleted
