"""
Reconciliation engine: turns one classified order event into entitlement changes.

Grant (payment succeeded):
    The customer is resolved once per event. An unknown customer fails the whole event
    with a retryable error and nothing is written. Each line item is then resolved,
    checked and inserted in payload order; a line item whose product has no mapping is
    skipped without affecting the others. A notification is emitted for each new grant;
    notification failures are logged and swallowed.

Revoke (refund / cancellation / chargeback):
    Each resolvable line item deletes the entitlement created by this order for that
    product. Deleting nothing is not an error. No notifications.

The engine never raises: every outcome, including unexpected exceptions, is returned
as a ReconciliationResult carrying processed / retryable / error detail.
"""
import logging
from dataclasses import dataclass, field
from typing import List, Optional, Union

from entitlement_sync.config import Settings, settings as default_settings
from entitlement_sync.errors import (
    EntitlementConflictError,
    EntitlementSyncError,
    StoreUnavailableError,
    UnknownProductMappingError,
)
from entitlement_sync.schemas import GrantOrder, LineItem, OrderEnvelope, RevokeOrder, classify
from entitlement_sync.services.entitlements import EntitlementStore
from entitlement_sync.services.notifications import NotificationEmitter
from entitlement_sync.services.resolver import EntityResolver, ResolvedProduct

logger = logging.getLogger(__name__)

# Line item statuses
GRANTED = "granted"
ALREADY_GRANTED = "already_granted"
REVOKED = "revoked"
NOT_FOUND = "not_found"  # revoke matched no row for this order
SKIPPED = "skipped"
FAILED = "failed"


@dataclass
class LineItemOutcome:
    index: int
    status: str
    external_product_id: Optional[str] = None
    product_id: Optional[str] = None
    detail: Optional[str] = None

    def note(self) -> str:
        ref = self.external_product_id or f"line_items[{self.index}]"
        return f"{ref}: {self.detail}" if self.detail else ref


@dataclass
class ReconciliationResult:
    """
    Outcome of one reconciliation run.

    processed=True means the event reached its end state (possibly with skipped line
    items, reported in error_message as partial-skip notes). processed=False carries an
    error_code and whether a resend could succeed (retryable).
    """
    processed: bool
    retryable: bool = False
    error_code: Optional[str] = None
    error_message: Optional[str] = None
    items: List[LineItemOutcome] = field(default_factory=list)

    @classmethod
    def failure(cls, error: EntitlementSyncError, items: Optional[List[LineItemOutcome]] = None) -> "ReconciliationResult":
        return cls(
            processed=False,
            retryable=error.retryable,
            error_code=error.code,
            error_message=str(error),
            items=items or [],
        )

    def _with_status(self, *statuses: str) -> List[LineItemOutcome]:
        return [item for item in self.items if item.status in statuses]

    @property
    def granted(self) -> List[LineItemOutcome]:
        return self._with_status(GRANTED)

    @property
    def already_granted(self) -> List[LineItemOutcome]:
        return self._with_status(ALREADY_GRANTED)

    @property
    def revoked(self) -> List[LineItemOutcome]:
        return self._with_status(REVOKED)

    @property
    def skipped(self) -> List[LineItemOutcome]:
        return self._with_status(SKIPPED)

    @property
    def failed(self) -> List[LineItemOutcome]:
        return self._with_status(FAILED)

    def to_dict(self) -> dict:
        return {
            "processed": self.processed,
            "retryable": self.retryable,
            "error_code": self.error_code,
            "error_message": self.error_message,
            "granted": [i.product_id for i in self.granted],
            "already_granted": [i.product_id for i in self.already_granted],
            "revoked": [i.product_id for i in self.revoked],
            "skipped": [i.note() for i in self.skipped],
            "failed": [i.note() for i in self.failed],
        }


class ReconciliationEngine:
    """Applies grant / revoke transitions through injected stores."""

    def __init__(
        self,
        resolver: EntityResolver,
        entitlements: EntitlementStore,
        notifier: NotificationEmitter,
        settings: Optional[Settings] = None,
    ):
        self.resolver = resolver
        self.entitlements = entitlements
        self.notifier = notifier
        self.settings = settings or default_settings

    def reconcile(self, envelope: OrderEnvelope) -> ReconciliationResult:
        """Classify and apply one order event. Never raises."""
        try:
            order = classify(envelope, self.settings.grant_events, self.settings.revoke_events)
            if order.kind == "grant":
                return self._grant(order)
            return self._revoke(order)
        except EntitlementSyncError as e:
            logger.warning(f"Order {envelope.order_id} ({envelope.event}) not processed: {e}")
            return ReconciliationResult.failure(e)
        except Exception as e:
            logger.error(f"Unexpected error reconciling order {envelope.order_id} ({envelope.event}): {e}", exc_info=True)
            return ReconciliationResult(
                processed=False,
                retryable=True,
                error_code="unexpected_error",
                error_message=f"unexpected_error: {e}",
            )

    # ------------------------------------------------------------------
    # Grant
    # ------------------------------------------------------------------

    def _grant(self, order: GrantOrder) -> ReconciliationResult:
        # Raises UnknownCustomerError before any write
        user_id = self.resolver.resolve_user(order.customer.email)
        logger.info(f"Granting order {order.order_id} to user {user_id} ({len(order.line_items)} line items)")

        items = [
            self._grant_item(index, item, user_id, order.order_id)
            for index, item in enumerate(order.line_items)
        ]
        return self._summarize(order, items)

    def _grant_item(self, index: int, item: LineItem, user_id: str, order_id: str) -> LineItemOutcome:
        product = self._resolve_item(index, item)
        if isinstance(product, LineItemOutcome):
            return product

        outcome = LineItemOutcome(index=index, status=GRANTED, external_product_id=item.product_id, product_id=product.id)
        try:
            if self.entitlements.exists(user_id, product.id):
                logger.info(f"User {user_id} already has product {product.id}; nothing to do")
                outcome.status = ALREADY_GRANTED
                return outcome
            self.entitlements.grant(user_id, product.id, order_id)
        except EntitlementConflictError:
            outcome.status = ALREADY_GRANTED
            return outcome
        except Exception as e:
            return self._item_failure(outcome, e)

        self._notify_granted(user_id, product)
        return outcome

    def _notify_granted(self, user_id: str, product: ResolvedProduct) -> None:
        try:
            self.notifier.notify(
                user_id,
                self.settings.notification_title,
                self.settings.notification_message.format(product_name=product.name),
                self.settings.notification_type,
            )
        except Exception as e:
            # Notification failures never fail the grant
            logger.error(f"Failed to notify user {user_id} about product {product.id}: {e}", exc_info=True)

    # ------------------------------------------------------------------
    # Revoke
    # ------------------------------------------------------------------

    def _revoke(self, order: RevokeOrder) -> ReconciliationResult:
        logger.info(f"Revoking order {order.order_id} ({len(order.line_items)} line items)")
        items = [
            self._revoke_item(index, item, order.order_id)
            for index, item in enumerate(order.line_items)
        ]
        return self._summarize(order, items)

    def _revoke_item(self, index: int, item: LineItem, order_id: str) -> LineItemOutcome:
        product = self._resolve_item(index, item)
        if isinstance(product, LineItemOutcome):
            return product

        outcome = LineItemOutcome(index=index, status=REVOKED, external_product_id=item.product_id, product_id=product.id)
        try:
            deleted = self.entitlements.revoke_by_order(order_id, product.id)
        except Exception as e:
            return self._item_failure(outcome, e)
        if not deleted:
            outcome.status = NOT_FOUND
        return outcome

    # ------------------------------------------------------------------
    # Shared
    # ------------------------------------------------------------------

    def _resolve_item(self, index: int, item: LineItem) -> Union[ResolvedProduct, LineItemOutcome]:
        """Resolve a line item's product, or return the skip/failure outcome for it."""
        if not item.product_id:
            logger.warning(f"Line item {index} has no product id; skipping")
            return LineItemOutcome(index=index, status=SKIPPED, detail="missing product_id")
        try:
            return self.resolver.resolve_product(item.product_id)
        except UnknownProductMappingError as e:
            logger.warning(f"Skipping line item {index}: {e.message}")
            return LineItemOutcome(index=index, status=SKIPPED, external_product_id=item.product_id, detail=e.code)
        except Exception as e:
            return self._item_failure(
                LineItemOutcome(index=index, status=FAILED, external_product_id=item.product_id), e
            )

    @staticmethod
    def _item_failure(outcome: LineItemOutcome, error: Exception) -> LineItemOutcome:
        if isinstance(error, StoreUnavailableError):
            logger.error(f"Store failure on line item {outcome.index}: {error}", exc_info=True)
            outcome.detail = error.code
        else:
            logger.error(f"Unexpected error on line item {outcome.index}: {error}", exc_info=True)
            outcome.detail = "unexpected_error"
        outcome.status = FAILED
        return outcome

    @staticmethod
    def _summarize(order: Union[GrantOrder, RevokeOrder], items: List[LineItemOutcome]) -> ReconciliationResult:
        result = ReconciliationResult(processed=True, items=items)
        skip_notes = "; ".join(i.note() for i in result.skipped)

        if result.failed:
            failed_notes = "; ".join(i.note() for i in result.failed)
            result.processed = False
            result.retryable = True
            result.error_code = "line_item_failed"
            result.error_message = f"line_item_failed: {failed_notes}"
            if skip_notes:
                result.error_message += f" | partial_skip: {skip_notes}"
        elif skip_notes:
            result.error_message = f"partial_skip: {skip_notes}"

        logger.info(
            f"Order {order.order_id} ({order.event_type}) reconciled: processed={result.processed} "
            f"granted={len(result.granted)} already={len(result.already_granted)} "
            f"revoked={len(result.revoked)} skipped={len(result.skipped)} failed={len(result.failed)}"
        )
        return result
