"""
Error taxonomy for webhook ingestion and entitlement reconciliation.

Each error carries a stable ``code`` (written to the event log and returned to the
sender) and a ``retryable`` flag that decides whether the sender is asked to resend.
"""
from typing import Optional


class EntitlementSyncError(Exception):
    """Base class for all entitlement sync errors."""

    code = "entitlement_sync_error"
    retryable = False

    def __init__(self, message: str, code: Optional[str] = None):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code

    def __str__(self) -> str:
        return f"{self.code}: {self.message}"


class MalformedPayloadError(EntitlementSyncError):
    """Raised when a request body cannot be parsed into the order event shape."""

    code = "malformed_payload"


class UnsupportedEventTypeError(EntitlementSyncError):
    """Raised when an event tag has no grant or revoke transition."""

    code = "unsupported_event_type"

    def __init__(self, event_type: str):
        super().__init__(f"Unsupported event type: {event_type}")
        self.event_type = event_type


class UnknownCustomerError(EntitlementSyncError):
    """
    Raised when the customer email matches no user.

    Retryable: the customer is expected to sign up, after which the sender's retry
    or an operator replay completes the grant.
    """

    code = "unknown_customer"
    retryable = True

    def __init__(self, email: str):
        super().__init__(f"No user found for customer email {email!r}; user must sign up first")
        self.email = email


class UnknownProductMappingError(EntitlementSyncError):
    """Raised when an external product id has no mapping. Scoped to one line item."""

    code = "unknown_product_mapping"

    def __init__(self, external_product_id: str, source: str):
        super().__init__(f"No product mapping for {source} product id {external_product_id!r}")
        self.external_product_id = external_product_id
        self.source = source


class StoreUnavailableError(EntitlementSyncError):
    """Raised when a backing store read or write fails."""

    code = "store_unavailable"
    retryable = True


class EntitlementConflictError(EntitlementSyncError):
    """
    Raised when a grant loses the (user, product) uniqueness race.

    Callers treat it exactly like "entitlement already existed".
    """

    code = "entitlement_conflict"

    def __init__(self, user_id: str, product_id: str):
        super().__init__(f"Entitlement already exists for user {user_id} and product {product_id}")
        self.user_id = user_id
        self.product_id = product_id


class NotificationError(EntitlementSyncError):
    """Raised when a notification cannot be stored. Never escalated past the engine."""

    code = "notification_failed"
