"""
Order event contract.

Platform adapters normalize raw webhook bodies into ``OrderEnvelope``. The envelope is
then classified into one of the known event kinds (``GrantOrder`` / ``RevokeOrder``),
so business logic never probes optional fields of an untyped payload.
"""
from typing import Annotated, Any, Iterable, List, Literal, Optional, Union
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from entitlement_sync.errors import MalformedPayloadError, UnsupportedEventTypeError


def _coerce_identifier(value: Any) -> Any:
    """Stringify numeric identifiers; platforms send ids as either numbers or strings."""
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return str(int(value)) if float(value).is_integer() else str(value)
    if isinstance(value, str):
        return value.strip()
    return value


class CustomerRef(BaseModel):
    """Customer identity as reported by the payment platform."""

    email: str = Field(..., description="Natural key used to resolve the internal user")
    full_name: Optional[str] = None
    phone: Optional[str] = None

    @field_validator("email")
    @classmethod
    def _email_not_blank(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("customer email must not be empty")
        return v


class LineItem(BaseModel):
    """One product reference inside an order. Platform-specific extras are kept."""

    model_config = ConfigDict(extra="allow")

    product_id: Optional[str] = None

    @field_validator("product_id", mode="before")
    @classmethod
    def _coerce_product_id(cls, v: Any) -> Any:
        v = _coerce_identifier(v)
        return v or None


class OrderEnvelope(BaseModel):
    """Abstract order event shape every adapter normalizes into."""

    event: str
    order_id: str
    customer: Optional[CustomerRef] = None
    line_items: List[LineItem] = Field(default_factory=list)

    @field_validator("event")
    @classmethod
    def _event_not_blank(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("event must not be empty")
        return v

    @field_validator("order_id", mode="before")
    @classmethod
    def _coerce_order_id(cls, v: Any) -> Any:
        v = _coerce_identifier(v)
        if v == "":
            raise ValueError("order_id must not be empty")
        return v


class GrantOrder(BaseModel):
    """Payment succeeded: grant every resolvable line item to the customer."""

    kind: Literal["grant"] = "grant"
    event_type: str
    order_id: str
    customer: CustomerRef
    line_items: List[LineItem]


class RevokeOrder(BaseModel):
    """Refund, cancellation or chargeback: revoke entitlements created by this order."""

    kind: Literal["revoke"] = "revoke"
    event_type: str
    order_id: str
    customer: Optional[CustomerRef] = None
    line_items: List[LineItem]


OrderEvent = Annotated[Union[GrantOrder, RevokeOrder], Field(discriminator="kind")]


def parse_order_envelope(data: Any, grant_events: Iterable[str] = ()) -> OrderEnvelope:
    """
    Validate a normalized body into an OrderEnvelope.

    Args:
        data: Normalized request body
        grant_events: Event tags that grant access; these require a customer email

    Raises:
        MalformedPayloadError: If the body does not fit the order event shape
    """
    if not isinstance(data, dict):
        raise MalformedPayloadError("Request body must be a JSON object")
    try:
        envelope = OrderEnvelope.model_validate(data)
    except ValidationError as e:
        details = "; ".join(
            f"{'.'.join(str(p) for p in err['loc']) or 'body'}: {err['msg']}" for err in e.errors()
        )
        raise MalformedPayloadError(f"Invalid order event: {details}") from e

    if envelope.event in set(grant_events) and envelope.customer is None:
        raise MalformedPayloadError(f"{envelope.event} event is missing customer.email")
    return envelope


def classify(envelope: OrderEnvelope, grant_events: Iterable[str], revoke_events: Iterable[str]) -> OrderEvent:
    """
    Map an envelope's event tag onto a transition.

    Raises:
        UnsupportedEventTypeError: If the tag is neither a grant nor a revoke event
    """
    if envelope.event in set(grant_events):
        return GrantOrder(
            event_type=envelope.event,
            order_id=envelope.order_id,
            customer=envelope.customer,
            line_items=envelope.line_items,
        )
    if envelope.event in set(revoke_events):
        return RevokeOrder(
            event_type=envelope.event,
            order_id=envelope.order_id,
            customer=envelope.customer,
            line_items=envelope.line_items,
        )
    raise UnsupportedEventTypeError(envelope.event)
