"""
Payment platform adapters.

An adapter turns a platform's raw webhook body into the abstract order event shape
(``event``, ``order_id``, ``customer``, ``line_items``). Adapters only rename and
reshape fields; validation happens afterwards in ``schemas.parse_order_envelope``.
"""
import logging
from typing import Any, Dict, Type

logger = logging.getLogger(__name__)


class PayloadAdapter:
    """Base adapter: the body is already in the abstract shape."""

    name = "passthrough"

    def normalize(self, body: Any) -> Any:
        return body


class CartPandaAdapter(PayloadAdapter):
    """
    Normalize CartPanda order webhooks.

    CartPanda sends the order products under ``line_items`` or ``products``, each with
    ``product_id`` or ``cartpanda_product_id``, and the customer name either as
    ``full_name`` or as ``first_name`` / ``last_name``.
    """

    name = "cartpanda"

    def normalize(self, body: Any) -> Any:
        if not isinstance(body, dict):
            return body

        normalized = dict(body)

        items = body.get("line_items")
        if items is None:
            items = body.get("products")
        if items is None:
            items = []
        if isinstance(items, list):
            normalized["line_items"] = [self._normalize_item(item) for item in items]
        else:
            normalized["line_items"] = items
        normalized.pop("products", None)

        customer = body.get("customer")
        if isinstance(customer, dict):
            normalized["customer"] = self._normalize_customer(customer)

        return normalized

    @staticmethod
    def _normalize_item(item: Any) -> Any:
        if not isinstance(item, dict):
            return item
        normalized = dict(item)
        if normalized.get("product_id") in (None, ""):
            normalized["product_id"] = item.get("cartpanda_product_id")
        return normalized

    @staticmethod
    def _normalize_customer(customer: Dict[str, Any]) -> Dict[str, Any]:
        normalized = dict(customer)
        if not normalized.get("full_name"):
            first = (customer.get("first_name") or "").strip()
            last = (customer.get("last_name") or "").strip()
            full_name = f"{first} {last}".strip()
            normalized["full_name"] = full_name or None
        return normalized


_ADAPTERS: Dict[str, Type[PayloadAdapter]] = {
    PayloadAdapter.name: PayloadAdapter,
    CartPandaAdapter.name: CartPandaAdapter,
}


def get_adapter(name: str) -> PayloadAdapter:
    """
    Look up an adapter by source name.

    Raises:
        ValueError: If no adapter is registered under that name
    """
    adapter_cls = _ADAPTERS.get((name or "").strip().lower())
    if adapter_cls is None:
        raise ValueError(f"Unknown webhook source {name!r}. Known sources: {sorted(_ADAPTERS)}")
    return adapter_cls()


def register_adapter(adapter_cls: Type[PayloadAdapter]) -> Type[PayloadAdapter]:
    """Register an adapter class under its ``name``. Usable as a class decorator."""
    _ADAPTERS[adapter_cls.name] = adapter_cls
    logger.info("Registered webhook adapter %r", adapter_cls.name)
    return adapter_cls
