"""
Tests for order envelope parsing, classification and platform adapters.
"""
import pytest
from pydantic import TypeAdapter

from entitlement_sync.adapters import CartPandaAdapter, PayloadAdapter, get_adapter, register_adapter
from entitlement_sync.errors import MalformedPayloadError, UnsupportedEventTypeError
from entitlement_sync.schemas import GrantOrder, OrderEvent, RevokeOrder, classify, parse_order_envelope

GRANT = ["order.paid"]
REVOKE = ["order.refunded", "order.cancelled", "order.chargeback"]


class TestParseOrderEnvelope:
    def test_numeric_ids_are_stringified(self):
        envelope = parse_order_envelope(
            {"event": "order.paid", "order_id": 77, "customer": {"email": " a@x.com "}, "line_items": [{"product_id": 42}]},
            GRANT,
        )

        assert envelope.order_id == "77"
        assert envelope.customer.email == "a@x.com"
        assert envelope.line_items[0].product_id == "42"

    def test_line_item_extras_are_kept(self):
        envelope = parse_order_envelope(
            {"event": "order.refunded", "order_id": "O", "line_items": [{"product_id": "x", "quantity": 2}]},
            GRANT,
        )

        assert envelope.line_items[0].model_extra == {"quantity": 2}

    def test_blank_product_id_becomes_none(self):
        envelope = parse_order_envelope(
            {"event": "order.refunded", "order_id": "O", "line_items": [{"product_id": ""}]},
            GRANT,
        )

        assert envelope.line_items[0].product_id is None

    def test_missing_line_items_defaults_to_empty(self):
        envelope = parse_order_envelope({"event": "order.refunded", "order_id": "O"}, GRANT)

        assert envelope.line_items == []

    @pytest.mark.parametrize("body", [
        None,
        "order.paid",
        [],
        {"order_id": "O"},
        {"event": "", "order_id": "O"},
        {"event": "order.refunded", "order_id": ""},
        {"event": "order.refunded", "order_id": "O", "line_items": "nope"},
        {"event": "order.paid", "order_id": "O", "customer": {"email": "  "}},
    ])
    def test_malformed_bodies_are_rejected(self, body):
        with pytest.raises(MalformedPayloadError):
            parse_order_envelope(body, GRANT)

    def test_grant_event_requires_customer(self):
        with pytest.raises(MalformedPayloadError) as exc:
            parse_order_envelope({"event": "order.paid", "order_id": "O"}, GRANT)

        assert exc.value.code == "malformed_payload"
        assert "customer.email" in exc.value.message

    def test_revoke_event_does_not_require_customer(self):
        envelope = parse_order_envelope({"event": "order.cancelled", "order_id": "O"}, GRANT)

        assert envelope.customer is None

    def test_unknown_event_still_parses(self):
        envelope = parse_order_envelope({"event": "order.shipped", "order_id": "O"}, GRANT)

        assert envelope.event == "order.shipped"


class TestClassify:
    def test_grant(self):
        envelope = parse_order_envelope(
            {"event": "order.paid", "order_id": "O", "customer": {"email": "a@x.com"}}, GRANT
        )

        order = classify(envelope, GRANT, REVOKE)

        assert isinstance(order, GrantOrder)
        assert order.kind == "grant"
        assert order.customer.email == "a@x.com"

    @pytest.mark.parametrize("event", REVOKE)
    def test_revoke_events(self, event):
        envelope = parse_order_envelope({"event": event, "order_id": "O"}, GRANT)

        order = classify(envelope, GRANT, REVOKE)

        assert isinstance(order, RevokeOrder)
        assert order.event_type == event

    def test_unsupported(self):
        envelope = parse_order_envelope({"event": "order.shipped", "order_id": "O"}, GRANT)

        with pytest.raises(UnsupportedEventTypeError) as exc:
            classify(envelope, GRANT, REVOKE)

        assert exc.value.retryable is False
        assert exc.value.event_type == "order.shipped"

    def test_order_event_union_discriminates_on_kind(self):
        adapter = TypeAdapter(OrderEvent)

        order = adapter.validate_python(
            {"kind": "revoke", "event_type": "order.refunded", "order_id": "O", "line_items": []}
        )

        assert isinstance(order, RevokeOrder)


class TestAdapters:
    def test_get_adapter_is_case_insensitive(self):
        assert isinstance(get_adapter("CartPanda"), CartPandaAdapter)
        assert type(get_adapter("passthrough")) is PayloadAdapter

    def test_get_adapter_unknown(self):
        with pytest.raises(ValueError):
            get_adapter("shopify")

    def test_cartpanda_products_and_names(self):
        body = {
            "event": "order.paid",
            "order_id": 5,
            "customer": {"email": "a@x.com", "first_name": "Ana", "last_name": "Souza"},
            "products": [{"cartpanda_product_id": 9}, {"product_id": "p-1", "cartpanda_product_id": 10}],
        }

        normalized = CartPandaAdapter().normalize(body)

        assert "products" not in normalized
        assert [item["product_id"] for item in normalized["line_items"]] == [9, "p-1"]
        assert normalized["customer"]["full_name"] == "Ana Souza"
        # The raw body is not mutated
        assert "products" in body

    def test_cartpanda_keeps_explicit_full_name(self):
        normalized = CartPandaAdapter().normalize(
            {"customer": {"email": "a@x.com", "full_name": "A. S.", "first_name": "Ana"}}
        )

        assert normalized["customer"]["full_name"] == "A. S."
        assert normalized["line_items"] == []

    def test_cartpanda_passes_non_objects_through(self):
        assert CartPandaAdapter().normalize(["x"]) == ["x"]

    def test_register_adapter(self):
        @register_adapter
        class UpperAdapter(PayloadAdapter):
            name = "test-upper"

            def normalize(self, body):
                return {**body, "event": body["event"].lower()}

        adapter = get_adapter("test-upper")

        assert adapter.normalize({"event": "ORDER.PAID"})["event"] == "order.paid"
