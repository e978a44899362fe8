"""
Unit tests for the reconciliation engine (grant / revoke transitions).
"""
import pytest
from unittest.mock import Mock, patch

from entitlement_sync.errors import NotificationError, StoreUnavailableError
from entitlement_sync.models import Notification, UserAccount, UserProduct
from entitlement_sync.schemas import parse_order_envelope
from entitlement_sync.services.entitlements import EntitlementStore
from entitlement_sync.services.notifications import NotificationEmitter
from entitlement_sync.services.reconciliation import ReconciliationEngine
from entitlement_sync.services.resolver import EntityResolver

from conftest import paid_event, refunded_event


@pytest.fixture
def make_engine(seeded, test_settings):
    """Build a fresh engine (fresh resolver memo) per reconciliation run, like one request would."""
    def _make(notifier=None, entitlements=None, resolver=None):
        return ReconciliationEngine(
            resolver=resolver or EntityResolver(seeded, "cartpanda"),
            entitlements=entitlements or EntitlementStore(seeded),
            notifier=notifier or NotificationEmitter(seeded),
            settings=test_settings,
        )
    return _make


def _envelope(body, test_settings):
    return parse_order_envelope(body, test_settings.grant_events)


def test_order_paid_grants_entitlement_and_notifies(make_engine, seeded, test_settings):
    """order.paid for a mapped product creates one entitlement and one notification."""
    result = make_engine().reconcile(_envelope(paid_event(), test_settings))

    assert result.processed is True
    assert result.error_message is None
    assert [i.product_id for i in result.granted] == ["P1"]

    rows = seeded.query(UserProduct).all()
    assert len(rows) == 1
    assert rows[0].user_id == "U1"
    assert rows[0].product_id == "P1"
    assert rows[0].order_id == "ORD-1"
    assert rows[0].progress == 0
    assert rows[0].completed_items == []

    notifications = seeded.query(Notification).all()
    assert len(notifications) == 1
    assert notifications[0].user_id == "U1"
    assert notifications[0].type == "new_product"
    assert "Course One" in notifications[0].message
    assert notifications[0].is_read is False


def test_duplicate_order_paid_is_idempotent(make_engine, seeded, test_settings):
    """Delivering the same order.paid twice leaves one entitlement and one notification."""
    first = make_engine().reconcile(_envelope(paid_event(), test_settings))
    second = make_engine().reconcile(_envelope(paid_event(), test_settings))

    assert first.processed is True
    assert second.processed is True
    assert second.granted == []
    assert [i.product_id for i in second.already_granted] == ["P1"]
    assert seeded.query(UserProduct).count() == 1
    assert seeded.query(Notification).count() == 1


def test_already_granted_does_not_touch_existing_row(make_engine, seeded, test_settings):
    """An existing entitlement (e.g. with learning progress) is left exactly as it was."""
    seeded.add(UserProduct(user_id="U1", product_id="P1", order_id=None, progress=40, completed_items=["l1", "l2"]))
    seeded.commit()
    before = seeded.query(UserProduct).one()
    updated_at_before = before.updated_at

    result = make_engine().reconcile(_envelope(paid_event(), test_settings))

    seeded.expire_all()
    after = seeded.query(UserProduct).one()
    assert result.processed is True
    assert after.progress == 40
    assert after.completed_items == ["l1", "l2"]
    assert after.order_id is None
    assert after.updated_at == updated_at_before
    assert seeded.query(Notification).count() == 0


def test_partial_order_skips_unmapped_line_item(make_engine, seeded, test_settings):
    """Three line items with the middle one unmapped: two grants, one skip, processed."""
    body = paid_event(product_ids=("ext-42", "ext-unmapped", "ext-43"))

    result = make_engine().reconcile(_envelope(body, test_settings))

    assert result.processed is True
    assert [i.product_id for i in result.granted] == ["P1", "P2"]
    assert len(result.skipped) == 1
    assert result.skipped[0].external_product_id == "ext-unmapped"
    assert result.error_message.startswith("partial_skip:")
    assert "ext-unmapped" in result.error_message
    assert seeded.query(UserProduct).count() == 2
    assert seeded.query(Notification).count() == 2


def test_line_item_without_product_id_is_skipped(make_engine, seeded, test_settings):
    body = paid_event()
    body["line_items"].append({"quantity": 1})

    result = make_engine().reconcile(_envelope(body, test_settings))

    assert result.processed is True
    assert len(result.granted) == 1
    assert result.skipped[0].detail == "missing product_id"


def test_all_line_items_unmapped_is_processed_with_skip_notes(make_engine, seeded, test_settings):
    """Unmapped products never fail the event, even when nothing else resolves."""
    result = make_engine().reconcile(_envelope(paid_event(product_ids=("nope-1", "nope-2")), test_settings))

    assert result.processed is True
    assert result.retryable is False
    assert result.error_code is None
    assert result.error_message == (
        "partial_skip: nope-1: unknown_product_mapping; nope-2: unknown_product_mapping"
    )
    assert seeded.query(UserProduct).count() == 0
    assert seeded.query(Notification).count() == 0


def test_refund_with_only_unmapped_items_is_processed(make_engine, seeded, test_settings):
    result = make_engine().reconcile(_envelope(refunded_event(product_ids=("nope-1",)), test_settings))

    assert result.processed is True
    assert result.error_message.startswith("partial_skip:")


def test_empty_line_items_is_processed(make_engine, seeded, test_settings):
    result = make_engine().reconcile(_envelope(paid_event(product_ids=()), test_settings))

    assert result.processed is True
    assert result.error_message is None


def test_unknown_customer_is_retryable_and_writes_nothing(make_engine, seeded, test_settings):
    """Unknown email: retryable failure, zero writes; replay after sign-up grants everything."""
    body = paid_event(email="new@x.com", product_ids=("ext-42", "ext-43"))

    result = make_engine().reconcile(_envelope(body, test_settings))

    assert result.processed is False
    assert result.retryable is True
    assert result.error_code == "unknown_customer"
    assert seeded.query(UserProduct).count() == 0
    assert seeded.query(Notification).count() == 0

    seeded.add(UserAccount(id="U2", email="new@x.com"))
    seeded.commit()

    replayed = make_engine().reconcile(_envelope(body, test_settings))

    assert replayed.processed is True
    assert sorted(i.product_id for i in replayed.granted) == ["P1", "P2"]
    assert seeded.query(UserProduct).filter(UserProduct.user_id == "U2").count() == 2


def test_customer_email_match_is_exact(make_engine, seeded, test_settings):
    result = make_engine().reconcile(_envelope(paid_event(email="A@X.COM"), test_settings))

    assert result.error_code == "unknown_customer"


def test_unsupported_event_type_is_terminal(make_engine, seeded, test_settings):
    body = paid_event()
    body["event"] = "order.shipped"

    result = make_engine().reconcile(_envelope(body, test_settings))

    assert result.processed is False
    assert result.retryable is False
    assert result.error_code == "unsupported_event_type"
    assert "order.shipped" in result.error_message
    assert seeded.query(UserProduct).count() == 0


def test_revoke_deletes_entitlement_created_by_same_order(make_engine, seeded, test_settings):
    make_engine().reconcile(_envelope(paid_event(order_id="ORD-9"), test_settings))
    notifications_before = seeded.query(Notification).count()

    result = make_engine().reconcile(_envelope(refunded_event(order_id="ORD-9"), test_settings))

    assert result.processed is True
    assert [i.product_id for i in result.revoked] == ["P1"]
    assert seeded.query(UserProduct).count() == 0
    # No notification for revokes
    assert seeded.query(Notification).count() == notifications_before


def test_revoke_is_scoped_to_originating_order(make_engine, seeded, test_settings):
    """A refund for order A never removes the entitlement created by order B."""
    seeded.add(UserProduct(user_id="U1", product_id="P1", order_id="ORD-B", progress=0, completed_items=[]))
    seeded.commit()

    result = make_engine().reconcile(_envelope(refunded_event(order_id="ORD-A"), test_settings))

    assert result.processed is True
    assert result.items[0].status == "not_found"
    surviving = seeded.query(UserProduct).one()
    assert surviving.order_id == "ORD-B"


def test_revoke_twice_is_not_an_error(make_engine, seeded, test_settings):
    make_engine().reconcile(_envelope(paid_event(), test_settings))
    make_engine().reconcile(_envelope(refunded_event(), test_settings))

    result = make_engine().reconcile(_envelope(refunded_event(), test_settings))

    assert result.processed is True
    assert result.revoked == []


def test_chargeback_is_a_revoke(make_engine, seeded, test_settings):
    make_engine().reconcile(_envelope(paid_event(), test_settings))
    body = refunded_event()
    body["event"] = "order.chargeback"

    result = make_engine().reconcile(_envelope(body, test_settings))

    assert result.processed is True
    assert seeded.query(UserProduct).count() == 0


def test_notification_failure_does_not_fail_grant(make_engine, seeded, test_settings):
    """A failing notifier leaves the entitlement in place and the event processed."""
    notifier = Mock()
    notifier.notify.side_effect = NotificationError("inbox down")

    result = make_engine(notifier=notifier).reconcile(_envelope(paid_event(), test_settings))

    assert result.processed is True
    assert result.error_message is None
    assert seeded.query(UserProduct).count() == 1
    notifier.notify.assert_called_once()


def test_lost_insert_race_counts_as_already_granted(make_engine, seeded, test_settings):
    """The unique index, not the pre-check, is the idempotency guard."""
    seeded.add(UserProduct(user_id="U1", product_id="P1", order_id="ORD-1", progress=0, completed_items=[]))
    seeded.commit()
    entitlements = EntitlementStore(seeded)
    notifier = Mock()

    with patch.object(entitlements, "exists", return_value=False):
        result = make_engine(entitlements=entitlements, notifier=notifier).reconcile(
            _envelope(paid_event(), test_settings)
        )

    assert result.processed is True
    assert [i.product_id for i in result.already_granted] == ["P1"]
    assert seeded.query(UserProduct).count() == 1
    notifier.notify.assert_not_called()


def test_store_failure_on_one_item_is_retryable_and_keeps_other_grants(make_engine, seeded, test_settings):
    entitlements = EntitlementStore(seeded)
    real_grant = entitlements.grant

    def flaky_grant(user_id, product_id, order_id):
        if product_id == "P2":
            raise StoreUnavailableError("connection reset")
        return real_grant(user_id, product_id, order_id)

    with patch.object(entitlements, "grant", side_effect=flaky_grant):
        result = make_engine(entitlements=entitlements).reconcile(
            _envelope(paid_event(product_ids=("ext-42", "ext-43", "ext-44")), test_settings)
        )

    assert result.processed is False
    assert result.retryable is True
    assert result.error_code == "line_item_failed"
    assert [i.product_id for i in result.failed] == ["P2"]
    assert sorted(i.product_id for i in result.granted) == ["P1", "P3"]
    assert seeded.query(UserProduct).count() == 2


def test_directory_outage_is_retryable(make_engine, seeded, test_settings):
    resolver = EntityResolver(seeded, "cartpanda")
    with patch.object(resolver, "resolve_user", side_effect=StoreUnavailableError("db down")):
        result = make_engine(resolver=resolver).reconcile(_envelope(paid_event(), test_settings))

    assert result.processed is False
    assert result.retryable is True
    assert result.error_code == "store_unavailable"


def test_unexpected_exception_is_caught_at_engine_boundary(make_engine, seeded, test_settings):
    resolver = Mock()
    resolver.resolve_user.side_effect = RuntimeError("boom")

    result = make_engine(resolver=resolver).reconcile(_envelope(paid_event(), test_settings))

    assert result.processed is False
    assert result.retryable is True
    assert result.error_code == "unexpected_error"
    assert "boom" in result.error_message


def test_result_to_dict_summarizes_items(make_engine, seeded, test_settings):
    result = make_engine().reconcile(_envelope(paid_event(product_ids=("ext-42", "ext-unknown")), test_settings))

    summary = result.to_dict()
    assert summary["processed"] is True
    assert summary["granted"] == ["P1"]
    assert summary["skipped"] == ["ext-unknown: unknown_product_mapping"]
    assert summary["failed"] == []
