"""Webhook reconciliation: idempotency, amount tolerance and provider-facing outcomes."""

import asyncio
import json
from decimal import Decimal

import pytest

from conftest import add_order, add_product, add_stock, load_order
from digipay.common.errors import WebhookError
from digipay.services.orchestrator.reconciler import WebhookReconciler, decode_payload, within_tolerance
from digipay.services.orders.models import OutboxEvent
from digipay.services.orders.store import OrderStore
from digipay.services.provider_adapter.base import CallbackStatus, CanonicalCallback


@pytest.fixture
def reconciler(session_factory, registry, config, audit_sink, dispatcher):
    return WebhookReconciler(session_factory, registry, config, audit_sink, dispatcher, service_name="test")


def callback(reconciler, provider="pakasir", **payload):
    body = json.dumps(payload).encode()
    return asyncio.run(reconciler.handle_callback(provider, body, {}, "application/json"))


def pending_order(session_factory, **fields):
    values = {
        "status": "PENDING",
        "payment_status": "PENDING",
        "payment_provider": "pakasir",
        "payment_provider_ref": "pakasir-ORD-1",
        "payment_amount": 150000,
    }
    values.update(fields)
    return add_order(session_factory, **values)


def test_tolerance_boundary_is_inclusive():
    assert within_tolerance(100000, 99000, Decimal("1"))
    assert within_tolerance(100000, 101000, Decimal("1"))
    assert not within_tolerance(100000, 98999, Decimal("1"))
    assert within_tolerance(100000, 100000, Decimal("0"))


def test_decode_form_encoded_body():
    assert decode_payload(b"order_id=ORD-1&status=completed", "application/x-www-form-urlencoded") == {
        "order_id": "ORD-1",
        "status": "completed",
    }
    with pytest.raises(ValueError):
        decode_payload(b"[1, 2]", "application/json")


def test_paid_callback_delivers_preloaded_stock(session_factory, reconciler, audit_sink):
    """End to end: a 150000 IDR callback pays and delivers one stock item."""

    add_product(session_factory)
    add_stock(session_factory, count=2)
    pending_order(session_factory)

    ack = callback(reconciler, order_id="ORD-1", status="SUCCESS", amount=150000)

    assert ack["success"] is True
    assert ack["outcome"] == "paid"
    assert ack["delivery"] == "delivered"
    order = load_order(session_factory)
    assert order.status == "SUCCESS"
    assert order.payment_status == "SUCCESS"
    assert order.locked is True
    assert order.delivery_status == "DELIVERED"
    assert order.delivery_content["email"].startswith("acct")
    assert order.final_profit == 50000
    assert order.margin == pytest.approx(33.33)
    events = [entry.event for entry in audit_sink.history("ORD-1")]
    assert events == ["PAYMENT_CONFIRMED", "DELIVERED_PRELOADED"]


def test_replayed_callback_is_a_noop(session_factory, reconciler, audit_sink):
    add_product(session_factory)
    add_stock(session_factory, count=2)
    pending_order(session_factory)

    callback(reconciler, order_id="ORD-1", status="SUCCESS", amount=150000)
    first = load_order(session_factory)
    ack = callback(reconciler, order_id="ORD-1", status="SUCCESS", amount=150000)

    assert ack["outcome"] == "duplicate"
    assert "delivery" not in ack
    second = load_order(session_factory)
    assert second.version == first.version
    assert second.delivery_content == first.delivery_content
    events = [entry.event for entry in audit_sink.history("ORD-1")]
    assert events.count("DELIVERED_PRELOADED") == 1
    assert events[-1] == "CALLBACK_DUPLICATE"


def test_amount_within_tolerance_is_accepted(session_factory, reconciler):
    add_product(session_factory, delivery_type="manual")
    pending_order(session_factory, payment_amount=100000, selling_price=100000, capital_cost=80000)

    ack = callback(reconciler, order_id="ORD-1", status="SUCCESS", amount=99000)

    assert ack["outcome"] == "paid"
    assert ack["delivery"] == "pending_admin"
    order = load_order(session_factory)
    assert order.status == "PROCESS"
    assert order.payment_received_amount == 99000
    assert order.delivery_status == "PENDING"


def test_amount_outside_tolerance_is_a_discrepancy(session_factory, reconciler, audit_sink):
    add_product(session_factory)
    add_stock(session_factory)
    pending_order(session_factory, payment_amount=100000, selling_price=100000)

    ack = callback(reconciler, order_id="ORD-1", status="SUCCESS", amount=98000)

    assert ack["success"] is True
    assert ack["outcome"] == "discrepancy"
    order = load_order(session_factory)
    assert order.status == "DISCREPANCY"
    assert order.payment_expected_amount == 100000
    assert order.payment_received_amount == 98000
    assert order.delivery_status is None
    assert [entry.event for entry in audit_sink.history("ORD-1")] == ["PAYMENT_DISCREPANCY"]
    with session_factory() as db:
        topics = [event.topic for event in db.query(OutboxEvent).all()]
    assert topics == ["payment.discrepancy"]


def test_failed_callback_closes_order(session_factory, reconciler):
    add_product(session_factory)
    pending_order(session_factory)

    ack = callback(reconciler, order_id="ORD-1", status="EXPIRED")

    assert ack["outcome"] == "failed"
    order = load_order(session_factory)
    assert order.status == "FAILED"
    assert order.payment_status == "FAILED"
    assert order.payment_failure_reason == "pakasir reported EXPIRED"


def test_callback_on_terminal_order_is_acknowledged(session_factory, reconciler, audit_sink):
    add_product(session_factory)
    pending_order(session_factory, status="REJECTED")

    ack = callback(reconciler, order_id="ORD-1", status="SUCCESS", amount=150000)

    assert ack["outcome"] == "ignored"
    assert load_order(session_factory).status == "REJECTED"
    assert [entry.event for entry in audit_sink.history("ORD-1")] == ["CALLBACK_IGNORED"]


def test_pending_callback_keeps_order_open(session_factory, reconciler):
    add_product(session_factory)
    add_order(session_factory)

    ack = callback(reconciler, order_id="ORD-1", status="PENDING", ref="pakasir-ORD-1")

    assert ack["outcome"] == "pending"
    order = load_order(session_factory)
    assert order.status == "PENDING"
    assert order.payment_provider_ref == "pakasir-ORD-1"


def test_order_resolved_by_provider_reference(session_factory, reconciler):
    add_product(session_factory, delivery_type="manual")
    pending_order(session_factory, payment_provider="paypal", payment_provider_ref="PP-123")

    ack = callback(reconciler, provider="paypal", ref="PP-123", status="SUCCESS", amount=150000)

    assert ack["outcome"] == "paid"
    assert load_order(session_factory).status == "PROCESS"


def test_invalid_signature_rejected_only_when_enforced(session_factory, reconciler, adapters):
    add_product(session_factory, delivery_type="manual")
    pending_order(session_factory)
    adapters["tokopay"].valid_signature = False
    adapters["pakasir"].valid_signature = False

    with pytest.raises(WebhookError) as excinfo:
        callback(reconciler, provider="tokopay", order_id="ORD-1", status="SUCCESS", amount=150000)
    assert excinfo.value.status_code == 401
    assert load_order(session_factory).status == "PENDING"

    ack = callback(reconciler, provider="pakasir", order_id="ORD-1", status="SUCCESS", amount=150000)
    assert ack["outcome"] == "paid"


def test_provider_facing_errors(session_factory, reconciler):
    with pytest.raises(WebhookError) as excinfo:
        callback(reconciler, provider="stripe", order_id="ORD-1", status="SUCCESS")
    assert excinfo.value.status_code == 404

    with pytest.raises(WebhookError) as excinfo:
        asyncio.run(reconciler.handle_callback("pakasir", b"not json", {}, "application/json"))
    assert excinfo.value.status_code == 400

    with pytest.raises(WebhookError) as excinfo:
        callback(reconciler, status="SUCCESS", amount=1)
    assert excinfo.value.status_code == 400

    with pytest.raises(WebhookError) as excinfo:
        callback(reconciler, order_id="ORD-404", status="SUCCESS", amount=1)
    assert excinfo.value.status_code == 404


def test_out_of_stock_leaves_paid_order_with_error(session_factory, reconciler):
    add_product(session_factory)
    pending_order(session_factory)

    ack = callback(reconciler, order_id="ORD-1", status="SUCCESS", amount=150000)

    assert ack["outcome"] == "paid"
    assert ack["delivery"] == "failed"
    order = load_order(session_factory)
    assert order.status == "PROCESS"
    assert order.delivery_status == "FAILED"
    assert order.delivery_error == "OUT_OF_STOCK"


def test_status_poll_reconciles_order(session_factory, reconciler, adapters):
    add_product(session_factory, delivery_type="manual")
    pending_order(session_factory)
    adapters["pakasir"].status_result = CanonicalCallback(
        status=CallbackStatus.SUCCESS, order_id="ORD-1", provider_ref="pakasir-ORD-1", amount=150000
    )

    ack = asyncio.run(reconciler.poll_order("ORD-1", "ops"))

    assert ack["outcome"] == "paid"
    assert load_order(session_factory).payment_status == "SUCCESS"


def test_callback_with_different_reference_keeps_stored_reference(session_factory, reconciler):
    add_product(session_factory, delivery_type="manual")
    pending_order(session_factory)

    ack = callback(reconciler, order_id="ORD-1", ref="pakasir-OTHER", status="SUCCESS", amount=150000)

    assert ack["outcome"] == "paid"
    order = load_order(session_factory)
    assert order.payment_status == "SUCCESS"
    assert order.payment_provider_ref == "pakasir-ORD-1"


class RacingStore(OrderStore):
    """Settles the order from another session just before the first transition is written."""

    def __init__(self, session_factory):
        super().__init__()
        self.session_factory = session_factory
        self.raced = False

    def transition(self, db, order, new_status, values=None, *conditions):
        if not self.raced:
            self.raced = True
            with self.session_factory() as other:
                competing = self.get(other, order.order_id)
                super().transition(other, competing, "PROCESS", {"payment_status": "SUCCESS", "locked": True})
                other.commit()
        return super().transition(db, order, new_status, values, *conditions)


def test_lost_write_is_retried_against_fresh_state(session_factory, registry, config, audit_sink, dispatcher):
    """A concurrent settlement makes the retry stop at the idempotency gate."""

    add_product(session_factory)
    add_stock(session_factory)
    pending_order(session_factory)
    store = RacingStore(session_factory)
    racing = WebhookReconciler(session_factory, registry, config, audit_sink, dispatcher, store=store)

    ack = callback(racing, order_id="ORD-1", status="SUCCESS", amount=150000)

    assert store.raced
    assert ack["outcome"] == "duplicate"
    assert "delivery" not in ack
    order = load_order(session_factory)
    assert order.status == "PROCESS"
    assert order.payment_status == "SUCCESS"
    assert order.payment_paid_at is None
    assert [entry.event for entry in audit_sink.history("ORD-1")] == ["CALLBACK_DUPLICATE"]


def test_scheduled_delivery_runs_after_acknowledgement(session_factory, reconciler):
    add_product(session_factory)
    add_stock(session_factory)
    pending_order(session_factory)
    scheduled = []
    body = json.dumps({"order_id": "ORD-1", "status": "SUCCESS", "amount": 150000}).encode()

    ack = asyncio.run(
        reconciler.handle_callback(
            "pakasir", body, {}, "application/json", schedule=lambda func, *args: scheduled.append((func, args))
        )
    )

    assert ack["outcome"] == "paid"
    assert ack["delivery"] == "scheduled"
    assert load_order(session_factory).delivery_status is None

    func, args = scheduled[0]
    assert asyncio.run(func(*args)) == "delivered"
    assert load_order(session_factory).delivery_status == "DELIVERED"
