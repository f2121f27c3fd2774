"""Admin operations: manual delivery, redelivery, rejection and read views."""

import asyncio
from datetime import datetime, timedelta, timezone

import pytest
from pydantic import ValidationError

from conftest import add_order, add_product, add_stock, load_order
from digipay.common.errors import EngineError
from digipay.services.orchestrator.admin import AdminService
from digipay.services.orchestrator.schemas import ManualDeliveryRequest
from digipay.services.orders.models import OutboxEvent


@pytest.fixture
def admin(session_factory, config, audit_sink, dispatcher):
    return AdminService(session_factory, config, audit_sink, dispatcher, service_name="test")


def paid_order(session_factory, **fields):
    values = {"status": "PROCESS", "payment_status": "SUCCESS", "locked": True}
    values.update(fields)
    return add_order(session_factory, **values)


def test_manual_delivery_request_requires_content():
    with pytest.raises(ValidationError):
        ManualDeliveryRequest(notes="nothing to send")


def test_masked_view_hides_credentials():
    request = ManualDeliveryRequest(account={"username": "buyer@mail.com", "password": "hunter22"}, code="ABCD-1234")

    masked = request.masked()

    assert masked["account"] == {"username": "buyer@mail.com", "password": "********"}
    assert masked["code"] == "ABCD****"
    assert ManualDeliveryRequest(code="XYZ").masked()["code"] == "****"
    assert ManualDeliveryRequest(content="long secret").masked() == {"content_length": 11}


def test_manual_delivery_completes_order(session_factory, admin, audit_sink):
    add_product(session_factory, delivery_type="manual")
    paid_order(session_factory, delivery_status="PENDING", delivery_type="manual")
    request = ManualDeliveryRequest(account={"username": "buyer@mail.com", "password": "hunter22"})

    result = admin.trigger_manual_delivery("ORD-1", request, "admin-7")

    assert result.success
    order = load_order(session_factory)
    assert order.status == "COMPLETED"
    assert order.delivery_status == "DELIVERED"
    assert order.delivered_by == "admin-7"
    assert order.delivery_content["account"]["password"] == "hunter22"
    entries = audit_sink.history("ORD-1")
    assert [entry.event for entry in entries] == ["DELIVERED_MANUAL"]
    assert entries[0].payload["delivery"]["account"]["password"] == "********"
    assert entries[0].actor == {"type": "admin", "id": "admin-7"}
    with session_factory() as db:
        assert [event.topic for event in db.query(OutboxEvent).all()] == ["delivery.completed"]


def test_manual_delivery_twice_reports_already_delivered(session_factory, admin):
    add_product(session_factory, delivery_type="manual")
    paid_order(session_factory)
    admin.trigger_manual_delivery("ORD-1", ManualDeliveryRequest(code="CODE-1"), "admin-1")

    with pytest.raises(EngineError) as excinfo:
        admin.trigger_manual_delivery("ORD-1", ManualDeliveryRequest(code="CODE-2"), "admin-2")

    assert excinfo.value.code == "ALREADY_DELIVERED"
    assert excinfo.value.details["delivered_by"] == "admin-1"
    assert load_order(session_factory).delivery_content == {"code": "CODE-1"}


def test_manual_delivery_blocked_by_active_claim(session_factory, admin):
    add_product(session_factory, delivery_type="api")
    paid_order(
        session_factory,
        delivery_status="PROCESSING",
        delivery_claim_id="claim-1",
        delivery_claimed_at=datetime.now(timezone.utc),
        delivery_claim_expires_at=datetime.now(timezone.utc) + timedelta(minutes=5),
    )

    with pytest.raises(EngineError) as excinfo:
        admin.trigger_manual_delivery("ORD-1", ManualDeliveryRequest(code="CODE-1"), "admin-1")

    assert excinfo.value.code == "DELIVERY_IN_PROGRESS"
    assert load_order(session_factory).status == "PROCESS"


def test_expired_claim_is_listed_and_closed_by_hand(session_factory, admin):
    """Only claims whose lease has run out show up as needing attention."""

    add_product(session_factory, delivery_type="api")
    now = datetime.now(timezone.utc)
    paid_order(
        session_factory,
        delivery_status="PROCESSING",
        delivery_claim_id="crashed-worker",
        delivery_claimed_at=now - timedelta(minutes=10),
        delivery_claim_expires_at=now - timedelta(minutes=1),
    )
    paid_order(
        session_factory,
        order_id="ORD-2",
        delivery_status="PROCESSING",
        delivery_claim_id="busy-worker",
        delivery_claimed_at=now,
        delivery_claim_expires_at=now + timedelta(minutes=5),
    )

    assert [order.order_id for order in admin.list_pending_deliveries()] == ["ORD-1"]

    admin.trigger_manual_delivery("ORD-1", ManualDeliveryRequest(code="CODE-1"), "admin-1")

    order = load_order(session_factory)
    assert order.status == "COMPLETED"
    assert order.delivery_claim_id is None
    assert order.delivery_claim_expires_at is None


def test_out_of_stock_then_manual_delivery(session_factory, admin, dispatcher):
    """A paid order that ran out of stock is closed by hand."""

    add_product(session_factory)
    paid_order(session_factory)
    failed = asyncio.run(dispatcher.deliver("ORD-1"))
    assert failed.error == "OUT_OF_STOCK"
    assert [order.order_id for order in admin.list_pending_deliveries()] == ["ORD-1"]

    admin.trigger_manual_delivery("ORD-1", ManualDeliveryRequest(content="voucher XYZ"), "admin-1")

    order = load_order(session_factory)
    assert order.status == "COMPLETED"
    assert order.delivery_error is None
    assert admin.list_pending_deliveries() == []


def test_manual_delivery_requires_paid_order(session_factory, admin):
    add_product(session_factory)
    add_order(session_factory)

    with pytest.raises(EngineError) as excinfo:
        admin.trigger_manual_delivery("ORD-1", ManualDeliveryRequest(code="C"), "admin-1")

    assert excinfo.value.code == "NOT_ELIGIBLE"


def test_redelivery_runs_strategy_once(session_factory, admin):
    add_product(session_factory)
    add_stock(session_factory, count=2)
    paid_order(session_factory)

    first = asyncio.run(admin.trigger_redelivery("ORD-1", "admin-1"))
    second = asyncio.run(admin.trigger_redelivery("ORD-1", "admin-1"))

    assert first.status == "delivered"
    assert second.status == "already_delivered"
    assert load_order(session_factory).delivered_by == "admin-1"


def test_reject_unpaid_order(session_factory, admin, audit_sink):
    add_product(session_factory)
    add_order(session_factory, status="PENDING")

    order = admin.reject_order("ORD-1", "  duplicate order  ", "admin-1")

    assert order.status == "REJECTED"
    assert order.rejection_reason == "duplicate order"
    assert [entry.event for entry in audit_sink.history("ORD-1")] == ["ORDER_REJECTED"]


def test_reject_requires_reason_and_unpaid_order(session_factory, admin):
    add_product(session_factory)
    paid_order(session_factory)

    with pytest.raises(EngineError) as excinfo:
        admin.reject_order("ORD-1", "   ", "admin-1")
    assert excinfo.value.code == "INVALID_REQUEST"

    with pytest.raises(EngineError) as excinfo:
        admin.reject_order("ORD-1", "fraud", "admin-1")
    assert excinfo.value.code == "NOT_ELIGIBLE"
    assert load_order(session_factory).status == "PROCESS"


def test_pending_payments_lists_stale_sessions(session_factory, admin):
    old = datetime.now(timezone.utc) - timedelta(hours=1)
    add_order(session_factory, "ORD-OLD", status="PENDING", payment_provider="pakasir", payment_created_at=old)
    add_order(
        session_factory,
        "ORD-NEW",
        status="PENDING",
        payment_provider="pakasir",
        payment_created_at=datetime.now(timezone.utc),
    )
    add_order(session_factory, "ORD-NONE")

    assert [order.order_id for order in admin.list_pending_payments(older_than_minutes=15)] == ["ORD-OLD"]


def test_unknown_order(admin):
    with pytest.raises(EngineError) as excinfo:
        admin.get_order("nope")
    assert excinfo.value.code == "ORDER_NOT_FOUND"
    assert excinfo.value.status_code == 404
