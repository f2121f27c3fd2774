"""Payment session creation: eligibility, pricing and gateway failover."""

import asyncio

import pytest

from conftest import FakeAdapter, FakeLock, add_order, add_product, load_order
from digipay.common.config import EngineConfig
from digipay.common.errors import EngineError
from digipay.services.orchestrator.service import PaymentSessionManager
from digipay.services.orders.models import Order
from digipay.services.provider_adapter.registry import ProviderRegistry


def make_manager(session_factory, registry, config, audit_sink, lock=None):
    return PaymentSessionManager(session_factory, registry, config, audit_sink, lock=lock, service_name="test")


def test_session_created_with_primary_gateway(session_factory, registry, adapters, config, audit_sink):
    """Primary succeeds: backup is never touched and the order moves to PENDING."""

    add_product(session_factory, backup_gateway={"IDR": "ipaymu"})
    add_order(session_factory)
    manager = make_manager(session_factory, registry, config, audit_sink)

    session = asyncio.run(manager.create_session("ORD-1"))

    assert session.provider == "pakasir"
    assert session.reference == "pakasir-ORD-1"
    assert session.amount == 150000
    assert not session.reused
    assert len(adapters["pakasir"].requests) == 1
    assert adapters["pakasir"].requests[0].callback_url == "https://shop.example/webhooks/pakasir"
    assert adapters["ipaymu"].requests == []

    order = load_order(session_factory)
    assert order.status == "PENDING"
    assert order.payment_status == "PENDING"
    assert order.payment_provider == "pakasir"
    assert order.payment_amount == 150000
    assert [entry.event for entry in audit_sink.history("ORD-1")] == ["PAYMENT_CREATED"]


def test_backup_gateway_called_once_after_primary_failure(session_factory, registry, adapters, config, audit_sink):
    add_product(session_factory, backup_gateway={"IDR": "ipaymu"})
    add_order(session_factory)
    adapters["pakasir"].fail = True
    manager = make_manager(session_factory, registry, config, audit_sink)

    session = asyncio.run(manager.create_session("ORD-1"))

    assert session.provider == "ipaymu"
    assert len(adapters["pakasir"].requests) == 1
    assert len(adapters["ipaymu"].requests) == 1
    assert adapters["ipaymu"].requests[0].callback_url == "https://shop.example/webhooks/ipaymu"
    assert load_order(session_factory).payment_provider == "ipaymu"


def test_primary_failure_without_backup_is_reported(session_factory, registry, adapters, config, audit_sink):
    add_product(session_factory)
    add_order(session_factory)
    adapters["pakasir"].fail = True
    manager = make_manager(session_factory, registry, config, audit_sink)

    with pytest.raises(EngineError) as excinfo:
        asyncio.run(manager.create_session("ORD-1"))

    assert excinfo.value.code == "PAYMENT_CREATE_FAILED"
    assert excinfo.value.status_code == 502
    assert excinfo.value.details["primary"] == "pakasir"
    assert len(adapters["pakasir"].requests) == 1
    assert load_order(session_factory).status == "AWAITING_PAYMENT"


def test_both_gateways_failing(session_factory, registry, adapters, audit_sink):
    config = EngineConfig(backup_gateways={"IDR": "tokopay"})
    add_product(session_factory)
    add_order(session_factory)
    adapters["pakasir"].fail = True
    adapters["tokopay"].fail = True
    manager = make_manager(session_factory, registry, config, audit_sink)

    with pytest.raises(EngineError) as excinfo:
        asyncio.run(manager.create_session("ORD-1"))

    assert excinfo.value.details["backup"] == "tokopay"
    assert "backup_error" in excinfo.value.details
    assert len(adapters["tokopay"].requests) == 1


def test_locked_order_is_not_eligible_every_time(session_factory, registry, adapters, config, audit_sink):
    """A paid order never gets a second session, however often checkout retries."""

    add_product(session_factory)
    add_order(session_factory, status="PROCESS", locked=True, payment_status="SUCCESS")
    manager = make_manager(session_factory, registry, config, audit_sink)

    for _ in range(2):
        with pytest.raises(EngineError) as excinfo:
            asyncio.run(manager.create_session("ORD-1"))
        assert excinfo.value.code == "NOT_ELIGIBLE"
    assert adapters["pakasir"].requests == []


def test_existing_session_is_reused(session_factory, registry, adapters, config, audit_sink):
    add_product(session_factory)
    add_order(
        session_factory,
        status="PENDING",
        payment_status="PENDING",
        payment_provider="pakasir",
        payment_provider_ref="pakasir-ORD-1",
        payment_amount=150000,
        payment_checkout_url="https://pay.example/old",
    )
    manager = make_manager(session_factory, registry, config, audit_sink)

    session = asyncio.run(manager.create_session("ORD-1"))

    assert session.reused
    assert session.reference == "pakasir-ORD-1"
    assert session.checkout_url == "https://pay.example/old"
    assert adapters["pakasir"].requests == []


def test_price_not_found_for_currency(session_factory, registry, config, audit_sink):
    add_product(session_factory)
    add_order(session_factory)
    manager = make_manager(session_factory, registry, config, audit_sink)

    with pytest.raises(EngineError) as excinfo:
        asyncio.run(manager.create_session("ORD-1", "USD"))

    assert excinfo.value.code == "PRICE_NOT_FOUND"


def test_catalog_price_overrides_stale_order_price(session_factory, registry, adapters, config, audit_sink):
    add_product(session_factory, price={"IDR": 175000})
    add_order(session_factory, selling_price=150000, quantity=2)
    manager = make_manager(session_factory, registry, config, audit_sink)

    session = asyncio.run(manager.create_session("ORD-1"))

    assert session.amount == 350000
    order = load_order(session_factory)
    assert order.selling_price == 175000
    assert order.payment_amount == 350000


def test_unknown_order_and_product(session_factory, registry, config, audit_sink):
    manager = make_manager(session_factory, registry, config, audit_sink)
    with pytest.raises(EngineError) as excinfo:
        asyncio.run(manager.create_session("missing"))
    assert excinfo.value.code == "ORDER_NOT_FOUND"

    add_order(session_factory, slug="gone")
    with pytest.raises(EngineError) as excinfo:
        asyncio.run(manager.create_session("ORD-1"))
    assert excinfo.value.code == "PRODUCT_NOT_FOUND"


def test_concurrent_session_request_is_rejected(session_factory, registry, adapters, config, audit_sink):
    add_product(session_factory)
    add_order(session_factory)
    manager = make_manager(session_factory, registry, config, audit_sink, lock=FakeLock(acquired=False))

    with pytest.raises(EngineError) as excinfo:
        asyncio.run(manager.create_session("ORD-1"))

    assert excinfo.value.code == "SESSION_IN_PROGRESS"
    assert excinfo.value.status_code == 409
    assert adapters["pakasir"].requests == []


class RejectingGateway(FakeAdapter):
    """Gateway that succeeds while an admin rejects the order in the meantime."""

    def __init__(self, name, session_factory):
        super().__init__(name)
        self.session_factory = session_factory

    async def create_payment(self, request):
        with self.session_factory() as db:
            order = db.get(Order, request.order_id)
            order.status = "REJECTED"
            order.rejection_reason = "fraud"
            order.version += 1
            db.commit()
        return await super().create_payment(request)


def test_session_returned_when_order_changes_during_provider_call(session_factory, config, audit_sink):
    """The provider already holds the session, so it is returned even though it cannot be recorded."""

    add_product(session_factory)
    add_order(session_factory)
    registry = ProviderRegistry([RejectingGateway("pakasir", session_factory)])
    manager = make_manager(session_factory, registry, config, audit_sink)

    session = asyncio.run(manager.create_session("ORD-1"))

    assert session.provider == "pakasir"
    assert session.reference == "pakasir-ORD-1"
    order = load_order(session_factory)
    assert order.status == "REJECTED"
    assert order.payment_provider_ref is None
    entries = audit_sink.history("ORD-1")
    assert [entry.event for entry in entries] == ["PAYMENT_CREATED"]
    assert entries[0].payload["persisted"] is False
