"""Shared fixtures: a throwaway SQLite order store and scripted provider adapters."""

import os
import tempfile
from contextlib import contextmanager

# Settings are read at import time; point them at local-only resources.
os.environ.setdefault("POSTGRES_DSN", f"sqlite:///{os.path.join(tempfile.gettempdir(), 'digipay-test.db')}")
os.environ.setdefault("API_KEY", "test-key")
os.environ.setdefault("REDIS_URL", "redis://127.0.0.1:1/0")
os.environ.setdefault("OTEL_SDK_DISABLED", "true")

import pytest

from digipay.common.config import EngineConfig
from digipay.common.db import Base, build_engine, build_session_factory
from digipay.services.delivery.service import DeliveryDispatcher
from digipay.services.orders.audit import AuditSink
from digipay.services.orders.models import Order, Product, StockItem
from digipay.services.provider_adapter.base import (
    CallbackStatus,
    CanonicalCallback,
    PaymentSession,
    ProviderAdapter,
    ProviderError,
    parse_amount,
)
from digipay.services.provider_adapter.registry import ProviderRegistry


class FakeAdapter(ProviderAdapter):
    """In-memory gateway: records calls, optionally fails, echoes simple callbacks."""

    def __init__(self, name: str, signature_enforced: bool = False, fail: bool = False) -> None:
        super().__init__()
        self.name = name
        self.signature_enforced = signature_enforced
        self.fail = fail
        self.valid_signature = True
        self.requests = []
        self.status_result = None

    async def create_payment(self, request):
        self.requests.append(request)
        if self.fail:
            raise ProviderError(self.name, "gateway unavailable")
        return PaymentSession(
            provider=self.name,
            reference=f"{self.name}-{request.order_id}",
            amount=request.amount,
            checkout_url=f"https://pay.example/{self.name}/{request.order_id}",
        )

    async def verify_callback(self, payload, headers):
        return self.valid_signature

    def parse_callback(self, payload):
        if "status" not in payload:
            raise ValueError("missing status")
        return CanonicalCallback(
            status=payload["status"],
            order_id=payload.get("order_id"),
            provider_ref=payload.get("ref"),
            amount=parse_amount(payload.get("amount")),
        )

    async def check_status(self, reference, amount=None):
        return self.status_result or CanonicalCallback(status=CallbackStatus.PENDING, order_id=reference)


class FakeLock:
    def __init__(self, acquired: bool = True) -> None:
        self.acquired = acquired
        self.held = []

    @contextmanager
    def hold(self, order_id):
        self.held.append(order_id)
        yield self.acquired


@pytest.fixture
def session_factory(tmp_path):
    engine = build_engine(f"sqlite:///{tmp_path / 'engine.db'}")
    Base.metadata.create_all(engine)
    yield build_session_factory(engine)
    engine.dispose()


@pytest.fixture
def config():
    return EngineConfig(
        public_base_url="https://shop.example",
        default_gateways={"IDR": "pakasir", "USD": "paypal"},
        delivery_api_attempts=3,
        delivery_api_backoff_ms=0,
    )


@pytest.fixture
def audit_sink(session_factory):
    return AuditSink(session_factory, "test")


@pytest.fixture
def adapters():
    return {
        "pakasir": FakeAdapter("pakasir"),
        "ipaymu": FakeAdapter("ipaymu"),
        "tokopay": FakeAdapter("tokopay", signature_enforced=True),
        "paypal": FakeAdapter("paypal", signature_enforced=True),
    }


@pytest.fixture
def registry(adapters):
    return ProviderRegistry(adapters.values())


@pytest.fixture
def dispatcher(session_factory, config, audit_sink):
    return DeliveryDispatcher(session_factory, config, audit_sink, service_name="test")


def add_product(session_factory, slug="netflix-1m", delivery_type="preloaded", **fields):
    values = {
        "product_id": f"prod-{slug}",
        "slug": slug,
        "title": slug.replace("-", " ").title(),
        "price": {"IDR": 150000},
        "capital_cost": {"IDR": 100000},
        "delivery_type": delivery_type,
    }
    values.update(fields)
    with session_factory() as db:
        db.add(Product(**values))
        db.commit()
    return values["product_id"]


def add_order(session_factory, order_id="ORD-1", slug="netflix-1m", **fields):
    values = {
        "order_id": order_id,
        "product_id": f"prod-{slug}",
        "product_slug": slug,
        "currency": "IDR",
        "selling_price": 150000,
        "capital_cost": 100000,
        "quantity": 1,
        "status": "AWAITING_PAYMENT",
        "customer_name": "Budi",
        "customer_email": "budi@example.com",
    }
    values.update(fields)
    with session_factory() as db:
        db.add(Order(**values))
        db.commit()
    return order_id


def add_stock(session_factory, slug="netflix-1m", count=1):
    with session_factory() as db:
        for index in range(count):
            db.add(StockItem(product_slug=slug, content={"email": f"acct{index}@example.com", "password": "pw"}))
        db.commit()


def load_order(session_factory, order_id="ORD-1") -> Order:
    with session_factory() as db:
        return db.get(Order, order_id)
