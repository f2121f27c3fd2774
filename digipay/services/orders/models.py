"""Engine database models.

`orders` is the aggregate root and the only shared mutable record; its
payment and delivery sub-records are flattened into prefixed columns so every
mutation can be a single conditional UPDATE guarded by `version`.
`products` belongs to the catalog collaborator and is read-only here.
"""

from datetime import datetime, timezone
from typing import Any
from uuid import uuid4

from sqlalchemy import (
    Boolean,
    DateTime,
    Float,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column

from digipay.common.db import Base, JSONType


class PaymentStatus:
    AWAITING_PROOF = "AWAITING_PROOF"
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    SUCCESS = "SUCCESS"
    PAID = "PAID"
    FAILED = "FAILED"
    DISCREPANCY = "DISCREPANCY"

    SETTLED = frozenset({SUCCESS, PAID})


class DeliveryStatus:
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    DELIVERED = "DELIVERED"
    FAILED = "FAILED"


class DeliveryType:
    PRELOADED = "preloaded"
    API = "api"
    MANUAL = "manual"

    ALL = (PRELOADED, API, MANUAL)


class Product(Base):
    """Catalog product as published by the catalog collaborator."""

    __tablename__ = "products"

    product_id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid4()))
    slug: Mapped[str] = mapped_column(String, unique=True, index=True)
    title: Mapped[str] = mapped_column(String)
    # {"IDR": 150000, "USD": 1000}
    price: Mapped[dict | None] = mapped_column(JSONType, nullable=True)
    # Per-currency map, or a bare number for legacy IDR-only products.
    capital_cost: Mapped[Any] = mapped_column(JSONType, nullable=True)
    plans: Mapped[list | None] = mapped_column(JSONType, nullable=True)
    # Per-currency map, or a bare provider name applying to IDR.
    gateway: Mapped[Any] = mapped_column(JSONType, nullable=True)
    backup_gateway: Mapped[Any] = mapped_column(JSONType, nullable=True)
    delivery_type: Mapped[str] = mapped_column(String, default=DeliveryType.MANUAL)
    delivery_config: Mapped[dict | None] = mapped_column(JSONType, nullable=True)
    status: Mapped[str] = mapped_column(String, default="ACTIVE")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class Order(Base):
    """One purchase attempt, owned by the engine once payment starts."""

    __tablename__ = "orders"
    __table_args__ = (
        UniqueConstraint("payment_provider", "payment_provider_ref", name="uq_orders_provider_ref"),
    )

    order_id: Mapped[str] = mapped_column(String, primary_key=True)
    idempotency_key: Mapped[str | None] = mapped_column(String, unique=True, nullable=True)
    user_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    customer_name: Mapped[str | None] = mapped_column(String, nullable=True)
    customer_email: Mapped[str | None] = mapped_column(String, nullable=True)
    customer_phone: Mapped[str | None] = mapped_column(String, nullable=True)

    product_id: Mapped[str] = mapped_column(String, index=True)
    product_slug: Mapped[str] = mapped_column(String, index=True)
    plan_id: Mapped[str | None] = mapped_column(String, nullable=True)
    currency: Mapped[str] = mapped_column(String(3), default="IDR")
    selling_price: Mapped[int | None] = mapped_column(Integer, nullable=True)
    capital_cost: Mapped[int | None] = mapped_column(Integer, nullable=True)
    quantity: Mapped[int] = mapped_column(Integer, default=1)

    status: Mapped[str] = mapped_column(String, index=True, default="AWAITING_PAYMENT")
    locked: Mapped[bool] = mapped_column(Boolean, default=False)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    payment_status: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    payment_provider: Mapped[str | None] = mapped_column(String, nullable=True)
    payment_provider_ref: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    payment_currency: Mapped[str | None] = mapped_column(String(3), nullable=True)
    payment_amount: Mapped[int | None] = mapped_column(Integer, nullable=True)
    payment_fee: Mapped[int | None] = mapped_column(Integer, nullable=True)
    payment_checkout_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    payment_qr_payload: Mapped[str | None] = mapped_column(Text, nullable=True)
    payment_expiry_time: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    payment_created_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    payment_paid_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    payment_expected_amount: Mapped[int | None] = mapped_column(Integer, nullable=True)
    payment_received_amount: Mapped[int | None] = mapped_column(Integer, nullable=True)
    payment_failure_reason: Mapped[str | None] = mapped_column(String, nullable=True)
    payment_callback_data: Mapped[dict | None] = mapped_column(JSONType, nullable=True)

    delivery_type: Mapped[str | None] = mapped_column(String, nullable=True)
    delivery_status: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    delivery_claim_id: Mapped[str | None] = mapped_column(String, nullable=True)
    delivery_claimed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    delivery_claim_expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    delivered_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    delivered_by: Mapped[str | None] = mapped_column(String, nullable=True)
    delivery_content_ref: Mapped[str | None] = mapped_column(String, nullable=True)
    delivery_content: Mapped[dict | None] = mapped_column(JSONType, nullable=True)
    delivery_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    delivery_error_message: Mapped[str | None] = mapped_column(Text, nullable=True)

    final_profit: Mapped[int | None] = mapped_column(Integer, nullable=True)
    margin: Mapped[float | None] = mapped_column(Float, nullable=True)
    rejection_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    rejected_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    @property
    def expected_amount(self) -> int | None:
        if self.payment_amount:
            return self.payment_amount
        if self.selling_price:
            return self.selling_price * (self.quantity or 1)
        return None


class AuditLogEntry(Base):
    """Immutable record of one engine event for an order."""

    __tablename__ = "audit_log"

    entry_id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid4()))
    order_id: Mapped[str] = mapped_column(ForeignKey("orders.order_id"), index=True)
    event: Mapped[str] = mapped_column(String, index=True)
    actor: Mapped[dict] = mapped_column(JSONType)
    payload: Mapped[dict] = mapped_column(JSONType)
    timestamp: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), server_default=func.now()
    )


class StockItem(Base):
    """Single-use pre-provisioned credential or code for one product."""

    __tablename__ = "stock_items"

    item_id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid4()))
    product_slug: Mapped[str] = mapped_column(String, index=True)
    content: Mapped[dict] = mapped_column(JSONType)
    used: Mapped[bool] = mapped_column(Boolean, default=False, index=True)
    used_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    assigned_to_order: Mapped[str | None] = mapped_column(String, nullable=True, unique=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class OutboxEvent(Base):
    """Notification events waiting to be published to Kafka."""

    __tablename__ = "outbox_events"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid4()))
    aggregate_type: Mapped[str] = mapped_column(String)
    aggregate_id: Mapped[str] = mapped_column(String, index=True)
    event_type: Mapped[str] = mapped_column(String, index=True)
    topic: Mapped[str] = mapped_column(String)
    payload: Mapped[dict] = mapped_column(JSONType)
    status: Mapped[str] = mapped_column(String, default="PENDING", index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    sent_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
