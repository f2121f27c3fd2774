"""initial engine schema

Revision ID: 0001_engine
Revises:
Create Date: 2026-10-19
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


revision = "0001_engine"
down_revision = None
branch_labels = None
depends_on = None


def _json():
    return postgresql.JSONB(astext_type=sa.Text())


def upgrade() -> None:
    op.create_table(
        "products",
        sa.Column("product_id", sa.String(), nullable=False),
        sa.Column("slug", sa.String(), nullable=False),
        sa.Column("title", sa.String(), nullable=False),
        sa.Column("price", _json(), nullable=True),
        sa.Column("capital_cost", _json(), nullable=True),
        sa.Column("plans", _json(), nullable=True),
        sa.Column("gateway", _json(), nullable=True),
        sa.Column("backup_gateway", _json(), nullable=True),
        sa.Column("delivery_type", sa.String(), nullable=False, server_default="manual"),
        sa.Column("delivery_config", _json(), nullable=True),
        sa.Column("status", sa.String(), nullable=False, server_default="ACTIVE"),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.PrimaryKeyConstraint("product_id"),
    )
    op.create_index("ix_products_slug", "products", ["slug"], unique=True)

    op.create_table(
        "orders",
        sa.Column("order_id", sa.String(), nullable=False),
        sa.Column("idempotency_key", sa.String(), nullable=True),
        sa.Column("user_id", sa.String(), nullable=True),
        sa.Column("customer_name", sa.String(), nullable=True),
        sa.Column("customer_email", sa.String(), nullable=True),
        sa.Column("customer_phone", sa.String(), nullable=True),
        sa.Column("product_id", sa.String(), nullable=False),
        sa.Column("product_slug", sa.String(), nullable=False),
        sa.Column("plan_id", sa.String(), nullable=True),
        sa.Column("currency", sa.String(length=3), nullable=False, server_default="IDR"),
        sa.Column("selling_price", sa.Integer(), nullable=True),
        sa.Column("capital_cost", sa.Integer(), nullable=True),
        sa.Column("quantity", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("status", sa.String(), nullable=False, server_default="AWAITING_PAYMENT"),
        sa.Column("locked", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("version", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("payment_status", sa.String(), nullable=True),
        sa.Column("payment_provider", sa.String(), nullable=True),
        sa.Column("payment_provider_ref", sa.String(), nullable=True),
        sa.Column("payment_currency", sa.String(length=3), nullable=True),
        sa.Column("payment_amount", sa.Integer(), nullable=True),
        sa.Column("payment_fee", sa.Integer(), nullable=True),
        sa.Column("payment_checkout_url", sa.Text(), nullable=True),
        sa.Column("payment_qr_payload", sa.Text(), nullable=True),
        sa.Column("payment_expiry_time", sa.DateTime(timezone=True), nullable=True),
        sa.Column("payment_created_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("payment_paid_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("payment_expected_amount", sa.Integer(), nullable=True),
        sa.Column("payment_received_amount", sa.Integer(), nullable=True),
        sa.Column("payment_failure_reason", sa.String(), nullable=True),
        sa.Column("payment_callback_data", _json(), nullable=True),
        sa.Column("delivery_type", sa.String(), nullable=True),
        sa.Column("delivery_status", sa.String(), nullable=True),
        sa.Column("delivery_claim_id", sa.String(), nullable=True),
        sa.Column("delivery_claimed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("delivered_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("delivered_by", sa.String(), nullable=True),
        sa.Column("delivery_content_ref", sa.String(), nullable=True),
        sa.Column("delivery_content", _json(), nullable=True),
        sa.Column("delivery_error", sa.Text(), nullable=True),
        sa.Column("delivery_error_message", sa.Text(), nullable=True),
        sa.Column("final_profit", sa.Integer(), nullable=True),
        sa.Column("margin", sa.Float(), nullable=True),
        sa.Column("rejection_reason", sa.Text(), nullable=True),
        sa.Column("rejected_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.PrimaryKeyConstraint("order_id"),
        sa.UniqueConstraint("idempotency_key"),
        sa.UniqueConstraint("payment_provider", "payment_provider_ref", name="uq_orders_provider_ref"),
    )
    op.create_index("ix_orders_user_id", "orders", ["user_id"])
    op.create_index("ix_orders_product_id", "orders", ["product_id"])
    op.create_index("ix_orders_product_slug", "orders", ["product_slug"])
    op.create_index("ix_orders_status", "orders", ["status"])
    op.create_index("ix_orders_payment_status", "orders", ["payment_status"])
    op.create_index("ix_orders_payment_provider_ref", "orders", ["payment_provider_ref"])
    op.create_index("ix_orders_delivery_status", "orders", ["delivery_status"])

    op.create_table(
        "audit_log",
        sa.Column("entry_id", sa.String(), nullable=False),
        sa.Column("order_id", sa.String(), nullable=False),
        sa.Column("event", sa.String(), nullable=False),
        sa.Column("actor", _json(), nullable=False),
        sa.Column("payload", _json(), nullable=False),
        sa.Column("timestamp", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.ForeignKeyConstraint(["order_id"], ["orders.order_id"]),
        sa.PrimaryKeyConstraint("entry_id"),
    )
    op.create_index("ix_audit_log_order_id", "audit_log", ["order_id"])
    op.create_index("ix_audit_log_event", "audit_log", ["event"])

    op.create_table(
        "stock_items",
        sa.Column("item_id", sa.String(), nullable=False),
        sa.Column("product_slug", sa.String(), nullable=False),
        sa.Column("content", _json(), nullable=False),
        sa.Column("used", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("used_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("assigned_to_order", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.PrimaryKeyConstraint("item_id"),
        sa.UniqueConstraint("assigned_to_order"),
    )
    op.create_index("ix_stock_items_product_slug", "stock_items", ["product_slug"])
    op.create_index("ix_stock_items_used", "stock_items", ["used"])

    op.create_table(
        "outbox_events",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("aggregate_type", sa.String(), nullable=False),
        sa.Column("aggregate_id", sa.String(), nullable=False),
        sa.Column("event_type", sa.String(), nullable=False),
        sa.Column("topic", sa.String(), nullable=False),
        sa.Column("payload", _json(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("sent_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_outbox_events_aggregate_id", "outbox_events", ["aggregate_id"])
    op.create_index("ix_outbox_events_event_type", "outbox_events", ["event_type"])
    op.create_index("ix_outbox_events_status", "outbox_events", ["status"])
    # Hot path for the publisher's claim query.
    op.create_index(
        "ix_outbox_events_pending_created",
        "outbox_events",
        ["created_at"],
        postgresql_where=sa.text("status = 'PENDING'"),
    )
    op.create_index(
        "ix_stock_items_unused_slug",
        "stock_items",
        ["product_slug", "created_at"],
        postgresql_where=sa.text("used = false"),
    )


def downgrade() -> None:
    op.drop_index("ix_stock_items_unused_slug", table_name="stock_items")
    op.drop_index("ix_outbox_events_pending_created", table_name="outbox_events")
    op.drop_index("ix_outbox_events_status", table_name="outbox_events")
    op.drop_index("ix_outbox_events_event_type", table_name="outbox_events")
    op.drop_index("ix_outbox_events_aggregate_id", table_name="outbox_events")
    op.drop_table("outbox_events")
    op.drop_index("ix_stock_items_used", table_name="stock_items")
    op.drop_index("ix_stock_items_product_slug", table_name="stock_items")
    op.drop_table("stock_items")
    op.drop_index("ix_audit_log_event", table_name="audit_log")
    op.drop_index("ix_audit_log_order_id", table_name="audit_log")
    op.drop_table("audit_log")
    for index in (
        "ix_orders_delivery_status",
        "ix_orders_payment_provider_ref",
        "ix_orders_payment_status",
        "ix_orders_status",
        "ix_orders_product_slug",
        "ix_orders_product_id",
        "ix_orders_user_id",
    ):
        op.drop_index(index, table_name="orders")
    op.drop_table("orders")
    op.drop_index("ix_products_slug", table_name="products")
    op.drop_table("products")
