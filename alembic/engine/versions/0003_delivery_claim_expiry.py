"""add delivery claim lease expiry

Revision ID: 0003_delivery_claim_expiry
Revises: 0002_audit_log_immutability
Create Date: 2026-10-19
"""

from alembic import op
import sqlalchemy as sa


revision = "0003_delivery_claim_expiry"
down_revision = "0002_audit_log_immutability"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.add_column("orders", sa.Column("delivery_claim_expires_at", sa.DateTime(timezone=True), nullable=True))
    op.execute(
        """
        UPDATE orders
        SET delivery_claim_expires_at = delivery_claimed_at + interval '120 seconds'
        WHERE delivery_status = 'PROCESSING' AND delivery_claimed_at IS NOT NULL
        """
    )


def downgrade() -> None:
    op.drop_column("orders", "delivery_claim_expires_at")
