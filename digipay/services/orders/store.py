"""Atomic reads and conditional writes over orders and stock items.

Every order mutation is an UPDATE whose WHERE clause carries the caller's
precondition (and, by default, the `version` it read). A write that matches no
row raises `ConcurrentUpdateError`; nothing here ever blind-overwrites.
"""

import time
from datetime import datetime, timedelta, timezone

from sqlalchemy import and_, or_, select, update
from sqlalchemy.orm import aliased
from sqlalchemy.orm.attributes import set_committed_value

from digipay.common.errors import ConcurrentUpdateError, StockContentionError
from digipay.common.state_machine import validate_transition
from digipay.services.orders.models import DeliveryStatus, Order, StockItem


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def claimable_delivery(now: datetime):
    """Orders whose delivery may be claimed at `now`: unclaimed, parked, failed or lease expired."""

    return or_(
        Order.delivery_status.is_(None),
        Order.delivery_status.in_([DeliveryStatus.PENDING, DeliveryStatus.FAILED]),
        and_(
            Order.delivery_status == DeliveryStatus.PROCESSING,
            or_(Order.delivery_claim_expires_at.is_(None), Order.delivery_claim_expires_at < now),
        ),
    )


class OrderStore:
    """Order store accessor used by every engine component."""

    def get(self, db, order_id: str) -> Order | None:
        return db.get(Order, order_id, populate_existing=True)

    def get_by_provider_ref(self, db, provider: str | None, provider_ref: str) -> Order | None:
        query = select(Order).where(Order.payment_provider_ref == provider_ref)
        if provider:
            query = query.where(Order.payment_provider == provider)
        return db.execute(query.limit(1)).scalar_one_or_none()

    def find_for_callback(
        self, db, provider: str, order_id: str | None, provider_ref: str | None
    ) -> Order | None:
        """Resolve by order id first, then by the provider's own reference."""

        if order_id:
            order = self.get(db, order_id)
            if order is not None:
                return order
        if provider_ref:
            return self.get_by_provider_ref(db, provider, provider_ref)
        return None

    def update_if(self, db, order: Order, values: dict, *conditions, check_version: bool = True) -> None:
        """Apply `values` only while `conditions` still hold at write time."""

        criteria = [Order.order_id == order.order_id, *conditions]
        if check_version:
            criteria.append(Order.version == order.version)
        now = utcnow()
        result = db.execute(
            update(Order)
            .where(*criteria)
            .values(version=Order.version + 1, updated_at=now, **values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise ConcurrentUpdateError(
                f"conditional write rejected for order {order.order_id} (read version {order.version})"
            )
        for key, value in values.items():
            set_committed_value(order, key, value)
        set_committed_value(order, "version", order.version + 1)
        set_committed_value(order, "updated_at", now)

    def transition(self, db, order: Order, new_status: str, values: dict | None = None, *conditions) -> None:
        """Move `order` along the lifecycle graph with optimistic concurrency."""

        validate_transition(order.status, new_status)
        self.update_if(db, order, {"status": new_status, **(values or {})}, Order.status == order.status, *conditions)

    def claim_delivery(self, db, order: Order, claim_id: str, delivery_type: str, lease_seconds: float) -> bool:
        """Take the per-order delivery claim for `lease_seconds`.

        False when the order is delivered or another claim's lease has not
        yet expired.
        """

        now = utcnow()
        try:
            self.update_if(
                db,
                order,
                {
                    "delivery_status": DeliveryStatus.PROCESSING,
                    "delivery_type": delivery_type,
                    "delivery_claim_id": claim_id,
                    "delivery_claimed_at": now,
                    "delivery_claim_expires_at": now + timedelta(seconds=lease_seconds),
                },
                claimable_delivery(now),
                check_version=False,
            )
        except ConcurrentUpdateError:
            return False
        return True

    def finish_delivery(self, db, order: Order, claim_id: str, values: dict, *conditions) -> None:
        """Write a delivery outcome; only the current claim holder may do so."""

        self.update_if(
            db,
            order,
            values,
            Order.delivery_claim_id == claim_id,
            Order.delivery_status == DeliveryStatus.PROCESSING,
            *conditions,
            check_version=False,
        )


class InventoryStore:
    """Stock item claims for the preloaded delivery strategy.

    A skip-locked miss while unused rows remain means another order is mid
    claim, so the claim pauses and retries instead of reporting out of stock.
    """

    def __init__(self, max_attempts: int = 50, pause_seconds: float = 0.01) -> None:
        self.max_attempts = max_attempts
        self.pause_seconds = pause_seconds

    def claim(self, db, product_slug: str, order_id: str) -> tuple[str, dict] | None:
        """Compare-and-swap one unused item to `used`; None only when none are left."""

        for attempt in range(1, self.max_attempts + 1):
            claimed = self._try_claim(db, product_slug, order_id)
            if claimed is not None:
                return claimed
            if not self._has_unused(db, product_slug):
                return None
            if attempt < self.max_attempts:
                time.sleep(self.pause_seconds)
        raise StockContentionError(
            f"stock for {product_slug} stayed contended after {self.max_attempts} claim attempts"
        )

    def _try_claim(self, db, product_slug: str, order_id: str) -> tuple[str, dict] | None:
        # Aliased so the subquery is not correlated to the UPDATE target.
        unused = aliased(StockItem)
        candidate = (
            select(unused.item_id)
            .where(unused.product_slug == product_slug, unused.used.is_(False))
            .order_by(unused.created_at, unused.item_id)
            .limit(1)
            .with_for_update(skip_locked=True)
            .scalar_subquery()
        )
        row = db.execute(
            update(StockItem)
            .where(StockItem.item_id == candidate, StockItem.used.is_(False))
            .values(used=True, used_at=utcnow(), assigned_to_order=order_id)
            .returning(StockItem.item_id, StockItem.content)
            .execution_options(synchronize_session=False)
        ).first()
        if row is None:
            return None
        return row.item_id, dict(row.content or {})

    def _has_unused(self, db, product_slug: str) -> bool:
        remaining = db.execute(
            select(StockItem.item_id)
            .where(StockItem.product_slug == product_slug, StockItem.used.is_(False))
            .limit(1)
        ).first()
        return remaining is not None

    def count_available(self, db, product_slug: str) -> int:
        rows = db.execute(
            select(StockItem.item_id).where(StockItem.product_slug == product_slug, StockItem.used.is_(False))
        ).all()
        return len(rows)
