"""Admin-side operations: manual delivery, redelivery, rejection, read views."""

from datetime import timedelta

from sqlalchemy import select

from digipay.common import state_machine as sm
from digipay.common.config import EngineConfig
from digipay.common.errors import (
    ALREADY_DELIVERED,
    DELIVERY_IN_PROGRESS,
    INVALID_REQUEST,
    NOT_ELIGIBLE,
    ORDER_NOT_FOUND,
    ConcurrentUpdateError,
    EngineError,
)
from digipay.common.logging import logger, order_id_ctx
from digipay.common.metrics import deliveries_total
from digipay.services.delivery.service import DeliveryDispatcher
from digipay.services.delivery.strategies import DeliveryResult
from digipay.services.orchestrator.schemas import ManualDeliveryRequest
from digipay.services.orders import audit
from digipay.services.orders.audit import AuditSink, SideEffect
from digipay.services.orders.models import AuditLogEntry, DeliveryStatus, DeliveryType, Order
from digipay.services.orders.store import OrderStore, claimable_delivery, utcnow


class AdminService:
    """Operations the admin collaborator triggers against paid orders."""

    def __init__(
        self,
        session_factory,
        config: EngineConfig,
        audit_sink: AuditSink,
        dispatcher: DeliveryDispatcher,
        store: OrderStore | None = None,
        service_name: str = "admin",
    ) -> None:
        self.session_factory = session_factory
        self.config = config
        self.audit = audit_sink
        self.dispatcher = dispatcher
        self.store = store or OrderStore()
        self.service_name = service_name

    def _load(self, db, order_id: str) -> Order:
        order = self.store.get(db, order_id)
        if order is None:
            raise EngineError(ORDER_NOT_FOUND, f"Order {order_id} not found")
        return order

    def _already_delivered(self, order: Order) -> EngineError:
        return EngineError(
            ALREADY_DELIVERED,
            "Order has already been delivered",
            delivered_by=order.delivered_by,
            delivered_at=order.delivered_at.isoformat() if order.delivered_at else None,
        )

    def trigger_manual_delivery(self, order_id: str, request: ManualDeliveryRequest, admin_id: str) -> DeliveryResult:
        """Record hand-fulfilled content and close the order as COMPLETED."""

        order_id_ctx.set(order_id)
        with self.session_factory() as db:
            order = self._load(db, order_id)
            if order.delivery_status == DeliveryStatus.DELIVERED:
                raise self._already_delivered(order)
            if order.status != sm.PROCESS:
                raise EngineError(NOT_ELIGIBLE, "Order is not awaiting delivery", status=order.status)
            now = utcnow()
            try:
                self.store.transition(
                    db,
                    order,
                    sm.COMPLETED,
                    {
                        "locked": True,
                        "completed_at": now,
                        "delivery_type": order.delivery_type or DeliveryType.MANUAL,
                        "delivery_status": DeliveryStatus.DELIVERED,
                        "delivered_at": now,
                        "delivered_by": admin_id,
                        "delivery_content": request.delivery_content(),
                        "delivery_content_ref": f"manual:{admin_id}",
                        "delivery_claim_id": None,
                        "delivery_claim_expires_at": None,
                        "delivery_error": None,
                        "delivery_error_message": None,
                    },
                    claimable_delivery(now),
                )
                db.commit()
            except ConcurrentUpdateError as exc:
                db.rollback()
                current = self._load(db, order_id)
                if current.delivery_status == DeliveryStatus.DELIVERED:
                    raise self._already_delivered(current) from exc
                raise EngineError(DELIVERY_IN_PROGRESS, "Delivery is already in progress for this order") from exc

        deliveries_total.labels(service=self.service_name, delivery_type=DeliveryType.MANUAL, outcome="delivered").inc()
        logger.info("manual_delivery_recorded order_id=%s admin_id=%s", order_id, admin_id)
        self.audit.emit(
            [
                SideEffect(
                    order_id,
                    audit.DELIVERED_MANUAL,
                    audit.admin_actor(admin_id),
                    {"delivery": request.masked()},
                    topic=audit.TOPIC_DELIVERY_COMPLETED,
                )
            ]
        )
        return DeliveryResult(
            success=True,
            status="delivered",
            message="Manual delivery recorded",
            delivered_data={"type": DeliveryType.MANUAL, "delivered_by": admin_id},
        )

    async def trigger_redelivery(self, order_id: str, admin_id: str) -> DeliveryResult:
        """Re-run the product's strategy; a no-op when the order is already delivered."""

        return await self.dispatcher.deliver(order_id, audit.admin_actor(admin_id), trigger="admin_redelivery")

    def reject_order(self, order_id: str, reason: str, admin_id: str) -> Order:
        reason = (reason or "").strip()
        if not reason:
            raise EngineError(INVALID_REQUEST, "Rejection reason is required")
        order_id_ctx.set(order_id)
        with self.session_factory() as db:
            order = self._load(db, order_id)
            if order.locked or order.status not in (sm.AWAITING_PAYMENT, sm.PENDING):
                raise EngineError(
                    NOT_ELIGIBLE, "Only unpaid orders can be rejected", status=order.status, locked=order.locked
                )
            try:
                self.store.transition(
                    db,
                    order,
                    sm.REJECTED,
                    {"rejection_reason": reason, "rejected_at": utcnow()},
                    Order.locked.is_(False),
                )
                db.commit()
            except ConcurrentUpdateError as exc:
                raise EngineError(NOT_ELIGIBLE, "Order changed concurrently; reload and retry") from exc

        logger.info("order_rejected order_id=%s admin_id=%s", order_id, admin_id)
        self.audit.emit(
            [
                SideEffect(
                    order_id,
                    audit.ORDER_REJECTED,
                    audit.admin_actor(admin_id),
                    {"reason": reason},
                    topic=audit.TOPIC_ORDER_REJECTED,
                )
            ]
        )
        return order

    def list_pending_deliveries(self, limit: int = 100) -> list[Order]:
        """Paid orders a human still has to look at."""

        with self.session_factory() as db:
            query = (
                select(Order)
                .where(
                    Order.status == sm.PROCESS,
                    claimable_delivery(utcnow()),
                )
                .order_by(Order.updated_at)
                .limit(limit)
            )
            return list(db.execute(query).scalars())

    def list_pending_payments(self, older_than_minutes: int = 15, limit: int = 100) -> list[Order]:
        """Orders with an open provider session and no settled callback yet."""

        cutoff = utcnow() - timedelta(minutes=older_than_minutes)
        with self.session_factory() as db:
            query = (
                select(Order)
                .where(
                    Order.status.in_([sm.AWAITING_PAYMENT, sm.PENDING]),
                    Order.payment_provider.is_not(None),
                    Order.payment_created_at < cutoff,
                )
                .order_by(Order.payment_created_at)
                .limit(limit)
            )
            return list(db.execute(query).scalars())

    def get_order(self, order_id: str) -> Order:
        with self.session_factory() as db:
            return self._load(db, order_id)

    def get_audit(self, order_id: str) -> list[AuditLogEntry]:
        with self.session_factory() as db:
            self._load(db, order_id)
        return self.audit.history(order_id)
