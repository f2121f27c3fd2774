"""Delivery dispatcher.

Guards every delivery with two independent checks: an already-DELIVERED
order short-circuits, and the strategy only runs for the caller that wins the
conditional delivery claim. Audit entries and notifications are emitted after
the strategy has committed its outcome.
"""

from uuid import uuid4

from digipay.common import state_machine as sm
from digipay.common.config import EngineConfig
from digipay.common.errors import ConcurrentUpdateError
from digipay.common.logging import logger, order_id_ctx
from digipay.common.metrics import deliveries_total
from digipay.services.delivery.strategies import (
    ApiStrategy,
    DeliveryJob,
    DeliveryResult,
    DeliveryStrategy,
    ManualStrategy,
    PreloadedStrategy,
)
from digipay.services.orders import audit
from digipay.services.orders.audit import AuditSink, SideEffect
from digipay.services.orders.catalog import CatalogReader
from digipay.services.orders.models import DeliveryStatus, DeliveryType, Order, Product
from digipay.services.orders.store import OrderStore


ORDER_NOT_FOUND = "ORDER_NOT_FOUND"
ORDER_NOT_PAID = "ORDER_NOT_PAID"
PRODUCT_NOT_FOUND = "PRODUCT_NOT_FOUND"
DELIVERY_IN_PROGRESS = "DELIVERY_IN_PROGRESS"
DELIVERY_ERROR = "DELIVERY_ERROR"


def already_delivered(order: Order) -> DeliveryResult:
    return DeliveryResult(
        success=True,
        status="already_delivered",
        message="Order already delivered",
        delivered_data={
            "type": order.delivery_type,
            "delivered_by": order.delivered_by,
            "delivered_at": order.delivered_at.isoformat() if order.delivered_at else None,
        },
    )


def in_progress() -> DeliveryResult:
    return DeliveryResult(
        success=False,
        status="in_progress",
        message="Delivery already in progress",
        error=DELIVERY_IN_PROGRESS,
    )


def build_strategies(session_factory, config: EngineConfig, store: OrderStore | None = None, client=None):
    store = store or OrderStore()
    return {
        DeliveryType.PRELOADED: PreloadedStrategy(session_factory, store),
        DeliveryType.API: ApiStrategy(session_factory, config, store, client=client),
        DeliveryType.MANUAL: ManualStrategy(session_factory, store),
    }


class DeliveryDispatcher:
    """Selects and runs the product's delivery strategy at most once per order."""

    def __init__(
        self,
        session_factory,
        config: EngineConfig,
        audit_sink: AuditSink,
        strategies: dict[str, DeliveryStrategy] | None = None,
        store: OrderStore | None = None,
        catalog: CatalogReader | None = None,
        service_name: str = "delivery",
    ) -> None:
        self.session_factory = session_factory
        self.config = config
        self.audit = audit_sink
        self.store = store or OrderStore()
        self.catalog = catalog or CatalogReader()
        self.strategies = strategies or build_strategies(session_factory, config, self.store)
        self.service_name = service_name

    async def deliver(self, order_id: str, actor: dict | None = None, trigger: str = "webhook") -> DeliveryResult:
        actor = actor or audit.system_actor()
        order_id_ctx.set(order_id)
        with self.session_factory() as db:
            order = self.store.get(db, order_id)
            if order is None:
                return DeliveryResult(False, "failed", "Order not found", error=ORDER_NOT_FOUND)
            if order.delivery_status == DeliveryStatus.DELIVERED:
                return already_delivered(order)
            if order.status != sm.PROCESS:
                return DeliveryResult(
                    False, "failed", f"Order is not awaiting delivery (status {order.status})", error=ORDER_NOT_PAID
                )
            product = self.catalog.get_for_order(db, order)
            if product is None:
                logger.error("delivery_product_missing order_id=%s product_id=%s", order_id, order.product_id)
                return DeliveryResult(False, "failed", "Product not found", error=PRODUCT_NOT_FOUND)

            delivery_type = product.delivery_type if product.delivery_type in DeliveryType.ALL else DeliveryType.MANUAL
            strategy = self.strategies[delivery_type]
            claim_id = str(uuid4())
            lease_seconds = self.claim_lease_seconds(strategy, product)
            if not self.store.claim_delivery(db, order, claim_id, delivery_type, lease_seconds):
                db.rollback()
                current = self.store.get(db, order_id)
                if current is not None and current.delivery_status == DeliveryStatus.DELIVERED:
                    return already_delivered(current)
                return in_progress()
            db.commit()

        job = DeliveryJob(order=order, product=product, claim_id=claim_id, actor=actor, trigger=trigger)
        try:
            result = await strategy.run(job)
        except ConcurrentUpdateError:
            logger.warning("delivery_claim_lost order_id=%s claim_id=%s", order_id, claim_id)
            deliveries_total.labels(service=self.service_name, delivery_type=delivery_type, outcome="claim_lost").inc()
            return in_progress()
        except Exception as exc:
            logger.exception("delivery_strategy_error order_id=%s delivery_type=%s", order_id, delivery_type)
            result = self._release_after_error(job, delivery_type, exc)

        deliveries_total.labels(service=self.service_name, delivery_type=delivery_type, outcome=result.status).inc()
        logger.info(
            "delivery_finished order_id=%s delivery_type=%s status=%s trigger=%s",
            order_id,
            delivery_type,
            result.status,
            trigger,
        )
        if result.event:
            self.audit.emit([SideEffect(order_id, result.event, actor, result.audit_payload, topic=result.topic)])
        return result

    def claim_lease_seconds(self, strategy: DeliveryStrategy, product: Product) -> float:
        """A claim is only taken over once the strategy could no longer be running."""

        return self.config.delivery_claim_timeout_seconds + strategy.claim_window_seconds(product)

    def _release_after_error(self, job: DeliveryJob, delivery_type: str, exc: Exception) -> DeliveryResult:
        message = f"{exc.__class__.__name__}: {exc}"
        try:
            with self.session_factory() as db:
                self.store.finish_delivery(
                    db,
                    job.order,
                    job.claim_id,
                    {
                        "delivery_status": DeliveryStatus.FAILED,
                        "delivery_error": DELIVERY_ERROR,
                        "delivery_error_message": message,
                    },
                )
                db.commit()
        except ConcurrentUpdateError:
            logger.warning("delivery_release_skipped order_id=%s claim_id=%s", job.order.order_id, job.claim_id)
        return DeliveryResult(
            success=False,
            status="failed",
            message=message,
            error=DELIVERY_ERROR,
            event=audit.DELIVERY_FAILED,
            topic=audit.TOPIC_DELIVERY_FAILED,
            audit_payload={"delivery_type": delivery_type, "error": DELIVERY_ERROR, "message": message},
        )
