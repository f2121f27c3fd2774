"""Payment session manager.

Creates at most one provider-side session per order. The primary gateway is
called once; only when it fails, and only if a backup gateway is configured,
the backup is called once with its own callback URL. Provider calls never run
while a database transaction is open.
"""

from contextlib import nullcontext
from dataclasses import dataclass

from sqlalchemy.exc import SQLAlchemyError

from digipay.common import state_machine as sm
from digipay.common.config import EngineConfig
from digipay.common.errors import (
    INVALID_REQUEST,
    NOT_ELIGIBLE,
    ORDER_NOT_FOUND,
    PAYMENT_CREATE_FAILED,
    PRICE_NOT_FOUND,
    PRODUCT_NOT_FOUND,
    SESSION_IN_PROGRESS,
    ConcurrentUpdateError,
    EngineError,
)
from digipay.common.logging import logger, order_id_ctx
from digipay.common.metrics import gateway_failover_total, session_failures_total, session_requests_total
from digipay.services.orchestrator.schemas import SessionResponse
from digipay.services.orders import audit
from digipay.services.orders.audit import AuditSink, SideEffect
from digipay.services.orders.catalog import (
    SUPPORTED_CURRENCIES,
    CatalogReader,
    resolve_backup_gateway,
    resolve_gateway,
    resolve_pricing,
)
from digipay.services.orders.models import Order, PaymentStatus
from digipay.services.orders.store import OrderStore, utcnow
from digipay.services.provider_adapter.base import PaymentRequest, PaymentSession
from digipay.services.provider_adapter.registry import ProviderRegistry


@dataclass
class SessionPlan:
    """Everything needed to call a provider, captured before the DB session closes."""

    order_id: str
    currency: str
    amount: int
    primary: str
    backup: str | None
    customer_name: str
    customer_email: str | None
    customer_phone: str | None
    description: str


class PaymentSessionManager:
    """Owns `CreateSession`: eligibility, pricing, gateway failover, persistence."""

    def __init__(
        self,
        session_factory,
        registry: ProviderRegistry,
        config: EngineConfig,
        audit_sink: AuditSink,
        lock=None,
        store: OrderStore | None = None,
        catalog: CatalogReader | None = None,
        service_name: str = "orchestrator",
    ) -> None:
        self.session_factory = session_factory
        self.registry = registry
        self.config = config
        self.audit = audit_sink
        self.lock = lock
        self.store = store or OrderStore()
        self.catalog = catalog or CatalogReader()
        self.service_name = service_name

    def _fail(self, code: str, message: str, **details) -> EngineError:
        session_failures_total.labels(service=self.service_name, code=code).inc()
        logger.warning("payment_session_rejected code=%s message=%s", code, message)
        return EngineError(code, message, **details)

    def _hold(self, order_id: str):
        if self.lock is None:
            return nullcontext(True)
        return self.lock.hold(order_id)

    async def create_session(self, order_id: str, preferred_currency: str | None = None) -> SessionResponse:
        session_requests_total.labels(service=self.service_name).inc()
        order_id_ctx.set(order_id)
        with self._hold(order_id) as acquired:
            if not acquired:
                raise self._fail(SESSION_IN_PROGRESS, "A payment session is already being created for this order")
            plan_or_existing = self._prepare(order_id, preferred_currency)
            if isinstance(plan_or_existing, SessionResponse):
                return plan_or_existing
            plan = plan_or_existing
            provider, session, failover = await self._call_providers(plan)
            persisted = self._persist(plan, provider, session)

        self.audit.emit(
            [
                SideEffect(
                    order_id,
                    audit.PAYMENT_CREATED,
                    audit.system_actor("session-manager"),
                    {
                        "provider": provider,
                        "provider_ref": session.reference,
                        "amount": plan.amount,
                        "currency": plan.currency,
                        "failover": failover,
                        "persisted": persisted,
                    },
                    topic=audit.TOPIC_PAYMENT_CREATED,
                )
            ]
        )
        logger.info(
            "payment_session_created order_id=%s provider=%s reference=%s failover=%s",
            order_id,
            provider,
            session.reference,
            failover,
        )
        return SessionResponse(
            order_id=order_id,
            provider=provider,
            reference=session.reference,
            amount=session.amount,
            currency=plan.currency,
            checkout_url=session.checkout_url,
            qr_payload=session.qr_payload,
            fee=session.fee,
            expiry_time=session.expiry_time,
        )

    def _prepare(self, order_id: str, preferred_currency: str | None) -> SessionPlan | SessionResponse:
        """Eligibility checks and authoritative pricing; returns the existing session when there is one."""

        with self.session_factory() as db:
            order = self.store.get(db, order_id)
            if order is None:
                raise self._fail(ORDER_NOT_FOUND, f"Order {order_id} not found")
            if order.locked or order.status not in sm.SESSION_ELIGIBLE_STATES:
                raise self._fail(
                    NOT_ELIGIBLE,
                    "Order is not eligible for a new payment session",
                    status=order.status,
                    locked=order.locked,
                )
            if order.payment_provider_ref:
                return self._existing(order)

            currency = (preferred_currency or order.currency or "IDR").upper()
            if currency not in SUPPORTED_CURRENCIES:
                raise self._fail(INVALID_REQUEST, f"Unsupported currency {currency}")
            product = self.catalog.get_for_order(db, order)
            if product is None:
                raise self._fail(PRODUCT_NOT_FOUND, f"Product {order.product_slug or order.product_id} not found")
            pricing = resolve_pricing(product, currency, order.plan_id, self.config.idr_per_usd)
            if pricing is None:
                raise self._fail(PRICE_NOT_FOUND, f"No {currency} price configured for {product.slug}")

            corrections = {}
            if order.selling_price != pricing.selling_price:
                corrections["selling_price"] = pricing.selling_price
            if pricing.capital_cost is not None and order.capital_cost != pricing.capital_cost:
                corrections["capital_cost"] = pricing.capital_cost
            if order.currency != currency:
                corrections["currency"] = currency
            if corrections:
                try:
                    self.store.update_if(
                        db, order, corrections, Order.locked.is_(False), Order.payment_provider_ref.is_(None)
                    )
                    db.commit()
                except ConcurrentUpdateError as exc:
                    raise self._fail(SESSION_IN_PROGRESS, "Order changed while preparing the session") from exc
                logger.info("order_price_corrected order_id=%s fields=%s", order_id, sorted(corrections))

            primary = resolve_gateway(product, currency, self.config)
            backup = resolve_backup_gateway(product, currency, self.config)
            return SessionPlan(
                order_id=order_id,
                currency=currency,
                amount=pricing.selling_price * (order.quantity or 1),
                primary=primary,
                backup=backup if backup and backup != primary else None,
                customer_name=order.customer_name or "Customer",
                customer_email=order.customer_email,
                customer_phone=order.customer_phone,
                description=product.title,
            )

    def _existing(self, order: Order) -> SessionResponse:
        return SessionResponse(
            order_id=order.order_id,
            provider=order.payment_provider or "",
            reference=order.payment_provider_ref or "",
            amount=order.payment_amount or order.expected_amount or 0,
            currency=order.payment_currency or order.currency,
            checkout_url=order.payment_checkout_url,
            qr_payload=order.payment_qr_payload,
            fee=order.payment_fee,
            expiry_time=order.payment_expiry_time,
            reused=True,
        )

    def _request(self, plan: SessionPlan, provider: str) -> PaymentRequest:
        base = self.config.public_base_url
        return PaymentRequest(
            order_id=plan.order_id,
            amount=plan.amount,
            currency=plan.currency,
            customer_name=plan.customer_name,
            customer_email=plan.customer_email,
            customer_phone=plan.customer_phone,
            callback_url=self.config.callback_url(provider),
            return_url=f"{base}/payment/success?orderId={plan.order_id}",
            cancel_url=f"{base}/payment?orderId={plan.order_id}",
            description=plan.description,
        )

    async def _attempt(self, plan: SessionPlan, provider: str) -> PaymentSession:
        adapter = self.registry.get(provider)
        return await adapter.create_payment(self._request(plan, provider))

    async def _call_providers(self, plan: SessionPlan) -> tuple[str, PaymentSession, bool]:
        """Primary once, then the backup once; never the same provider twice."""

        try:
            return plan.primary, await self._attempt(plan, plan.primary), False
        except Exception as exc:
            primary_error = str(exc)
            logger.warning(
                "payment_session_primary_failed order_id=%s provider=%s error=%s",
                plan.order_id,
                plan.primary,
                primary_error,
            )
        if not plan.backup:
            raise self._fail(
                PAYMENT_CREATE_FAILED,
                "Payment provider failed to create a session",
                primary=plan.primary,
                primary_error=primary_error,
            )

        gateway_failover_total.labels(service=self.service_name, primary=plan.primary, backup=plan.backup).inc()
        try:
            return plan.backup, await self._attempt(plan, plan.backup), True
        except Exception as exc:
            raise self._fail(
                PAYMENT_CREATE_FAILED,
                "Primary and backup payment providers failed",
                primary=plan.primary,
                primary_error=primary_error,
                backup=plan.backup,
                backup_error=str(exc),
            ) from exc

    def _persist(self, plan: SessionPlan, provider: str, session: PaymentSession) -> bool:
        """Record the session; a failure here is logged, the caller still gets the session."""

        values = {
            "payment_status": PaymentStatus.PENDING,
            "payment_provider": provider,
            "payment_provider_ref": session.reference,
            "payment_currency": plan.currency,
            "payment_amount": plan.amount,
            "payment_fee": session.fee,
            "payment_checkout_url": session.checkout_url,
            "payment_qr_payload": session.qr_payload,
            "payment_expiry_time": session.expiry_time,
            "payment_created_at": utcnow(),
        }
        try:
            with self.session_factory() as db:
                order = self.store.get(db, plan.order_id)
                conditions = (Order.payment_provider_ref.is_(None), Order.locked.is_(False))
                if order is None or order.status not in sm.SESSION_ELIGIBLE_STATES:
                    raise ConcurrentUpdateError(f"order {plan.order_id} left the session-eligible states")
                if order.status == sm.PENDING:
                    self.store.update_if(db, order, values, Order.status == sm.PENDING, *conditions)
                else:
                    self.store.transition(db, order, sm.PENDING, values, *conditions)
                db.commit()
            return True
        except (ConcurrentUpdateError, SQLAlchemyError) as exc:
            logger.error(
                "payment_session_persist_failed order_id=%s provider=%s reference=%s error=%s",
                plan.order_id,
                provider,
                session.reference,
                exc,
            )
            return False
