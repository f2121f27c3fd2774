"""Webhook reconciler.

Provider-facing outcomes are deliberately coarse: 401 for a failed
signature on providers that sign callbacks, 404 when no order matches, 400
for an unparseable payload, and an acknowledgement for everything else,
including discrepancies and delivery failures, which are recorded on the
order instead of surfaced to the provider.

Every order write is conditional on the state that was read. A lost race
reloads the order and re-evaluates from the idempotency gate.
"""

import json
import time
from decimal import Decimal
from typing import Any, Callable, Mapping
from urllib.parse import parse_qsl

from digipay.common import state_machine as sm
from digipay.common.config import EngineConfig
from digipay.common.errors import ConcurrentUpdateError, EngineError, ORDER_NOT_FOUND, WebhookError
from digipay.common.logging import logger, order_id_ctx, provider_ctx
from digipay.common.metrics import (
    callback_duration_seconds,
    callbacks_total,
    discrepancies_total,
    duplicate_callbacks_skipped_total,
)
from digipay.services.delivery.service import DeliveryDispatcher
from digipay.services.orders import audit
from digipay.services.orders.audit import AuditSink, SideEffect
from digipay.services.orders.models import Order, PaymentStatus
from digipay.services.orders.store import OrderStore, utcnow
from digipay.services.provider_adapter.base import CallbackStatus, CanonicalCallback
from digipay.services.provider_adapter.registry import ProviderRegistry, UnknownProviderError


MAX_APPLY_ATTEMPTS = 3


def within_tolerance(expected: int, received: int, tolerance_percent: Decimal) -> bool:
    """True when `received` is within `tolerance_percent` of `expected`, boundary inclusive."""

    return abs(Decimal(received) - Decimal(expected)) * 100 <= Decimal(expected) * tolerance_percent


def decode_payload(raw_body: bytes, content_type: str | None) -> dict[str, Any]:
    """Decode a JSON or form-encoded callback body."""

    text = raw_body.decode("utf-8")
    if content_type and "application/x-www-form-urlencoded" in content_type:
        return dict(parse_qsl(text, keep_blank_values=True))
    try:
        payload = json.loads(text)
    except json.JSONDecodeError:
        if "=" not in text:
            raise
        return dict(parse_qsl(text, keep_blank_values=True, strict_parsing=True))
    if not isinstance(payload, dict):
        raise ValueError("callback body is not an object")
    return payload


class WebhookReconciler:
    """Applies provider callbacks to orders exactly once."""

    def __init__(
        self,
        session_factory,
        registry: ProviderRegistry,
        config: EngineConfig,
        audit_sink: AuditSink,
        dispatcher: DeliveryDispatcher,
        store: OrderStore | None = None,
        service_name: str = "reconciler",
    ) -> None:
        self.session_factory = session_factory
        self.registry = registry
        self.config = config
        self.audit = audit_sink
        self.dispatcher = dispatcher
        self.store = store or OrderStore()
        self.service_name = service_name

    def _count(self, provider: str, outcome: str) -> None:
        callbacks_total.labels(service=self.service_name, provider=provider, outcome=outcome).inc()

    async def handle_callback(
        self,
        provider: str,
        raw_body: bytes,
        headers: Mapping[str, str],
        content_type: str | None = None,
        schedule: Callable[..., Any] | None = None,
    ) -> dict[str, Any]:
        """Verify, parse and apply one inbound callback; raises WebhookError for 400/401/404."""

        provider = (provider or "").lower()
        provider_ctx.set(provider)
        start = time.perf_counter()
        try:
            try:
                adapter = self.registry.get(provider)
            except UnknownProviderError as exc:
                self._count(provider or "unknown", "unknown_provider")
                raise WebhookError(404, str(exc)) from exc

            try:
                payload = decode_payload(raw_body, content_type)
            except (ValueError, UnicodeDecodeError) as exc:
                self._count(provider, "malformed")
                raise WebhookError(400, "Failed to decode webhook payload") from exc

            try:
                valid = await adapter.verify_callback(payload, headers)
            except Exception as exc:
                logger.warning("webhook_signature_check_error provider=%s error=%s", provider, exc)
                valid = False
            if not valid:
                if adapter.signature_enforced:
                    self._count(provider, "invalid_signature")
                    logger.error("webhook_signature_invalid provider=%s", provider)
                    raise WebhookError(401, "Invalid webhook signature")
                logger.warning("webhook_signature_unverified provider=%s continuing", provider)

            try:
                canonical = adapter.parse_callback(payload)
            except (ValueError, KeyError, TypeError, AttributeError) as exc:
                self._count(provider, "malformed")
                raise WebhookError(400, "Failed to parse webhook payload") from exc
            if not canonical.order_id and not canonical.provider_ref:
                self._count(provider, "malformed")
                raise WebhookError(400, "Order ID not found in webhook payload")

            return await self.apply(provider, canonical, payload, audit.provider_actor(provider), schedule=schedule)
        finally:
            callback_duration_seconds.labels(service=self.service_name, provider=provider or "unknown").observe(
                time.perf_counter() - start
            )

    async def poll_order(self, order_id: str, admin_id: str = "system") -> dict[str, Any]:
        """Pull the current status from the order's provider and reconcile it."""

        with self.session_factory() as db:
            order = self.store.get(db, order_id)
            if order is None:
                raise EngineError(ORDER_NOT_FOUND, f"Order {order_id} not found")
            provider = order.payment_provider
            reference = order.payment_provider_ref
            amount = order.expected_amount
        if not provider:
            return {"success": True, "message": "Order has no payment session yet", "order_id": order_id}
        adapter = self.registry.get(provider)
        canonical = await adapter.check_status(adapter.status_reference(order_id, reference), amount)
        if not canonical.order_id and not canonical.provider_ref:
            canonical.order_id = order_id
        elif canonical.order_id and canonical.order_id != order_id:
            canonical.order_id = order_id
        return await self.apply(
            provider, canonical, {"source": "status_poll", "status": canonical.status}, audit.admin_actor(admin_id)
        )

    async def apply(
        self,
        provider: str,
        canonical: CanonicalCallback,
        raw_payload: dict[str, Any],
        actor: dict[str, Any],
        schedule: Callable[..., Any] | None = None,
    ) -> dict[str, Any]:
        """Reconcile a canonical callback against its order.

        With `schedule`, a freshly paid order's delivery is handed to it and
        runs after the acknowledgement; without it, delivery runs inline.
        """

        for attempt in range(1, MAX_APPLY_ATTEMPTS + 1):
            try:
                ack, effects, deliver_order_id = self._apply_once(provider, canonical, raw_payload, actor)
                break
            except ConcurrentUpdateError:
                if attempt == MAX_APPLY_ATTEMPTS:
                    raise
                logger.warning(
                    "webhook_conflict_retry provider=%s order_id=%s attempt=%s",
                    provider,
                    canonical.order_id,
                    attempt,
                )

        self._count(provider, ack["outcome"])
        self.audit.emit(effects)
        if deliver_order_id:
            if schedule is not None:
                schedule(self.deliver_paid, deliver_order_id)
                ack["delivery"] = "scheduled"
            else:
                ack["delivery"] = await self.deliver_paid(deliver_order_id)
        return ack

    async def deliver_paid(self, order_id: str) -> str:
        """Run delivery for an order the webhook just settled; failures stay on the order."""

        try:
            result = await self.dispatcher.deliver(order_id, audit.system_actor("webhook"), trigger="webhook")
        except Exception as exc:
            logger.exception("webhook_delivery_error order_id=%s", order_id)
            self._record_delivery_error(order_id, exc.__class__.__name__, str(exc))
            return "error"
        if not result.success:
            logger.warning(
                "webhook_delivery_unsuccessful order_id=%s status=%s error=%s",
                order_id,
                result.status,
                result.error,
            )
            self._record_delivery_error(order_id, result.error, result.message)
        return result.status

    def _record_delivery_error(self, order_id: str, error: str | None, message: str | None) -> None:
        """Leave the order in PROCESS with the delivery error populated, if nothing newer was written."""

        if error in (None, "DELIVERY_IN_PROGRESS"):
            return
        try:
            with self.session_factory() as db:
                order = self.store.get(db, order_id)
                if order is None or order.delivery_error:
                    return
                self.store.update_if(
                    db,
                    order,
                    {"delivery_error": error, "delivery_error_message": message},
                    Order.status == sm.PROCESS,
                )
                db.commit()
        except ConcurrentUpdateError:
            logger.info("delivery_error_not_recorded order_id=%s concurrent update", order_id)

    def _apply_once(
        self, provider: str, canonical: CanonicalCallback, raw_payload: dict[str, Any], actor: dict[str, Any]
    ) -> tuple[dict[str, Any], list[SideEffect], str | None]:
        with self.session_factory() as db:
            order = self.store.find_for_callback(db, provider, canonical.order_id, canonical.provider_ref)
            if order is None:
                self._count(provider, "order_not_found")
                raise WebhookError(404, "Order not found")
            order_id = order.order_id
            order_id_ctx.set(order_id)
            summary = {
                "provider": provider,
                "callback_status": canonical.status,
                "provider_ref": canonical.provider_ref,
                "amount": canonical.amount,
            }

            # Idempotency gate.
            if order.payment_status in PaymentStatus.SETTLED:
                duplicate_callbacks_skipped_total.labels(service=self.service_name, provider=provider).inc()
                logger.info("webhook_duplicate_skipped order_id=%s", order_id)
                return (
                    {"success": True, "message": "Webhook already processed", "outcome": "duplicate"},
                    [SideEffect(order_id, audit.CALLBACK_DUPLICATE, actor, summary)],
                    None,
                )

            if sm.is_terminal(order.status):
                logger.warning(
                    "webhook_terminal_order_ignored order_id=%s status=%s callback_status=%s",
                    order_id,
                    order.status,
                    canonical.status,
                )
                payload = {**summary, "order_status": order.status, "webhook_data": raw_payload}
                topic = audit.TOPIC_PAYMENT_DISCREPANCY if canonical.status == CallbackStatus.SUCCESS else None
                return (
                    {"success": True, "message": "Order is closed; callback recorded", "outcome": "ignored"},
                    [SideEffect(order_id, audit.CALLBACK_IGNORED, actor, payload, topic=topic)],
                    None,
                )

            provider_ref_values = {}
            if canonical.provider_ref and not order.payment_provider_ref:
                provider_ref_values = {"payment_provider_ref": canonical.provider_ref}
            elif canonical.provider_ref and canonical.provider_ref != order.payment_provider_ref:
                logger.warning(
                    "webhook_provider_ref_mismatch order_id=%s stored=%s received=%s",
                    order_id,
                    order.payment_provider_ref,
                    canonical.provider_ref,
                )
            if provider_ref_values and not order.payment_provider:
                provider_ref_values["payment_provider"] = provider

            expected = order.expected_amount
            if canonical.status in CallbackStatus.FAILURES or canonical.amount is None or not expected:
                if canonical.status not in CallbackStatus.FAILURES:
                    logger.warning(
                        "webhook_amount_unchecked order_id=%s expected=%s received=%s",
                        order_id,
                        expected,
                        canonical.amount,
                    )
            elif not within_tolerance(expected, canonical.amount, self.config.amount_tolerance_percent):
                return self._discrepancy(db, order, provider, canonical, raw_payload, actor, provider_ref_values)

            if canonical.status == CallbackStatus.SUCCESS:
                return self._settle(db, order, provider, canonical, raw_payload, actor, provider_ref_values, summary)
            if canonical.status in CallbackStatus.FAILURES:
                return self._fail(db, order, provider, canonical, raw_payload, actor, provider_ref_values, summary)
            if canonical.status == CallbackStatus.DISCREPANCY:
                return self._discrepancy(db, order, provider, canonical, raw_payload, actor, provider_ref_values)
            return self._pending(db, order, canonical, raw_payload, actor, provider_ref_values, summary)

    def _settle(self, db, order, provider, canonical, raw_payload, actor, extra, summary):
        now = utcnow()
        selling = order.selling_price or 0
        revenue = selling * (order.quantity or 1)
        capital = (order.capital_cost or 0) * (order.quantity or 1)
        final_profit = revenue - capital
        margin = round(final_profit / revenue * 100, 2) if revenue > 0 else 0.0
        values = {
            "payment_status": PaymentStatus.SUCCESS,
            "payment_paid_at": now,
            "payment_received_amount": canonical.amount,
            "payment_callback_data": raw_payload,
            "locked": True,
            "final_profit": final_profit,
            "margin": margin,
            **extra,
        }
        self.store.transition(
            db,
            order,
            sm.PROCESS,
            values,
            Order.payment_status.is_(None) | Order.payment_status.notin_(list(PaymentStatus.SETTLED)),
        )
        db.commit()
        logger.info(
            "payment_confirmed order_id=%s provider=%s amount=%s final_profit=%s",
            order.order_id,
            provider,
            canonical.amount,
            final_profit,
        )
        payload = {
            **summary,
            "payment_status": PaymentStatus.SUCCESS,
            "order_status": sm.PROCESS,
            "final_profit": final_profit,
            "margin": margin,
            "webhook_data": raw_payload,
        }
        return (
            {"success": True, "message": "Webhook processed successfully", "outcome": "paid"},
            [SideEffect(order.order_id, audit.PAYMENT_CONFIRMED, actor, payload)],
            order.order_id,
        )

    def _fail(self, db, order, provider, canonical, raw_payload, actor, extra, summary):
        reason = f"{provider} reported {canonical.status}"
        self.store.transition(
            db,
            order,
            sm.FAILED,
            {
                "payment_status": PaymentStatus.FAILED,
                "payment_failure_reason": reason,
                "payment_callback_data": raw_payload,
                **extra,
            },
        )
        db.commit()
        logger.info("payment_failed order_id=%s provider=%s status=%s", order.order_id, provider, canonical.status)
        payload = {**summary, "order_status": sm.FAILED, "reason": reason, "webhook_data": raw_payload}
        return (
            {"success": True, "message": "Payment failure recorded", "outcome": "failed"},
            [SideEffect(order.order_id, audit.PAYMENT_FAILED, actor, payload, topic=audit.TOPIC_PAYMENT_FAILED)],
            None,
        )

    def _pending(self, db, order, canonical, raw_payload, actor, extra, summary):
        values = {"payment_status": PaymentStatus.PENDING, "payment_callback_data": raw_payload, **extra}
        if order.status == sm.AWAITING_PAYMENT:
            self.store.transition(db, order, sm.PENDING, values)
        else:
            self.store.update_if(db, order, values, Order.status == order.status)
        db.commit()
        payload = {**summary, "order_status": order.status, "webhook_data": raw_payload}
        return (
            {"success": True, "message": "Payment still pending", "outcome": "pending"},
            [SideEffect(order.order_id, audit.PAYMENT_STATUS_UPDATED, actor, payload)],
            None,
        )

    def _discrepancy(self, db, order, provider, canonical, raw_payload, actor, extra):
        expected = order.expected_amount
        reason = f"Amount mismatch: expected {expected}, received {canonical.amount}"
        self.store.transition(
            db,
            order,
            sm.DISCREPANCY,
            {
                "payment_status": PaymentStatus.DISCREPANCY,
                "payment_expected_amount": expected,
                "payment_received_amount": canonical.amount,
                "payment_failure_reason": reason,
                "payment_callback_data": raw_payload,
                **extra,
            },
        )
        db.commit()
        discrepancies_total.labels(service=self.service_name, provider=provider).inc()
        logger.error(
            "payment_discrepancy order_id=%s provider=%s expected=%s received=%s",
            order.order_id,
            provider,
            expected,
            canonical.amount,
        )
        payload = {
            "provider": provider,
            "callback_status": canonical.status,
            "expected_amount": expected,
            "received_amount": canonical.amount,
            "reason": reason,
            "webhook_data": raw_payload,
        }
        return (
            {"success": True, "message": "Payment amount discrepancy detected, admin notified", "outcome": "discrepancy"},
            [
                SideEffect(
                    order.order_id, audit.PAYMENT_DISCREPANCY, actor, payload, topic=audit.TOPIC_PAYMENT_DISCREPANCY
                )
            ],
            None,
        )
