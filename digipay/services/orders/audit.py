"""Audit sink: append-only order history plus notification fan-out.

Callers collect `SideEffect`s while they mutate an order and hand them to
`AuditSink.emit()` only after the core transaction has committed. Each side
effect is persisted in its own transaction; a failure is logged and counted
and never reaches the caller.
"""

from dataclasses import dataclass, field
from typing import Any
from uuid import uuid4

from sqlalchemy import select

from digipay.common.events import EventEnvelope
from digipay.common.logging import logger, trace_id_ctx
from digipay.common.metrics import audit_failures_total
from digipay.services.orders.models import AuditLogEntry, OutboxEvent


# Audit event names.
PAYMENT_CREATED = "PAYMENT_CREATED"
PAYMENT_CONFIRMED = "PAYMENT_CONFIRMED"
PAYMENT_STATUS_UPDATED = "PAYMENT_STATUS_UPDATED"
PAYMENT_FAILED = "PAYMENT_FAILED"
PAYMENT_DISCREPANCY = "PAYMENT_DISCREPANCY"
CALLBACK_DUPLICATE = "CALLBACK_DUPLICATE"
CALLBACK_IGNORED = "CALLBACK_IGNORED"
DELIVERED_PRELOADED = "DELIVERED_PRELOADED"
DELIVERED_API = "DELIVERED_API"
DELIVERED_MANUAL = "DELIVERED_MANUAL"
MARKED_PENDING_ADMIN = "MARKED_PENDING_ADMIN"
DELIVERY_FAILED = "DELIVERY_FAILED"
ORDER_REJECTED = "ORDER_REJECTED"

# Notification topics.
TOPIC_PAYMENT_CREATED = "payment.created"
TOPIC_PAYMENT_DISCREPANCY = "payment.discrepancy"
TOPIC_PAYMENT_FAILED = "payment.failed"
TOPIC_DELIVERY_COMPLETED = "delivery.completed"
TOPIC_DELIVERY_FAILED = "delivery.failed"
TOPIC_DELIVERY_MANUAL = "delivery.manual_required"
TOPIC_ORDER_REJECTED = "order.rejected"


def system_actor(name: str = "engine", **extra: Any) -> dict[str, Any]:
    return {"type": "system", "id": name, **extra}


def provider_actor(provider: str) -> dict[str, Any]:
    return {"type": "provider", "id": provider, "webhook": True}


def admin_actor(admin_id: str) -> dict[str, Any]:
    return {"type": "admin", "id": admin_id}


@dataclass
class SideEffect:
    """One audit entry, optionally mirrored to a notification topic."""

    order_id: str
    event: str
    actor: dict[str, Any]
    payload: dict[str, Any] = field(default_factory=dict)
    topic: str | None = None


class AuditSink:
    """Writes side effects after the primary state change is durable."""

    def __init__(self, session_factory, service_name: str = "engine") -> None:
        self.session_factory = session_factory
        self.service_name = service_name

    def emit(self, effects: list[SideEffect]) -> None:
        for effect in effects:
            try:
                self._write(effect)
            except Exception as exc:
                audit_failures_total.labels(service=self.service_name).inc()
                logger.exception(
                    "audit_append_failed order_id=%s event=%s error=%s", effect.order_id, effect.event, exc
                )

    def _write(self, effect: SideEffect) -> None:
        with self.session_factory() as db:
            db.add(
                AuditLogEntry(
                    order_id=effect.order_id,
                    event=effect.event,
                    actor=effect.actor,
                    payload=effect.payload,
                )
            )
            if effect.topic:
                db.add(
                    OutboxEvent(
                        aggregate_type="order",
                        aggregate_id=effect.order_id,
                        event_type=effect.event,
                        topic=effect.topic,
                        payload=EventEnvelope(
                            event_type=effect.topic,
                            aggregate_id=effect.order_id,
                            trace_id=trace_id_ctx.get() or str(uuid4()),
                            payload={"event": effect.event, **effect.payload},
                        ).model_dump(),
                    )
                )
            db.commit()

    def history(self, order_id: str) -> list[AuditLogEntry]:
        with self.session_factory() as db:
            return list(
                db.execute(
                    select(AuditLogEntry)
                    .where(AuditLogEntry.order_id == order_id)
                    .order_by(AuditLogEntry.timestamp, AuditLogEntry.entry_id)
                ).scalars()
            )
