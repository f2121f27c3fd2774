"""Delivery strategies: preloaded stock, external fulfilment API, manual.

Each strategy runs after the dispatcher has taken the order's delivery claim
and writes its own terminal delivery fields conditioned on that claim id.
"""

import asyncio
import json
import string
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any

import httpx

from digipay.common import state_machine as sm
from digipay.common.config import EngineConfig
from digipay.common.logging import logger
from digipay.common.metrics import retries_total
from digipay.services.orders import audit
from digipay.services.orders.models import DeliveryStatus, DeliveryType, Order, Product
from digipay.services.orders.store import InventoryStore, OrderStore, utcnow


OUT_OF_STOCK = "OUT_OF_STOCK"
API_NOT_CONFIGURED = "API_NOT_CONFIGURED"
API_DELIVERY_FAILED = "API_DELIVERY_FAILED"


@dataclass
class DeliveryJob:
    """Everything a strategy needs once the claim is held."""

    order: Order
    product: Product
    claim_id: str
    actor: dict[str, Any]
    trigger: str


@dataclass
class DeliveryResult:
    success: bool
    status: str
    message: str
    delivered_data: dict[str, Any] | None = None
    error: str | None = None
    event: str | None = None
    topic: str | None = None
    audit_payload: dict[str, Any] = field(default_factory=dict)


class DeliveryStrategy(ABC):
    delivery_type: str = ""

    def __init__(self, session_factory, store: OrderStore | None = None) -> None:
        self.session_factory = session_factory
        self.store = store or OrderStore()

    @abstractmethod
    async def run(self, job: DeliveryJob) -> DeliveryResult:
        """Fulfil one claimed order."""

    def claim_window_seconds(self, product: Product) -> float:
        """Worst-case run time for `product`, added to the base claim lease."""

        return 0.0

    def _delivered_values(self, job: DeliveryJob, content: dict[str, Any], content_ref: str | None) -> dict:
        now = utcnow()
        return {
            "status": sm.SUCCESS,
            "locked": True,
            "completed_at": now,
            "delivery_status": DeliveryStatus.DELIVERED,
            "delivered_at": now,
            "delivered_by": str(job.actor.get("id") or "system"),
            "delivery_content": content,
            "delivery_content_ref": content_ref,
            "delivery_error": None,
            "delivery_error_message": None,
        }

    def _record_failure(self, job: DeliveryJob, error: str, message: str) -> None:
        with self.session_factory() as db:
            self.store.finish_delivery(
                db,
                job.order,
                job.claim_id,
                {
                    "delivery_status": DeliveryStatus.FAILED,
                    "delivery_error": error,
                    "delivery_error_message": message,
                },
            )
            db.commit()

    def _failed(self, job: DeliveryJob, error: str, message: str, **payload) -> DeliveryResult:
        self._record_failure(job, error, message)
        return DeliveryResult(
            success=False,
            status="failed",
            message=message,
            error=error,
            event=audit.DELIVERY_FAILED,
            topic=audit.TOPIC_DELIVERY_FAILED,
            audit_payload={"delivery_type": self.delivery_type, "error": error, "message": message, **payload},
        )


class PreloadedStrategy(DeliveryStrategy):
    """Claim one unused stock item and mark the order delivered in one transaction."""

    delivery_type = DeliveryType.PRELOADED

    def __init__(self, session_factory, store: OrderStore | None = None, inventory: InventoryStore | None = None):
        super().__init__(session_factory, store)
        self.inventory = inventory or InventoryStore()

    async def run(self, job: DeliveryJob) -> DeliveryResult:
        slug = job.product.slug
        with self.session_factory() as db:
            claimed = self.inventory.claim(db, slug, job.order.order_id)
            if claimed is not None:
                item_id, content = claimed
                self.store.finish_delivery(
                    db,
                    job.order,
                    job.claim_id,
                    self._delivered_values(job, {"item_id": item_id, **content}, f"stock:{slug}:{item_id}"),
                    Order.status == sm.PROCESS,
                )
                db.commit()
        if claimed is None:
            logger.warning("delivery_out_of_stock order_id=%s product_slug=%s", job.order.order_id, slug)
            return self._failed(job, OUT_OF_STOCK, "No stock available for this product", product_slug=slug)
        item_id, _ = claimed
        return DeliveryResult(
            success=True,
            status="delivered",
            message="Product delivered successfully",
            delivered_data={"type": self.delivery_type, "item_id": item_id},
            event=audit.DELIVERED_PRELOADED,
            topic=audit.TOPIC_DELIVERY_COMPLETED,
            audit_payload={"item_id": item_id, "product_slug": slug, "trigger": job.trigger},
        )


@dataclass(frozen=True)
class ApiSettings:
    """Resolved per-product fulfilment call settings."""

    endpoint: str | None
    method: str
    attempts: int
    base_delay_ms: int
    timeout: float

    def backoff_ms(self, attempt: int, max_backoff_ms: int) -> int:
        return min(self.base_delay_ms * 2 ** (attempt - 1), max_backoff_ms)

    def budget_seconds(self, max_backoff_ms: int) -> float:
        sleeps = sum(self.backoff_ms(attempt, max_backoff_ms) for attempt in range(1, self.attempts))
        return self.attempts * self.timeout + sleeps / 1000


def _configured(api_config: dict, key: str, default):
    value = api_config.get(key)
    return default if value is None or value == "" else value


class ApiStrategy(DeliveryStrategy):
    """POST a templated payload to the product's fulfilment endpoint.

    Timeouts, transport errors and 5xx responses are retried with exponential
    backoff; 4xx responses are permanent. The order id is sent as
    `Idempotency-Key` so the endpoint can drop a replay after a crash.
    """

    delivery_type = DeliveryType.API

    def __init__(
        self,
        session_factory,
        config: EngineConfig,
        store: OrderStore | None = None,
        client: httpx.AsyncClient | None = None,
        service_name: str = "delivery",
    ) -> None:
        super().__init__(session_factory, store)
        self.config = config
        self.client = client
        self.service_name = service_name

    def _payload(self, job: DeliveryJob, template: dict[str, Any]) -> dict[str, Any]:
        order, product = job.order, job.product
        values = {
            "order_id": order.order_id,
            "product_id": product.product_id,
            "product_slug": product.slug,
            "product_name": product.title,
            "customer_email": order.customer_email or "",
            "customer_name": order.customer_name or "",
            "quantity": order.quantity or 1,
        }
        payload: dict[str, Any] = dict(values)
        for key, value in (template or {}).items():
            payload[key] = string.Template(value).safe_substitute(values) if isinstance(value, str) else value
        return payload

    async def _post(self, method: str, endpoint: str, headers: dict, payload: dict, timeout: float):
        if self.client is not None:
            return await self.client.request(method, endpoint, headers=headers, json=payload, timeout=timeout)
        async with httpx.AsyncClient(timeout=timeout) as client:
            return await client.request(method, endpoint, headers=headers, json=payload)

    def settings_for(self, product: Product) -> ApiSettings:
        """Per-product overrides; a missing or null value takes the engine default."""

        api_config = product.delivery_config or {}
        return ApiSettings(
            endpoint=api_config.get("endpoint") or None,
            method=str(api_config.get("method") or "POST").upper(),
            attempts=max(1, int(api_config.get("retry_attempts") or self.config.delivery_api_attempts)),
            base_delay_ms=max(0, int(_configured(api_config, "retry_delay_ms", self.config.delivery_api_backoff_ms))),
            timeout=float(api_config.get("timeout_seconds") or self.config.delivery_api_timeout_seconds),
        )

    def claim_window_seconds(self, product: Product) -> float:
        return self.settings_for(product).budget_seconds(self.config.delivery_api_max_backoff_ms)

    async def run(self, job: DeliveryJob) -> DeliveryResult:
        api_config = job.product.delivery_config or {}
        settings = self.settings_for(job.product)
        if not settings.endpoint:
            return self._failed(job, API_NOT_CONFIGURED, "No API delivery configuration found for this product")

        attempts = settings.attempts
        headers = {"Content-Type": "application/json", "Idempotency-Key": job.order.order_id}
        if api_config.get("api_key"):
            headers["Authorization"] = f"Bearer {api_config['api_key']}"
        headers.update(api_config.get("headers") or {})
        payload = self._payload(job, api_config.get("payload_template") or {})

        last_error = "UNKNOWN"
        for attempt in range(1, attempts + 1):
            try:
                response = await self._post(settings.method, settings.endpoint, headers, payload, settings.timeout)
            except httpx.HTTPError as exc:
                last_error = f"{exc.__class__.__name__}: {exc}"
            else:
                if response.status_code < 400:
                    return self._delivered(job, response, attempt)
                if response.status_code < 500:
                    return self._failed(
                        job,
                        API_DELIVERY_FAILED,
                        f"API error {response.status_code}: {response.text[:500]}",
                        attempts=attempt,
                    )
                last_error = f"Temporary server error: {response.status_code}"

            if attempt < attempts:
                retries_total.labels(service=self.service_name, dependency="delivery_api").inc()
                backoff_ms = settings.backoff_ms(attempt, self.config.delivery_api_max_backoff_ms)
                logger.warning(
                    "delivery_api_retry order_id=%s attempt=%s backoff_ms=%s error=%s",
                    job.order.order_id,
                    attempt,
                    backoff_ms,
                    last_error,
                )
                await asyncio.sleep(backoff_ms / 1000)

        return self._failed(job, API_DELIVERY_FAILED, last_error, attempts=attempts)

    def _delivered(self, job: DeliveryJob, response: httpx.Response, attempt: int) -> DeliveryResult:
        try:
            body = response.json()
        except json.JSONDecodeError:
            body = {"raw": response.text[:2000]}
        if not isinstance(body, dict):
            body = {"raw": body}
        transaction_id = body.get("transactionId") or body.get("transaction_id") or body.get("id")
        content = {"transaction_id": transaction_id, "api_response": body}
        with self.session_factory() as db:
            self.store.finish_delivery(
                db,
                job.order,
                job.claim_id,
                self._delivered_values(job, content, f"api:{transaction_id}" if transaction_id else None),
                Order.status == sm.PROCESS,
            )
            db.commit()
        return DeliveryResult(
            success=True,
            status="delivered",
            message="Product delivered via API",
            delivered_data={"type": self.delivery_type, "transaction_id": transaction_id},
            event=audit.DELIVERED_API,
            topic=audit.TOPIC_DELIVERY_COMPLETED,
            audit_payload={"transaction_id": transaction_id, "attempts": attempt, "trigger": job.trigger},
        )


class ManualStrategy(DeliveryStrategy):
    """Park the order for an admin; it stays in PROCESS until delivered by hand."""

    delivery_type = DeliveryType.MANUAL

    async def run(self, job: DeliveryJob) -> DeliveryResult:
        with self.session_factory() as db:
            self.store.finish_delivery(
                db,
                job.order,
                job.claim_id,
                {"delivery_status": DeliveryStatus.PENDING, "delivery_error": None, "delivery_error_message": None},
            )
            db.commit()
        instructions = (job.product.delivery_config or {}).get("instructions")
        return DeliveryResult(
            success=True,
            status="pending_admin",
            message="Order marked for manual delivery",
            delivered_data={"type": self.delivery_type, "instructions": instructions},
            event=audit.MARKED_PENDING_ADMIN,
            topic=audit.TOPIC_DELIVERY_MANUAL,
            audit_payload={"product_slug": job.product.slug, "trigger": job.trigger},
        )
