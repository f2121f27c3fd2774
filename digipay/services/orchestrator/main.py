"""HTTP surface of the payment engine.

Checkout creates sessions, providers post callbacks to `/webhooks/{provider}`,
admins trigger deliveries and rejections. The outbox publisher runs with the
app lifecycle.
"""

import asyncio
from contextlib import asynccontextmanager
from time import perf_counter
from uuid import uuid4

from fastapi import BackgroundTasks, FastAPI, Header, HTTPException, Request
from fastapi.responses import JSONResponse

from digipay.common.config import EngineConfig, settings
from digipay.common.db import SessionLocal
from digipay.common.errors import EngineError, WebhookError
from digipay.common.locks import RedisOrderLock
from digipay.common.logging import configure_logging, logger, trace_id_ctx
from digipay.common.metrics import http_request_duration_seconds, http_requests_total, metrics_response
from digipay.common.outbox import OutboxPublisher
from digipay.common.startup import log_startup_config
from digipay.common.tracing import current_trace_id, instrument_app, setup_tracing
from digipay.services.delivery.service import DeliveryDispatcher
from digipay.services.orchestrator.admin import AdminService
from digipay.services.orchestrator.reconciler import WebhookReconciler
from digipay.services.orchestrator.schemas import (
    AuditEntryView,
    DeliveryResponse,
    ManualDeliveryRequest,
    OrderView,
    RejectRequest,
    SessionCreateRequest,
    SessionResponse,
)
from digipay.services.orchestrator.service import PaymentSessionManager
from digipay.services.orders.audit import AuditSink
from digipay.services.orders.models import OutboxEvent
from digipay.services.provider_adapter.registry import build_registry

configure_logging()
setup_tracing(settings.service_name)
log_startup_config(
    settings,
    [
        "postgres_dsn",
        "kafka_bootstrap_servers",
        "redis_url",
        "public_base_url",
        "default_gateway_idr",
        "default_gateway_usd",
        "backup_gateway_idr",
        "backup_gateway_usd",
        "amount_tolerance_percent",
        "delivery_claim_timeout_seconds",
    ],
)

config = EngineConfig.from_settings(settings)
registry = build_registry(settings)
audit_sink = AuditSink(SessionLocal, settings.service_name)
dispatcher = DeliveryDispatcher(SessionLocal, config, audit_sink, service_name=settings.service_name)
sessions = PaymentSessionManager(
    SessionLocal,
    registry,
    config,
    audit_sink,
    lock=RedisOrderLock.from_url(settings.redis_url, ttl_seconds=settings.session_lock_ttl_seconds),
    service_name=settings.service_name,
)
reconciler = WebhookReconciler(SessionLocal, registry, config, audit_sink, dispatcher, service_name=settings.service_name)
admin = AdminService(SessionLocal, config, audit_sink, dispatcher, service_name=settings.service_name)
publisher = OutboxPublisher(SessionLocal, OutboxEvent, settings.service_name)


@asynccontextmanager
async def lifespan(_: FastAPI):
    """Run the outbox publisher with app lifecycle."""

    publisher_task = asyncio.create_task(publisher.run_forever())
    yield
    publisher_task.cancel()
    await publisher.close()


app = FastAPI(title="DigiPay Engine", lifespan=lifespan)
instrument_app(app)


@app.middleware("http")
async def metrics_middleware(request: Request, call_next):
    """Record request count and latency for every HTTP call."""

    start = perf_counter()
    route = request.url.path
    method = request.method
    status_code = 500
    trace_id_ctx.set(request.headers.get("x-trace-id") or current_trace_id() or str(uuid4()))
    try:
        response = await call_next(request)
        status_code = response.status_code
        route_obj = request.scope.get("route")
        if route_obj is not None and getattr(route_obj, "path", None):
            route = route_obj.path
        return response
    finally:
        elapsed = max(0.0, perf_counter() - start)
        http_request_duration_seconds.labels(
            service=settings.service_name,
            route=route,
            method=method,
        ).observe(elapsed)
        http_requests_total.labels(
            service=settings.service_name,
            route=route,
            method=method,
            status_code=str(status_code),
        ).inc()


def enforce_api_key(x_api_key: str | None) -> None:
    """Reject requests that do not provide the configured API key."""

    if x_api_key != settings.api_key:
        raise HTTPException(status_code=401, detail="invalid API key")


def engine_http_error(exc: EngineError) -> HTTPException:
    return HTTPException(status_code=exc.status_code, detail=exc.to_dict())


def delivery_response(result) -> DeliveryResponse:
    return DeliveryResponse(
        success=result.success,
        status=result.status,
        message=result.message,
        delivered_data=result.delivered_data,
        error=result.error,
    )


@app.post("/payments/sessions", response_model=SessionResponse)
async def create_session(req: SessionCreateRequest, x_api_key: str | None = Header(default=None)):
    """Create (or return the existing) provider payment session for an order."""

    enforce_api_key(x_api_key)
    try:
        return await sessions.create_session(req.order_id, req.currency)
    except EngineError as exc:
        raise engine_http_error(exc) from exc


@app.post("/webhooks/{provider}")
async def provider_webhook(provider: str, request: Request, background_tasks: BackgroundTasks):
    """Provider callback endpoint; 2xx means the provider must not retry.

    Delivery for a freshly paid order runs as a background task after the
    acknowledgement has been sent.
    """

    raw_body = await request.body()
    try:
        ack = await reconciler.handle_callback(
            provider,
            raw_body,
            dict(request.headers),
            request.headers.get("content-type"),
            schedule=background_tasks.add_task,
        )
    except WebhookError as exc:
        return JSONResponse(status_code=exc.status_code, content={"success": False, "error": exc.message})
    return JSONResponse(status_code=200, content=ack)


@app.get("/orders/{order_id}", response_model=OrderView)
def get_order(order_id: str):
    """Fetch the current payment/delivery status of one order."""

    try:
        return OrderView.model_validate(admin.get_order(order_id))
    except EngineError as exc:
        raise engine_http_error(exc) from exc


@app.get("/admin/orders/pending-deliveries", response_model=list[OrderView])
def pending_deliveries(limit: int = 100, x_api_key: str | None = Header(default=None)):
    """Paid orders whose delivery still needs a human."""

    enforce_api_key(x_api_key)
    return [OrderView.model_validate(order) for order in admin.list_pending_deliveries(limit)]


@app.get("/admin/orders/pending-payments", response_model=list[OrderView])
def pending_payments(
    older_than_minutes: int = 15, limit: int = 100, x_api_key: str | None = Header(default=None)
):
    """Orders whose provider session has been open longer than the cutoff."""

    enforce_api_key(x_api_key)
    return [OrderView.model_validate(order) for order in admin.list_pending_payments(older_than_minutes, limit)]


@app.post("/admin/orders/{order_id}/deliver", response_model=DeliveryResponse)
def manual_delivery(
    order_id: str,
    req: ManualDeliveryRequest,
    x_api_key: str | None = Header(default=None),
    x_admin_id: str = Header(default="admin"),
):
    """Record a hand-fulfilled delivery."""

    enforce_api_key(x_api_key)
    try:
        return delivery_response(admin.trigger_manual_delivery(order_id, req, x_admin_id))
    except EngineError as exc:
        raise engine_http_error(exc) from exc


@app.post("/admin/orders/{order_id}/redeliver", response_model=DeliveryResponse)
async def redeliver(
    order_id: str,
    x_api_key: str | None = Header(default=None),
    x_admin_id: str = Header(default="admin"),
):
    """Re-run the product's delivery strategy (no-op when already delivered)."""

    enforce_api_key(x_api_key)
    return delivery_response(await admin.trigger_redelivery(order_id, x_admin_id))


@app.post("/admin/orders/{order_id}/reject", response_model=OrderView)
def reject(
    order_id: str,
    req: RejectRequest,
    x_api_key: str | None = Header(default=None),
    x_admin_id: str = Header(default="admin"),
):
    """Reject an unpaid order."""

    enforce_api_key(x_api_key)
    try:
        return OrderView.model_validate(admin.reject_order(order_id, req.reason, x_admin_id))
    except EngineError as exc:
        raise engine_http_error(exc) from exc


@app.post("/admin/orders/{order_id}/reconcile")
async def reconcile(
    order_id: str,
    x_api_key: str | None = Header(default=None),
    x_admin_id: str = Header(default="admin"),
):
    """Poll the order's provider and feed the status through reconciliation."""

    enforce_api_key(x_api_key)
    try:
        return await reconciler.poll_order(order_id, x_admin_id)
    except EngineError as exc:
        raise engine_http_error(exc) from exc
    except WebhookError as exc:
        raise HTTPException(status_code=exc.status_code, detail=exc.message) from exc
    except Exception as exc:
        logger.exception("provider_status_poll_failed order_id=%s", order_id)
        raise HTTPException(status_code=502, detail=f"status poll failed: {exc}") from exc


@app.get("/admin/orders/{order_id}/audit", response_model=list[AuditEntryView])
def order_audit(order_id: str, x_api_key: str | None = Header(default=None)):
    """Audit trail of one order, oldest first."""

    enforce_api_key(x_api_key)
    try:
        return [AuditEntryView.model_validate(entry) for entry in admin.get_audit(order_id)]
    except EngineError as exc:
        raise engine_http_error(exc) from exc


@app.get("/metrics")
def metrics():
    """Prometheus scrape endpoint."""

    return metrics_response()


@app.get("/health")
def health():
    """Container health probe endpoint."""

    return {"ok": True}
