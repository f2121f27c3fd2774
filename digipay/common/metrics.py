"""Prometheus metric definitions for the payment engine."""

from prometheus_client import Counter, Gauge, Histogram, generate_latest
from starlette.responses import Response


session_requests_total = Counter("session_requests_total", "Payment session requests", ["service"])
session_failures_total = Counter("session_failures_total", "Failed payment session requests", ["service", "code"])
gateway_failover_total = Counter(
    "gateway_failover_total",
    "Session creations retried against the backup gateway",
    ["service", "primary", "backup"],
)
provider_call_seconds = Histogram(
    "provider_call_seconds",
    "Outbound provider call duration seconds",
    ["service", "provider", "operation"],
)
callbacks_total = Counter(
    "callbacks_total",
    "Provider callbacks handled by outcome",
    ["service", "provider", "outcome"],
)
callback_duration_seconds = Histogram(
    "callback_duration_seconds",
    "Provider callback handling duration seconds",
    ["service", "provider"],
)
duplicate_callbacks_skipped_total = Counter(
    "duplicate_callbacks_skipped_total",
    "Callbacks skipped by the idempotency gate",
    ["service", "provider"],
)
discrepancies_total = Counter("discrepancies_total", "Orders moved to DISCREPANCY", ["service", "provider"])
deliveries_total = Counter(
    "deliveries_total",
    "Delivery attempts by strategy and outcome",
    ["service", "delivery_type", "outcome"],
)
retries_total = Counter("retries_total", "Retry count", ["service", "dependency"])
audit_failures_total = Counter("audit_failures_total", "Side effects that failed to persist", ["service"])
http_requests_total = Counter(
    "http_requests_total",
    "Total HTTP requests",
    ["service", "route", "method", "status_code"],
)
http_request_duration_seconds = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration seconds",
    ["service", "route", "method"],
)
outbox_pending_total = Gauge(
    "outbox_pending_total",
    "Current count of outbox events not yet sent",
    ["service"],
)
outbox_oldest_pending_age_seconds = Gauge(
    "outbox_oldest_pending_age_seconds",
    "Age in seconds of the oldest pending outbox event",
    ["service"],
)


def metrics_response() -> Response:
    """Expose all registered Prometheus metrics in text format."""

    return Response(content=generate_latest(), media_type="text/plain")
