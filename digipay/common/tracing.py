"""Request tracing for the engine's HTTP surface.

Spans are exported to the OTLP collector. Prometheus scrapes and container
health probes are excluded so checkout and callback traces are not drowned
out by them.
"""

from fastapi import FastAPI
from opentelemetry import trace
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter

from digipay.common.config import settings


UNTRACED_ROUTES = "metrics,health"


def setup_tracing(service_name: str, endpoint: str | None = None) -> TracerProvider:
    """Register a tracer provider for `service_name`; `endpoint` overrides the configured collector."""

    resource = Resource.create({"service.name": service_name, "service.namespace": "digipay"})
    provider = TracerProvider(resource=resource)
    exporter = OTLPSpanExporter(endpoint=endpoint or settings.otel_exporter_otlp_endpoint)
    provider.add_span_processor(BatchSpanProcessor(exporter))
    trace.set_tracer_provider(provider)
    return provider


def instrument_app(app: FastAPI) -> None:
    FastAPIInstrumentor.instrument_app(app, excluded_urls=UNTRACED_ROUTES)


def current_trace_id() -> str | None:
    """Hex id of the active span's trace, or None outside a recorded span."""

    context = trace.get_current_span().get_span_context()
    if not context.is_valid:
        return None
    return format(context.trace_id, "032x")
