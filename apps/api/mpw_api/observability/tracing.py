"""Opt-in OpenTelemetry tracing.

Tracing starts only when ``OTEL_ENABLED`` is true and the OTLP traces
endpoint is an absolute http(s) URL; otherwise the OpenTelemetry API stays
on its no-op provider. Spans leave in batches over OTLP/HTTP and log lines
written inside a span carry its trace_id / span_id.
"""

import logging
from typing import Optional
from urllib.parse import urlparse

from fastapi import FastAPI
from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.sdk.resources import SERVICE_NAME, Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor, SpanExporter

from mpw_api.config import env

logger = logging.getLogger(__name__)

TRACER_NAME = "mpw"


def resolve_traces_endpoint(raw: Optional[str]) -> Optional[str]:
    """Return ``raw`` if it is an absolute http(s) URL, else None."""
    if not raw:
        return None
    parsed = urlparse(raw)
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        return None
    return raw


def init_tracing(
    service_name: str,
    endpoint: Optional[str] = None,
    span_exporter: Optional[SpanExporter] = None,
) -> TracerProvider:
    """Build a tracer provider and install it as the global one.

    Args:
        service_name: ``service.name`` resource attribute
        endpoint: OTLP/HTTP traces URL (ignored when ``span_exporter`` is given)
        span_exporter: Custom span exporter (testing)
    """
    provider = TracerProvider(resource=Resource.create({SERVICE_NAME: service_name}))
    exporter = span_exporter or OTLPSpanExporter(endpoint=endpoint)
    provider.add_span_processor(BatchSpanProcessor(exporter))
    trace.set_tracer_provider(provider)
    return provider


def configure_tracing(
    service_name: Optional[str] = None,
    span_exporter: Optional[SpanExporter] = None,
) -> Optional[TracerProvider]:
    """Start tracing when the environment asks for it.

    Returns:
        The installed provider, or None when tracing stays off
    """
    if not env.otel_enabled():
        return None

    raw_endpoint = env.get_otel_traces_endpoint()
    endpoint = resolve_traces_endpoint(raw_endpoint)
    if endpoint is None:
        logger.warning("OTEL_TRACING_DISABLED", extra={"reason": "invalid_endpoint", "endpoint": raw_endpoint})
        return None

    name = service_name or env.get_otel_service_name()
    provider = init_tracing(name, endpoint=endpoint, span_exporter=span_exporter)
    logger.info("OTEL_TRACING_ENABLED", extra={"service_name": name, "endpoint": endpoint})
    return provider


def instrument_app(app: FastAPI, provider: TracerProvider) -> None:
    """Wrap the app so every inbound request gets a SERVER span."""
    FastAPIInstrumentor.instrument_app(app, tracer_provider=provider)


def get_tracer() -> trace.Tracer:
    return trace.get_tracer(TRACER_NAME)
