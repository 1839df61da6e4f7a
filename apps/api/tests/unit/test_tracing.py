"""Opt-in OpenTelemetry tracing.

Test Coverage:
1. Disabled by default: no provider installed, app not instrumented
2. Enabled with a missing or malformed endpoint: stays off, warns
3. Enabled with a valid endpoint: provider installed, spans exported
4. Instrumented app emits a SERVER span per request
"""

import logging
from unittest.mock import MagicMock

import pytest
from fastapi import FastAPI
from httpx import ASGITransport, AsyncClient
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import SimpleSpanProcessor
from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter
from opentelemetry.trace import SpanKind

from mpw_api.observability import tracing

ENDPOINT = "http://collector:4318/v1/traces"


@pytest.fixture(autouse=True)
def _clear_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in (
        "OTEL_ENABLED",
        "OTEL_EXPORTER_OTLP_TRACES_ENDPOINT",
        "OTEL_EXPORTER_OTLP_ENDPOINT",
        "OTEL_SERVICE_NAME",
    ):
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def installed(monkeypatch: pytest.MonkeyPatch) -> list:
    """Providers handed to the global setter, which is set-once per process."""
    providers: list = []
    monkeypatch.setattr(tracing.trace, "set_tracer_provider", providers.append)
    return providers


def test_disabled_by_default(installed: list) -> None:
    assert tracing.configure_tracing() is None
    assert installed == []


def test_endpoint_alone_does_not_enable(monkeypatch: pytest.MonkeyPatch, installed: list) -> None:
    monkeypatch.setenv("OTEL_EXPORTER_OTLP_TRACES_ENDPOINT", ENDPOINT)

    assert tracing.configure_tracing() is None
    assert installed == []


def test_api_app_is_not_instrumented_by_default() -> None:
    from mpw_api import main

    assert main.TRACER_PROVIDER is None


@pytest.mark.parametrize("endpoint", [None, "collector:4318", "ftp://collector/v1/traces", "http://"])
def test_enabled_with_invalid_endpoint_stays_off(
    monkeypatch: pytest.MonkeyPatch, caplog: pytest.LogCaptureFixture, installed: list, endpoint
) -> None:
    monkeypatch.setenv("OTEL_ENABLED", "true")
    if endpoint is not None:
        monkeypatch.setenv("OTEL_EXPORTER_OTLP_TRACES_ENDPOINT", endpoint)
    caplog.set_level(logging.WARNING, logger="mpw_api.observability.tracing")

    assert tracing.configure_tracing() is None

    assert installed == []
    records = [r for r in caplog.records if r.getMessage() == "OTEL_TRACING_DISABLED"]
    assert records[0].reason == "invalid_endpoint"


def test_enabled_exports_spans_with_service_name(monkeypatch: pytest.MonkeyPatch, installed: list) -> None:
    monkeypatch.setenv("OTEL_ENABLED", "1")
    monkeypatch.setenv("OTEL_EXPORTER_OTLP_TRACES_ENDPOINT", ENDPOINT)
    monkeypatch.setenv("OTEL_SERVICE_NAME", "mpw-test")
    exporter = InMemorySpanExporter()

    provider = tracing.configure_tracing(span_exporter=exporter)
    try:
        assert installed == [provider]
        assert provider.resource.attributes["service.name"] == "mpw-test"

        with provider.get_tracer("test").start_as_current_span("work"):
            pass
        provider.force_flush()

        assert [span.name for span in exporter.get_finished_spans()] == ["work"]
    finally:
        provider.shutdown()


def test_enabled_builds_otlp_exporter_for_endpoint(monkeypatch: pytest.MonkeyPatch, installed: list) -> None:
    monkeypatch.setenv("OTEL_ENABLED", "true")
    monkeypatch.setenv("OTEL_EXPORTER_OTLP_ENDPOINT", "https://collector:4318")
    otlp_exporter = MagicMock()
    monkeypatch.setattr(tracing, "OTLPSpanExporter", otlp_exporter)

    provider = tracing.configure_tracing(service_name="worker")
    try:
        otlp_exporter.assert_called_once_with(endpoint="https://collector:4318/v1/traces")
        assert provider.resource.attributes["service.name"] == "worker"
    finally:
        provider.shutdown()


@pytest.mark.parametrize(
    "raw,expected",
    [
        ("http://collector:4318/v1/traces", "http://collector:4318/v1/traces"),
        ("https://otel.example.com/v1/traces", "https://otel.example.com/v1/traces"),
        ("", None),
        ("not a url", None),
    ],
)
def test_resolve_traces_endpoint(raw: str, expected) -> None:
    assert tracing.resolve_traces_endpoint(raw) == expected


@pytest.mark.asyncio
async def test_instrumented_app_emits_server_span() -> None:
    exporter = InMemorySpanExporter()
    provider = TracerProvider()
    provider.add_span_processor(SimpleSpanProcessor(exporter))

    app = FastAPI()

    @app.get("/ping")
    async def ping():
        return {"ok": True}

    tracing.instrument_app(app, provider)
    try:
        transport = ASGITransport(app=app)
        async with AsyncClient(transport=transport, base_url="http://test") as client:
            response = await client.get("/ping")
    finally:
        FastAPIInstrumentor().uninstrument_app(app)

    assert response.status_code == 200
    server_spans = [span for span in exporter.get_finished_spans() if span.kind == SpanKind.SERVER]
    assert len(server_spans) == 1
    attrs = dict(server_spans[0].attributes or {})
    assert (attrs.get("http.request.method") or attrs.get("http.method")) == "GET"
