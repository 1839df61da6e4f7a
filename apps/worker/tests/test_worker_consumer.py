"""Worker consumer tests: ack / retry tier / DLQ / requeue decisions.

Test Coverage:
1. Reconciled → ack, nothing published
2. Failure on attempt n → retry tier n (clamped), x-attempts header, ack
3. Failure reaching MAX_ATTEMPTS → DLQ, ack
4. Invalid JSON → DLQ with raw body, ack
5. Retry/DLQ publish not confirmed → nack(requeue=True)
6. No retry tiers configured → DLQ
7. Retries keep the first delivery routing key in x-original-routing-key
8. Log lines of a delivery carry its request and event ids
9. Each delivery runs inside a CONSUMER span that its log lines reference
"""

import io
import json
import logging
from unittest.mock import AsyncMock, MagicMock

import pytest
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import SimpleSpanProcessor
from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter
from opentelemetry.trace import SpanKind

from fakes import RecordingMetrics, RecordingPublisher, make_mq_config
from mpw_api.billing.ports import PublishResult
from mpw_api.billing.reconcile_payment import ReconcileResult
from mpw_api.context import request_id_var, webhook_event_id_var
from mpw_api.errors import ReconciliationError
from mpw_api.utils.logging import JSONFormatter
from mpw_worker.consumer import (
    WebhookConsumer,
    original_routing_key,
    parse_message_body,
    resolve_attempts,
    resolve_retry_queue,
)

ENVELOPE = {
    "eventId": "evt_1",
    "topic": "payment",
    "action": "payment.created",
    "data": {"type": "payment", "data": {"id": "pay_1"}},
    "requestId": "req-1",
}


def _message(body=None, headers=None, message_id="evt_1", correlation_id="req-1"):
    message = MagicMock()
    message.body = body if isinstance(body, bytes) else json.dumps(body or ENVELOPE).encode()
    message.headers = headers or {}
    message.routing_key = "mercadopago.payment.created"
    message.message_id = message_id
    message.correlation_id = correlation_id
    message.ack = AsyncMock()
    message.nack = AsyncMock()
    return message


def _consumer(processor_result=None, processor_error=None, publisher=None, metrics=None, **config):
    processor = MagicMock()
    if processor_error is not None:
        processor.execute = AsyncMock(side_effect=processor_error)
    else:
        processor.execute = AsyncMock(return_value=processor_result or ReconcileResult(status="processed"))
    publisher = publisher or RecordingPublisher()
    consumer = WebhookConsumer(processor, publisher, make_mq_config(**config), metrics=metrics)
    return consumer, processor, publisher


@pytest.mark.asyncio
async def test_processed_message_is_acked() -> None:
    metrics = RecordingMetrics()
    consumer, processor, publisher = _consumer(metrics=metrics)
    message = _message()

    await consumer.handle(message)

    processor.execute.assert_awaited_once_with(ENVELOPE)
    message.ack.assert_awaited_once()
    message.nack.assert_not_awaited()
    assert publisher.calls == []
    assert metrics.outcome_names("webhook.consume") == ["processed"]


@pytest.mark.asyncio
async def test_ignored_message_is_acked() -> None:
    consumer, _, publisher = _consumer(processor_result=ReconcileResult(status="ignored", reason="unsupported_topic"))
    message = _message()

    await consumer.handle(message)

    message.ack.assert_awaited_once()
    assert publisher.calls == []


@pytest.mark.asyncio
async def test_first_failure_goes_to_first_retry_tier() -> None:
    consumer, _, publisher = _consumer(processor_error=ReconciliationError("missing_checkout_metadata"))
    message = _message(headers={"x-request-id": "req-1"})

    await consumer.handle(message)

    message.ack.assert_awaited_once()
    call = publisher.calls[0]
    assert call["exchange"] == "mercadopago.dlx"
    assert call["routing_key"] == "retry.10s"
    assert call["payload"]["attempts"] == 1
    assert call["payload"]["lastError"] == "missing_checkout_metadata"
    assert call["payload"]["eventId"] == "evt_1"
    assert call["headers"] == {
        "x-request-id": "req-1",
        "x-attempts": 1,
        "x-error": "missing_checkout_metadata",
        "x-original-routing-key": "mercadopago.payment.created",
    }
    assert call["message_id"] == "evt_1"
    assert call["correlation_id"] == "req-1"


@pytest.mark.asyncio
@pytest.mark.parametrize("previous,routing_key", [(1, "retry.1m"), (2, "retry.10m"), (3, "retry.1h")])
async def test_retry_tier_follows_attempts(previous: int, routing_key: str) -> None:
    consumer, _, publisher = _consumer(processor_error=RuntimeError("boom"), max_attempts=10)

    await consumer.handle(_message(headers={"x-attempts": previous}))

    assert publisher.calls[0]["routing_key"] == routing_key
    assert publisher.calls[0]["payload"]["attempts"] == previous + 1


@pytest.mark.asyncio
async def test_attempts_beyond_tiers_clamp_to_last_tier() -> None:
    consumer, _, publisher = _consumer(processor_error=RuntimeError("boom"), max_attempts=10)

    await consumer.handle(_message(headers={"x-attempts": 7}))

    assert publisher.calls[0]["routing_key"] == "retry.1h"


@pytest.mark.asyncio
async def test_max_attempts_reached_goes_to_dlq() -> None:
    metrics = RecordingMetrics()
    consumer, _, publisher = _consumer(processor_error=RuntimeError("still failing"), metrics=metrics)
    message = _message(body={**ENVELOPE, "attempts": 4})

    await consumer.handle(message)

    message.ack.assert_awaited_once()
    call = publisher.calls[0]
    assert call["exchange"] == "mercadopago.dlx"
    assert call["routing_key"] == "dlq"
    assert call["payload"]["attempts"] == 5
    assert call["headers"]["x-attempts"] == 5
    assert metrics.outcome_names("webhook.consume") == ["dlq"]


@pytest.mark.asyncio
async def test_invalid_json_goes_to_dlq_without_processing() -> None:
    consumer, processor, publisher = _consumer()
    message = _message(body=b"{not json")

    await consumer.handle(message)

    processor.execute.assert_not_awaited()
    message.ack.assert_awaited_once()
    call = publisher.calls[0]
    assert call["routing_key"] == "dlq"
    assert call["payload"] == {"error": "invalid_json", "raw": "{not json"}
    assert call["headers"]["x-attempts"] == 0


@pytest.mark.asyncio
async def test_unconfirmed_retry_publish_requeues() -> None:
    metrics = RecordingMetrics()
    publisher = RecordingPublisher([PublishResult(published=False, error="publish_timeout")])
    consumer, _, _ = _consumer(processor_error=RuntimeError("boom"), publisher=publisher, metrics=metrics)
    message = _message()

    await consumer.handle(message)

    message.nack.assert_awaited_once_with(requeue=True)
    message.ack.assert_not_awaited()
    assert metrics.outcome_names("webhook.consume") == ["requeued"]


@pytest.mark.asyncio
async def test_unconfirmed_dlq_publish_requeues() -> None:
    publisher = RecordingPublisher([PublishResult(published=False, error="channel_unavailable")])
    consumer, _, _ = _consumer(processor_error=RuntimeError("boom"), publisher=publisher)
    message = _message(headers={"x-attempts": 4})

    await consumer.handle(message)

    message.nack.assert_awaited_once_with(requeue=True)


@pytest.mark.asyncio
async def test_no_retry_tiers_sends_to_dlq() -> None:
    consumer, _, publisher = _consumer(processor_error=RuntimeError("boom"), retry_queues=())
    message = _message()

    await consumer.handle(message)

    assert publisher.calls[0]["routing_key"] == "dlq"
    assert publisher.calls[0]["headers"]["x-error"] == "retry_queue_unavailable"
    message.ack.assert_awaited_once()


@pytest.mark.asyncio
async def test_ids_fall_back_to_payload() -> None:
    consumer, _, publisher = _consumer(processor_error=RuntimeError("boom"))

    await consumer.handle(_message(message_id=None, correlation_id=None))

    assert publisher.calls[0]["message_id"] == "evt_1"
    assert publisher.calls[0]["correlation_id"] == "req-1"


@pytest.mark.asyncio
async def test_exception_without_text_uses_generic_reason() -> None:
    consumer, _, publisher = _consumer(processor_error=RuntimeError())

    await consumer.handle(_message())

    assert publisher.calls[0]["payload"]["lastError"] == "processing_failed"


@pytest.mark.parametrize(
    "headers,payload,expected",
    [
        ({"x-attempts": 3}, {"attempts": 1}, 3),
        ({"x-attempts": b"2"}, {}, 2),
        ({"x-attempts": "nope"}, {"attempts": "4"}, 4),
        (None, {"attempts": True}, 0),
        ({}, {}, 0),
    ],
)
def test_resolve_attempts(headers, payload, expected) -> None:
    assert resolve_attempts(headers, payload) == expected


def test_resolve_retry_queue_empty() -> None:
    assert resolve_retry_queue((), 1) is None


@pytest.mark.parametrize("body", [b"[1, 2]", b"\xff\xfe", b"", b"null"])
def test_parse_message_body_rejects_non_objects(body: bytes) -> None:
    assert parse_message_body(body) is None


@pytest.mark.asyncio
async def test_retry_keeps_first_delivery_routing_key() -> None:
    consumer, _, publisher = _consumer(processor_error=RuntimeError("boom"), max_attempts=10)
    message = _message(headers={"x-attempts": 1, "x-original-routing-key": "mercadopago.payment.created"})
    message.routing_key = "mercadopago.retry"

    await consumer.handle(message)

    assert publisher.calls[0]["headers"]["x-original-routing-key"] == "mercadopago.payment.created"


@pytest.mark.parametrize(
    "headers,routing_key,expected",
    [
        ({}, "mercadopago.payment.created", "mercadopago.payment.created"),
        ({"x-original-routing-key": b"mercadopago.merchant_order.unknown"}, "mercadopago.retry", "mercadopago.merchant_order.unknown"),
        ({"x-original-routing-key": ""}, "mercadopago.retry", "mercadopago.retry"),
        (None, None, ""),
    ],
)
def test_original_routing_key(headers, routing_key, expected: str) -> None:
    message = MagicMock()
    message.headers = headers
    message.routing_key = routing_key

    assert original_routing_key(message) == expected


@pytest.fixture
def json_log_lines():
    """JSON lines written by the consumer logger, formatted at emit time."""
    stream = io.StringIO()
    handler = logging.StreamHandler(stream)
    handler.setFormatter(JSONFormatter(service="worker"))
    consumer_logger = logging.getLogger("mpw_worker.consumer")
    previous_level = consumer_logger.level
    consumer_logger.addHandler(handler)
    consumer_logger.setLevel(logging.INFO)
    try:
        yield lambda: [json.loads(line) for line in stream.getvalue().splitlines()]
    finally:
        consumer_logger.removeHandler(handler)
        consumer_logger.setLevel(previous_level)


@pytest.mark.asyncio
async def test_failure_logs_carry_request_and_event_ids(json_log_lines) -> None:
    publisher = RecordingPublisher([PublishResult(published=False, error="publish_timeout")])
    consumer, _, _ = _consumer(processor_error=RuntimeError("boom"), publisher=publisher)

    await consumer.handle(_message(message_id=None, correlation_id=None))

    lines = {line["message"]: line for line in json_log_lines()}
    for event in ("mercadopago_worker_processing_failed", "mercadopago_worker_retry_failed"):
        assert lines[event]["request_id"] == "req-1"
        assert lines[event]["webhook_event_id"] == "evt_1"
        assert lines[event]["service"] == "worker"


@pytest.mark.asyncio
async def test_message_properties_win_over_payload_ids(json_log_lines) -> None:
    consumer, _, _ = _consumer(processor_error=RuntimeError("boom"), max_attempts=1)

    await consumer.handle(_message(message_id="evt_from_props", correlation_id="req_from_props"))

    line = next(line for line in json_log_lines() if line["message"] == "mercadopago_worker_sent_to_dlq")
    assert line["request_id"] == "req_from_props"
    assert line["webhook_event_id"] == "evt_from_props"


@pytest.mark.asyncio
async def test_log_context_is_reset_after_each_delivery() -> None:
    consumer, _, _ = _consumer()

    await consumer.handle(_message())

    assert request_id_var.get() == ""
    assert webhook_event_id_var.get() == ""


@pytest.mark.asyncio
async def test_delivery_runs_in_consumer_span(monkeypatch: pytest.MonkeyPatch, json_log_lines) -> None:
    exporter = InMemorySpanExporter()
    provider = TracerProvider()
    provider.add_span_processor(SimpleSpanProcessor(exporter))
    monkeypatch.setattr("mpw_worker.consumer.tracer", provider.get_tracer("test"))
    consumer, _, _ = _consumer()

    await consumer.handle(_message())

    (span,) = exporter.get_finished_spans()
    assert span.name == "mercadopago.webhook.consume"
    assert span.kind == SpanKind.CONSUMER
    assert span.attributes["messaging.message.id"] == "evt_1"
    assert span.attributes["messaging.rabbitmq.destination.routing_key"] == "mercadopago.payment.created"

    line = next(line for line in json_log_lines() if line["message"] == "mercadopago_worker_processed")
    assert line["trace_id"] == format(span.context.trace_id, "032x")
