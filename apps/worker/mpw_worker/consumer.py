"""Main queue consumer: reconcile, then ack, retry or dead-letter.

Retries never sleep in-process. A failed message is re-published to the DLX
under the routing key of a delay queue; the delay queue's TTL expires it back
into the events exchange where the main binding picks it up again. The
attempt counter travels in the ``x-attempts`` header and in the payload.

Ack rules:
- reconciled → ack
- invalid JSON → DLQ, ack (malformed input is never retried)
- failed, retry/DLQ publish confirmed → ack
- failed, retry/DLQ publish not confirmed → nack with requeue
"""

import json
import logging
import math
from typing import Any, Optional

from aio_pika.abc import AbstractIncomingMessage
from opentelemetry import trace
from opentelemetry.trace import SpanKind

from mpw_api.billing.ports import MessagePublisher
from mpw_api.billing.reconcile_payment import ReconcilePaymentUseCase
from mpw_api.context import request_id_var, webhook_event_id_var
from mpw_api.observability.metrics import MetricsSink, NullMetricsSink
from mpw_api.queue.config import MqConfig, RetryQueueConfig
from mpw_api.utils.sanitize import sanitize_error_message

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

OPERATION = "webhook.consume"

HEADER_ATTEMPTS = "x-attempts"
HEADER_ERROR = "x-error"
HEADER_ORIGINAL_ROUTING_KEY = "x-original-routing-key"


def parse_message_body(body: bytes) -> Optional[dict[str, Any]]:
    """Decode a JSON object body, None if malformed or not an object."""
    try:
        parsed = json.loads(body.decode("utf-8"))
    except (UnicodeDecodeError, ValueError):
        return None
    return parsed if isinstance(parsed, dict) else None


def _as_count(value: Any) -> Optional[int]:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return int(value) if math.isfinite(value) else None
    if isinstance(value, bytes):
        value = value.decode("utf-8", errors="replace")
    if isinstance(value, str):
        try:
            return int(float(value.strip()))
        except (ValueError, OverflowError):
            return None
    return None


def resolve_attempts(headers: Optional[dict[str, Any]], payload: dict[str, Any]) -> int:
    """Attempts so far: ``x-attempts`` header, else payload ``attempts``, else 0."""
    from_header = _as_count((headers or {}).get(HEADER_ATTEMPTS))
    if from_header is not None:
        return from_header

    from_payload = _as_count(payload.get("attempts"))
    return from_payload if from_payload is not None else 0


def resolve_retry_queue(retry_queues: tuple[RetryQueueConfig, ...], attempts: int) -> Optional[RetryQueueConfig]:
    """Tier for the n-th attempt (1-based), clamped to the last tier."""
    if not retry_queues:
        return None
    index = min(max(attempts - 1, 0), len(retry_queues) - 1)
    return retry_queues[index]


def original_routing_key(message: AbstractIncomingMessage) -> str:
    """Routing key of the first delivery; retries arrive as ``mercadopago.retry``."""
    existing = (message.headers or {}).get(HEADER_ORIGINAL_ROUTING_KEY)
    if isinstance(existing, bytes):
        existing = existing.decode("utf-8", errors="replace")
    return existing or message.routing_key or ""


def build_retry_headers(message: AbstractIncomingMessage, attempts: int, reason: str) -> dict[str, Any]:
    return {
        **(message.headers or {}),
        HEADER_ATTEMPTS: attempts,
        HEADER_ERROR: reason,
        HEADER_ORIGINAL_ROUTING_KEY: original_routing_key(message),
    }


class WebhookConsumer:
    """Handles deliveries from the process queue.

    Args:
        processor: Reconciliation use case run for every valid envelope
        publisher: Confirmed publisher used for retry and DLQ routing
        config: Broker names, retry tiers and max attempts
    """

    def __init__(
        self,
        processor: ReconcilePaymentUseCase,
        publisher: MessagePublisher,
        config: MqConfig,
        metrics: Optional[MetricsSink] = None,
    ):
        self.processor = processor
        self.publisher = publisher
        self.config = config
        self.metrics = metrics or NullMetricsSink()

    async def handle(self, message: AbstractIncomingMessage) -> None:
        payload = parse_message_body(message.body)
        fields = payload or {}

        request_id = message.correlation_id or _payload_str(fields, "requestId") or ""
        event_id = message.message_id or _payload_str(fields, "eventId") or ""

        # log lines for this delivery carry its correlation and event ids
        request_token = request_id_var.set(request_id)
        event_token = webhook_event_id_var.set(event_id)
        try:
            with tracer.start_as_current_span(
                "mercadopago.webhook.consume",
                kind=SpanKind.CONSUMER,
                attributes={
                    "messaging.system": "rabbitmq",
                    "messaging.rabbitmq.destination.routing_key": original_routing_key(message),
                    "messaging.message.id": event_id,
                },
            ):
                await self._process(message, payload)
        finally:
            request_id_var.reset(request_token)
            webhook_event_id_var.reset(event_token)

    async def _process(self, message: AbstractIncomingMessage, payload: Optional[dict[str, Any]]) -> None:
        if payload is None:
            raw = message.body.decode("utf-8", errors="replace")
            logger.error("mercadopago_worker_invalid_json", extra={"raw": raw[:500]})
            await self._publish_to_dlq({"error": "invalid_json", "raw": raw}, message, {}, 0, "invalid_json")
            self.metrics.record_outcome(OPERATION, "invalid_json")
            await message.ack()
            return

        try:
            result = await self.processor.execute(payload)
        except Exception as exc:
            reason = sanitize_error_message(str(exc)) or "processing_failed"
            logger.warning(
                "mercadopago_worker_processing_failed",
                extra={"error": reason, "routing_key": message.routing_key},
            )
            await self._handle_failure(message, payload, reason)
            return

        logger.info(
            "mercadopago_worker_processed",
            extra={
                "status": result.status,
                "reason": result.reason,
                "payment_id": result.payment_id,
                "payment_status": result.payment_status,
                "user_id": result.user_id,
                "plan_code": result.plan_code,
            },
        )
        self.metrics.record_outcome(OPERATION, result.status)
        await message.ack()

    async def _handle_failure(self, message: AbstractIncomingMessage, payload: dict[str, Any], reason: str) -> None:
        attempts = resolve_attempts(message.headers, payload) + 1
        retry_payload = {**payload, "attempts": attempts, "lastError": reason}

        if attempts >= self.config.max_attempts:
            published = await self._publish_to_dlq(retry_payload, message, payload, attempts, reason)
        else:
            published = await self._publish_to_retry(retry_payload, message, payload, attempts, reason)

        if published:
            await message.ack()
        else:
            self.metrics.record_outcome(OPERATION, "requeued")
            await message.nack(requeue=True)

    async def _publish_to_retry(
        self,
        retry_payload: dict[str, Any],
        message: AbstractIncomingMessage,
        original: dict[str, Any],
        attempts: int,
        reason: str,
    ) -> bool:
        retry_queue = resolve_retry_queue(self.config.retry_queues, attempts)
        if retry_queue is None:
            return await self._publish_to_dlq(retry_payload, message, original, attempts, "retry_queue_unavailable")

        result = await self.publisher.publish(
            exchange=self.config.dlx,
            routing_key=retry_queue.routing_key,
            payload=retry_payload,
            headers=build_retry_headers(message, attempts, reason),
            message_id=message.message_id or _payload_str(original, "eventId"),
            correlation_id=message.correlation_id or _payload_str(original, "requestId"),
        )

        if not result.published:
            logger.error(
                "mercadopago_worker_retry_failed",
                extra={
                    "error": result.error or "retry_publish_failed",
                    "attempts": attempts,
                    "routing_key": retry_queue.routing_key,
                },
            )
            return False

        logger.warning(
            "mercadopago_worker_retry_scheduled",
            extra={"attempts": attempts, "delay_ms": retry_queue.ttl_ms, "routing_key": retry_queue.routing_key},
        )
        self.metrics.record_outcome(OPERATION, "retry", queue=retry_queue.name)
        return True

    async def _publish_to_dlq(
        self,
        dlq_payload: dict[str, Any],
        message: AbstractIncomingMessage,
        original: dict[str, Any],
        attempts: int,
        reason: str,
    ) -> bool:
        result = await self.publisher.publish(
            exchange=self.config.dlx,
            routing_key=self.config.dlq_routing_key,
            payload=dlq_payload,
            headers=build_retry_headers(message, attempts, reason),
            message_id=message.message_id or _payload_str(original, "eventId"),
            correlation_id=message.correlation_id or _payload_str(original, "requestId"),
        )

        if not result.published:
            logger.error(
                "mercadopago_worker_dlq_failed",
                extra={"error": result.error or "dlq_publish_failed", "attempts": attempts},
            )
            return False

        logger.warning("mercadopago_worker_sent_to_dlq", extra={"attempts": attempts, "reason": reason})
        self.metrics.record_outcome(OPERATION, "dlq")
        return True


def _payload_str(payload: dict[str, Any], key: str) -> Optional[str]:
    value = payload.get(key)
    return value if isinstance(value, str) and value else None
