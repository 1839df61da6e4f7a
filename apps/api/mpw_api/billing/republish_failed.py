"""Batch re-drive of webhook events stuck in FAILED.

Only FAILED rows are selected, so re-running the job never republishes an
event that already reached the broker. Events whose attempts reached the
maximum go to the DLQ and stay FAILED with the ``max_attempts_reached``
marker instead of a publish error. They remain FAILED, so a later run sends
them to the DLQ again; DLQ consumers dedupe on message id (the event id).
"""

import logging
from typing import Any, Optional

from pydantic import BaseModel

from mpw_api.billing.ports import (
    PUBLISH_ERROR_CODES,
    STATUS_FAILED,
    STATUS_PROCESSED,
    MessagePublisher,
    WebhookEvent,
    WebhookEventStore,
    WebhookEventUpdate,
)
from mpw_api.billing.webhook_message import build_webhook_message, build_webhook_routing_key
from mpw_api.context import webhook_event_id_var
from mpw_api.observability.metrics import MetricsSink, NullMetricsSink, closed_label
from mpw_api.utils.sanitize import sanitize_error_message

logger = logging.getLogger(__name__)

OPERATION = "webhook.republish"
MAX_ATTEMPTS_REACHED = "max_attempts_reached"
DEFAULT_BATCH_SIZE = 1000


class RepublishSummary(BaseModel):
    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    sent_to_dlq: int = 0


def extract_request_id(headers: Any) -> Optional[str]:
    """Correlation id from persisted headers (x-request-id, then x-correlation-id)."""
    if not isinstance(headers, dict):
        return None
    candidate = headers.get("x-request-id")
    if candidate is None:
        candidate = headers.get("x-correlation-id")
    return candidate if isinstance(candidate, str) and candidate else None


def _clean(value: Optional[str]) -> Optional[str]:
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


def build_republish_payload(event: WebhookEvent, request_id: Optional[str]) -> dict[str, Any]:
    """Rebuild the envelope from a persisted row, carrying the attempt count."""
    message = build_webhook_message(
        event_id=event.mercadopago_event_id,
        topic=_clean(event.topic),
        action=_clean(event.action),
        created_at_mp=event.created_at_mp.isoformat() if event.created_at_mp else None,
        live_mode=bool(event.live_mode),
        payload=event.payload_raw if isinstance(event.payload_raw, dict) else {},
        headers=event.headers_raw if isinstance(event.headers_raw, dict) else {},
        request_id=request_id,
    )
    message["attempts"] = event.process_attempts
    return message


class RepublishFailedWebhooksUseCase:
    def __init__(
        self,
        store: WebhookEventStore,
        publisher: MessagePublisher,
        exchange: str,
        dlx: str,
        dlq_routing_key: str,
        max_attempts: int,
        batch_size: int = DEFAULT_BATCH_SIZE,
        metrics: Optional[MetricsSink] = None,
    ):
        self.store = store
        self.publisher = publisher
        self.exchange = exchange
        self.dlx = dlx
        self.dlq_routing_key = dlq_routing_key
        self.max_attempts = max_attempts
        self.batch_size = batch_size
        self.metrics = metrics or NullMetricsSink()

    async def execute(self) -> RepublishSummary:
        summary = RepublishSummary()
        events = await self.store.list_failed(self.batch_size)

        for event in events:
            summary.processed += 1
            event_id = event.mercadopago_event_id
            webhook_event_id_var.set(event_id)
            request_id = extract_request_id(event.headers_raw)
            payload = build_republish_payload(event, request_id)

            if event.process_attempts >= self.max_attempts:
                await self._send_to_dlq(event, payload, request_id, summary)
                continue

            routing_key = build_webhook_routing_key(_clean(event.topic), _clean(event.action))
            result = await self.publisher.publish(
                exchange=self.exchange,
                routing_key=routing_key,
                payload=payload,
                message_id=event_id or None,
                correlation_id=request_id,
            )

            if result.published:
                summary.succeeded += 1
                await self.store.update_status_by_event_id(
                    event_id, WebhookEventUpdate(status=STATUS_PROCESSED, last_error=None)
                )
                logger.info(
                    "WEBHOOK_REPUBLISHED",
                    extra={"event_id": event_id, "routing_key": routing_key, "attempts": event.process_attempts},
                )
                self.metrics.record_outcome(OPERATION, "republished")
            else:
                summary.failed += 1
                error = sanitize_error_message(result.error or "publish_failed")
                await self.store.update_status_by_event_id(
                    event_id,
                    WebhookEventUpdate(status=STATUS_FAILED, last_error=error, increment_attempts=True),
                )
                logger.error("WEBHOOK_REPUBLISH_FAILED", extra={"event_id": event_id, "error": error})
                self.metrics.record_outcome(
                    OPERATION, "republish_failed", reason=closed_label(result.error, PUBLISH_ERROR_CODES)
                )

        webhook_event_id_var.set("")
        return summary

    async def _send_to_dlq(
        self,
        event: WebhookEvent,
        payload: dict[str, Any],
        request_id: Optional[str],
        summary: RepublishSummary,
    ) -> None:
        event_id = event.mercadopago_event_id
        result = await self.publisher.publish(
            exchange=self.dlx,
            routing_key=self.dlq_routing_key,
            payload=payload,
            message_id=event_id or None,
            correlation_id=request_id,
        )

        if not result.published:
            summary.failed += 1
            logger.error(
                "WEBHOOK_DLQ_PUBLISH_FAILED",
                extra={"event_id": event_id, "error": result.error or "dlq_publish_failed"},
            )
            self.metrics.record_outcome(OPERATION, "dlq_failed")
            return

        summary.sent_to_dlq += 1
        await self.store.update_status_by_event_id(
            event_id, WebhookEventUpdate(status=STATUS_FAILED, last_error=MAX_ATTEMPTS_REACHED)
        )
        logger.warning(
            "WEBHOOK_SENT_TO_DLQ",
            extra={"event_id": event_id, "attempts": event.process_attempts},
        )
        self.metrics.record_outcome(OPERATION, "dlq")
