"""Receive use case: dedupe → persist → publish → status update.

Each step is a commit point:

1. Extract metadata; no derivable event id is a validation error.
2. Known event id → idempotent replay: return the stored row untouched
   (created=False, published=False). Never re-publish.
3. Insert a RECEIVED row. A unique violation here means a concurrent
   delivery won the race; it is handled exactly like step 2.
4. Publish the canonical envelope to the events exchange.
5. PROCESSED on confirmed publish; FAILED + attempts+1 + sanitized error
   otherwise. A failed publish is still a successful *receipt*: the
   republish job re-drives FAILED rows.
"""

import logging
from typing import Any, Optional

from pydantic import BaseModel

from mpw_api.billing.ports import (
    PUBLISH_ERROR_CODES,
    STATUS_FAILED,
    STATUS_PROCESSED,
    STATUS_RECEIVED,
    MessagePublisher,
    NewWebhookEvent,
    WebhookEvent,
    WebhookEventStore,
    WebhookEventUpdate,
)
from mpw_api.billing.webhook_message import build_webhook_message, build_webhook_routing_key
from mpw_api.billing.webhook_metadata import extract_webhook_metadata
from mpw_api.context import webhook_event_id_var
from mpw_api.errors import AppError, DuplicateEventError, ValidationError
from mpw_api.observability.metrics import MetricsSink, NullMetricsSink, closed_label, topic_label
from mpw_api.utils.records import parse_datetime
from mpw_api.utils.sanitize import sanitize_error_message

logger = logging.getLogger(__name__)

OPERATION = "webhook.receive"


class ReceiveWebhookResult(BaseModel):
    event: WebhookEvent
    created: bool
    published: bool
    status: str


class ReceiveWebhookUseCase:
    def __init__(
        self,
        store: WebhookEventStore,
        publisher: MessagePublisher,
        exchange: str,
        metrics: Optional[MetricsSink] = None,
    ):
        self.store = store
        self.publisher = publisher
        self.exchange = exchange
        self.metrics = metrics or NullMetricsSink()

    async def execute(
        self,
        payload: dict[str, Any],
        headers: dict[str, Any],
        request_id: Optional[str] = None,
    ) -> ReceiveWebhookResult:
        """Register a webhook notification and hand it to the broker.

        Args:
            payload: Parsed notification body
            headers: Lower-cased request headers (persisted as-is)
            request_id: Correlation id propagated to the broker message

        Returns:
            ReceiveWebhookResult

        Raises:
            ValidationError: If no event id can be derived
            AppError: 500 ``webhook_registration_failed`` on storage failure
        """
        metadata = extract_webhook_metadata(payload)
        event_id = metadata.event_id
        if not event_id:
            raise ValidationError("missing_event_id")

        webhook_event_id_var.set(event_id)

        existing = await self.store.find_by_event_id(event_id)
        if existing is not None:
            return self._duplicate(existing)

        try:
            event = await self.store.create(
                NewWebhookEvent(
                    mercadopago_event_id=event_id,
                    notification_id=metadata.notification_id,
                    resource_id=metadata.resource_id,
                    topic=metadata.topic,
                    action=metadata.action,
                    api_version=metadata.api_version,
                    live_mode=metadata.live_mode,
                    created_at_mp=parse_datetime(metadata.created_at_mp),
                    payload_raw=payload,
                    headers_raw=headers,
                    status=STATUS_RECEIVED,
                    process_attempts=0,
                    last_error=None,
                )
            )
        except DuplicateEventError:
            existing = await self.store.find_by_event_id(event_id)
            if existing is None:
                raise AppError("webhook_registration_failed", 500, {"event_id": event_id})
            logger.info("WEBHOOK_CREATE_RACE_LOST", extra={"event_id": event_id})
            return self._duplicate(existing)
        except AppError:
            raise
        except Exception as exc:
            logger.error(
                "WEBHOOK_REGISTRATION_FAILED",
                extra={"event_id": event_id, "error": sanitize_error_message(exc)},
                exc_info=True,
            )
            raise AppError("webhook_registration_failed", 500, {"event_id": event_id}) from exc

        logger.info(
            "WEBHOOK_RECEIVED",
            extra={"event_id": event_id, "topic": metadata.topic, "action": metadata.action},
        )
        self.metrics.record_outcome(OPERATION, "created", topic=topic_label(metadata.topic))

        message = build_webhook_message(
            event_id=event_id,
            topic=metadata.topic,
            action=metadata.action,
            created_at_mp=metadata.created_at_mp,
            live_mode=metadata.live_mode,
            payload=payload,
            headers=headers,
            request_id=request_id,
        )
        routing_key = build_webhook_routing_key(metadata.topic, metadata.action)

        result = await self.publisher.publish(
            exchange=self.exchange,
            routing_key=routing_key,
            payload=message,
            message_id=event_id,
            correlation_id=request_id,
        )

        if result.published:
            event = await self.store.update_status_by_event_id(
                event_id, WebhookEventUpdate(status=STATUS_PROCESSED, last_error=None)
            )
            logger.info(
                "WEBHOOK_PUBLISHED",
                extra={"event_id": event_id, "routing_key": routing_key},
            )
            self.metrics.record_outcome(OPERATION, "published")
            return ReceiveWebhookResult(event=event, created=True, published=True, status=event.status)

        error = sanitize_error_message(result.error or "publish_failed")
        event = await self.store.update_status_by_event_id(
            event_id,
            WebhookEventUpdate(status=STATUS_FAILED, last_error=error, increment_attempts=True),
        )
        logger.error(
            "WEBHOOK_PUBLISH_FAILED",
            extra={"event_id": event_id, "routing_key": routing_key, "error": error},
        )
        self.metrics.record_outcome(
            OPERATION, "publish_failed", reason=closed_label(result.error, PUBLISH_ERROR_CODES)
        )
        return ReceiveWebhookResult(event=event, created=True, published=False, status=event.status)

    def _duplicate(self, event: WebhookEvent) -> ReceiveWebhookResult:
        logger.info(
            "WEBHOOK_DUPLICATE",
            extra={"event_id": event.mercadopago_event_id, "status": event.status},
        )
        self.metrics.record_outcome(OPERATION, "duplicate")
        return ReceiveWebhookResult(event=event, created=False, published=False, status=event.status)
