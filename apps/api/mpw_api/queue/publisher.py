"""Confirmed JSON publisher over the shared RabbitMQ channel."""

import asyncio
import json
import logging
import uuid
from datetime import datetime, timezone
from typing import Any, Optional

from aio_pika import DeliveryMode, Message
from aio_pika.exceptions import AMQPError, ChannelInvalidStateError

from mpw_api.billing.ports import CHANNEL_UNAVAILABLE, PUBLISH_TIMEOUT, PublishResult
from mpw_api.queue.connection import RabbitMqConnection

logger = logging.getLogger(__name__)


class RabbitMqPublisher:
    """Publishes persistent JSON messages and waits for the broker confirm.

    The outcome is always a PublishResult. Broker nacks, channel errors,
    serialization failures and timeouts come back as ``published=False``
    with the error text.
    """

    def __init__(self, connection: RabbitMqConnection, default_timeout_ms: int = 5000):
        self.connection = connection
        self.default_timeout_ms = default_timeout_ms

    async def publish(
        self,
        exchange: str,
        routing_key: str,
        payload: dict[str, Any],
        headers: Optional[dict[str, Any]] = None,
        message_id: Optional[str] = None,
        correlation_id: Optional[str] = None,
        timeout_ms: Optional[int] = None,
    ) -> PublishResult:
        channel = await self.connection.ensure_channel()
        if channel is None:
            logger.warning(
                "MQ_PUBLISH_FAILED",
                extra={"exchange": exchange, "routing_key": routing_key, "error": CHANNEL_UNAVAILABLE},
            )
            return PublishResult(published=False, error=CHANNEL_UNAVAILABLE)

        try:
            body = json.dumps(payload).encode("utf-8")
        except (TypeError, ValueError) as exc:
            logger.error(
                "MQ_PUBLISH_SERIALIZE_FAILED",
                extra={"exchange": exchange, "routing_key": routing_key, "error": str(exc)},
            )
            return PublishResult(published=False, error=str(exc))

        message_id = message_id or str(uuid.uuid4())
        message_headers = dict(headers or {})
        if correlation_id and "x-request-id" not in message_headers:
            message_headers["x-request-id"] = correlation_id

        message = Message(
            body,
            content_type="application/json",
            content_encoding="utf-8",
            delivery_mode=DeliveryMode.PERSISTENT,
            message_id=message_id,
            correlation_id=correlation_id,
            headers=message_headers,
            timestamp=datetime.now(timezone.utc),
        )
        timeout_sec = (timeout_ms or self.default_timeout_ms) / 1000

        try:
            if exchange:
                target = await channel.get_exchange(exchange, ensure=False)
            else:
                target = channel.default_exchange
            # unroutable messages are confirmed and dropped by the broker
            await asyncio.wait_for(
                target.publish(message, routing_key=routing_key, mandatory=False),
                timeout=timeout_sec,
            )
        except asyncio.TimeoutError:
            logger.warning(
                "MQ_PUBLISH_FAILED",
                extra={
                    "exchange": exchange,
                    "routing_key": routing_key,
                    "message_id": message_id,
                    "error": PUBLISH_TIMEOUT,
                },
            )
            return PublishResult(published=False, message_id=message_id, error=PUBLISH_TIMEOUT)
        except (AMQPError, ChannelInvalidStateError, ConnectionError) as exc:
            error = str(exc) or exc.__class__.__name__
            logger.warning(
                "MQ_PUBLISH_FAILED",
                extra={
                    "exchange": exchange,
                    "routing_key": routing_key,
                    "message_id": message_id,
                    "error": error,
                },
            )
            return PublishResult(published=False, message_id=message_id, error=error)

        logger.debug(
            "MQ_PUBLISHED",
            extra={"exchange": exchange, "routing_key": routing_key, "message_id": message_id},
        )
        return PublishResult(published=True, message_id=message_id)
