"""Broker topology configuration.

Retry tiers are derived from RETRY_TTLS_MS. Each tier is a TTL queue bound
to the dead-letter exchange under ``retry.<label>``; on expiry RabbitMQ
dead-letters the message back into the events exchange with
``mercadopago.retry``, which the main queue's ``mercadopago.#`` binding
re-captures.
"""

from typing import Optional

from pydantic import BaseModel, ConfigDict

from mpw_api.config import env

DLQ_ROUTING_KEY = "dlq"
RETRY_ROUTING_KEY = "mercadopago.retry"
MAIN_BINDING_KEY = "mercadopago.#"


class RetryQueueConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    ttl_ms: int
    routing_key: str


class MqConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    url: str
    exchange: str
    dlx: str
    process_queue: str
    dlq_queue: str
    dlq_routing_key: str = DLQ_ROUTING_KEY
    retry_queues: tuple[RetryQueueConfig, ...] = ()
    max_attempts: int = 5
    publish_timeout_ms: int = 5000
    prefetch_count: int = 10
    retry_routing_key: str = RETRY_ROUTING_KEY
    main_binding_key: str = MAIN_BINDING_KEY


def format_ttl_label(ttl_ms: int) -> str:
    """Human-readable, restart-stable label for a delay.

    3600000 → "1h", 60000 → "1m", 10000 → "10s", 1500 → "1500ms"
    """
    if ttl_ms % 3_600_000 == 0:
        return f"{ttl_ms // 3_600_000}h"
    if ttl_ms % 60_000 == 0:
        return f"{ttl_ms // 60_000}m"
    if ttl_ms % 1_000 == 0:
        return f"{ttl_ms // 1_000}s"
    return f"{ttl_ms}ms"


def build_retry_queues(exchange: str, ttls_ms: list[int]) -> tuple[RetryQueueConfig, ...]:
    """One retry tier per delay, in ascending delay order."""
    queues = []
    for ttl_ms in sorted(set(ttls_ms)):
        label = format_ttl_label(ttl_ms)
        queues.append(
            RetryQueueConfig(
                name=f"{exchange}.retry.{label}",
                ttl_ms=ttl_ms,
                routing_key=f"retry.{label}",
            )
        )
    return tuple(queues)


def build_mq_config(url: Optional[str] = None) -> MqConfig:
    """Assemble MqConfig from environment variables.

    Raises:
        ValueError: If RABBITMQ_URL is missing in production or a numeric
            setting is invalid
    """
    exchange = env.get_mq_exchange_events()
    return MqConfig(
        url=url or env.get_rabbitmq_url(),
        exchange=exchange,
        dlx=env.get_mq_exchange_dlx(),
        process_queue=env.get_mq_queue_process(),
        dlq_queue=env.get_mq_queue_dlq(),
        retry_queues=build_retry_queues(exchange, env.get_retry_ttls_ms()),
        max_attempts=env.get_max_attempts(),
        publish_timeout_ms=env.get_publish_timeout_ms(),
        prefetch_count=env.get_worker_prefetch(),
    )
