"""Idempotent declaration of exchanges, queues and bindings.

    mercadopago.events (topic) --mercadopago.#--> mercadopago.process
    mercadopago.dlx (direct)   --retry.<label>--> <exchange>.retry.<label>
                                   (TTL, dead-letters back to events as
                                    mercadopago.retry)
    mercadopago.dlx (direct)   --dlq----------->  mercadopago.dlq
"""

import logging

from aio_pika import ExchangeType
from aio_pika.abc import AbstractChannel, AbstractQueue

from mpw_api.errors import AppError
from mpw_api.queue.config import MqConfig
from mpw_api.queue.connection import RabbitMqConnection

logger = logging.getLogger(__name__)


async def declare_topology(channel: AbstractChannel, config: MqConfig) -> AbstractQueue:
    """Declare everything on ``channel`` and return the process queue."""
    events = await channel.declare_exchange(config.exchange, ExchangeType.TOPIC, durable=True)
    dlx = await channel.declare_exchange(config.dlx, ExchangeType.DIRECT, durable=True)

    process_queue = await channel.declare_queue(config.process_queue, durable=True)
    await process_queue.bind(events, routing_key=config.main_binding_key)

    for retry in config.retry_queues:
        retry_queue = await channel.declare_queue(
            retry.name,
            durable=True,
            arguments={
                "x-message-ttl": retry.ttl_ms,
                "x-dead-letter-exchange": config.exchange,
                "x-dead-letter-routing-key": config.retry_routing_key,
            },
        )
        await retry_queue.bind(dlx, routing_key=retry.routing_key)

    dlq = await channel.declare_queue(config.dlq_queue, durable=True)
    await dlq.bind(dlx, routing_key=config.dlq_routing_key)

    logger.info(
        "rabbitmq_bootstrap_complete",
        extra={
            "exchange": config.exchange,
            "dlx": config.dlx,
            "process_queue": config.process_queue,
            "dlq_queue": config.dlq_queue,
            "retry_queues": [retry.name for retry in config.retry_queues],
        },
    )
    return process_queue


async def bootstrap_topology(connection: RabbitMqConnection, config: MqConfig) -> AbstractQueue:
    """Obtain a channel and declare the topology.

    Raises:
        AppError: ``rabbitmq_channel_unavailable`` (503) if the broker is unreachable
    """
    channel = await connection.ensure_channel()
    if channel is None:
        raise AppError("rabbitmq_channel_unavailable", 503)
    return await declare_topology(channel, config)
