"""Resilient RabbitMQ connection (aio-pika) with confirm channel.

State machine: DISCONNECTED → CONNECTING → CONNECTED(channel) → on any
connection/channel close → DISCONNECTED, reconnect scheduled with
exponential backoff (1s doubling, capped at 30s) plus 0-250ms jitter.
Reconnection never gives up; process supervision is the outer safety net.

``ensure_channel()`` is the only way dependents obtain a channel. Concurrent
callers share a single in-flight connection attempt.
"""

import asyncio
import logging
import random
from typing import Any, Awaitable, Callable, Optional

import aio_pika
from aio_pika.abc import AbstractChannel, AbstractConnection
from pydantic import BaseModel

logger = logging.getLogger(__name__)

MAX_BACKOFF_MS = 30_000
BASE_BACKOFF_MS = 1_000
MAX_JITTER_MS = 250

ReadyCallback = Callable[[AbstractChannel], Awaitable[None]]


class RabbitMqStatus(BaseModel):
    connected: bool
    channel_ready: bool


def compute_backoff_ms(attempts: int, jitter_ms: int = 0) -> int:
    """min(30s, 1s * 2^attempts) + jitter."""
    base = min(MAX_BACKOFF_MS, BASE_BACKOFF_MS * 2 ** min(attempts, 16))
    return base + jitter_ms


class RabbitMqConnection:
    """Owns the broker connection and its single confirm channel."""

    def __init__(
        self,
        url: str,
        prefetch_count: Optional[int] = None,
        connect: Callable[..., Awaitable[AbstractConnection]] = aio_pika.connect,
    ):
        self.url = url
        self.prefetch_count = prefetch_count
        self._connect_factory = connect
        self._connection: Optional[AbstractConnection] = None
        self._channel: Optional[AbstractChannel] = None
        self._connect_future: Optional[asyncio.Future] = None
        self._reconnect_task: Optional[asyncio.Task] = None
        self._reconnect_attempts = 0
        self._ready_callbacks: list[ReadyCallback] = []
        self._closing = False

    @property
    def reconnect_attempts(self) -> int:
        return self._reconnect_attempts

    def add_ready_callback(self, callback: ReadyCallback) -> None:
        """Run ``callback(channel)`` after every successful (re)connect."""
        self._ready_callbacks.append(callback)

    def start(self) -> None:
        """Kick off the first connection attempt in the background."""
        self._closing = False
        asyncio.get_running_loop().create_task(self._connect())

    def status(self) -> RabbitMqStatus:
        return RabbitMqStatus(
            connected=self._connection is not None and not self._connection.is_closed,
            channel_ready=self._channel_ready(),
        )

    async def ensure_channel(self) -> Optional[AbstractChannel]:
        """Return a ready channel, awaiting any in-flight attempt.

        Returns None when the broker is unreachable; a reconnect is then
        already scheduled.
        """
        await self._connect()
        return self._channel if self._channel_ready() else None

    async def close(self) -> None:
        self._closing = True
        if self._reconnect_task is not None:
            self._reconnect_task.cancel()
            self._reconnect_task = None

        channel, connection = self._channel, self._connection
        self._channel = None
        self._connection = None
        if channel is not None and not channel.is_closed:
            await channel.close()
        if connection is not None and not connection.is_closed:
            await connection.close()
        logger.info("RABBITMQ_CLOSED")

    def _channel_ready(self) -> bool:
        return self._channel is not None and not self._channel.is_closed

    async def _connect(self) -> None:
        if self._channel_ready() or self._closing:
            return

        if self._connect_future is None:
            self._connect_future = asyncio.ensure_future(self._open())
        future = self._connect_future
        try:
            await asyncio.shield(future)
        finally:
            if self._connect_future is future and future.done():
                self._connect_future = None

    async def _open(self) -> None:
        try:
            connection = self._connection
            if connection is None or connection.is_closed:
                connection = await self._connect_factory(self.url)
                connection.close_callbacks.add(self._on_connection_closed)
                self._connection = connection

            channel = await connection.channel(publisher_confirms=True)
            channel.close_callbacks.add(self._on_channel_closed)
            if self.prefetch_count:
                await channel.set_qos(prefetch_count=self.prefetch_count)
            self._channel = channel
            self._reconnect_attempts = 0
            logger.info("RABBITMQ_CONNECTED")
        except Exception as exc:
            logger.error("RABBITMQ_CONNECT_FAILED", extra={"error": str(exc) or exc.__class__.__name__})
            self._channel = None
            self._schedule_reconnect()
            return

        for callback in self._ready_callbacks:
            try:
                await callback(channel)
            except Exception:
                logger.error("RABBITMQ_READY_CALLBACK_FAILED", exc_info=True)

    def _on_connection_closed(self, *_args: Any) -> None:
        if self._closing:
            return
        logger.warning("RABBITMQ_CONNECTION_CLOSED")
        self._connection = None
        self._channel = None
        self._schedule_reconnect()

    def _on_channel_closed(self, *_args: Any) -> None:
        if self._closing:
            return
        logger.warning("RABBITMQ_CHANNEL_CLOSED")
        self._channel = None
        self._schedule_reconnect()

    def _schedule_reconnect(self) -> None:
        if self._closing:
            return
        if self._reconnect_task is not None and not self._reconnect_task.done():
            return

        delay_ms = compute_backoff_ms(self._reconnect_attempts, random.randint(0, MAX_JITTER_MS))
        self._reconnect_attempts += 1
        logger.info(
            "RABBITMQ_RECONNECT_SCHEDULED",
            extra={"delay_ms": delay_ms, "attempt": self._reconnect_attempts},
        )
        self._reconnect_task = asyncio.get_running_loop().create_task(self._reconnect_after(delay_ms / 1000))

    async def _reconnect_after(self, delay_sec: float) -> None:
        await asyncio.sleep(delay_sec)
        self._reconnect_task = None
        await self._connect()
