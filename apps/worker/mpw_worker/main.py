"""MercadoPago worker main entry point."""

import asyncio
import logging
import signal
from pathlib import Path
from typing import Optional

from aio_pika.abc import AbstractChannel

from mpw_api.config import env
from mpw_api.container import Dependencies, build_dependencies
from mpw_api.observability.tracing import configure_tracing
from mpw_api.queue.topology import declare_topology
from mpw_api.utils import configure_json_logging
from mpw_worker.consumer import WebhookConsumer

if env.json_logs_enabled():
    configure_json_logging(log_level=env.get_log_level(), service="worker")
logger = logging.getLogger(__name__)

READY_FILE = Path("/tmp/worker-ready")


def mark_ready(path: Path = READY_FILE) -> None:
    """Create the readiness file probed by the orchestrator."""
    path.write_text("ready\n")
    logger.info("WORKER_READY_FILE_CREATED", extra={"path": str(path)})


def clear_ready(path: Path = READY_FILE) -> None:
    path.unlink(missing_ok=True)


async def run_worker(deps: Dependencies, stop: asyncio.Event, ready_file: Path = READY_FILE) -> None:
    """Consume the process queue until ``stop`` is set.

    Topology is declared and consumption (re)started on every broker
    (re)connect, so a RabbitMQ restart does not strand the worker.
    """
    consumer = WebhookConsumer(
        processor=deps.reconcile_payment(),
        publisher=deps.publisher,
        config=deps.mq_config,
        metrics=deps.metrics,
    )

    async def _start_consuming(channel: AbstractChannel) -> None:
        queue = await declare_topology(channel, deps.mq_config)
        await queue.consume(consumer.handle, no_ack=False)
        mark_ready(ready_file)
        logger.info(
            "mercadopago_worker_started",
            extra={"queue": deps.mq_config.process_queue, "prefetch": deps.mq_config.prefetch_count},
        )

    deps.connection.add_ready_callback(_start_consuming)
    deps.connection.start()

    try:
        await stop.wait()
    finally:
        clear_ready(ready_file)
        await deps.close()
        logger.info("Worker shutdown complete")


def _install_signal_handlers(stop: asyncio.Event) -> None:
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except NotImplementedError:
            # Windows event loops have no signal handler support
            logger.warning("Signal handlers unavailable", extra={"signal": sig.name})


async def _main(deps: Optional[Dependencies] = None) -> None:
    stop = asyncio.Event()
    _install_signal_handlers(stop)
    await run_worker(deps or build_dependencies(), stop)


def main() -> None:
    """Main entry point for worker."""
    # clear any stale readiness file from a previous run
    clear_ready()

    logger.info("Starting MercadoPago Worker...")
    tracer_provider = configure_tracing()
    try:
        asyncio.run(_main())
    except KeyboardInterrupt:
        logger.info("Worker stopped by user")
    except Exception:
        logger.error("mercadopago_worker_failed", exc_info=True)
        raise SystemExit(1)
    finally:
        if tracer_provider is not None:
            tracer_provider.shutdown()


if __name__ == "__main__":
    main()
