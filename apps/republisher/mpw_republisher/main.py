"""Republish-failed entry point.

One-shot batch job: re-drives webhook events stuck in FAILED status.

- Scan: status='FAILED' ORDER BY received_at ASC LIMIT --batch-size
- Below MAX_ATTEMPTS: rebuild the envelope and publish to the events exchange
- At/over MAX_ATTEMPTS: publish to the DLQ, mark last_error=max_attempts_reached

Safe to re-run (cron): only FAILED rows are selected.
"""

import argparse
import asyncio
import logging
import sys
from typing import Optional, Sequence

from mpw_api.billing.republish_failed import DEFAULT_BATCH_SIZE, RepublishSummary
from mpw_api.config import env
from mpw_api.container import Dependencies, build_dependencies
from mpw_api.observability.tracing import configure_tracing
from mpw_api.utils import configure_json_logging

if env.json_logs_enabled():
    configure_json_logging(log_level=env.get_log_level(), service="republisher")
logger = logging.getLogger(__name__)


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="mpw-republish",
        description="Republish FAILED MercadoPago webhook events.",
    )
    parser.add_argument(
        "--batch-size",
        type=int,
        default=DEFAULT_BATCH_SIZE,
        help=f"Maximum FAILED events per run (default: {DEFAULT_BATCH_SIZE})",
    )
    args = parser.parse_args(argv)
    if args.batch_size <= 0:
        parser.error("--batch-size must be a positive integer")
    return args


async def run(deps: Dependencies, batch_size: int = DEFAULT_BATCH_SIZE) -> RepublishSummary:
    """Bootstrap topology, run the use case once, close the connection."""
    try:
        await deps.bootstrap_topology()
        summary = await deps.republish_failed(batch_size=batch_size).execute()
    finally:
        await deps.close()

    logger.info("republish_failed_completed", extra=summary.model_dump())
    return summary


def main(argv: Optional[Sequence[str]] = None) -> int:
    """Main entry point for the republish job. Returns the process exit code."""
    args = parse_args(argv)
    tracer_provider = configure_tracing()

    try:
        asyncio.run(run(build_dependencies(), batch_size=args.batch_size))
    except Exception:
        logger.error("republish_failed_error", exc_info=True)
        return 1
    finally:
        if tracer_provider is not None:
            tracer_provider.shutdown()
    return 0


if __name__ == "__main__":
    sys.exit(main())
