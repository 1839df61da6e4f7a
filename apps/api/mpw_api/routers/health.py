"""Health, readiness and metrics endpoints."""

import logging

from fastapi import APIRouter, Depends, Response, status

from mpw_api import __version__
from mpw_api.container import Dependencies, get_dependencies
from mpw_api.observability.metrics import PrometheusMetricsSink
from mpw_api.schemas import HealthResponse

router = APIRouter()
logger = logging.getLogger(__name__)


async def check_storage(deps: Dependencies) -> str:
    """Ping the storage backend.

    Returns:
        str: "up" if healthy, error message otherwise
    """
    try:
        await deps.event_store.ping()
        return "up"
    except Exception as e:
        logger.error("Storage health check failed", extra={"error": str(e)[:200]})
        return f"down: {str(e)[:50]}"


def check_broker(deps: Dependencies) -> str:
    """Broker connection and channel state (no network round-trip)."""
    broker = deps.connection.status()
    if broker.connected and broker.channel_ready:
        return "up"
    return "down: disconnected" if not broker.connected else "down: channel not ready"


@router.get("/health", response_model=HealthResponse)
async def health_check() -> HealthResponse:
    """
    Liveness endpoint.

    Always returns 200 OK (use /ready for dependency checks).
    """
    return HealthResponse(status="healthy", version=__version__, services={"api": "up"})


@router.get("/ready", response_model=HealthResponse)
async def readiness_check(
    response: Response,
    deps: Dependencies = Depends(get_dependencies),
) -> HealthResponse:
    """
    Readiness endpoint.

    Returns 503 with status "not_ready" if storage or the broker is down.
    """
    services = {
        "api": "up",
        "storage": await check_storage(deps),
        "rabbitmq": check_broker(deps),
    }

    if any("down" in svc_status for svc_status in services.values()):
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        return HealthResponse(status="not_ready", version=__version__, services=services)

    return HealthResponse(status="ready", version=__version__, services=services)


@router.get("/metrics", include_in_schema=False)
async def metrics(deps: Dependencies = Depends(get_dependencies)) -> Response:
    """Prometheus text exposition."""
    sink = deps.metrics
    if isinstance(sink, PrometheusMetricsSink):
        return Response(content=sink.render(), media_type=sink.content_type)
    return Response(content=b"", media_type="text/plain; version=0.0.4; charset=utf-8")
