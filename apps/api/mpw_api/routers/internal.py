"""Internal broker tooling (non-production only).

Requires X-Internal-Token == INTERNAL_API_TOKEN. Disabled outright when
MPW_ENV is prod/production.
"""

import hmac
import logging
import uuid
from datetime import datetime, timezone
from typing import Any, Optional

from fastapi import APIRouter, Depends, Header, Request

from mpw_api.config import env
from mpw_api.container import Dependencies, get_dependencies
from mpw_api.context import request_id_var
from mpw_api.errors import ForbiddenError, UnauthorizedError
from mpw_api.routers.common import read_optional_object_body
from mpw_api.schemas import MqQueues, MqStatusResponse, PublishMockResponse
from mpw_api.utils.records import as_string, is_record

router = APIRouter(prefix="/internal/mq", tags=["internal"])
logger = logging.getLogger(__name__)

DEFAULT_MOCK_ROUTING_KEY = "mercadopago.internal.test"


def require_internal_access(x_internal_token: Optional[str] = Header(None)) -> None:
    """Gate for /internal/*.

    Raises:
        ForbiddenError: ``internal_disabled`` in production
        UnauthorizedError: ``invalid_internal_token`` on missing/mismatched token
    """
    if env.is_production_env():
        raise ForbiddenError("internal_disabled")

    expected = env.get_internal_api_token()
    if not expected or not x_internal_token:
        raise UnauthorizedError("invalid_internal_token")
    if not hmac.compare_digest(x_internal_token.encode("utf-8"), expected.encode("utf-8")):
        raise UnauthorizedError("invalid_internal_token")


def build_mock_envelope(request_id: Optional[str]) -> dict[str, Any]:
    """A synthetic payment.created envelope for smoke-testing the pipeline."""
    return {
        "eventId": f"mock_{uuid.uuid4()}",
        "topic": "payment",
        "action": "payment.created",
        "createdAt": datetime.now(timezone.utc).isoformat(),
        "liveMode": False,
        "data": {"id": f"mock_{uuid.uuid4()}"},
        "headers": {},
        "requestId": request_id,
    }


@router.post(
    "/publish-mock",
    response_model=PublishMockResponse,
    dependencies=[Depends(require_internal_access)],
)
async def publish_mock(
    request: Request,
    deps: Dependencies = Depends(get_dependencies),
) -> PublishMockResponse:
    request_id = request_id_var.get() or None
    body = await read_optional_object_body(request)

    exchange = as_string(body.get("exchange")) or deps.mq_config.exchange
    routing_key = as_string(body.get("routingKey")) or DEFAULT_MOCK_ROUTING_KEY
    payload = body["payload"] if is_record(body.get("payload")) else build_mock_envelope(request_id)

    result = await deps.publisher.publish(
        exchange=exchange,
        routing_key=routing_key,
        payload=payload,
        correlation_id=request_id,
    )
    logger.info(
        "INTERNAL_MQ_PUBLISH_MOCK",
        extra={"exchange": exchange, "routing_key": routing_key, "published": result.published},
    )

    return PublishMockResponse(
        request_id=request_id,
        published=result.published,
        exchange=exchange,
        routing_key=routing_key,
        payload=payload,
        message_id=result.message_id,
        error=result.error,
    )


@router.get(
    "/status",
    response_model=MqStatusResponse,
    dependencies=[Depends(require_internal_access)],
)
async def mq_status(deps: Dependencies = Depends(get_dependencies)) -> MqStatusResponse:
    broker = deps.connection.status()
    config = deps.mq_config
    return MqStatusResponse(
        connected=broker.connected,
        channel=broker.channel_ready,
        exchange=config.exchange,
        dlx=config.dlx,
        queues=MqQueues(
            process=config.process_queue,
            dlq=config.dlq_queue,
            retry=[queue.name for queue in config.retry_queues],
        ),
    )
