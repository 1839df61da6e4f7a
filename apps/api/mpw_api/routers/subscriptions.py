"""Recurring subscriptions (MercadoPago preapproval) pass-through."""

import logging
from typing import Any

from fastapi import APIRouter, Depends, Request, status

from mpw_api.config import env
from mpw_api.container import Dependencies, get_dependencies
from mpw_api.routers.common import read_object_body
from mpw_api.schemas import SubscriptionResponse
from mpw_api.utils.records import as_string, get_nested

router = APIRouter(prefix="/subscriptions", tags=["subscriptions"])
logger = logging.getLogger(__name__)


def map_subscription_response(response: dict[str, Any]) -> SubscriptionResponse:
    return SubscriptionResponse(
        id=as_string(response.get("id")),
        status=as_string(response.get("status")),
        init_point=as_string(response.get("init_point")) or as_string(response.get("sandbox_init_point")),
        payer_email=as_string(response.get("payer_email")) or as_string(get_nested(response, ["payer", "email"])),
        subscription=response,
    )


async def _update_status(deps: Dependencies, subscription_id: str, new_status: str) -> SubscriptionResponse:
    response = await deps.api_client.update_subscription(subscription_id, {"status": new_status})
    logger.info(
        "SUBSCRIPTION_STATUS_UPDATED",
        extra={"subscription_id": subscription_id, "status": new_status},
    )
    return map_subscription_response(response)


@router.post("", response_model=SubscriptionResponse, status_code=status.HTTP_201_CREATED)
async def create_subscription(
    request: Request,
    deps: Dependencies = Depends(get_dependencies),
) -> SubscriptionResponse:
    payload = await read_object_body(request)
    notification_url = env.get_mercadopago_notification_url()
    if not payload.get("notification_url") and notification_url:
        payload["notification_url"] = notification_url

    response = await deps.api_client.create_subscription(payload)
    logger.info("SUBSCRIPTION_CREATED_AT_PROVIDER", extra={"subscription_id": as_string(response.get("id"))})
    return map_subscription_response(response)


@router.post("/{subscription_id}/cancel", response_model=SubscriptionResponse)
async def cancel_subscription(
    subscription_id: str,
    deps: Dependencies = Depends(get_dependencies),
) -> SubscriptionResponse:
    return await _update_status(deps, subscription_id, "cancelled")


@router.post("/{subscription_id}/pause", response_model=SubscriptionResponse)
async def pause_subscription(
    subscription_id: str,
    deps: Dependencies = Depends(get_dependencies),
) -> SubscriptionResponse:
    return await _update_status(deps, subscription_id, "paused")


@router.post("/{subscription_id}/resume", response_model=SubscriptionResponse)
async def resume_subscription(
    subscription_id: str,
    deps: Dependencies = Depends(get_dependencies),
) -> SubscriptionResponse:
    return await _update_status(deps, subscription_id, "authorized")
