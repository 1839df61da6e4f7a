"""One-off PIX payments."""

import logging
from typing import Any, Optional

from fastapi import APIRouter, Depends, Request, status

from mpw_api.config import env
from mpw_api.container import Dependencies, get_dependencies
from mpw_api.errors import ValidationError
from mpw_api.routers.common import read_object_body
from mpw_api.schemas import PixPaymentResponse
from mpw_api.utils.records import as_number, as_string, get_nested, is_record

router = APIRouter(prefix="/pix", tags=["pix"])
logger = logging.getLogger(__name__)


def resolve_payer(payload: dict[str, Any]) -> Optional[dict[str, Any]]:
    """``payer`` object with an email, else ``{"email": payer_email}``."""
    payer = payload.get("payer")
    if is_record(payer) and as_string(payer.get("email")):
        return payer

    payer_email = as_string(payload.get("payer_email"))
    if not payer_email:
        return None
    return {"email": payer_email}


def normalize_pix_payload(payload: dict[str, Any]) -> Optional[dict[str, Any]]:
    """Validate and normalize a PIX create request, None if invalid."""
    amount = as_number(payload.get("transaction_amount"))
    if amount is None:
        return None

    description = payload.get("description")
    if not isinstance(description, str) or not description:
        return None

    payer = resolve_payer(payload)
    if payer is None:
        return None

    return {
        **payload,
        "transaction_amount": amount,
        "payment_method_id": payload.get("payment_method_id") or "pix",
        "payer": payer,
    }


def map_pix_response(response: dict[str, Any]) -> PixPaymentResponse:
    transaction_data = get_nested(response, ["point_of_interaction", "transaction_data"])
    return PixPaymentResponse(
        payment_id=as_string(response.get("id")),
        status=as_string(response.get("status")),
        status_detail=as_string(response.get("status_detail")),
        qr_code=as_string(get_nested(transaction_data, ["qr_code"])),
        qr_code_base64=as_string(get_nested(transaction_data, ["qr_code_base64"])),
        ticket_url=as_string(get_nested(transaction_data, ["ticket_url"])),
        payment=response,
    )


@router.post("/payments", response_model=PixPaymentResponse, status_code=status.HTTP_201_CREATED)
async def create_pix_payment(
    request: Request,
    deps: Dependencies = Depends(get_dependencies),
) -> PixPaymentResponse:
    payload = normalize_pix_payload(await read_object_body(request))
    if payload is None:
        raise ValidationError("invalid_pix_payload")

    notification_url = env.get_mercadopago_notification_url()
    if not payload.get("notification_url") and notification_url:
        payload["notification_url"] = notification_url

    response = await deps.api_client.create_pix_payment(payload)
    logger.info(
        "PIX_PAYMENT_CREATED",
        extra={"payment_id": as_string(response.get("id")), "status": as_string(response.get("status"))},
    )
    return map_pix_response(response)
