"""MercadoPago webhook ingress.

Error taxonomy (the provider retries on anything but 2xx):
  (A) Empty / non-object body → 400 invalid_body
  (B) Unparseable JSON → 400 invalid_json
  (C) Signature check failed (strict mode, secret configured) → 400 invalid_signature
  (D) No event id derivable → 400 missing_event_id
  (E) Storage failure while registering → 500 webhook_registration_failed + Retry-After
A registered event is always acknowledged with 200, even when the broker
publish failed; the republish job re-drives it.
"""

import json
import logging
from typing import Any, Optional

from fastapi import APIRouter, Depends, Request

from mpw_api.billing.signature import verify_signature
from mpw_api.billing.webhook_metadata import extract_webhook_metadata
from mpw_api.config import env
from mpw_api.container import Dependencies, get_dependencies
from mpw_api.context import request_id_var, webhook_event_id_var
from mpw_api.errors import ValidationError
from mpw_api.schemas import WebhookAck
from mpw_api.utils.records import as_string

router = APIRouter(prefix="/webhooks", tags=["webhooks"])
logger = logging.getLogger(__name__)

WEBHOOK_PATH_SUFFIX = "/webhooks/mercadopago"


def parse_webhook_body(raw_body: bytes) -> dict[str, Any]:
    """Decode the raw request body into a JSON object.

    Raises:
        ValidationError: ``invalid_body`` (empty or not an object) or
            ``invalid_json`` (undecodable)
    """
    if not raw_body or not raw_body.strip():
        raise ValidationError("invalid_body")
    try:
        payload = json.loads(raw_body)
    except (UnicodeDecodeError, ValueError):
        raise ValidationError("invalid_json") from None
    if not isinstance(payload, dict):
        raise ValidationError("invalid_body")
    return payload


def resolve_query_data_id(request: Request) -> Optional[str]:
    """``?id=`` wins over ``?data.id=`` (topic-style notifications)."""
    return as_string(request.query_params.get("id")) or as_string(request.query_params.get("data.id"))


@router.post("/mercadopago", response_model=WebhookAck)
async def receive_mercadopago_webhook(
    request: Request,
    deps: Dependencies = Depends(get_dependencies),
) -> WebhookAck:
    """Register a MercadoPago notification and publish it to the broker."""
    request_id = request_id_var.get() or None
    payload = parse_webhook_body(await request.body())

    metadata = extract_webhook_metadata(payload)
    query_data_id = resolve_query_data_id(request)
    if not metadata.event_id and query_data_id:
        payload["id"] = query_data_id
    if metadata.event_id or query_data_id:
        webhook_event_id_var.set(metadata.event_id or query_data_id)

    secret = env.get_mercadopago_webhook_secret()
    if secret and env.is_mercadopago_strict_signature():
        provider_request_id = request.headers.get("x-request-id")
        data_id = metadata.resource_id or metadata.notification_id or query_data_id
        result = verify_signature(
            signature_header=request.headers.get("x-signature"),
            secret=secret,
            request_id=provider_request_id,
            data_id=data_id,
            tolerance_sec=env.get_mercadopago_webhook_tolerance_sec(),
        )
        if not result.valid:
            details = result.details
            logger.warning(
                "mercadopago_webhook_invalid_signature",
                extra={
                    "reason": result.reason,
                    "request_id_header": provider_request_id,
                    "data_id": data_id,
                    "signature_timestamp": details.timestamp if details else None,
                    "signature_v1": details.signature if details else None,
                    "signature_expected": details.expected if details else None,
                },
            )
            raise ValidationError("invalid_signature", details={"reason": result.reason})

    headers = {key.lower(): value for key, value in request.headers.items()}
    outcome = await deps.receive_webhook().execute(payload, headers, request_id=request_id)

    return WebhookAck(
        received=True,
        duplicate=not outcome.created,
        event_id=outcome.event.mercadopago_event_id,
        request_id=request_id,
        published=outcome.published,
        status=outcome.status,
    )
