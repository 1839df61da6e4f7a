"""MercadoPago REST API client.

Endpoints used:
- Subscriptions (preapproval): POST /preapproval, PUT /preapproval/{id}
- Payments: POST /v1/payments (PIX), GET /v1/payments/{id}
- Merchant orders: GET /merchant_orders/{id} (or the absolute resource URL
  from the notification)

Reference: https://www.mercadopago.com.br/developers/en/reference
"""

import logging
import re
import uuid
from typing import Any, Optional
from urllib.parse import quote

import httpx

from mpw_api.config import env
from mpw_api.errors import AppError, UnauthorizedError

logger = logging.getLogger(__name__)

_ABSOLUTE_URL = re.compile(r"^https?://", re.IGNORECASE)


def is_absolute_url(value: str) -> bool:
    return bool(_ABSOLUTE_URL.match(value))


class MercadoPagoClient:
    """MercadoPago API client.

    Environment Variables:
    - MERCADOPAGO_ACCESS_TOKEN: account access token (APP_USR-* or TEST-*)
    - MERCADOPAGO_BASE_URL: API base URL (default: https://api.mercadopago.com)
    - MERCADOPAGO_TIMEOUT_MS: per-request timeout (default: 10000)
    """

    def __init__(
        self,
        access_token: Optional[str] = None,
        base_url: Optional[str] = None,
        timeout_ms: Optional[int] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.access_token = access_token if access_token is not None else env.get_mercadopago_access_token()
        self.base_url = (base_url or env.get_mercadopago_base_url()).rstrip("/")
        self.timeout = (timeout_ms or env.get_mercadopago_timeout_ms()) / 1000
        self._transport = transport

    async def create_subscription(self, payload: dict[str, Any]) -> dict[str, Any]:
        return await self._request("POST", "/preapproval", payload)

    async def update_subscription(self, subscription_id: str, payload: dict[str, Any]) -> dict[str, Any]:
        return await self._request("PUT", f"/preapproval/{quote(subscription_id, safe='')}", payload)

    async def create_pix_payment(self, payload: dict[str, Any]) -> dict[str, Any]:
        # Payments API rejects creates without an idempotency key
        return await self._request(
            "POST",
            "/v1/payments",
            payload,
            extra_headers={"X-Idempotency-Key": str(uuid.uuid4())},
        )

    async def get_payment(self, payment_id: str) -> dict[str, Any]:
        return await self._request("GET", f"/v1/payments/{quote(payment_id, safe='')}")

    async def get_merchant_order(self, id_or_url: str) -> dict[str, Any]:
        if is_absolute_url(id_or_url):
            return await self._request("GET", id_or_url)
        return await self._request("GET", f"/merchant_orders/{quote(id_or_url, safe='')}")

    async def _request(
        self,
        method: str,
        path: str,
        payload: Optional[dict[str, Any]] = None,
        extra_headers: Optional[dict[str, str]] = None,
    ) -> dict[str, Any]:
        """Send a request and return the JSON object body.

        Raises:
            UnauthorizedError: If no access token is configured
            AppError: ``mercadopago_request_failed`` on non-2xx or transport errors
        """
        if not self.access_token:
            raise UnauthorizedError("mercadopago_token_missing")

        url = path if is_absolute_url(path) else f"{self.base_url}{path}"
        headers = {
            "Authorization": f"Bearer {self.access_token}",
            "Content-Type": "application/json",
        }
        if extra_headers:
            headers.update(extra_headers)

        try:
            async with httpx.AsyncClient(transport=self._transport, timeout=self.timeout) as client:
                response = await client.request(method, url, headers=headers, json=payload)
        except httpx.RequestError as exc:
            logger.error(
                "mercadopago.request.transport_error",
                extra={"method": method, "path": path, "error": str(exc)},
            )
            raise AppError(
                "mercadopago_request_failed", 502, {"error": exc.__class__.__name__}
            ) from exc

        body = _parse_body(response)

        if response.is_error:
            logger.warning(
                "mercadopago.request.failed",
                extra={"method": method, "path": path, "status_code": response.status_code},
            )
            raise AppError(
                "mercadopago_request_failed",
                response.status_code,
                {"status": response.status_code, "body": body},
            )

        logger.info(
            "mercadopago.request.completed",
            extra={"method": method, "path": path, "status_code": response.status_code},
        )
        if isinstance(body, dict):
            return body
        return {"response": body}


def _parse_body(response: httpx.Response) -> Any:
    if not response.content:
        return None
    try:
        return response.json()
    except ValueError:
        return response.text
