"""Pydantic schemas for API requests/responses."""

from typing import Any, Optional

from pydantic import BaseModel, Field


# ============================================================================
# POST /webhooks/mercadopago
# ============================================================================


class WebhookAck(BaseModel):
    """Acknowledgement returned to MercadoPago (always 200 once registered)."""

    received: bool = True
    duplicate: bool
    event_id: Optional[str] = None
    request_id: Optional[str] = None
    published: bool
    status: str


# ============================================================================
# Subscriptions / PIX
# ============================================================================


class SubscriptionResponse(BaseModel):
    id: Optional[str] = None
    status: Optional[str] = None
    init_point: Optional[str] = None
    payer_email: Optional[str] = None
    subscription: dict[str, Any]


class PixPaymentResponse(BaseModel):
    payment_id: Optional[str] = None
    status: Optional[str] = None
    status_detail: Optional[str] = None
    qr_code: Optional[str] = None
    qr_code_base64: Optional[str] = None
    ticket_url: Optional[str] = None
    payment: dict[str, Any]


# ============================================================================
# Internal broker tooling
# ============================================================================


class PublishMockResponse(BaseModel):
    request_id: Optional[str] = None
    published: bool
    exchange: str
    routing_key: str
    payload: dict[str, Any]
    message_id: Optional[str] = None
    error: Optional[str] = None


class MqQueues(BaseModel):
    process: str
    dlq: str
    retry: list[str]


class MqStatusResponse(BaseModel):
    connected: bool
    channel: bool
    exchange: str
    dlx: str
    queues: MqQueues


# ============================================================================
# Health
# ============================================================================


class HealthResponse(BaseModel):
    """Health check response model."""

    status: str
    version: str
    services: dict[str, str]


# ============================================================================
# RFC 9457 Problem Details
# ============================================================================


class ProblemDetail(BaseModel):
    """RFC 9457 Problem Details for HTTP API errors.

    ``error`` carries the stable machine code (AppError message) so clients
    can branch without parsing ``detail``.
    """

    type: str = Field(..., description="URI reference identifying the problem type")
    title: str = Field(..., description="Short, human-readable summary")
    status: int = Field(..., description="HTTP status code")
    detail: str = Field(..., description="Human-readable explanation")
    instance: Optional[str] = Field(None, description="URI reference identifying the specific occurrence")
    error: str = Field(..., description="Machine-readable error code")
    details: Optional[dict[str, Any]] = Field(None, description="Structured error context")
    request_id: Optional[str] = None
