"""Records and ports shared by the MercadoPago use cases.

Use cases depend on these protocols only; the concrete SQLAlchemy, Supabase,
httpx and aio-pika implementations are selected in ``mpw_api.container``.
"""

from datetime import datetime
from typing import Any, Optional, Protocol, runtime_checkable

from pydantic import BaseModel, Field

STATUS_RECEIVED = "RECEIVED"
STATUS_PROCESSED = "PROCESSED"
STATUS_FAILED = "FAILED"


# ── Webhook events ────────────────────────────────────────────────────────────

class WebhookEvent(BaseModel):
    """A received notification as persisted in ``mercadopago_webhook_events``."""

    id: str
    mercadopago_event_id: str
    notification_id: Optional[str] = None
    resource_id: Optional[str] = None
    topic: Optional[str] = None
    action: Optional[str] = None
    api_version: Optional[str] = None
    live_mode: bool = False
    created_at_mp: Optional[datetime] = None
    received_at: datetime
    payload_raw: dict[str, Any] = Field(default_factory=dict)
    headers_raw: dict[str, Any] = Field(default_factory=dict)
    status: str = STATUS_RECEIVED
    process_attempts: int = 0
    last_error: Optional[str] = None


class NewWebhookEvent(BaseModel):
    mercadopago_event_id: str
    notification_id: Optional[str] = None
    resource_id: Optional[str] = None
    topic: Optional[str] = None
    action: Optional[str] = None
    api_version: Optional[str] = None
    live_mode: bool = False
    created_at_mp: Optional[datetime] = None
    payload_raw: dict[str, Any] = Field(default_factory=dict)
    headers_raw: dict[str, Any] = Field(default_factory=dict)
    status: str = STATUS_RECEIVED
    process_attempts: int = 0
    last_error: Optional[str] = None


class WebhookEventUpdate(BaseModel):
    """Partial status update.

    Only explicitly passed fields are applied (``model_fields_set``), so
    ``WebhookEventUpdate(last_error=None)`` clears the error while
    ``WebhookEventUpdate(status="FAILED")`` leaves it untouched.
    """

    status: Optional[str] = None
    last_error: Optional[str] = None
    increment_attempts: bool = False

    def is_empty(self) -> bool:
        """True when applying the update would change nothing (a read-back)."""
        fields = self.model_fields_set
        return not (
            ("status" in fields and self.status)
            or "last_error" in fields
            or self.increment_attempts
        )


@runtime_checkable
class WebhookEventStore(Protocol):
    """Durable, idempotent ledger of received webhook events."""

    async def find_by_event_id(self, event_id: str) -> Optional[WebhookEvent]:
        ...

    async def create(self, event: NewWebhookEvent) -> WebhookEvent:
        """Insert a new event.

        Raises:
            DuplicateEventError: If the event id already exists.
        """
        ...

    async def update_status_by_event_id(self, event_id: str, update: WebhookEventUpdate) -> WebhookEvent:
        """Apply a partial update; an empty update is a read-back.

        Raises:
            EventNotFoundError: If no row matches.
        """
        ...

    async def list_failed(self, limit: int) -> list[WebhookEvent]:
        """FAILED events, oldest ``received_at`` first."""
        ...

    async def ping(self) -> None:
        """Raise if the backend is unreachable (readiness probe)."""
        ...


# ── Billing ───────────────────────────────────────────────────────────────────

class Plan(BaseModel):
    id: str
    code: str


class Subscription(BaseModel):
    id: str
    user_id: str
    plan_id: str
    status: str
    trial_ends_at: Optional[datetime] = None
    current_period_start: Optional[datetime] = None
    current_period_end: Optional[datetime] = None


class SubscriptionInput(BaseModel):
    user_id: str
    plan_id: str
    status: str
    trial_ends_at: Optional[datetime] = None
    current_period_start: datetime
    current_period_end: datetime


class SubscriptionPayment(BaseModel):
    id: str
    subscription_id: str
    mp_payment_id: str
    mp_merchant_order_id: Optional[str] = None
    amount: float
    currency: str
    status: str
    paid_at: Optional[datetime] = None
    external_reference: Optional[str] = None


class SubscriptionPaymentInput(BaseModel):
    subscription_id: str
    mp_payment_id: str
    mp_merchant_order_id: Optional[str] = None
    amount: float
    currency: str
    status: str
    paid_at: Optional[datetime] = None
    external_reference: Optional[str] = None
    raw: dict[str, Any] = Field(default_factory=dict)


@runtime_checkable
class BillingRepository(Protocol):
    async def find_plan_by_code(self, code: str) -> Optional[Plan]:
        ...

    async def find_latest_subscription_by_user(self, user_id: str) -> Optional[Subscription]:
        """Most recently created subscription of the user."""
        ...

    async def create_subscription(self, data: SubscriptionInput) -> Subscription:
        ...

    async def update_subscription(self, subscription_id: str, data: SubscriptionInput) -> Subscription:
        ...

    async def find_payment_by_mp_payment_id(self, mp_payment_id: str) -> Optional[SubscriptionPayment]:
        ...

    async def upsert_subscription_payment(self, data: SubscriptionPaymentInput) -> SubscriptionPayment:
        """Insert or update keyed by ``mp_payment_id``.

        On conflict status/paid_at/amount/currency/raw are overwritten;
        merchant order id and external reference only when the new value is
        not null.
        """
        ...


# ── Provider API ──────────────────────────────────────────────────────────────

@runtime_checkable
class MercadoPagoApiClient(Protocol):
    async def create_subscription(self, payload: dict[str, Any]) -> dict[str, Any]:
        ...

    async def update_subscription(self, subscription_id: str, payload: dict[str, Any]) -> dict[str, Any]:
        ...

    async def create_pix_payment(self, payload: dict[str, Any]) -> dict[str, Any]:
        ...

    async def get_payment(self, payment_id: str) -> dict[str, Any]:
        ...

    async def get_merchant_order(self, id_or_url: str) -> dict[str, Any]:
        ...


# ── Broker ────────────────────────────────────────────────────────────────────

PUBLISH_TIMEOUT = "publish_timeout"
CHANNEL_UNAVAILABLE = "channel_unavailable"

# Failure codes a publisher reports itself; anything else is free broker text
PUBLISH_ERROR_CODES = frozenset({PUBLISH_TIMEOUT, CHANNEL_UNAVAILABLE})


class PublishResult(BaseModel):
    published: bool
    message_id: Optional[str] = None
    error: Optional[str] = None


@runtime_checkable
class MessagePublisher(Protocol):
    async def publish(
        self,
        exchange: str,
        routing_key: str,
        payload: dict[str, Any],
        headers: Optional[dict[str, Any]] = None,
        message_id: Optional[str] = None,
        correlation_id: Optional[str] = None,
        timeout_ms: Optional[int] = None,
    ) -> PublishResult:
        """Publish with delivery confirmation.

        Never raises for publish-level failures; returns
        ``PublishResult(published=False, error=...)`` instead.
        """
        ...
