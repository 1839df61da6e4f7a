"""Payment reconciliation: provider payment/order → subscription state.

Input is the message envelope published by the receive path. The event type
comes from topic/action (``merchant_order`` wins over ``payment``); anything
else is ignored. The payment is always re-fetched from the provider API
rather than trusted from the notification body.

Checkout metadata (user id + plan code) is read from ``payment.metadata``
first, then from ``external_reference`` formatted as
``user:<uuid>|plan:<PLAN_CODE>``. Missing metadata, an unknown plan or a
missing amount raise ReconciliationError so the worker retries them.
"""

import calendar
import logging
import re
from datetime import datetime, timezone
from typing import Any, Optional
from urllib.parse import urlparse

from pydantic import BaseModel

from mpw_api.billing.ports import (
    BillingRepository,
    MercadoPagoApiClient,
    Subscription,
    SubscriptionInput,
    SubscriptionPaymentInput,
)
from mpw_api.errors import ReconciliationError
from mpw_api.observability.metrics import MetricsSink, NullMetricsSink, payment_status_label
from mpw_api.utils.records import as_number, as_string, get_nested, is_record, parse_datetime

logger = logging.getLogger(__name__)

OPERATION = "payment.reconcile"

ACTIVE_SUBSCRIPTION_STATUSES = frozenset({"trial", "active", "past_due"})
DEFAULT_CURRENCY = "BRL"
ANNUAL_PLAN_SUFFIX = "_ANUAL"

_UUID_PATTERN = re.compile(
    r"^[0-9a-f]{8}-[0-9a-f]{4}-[1-5][0-9a-f]{3}-[89ab][0-9a-f]{3}-[0-9a-f]{12}$",
    re.IGNORECASE,
)
_USER_KEYS = ("user", "user_id", "userid")
_PLAN_KEYS = ("plan", "plan_code", "plancode")


class ReconcileResult(BaseModel):
    status: str  # "processed" | "ignored"
    reason: Optional[str] = None
    payment_id: Optional[str] = None
    payment_status: Optional[str] = None
    user_id: Optional[str] = None
    plan_code: Optional[str] = None
    subscription_id: Optional[str] = None


class PaymentDetails(BaseModel):
    payment: dict[str, Any]
    payment_id: str
    merchant_order_id: Optional[str] = None
    external_reference: Optional[str] = None


# ── Payload helpers ───────────────────────────────────────────────────────────

def resolve_event_type(topic: Optional[str], action: Optional[str]) -> str:
    """Classify by substring: merchant_order, payment or unknown."""
    candidate = f"{topic or ''}:{action or ''}".lower()
    if "merchant_order" in candidate:
        return "merchant_order"
    if "payment" in candidate:
        return "payment"
    return "unknown"


def extract_resource_id(value: Optional[str]) -> Optional[str]:
    """Last path segment of a resource URL or path, without query string.

    ``https://api.mercadopago.com/merchant_orders/123?x=1`` → ``123``
    """
    if not value:
        return None
    trimmed = value.strip()
    if not trimmed:
        return None

    if re.match(r"^https?://", trimmed, re.IGNORECASE):
        path = urlparse(trimmed).path
        segment = _last_segment(path)
        if segment:
            return segment

    return _last_segment(trimmed)


def _last_segment(value: str) -> Optional[str]:
    cleaned = value.split("?", 1)[0]
    parts = [part for part in cleaned.split("/") if part]
    return parts[-1] if parts else None


def is_uuid(value: str) -> bool:
    return bool(_UUID_PATTERN.match(value))


def parse_external_reference(value: Optional[str]) -> tuple[Optional[str], Optional[str]]:
    """Parse ``key:value|key:value`` into (user_id, plan_code)."""
    if not value:
        return None, None

    user_id: Optional[str] = None
    plan_code: Optional[str] = None
    for part in value.split("|"):
        key, sep, rest = part.partition(":")
        if not key or not sep:
            continue
        normalized_key = key.strip().lower()
        normalized_value = rest.strip()
        if not normalized_value:
            continue
        if normalized_key in _USER_KEYS:
            user_id = normalized_value
        if normalized_key in _PLAN_KEYS:
            plan_code = normalized_value.upper()

    return user_id, plan_code


def resolve_checkout_metadata(
    metadata: Any, external_reference: Optional[str]
) -> tuple[Optional[str], Optional[str]]:
    """Return (user_id, plan_code); user_id must be a UUID, plan code is uppercased."""
    meta = metadata if is_record(metadata) else {}
    ref_user_id, ref_plan_code = parse_external_reference(external_reference)

    user_id = (
        as_string(meta.get("userId"))
        or as_string(meta.get("user_id"))
        or as_string(meta.get("user"))
        or ref_user_id
    )
    plan_code = (
        as_string(meta.get("planCode"))
        or as_string(meta.get("plan_code"))
        or as_string(meta.get("plan"))
        or ref_plan_code
    )

    return (
        user_id if user_id and is_uuid(user_id) else None,
        plan_code.strip().upper() if plan_code else None,
    )


def resolve_payment_amount(payment: dict[str, Any]) -> Optional[float]:
    amount = as_number(payment.get("transaction_amount"))
    if amount is not None:
        return amount
    amount = as_number(get_nested(payment, ["transaction_details", "total_paid_amount"]))
    if amount is not None:
        return amount
    return as_number(payment.get("total_paid_amount"))


def resolve_payment_id(payload: dict[str, Any]) -> Optional[str]:
    candidate = as_string(get_nested(payload, ["data", "id"])) or as_string(payload.get("resource"))
    return extract_resource_id(candidate)


def resolve_payment_id_from_order(order: dict[str, Any]) -> Optional[str]:
    """First approved payment of the order, else its first payment."""
    payments = order.get("payments")
    entries = [entry for entry in payments if is_record(entry)] if isinstance(payments, list) else []
    approved = next((entry for entry in entries if as_string(entry.get("status")) == "approved"), None)
    candidate = approved or (entries[0] if entries else None)
    if candidate is None:
        return None
    return extract_resource_id(as_string(candidate.get("id")))


def resolve_merchant_order_id_from_payment(payment: dict[str, Any]) -> Optional[str]:
    order_id = as_string(payment.get("order_id")) or as_string(get_nested(payment, ["order", "id"]))
    return extract_resource_id(order_id)


def add_months(value: datetime, months: int) -> datetime:
    """Calendar month arithmetic, clamping to the last day of the target month."""
    month_index = value.month - 1 + months
    year = value.year + month_index // 12
    month = month_index % 12 + 1
    day = min(value.day, calendar.monthrange(year, month)[1])
    return value.replace(year=year, month=month, day=day)


def is_annual_plan_code(plan_code: str) -> bool:
    return plan_code.upper().endswith(ANNUAL_PLAN_SUFFIX)


def build_billing_period(plan_code: str, now: datetime) -> tuple[datetime, datetime]:
    """One year for ``*_ANUAL`` plans, one month otherwise, anchored at ``now``."""
    months = 12 if is_annual_plan_code(plan_code) else 1
    return now, add_months(now, months)


# ── Use case ──────────────────────────────────────────────────────────────────

class ReconcilePaymentUseCase:
    def __init__(
        self,
        api_client: MercadoPagoApiClient,
        billing: BillingRepository,
        metrics: Optional[MetricsSink] = None,
    ):
        self.api_client = api_client
        self.billing = billing
        self.metrics = metrics or NullMetricsSink()

    async def execute(self, message: dict[str, Any], now: Optional[datetime] = None) -> ReconcileResult:
        """Reconcile one webhook envelope.

        Args:
            message: Envelope consumed from the broker
            now: Billing period anchor (default: current UTC time)

        Returns:
            ReconcileResult with status "processed" or "ignored"

        Raises:
            ReconciliationError: On missing metadata, unknown plan or missing amount
            AppError: On provider API failures
        """
        payload = message["data"] if is_record(message.get("data")) else message
        topic = as_string(message.get("topic")) or as_string(
            payload.get("topic") if payload.get("topic") is not None else payload.get("type")
        )
        action = as_string(message.get("action") if message.get("action") is not None else payload.get("action"))
        event_type = resolve_event_type(topic, action)

        if event_type == "unknown":
            return self._ignored(ReconcileResult(status="ignored", reason="unsupported_topic"))

        if event_type == "merchant_order":
            details = await self._payment_from_merchant_order(payload)
        else:
            details = await self._payment_from_notification(payload)

        if details is None:
            return self._ignored(ReconcileResult(status="ignored", reason="payment_not_found"))

        payment = details.payment
        payment_id = details.payment_id
        payment_status = as_string(payment.get("status")) or "unknown"
        external_reference = as_string(payment.get("external_reference")) or details.external_reference

        user_id, plan_code = resolve_checkout_metadata(payment.get("metadata"), external_reference)
        if not user_id or not plan_code:
            raise ReconciliationError("missing_checkout_metadata", details={"payment_id": payment_id})

        plan = await self.billing.find_plan_by_code(plan_code)
        if plan is None:
            raise ReconciliationError(f"plan_not_found:{plan_code}", details={"payment_id": payment_id})

        amount = resolve_payment_amount(payment)
        if amount is None:
            raise ReconciliationError("missing_payment_amount", details={"payment_id": payment_id})

        currency = (
            as_string(payment.get("currency_id"))
            or as_string(payment.get("transaction_currency_id"))
            or DEFAULT_CURRENCY
        )

        approved = payment_status == "approved"
        paid_at = None
        if approved:
            paid_at = parse_datetime(payment.get("date_approved") or payment.get("date_created"))

        now = now or datetime.now(timezone.utc)
        period_start, period_end = build_billing_period(plan_code, now)

        existing = await self.billing.find_latest_subscription_by_user(user_id)
        can_update = existing is not None and existing.status in ACTIVE_SUBSCRIPTION_STATUSES

        subscription: Optional[Subscription] = existing
        if approved:
            data = SubscriptionInput(
                user_id=user_id,
                plan_id=plan.id,
                status="active",
                trial_ends_at=None,
                current_period_start=period_start,
                current_period_end=period_end,
            )
            if can_update:
                subscription = await self.billing.update_subscription(existing.id, data)
                logger.info(
                    "SUBSCRIPTION_RENEWED",
                    extra={"subscription_id": subscription.id, "user_id": user_id, "plan_code": plan_code},
                )
            else:
                subscription = await self.billing.create_subscription(data)
                logger.info(
                    "SUBSCRIPTION_CREATED",
                    extra={"subscription_id": subscription.id, "user_id": user_id, "plan_code": plan_code},
                )
        elif not can_update:
            logger.info(
                "PAYMENT_NOT_APPROVED",
                extra={"payment_id": payment_id, "payment_status": payment_status, "user_id": user_id},
            )
            return self._ignored(
                ReconcileResult(
                    status="ignored",
                    reason=f"payment_status_{payment_status}",
                    payment_id=payment_id,
                    payment_status=payment_status,
                )
            )

        if subscription is None:
            raise ReconciliationError("subscription_unresolved", details={"payment_id": payment_id})

        await self.billing.upsert_subscription_payment(
            SubscriptionPaymentInput(
                subscription_id=subscription.id,
                mp_payment_id=payment_id,
                mp_merchant_order_id=details.merchant_order_id or resolve_merchant_order_id_from_payment(payment),
                amount=amount,
                currency=currency,
                status=payment_status,
                paid_at=paid_at,
                external_reference=external_reference,
                raw=payment,
            )
        )

        logger.info(
            "PAYMENT_RECONCILED",
            extra={
                "payment_id": payment_id,
                "payment_status": payment_status,
                "subscription_id": subscription.id,
                "plan_code": plan_code,
            },
        )
        self.metrics.record_outcome(OPERATION, "processed", payment_status=payment_status_label(payment_status))
        return ReconcileResult(
            status="processed",
            payment_id=payment_id,
            payment_status=payment_status,
            user_id=user_id,
            plan_code=plan_code,
            subscription_id=subscription.id,
        )

    async def _payment_from_notification(self, payload: dict[str, Any]) -> Optional[PaymentDetails]:
        payment_id = resolve_payment_id(payload)
        if not payment_id:
            return None

        payment = await self.api_client.get_payment(payment_id)
        return PaymentDetails(
            payment=payment,
            payment_id=payment_id,
            merchant_order_id=resolve_merchant_order_id_from_payment(payment),
            external_reference=as_string(payment.get("external_reference")),
        )

    async def _payment_from_merchant_order(self, payload: dict[str, Any]) -> Optional[PaymentDetails]:
        resource = as_string(payload.get("resource")) or as_string(get_nested(payload, ["data", "id"]))
        if not resource:
            return None

        order = await self.api_client.get_merchant_order(resource)
        merchant_order_id = as_string(order.get("id")) or extract_resource_id(resource)
        payment_id = resolve_payment_id_from_order(order)
        if not payment_id:
            return None

        payment = await self.api_client.get_payment(payment_id)
        return PaymentDetails(
            payment=payment,
            payment_id=payment_id,
            merchant_order_id=merchant_order_id,
            external_reference=as_string(payment.get("external_reference"))
            or as_string(order.get("external_reference")),
        )

    def _ignored(self, result: ReconcileResult) -> ReconcileResult:
        reason = result.reason or ""
        if result.payment_status is not None:
            reason = f"payment_status_{payment_status_label(result.payment_status)}"
        self.metrics.record_outcome(OPERATION, "ignored", reason=reason)
        return result
