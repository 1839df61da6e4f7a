"""SQLAlchemy ORM models for the webhook ledger and billing tables."""

import uuid
from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy import BOOLEAN, INTEGER, JSON, NUMERIC, TEXT, TIMESTAMP, UUID, CheckConstraint, ForeignKey, Index
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

JSONType = JSON().with_variant(JSONB(), "postgresql")


def _new_id() -> str:
    return str(uuid.uuid4())


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Base(DeclarativeBase):
    """Base class for all ORM models."""

    pass


class WebhookEventRow(Base):
    """One row per distinct MercadoPago notification (keyed by event id)."""

    __tablename__ = "mercadopago_webhook_events"

    id: Mapped[str] = mapped_column(UUID(as_uuid=False), primary_key=True, default=_new_id)
    mercadopago_event_id: Mapped[str] = mapped_column(TEXT, nullable=False, unique=True)
    notification_id: Mapped[Optional[str]] = mapped_column(TEXT, nullable=True)
    resource_id: Mapped[Optional[str]] = mapped_column(TEXT, nullable=True)
    topic: Mapped[Optional[str]] = mapped_column(TEXT, nullable=True)
    action: Mapped[Optional[str]] = mapped_column(TEXT, nullable=True)
    api_version: Mapped[Optional[str]] = mapped_column(TEXT, nullable=True)
    live_mode: Mapped[bool] = mapped_column(BOOLEAN, nullable=False, default=False)
    created_at_mp: Mapped[Optional[datetime]] = mapped_column(TIMESTAMP(timezone=True), nullable=True)
    received_at: Mapped[datetime] = mapped_column(TIMESTAMP(timezone=True), nullable=False, default=_utcnow)
    payload_raw: Mapped[dict[str, Any]] = mapped_column(JSONType, nullable=False, default=dict)
    headers_raw: Mapped[dict[str, Any]] = mapped_column(JSONType, nullable=False, default=dict)
    status: Mapped[str] = mapped_column(TEXT, nullable=False, default="RECEIVED")
    process_attempts: Mapped[int] = mapped_column(INTEGER, nullable=False, default=0)
    last_error: Mapped[Optional[str]] = mapped_column(TEXT, nullable=True)

    __table_args__ = (
        CheckConstraint(
            "status IN ('RECEIVED', 'PROCESSED', 'FAILED')",
            name="ck_mercadopago_webhook_events_status",
        ),
        CheckConstraint("process_attempts >= 0", name="ck_mercadopago_webhook_events_attempts"),
        Index("idx_mercadopago_webhook_events_status_received", "status", "received_at"),
    )


class PlanRow(Base):
    __tablename__ = "plans"

    id: Mapped[str] = mapped_column(UUID(as_uuid=False), primary_key=True, default=_new_id)
    code: Mapped[str] = mapped_column(TEXT, nullable=False, unique=True)
    name: Mapped[Optional[str]] = mapped_column(TEXT, nullable=True)
    created_at: Mapped[datetime] = mapped_column(TIMESTAMP(timezone=True), nullable=False, default=_utcnow)


class SubscriptionRow(Base):
    __tablename__ = "subscriptions"

    id: Mapped[str] = mapped_column(UUID(as_uuid=False), primary_key=True, default=_new_id)
    user_id: Mapped[str] = mapped_column(TEXT, nullable=False)
    plan_id: Mapped[str] = mapped_column(UUID(as_uuid=False), ForeignKey("plans.id"), nullable=False)
    status: Mapped[str] = mapped_column(TEXT, nullable=False)
    trial_ends_at: Mapped[Optional[datetime]] = mapped_column(TIMESTAMP(timezone=True), nullable=True)
    current_period_start: Mapped[Optional[datetime]] = mapped_column(TIMESTAMP(timezone=True), nullable=True)
    current_period_end: Mapped[Optional[datetime]] = mapped_column(TIMESTAMP(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(TIMESTAMP(timezone=True), nullable=False, default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow
    )

    __table_args__ = (Index("idx_subscriptions_user_created", "user_id", "created_at"),)


class SubscriptionPaymentRow(Base):
    __tablename__ = "subscription_payments"

    id: Mapped[str] = mapped_column(UUID(as_uuid=False), primary_key=True, default=_new_id)
    subscription_id: Mapped[str] = mapped_column(
        UUID(as_uuid=False), ForeignKey("subscriptions.id"), nullable=False
    )
    provider: Mapped[str] = mapped_column(TEXT, nullable=False, default="mercadopago")
    mp_payment_id: Mapped[str] = mapped_column(TEXT, nullable=False, unique=True)
    mp_merchant_order_id: Mapped[Optional[str]] = mapped_column(TEXT, nullable=True)
    amount: Mapped[float] = mapped_column(NUMERIC(12, 2, asdecimal=False), nullable=False)
    currency: Mapped[str] = mapped_column(TEXT, nullable=False)
    status: Mapped[str] = mapped_column(TEXT, nullable=False)
    paid_at: Mapped[Optional[datetime]] = mapped_column(TIMESTAMP(timezone=True), nullable=True)
    external_reference: Mapped[Optional[str]] = mapped_column(TEXT, nullable=True)
    raw: Mapped[dict[str, Any]] = mapped_column(JSONType, nullable=False, default=dict)
    created_at: Mapped[datetime] = mapped_column(TIMESTAMP(timezone=True), nullable=False, default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow
    )
