"""Relational billing repository (SQLAlchemy)."""

import asyncio
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import func, select
from sqlalchemy import update as sql_update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.orm import Session, sessionmaker

from mpw_api.billing.ports import (
    Plan,
    Subscription,
    SubscriptionInput,
    SubscriptionPayment,
    SubscriptionPaymentInput,
)
from mpw_api.db.models import PlanRow, SubscriptionPaymentRow, SubscriptionRow
from mpw_api.errors import NotFoundError

PROVIDER = "mercadopago"


class SqlBillingRepository:
    def __init__(self, session_factory: sessionmaker[Session]):
        self.session_factory = session_factory

    async def find_plan_by_code(self, code: str) -> Optional[Plan]:
        return await asyncio.to_thread(self._find_plan_by_code, code)

    async def find_latest_subscription_by_user(self, user_id: str) -> Optional[Subscription]:
        return await asyncio.to_thread(self._find_latest_subscription_by_user, user_id)

    async def create_subscription(self, data: SubscriptionInput) -> Subscription:
        return await asyncio.to_thread(self._create_subscription, data)

    async def update_subscription(self, subscription_id: str, data: SubscriptionInput) -> Subscription:
        return await asyncio.to_thread(self._update_subscription, subscription_id, data)

    async def find_payment_by_mp_payment_id(self, mp_payment_id: str) -> Optional[SubscriptionPayment]:
        return await asyncio.to_thread(self._find_payment, mp_payment_id)

    async def upsert_subscription_payment(self, data: SubscriptionPaymentInput) -> SubscriptionPayment:
        return await asyncio.to_thread(self._upsert_payment, data)

    def _find_plan_by_code(self, code: str) -> Optional[Plan]:
        with self.session_factory() as session:
            row = session.execute(select(PlanRow).where(PlanRow.code == code).limit(1)).scalar_one_or_none()
            return Plan(id=row.id, code=row.code) if row is not None else None

    def _find_latest_subscription_by_user(self, user_id: str) -> Optional[Subscription]:
        with self.session_factory() as session:
            row = session.execute(
                select(SubscriptionRow)
                .where(SubscriptionRow.user_id == user_id)
                .order_by(SubscriptionRow.created_at.desc())
                .limit(1)
            ).scalar_one_or_none()
            return Subscription.model_validate(row, from_attributes=True) if row is not None else None

    def _create_subscription(self, data: SubscriptionInput) -> Subscription:
        row = SubscriptionRow(**data.model_dump())
        with self.session_factory() as session:
            session.add(row)
            session.commit()
            return Subscription.model_validate(row, from_attributes=True)

    def _update_subscription(self, subscription_id: str, data: SubscriptionInput) -> Subscription:
        with self.session_factory() as session:
            result = session.execute(
                sql_update(SubscriptionRow)
                .where(SubscriptionRow.id == subscription_id)
                .values(
                    plan_id=data.plan_id,
                    status=data.status,
                    trial_ends_at=data.trial_ends_at,
                    current_period_start=data.current_period_start,
                    current_period_end=data.current_period_end,
                    updated_at=datetime.now(timezone.utc),
                )
            )
            if result.rowcount == 0:
                session.rollback()
                raise NotFoundError("subscription_not_found", details={"subscription_id": subscription_id})
            session.commit()

            row = session.execute(select(SubscriptionRow).where(SubscriptionRow.id == subscription_id)).scalar_one()
            return Subscription.model_validate(row, from_attributes=True)

    def _find_payment(self, mp_payment_id: str) -> Optional[SubscriptionPayment]:
        with self.session_factory() as session:
            row = session.execute(
                select(SubscriptionPaymentRow).where(SubscriptionPaymentRow.mp_payment_id == mp_payment_id).limit(1)
            ).scalar_one_or_none()
            return SubscriptionPayment.model_validate(row, from_attributes=True) if row is not None else None

    def _upsert_payment(self, data: SubscriptionPaymentInput) -> SubscriptionPayment:
        with self.session_factory() as session:
            insert = pg_insert if session.get_bind().dialect.name == "postgresql" else sqlite_insert
            stmt = insert(SubscriptionPaymentRow).values(provider=PROVIDER, **data.model_dump())
            stmt = stmt.on_conflict_do_update(
                index_elements=[SubscriptionPaymentRow.mp_payment_id],
                set_={
                    "status": stmt.excluded.status,
                    "paid_at": stmt.excluded.paid_at,
                    "amount": stmt.excluded.amount,
                    "currency": stmt.excluded.currency,
                    "mp_merchant_order_id": func.coalesce(
                        stmt.excluded.mp_merchant_order_id, SubscriptionPaymentRow.mp_merchant_order_id
                    ),
                    "external_reference": func.coalesce(
                        stmt.excluded.external_reference, SubscriptionPaymentRow.external_reference
                    ),
                    "raw": stmt.excluded.raw,
                    "updated_at": datetime.now(timezone.utc),
                },
            )
            session.execute(stmt)
            session.commit()

            row = session.execute(
                select(SubscriptionPaymentRow).where(SubscriptionPaymentRow.mp_payment_id == data.mp_payment_id)
            ).scalar_one()
            return SubscriptionPayment.model_validate(row, from_attributes=True)
