"""Billing repository over the Supabase REST API (supabase-py)."""

import asyncio
from typing import Optional

from supabase import Client

from mpw_api.billing.ports import (
    Plan,
    Subscription,
    SubscriptionInput,
    SubscriptionPayment,
    SubscriptionPaymentInput,
)
from mpw_api.config import env
from mpw_api.errors import NotFoundError

PLANS_TABLE = "plans"
SUBSCRIPTIONS_TABLE = "subscriptions"
PAYMENTS_TABLE = "subscription_payments"
PROVIDER = "mercadopago"

SUBSCRIPTION_FIELDS = (
    "id, user_id, plan_id, status, trial_ends_at, current_period_start, current_period_end"
)
PAYMENT_FIELDS = (
    "id, subscription_id, mp_payment_id, mp_merchant_order_id, amount, currency, status, "
    "paid_at, external_reference"
)


class SupabaseBillingRepository:
    def __init__(self, client: Client, schema: Optional[str] = None):
        self.client = client
        self.schema = schema or env.get_supabase_schema()

    def _table(self, name: str):
        return self.client.schema(self.schema).table(name)

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
        response = self._table(PLANS_TABLE).select("id, code").eq("code", code).limit(1).execute()
        return Plan.model_validate(response.data[0]) if response.data else None

    def _find_latest_subscription_by_user(self, user_id: str) -> Optional[Subscription]:
        response = (
            self._table(SUBSCRIPTIONS_TABLE)
            .select(SUBSCRIPTION_FIELDS)
            .eq("user_id", user_id)
            .order("created_at", desc=True)
            .limit(1)
            .execute()
        )
        return Subscription.model_validate(response.data[0]) if response.data else None

    def _create_subscription(self, data: SubscriptionInput) -> Subscription:
        response = self._table(SUBSCRIPTIONS_TABLE).insert(data.model_dump(mode="json")).execute()
        return Subscription.model_validate(response.data[0])

    def _update_subscription(self, subscription_id: str, data: SubscriptionInput) -> Subscription:
        values = data.model_dump(mode="json", exclude={"user_id"})
        response = self._table(SUBSCRIPTIONS_TABLE).update(values).eq("id", subscription_id).execute()
        if not response.data:
            raise NotFoundError("subscription_not_found", details={"subscription_id": subscription_id})
        return Subscription.model_validate(response.data[0])

    def _find_payment(self, mp_payment_id: str) -> Optional[SubscriptionPayment]:
        response = (
            self._table(PAYMENTS_TABLE)
            .select(PAYMENT_FIELDS)
            .eq("mp_payment_id", mp_payment_id)
            .limit(1)
            .execute()
        )
        return SubscriptionPayment.model_validate(response.data[0]) if response.data else None

    def _upsert_payment(self, data: SubscriptionPaymentInput) -> SubscriptionPayment:
        row = data.model_dump(mode="json")
        row["provider"] = PROVIDER
        # PostgREST merge-duplicates only touches columns present in the
        # payload, so omitted nulls keep the stored values
        for column in ("mp_merchant_order_id", "external_reference"):
            if row.get(column) is None:
                row.pop(column, None)

        response = self._table(PAYMENTS_TABLE).upsert(row, on_conflict="mp_payment_id").execute()
        return SubscriptionPayment.model_validate(response.data[0])
