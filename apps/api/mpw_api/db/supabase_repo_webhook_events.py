"""Webhook event store over the Supabase REST API (supabase-py).

supabase-py is synchronous; calls run in a worker thread. Incrementing
``process_attempts`` is read-then-write, not atomic.
"""

import asyncio
import logging
from typing import Any, Optional

from supabase import Client, PostgrestAPIError

from mpw_api.billing.ports import (
    STATUS_FAILED,
    NewWebhookEvent,
    WebhookEvent,
    WebhookEventUpdate,
)
from mpw_api.config import env
from mpw_api.errors import DuplicateEventError, EventNotFoundError

logger = logging.getLogger(__name__)

TABLE = "mercadopago_webhook_events"
UNIQUE_VIOLATION = "23505"

SELECT_FIELDS = (
    "id, mercadopago_event_id, notification_id, resource_id, topic, action, api_version, "
    "live_mode, created_at_mp, received_at, payload_raw, headers_raw, status, "
    "process_attempts, last_error"
)


class SupabaseWebhookEventStore:
    def __init__(self, client: Client, schema: Optional[str] = None):
        self.client = client
        self.schema = schema or env.get_supabase_schema()

    def _table(self):
        return self.client.schema(self.schema).table(TABLE)

    async def find_by_event_id(self, event_id: str) -> Optional[WebhookEvent]:
        return await asyncio.to_thread(self._find_by_event_id, event_id)

    async def create(self, event: NewWebhookEvent) -> WebhookEvent:
        return await asyncio.to_thread(self._create, event)

    async def update_status_by_event_id(self, event_id: str, update: WebhookEventUpdate) -> WebhookEvent:
        return await asyncio.to_thread(self._update_status, event_id, update)

    async def list_failed(self, limit: int) -> list[WebhookEvent]:
        return await asyncio.to_thread(self._list_failed, limit)

    async def ping(self) -> None:
        await asyncio.to_thread(lambda: self._table().select("id").limit(1).execute())

    def _find_by_event_id(self, event_id: str) -> Optional[WebhookEvent]:
        response = (
            self._table()
            .select(SELECT_FIELDS)
            .eq("mercadopago_event_id", event_id)
            .limit(1)
            .execute()
        )
        return WebhookEvent.model_validate(response.data[0]) if response.data else None

    def _create(self, event: NewWebhookEvent) -> WebhookEvent:
        try:
            response = self._table().insert(event.model_dump(mode="json")).execute()
        except PostgrestAPIError as exc:
            if exc.code == UNIQUE_VIOLATION:
                logger.info(
                    "WEBHOOK_EVENT_UNIQUE_VIOLATION",
                    extra={"event_id": event.mercadopago_event_id},
                )
                raise DuplicateEventError(event.mercadopago_event_id) from exc
            raise
        return WebhookEvent.model_validate(response.data[0])

    def _update_status(self, event_id: str, update: WebhookEventUpdate) -> WebhookEvent:
        if update.is_empty():
            existing = self._find_by_event_id(event_id)
            if existing is None:
                raise EventNotFoundError(event_id)
            return existing

        values: dict[str, Any] = {}
        if "status" in update.model_fields_set and update.status:
            values["status"] = update.status
        if "last_error" in update.model_fields_set:
            values["last_error"] = update.last_error

        if update.increment_attempts:
            current = (
                self._table()
                .select("process_attempts")
                .eq("mercadopago_event_id", event_id)
                .limit(1)
                .execute()
            )
            attempts = int(current.data[0].get("process_attempts") or 0) if current.data else 0
            values["process_attempts"] = attempts + 1

        response = self._table().update(values).eq("mercadopago_event_id", event_id).execute()
        if not response.data:
            raise EventNotFoundError(event_id)
        return WebhookEvent.model_validate(response.data[0])

    def _list_failed(self, limit: int) -> list[WebhookEvent]:
        response = (
            self._table()
            .select(SELECT_FIELDS)
            .eq("status", STATUS_FAILED)
            .order("received_at", desc=False)
            .limit(limit)
            .execute()
        )
        return [WebhookEvent.model_validate(row) for row in response.data or []]
