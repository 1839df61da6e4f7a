"""Relational webhook event store (SQLAlchemy).

One session per operation. Calls run in a worker thread (asyncio.to_thread)
so the event loop never blocks on the database driver.
"""

import asyncio
import logging
from typing import Any, Optional

from sqlalchemy import select, text
from sqlalchemy import update as sql_update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from mpw_api.billing.ports import (
    STATUS_FAILED,
    NewWebhookEvent,
    WebhookEvent,
    WebhookEventUpdate,
)
from mpw_api.db.models import WebhookEventRow
from mpw_api.errors import DuplicateEventError, EventNotFoundError

logger = logging.getLogger(__name__)


def _to_event(row: WebhookEventRow) -> WebhookEvent:
    return WebhookEvent.model_validate(row, from_attributes=True)


class SqlWebhookEventStore:
    def __init__(self, session_factory: sessionmaker[Session]):
        self.session_factory = session_factory

    async def find_by_event_id(self, event_id: str) -> Optional[WebhookEvent]:
        return await asyncio.to_thread(self._find_by_event_id, event_id)

    async def create(self, event: NewWebhookEvent) -> WebhookEvent:
        return await asyncio.to_thread(self._create, event)

    async def update_status_by_event_id(self, event_id: str, update: WebhookEventUpdate) -> WebhookEvent:
        return await asyncio.to_thread(self._update_status, event_id, update)

    async def list_failed(self, limit: int) -> list[WebhookEvent]:
        return await asyncio.to_thread(self._list_failed, limit)

    async def ping(self) -> None:
        await asyncio.to_thread(self._ping)

    def _find_by_event_id(self, event_id: str) -> Optional[WebhookEvent]:
        with self.session_factory() as session:
            row = session.execute(
                select(WebhookEventRow).where(WebhookEventRow.mercadopago_event_id == event_id).limit(1)
            ).scalar_one_or_none()
            return _to_event(row) if row is not None else None

    def _create(self, event: NewWebhookEvent) -> WebhookEvent:
        row = WebhookEventRow(**event.model_dump())
        with self.session_factory() as session:
            session.add(row)
            try:
                session.commit()
            except IntegrityError as exc:
                session.rollback()
                logger.info(
                    "WEBHOOK_EVENT_UNIQUE_VIOLATION",
                    extra={"event_id": event.mercadopago_event_id},
                )
                raise DuplicateEventError(event.mercadopago_event_id) from exc
            return _to_event(row)

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
            values["process_attempts"] = WebhookEventRow.process_attempts + 1

        with self.session_factory() as session:
            result = session.execute(
                sql_update(WebhookEventRow)
                .where(WebhookEventRow.mercadopago_event_id == event_id)
                .values(**values)
            )
            if result.rowcount == 0:
                session.rollback()
                raise EventNotFoundError(event_id)
            session.commit()

            row = session.execute(
                select(WebhookEventRow).where(WebhookEventRow.mercadopago_event_id == event_id)
            ).scalar_one()
            return _to_event(row)

    def _list_failed(self, limit: int) -> list[WebhookEvent]:
        with self.session_factory() as session:
            rows = session.execute(
                select(WebhookEventRow)
                .where(WebhookEventRow.status == STATUS_FAILED)
                .order_by(WebhookEventRow.received_at.asc())
                .limit(limit)
            ).scalars().all()
            return [_to_event(row) for row in rows]

    def _ping(self) -> None:
        with self.session_factory() as session:
            session.execute(text("SELECT 1"))
