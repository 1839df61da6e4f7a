"""Canonical identity/topic extraction for MercadoPago notifications.

Pure and total: any JSON-like input yields a WebhookMetadata, never an
exception. The event id is the notification id when present, otherwise the
resource id (``data.id``).
"""

from typing import Any, Optional

from pydantic import BaseModel

from mpw_api.utils.records import as_identifier, is_record


class WebhookMetadata(BaseModel):
    event_id: Optional[str] = None
    notification_id: Optional[str] = None
    resource_id: Optional[str] = None
    topic: Optional[str] = None
    action: Optional[str] = None
    api_version: Optional[str] = None
    live_mode: bool = False
    created_at_mp: Optional[str] = None


def _string_field(payload: dict[str, Any], key: str) -> Optional[str]:
    value = payload.get(key)
    return value if isinstance(value, str) else None


def extract_webhook_metadata(payload: Any) -> WebhookMetadata:
    """Normalize a raw notification into WebhookMetadata."""
    if not is_record(payload):
        return WebhookMetadata()

    notification_id = as_identifier(payload.get("id"))
    data = payload.get("data")
    resource_id = as_identifier(data.get("id")) if is_record(data) else None

    topic_raw = payload.get("type")
    if topic_raw is None:
        topic_raw = payload.get("topic")
    topic = topic_raw if isinstance(topic_raw, str) else None

    live_mode = payload.get("live_mode")

    return WebhookMetadata(
        event_id=notification_id or resource_id,
        notification_id=notification_id,
        resource_id=resource_id,
        topic=topic,
        action=_string_field(payload, "action"),
        api_version=_string_field(payload, "api_version"),
        live_mode=live_mode if isinstance(live_mode, bool) else False,
        created_at_mp=_string_field(payload, "date_created"),
    )
