"""Broker routing key and message envelope for MercadoPago webhook events."""

from typing import Any, Optional

ROUTING_KEY_PREFIX = "mercadopago"
UNKNOWN_SEGMENT = "unknown"


def _normalize_segment(value: Optional[str]) -> Optional[str]:
    if not value:
        return None
    trimmed = value.strip()
    return trimmed or None


def build_webhook_routing_key(topic: Optional[str], action: Optional[str]) -> str:
    """Derive the routing key from topic and action.

    ``payment`` + ``payment.created`` → ``mercadopago.payment.created``
    ``merchant_order`` + ``update``   → ``mercadopago.merchant_order.update``
    Missing segments become ``unknown``.
    """
    topic_value = _normalize_segment(topic) or UNKNOWN_SEGMENT
    action_value = _normalize_segment(action) or UNKNOWN_SEGMENT
    if action_value.startswith(f"{topic_value}."):
        return f"{ROUTING_KEY_PREFIX}.{action_value}"
    return f"{ROUTING_KEY_PREFIX}.{topic_value}.{action_value}"


def build_webhook_message(
    event_id: str,
    topic: Optional[str],
    action: Optional[str],
    created_at_mp: Optional[str],
    live_mode: bool,
    payload: dict[str, Any],
    headers: dict[str, Any],
    request_id: Optional[str] = None,
) -> dict[str, Any]:
    """Build the JSON envelope published for a webhook event.

    The same envelope is rebuilt from persisted rows by the republish job, so
    it must only depend on what the event store keeps.
    """
    return {
        "eventId": event_id,
        "topic": topic,
        "action": action,
        "createdAt": created_at_mp,
        "liveMode": live_mode,
        "data": payload,
        "headers": headers,
        "requestId": request_id,
    }
