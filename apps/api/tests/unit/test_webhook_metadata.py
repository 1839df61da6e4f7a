"""Tests for notification metadata extraction, routing keys and the message envelope."""

import pytest

from mpw_api.billing.webhook_message import build_webhook_message, build_webhook_routing_key
from mpw_api.billing.webhook_metadata import extract_webhook_metadata


def test_notification_id_wins_over_resource_id() -> None:
    metadata = extract_webhook_metadata(
        {
            "id": 12345,
            "type": "payment",
            "action": "payment.created",
            "api_version": "v1",
            "live_mode": True,
            "date_created": "2026-03-01T12:00:00Z",
            "data": {"id": "pay_999"},
        }
    )

    assert metadata.event_id == "12345"
    assert metadata.notification_id == "12345"
    assert metadata.resource_id == "pay_999"
    assert metadata.topic == "payment"
    assert metadata.action == "payment.created"
    assert metadata.api_version == "v1"
    assert metadata.live_mode is True
    assert metadata.created_at_mp == "2026-03-01T12:00:00Z"


def test_resource_id_is_fallback_event_id() -> None:
    metadata = extract_webhook_metadata({"type": "payment", "data": {"id": 777}})

    assert metadata.event_id == "777"
    assert metadata.notification_id is None


def test_topic_field_used_when_type_absent() -> None:
    metadata = extract_webhook_metadata({"topic": "merchant_order", "resource": "https://x/merchant_orders/1"})

    assert metadata.topic == "merchant_order"
    assert metadata.event_id is None


@pytest.mark.parametrize("payload", [None, [], "text", 42, {"id": {"nested": 1}}, {"id": ""}])
def test_extraction_is_total(payload) -> None:
    metadata = extract_webhook_metadata(payload)

    assert metadata.event_id is None
    assert metadata.live_mode is False


def test_non_boolean_live_mode_defaults_false() -> None:
    assert extract_webhook_metadata({"id": "1", "live_mode": "true"}).live_mode is False


@pytest.mark.parametrize(
    "topic,action,expected",
    [
        ("payment", "payment.created", "mercadopago.payment.created"),
        ("payment", "created", "mercadopago.payment.created"),
        ("merchant_order", "update", "mercadopago.merchant_order.update"),
        (None, None, "mercadopago.unknown.unknown"),
        ("payment", None, "mercadopago.payment.unknown"),
        ("  ", "payment.updated", "mercadopago.unknown.payment.updated"),
    ],
)
def test_routing_key(topic, action, expected) -> None:
    assert build_webhook_routing_key(topic, action) == expected


def test_message_envelope_shape() -> None:
    message = build_webhook_message(
        event_id="evt_1",
        topic="payment",
        action="payment.created",
        created_at_mp="2026-03-01T12:00:00Z",
        live_mode=False,
        payload={"id": "evt_1"},
        headers={"x-request-id": "req-1"},
        request_id="req-1",
    )

    assert message == {
        "eventId": "evt_1",
        "topic": "payment",
        "action": "payment.created",
        "createdAt": "2026-03-01T12:00:00Z",
        "liveMode": False,
        "data": {"id": "evt_1"},
        "headers": {"x-request-id": "req-1"},
        "requestId": "req-1",
    }
