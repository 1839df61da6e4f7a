"""Webhook ingress endpoint tests (TestClient + in-memory dependencies).

Test Coverage:
1. New event → 200 ack, persisted, published
2. Same event again → 200 duplicate, no second publish
3. Broker down → 200 ack with status FAILED (republish job re-drives)
4. Body errors → 400 invalid_body / invalid_json
5. Query-string id fallback for topic-style notifications
6. Strict signature mode: valid passes, invalid → 400 invalid_signature
7. Storage failure → 500 webhook_registration_failed with Retry-After
"""

import time

from mpw_api.billing.ports import PublishResult
from mpw_api.billing.signature import build_signature_payload, compute_signature

WEBHOOK_URL = "/functions/v1/webhooks/mercadopago"
SECRET = "whsec_test"

PAYLOAD = {
    "id": 98765,
    "type": "payment",
    "action": "payment.created",
    "live_mode": False,
    "date_created": "2026-03-01T12:00:00Z",
    "data": {"id": "pay_1"},
}


def test_new_event_is_acknowledged_and_published(client, deps) -> None:
    response = client.post(WEBHOOK_URL, json=PAYLOAD, headers={"X-Request-ID": "req-abc"})

    assert response.status_code == 200
    assert response.headers["X-Request-ID"] == "req-abc"
    assert response.json() == {
        "received": True,
        "duplicate": False,
        "event_id": "98765",
        "request_id": "req-abc",
        "published": True,
        "status": "PROCESSED",
    }

    stored = deps.event_store.events["98765"]
    assert stored.status == "PROCESSED"
    assert stored.headers_raw["x-request-id"] == "req-abc"
    assert deps.publisher.calls[0]["routing_key"] == "mercadopago.payment.created"
    assert deps.publisher.calls[0]["exchange"] == "mercadopago.events"


def test_duplicate_event_is_acknowledged_without_publish(client, deps) -> None:
    client.post(WEBHOOK_URL, json=PAYLOAD)
    response = client.post(WEBHOOK_URL, json=PAYLOAD)

    assert response.status_code == 200
    body = response.json()
    assert body["duplicate"] is True
    assert body["published"] is False
    assert body["status"] == "PROCESSED"
    assert len(deps.publisher.calls) == 1


def test_publish_failure_still_acknowledges(client, deps) -> None:
    deps.publisher.results.append(PublishResult(published=False, error="channel_unavailable"))

    response = client.post(WEBHOOK_URL, json=PAYLOAD)

    assert response.status_code == 200
    assert response.json()["status"] == "FAILED"
    assert response.json()["published"] is False
    stored = deps.event_store.events["98765"]
    assert stored.process_attempts == 1
    assert stored.last_error == "channel_unavailable"


def test_empty_body_is_invalid_body(client) -> None:
    response = client.post(WEBHOOK_URL, content=b"  ", headers={"Content-Type": "application/json"})

    assert response.status_code == 400
    assert response.json()["error"] == "invalid_body"


def test_array_body_is_invalid_body(client) -> None:
    response = client.post(WEBHOOK_URL, json=[1, 2, 3])

    assert response.status_code == 400
    assert response.json()["error"] == "invalid_body"


def test_malformed_json_is_invalid_json(client) -> None:
    response = client.post(WEBHOOK_URL, content=b"{not json", headers={"Content-Type": "application/json"})

    assert response.status_code == 400
    assert response.headers["content-type"] == "application/problem+json"
    assert response.json()["error"] == "invalid_json"


def test_missing_event_id_is_rejected(client, deps) -> None:
    response = client.post(WEBHOOK_URL, json={"type": "payment"})

    assert response.status_code == 400
    assert response.json()["error"] == "missing_event_id"
    assert deps.event_store.events == {}


def test_query_string_id_used_when_body_has_none(client, deps) -> None:
    response = client.post(f"{WEBHOOK_URL}?topic=merchant_order&id=555", json={"topic": "merchant_order"})

    assert response.status_code == 200
    assert response.json()["event_id"] == "555"
    assert deps.event_store.events["555"].payload_raw["id"] == "555"
    assert deps.publisher.calls[0]["routing_key"] == "mercadopago.merchant_order.unknown"


def _signature_headers(data_id: str, request_id: str, secret: str = SECRET) -> dict[str, str]:
    ts = str(int(time.time()))
    v1 = compute_signature(secret, build_signature_payload(data_id, request_id, ts))
    return {"x-signature": f"ts={ts},v1={v1}", "x-request-id": request_id}


def test_valid_signature_is_accepted(client, monkeypatch) -> None:
    monkeypatch.setenv("MERCADOPAGO_WEBHOOK_SECRET", SECRET)

    response = client.post(WEBHOOK_URL, json=PAYLOAD, headers=_signature_headers("pay_1", "mp-req-1"))

    assert response.status_code == 200


def test_invalid_signature_is_rejected(client, deps, monkeypatch) -> None:
    monkeypatch.setenv("MERCADOPAGO_WEBHOOK_SECRET", SECRET)

    response = client.post(
        WEBHOOK_URL, json=PAYLOAD, headers=_signature_headers("pay_1", "mp-req-1", secret="wrong")
    )

    assert response.status_code == 400
    body = response.json()
    assert body["error"] == "invalid_signature"
    assert body["details"] == {"reason": "signature_mismatch"}
    assert deps.event_store.events == {}


def test_missing_signature_is_rejected(client, monkeypatch) -> None:
    monkeypatch.setenv("MERCADOPAGO_WEBHOOK_SECRET", SECRET)

    response = client.post(WEBHOOK_URL, json=PAYLOAD)

    assert response.status_code == 400
    assert response.json()["details"] == {"reason": "missing_signature"}


def test_signature_not_enforced_when_strict_mode_off(client, monkeypatch) -> None:
    monkeypatch.setenv("MERCADOPAGO_WEBHOOK_SECRET", SECRET)
    monkeypatch.setenv("MERCADOPAGO_WEBHOOK_STRICT_SIGNATURE", "false")

    response = client.post(WEBHOOK_URL, json=PAYLOAD)

    assert response.status_code == 200


def test_storage_failure_returns_500_with_retry_after(client, deps) -> None:
    deps.event_store.fail_create = RuntimeError("database is down")

    response = client.post(WEBHOOK_URL, json=PAYLOAD)

    assert response.status_code == 500
    assert response.headers["Retry-After"] == "30"
    assert response.json()["error"] == "webhook_registration_failed"
    assert "database is down" not in response.text


def test_correlation_id_header_becomes_request_id(client, deps) -> None:
    client.post(WEBHOOK_URL, json=PAYLOAD, headers={"X-Correlation-ID": "corr-9"})

    assert deps.publisher.calls[0]["correlation_id"] == "corr-9"
    assert deps.publisher.calls[0]["payload"]["requestId"] == "corr-9"
