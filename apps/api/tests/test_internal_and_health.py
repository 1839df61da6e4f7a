"""Internal broker tooling and health/readiness/metrics endpoint tests."""

import pytest

from fakes import FakeConnection
from mpw_api.billing.ports import PublishResult

TOKEN = "internal-secret"


@pytest.fixture
def internal_token(monkeypatch: pytest.MonkeyPatch) -> dict[str, str]:
    monkeypatch.setenv("INTERNAL_API_TOKEN", TOKEN)
    return {"X-Internal-Token": TOKEN}


# ============================================================================
# /internal/mq
# ============================================================================


def test_publish_mock_default_envelope(client, deps, internal_token) -> None:
    response = client.post("/internal/mq/publish-mock", headers={**internal_token, "X-Request-ID": "req-1"})

    assert response.status_code == 200
    body = response.json()
    assert body["published"] is True
    assert body["exchange"] == "mercadopago.events"
    assert body["routing_key"] == "mercadopago.internal.test"
    assert body["request_id"] == "req-1"
    assert body["payload"]["eventId"].startswith("mock_")
    assert body["payload"]["topic"] == "payment"

    call = deps.publisher.calls[0]
    assert call["correlation_id"] == "req-1"
    assert call["payload"] == body["payload"]


def test_publish_mock_overrides(client, deps, internal_token) -> None:
    response = client.post(
        "/internal/mq/publish-mock",
        headers=internal_token,
        json={"exchange": "custom.ex", "routingKey": "mercadopago.payment.created", "payload": {"k": "v"}},
    )

    body = response.json()
    assert body["exchange"] == "custom.ex"
    assert body["routing_key"] == "mercadopago.payment.created"
    assert body["payload"] == {"k": "v"}


def test_publish_mock_reports_publish_failure(client, deps, internal_token) -> None:
    deps.publisher.results.append(PublishResult(published=False, error="channel_unavailable"))

    body = client.post("/internal/mq/publish-mock", headers=internal_token).json()

    assert body["published"] is False
    assert body["error"] == "channel_unavailable"


def test_mq_status(client, internal_token) -> None:
    response = client.get("/internal/mq/status", headers=internal_token)

    assert response.status_code == 200
    assert response.json() == {
        "connected": True,
        "channel": True,
        "exchange": "mercadopago.events",
        "dlx": "mercadopago.dlx",
        "queues": {
            "process": "mercadopago.process",
            "dlq": "mercadopago.dlq",
            "retry": [
                "mercadopago.events.retry.10s",
                "mercadopago.events.retry.1m",
                "mercadopago.events.retry.10m",
                "mercadopago.events.retry.1h",
            ],
        },
    }


@pytest.mark.parametrize("headers", [{}, {"X-Internal-Token": "wrong"}])
def test_internal_rejects_bad_token(client, internal_token, headers) -> None:
    response = client.get("/internal/mq/status", headers=headers)

    assert response.status_code == 401
    assert response.json()["error"] == "invalid_internal_token"


def test_internal_rejects_when_token_unconfigured(client) -> None:
    response = client.get("/internal/mq/status", headers={"X-Internal-Token": "anything"})

    assert response.status_code == 401


def test_internal_disabled_in_production(client, internal_token, monkeypatch) -> None:
    monkeypatch.setenv("MPW_ENV", "production")

    response = client.post("/internal/mq/publish-mock", headers=internal_token)

    assert response.status_code == 403
    assert response.json()["error"] == "internal_disabled"


# ============================================================================
# Health / readiness / metrics
# ============================================================================


@pytest.mark.parametrize("path", ["/health", "/functions/v1/health"])
def test_health(client, path: str) -> None:
    response = client.get(path)

    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "healthy"
    assert body["services"] == {"api": "up"}
    assert body["version"]


def test_ready_when_dependencies_up(client) -> None:
    response = client.get("/ready")

    assert response.status_code == 200
    assert response.json()["services"] == {"api": "up", "storage": "up", "rabbitmq": "up"}


def test_not_ready_when_storage_down(client, deps) -> None:
    deps.event_store.ping_error = RuntimeError("connection refused")

    response = client.get("/ready")

    assert response.status_code == 503
    body = response.json()
    assert body["status"] == "not_ready"
    assert body["services"]["storage"].startswith("down")


@pytest.mark.parametrize(
    "connection,expected",
    [
        (FakeConnection(connected=False, channel_ready=False), "down: disconnected"),
        (FakeConnection(connected=True, channel_ready=False), "down: channel not ready"),
    ],
)
def test_not_ready_when_broker_down(client, deps, connection, expected) -> None:
    deps.connection = connection

    response = client.get("/functions/v1/ready")

    assert response.status_code == 503
    assert response.json()["services"]["rabbitmq"] == expected


def test_metrics_exposition(client) -> None:
    client.post("/functions/v1/webhooks/mercadopago", json={"id": "evt_m", "type": "payment"})

    response = client.get("/metrics")

    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/plain")
    assert "mpw_outcomes_total" in response.text
    assert 'operation="webhook.receive"' in response.text
    assert "mpw_requests_total" in response.text
