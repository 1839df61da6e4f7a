"""Outcome and request metrics.

The core records outcomes through an injected ``MetricsSink``; nothing in the
use cases touches a global registry. The API builds one
``PrometheusMetricsSink`` at startup and exposes it on ``/metrics``.

Label values must come from closed sets: webhook payloads and broker errors
are unauthenticated free text, so callers map them through ``closed_label``
(or ``topic_label`` / ``payment_status_label``) before recording.

Usage:
    sink = PrometheusMetricsSink()
    sink.record_outcome("webhook.receive", "created", topic=topic_label(metadata.topic))
    sink.observe_request("POST", "/functions/v1/webhooks/mercadopago", 200, 12.5)
"""

from typing import Optional, Protocol, runtime_checkable

from prometheus_client import CONTENT_TYPE_LATEST, CollectorRegistry, Counter, Histogram, generate_latest

REQUEST_DURATION_BUCKETS_MS = (50, 100, 200, 500, 1000, 2000, 5000)

OTHER_LABEL = "other"

KNOWN_TOPICS = frozenset({"payment", "merchant_order"})

# MercadoPago payment.status values
PAYMENT_STATUSES = frozenset({
    "approved",
    "authorized",
    "pending",
    "in_process",
    "in_mediation",
    "rejected",
    "cancelled",
    "refunded",
    "charged_back",
})


def closed_label(value: Optional[str], allowed: frozenset[str]) -> str:
    """``value`` when it belongs to ``allowed``, otherwise ``"other"``."""
    return value if value in allowed else OTHER_LABEL


def topic_label(topic: Optional[str]) -> str:
    return closed_label(topic, KNOWN_TOPICS)


def payment_status_label(payment_status: Optional[str]) -> str:
    return closed_label(payment_status, PAYMENT_STATUSES)


@runtime_checkable
class MetricsSink(Protocol):
    """Minimal interface the core needs for telemetry."""

    def record_outcome(self, operation: str, outcome: str, **labels: str) -> None:
        ...

    def observe_request(self, method: str, path: str, status: int, duration_ms: float) -> None:
        ...


class NullMetricsSink:
    """Discards everything (tests, one-shot jobs)."""

    def record_outcome(self, operation: str, outcome: str, **labels: str) -> None:
        return None

    def observe_request(self, method: str, path: str, status: int, duration_ms: float) -> None:
        return None


class PrometheusMetricsSink:
    """Prometheus-backed sink with its own registry.

    Extra outcome labels (topic, reason) are folded into a single ``detail``
    label to keep the label set fixed.
    """

    content_type = CONTENT_TYPE_LATEST

    def __init__(self, registry: CollectorRegistry | None = None) -> None:
        self.registry = registry or CollectorRegistry()
        self._outcomes = Counter(
            "mpw_outcomes_total",
            "Pipeline outcomes by operation",
            ["operation", "outcome", "detail"],
            registry=self.registry,
        )
        self._requests = Counter(
            "mpw_requests_total",
            "HTTP requests",
            ["method", "path", "status"],
            registry=self.registry,
        )
        self._errors = Counter(
            "mpw_errors_total",
            "HTTP error responses",
            ["method", "path", "status"],
            registry=self.registry,
        )
        self._duration = Histogram(
            "mpw_request_duration_ms",
            "HTTP request latency in milliseconds",
            ["method", "path"],
            buckets=REQUEST_DURATION_BUCKETS_MS,
            registry=self.registry,
        )

    def record_outcome(self, operation: str, outcome: str, **labels: str) -> None:
        detail = ",".join(f"{key}={labels[key]}" for key in sorted(labels) if labels[key])
        self._outcomes.labels(operation=operation, outcome=outcome, detail=detail).inc()

    def observe_request(self, method: str, path: str, status: int, duration_ms: float) -> None:
        status_label = str(status)
        self._requests.labels(method=method, path=path, status=status_label).inc()
        if status >= 400:
            self._errors.labels(method=method, path=path, status=status_label).inc()
        self._duration.labels(method=method, path=path).observe(duration_ms)

    def render(self) -> bytes:
        """Prometheus text exposition of this sink's registry."""
        return generate_latest(self.registry)
