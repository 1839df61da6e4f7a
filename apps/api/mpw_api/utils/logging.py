"""Structured JSON logging for the API, the worker and the republish job.

One JSON object per line:
- timestamp (ISO 8601 UTC), level, logger, message, call site
- service: which process emitted the line (api, worker, republisher)
- request_id / webhook_event_id from context variables when set
- trace_id / span_id of the current OpenTelemetry span, when one is active
- every ``extra={...}`` field, passed through the redaction layer
"""

import json
import logging
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any, Optional

from opentelemetry import trace

from mpw_api.context import request_id_var, webhook_event_id_var
from mpw_api.utils.sanitize import sanitize_exc, sanitize_obj, sanitize_str

CONTEXT_FIELDS: tuple[tuple[str, ContextVar[str]], ...] = (
    ("request_id", request_id_var),
    ("webhook_event_id", webhook_event_id_var),
)

# Attributes every LogRecord carries; anything else came from extra={...}
_RECORD_ATTRS = frozenset(vars(logging.LogRecord("", 0, "", 0, "", None, None))) | {"message", "asctime"}


class JSONFormatter(logging.Formatter):
    """Render log records as redacted JSON lines.

    Args:
        service: Process name stamped on every line; omitted when None
    """

    def __init__(self, service: Optional[str] = None):
        super().__init__()
        self.service = service

    def format(self, record: logging.LogRecord) -> str:
        log_data: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": sanitize_str(record.getMessage()),
            "module": record.module,
            "func": record.funcName,
            "line": record.lineno,
        }
        if self.service:
            log_data["service"] = self.service

        for field, var in CONTEXT_FIELDS:
            value = var.get()
            if value:
                log_data[field] = value

        span_context = trace.get_current_span().get_span_context()
        if span_context.is_valid:
            log_data["trace_id"] = format(span_context.trace_id, "032x")
            log_data["span_id"] = format(span_context.span_id, "016x")

        if record.exc_info:
            log_data["exc_info"] = sanitize_exc(record.exc_info)

        for key, value in record.__dict__.items():
            if key not in _RECORD_ATTRS:
                log_data[key] = sanitize_obj(value)

        return json.dumps(log_data, default=str)


def configure_json_logging(log_level: str = "INFO", service: Optional[str] = None) -> None:
    """Install a single JSON stream handler on the root logger.

    Args:
        log_level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        service: Process name added to every line
    """
    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    handler = logging.StreamHandler()
    handler.setFormatter(JSONFormatter(service=service))
    root_logger.addHandler(handler)
