"""Request context management for observability.

Context variables carry correlation data across async boundaries so that
every log line emitted while handling a webhook can be tied back to it.
"""

from contextvars import ContextVar

# Request ID - unique per HTTP request (or per consumed message in the worker)
request_id_var: ContextVar[str] = ContextVar("request_id", default="")

# Webhook event ID - the deduplication key of the event being handled
webhook_event_id_var: ContextVar[str] = ContextVar("webhook_event_id", default="")
