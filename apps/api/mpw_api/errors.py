"""Application error taxonomy.

Every error that crosses a use-case boundary is an ``AppError``. The
``message`` is a stable machine code (``invalid_json``, ``event_not_found``,
``mercadopago_request_failed``) and ``status_code`` the HTTP status the API
maps it to. Handlers in ``mpw_api.main`` render them as RFC 9457 problems.
"""

from typing import Any, Optional


class AppError(Exception):
    """Base application error."""

    status_code: int = 500

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        details: Optional[dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        self.details = details


class ValidationError(AppError):
    status_code = 400


class UnauthorizedError(AppError):
    status_code = 401


class ForbiddenError(AppError):
    status_code = 403


class NotFoundError(AppError):
    status_code = 404


class ConflictError(AppError):
    status_code = 409


class NotImplementedAppError(AppError):
    status_code = 501


class DuplicateEventError(ConflictError):
    """Raised by event stores when the unique event id constraint rejects an insert."""

    def __init__(self, event_id: str):
        super().__init__("duplicate_event", details={"event_id": event_id})
        self.event_id = event_id


class EventNotFoundError(NotFoundError):
    """Raised by event stores when an update targets an unknown event id."""

    def __init__(self, event_id: str):
        super().__init__("event_not_found", details={"event_id": event_id})
        self.event_id = event_id


class ReconciliationError(AppError):
    """Payment data could not be mapped to billing state.

    Raised by the reconciliation use case; the worker routes it through the
    retry tiers like any other failure.
    """

    status_code = 422
