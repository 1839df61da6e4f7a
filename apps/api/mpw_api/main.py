"""MercadoPago webhooks API - FastAPI Application Entry Point."""

import logging
import re
import time
import uuid
from contextlib import asynccontextmanager
from typing import Any, Optional

from fastapi import APIRouter, FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.routing import compile_path

from mpw_api import __version__
from mpw_api.config import env
from mpw_api.container import build_dependencies
from mpw_api.context import request_id_var, webhook_event_id_var
from mpw_api.errors import AppError
from mpw_api.observability.tracing import configure_tracing, instrument_app
from mpw_api.queue.topology import declare_topology
from mpw_api.routers import health, internal, pix, subscriptions, webhooks
from mpw_api.schemas import ProblemDetail
from mpw_api.utils import configure_json_logging

# Set MPW_JSON_LOGS=false to disable (defaults to true)
if env.json_logs_enabled():
    configure_json_logging(log_level=env.get_log_level(), service="api")

logger = logging.getLogger(__name__)

RETRY_AFTER_SECONDS = "30"


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build the dependency graph and connect to RabbitMQ.

    Tests may pre-populate ``app.state.deps``; the lifespan then leaves it
    alone. The broker connects in the background: the API serves (and the
    receive path records FAILED events) while RabbitMQ is unreachable.
    """
    owns_deps = getattr(app.state, "deps", None) is None
    if owns_deps:
        app.state.deps = build_dependencies()
        deps = app.state.deps

        async def _declare(channel):
            await declare_topology(channel, deps.mq_config)

        # re-declared after every reconnect
        deps.connection.add_ready_callback(_declare)
        deps.connection.start()
        logger.info("API_STARTED", extra={"storage_backend": deps.storage_backend, "version": __version__})

    try:
        yield
    finally:
        if owns_deps:
            await app.state.deps.close()
            app.state.deps = None
            if TRACER_PROVIDER is not None:
                TRACER_PROVIDER.force_flush()
            logger.info("API_STOPPED")


app = FastAPI(
    title="MercadoPago Webhooks API",
    description="Durable, idempotent ingestion of MercadoPago notifications with RabbitMQ retry tiers and RFC 9457 errors.",
    version=__version__,
    lifespan=lifespan,
)

# Instrument first so the SERVER span wraps every middleware
TRACER_PROVIDER = configure_tracing()
if TRACER_PROVIDER is not None:
    instrument_app(app, TRACER_PROVIDER)


# ============================================================================
# HTTP Request Completion Logging + Metrics Middleware
# ============================================================================


UNMATCHED_ROUTE = "unmatched"

# (path regex, path template) per included route, prefix included
ROUTE_TEMPLATES: list[tuple[re.Pattern[str], str]] = []


def _route_label(request: Request) -> str:
    """Metrics path label: the matched route template, never the raw URL."""
    path = request.url.path
    for path_regex, template in ROUTE_TEMPLATES:
        if path_regex.match(path):
            return template
    return UNMATCHED_ROUTE


@app.middleware("http")
async def http_completion_logging_middleware(request: Request, call_next):
    """Log every HTTP request completion and record request metrics.

    - Every HTTP request emits "http.request.completed"
    - Fields: method, path, status_code, duration_ms
    - Logs even on exceptions (status_code=500)
    """
    webhook_event_id_var.set("")

    start_time = time.perf_counter()
    status_code = 500

    try:
        response = await call_next(request)
        status_code = response.status_code
        return response
    finally:
        duration_ms = (time.perf_counter() - start_time) * 1000

        logger.info(
            "http.request.completed",
            extra={
                "method": request.method,
                "path": request.url.path,
                "status_code": status_code,
                "duration_ms": round(duration_ms, 2),
            },
        )

        deps = getattr(request.app.state, "deps", None)
        if deps is not None:
            deps.metrics.observe_request(request.method, _route_label(request), status_code, duration_ms)

        webhook_event_id_var.set("")


# ============================================================================
# Request ID Middleware (MUST BE OUTERMOST)
# ============================================================================


@app.middleware("http")
async def request_id_middleware(request: Request, call_next):
    """Resolve the request id and propagate it.

    - X-Request-ID, else X-Correlation-ID, else a new UUID v4
    - Sets the context variable for logging
    - Echoes X-Request-ID in response headers

    Registered last so it wraps every other middleware.
    """
    incoming = request.headers.get("x-request-id") or request.headers.get("x-correlation-id")
    request_id = incoming.strip() if incoming and incoming.strip() else str(uuid.uuid4())

    request_id_var.set(request_id)

    response = await call_next(request)
    response.headers["X-Request-ID"] = request_id

    return response


# ============================================================================
# RFC 9457 Global Exception Handlers
# ============================================================================


def _problem_response(
    request: Request,
    status_code: int,
    error: str,
    detail: str,
    details: Optional[dict[str, Any]] = None,
) -> JSONResponse:
    request_id = request_id_var.get() or str(uuid.uuid4())

    problem = ProblemDetail(
        type=f"urn:mpw:problem:{error}",
        title=_get_title_for_status(status_code),
        status=status_code,
        detail=detail,
        instance=f"urn:mpw:trace:{request_id}",
        error=error,
        details=details,
        request_id=request_id,
    )

    headers = {}
    # the provider retries on 5xx; give it a pacing hint
    if status_code >= 500 and request.url.path.endswith(webhooks.WEBHOOK_PATH_SUFFIX):
        headers["Retry-After"] = RETRY_AFTER_SECONDS

    return JSONResponse(
        status_code=status_code,
        content=problem.model_dump(exclude_none=True),
        media_type="application/problem+json",
        headers=headers,
    )


@app.exception_handler(AppError)
async def app_error_handler(request: Request, exc: AppError) -> JSONResponse:
    """Render AppError as a problem; 4xx at WARNING, 5xx at ERROR with traceback."""
    log_extra = {"error_code": exc.message, "status_code": exc.status_code, "path": request.url.path}
    if exc.status_code >= 500:
        logger.error("handled_error", extra=log_extra, exc_info=exc)
    else:
        logger.warning("handled_error", extra=log_extra)

    return _problem_response(request, exc.status_code, exc.message, exc.message, exc.details)


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    """Framework HTTP errors (404 route not found, 405 method not allowed)."""
    error = _get_title_for_status(exc.status_code).lower().replace(" ", "_")
    detail = exc.detail if isinstance(exc.detail, str) else _get_title_for_status(exc.status_code)
    return _problem_response(request, exc.status_code, error, detail)


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Request validation errors → 422 problem."""
    first_error = exc.errors()[0] if exc.errors() else {}
    field = ".".join(str(loc) for loc in first_error.get("loc", []))
    msg = first_error.get("msg", "Validation error")

    return _problem_response(
        request,
        status.HTTP_422_UNPROCESSABLE_ENTITY,
        "validation_error",
        f"Invalid field '{field}': {msg}",
    )


@app.exception_handler(Exception)
async def general_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Uncaught exceptions → 500 internal_error with no leaked detail."""
    logger.error("unhandled_error", extra={"path": request.url.path}, exc_info=exc)

    return _problem_response(
        request,
        status.HTTP_500_INTERNAL_SERVER_ERROR,
        "internal_error",
        "An unexpected error occurred. Please try again later.",
    )


def _get_title_for_status(status_code: int) -> str:
    """Get human-readable title for HTTP status code."""
    titles = {
        400: "Bad Request",
        401: "Unauthorized",
        403: "Forbidden",
        404: "Not Found",
        405: "Method Not Allowed",
        409: "Conflict",
        422: "Unprocessable Entity",
        500: "Internal Server Error",
        501: "Not Implemented",
        502: "Bad Gateway",
        503: "Service Unavailable",
    }
    return titles.get(status_code, f"HTTP {status_code}")


# Include routers
API_BASE_PATH = env.get_api_base_path()

def include_api_router(router: APIRouter, prefix: str = "", **kwargs: Any) -> None:
    """Include a router and register its full path templates for metrics labels."""
    app.include_router(router, prefix=prefix, **kwargs)
    for route in router.routes:
        route_path = getattr(route, "path", None)
        if route_path is None:
            continue
        path_regex, path_format, _ = compile_path(prefix + route_path)
        ROUTE_TEMPLATES.append((path_regex, path_format))


include_api_router(health.router, tags=["health"])
include_api_router(health.router, prefix=API_BASE_PATH, tags=["health"], include_in_schema=False)
include_api_router(internal.router)
include_api_router(webhooks.router, prefix=API_BASE_PATH)
include_api_router(subscriptions.router, prefix=API_BASE_PATH)
include_api_router(pix.router, prefix=API_BASE_PATH)


def run() -> None:
    """Console entrypoint: serve the app with uvicorn."""
    import uvicorn

    uvicorn.run(
        "mpw_api.main:app",
        host=env.get_http_host(),
        port=env.get_http_port(),
        log_config=None,
    )
