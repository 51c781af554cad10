"""Memberhub API - FastAPI Application Entry Point."""

import logging
import os
import time
import uuid

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from memberhub_api.context import event_id_var, member_id_var, request_id_var
from memberhub_api.middleware import LoggingRedactionMiddleware
from memberhub_api.pricing import get_price_catalog
from memberhub_api.routers import entitlements, health, webhooks
from memberhub_api.routers.health import SERVICE_VERSION
from memberhub_api.schemas import ProblemDetail
from memberhub_api.utils import configure_json_logging

logger = logging.getLogger(__name__)

_TITLES = {
    400: "Bad Request",
    401: "Unauthorized",
    403: "Forbidden",
    404: "Not Found",
    405: "Method Not Allowed",
    409: "Conflict",
    429: "Too Many Requests",
    500: "Internal Server Error",
    502: "Bad Gateway",
    503: "Service Unavailable",
}


def _get_title_for_status(status_code: int) -> str:
    """Get human-readable title for HTTP status code."""
    return _TITLES.get(status_code, f"HTTP {status_code}")


def _trace_instance() -> str:
    """Opaque problem instance derived from the request id."""
    request_id = request_id_var.get()
    return f"urn:memberhub:trace:{request_id or uuid.uuid4()}"


def _problem_response(problem: ProblemDetail, headers: dict | None = None) -> JSONResponse:
    return JSONResponse(
        status_code=problem.status,
        content=problem.model_dump(exclude_none=True),
        media_type="application/problem+json",
        headers=headers,
    )


# ============================================================================
# RFC 9457 Global Exception Handlers
# ============================================================================


async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    """Render HTTP exceptions as application/problem+json (no {"detail": ...} wrapper)."""
    detail_value = exc.detail if exc.detail is not None else _get_title_for_status(exc.status_code)
    problem = ProblemDetail(
        type=f"urn:memberhub:problem:http-{exc.status_code}",
        title=_get_title_for_status(exc.status_code),
        status=exc.status_code,
        detail=detail_value,
        instance=_trace_instance(),
    )

    headers = dict(exc.headers) if getattr(exc, "headers", None) else {}
    if exc.status_code in (429, 503):
        headers.setdefault("Retry-After", "60")
    return _problem_response(problem, headers)


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """422 with the first invalid field named in detail."""
    first_error = exc.errors()[0] if exc.errors() else {}
    field = ".".join(str(loc) for loc in first_error.get("loc", []))
    msg = first_error.get("msg", "Validation error")

    problem = ProblemDetail(
        type="urn:memberhub:problem:validation-error",
        title="Request Validation Failed",
        status=422,
        detail=f"Invalid field '{field}': {msg}",
        instance=_trace_instance(),
    )
    return _problem_response(problem)


async def general_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """500 for anything unhandled; the exception is logged, never echoed."""
    logger.error(
        "UNHANDLED_EXCEPTION",
        extra={"path": request.url.path, "error_type": type(exc).__name__},
        exc_info=True,
    )
    problem = ProblemDetail(
        type="urn:memberhub:problem:internal-error",
        title="Internal Server Error",
        status=status.HTTP_500_INTERNAL_SERVER_ERROR,
        detail="An unexpected error occurred. Please try again later.",
        instance=_trace_instance(),
    )
    return _problem_response(problem)


# ============================================================================
# Middleware
# ============================================================================


async def http_completion_logging_middleware(request: Request, call_next):
    """Log every HTTP request completion ("http.request.completed").

    Fields: method, path, status_code, duration_ms (+ context vars via
    JSONFormatter). Logs with status_code=500 when the handler raised.
    Per-request context vars are cleared before and after.
    """
    event_id_var.set("")
    member_id_var.set("")

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
        event_id_var.set("")
        member_id_var.set("")


async def request_id_middleware(request: Request, call_next):
    """Accept X-Request-ID or generate one; echo it on the response.

    Registered last so it is the outermost middleware and the context var is
    set before any inner middleware runs.
    """
    request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
    request_id_var.set(request_id)

    response = await call_next(request)
    response.headers["X-Request-ID"] = request_id
    return response


# ============================================================================
# Application factory
# ============================================================================


def create_app() -> FastAPI:
    """Build the FastAPI application.

    Set MEMBERHUB_JSON_LOGS=false to keep the default (plain) log format.
    """
    if os.getenv("MEMBERHUB_JSON_LOGS", "true").lower() != "false":
        configure_json_logging(log_level=os.getenv("LOG_LEVEL", "INFO"))

    new_app = FastAPI(
        title="Memberhub API",
        description="Stripe subscription reconciliation and content entitlement gate.",
        version=SERVICE_VERSION,
        docs_url="/api-docs",
        redoc_url=None,
    )

    new_app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    new_app.add_exception_handler(RequestValidationError, validation_exception_handler)
    new_app.add_exception_handler(Exception, general_exception_handler)

    # Order matters: the last registered middleware is the outermost
    new_app.add_middleware(LoggingRedactionMiddleware)
    new_app.middleware("http")(http_completion_logging_middleware)
    new_app.middleware("http")(request_id_middleware)

    new_app.include_router(health.router, tags=["health"])
    new_app.include_router(webhooks.router)
    new_app.include_router(webhooks.legacy_router)
    new_app.include_router(entitlements.router)

    @new_app.on_event("startup")
    async def startup_event():
        """Fail fast on an invalid price catalog."""
        catalog = get_price_catalog()
        logger.info(
            "PRICE_CATALOG_LOADED",
            extra={"catalog_version": catalog.catalog_version, "prices": len(catalog.prices)},
        )

    return new_app


app = create_app()
