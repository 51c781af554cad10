"""Logging Redaction Middleware.

Credentials carried in headers never reach logs in plain text:
  Authorization, Stripe-Signature, X-Internal-Key, cookies.

The request itself is untouched (signature verification and the internal key
check read the original headers). A redacted copy is stored on
request.state.redacted_headers for anything that wants to log headers.

Usage:
    app.add_middleware(LoggingRedactionMiddleware)
"""

import logging
from typing import Callable

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware

logger = logging.getLogger(__name__)

SENSITIVE_HEADERS = frozenset({
    "authorization",
    "proxy-authorization",
    "cookie",
    "set-cookie",
    "stripe-signature",
    "x-internal-key",
})

REDACTED_PLACEHOLDER = "[REDACTED]"


def redact_headers(headers) -> dict:
    return {
        name: REDACTED_PLACEHOLDER if name.lower() in SENSITIVE_HEADERS else value
        for name, value in headers.items()
    }


class LoggingRedactionMiddleware(BaseHTTPMiddleware):
    """Store a log-safe copy of the request headers on request.state."""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request.state.redacted_headers = redact_headers(request.headers)
        return await call_next(request)


def get_safe_headers(request: Request) -> dict:
    """Headers safe for logging, whether or not the middleware ran.

    Example:
        logger.info("WEBHOOK_HEADERS", extra={"headers": get_safe_headers(request)})
    """
    if hasattr(request.state, "redacted_headers"):
        return request.state.redacted_headers
    return redact_headers(request.headers)
