"""Health check endpoints."""

import logging

from fastapi import APIRouter, Response, status
from pydantic import BaseModel
from sqlalchemy import text

from memberhub_api.db import session as db_session
from memberhub_api.db.redis_client import RedisClient
from memberhub_api.pricing import get_price_catalog

router = APIRouter()
logger = logging.getLogger(__name__)

SERVICE_VERSION = "0.1.0"


class HealthResponse(BaseModel):
    """Health check response model."""

    status: str
    version: str
    services: dict[str, str]


def check_database() -> str:
    """Check database connectivity.

    Returns:
        str: "up" if healthy, error message otherwise
    """
    try:
        with db_session.engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        return "up"
    except Exception as e:
        logger.error("HEALTH_DATABASE_DOWN", extra={"error_type": type(e).__name__})
        return f"down: {str(e)[:50]}"


def check_redis() -> str:
    """Check Redis connectivity.

    Redis only de-duplicates same-day views, so an unconfigured Redis is
    reported but does not fail readiness.
    """
    if not RedisClient.is_configured():
        return "not_configured"
    try:
        RedisClient.get_client().ping()
        return "up"
    except Exception as e:
        logger.error("HEALTH_REDIS_DOWN", extra={"error_type": type(e).__name__})
        return f"down: {str(e)[:50]}"


def check_price_catalog() -> str:
    try:
        get_price_catalog()
        return "up"
    except ValueError as e:
        logger.error("HEALTH_PRICE_CATALOG_INVALID", extra={"error_msg": str(e)[:200]})
        return f"down: {str(e)[:50]}"


def _services() -> dict[str, str]:
    return {
        "api": "up",
        "database": check_database(),
        "redis": check_redis(),
        "price_catalog": check_price_catalog(),
    }


@router.get("/health", response_model=HealthResponse)
async def health_check() -> HealthResponse:
    """
    Health check endpoint.

    Always returns 200 OK (use /readyz for dependency checks).
    """
    return HealthResponse(status="healthy", version=SERVICE_VERSION, services=_services())


@router.get("/readyz", response_model=HealthResponse)
async def readiness_check(response: Response) -> HealthResponse:
    """
    Readiness check endpoint.

    Returns 503 if any configured dependency is down.
    """
    services = _services()

    if any(svc_status.startswith("down") for svc_status in services.values()):
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        return HealthResponse(status="not_ready", version=SERVICE_VERSION, services=services)

    return HealthResponse(status="ready", version=SERVICE_VERSION, services=services)
