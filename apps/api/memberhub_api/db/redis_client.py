"""Redis client used for same-day article view de-duplication.

Redis is an optimization here, not a source of truth: the quota is counted
from ArticleView rows. When REDIS_URL is unset the gate simply records every
view and the distinct-content count keeps the quota correct.
"""

import logging
import os
from typing import Optional
from urllib.parse import urlparse

import redis

logger = logging.getLogger(__name__)


class RedisClient:
    """Lazily-built process-wide Redis client."""

    _instance: Optional[redis.Redis] = None

    @classmethod
    def is_configured(cls) -> bool:
        return bool(os.getenv("REDIS_URL"))

    @classmethod
    def get_client(cls) -> redis.Redis:
        """Return the shared client, building it from REDIS_URL on first use.

        REDIS_PASSWORD is applied only when the URL carries no password.

        Raises:
            ValueError: REDIS_URL not configured
        """
        if cls._instance is None:
            redis_url = os.getenv("REDIS_URL")
            if not redis_url:
                raise ValueError(
                    "REDIS_URL is not set. "
                    "Set it (e.g. redis://localhost:6379/0) to enable view de-duplication."
                )

            kwargs = {
                "decode_responses": True,
                "socket_connect_timeout": 2,
                "socket_timeout": 2,
                "health_check_interval": 30,
            }
            redis_password = os.getenv("REDIS_PASSWORD")
            if not urlparse(redis_url).password and redis_password:
                kwargs["password"] = redis_password

            cls._instance = redis.from_url(redis_url, **kwargs)

        return cls._instance

    @classmethod
    def reset(cls) -> None:
        """Drop the cached client (tests, config reload)."""
        if cls._instance is not None:
            cls._instance.close()
            cls._instance = None


def get_optional_redis() -> Optional[redis.Redis]:
    """FastAPI dependency: the shared client, or None when Redis is not configured."""
    if not RedisClient.is_configured():
        return None
    return RedisClient.get_client()
