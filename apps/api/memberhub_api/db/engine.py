"""Database engine builder (single source of truth for API and reaper).

- Default pool: NullPool (client-side pooling disabled; pgbouncer friendly)
- ENV: DB_POOL=nullpool|queuepool (default: nullpool)
- ENV: DB_STATEMENT_TIMEOUT_MS applied to PostgreSQL connections so a stuck
  reconciliation surfaces as a retriable failure instead of hanging the
  provider's delivery.
"""

import logging
import os
import re
from typing import Any

from sqlalchemy import Engine, NullPool, create_engine
from sqlalchemy.orm import Session, sessionmaker

from memberhub_api.config.env import get_db_statement_timeout_ms

logger = logging.getLogger(__name__)


def _mask_password(url: str) -> str:
    """Mask password in database URL for safe logging."""
    return re.sub(r"://([^:]+):([^@]+)@", r"://\1:***@", url)


def _connect_args(url: str) -> dict[str, Any]:
    if not url.startswith("postgresql"):
        return {}

    connect_args: dict[str, Any] = {}
    app_name = os.getenv("DB_APPLICATION_NAME", "memberhub-api")
    if app_name:
        connect_args["application_name"] = app_name

    timeout_ms = get_db_statement_timeout_ms()
    if timeout_ms > 0:
        connect_args["options"] = f"-c statement_timeout={timeout_ms}"
    return connect_args


def build_engine(database_url: str | None = None) -> Engine:
    """
    Build SQLAlchemy engine.

    Args:
        database_url: Database URL. If None, reads from env DATABASE_URL.

    Returns:
        SQLAlchemy Engine instance.

    Raises:
        ValueError: If DATABASE_URL not provided or DB_POOL is invalid.

    Environment Variables:
        DB_POOL: "nullpool" (default) | "queuepool"
        DB_POOL_SIZE: QueuePool size (default: 5, only for queuepool)
        DB_MAX_OVERFLOW: QueuePool overflow (default: 10, only for queuepool)
    """
    url = database_url or os.getenv("DATABASE_URL")
    if not url:
        raise ValueError(
            "DATABASE_URL is required. "
            "Pass as argument or set DATABASE_URL environment variable."
        )

    connect_args = _connect_args(url)
    pool_mode = os.getenv("DB_POOL", "nullpool").lower()

    if pool_mode == "nullpool":
        engine = create_engine(
            url,
            poolclass=NullPool,
            pool_pre_ping=True,
            connect_args=connect_args,
        )
    elif pool_mode == "queuepool":
        pool_size = int(os.getenv("DB_POOL_SIZE", "5"))
        max_overflow = int(os.getenv("DB_MAX_OVERFLOW", "10"))
        engine = create_engine(
            url,
            pool_pre_ping=True,
            pool_size=pool_size,
            max_overflow=max_overflow,
            connect_args=connect_args,
        )
    else:
        raise ValueError(
            f"Invalid DB_POOL value: {pool_mode}. "
            "Must be 'nullpool' or 'queuepool'."
        )

    logger.debug(
        "Database engine created: pool=%s, url=%s",
        engine.pool.__class__.__name__,
        _mask_password(url),
    )
    return engine


def build_sessionmaker(engine: Engine) -> sessionmaker[Session]:
    """
    Build SQLAlchemy sessionmaker.

    Examples:
        >>> engine = build_engine()
        >>> SessionLocal = build_sessionmaker(engine)
        >>> with SessionLocal() as session:
        ...     # use session
    """
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)
