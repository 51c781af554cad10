"""Processed-Event Ledger Retention Loop.

Deletes processed_events rows older than PROCESSED_EVENT_RETENTION_DAYS
(default 90). The ledger is a duplicate filter, not subscription state, and
the provider stops re-delivering an event long before the window closes.

Interval: LEDGER_RETENTION_INTERVAL_SEC (default 86400 = 24 hours)
"""

import logging
import os
import time
from typing import Optional

from memberhub_api.billing.event_ledger import prune_processed_events
from memberhub_api.config.env import get_processed_event_retention_days

logger = logging.getLogger(__name__)


def get_ledger_retention_interval_seconds() -> int:
    return int(os.getenv("LEDGER_RETENTION_INTERVAL_SEC", "86400"))


def ledger_retention_loop(
    session_factory,
    interval_seconds: Optional[int] = None,
    retention_days: Optional[int] = None,
):
    """Ledger retention loop (runs in background thread).

    Args:
        session_factory: SQLAlchemy sessionmaker
        interval_seconds: Loop interval (default: LEDGER_RETENTION_INTERVAL_SEC)
        retention_days: Retention window (default: PROCESSED_EVENT_RETENTION_DAYS)
    """
    if interval_seconds is None:
        interval_seconds = get_ledger_retention_interval_seconds()

    if retention_days is None:
        retention_days = get_processed_event_retention_days()

    logger.info(
        "LEDGER_RETENTION_LOOP_STARTED",
        extra={"interval_seconds": interval_seconds, "retention_days": retention_days},
    )

    while True:
        try:
            with session_factory() as session:
                prune_processed_events(session, retention_days)
        except Exception as e:
            logger.error("LEDGER_RETENTION_LOOP_ERROR", extra={"error_type": type(e).__name__}, exc_info=True)

        time.sleep(interval_seconds)
