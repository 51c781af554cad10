"""Fulfillment Dispatch Retry Loop.

Scan: magazine_fulfillment_records.dispatch_status = 'retry_pending', or
      'pending' for longer than DISPATCH_STALE_PENDING_MIN (the API process
      died between commit and delivery)
Retry: re-send the record's current notice with the same Idempotency-Key;
       after FULFILLMENT_MAX_ATTEMPTS the record is marked failed and audited
Interval: DISPATCH_RETRY_INTERVAL_SEC (default 60)
"""

import asyncio
import logging
import os
import time
from datetime import datetime, timedelta
from typing import Optional

from memberhub_api.dispatch.dispatcher import retry_pending_dispatches
from memberhub_api.dispatch.fulfillment import FulfillmentClient

logger = logging.getLogger(__name__)


def get_dispatch_retry_interval_seconds() -> int:
    return int(os.getenv("DISPATCH_RETRY_INTERVAL_SEC", "60"))


def get_stale_pending_minutes() -> int:
    return int(os.getenv("DISPATCH_STALE_PENDING_MIN", "5"))


def run_dispatch_retry(
    session,
    client: Optional[FulfillmentClient] = None,
    *,
    stale_pending_minutes: Optional[int] = None,
    limit: int = 100,
    now: Optional[datetime] = None,
) -> dict[str, int]:
    """Run one iteration of the dispatch retry sweep.

    Returns:
        {"scanned": n, "sent": n, "failed": n}
    """
    if stale_pending_minutes is None:
        stale_pending_minutes = get_stale_pending_minutes()
    return asyncio.run(retry_pending_dispatches(
        session,
        client or FulfillmentClient(),
        stale_pending_after=timedelta(minutes=stale_pending_minutes),
        limit=limit,
        now=now,
    ))


def dispatch_retry_loop(
    session_factory,
    interval_seconds: Optional[int] = None,
    limit_per_scan: int = 100,
):
    """Dispatch retry loop (runs in background thread).

    Args:
        session_factory: SQLAlchemy sessionmaker
        interval_seconds: Loop interval (default: DISPATCH_RETRY_INTERVAL_SEC)
        limit_per_scan: Maximum records per iteration
    """
    if interval_seconds is None:
        interval_seconds = get_dispatch_retry_interval_seconds()

    logger.info(
        "DISPATCH_RETRY_LOOP_STARTED",
        extra={"interval_seconds": interval_seconds, "limit_per_scan": limit_per_scan},
    )

    while True:
        try:
            with session_factory() as session:
                counts = run_dispatch_retry(session, limit=limit_per_scan)
            if counts["scanned"]:
                logger.info("DISPATCH_RETRY_COMPLETED", extra=counts)
        except Exception as e:
            logger.error("DISPATCH_RETRY_LOOP_ERROR", extra={"error_type": type(e).__name__}, exc_info=True)

        time.sleep(interval_seconds)
