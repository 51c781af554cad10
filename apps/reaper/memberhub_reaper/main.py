"""Memberhub Reaper main entry point.

Background service: three independent loops for the billing state that no
provider event will ever repair on its own.

1. Dispatch Retry Loop:
   - Scan: fulfillment records in retry_pending, or pending past the stale cutoff
   - Retry: re-send with the record's Idempotency-Key, fail after max attempts
   - Interval: 60 seconds

2. Grace Period Loop:
   - Scan: past_due subscriptions whose grace_expires_at has passed
   - Apply: recompute the member (downgrade), cancel fulfillment, audit
   - Interval: 15 minutes

3. Ledger Retention Loop:
   - Scan: processed_events older than PROCESSED_EVENT_RETENTION_DAYS
   - Cleanup: delete in one statement
   - Interval: 24 hours (86400 seconds)
"""

import logging
import os
import threading
from pathlib import Path

from memberhub_api.config.env import get_database_url, get_processed_event_retention_days
from memberhub_api.db.engine import build_engine, build_sessionmaker
from memberhub_api.utils import configure_json_logging
from memberhub_reaper.loops.dispatch_retry_loop import (
    dispatch_retry_loop,
    get_dispatch_retry_interval_seconds,
)
from memberhub_reaper.loops.grace_period_loop import (
    get_grace_sweep_interval_seconds,
    grace_period_loop,
)
from memberhub_reaper.loops.ledger_retention_loop import (
    get_ledger_retention_interval_seconds,
    ledger_retention_loop,
)

configure_json_logging(log_level=os.getenv("LOG_LEVEL", "INFO"))
logger = logging.getLogger(__name__)

READY_FILE_PATH = Path("/tmp/reaper-ready")


def main() -> None:
    """Start the three loops in separate threads and block until shutdown."""
    READY_FILE_PATH.unlink(missing_ok=True)

    # Fail-fast in production when DATABASE_URL is missing
    database_url = get_database_url()

    scan_limit = int(os.getenv("REAPER_SCAN_LIMIT", "100"))
    dispatch_interval_sec = get_dispatch_retry_interval_seconds()
    grace_interval_sec = get_grace_sweep_interval_seconds()
    retention_enabled = os.getenv("LEDGER_RETENTION_ENABLED", "true").lower() in {"true", "1", "yes"}
    retention_interval_sec = get_ledger_retention_interval_seconds()
    retention_days = get_processed_event_retention_days()

    engine = build_engine(database_url)
    SessionLocal = build_sessionmaker(engine)

    logger.info(
        "REAPER_STARTING",
        extra={
            "dispatch_interval_seconds": dispatch_interval_sec,
            "grace_interval_seconds": grace_interval_sec,
            "retention_enabled": retention_enabled,
            "retention_interval_seconds": retention_interval_sec,
            "retention_days": retention_days,
            "scan_limit": scan_limit,
        },
    )

    # Each loop opens its own sessions: SQLAlchemy sessions are not thread-safe
    threads = [
        threading.Thread(
            target=dispatch_retry_loop,
            kwargs={
                "session_factory": SessionLocal,
                "interval_seconds": dispatch_interval_sec,
                "limit_per_scan": scan_limit,
            },
            name="DispatchRetryLoop",
            daemon=False,
        ),
        threading.Thread(
            target=grace_period_loop,
            kwargs={
                "session_factory": SessionLocal,
                "interval_seconds": grace_interval_sec,
                "limit_per_scan": scan_limit,
            },
            name="GracePeriodLoop",
            daemon=False,
        ),
    ]
    if retention_enabled:
        threads.append(threading.Thread(
            target=ledger_retention_loop,
            kwargs={
                "session_factory": SessionLocal,
                "interval_seconds": retention_interval_sec,
                "retention_days": retention_days,
            },
            name="LedgerRetentionLoop",
            daemon=False,
        ))

    try:
        for thread in threads:
            logger.info("REAPER_THREAD_STARTING", extra={"thread_name": thread.name})
            thread.start()

        # Readiness probe file, created only after every loop is running
        READY_FILE_PATH.write_text("ready\n")
        logger.info("REAPER_READY", extra={"ready_file": str(READY_FILE_PATH)})

        for thread in threads:
            thread.join()

    except KeyboardInterrupt:
        logger.info("REAPER_STOPPED_BY_USER")

    finally:
        READY_FILE_PATH.unlink(missing_ok=True)
        engine.dispose()
        logger.info("REAPER_SHUTDOWN_COMPLETE")


if __name__ == "__main__":
    main()
