"""Processed-event ledger: at-most-once application of provider events.

Gate:
  INSERT INTO processed_events ... ON CONFLICT (event_id) DO NOTHING RETURNING event_id
    → row returned : first delivery → caller reconciles in the SAME transaction
    → no row       : duplicate (or concurrent duplicate) → acknowledge, no work

The insert is never committed on its own. It shares the transaction of the
reconciliation it guards, so:
  - a failed reconciliation rolls the ledger row back and the provider's
    next delivery is processed instead of being dropped as a duplicate
  - on PostgreSQL a concurrent second insert of the same event_id blocks on
    the primary key until the first transaction ends, then sees the conflict
    (commit) or wins the insert (rollback)

Both ingress routes share this ledger, so an event delivered to either path
is applied once.

Requires PostgreSQL 9.5+ or SQLite 3.35+ (RETURNING).
"""

import logging
from datetime import datetime, timedelta, timezone

from sqlalchemy import TIMESTAMP, bindparam, text
from sqlalchemy.orm import Session

logger = logging.getLogger(__name__)


def try_record_event(
    db: Session,
    event_id: str,
    event_type: str,
    *,
    payload_hash: str | None = None,
    outcome: str = "applied",
) -> bool:
    """Claim event_id in the ledger inside the caller's open transaction.

    Does NOT commit.

    Args:
        db: Session whose transaction will also carry the reconciliation
        event_id: Provider event id (e.g. evt_...)
        event_type: Provider event type, stored for diagnostics
        payload_hash: SHA-256 hex of the raw body
        outcome: Provisional outcome; see set_outcome()

    Returns:
        True  → first claim, caller must reconcile then commit
        False → already processed (or being processed and then committed)
    """
    result = db.execute(
        text("""
            INSERT INTO processed_events (event_id, event_type, outcome, payload_hash, processed_at)
            VALUES (:event_id, :event_type, :outcome, :payload_hash, :processed_at)
            ON CONFLICT (event_id) DO NOTHING
            RETURNING event_id
        """).bindparams(bindparam("processed_at", type_=TIMESTAMP(timezone=True))),
        {
            "event_id": event_id,
            "event_type": event_type,
            "outcome": outcome,
            "payload_hash": payload_hash,
            "processed_at": datetime.now(timezone.utc),
        },
    )
    claimed = result.fetchone() is not None

    if claimed:
        logger.info(
            "EVENT_LEDGER_CLAIMED",
            extra={"event_id": event_id, "event_type": event_type},
        )
    else:
        logger.info(
            "EVENT_LEDGER_DUPLICATE",
            extra={"event_id": event_id, "event_type": event_type},
        )
    return claimed


def set_outcome(db: Session, event_id: str, outcome: str) -> None:
    """Record the reconciliation outcome before the shared commit.

    The row is still uncommitted here; once committed it is never updated.
    """
    db.execute(
        text("UPDATE processed_events SET outcome = :outcome WHERE event_id = :event_id"),
        {"event_id": event_id, "outcome": outcome},
    )


def prune_processed_events(db: Session, retention_days: int, *, now: datetime | None = None) -> int:
    """Delete ledger rows older than the retention window and commit.

    Pruning only re-opens the (already applied) events to reprocessing if the
    provider re-sends them after the window, which it does not.

    Returns:
        Number of rows deleted
    """
    now = now or datetime.now(timezone.utc)
    cutoff = now - timedelta(days=retention_days)
    result = db.execute(
        text("DELETE FROM processed_events WHERE processed_at < :cutoff").bindparams(
            bindparam("cutoff", type_=TIMESTAMP(timezone=True))
        ),
        {"cutoff": cutoff},
    )
    db.commit()
    deleted = result.rowcount or 0
    if deleted:
        logger.info(
            "EVENT_LEDGER_PRUNED",
            extra={"deleted": deleted, "retention_days": retention_days},
        )
    return deleted
