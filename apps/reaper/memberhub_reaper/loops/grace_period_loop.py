"""Grace Period Expiry Loop.

A subscription entering past_due keeps its tier for PAYMENT_GRACE_PERIOD_DAYS
(grace_expires_at). Nothing arrives from the provider when that window
closes, so this sweep re-resolves the affected members:

  Scan: subscriptions.status = 'past_due' AND (grace_expires_at < NOW() or unset)
        AND the owning member is still ACTIVE
  Apply: recompute_member() → tier FREE, status PAST_DUE (unless another
         entitled subscription keeps the member active), fulfillment
         canceled through the dispatcher, GRACE_PERIOD_EXPIRED audit
  Interval: GRACE_SWEEP_INTERVAL_SEC (default 900)
"""

import asyncio
import logging
import os
import time
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import or_, select

from memberhub_api.billing.reconciler import InvariantViolation, recompute_member
from memberhub_api.db.models import AuditLogEntry, Member, Subscription
from memberhub_api.dispatch.dispatcher import deliver
from memberhub_api.dispatch.fulfillment import FulfillmentClient
from memberhub_api.dispatch.sinks import NotificationSink
from memberhub_api.membership.tiers import GRACE_STATUSES

logger = logging.getLogger(__name__)


def get_grace_sweep_interval_seconds() -> int:
    return int(os.getenv("GRACE_SWEEP_INTERVAL_SEC", "900"))


def find_expired_grace_members(session, now: datetime, limit: int = 100) -> list[tuple[str, str]]:
    """(member_id, subscription_ref) pairs whose grace window has closed."""
    rows = session.execute(
        select(Subscription.member_id, Subscription.subscription_ref)
        .join(Member, Member.member_id == Subscription.member_id)
        .where(
            Subscription.status.in_(GRACE_STATUSES),
            or_(Subscription.grace_expires_at.is_(None), Subscription.grace_expires_at < now),
            Member.membership_status == "ACTIVE",
        )
        .order_by(Subscription.grace_expires_at)
        .limit(limit)
    ).all()
    return [(row.member_id, row.subscription_ref) for row in rows]


def run_grace_period_sweep(
    session_factory,
    *,
    now: Optional[datetime] = None,
    limit: int = 100,
    fulfillment_client: Optional[FulfillmentClient] = None,
    notification_sink: Optional[NotificationSink] = None,
) -> dict[str, int]:
    """Run one iteration of the grace-period sweep.

    Returns:
        {"scanned": n, "downgraded": n, "errors": n}
    """
    now = now or datetime.now(timezone.utc)

    with session_factory() as session:
        candidates = find_expired_grace_members(session, now, limit)

    downgraded = 0
    errors = 0
    for member_id, subscription_ref in candidates:
        with session_factory() as session:
            try:
                member = session.execute(
                    select(Member).where(Member.member_id == member_id).with_for_update()
                ).scalar_one()
                transition, staged = recompute_member(
                    session,
                    member,
                    now=now,
                    event_id=f"grace:{subscription_ref}",
                    event_type="grace_period.expired",
                    actor="REAPER",
                )
                session.add(AuditLogEntry(
                    event_type="GRACE_PERIOD_EXPIRED",
                    member_id=member_id,
                    related_entity_type="SUBSCRIPTION",
                    related_entity_id=subscription_ref,
                    actor="REAPER",
                    details={
                        "from_tier": transition.before_tier.value,
                        "to_tier": transition.after_tier.value,
                        "membership_status": transition.after_status,
                    },
                ))
                session.commit()
            except InvariantViolation as e:
                session.rollback()
                errors += 1
                logger.error(
                    "GRACE_SWEEP_INVARIANT_VIOLATION",
                    extra={"member_id": member_id, "error_msg": str(e)},
                )
                continue

        downgraded += 1
        logger.info(
            "GRACE_PERIOD_EXPIRED",
            extra={
                "member_id": member_id,
                "subscription_ref": subscription_ref,
                "to_tier": transition.after_tier.value,
            },
        )
        asyncio.run(deliver(
            session_factory,
            transition,
            staged,
            fulfillment_client=fulfillment_client,
            notification_sink=notification_sink,
        ))

    return {"scanned": len(candidates), "downgraded": downgraded, "errors": errors}


def grace_period_loop(
    session_factory,
    interval_seconds: Optional[int] = None,
    limit_per_scan: int = 100,
):
    """Grace-period expiry loop (runs in background thread).

    Args:
        session_factory: SQLAlchemy sessionmaker
        interval_seconds: Loop interval (default: GRACE_SWEEP_INTERVAL_SEC)
        limit_per_scan: Maximum members per iteration
    """
    if interval_seconds is None:
        interval_seconds = get_grace_sweep_interval_seconds()

    logger.info(
        "GRACE_SWEEP_LOOP_STARTED",
        extra={"interval_seconds": interval_seconds, "limit_per_scan": limit_per_scan},
    )

    while True:
        try:
            counts = run_grace_period_sweep(session_factory, limit=limit_per_scan)
            if counts["scanned"]:
                logger.info("GRACE_SWEEP_COMPLETED", extra=counts)
        except Exception as e:
            logger.error("GRACE_SWEEP_LOOP_ERROR", extra={"error_type": type(e).__name__}, exc_info=True)

        time.sleep(interval_seconds)
