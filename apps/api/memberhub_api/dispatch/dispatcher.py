"""Side-effect dispatcher for reconciled membership transitions.

Two phases:

  stage_transition()   inside the reconciliation transaction
      Keeps MagazineFulfillmentRecord consistent with the new tier:
        tier INSIDER, no active record   → create record (dispatch pending)
        tier not INSIDER, active record  → cancel record (dispatch pending)
      Because this commits together with the Subscription/Member write, an
      active record exists iff the member was left at INSIDER.

  deliver()            after commit, best-effort
      Sends the staged fulfillment notice, writes one audit entry per tier
      change and one notification per user-facing change. Nothing here
      raises: failures become retry markers or log lines, never a rollback
      of committed billing state.

Records whose notice could not be delivered stay `retry_pending` and are
picked up by the reaper's dispatch retry sweep (retry_pending_dispatches).
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

import httpx
from sqlalchemy import or_, select
from sqlalchemy.orm import Session

from memberhub_api.config.env import get_fulfillment_max_attempts
from memberhub_api.db.models import AuditLogEntry, MagazineFulfillmentRecord, Member
from memberhub_api.dispatch.fulfillment import (
    FulfillmentClient,
    FulfillmentNotConfigured,
    build_fulfillment_payload,
    idempotency_key_for,
)
from memberhub_api.dispatch.sinks import NotificationSink, get_default_notification_sink
from memberhub_api.membership.tiers import Tier, is_higher_tier
from memberhub_api.utils.sanitize import sanitize_str

logger = logging.getLogger(__name__)

SessionFactory = Callable[[], Session]


@dataclass(frozen=True)
class SubscriptionView:
    subscription_ref: str
    status: str
    tier: Optional[str]
    billing_cycle: str
    current_period_end: Optional[datetime] = None
    cancel_at_period_end: bool = False


@dataclass(frozen=True)
class TierTransition:
    """Before/after view of one committed reconciliation."""

    member_id: str
    event_id: str
    event_type: str
    before_tier: Tier
    after_tier: Tier
    before_status: str
    after_status: str
    subscription: Optional[SubscriptionView] = None
    actor: str = "WEBHOOK"
    occurred_at: Optional[datetime] = None

    @property
    def tier_changed(self) -> bool:
        return self.before_tier != self.after_tier

    @property
    def is_upgrade(self) -> bool:
        return is_higher_tier(self.after_tier, self.before_tier)


@dataclass
class StagedFulfillment:
    record_id: int
    action: str  # fulfill | cancel


@dataclass
class DispatchReport:
    fulfillment_sent: Optional[bool] = None
    audit_written: bool = False
    notification_sent: Optional[bool] = None
    errors: list[str] = field(default_factory=list)


# ── Phase 1: staging (same transaction as the reconciliation) ─────────────────

def _active_record(db: Session, member_id: str) -> Optional[MagazineFulfillmentRecord]:
    return db.execute(
        select(MagazineFulfillmentRecord)
        .where(
            MagazineFulfillmentRecord.member_id == member_id,
            MagazineFulfillmentRecord.status == "active",
        )
        .with_for_update()
    ).scalar_one_or_none()


def stage_transition(db: Session, member: Member, transition: TierTransition) -> Optional[StagedFulfillment]:
    """Create or cancel the member's fulfillment record to match after_tier.

    Flushes but does NOT commit.
    """
    active = _active_record(db, member.member_id)
    now = transition.occurred_at or datetime.now(timezone.utc)

    if transition.after_tier == Tier.INSIDER and active is None:
        sub = transition.subscription
        record = MagazineFulfillmentRecord(
            member_id=member.member_id,
            subscription_ref=sub.subscription_ref if sub else None,
            tier=Tier.INSIDER.value,
            billing_cycle=sub.billing_cycle if sub else None,
            shipping_address=member.shipping_address,
            status="active",
            started_at=now,
            dispatch_status="pending",
            dispatch_attempts=0,
        )
        db.add(record)
        db.flush()
        logger.info(
            "FULFILLMENT_STAGED",
            extra={"fulfillment_id": record.id, "action": "fulfill"},
        )
        return StagedFulfillment(record_id=record.id, action="fulfill")

    if transition.after_tier != Tier.INSIDER and active is not None:
        active.status = "canceled"
        active.canceled_at = now
        active.dispatch_status = "pending"
        active.dispatch_attempts = 0
        active.last_dispatch_error = None
        db.flush()
        logger.info(
            "FULFILLMENT_STAGED",
            extra={"fulfillment_id": active.id, "action": "cancel"},
        )
        return StagedFulfillment(record_id=active.id, action="cancel")

    return None


# ── Phase 2: delivery (after commit, best-effort) ─────────────────────────────

async def deliver_record(
    db: Session,
    record_id: int,
    client: FulfillmentClient,
    *,
    max_attempts: Optional[int] = None,
) -> bool:
    """Send the current notice for one fulfillment record and commit the result.

    Returns:
        True if the collaborator acknowledged the notice
    """
    max_attempts = max_attempts or get_fulfillment_max_attempts()
    record = db.get(MagazineFulfillmentRecord, record_id)
    if record is None or record.dispatch_status in ("sent", "failed"):
        return record is not None and record.dispatch_status == "sent"

    member = db.get(Member, record.member_id)
    payload = build_fulfillment_payload(record, member)
    now = datetime.now(timezone.utc)

    try:
        await client.send(payload, idempotency_key=idempotency_key_for(record))
    except (httpx.HTTPError, FulfillmentNotConfigured) as exc:
        record.dispatch_attempts += 1
        record.last_dispatch_error = sanitize_str(f"{type(exc).__name__}: {exc}")[:500]
        record.last_dispatch_at = now
        exhausted = record.dispatch_attempts >= max_attempts
        record.dispatch_status = "failed" if exhausted else "retry_pending"
        if exhausted:
            db.add(AuditLogEntry(
                event_type="FULFILLMENT_DISPATCH_FAILED",
                member_id=record.member_id,
                related_entity_type="FULFILLMENT",
                related_entity_id=str(record.id),
                actor="DISPATCHER",
                details={
                    "attempts": record.dispatch_attempts,
                    "record_status": record.status,
                    "error": record.last_dispatch_error,
                },
            ))
        db.commit()
        logger.warning(
            "FULFILLMENT_DISPATCH_FAILED",
            extra={
                "fulfillment_id": record.id,
                "attempts": record.dispatch_attempts,
                "dispatch_status": record.dispatch_status,
                "error_type": type(exc).__name__,
            },
        )
        return False

    record.dispatch_attempts += 1
    record.dispatch_status = "sent"
    record.last_dispatch_error = None
    record.last_dispatch_at = now
    db.commit()
    return True


def _write_audit(db: Session, transition: TierTransition) -> None:
    sub = transition.subscription
    db.add(AuditLogEntry(
        event_type="TIER_CHANGED",
        member_id=transition.member_id,
        related_entity_type="SUBSCRIPTION" if sub else "EVENT",
        related_entity_id=sub.subscription_ref if sub else transition.event_id,
        actor=transition.actor,
        details={
            "event_id": transition.event_id,
            "event_type": transition.event_type,
            "from_tier": transition.before_tier.value,
            "to_tier": transition.after_tier.value,
            "from_status": transition.before_status,
            "to_status": transition.after_status,
            "subscription_status": sub.status if sub else None,
        },
    ))
    db.commit()


def _notification_for(transition: TierTransition, member: Optional[Member]) -> Optional[dict]:
    if member is None or not member.email:
        return None
    sub = transition.subscription
    return {
        "type": "membership.upgraded" if transition.is_upgrade else "membership.downgraded",
        "member_id": transition.member_id,
        "email": member.email,
        "name": member.name,
        "from_tier": transition.before_tier.value,
        "to_tier": transition.after_tier.value,
        "billing_cycle": sub.billing_cycle if sub else None,
        "renews_at": sub.current_period_end.isoformat() if sub and sub.current_period_end else None,
        "occurred_at": (transition.occurred_at or datetime.now(timezone.utc)).isoformat(),
    }


async def deliver(
    session_factory: SessionFactory,
    transition: Optional[TierTransition],
    staged: Optional[StagedFulfillment],
    *,
    fulfillment_client: Optional[FulfillmentClient] = None,
    notification_sink: Optional[NotificationSink] = None,
) -> DispatchReport:
    """Run post-commit side effects for one reconciliation. Never raises."""
    report = DispatchReport()
    if transition is None:
        return report

    if staged is not None:
        db = session_factory()
        try:
            report.fulfillment_sent = await deliver_record(
                db, staged.record_id, fulfillment_client or FulfillmentClient()
            )
        except Exception as exc:
            db.rollback()
            report.fulfillment_sent = False
            report.errors.append(f"fulfillment:{type(exc).__name__}")
            logger.error(
                "FULFILLMENT_DISPATCH_ERROR",
                extra={"fulfillment_id": staged.record_id, "error_type": type(exc).__name__},
                exc_info=True,
            )
        finally:
            db.close()

    if not transition.tier_changed:
        return report

    db = session_factory()
    try:
        _write_audit(db, transition)
        report.audit_written = True
        member = db.get(Member, transition.member_id)
        notification = _notification_for(transition, member)
    except Exception as exc:
        db.rollback()
        notification = None
        report.errors.append(f"audit:{type(exc).__name__}")
        logger.error(
            "AUDIT_WRITE_FAILED",
            extra={"event_id": transition.event_id, "error_type": type(exc).__name__},
            exc_info=True,
        )
    finally:
        db.close()

    if notification is not None:
        sink = notification_sink or get_default_notification_sink()
        try:
            await sink.send(notification)
            report.notification_sent = True
        except Exception as exc:
            report.notification_sent = False
            report.errors.append(f"notification:{type(exc).__name__}")
            logger.warning(
                "NOTIFICATION_SEND_FAILED",
                extra={"notification_type": notification["type"], "error_type": type(exc).__name__},
            )

    return report


# ── Retry sweep ───────────────────────────────────────────────────────────────

async def retry_pending_dispatches(
    db: Session,
    client: FulfillmentClient,
    *,
    stale_pending_after: timedelta = timedelta(minutes=5),
    limit: int = 100,
    now: Optional[datetime] = None,
) -> dict[str, int]:
    """Re-send notices that are retry_pending, or pending for too long
    (process died between commit and delivery).

    Returns:
        {"scanned": n, "sent": n, "failed": n}
    """
    now = now or datetime.now(timezone.utc)
    stale_cutoff = now - stale_pending_after

    record_ids = db.execute(
        select(MagazineFulfillmentRecord.id)
        .where(
            or_(
                MagazineFulfillmentRecord.dispatch_status == "retry_pending",
                (MagazineFulfillmentRecord.dispatch_status == "pending")
                & (MagazineFulfillmentRecord.updated_at < stale_cutoff),
            )
        )
        .order_by(MagazineFulfillmentRecord.updated_at)
        .limit(limit)
    ).scalars().all()
    db.rollback()

    sent = 0
    for record_id in record_ids:
        if await deliver_record(db, record_id, client):
            sent += 1

    return {"scanned": len(record_ids), "sent": sent, "failed": len(record_ids) - sent}
