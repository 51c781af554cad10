"""Subscription reconciler.

Applies one normalized billing event to the Subscription row it names and to
the owning Member, inside the transaction that also holds the event's ledger
claim. Nothing here commits: the caller commits ledger + subscription +
member + staged fulfillment together, or rolls all of it back.

Transitions (keyed by subscription_ref):

  CheckoutCompleted     resolve/create Member by customer_ref, upsert the
                        Subscription, clear the member's trial window
  SubscriptionUpserted  create the row if absent (first customer sighting
                        creates the Member), else overwrite status/period
  SubscriptionCanceled  row must exist → status canceled
  InvoicePaid           row should exist → touch updated_at; the grace marker
                        is cleared only once the row has left past_due
  InvoiceFailed         row should exist → status past_due, grace window opens

Unresolvable references are acknowledged as "skipped" without mutation.

Concurrency:
  - Subscription rows are locked (SELECT ... FOR UPDATE) before mutation,
    then the owning Member row, so two events for sibling subscriptions
    recompute the member one after the other.
  - Subscription.version is the ORM version counter; a concurrent commit
    between load and flush raises StaleDataError and aborts the attempt.
  - Members and Subscriptions are created with INSERT ... ON CONFLICT DO
    NOTHING on their natural keys, then re-selected, so two first sightings
    of one customer converge on one row.
"""

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

from sqlalchemy import TIMESTAMP, bindparam, select, text
from sqlalchemy.orm import Session

from memberhub_api.billing.events import (
    BillingEvent,
    CheckoutCompleted,
    CustomerSnapshot,
    InvoiceFailed,
    InvoicePaid,
    SubscriptionCanceled,
    SubscriptionSnapshot,
    SubscriptionUpserted,
)
from memberhub_api.config.env import get_payment_grace_period_days
from memberhub_api.context import event_id_var, member_id_var
from memberhub_api.db.models import (
    Account,
    MagazineFulfillmentRecord,
    Member,
    Subscription,
    as_utc,
)
from memberhub_api.dispatch.dispatcher import (
    StagedFulfillment,
    SubscriptionView,
    TierTransition,
    stage_transition,
)
from memberhub_api.membership.tiers import (
    GRACE_STATUSES,
    TERMINAL_STATUSES,
    Tier,
    is_entitled_status,
    membership_status_for,
    normalize_tier,
    resolve,
    select_authoritative,
)

logger = logging.getLogger(__name__)


class InvariantViolation(RuntimeError):
    """Reconciliation would leave Member state inconsistent; abort the attempt."""


class CheckoutNotHydrated(ValueError):
    """CheckoutCompleted reached the reconciler without its subscription."""


@dataclass
class ReconcileResult:
    outcome: str  # applied | skipped
    reason: Optional[str] = None
    transition: Optional[TierTransition] = None
    staged: Optional[StagedFulfillment] = None


def _skipped(event: BillingEvent, reason: str, **fields) -> ReconcileResult:
    logger.info(
        "RECONCILE_SKIPPED",
        extra={"event_type": event.event_type, "reason": reason, **fields},
    )
    return ReconcileResult(outcome="skipped", reason=reason)


# ── Row resolution ────────────────────────────────────────────────────────────

_TS = TIMESTAMP(timezone=True)


def _lock_member_by_customer(db: Session, customer_ref: str) -> Optional[Member]:
    return db.execute(
        select(Member).where(Member.customer_ref == customer_ref).with_for_update()
    ).scalar_one_or_none()


def _lock_member(db: Session, member_id: str) -> Member:
    return db.execute(
        select(Member).where(Member.member_id == member_id).with_for_update()
    ).scalar_one()


def _link_account(db: Session, account_ref: Optional[str], member: Member) -> None:
    if not account_ref:
        return
    account = db.get(Account, account_ref)
    if account is None:
        logger.warning("RECONCILE_ACCOUNT_NOT_FOUND", extra={"account_ref": account_ref})
        return
    if account.member_id != member.member_id:
        account.member_id = member.member_id
        logger.info("RECONCILE_ACCOUNT_LINKED", extra={"account_ref": account_ref})


def _adopt_unbilled_member(
    db: Session, customer: CustomerSnapshot, account_ref: Optional[str]
) -> Optional[Member]:
    """Member created before any checkout (no customer_ref yet)."""
    candidate = None
    if account_ref:
        account = db.get(Account, account_ref)
        if account is not None and account.member is not None and account.member.customer_ref is None:
            candidate = account.member
    if candidate is None and customer.email:
        candidate = db.execute(
            select(Member)
            .where(Member.email == customer.email, Member.customer_ref.is_(None))
            .order_by(Member.created_at)
            .limit(1)
            .with_for_update()
        ).scalar_one_or_none()
    if candidate is not None:
        candidate.customer_ref = customer.customer_ref
        db.flush()
    return candidate


def resolve_member(
    db: Session,
    customer: CustomerSnapshot,
    *,
    account_ref: Optional[str] = None,
    now: datetime,
) -> Member:
    """Find the Member for a provider customer, creating it on first sighting."""
    member = _lock_member_by_customer(db, customer.customer_ref)
    if member is None:
        member = _adopt_unbilled_member(db, customer, account_ref)
    if member is None:
        db.execute(
            text("""
                INSERT INTO members (
                    member_id, customer_ref, email, name,
                    membership_tier, membership_status, created_at, updated_at
                )
                VALUES (
                    :member_id, :customer_ref, :email, :name,
                    'FREE', 'INACTIVE', :now, :now
                )
                ON CONFLICT (customer_ref) DO NOTHING
            """).bindparams(bindparam("now", type_=_TS)),
            {
                "member_id": str(uuid.uuid4()),
                "customer_ref": customer.customer_ref,
                "email": customer.email,
                "name": customer.name,
                "now": now,
            },
        )
        member = _lock_member_by_customer(db, customer.customer_ref)
        logger.info("RECONCILE_MEMBER_CREATED", extra={"member_id": member.member_id})

    if customer.email and not member.email:
        member.email = customer.email
    if customer.name and not member.name:
        member.name = customer.name
    if customer.shipping_address:
        member.shipping_address = customer.shipping_address

    _link_account(db, account_ref, member)
    return member


def _lock_subscription(db: Session, subscription_ref: str) -> Optional[Subscription]:
    return db.execute(
        select(Subscription)
        .where(Subscription.subscription_ref == subscription_ref)
        .with_for_update()
    ).scalar_one_or_none()


def _ensure_subscription(db: Session, snapshot: SubscriptionSnapshot, member: Member, now: datetime) -> Subscription:
    db.execute(
        text("""
            INSERT INTO subscriptions (
                subscription_ref, member_id, price_ref, tier, billing_cycle,
                status, cancel_at_period_end, version, created_at, updated_at
            )
            VALUES (
                :subscription_ref, :member_id, :price_ref, :tier, :billing_cycle,
                :status, :cancel_at_period_end, 0, :now, :now
            )
            ON CONFLICT (subscription_ref) DO NOTHING
        """).bindparams(bindparam("now", type_=_TS)),
        {
            "subscription_ref": snapshot.subscription_ref,
            "member_id": member.member_id,
            "price_ref": snapshot.price_ref,
            "tier": snapshot.tier,
            "billing_cycle": snapshot.billing_cycle,
            "status": snapshot.status,
            "cancel_at_period_end": snapshot.cancel_at_period_end,
            "now": now,
        },
    )
    return _lock_subscription(db, snapshot.subscription_ref)


# ── Field application ─────────────────────────────────────────────────────────

def _apply_grace(sub: Subscription, now: datetime, grace_days: int) -> None:
    if sub.status in GRACE_STATUSES:
        if sub.grace_expires_at is None:
            sub.grace_expires_at = now + timedelta(days=grace_days)
    else:
        sub.grace_expires_at = None


def _apply_snapshot(sub: Subscription, snapshot: SubscriptionSnapshot, now: datetime, grace_days: int) -> None:
    sub.status = snapshot.status
    sub.price_ref = snapshot.price_ref or sub.price_ref
    sub.tier = snapshot.tier or sub.tier
    sub.billing_cycle = snapshot.billing_cycle
    sub.current_period_start = snapshot.current_period_start
    sub.current_period_end = snapshot.current_period_end
    sub.cancel_at_period_end = snapshot.cancel_at_period_end
    sub.trial_start = snapshot.trial_start
    sub.trial_end = snapshot.trial_end
    if sub.status == "canceled":
        sub.canceled_at = snapshot.canceled_at or sub.canceled_at or now
    _apply_grace(sub, now, grace_days)
    sub.updated_at = now


def _view(sub: Optional[Subscription]) -> Optional[SubscriptionView]:
    if sub is None:
        return None
    return SubscriptionView(
        subscription_ref=sub.subscription_ref,
        status=sub.status,
        tier=sub.tier,
        billing_cycle=sub.billing_cycle,
        current_period_end=as_utc(sub.current_period_end),
        cancel_at_period_end=sub.cancel_at_period_end,
    )


# ── Member recomputation ──────────────────────────────────────────────────────

def _check_invariants(db: Session, member: Member, now: datetime) -> None:
    authoritative = select_authoritative(member.subscriptions)
    expected_tier = resolve(None, member, as_of=now)
    if member.membership_tier != expected_tier.value:
        raise InvariantViolation(
            f"member tier {member.membership_tier} != resolved {expected_tier.value}"
        )

    entitled = authoritative is not None and is_entitled_status(authoritative, now)
    if (member.membership_status == "ACTIVE") != entitled:
        raise InvariantViolation(
            f"membership_status {member.membership_status} inconsistent with "
            f"authoritative status {authoritative.status if authoritative else None}"
        )

    active_records = db.execute(
        select(MagazineFulfillmentRecord.id).where(
            MagazineFulfillmentRecord.member_id == member.member_id,
            MagazineFulfillmentRecord.status == "active",
        )
    ).scalars().all()
    if len(active_records) > 1 or (active_records and expected_tier != Tier.INSIDER):
        raise InvariantViolation(
            f"{len(active_records)} active fulfillment record(s) for tier {expected_tier.value}"
        )
    if expected_tier == Tier.INSIDER and not active_records:
        raise InvariantViolation("INSIDER member without an active fulfillment record")


def recompute_member(
    db: Session,
    member: Member,
    *,
    now: datetime,
    event_id: str,
    event_type: str,
    actor: str = "WEBHOOK",
) -> tuple[TierTransition, Optional[StagedFulfillment]]:
    """Re-derive tier/status from the member's subscriptions and stage fulfillment.

    Also used by the grace-period sweep. Flushes, never commits.

    Raises:
        InvariantViolation: resulting state is inconsistent
    """
    db.flush()
    db.expire(member, ["subscriptions"])

    before_tier = normalize_tier(member.membership_tier) or Tier.FREE
    before_status = member.membership_status

    after_tier = resolve(None, member, as_of=now)
    after_status = membership_status_for(member, as_of=now)
    member.membership_tier = after_tier.value
    member.membership_status = after_status

    transition = TierTransition(
        member_id=member.member_id,
        event_id=event_id,
        event_type=event_type,
        before_tier=before_tier,
        after_tier=after_tier,
        before_status=before_status,
        after_status=after_status,
        subscription=_view(select_authoritative(member.subscriptions)),
        actor=actor,
        occurred_at=now,
    )
    staged = stage_transition(db, member, transition)
    db.flush()
    _check_invariants(db, member, now)
    return transition, staged


# ── Event handlers ────────────────────────────────────────────────────────────

def _applied(db: Session, event: BillingEvent, member: Member, sub: Subscription, now: datetime) -> ReconcileResult:
    transition, staged = recompute_member(
        db, member, now=now, event_id=event.event_id, event_type=event.event_type
    )
    logger.info(
        "RECONCILE_APPLIED",
        extra={
            "event_type": event.event_type,
            "subscription_status": sub.status,
            "from_tier": transition.before_tier.value,
            "to_tier": transition.after_tier.value,
            "membership_status": transition.after_status,
            "fulfillment_action": staged.action if staged else None,
        },
    )
    return ReconcileResult(outcome="applied", transition=transition, staged=staged)


def _on_checkout(db: Session, event: CheckoutCompleted, now: datetime, grace_days: int) -> ReconcileResult:
    if event.subscription is None:
        raise CheckoutNotHydrated(f"checkout {event.session_ref} has no subscription snapshot")

    snapshot = event.subscription
    existing = _lock_subscription(db, snapshot.subscription_ref)
    if existing is not None and existing.status == "canceled" and snapshot.status != "canceled":
        return _skipped(event, "subscription_terminal", subscription_status=snapshot.status)

    member = resolve_member(db, event.customer, account_ref=event.account_ref, now=now)
    member_id_var.set(member.member_id)

    sub = _ensure_subscription(db, snapshot, member, now)
    _apply_snapshot(sub, snapshot, now, grace_days)
    member.trial_start = None
    member.trial_end = None
    return _applied(db, event, member, sub, now)


def _on_upsert(db: Session, event: SubscriptionUpserted, now: datetime, grace_days: int) -> ReconcileResult:
    snapshot = event.subscription
    sub = _lock_subscription(db, snapshot.subscription_ref)
    if sub is None:
        if not snapshot.customer_ref:
            return _skipped(event, "member_unresolvable")
        member = resolve_member(
            db,
            CustomerSnapshot(customer_ref=snapshot.customer_ref),
            account_ref=snapshot.account_ref,
            now=now,
        )
        sub = _ensure_subscription(db, snapshot, member, now)
    else:
        member = _lock_member(db, sub.member_id)
        # Provider cancellation is terminal; a late update cannot revive the row
        if sub.status == "canceled" and snapshot.status != "canceled":
            return _skipped(event, "subscription_terminal", subscription_status=snapshot.status)

    member_id_var.set(member.member_id)
    _apply_snapshot(sub, snapshot, now, grace_days)
    return _applied(db, event, member, sub, now)


def _on_canceled(db: Session, event: SubscriptionCanceled, now: datetime, grace_days: int) -> ReconcileResult:
    sub = _lock_subscription(db, event.subscription.subscription_ref)
    if sub is None:
        return _skipped(event, "subscription_not_found")

    member = _lock_member(db, sub.member_id)
    member_id_var.set(member.member_id)
    _apply_snapshot(sub, event.subscription.model_copy(update={"status": "canceled"}), now, grace_days)
    return _applied(db, event, member, sub, now)


def _on_invoice(db: Session, event, now: datetime, grace_days: int) -> ReconcileResult:
    if not event.subscription_ref:
        return _skipped(event, "invoice_without_subscription")
    sub = _lock_subscription(db, event.subscription_ref)
    if sub is None:
        return _skipped(event, "subscription_not_found")

    member = _lock_member(db, sub.member_id)
    member_id_var.set(member.member_id)

    if isinstance(event, InvoiceFailed):
        if sub.status in TERMINAL_STATUSES:
            return _skipped(event, "subscription_terminal", subscription_status=sub.status)
        sub.status = "past_due"
        _apply_grace(sub, now, grace_days)
    else:
        # Status recovery arrives as customer.subscription.updated; until then
        # a past_due row keeps its deadline
        _apply_grace(sub, now, grace_days)
    sub.updated_at = now
    return _applied(db, event, member, sub, now)


def reconcile(
    db: Session,
    event: BillingEvent,
    *,
    now: Optional[datetime] = None,
    grace_days: Optional[int] = None,
) -> ReconcileResult:
    """Apply one normalized event. Does NOT commit.

    Raises:
        InvariantViolation: resulting member state inconsistent
        sqlalchemy.orm.exc.StaleDataError: concurrent write to the subscription
        CheckoutNotHydrated: checkout without subscription snapshot
    """
    now = now or datetime.now(timezone.utc)
    grace_days = get_payment_grace_period_days() if grace_days is None else grace_days
    event_id_var.set(event.event_id)

    if isinstance(event, CheckoutCompleted):
        return _on_checkout(db, event, now, grace_days)
    if isinstance(event, SubscriptionUpserted):
        return _on_upsert(db, event, now, grace_days)
    if isinstance(event, SubscriptionCanceled):
        return _on_canceled(db, event, now, grace_days)
    if isinstance(event, (InvoicePaid, InvoiceFailed)):
        return _on_invoice(db, event, now, grace_days)
    raise TypeError(f"unsupported event kind: {type(event).__name__}")
