"""Entitlement gate: read-path access decisions.

can_access() order:
  1. content not gated                         → allowed
  2. insider_only and tier != INSIDER          → tier_required (INSIDER)
  3. no identity at all                        → login_required (COLLECTIVE)
  4. FREE: distinct content viewed this month
     >= free_article_limit                     → article_limit_reached (COLLECTIVE)
  5. COLLECTIVE / INSIDER (or FREE under quota)→ allowed

Any error while evaluating → denied with reason evaluation_failed.

Calendar months come from the injected Clock (UTC).
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Optional

import redis
from sqlalchemy import distinct, func, or_, select
from sqlalchemy.orm import Session, selectinload

from memberhub_api.db.models import Account, ArticleView, Member, PaywallConfig, Subscription, as_utc
from memberhub_api.membership.clock import Clock, SystemClock, day_key, month_start
from memberhub_api.membership.tiers import (
    Tier,
    resolve,
    select_authoritative,
    tier_display_name,
    upgrade_url,
)

logger = logging.getLogger(__name__)

DEFAULT_FREE_ARTICLE_LIMIT = 3
VIEW_DEDUP_TTL_SECONDS = 86400

GATED_TAGS = frozenset({"success-plus", "premium", "exclusive", "insider"})
GATED_CATEGORIES = frozenset({"insider", "exclusive", "premium"})

# Articles, magazine and courses are the same for every paid tier; lives,
# events, community and print fulfillment are Insider only.
FEATURE_MATRIX: dict[Tier, frozenset[str]] = {
    Tier.FREE: frozenset({"articles"}),
    Tier.COLLECTIVE: frozenset({
        "articles",
        "premium_articles",
        "digital_magazine",
        "magazine_access",
        "courses_access",
        "newsletter",
    }),
    Tier.INSIDER: frozenset({
        "articles",
        "premium_articles",
        "digital_magazine",
        "magazine_access",
        "courses_access",
        "newsletter",
        "insider_articles",
        "lives_access",
        "events_access",
        "community",
        "print_magazine",
    }),
}


@dataclass(frozen=True)
class Identity:
    """Account id for signed-in readers, session id for anonymous ones."""

    account_id: Optional[str] = None
    session_id: Optional[str] = None

    @property
    def is_empty(self) -> bool:
        return not self.account_id and not self.session_id

    @property
    def key(self) -> str:
        if self.account_id:
            return f"account:{self.account_id}"
        return f"session:{self.session_id}"


@dataclass(frozen=True)
class ContentDescriptor:
    content_id: str
    tags: frozenset[str] = field(default_factory=frozenset)
    categories: frozenset[str] = field(default_factory=frozenset)
    insider_only: bool = False

    @property
    def is_gated(self) -> bool:
        tags = {t.lower() for t in self.tags}
        categories = {c.lower() for c in self.categories}
        return self.insider_only or bool(tags & GATED_TAGS) or bool(categories & GATED_CATEGORIES)


@dataclass(frozen=True)
class AccessDecision:
    allowed: bool
    reason: str
    required_tier: Optional[Tier] = None
    tier: Optional[Tier] = None
    remaining_free_articles: Optional[int] = None


# ── Loaders ───────────────────────────────────────────────────────────────────

def get_free_article_limit(db: Session) -> int:
    config = db.get(PaywallConfig, 1)
    if config is None:
        return DEFAULT_FREE_ARTICLE_LIMIT
    return config.free_article_limit


def _load_account(db: Session, account_id: str) -> Optional[Account]:
    return db.execute(
        select(Account)
        .where(Account.account_id == account_id, Account.is_active.is_(True))
        .options(selectinload(Account.member).selectinload(Member.subscriptions))
    ).scalar_one_or_none()


def tier_for_identity(db: Session, identity: Optional[Identity], clock: Clock) -> Tier:
    if identity is None or not identity.account_id:
        return Tier.FREE
    account = _load_account(db, identity.account_id)
    if account is None:
        return Tier.FREE
    return resolve(account, account.member, as_of=clock.now())


def _identity_filter(identity: Identity):
    if identity.account_id and identity.session_id:
        return or_(ArticleView.account_id == identity.account_id, ArticleView.session_id == identity.session_id)
    if identity.account_id:
        return ArticleView.account_id == identity.account_id
    return ArticleView.session_id == identity.session_id


def count_distinct_views(db: Session, identity: Identity, clock: Clock) -> int:
    """Distinct content ids viewed since the start of the current calendar month."""
    window_start = month_start(clock.now())
    return db.execute(
        select(func.count(distinct(ArticleView.content_id))).where(
            _identity_filter(identity),
            ArticleView.viewed_at >= window_start,
        )
    ).scalar_one()


def _has_viewed_this_month(db: Session, identity: Identity, content_id: str, clock: Clock) -> bool:
    window_start = month_start(clock.now())
    return db.execute(
        select(ArticleView.id)
        .where(
            _identity_filter(identity),
            ArticleView.content_id == content_id,
            ArticleView.viewed_at >= window_start,
        )
        .limit(1)
    ).first() is not None


# ── Decisions ─────────────────────────────────────────────────────────────────

def _evaluate(db: Session, identity: Optional[Identity], content: ContentDescriptor, clock: Clock) -> AccessDecision:
    if not content.is_gated:
        return AccessDecision(allowed=True, reason="not_gated")

    if identity is not None and identity.is_empty:
        identity = None
    tier = tier_for_identity(db, identity, clock)

    if content.insider_only and tier != Tier.INSIDER:
        return AccessDecision(allowed=False, reason="tier_required", required_tier=Tier.INSIDER, tier=tier)

    if identity is None:
        return AccessDecision(allowed=False, reason="login_required", required_tier=Tier.COLLECTIVE, tier=tier)

    if tier == Tier.FREE:
        limit = get_free_article_limit(db)
        # Re-reading an article already counted this month costs nothing
        if _has_viewed_this_month(db, identity, content.content_id, clock):
            remaining = max(limit - count_distinct_views(db, identity, clock), 0)
            return AccessDecision(
                allowed=True, reason="already_viewed", tier=tier, remaining_free_articles=remaining
            )
        used = count_distinct_views(db, identity, clock)
        if used >= limit:
            return AccessDecision(
                allowed=False,
                reason="article_limit_reached",
                required_tier=Tier.COLLECTIVE,
                tier=tier,
                remaining_free_articles=0,
            )
        return AccessDecision(
            allowed=True, reason="free_quota", tier=tier, remaining_free_articles=limit - used
        )

    return AccessDecision(allowed=True, reason="subscribed", tier=tier)


def can_access(
    db: Session,
    identity: Optional[Identity],
    content: ContentDescriptor,
    clock: Optional[Clock] = None,
) -> AccessDecision:
    """Decide whether identity may read content right now. Never raises."""
    clock = clock or SystemClock()
    try:
        decision = _evaluate(db, identity, content, clock)
    except Exception as exc:
        logger.error(
            "ENTITLEMENT_EVALUATION_FAILED",
            extra={"content_id": content.content_id, "error_type": type(exc).__name__},
            exc_info=True,
        )
        return AccessDecision(allowed=False, reason="evaluation_failed", required_tier=None)

    logger.debug(
        "ENTITLEMENT_DECISION",
        extra={
            "content_id": content.content_id,
            "allowed": decision.allowed,
            "reason": decision.reason,
        },
    )
    return decision


def record_view(
    db: Session,
    identity: Identity,
    content_id: str,
    clock: Optional[Clock] = None,
    redis_client: Optional[redis.Redis] = None,
) -> bool:
    """Append an ArticleView after an allowed read and commit.

    With Redis available, a second view of the same content on the same UTC
    day is not written (SET NX EX). Redis errors fall through to the insert:
    the distinct count keeps the quota correct either way.

    Returns:
        True if a row was written
    """
    if identity.is_empty:
        raise ValueError("record_view requires an account_id or session_id")
    clock = clock or SystemClock()
    now = clock.now()

    if redis_client is not None:
        key = f"view:{identity.key}:{content_id}:{day_key(now)}"
        try:
            first_today = redis_client.set(key, "1", nx=True, ex=VIEW_DEDUP_TTL_SECONDS)
        except redis.RedisError as exc:
            logger.warning("VIEW_DEDUP_UNAVAILABLE", extra={"error_type": type(exc).__name__})
            first_today = True
        if not first_today:
            return False

    db.add(ArticleView(
        account_id=identity.account_id,
        session_id=identity.session_id,
        content_id=content_id,
        viewed_at=now,
    ))
    db.commit()
    return True


def remaining_free_articles(db: Session, identity: Identity, clock: Optional[Clock] = None) -> Optional[int]:
    """Free articles left this month; None for paid tiers (unmetered)."""
    if identity.is_empty:
        raise ValueError("remaining_free_articles requires an account_id or session_id")
    clock = clock or SystemClock()
    if tier_for_identity(db, identity, clock) != Tier.FREE:
        return None
    return max(get_free_article_limit(db) - count_distinct_views(db, identity, clock), 0)


def has_feature_access(tier: Tier, feature: str) -> bool:
    return feature in FEATURE_MATRIX[Tier(tier)]


def subscription_summary(db: Session, account_id: str, clock: Optional[Clock] = None) -> Optional[dict]:
    """Tier and human-readable subscription state for an account; None if unknown."""
    clock = clock or SystemClock()
    account = _load_account(db, account_id)
    if account is None:
        return None

    tier = resolve(account, account.member, as_of=clock.now())
    member = account.member
    authoritative: Optional[Subscription] = (
        select_authoritative(member.subscriptions) if member is not None else None
    )

    summary = {
        "account_id": account.account_id,
        "tier": tier,
        "tier_name": tier_display_name(tier),
        "membership_status": member.membership_status if member else "INACTIVE",
        "subscription_status": authoritative.status if authoritative else None,
        "billing_cycle": authoritative.billing_cycle if authoritative else None,
        "renewal_date": as_utc(authoritative.current_period_end) if authoritative else None,
        "cancel_at_period_end": bool(authoritative.cancel_at_period_end) if authoritative else False,
        "grace_expires_at": as_utc(authoritative.grace_expires_at) if authoritative else None,
        "trial_end": as_utc(authoritative.trial_end) if authoritative else None,
        "upgrade_url": upgrade_url(Tier.INSIDER) if tier != Tier.INSIDER else None,
        "features": sorted(FEATURE_MATRIX[tier]),
    }
    return summary


def window_end(clock: Clock) -> datetime:
    """First instant of next month (quota reset)."""
    start = month_start(clock.now())
    return (start + timedelta(days=32)).replace(day=1)
