"""Tier resolution.

resolve() derives a single membership tier from already-loaded data. It does
no I/O, so the webhook reconciler, the entitlement gate and the reaper's grace
sweep all share one definition of "what tier is this person on".

Precedence, highest first:
  1. Account role admin / super_admin          → INSIDER (billing ignored)
  2. No member, no authoritative subscription,
     or authoritative status not entitled       → FREE
  3. Authoritative subscription entitled        → alias(subscription.tier)

Entitled statuses: active, trialing, and past_due while inside its grace
window (grace_expires_at in the future, or no as_of given).
"""

import re
from datetime import datetime
from enum import Enum
from typing import Iterable, Optional

from memberhub_api.db.models import as_utc


class Tier(str, Enum):
    FREE = "FREE"
    COLLECTIVE = "COLLECTIVE"
    INSIDER = "INSIDER"


ADMIN_ROLES = frozenset({"admin", "super_admin"})

ENTITLED_STATUSES = frozenset({"active", "trialing"})
GRACE_STATUSES = frozenset({"past_due"})
TERMINAL_STATUSES = frozenset({"canceled", "incomplete", "incomplete_expired"})

_TIER_RANK = {Tier.FREE: 0, Tier.COLLECTIVE: 1, Tier.INSIDER: 2}

# Keys are compared after lower-casing and stripping "-", "_" and spaces, so
# "SUCCESS_PLUS", "success-plus" and "SUCCESSPlus" share one entry.
_TIER_ALIASES: dict[str, Tier] = {
    "free": Tier.FREE,
    "collective": Tier.COLLECTIVE,
    "legacyplus": Tier.COLLECTIVE,
    "successplus": Tier.COLLECTIVE,
    "insider": Tier.INSIDER,
}

_TIER_NAMES = {
    Tier.FREE: "Free",
    Tier.COLLECTIVE: "SUCCESS+ Collective",
    Tier.INSIDER: "SUCCESS+ Insider",
}

_ALIAS_STRIP = re.compile(r"[\s_\-]+")


def normalize_tier(value: Optional[str]) -> Optional[Tier]:
    """Map a stored or provider tier string to a Tier; None if unrecognized."""
    if not value:
        return None
    return _TIER_ALIASES.get(_ALIAS_STRIP.sub("", value).lower())


def is_admin_role(role: Optional[str]) -> bool:
    return (role or "").lower() in ADMIN_ROLES


def is_entitled_status(subscription, as_of: Optional[datetime] = None) -> bool:
    """True when the subscription's status grants its tier at as_of."""
    if subscription.status in ENTITLED_STATUSES:
        return True
    if subscription.status in GRACE_STATUSES:
        if as_of is None:
            return True
        expires = as_utc(subscription.grace_expires_at)
        # No deadline means no open window
        if expires is None:
            return False
        return as_utc(as_of) < expires
    return False


def select_authoritative(subscriptions: Iterable) -> Optional[object]:
    """Pick the single subscription row that drives a member's tier.

    active beats trialing, both beat any other non-terminal status, ties go to
    the most recently updated row. Terminal rows (canceled / incomplete) are
    kept for history and never chosen.
    """
    candidates = [s for s in subscriptions if s.status not in TERMINAL_STATUSES]
    if not candidates:
        return None

    def rank(sub) -> tuple:
        if sub.status == "active":
            status_rank = 2
        elif sub.status == "trialing":
            status_rank = 1
        else:
            status_rank = 0
        updated = as_utc(sub.updated_at)
        return (status_rank, updated.timestamp() if updated else 0.0, sub.id or 0)

    return max(candidates, key=rank)


def resolve(account, member, as_of: Optional[datetime] = None) -> Tier:
    """Resolve the effective tier for an account / member pair.

    Args:
        account: Account-like object with `role`, or None
        member: Member-like object with `subscriptions`, or None
        as_of: Instant used to evaluate the past_due grace window

    Returns:
        Tier
    """
    if account is not None and is_admin_role(account.role):
        return Tier.INSIDER

    if member is None:
        return Tier.FREE

    authoritative = select_authoritative(member.subscriptions)
    if authoritative is None or not is_entitled_status(authoritative, as_of):
        return Tier.FREE

    return normalize_tier(authoritative.tier) or Tier.FREE


def membership_status_for(member, as_of: Optional[datetime] = None) -> str:
    """Billing-side membership status consistent with the authoritative row."""
    authoritative = select_authoritative(member.subscriptions)
    if authoritative is None:
        return "INACTIVE"
    if is_entitled_status(authoritative, as_of):
        return "ACTIVE"
    if authoritative.status in GRACE_STATUSES or authoritative.status == "unpaid":
        return "PAST_DUE"
    return "INACTIVE"


def is_higher_tier(tier: Tier, than: Tier) -> bool:
    return _TIER_RANK[Tier(tier)] > _TIER_RANK[Tier(than)]


def tier_display_name(tier: Tier) -> str:
    return _TIER_NAMES[Tier(tier)]


def upgrade_url(target: Tier) -> str:
    return f"/subscribe?tier={Tier(target).value.lower()}"
