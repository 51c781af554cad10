"""Entitlement query API consumed by the presentation layer.

Protected by X-Internal-Key (ENTITLEMENTS_API_KEY). Outside production an
unset key disables the check for local development.

  POST /v1/entitlements/check                   can_access (+ optional record_view)
  POST /v1/entitlements/views                   record_view
  GET  /v1/entitlements/remaining               remaining free articles this month
  GET  /v1/entitlements/features                has_feature_access
  GET  /v1/accounts/{account_id}/subscription   subscription_summary
"""

import logging
import secrets
from typing import Optional

import redis
from fastapi import APIRouter, Depends, Header, HTTPException, Query, status
from sqlalchemy.orm import Session

from memberhub_api.config.env import get_entitlements_api_key
from memberhub_api.db.redis_client import get_optional_redis
from memberhub_api.db.session import get_db
from memberhub_api.membership.clock import Clock, SystemClock
from memberhub_api.membership.gate import (
    ContentDescriptor,
    Identity,
    can_access,
    get_free_article_limit,
    has_feature_access,
    record_view,
    remaining_free_articles,
    subscription_summary,
    tier_for_identity,
    window_end,
)
from memberhub_api.membership.tiers import upgrade_url
from memberhub_api.schemas import (
    AccessCheckRequest,
    AccessCheckResponse,
    FeatureAccessResponse,
    IdentityIn,
    RemainingResponse,
    SubscriptionSummaryResponse,
    ViewRecordRequest,
    ViewRecordResponse,
)

logger = logging.getLogger(__name__)


def require_internal_key(
    x_internal_key: Optional[str] = Header(None, alias="X-Internal-Key"),
) -> None:
    """Constant-time check of the shared internal key."""
    try:
        expected_key = get_entitlements_api_key()
    except ValueError:
        logger.error("ENTITLEMENTS_API_KEY_MISSING")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Entitlement API key not configured",
        )

    if expected_key is None:
        return

    if not x_internal_key or not secrets.compare_digest(x_internal_key, expected_key):
        logger.warning("ENTITLEMENTS_AUTH_FAILED")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid X-Internal-Key",
            headers={"WWW-Authenticate": "Header"},
        )


def get_clock() -> Clock:
    """Clock dependency (overridden in tests)."""
    return SystemClock()


router = APIRouter(
    prefix="/v1",
    tags=["entitlements"],
    dependencies=[Depends(require_internal_key)],
)


def _identity(identity_in: Optional[IdentityIn]) -> Optional[Identity]:
    if identity_in is None:
        return None
    identity = Identity(account_id=identity_in.account_id, session_id=identity_in.session_id)
    return None if identity.is_empty else identity


@router.post("/entitlements/check", response_model=AccessCheckResponse)
def check_access(
    body: AccessCheckRequest,
    db: Session = Depends(get_db),
    redis_client: Optional[redis.Redis] = Depends(get_optional_redis),
    clock: Clock = Depends(get_clock),
) -> AccessCheckResponse:
    """Access decision for one identity and one piece of content.

    Always 200: denials are answers, not errors. Internal failures come back
    as allowed=false, reason=evaluation_failed.
    """
    identity = _identity(body.identity)
    content = ContentDescriptor(
        content_id=body.content.content_id,
        tags=frozenset(body.content.tags),
        categories=frozenset(body.content.categories),
        insider_only=body.content.insider_only,
    )
    decision = can_access(db, identity, content, clock)

    view_recorded = False
    remaining = decision.remaining_free_articles
    if decision.allowed and body.record_view and identity is not None:
        view_recorded = record_view(db, identity, content.content_id, clock, redis_client)
        if remaining is not None and view_recorded and decision.reason == "free_quota":
            remaining = max(remaining - 1, 0)

    return AccessCheckResponse(
        allowed=decision.allowed,
        reason=decision.reason,
        required_tier=decision.required_tier,
        tier=decision.tier,
        remaining_free_articles=remaining,
        upgrade_url=upgrade_url(decision.required_tier) if decision.required_tier else None,
        view_recorded=view_recorded,
    )


@router.post("/entitlements/views", response_model=ViewRecordResponse, status_code=status.HTTP_201_CREATED)
def post_view(
    body: ViewRecordRequest,
    db: Session = Depends(get_db),
    redis_client: Optional[redis.Redis] = Depends(get_optional_redis),
    clock: Clock = Depends(get_clock),
) -> ViewRecordResponse:
    identity = Identity(account_id=body.identity.account_id, session_id=body.identity.session_id)
    recorded = record_view(db, identity, body.content_id, clock, redis_client)
    return ViewRecordResponse(
        recorded=recorded,
        remaining_free_articles=remaining_free_articles(db, identity, clock),
    )


@router.get("/entitlements/remaining", response_model=RemainingResponse)
def get_remaining(
    account_id: Optional[str] = Query(None, max_length=128),
    session_id: Optional[str] = Query(None, max_length=128),
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
) -> RemainingResponse:
    identity = Identity(account_id=account_id, session_id=session_id)
    if identity.is_empty:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="account_id or session_id is required",
        )
    return RemainingResponse(
        tier=tier_for_identity(db, identity, clock),
        free_article_limit=get_free_article_limit(db),
        remaining_free_articles=remaining_free_articles(db, identity, clock),
        resets_at=window_end(clock),
    )


@router.get("/entitlements/features", response_model=FeatureAccessResponse)
def get_feature_access(
    feature: str = Query(..., min_length=1, max_length=64),
    account_id: Optional[str] = Query(None, max_length=128),
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
) -> FeatureAccessResponse:
    tier = tier_for_identity(db, Identity(account_id=account_id), clock)
    return FeatureAccessResponse(tier=tier, feature=feature, allowed=has_feature_access(tier, feature))


@router.get("/accounts/{account_id}/subscription", response_model=SubscriptionSummaryResponse)
def get_subscription_summary(
    account_id: str,
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
) -> SubscriptionSummaryResponse:
    summary = subscription_summary(db, account_id, clock)
    if summary is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Account not found")
    return SubscriptionSummaryResponse(**summary)
