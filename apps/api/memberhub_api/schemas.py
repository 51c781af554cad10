"""Pydantic schemas for API requests/responses."""

from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, Field, model_validator

from memberhub_api.membership.tiers import Tier


class ProblemDetail(BaseModel):
    """RFC 9457 Problem Details for HTTP API errors.

    RFC 9457: detail can be either a string or a structured object (dict).
    """

    type: str = Field(..., description="URI reference identifying the problem type")
    title: str = Field(..., description="Short, human-readable summary")
    status: int = Field(..., description="HTTP status code")
    detail: str | dict[str, Any] = Field(..., description="Human-readable explanation or structured error details")
    instance: Optional[str] = Field(None, description="URI reference identifying the specific occurrence")


# ============================================================================
# Shared identity / content shapes
# ============================================================================


class IdentityIn(BaseModel):
    """Reader identity. Both fields empty means no identity at all."""

    account_id: Optional[str] = Field(None, max_length=128)
    session_id: Optional[str] = Field(None, max_length=128)


class ContentIn(BaseModel):
    content_id: str = Field(..., min_length=1, max_length=256)
    tags: list[str] = Field(default_factory=list)
    categories: list[str] = Field(default_factory=list)
    insider_only: bool = False


# ============================================================================
# POST /v1/entitlements/check
# ============================================================================


class AccessCheckRequest(BaseModel):
    identity: Optional[IdentityIn] = None
    content: ContentIn
    record_view: bool = Field(
        False, description="Record the view when access is allowed (one call instead of two)"
    )


class AccessCheckResponse(BaseModel):
    allowed: bool
    reason: str
    required_tier: Optional[Tier] = None
    tier: Optional[Tier] = None
    remaining_free_articles: Optional[int] = None
    upgrade_url: Optional[str] = None
    view_recorded: bool = False


# ============================================================================
# POST /v1/entitlements/views, GET /v1/entitlements/remaining
# ============================================================================


class ViewRecordRequest(BaseModel):
    identity: IdentityIn
    content_id: str = Field(..., min_length=1, max_length=256)

    @model_validator(mode="after")
    def _require_identity(self) -> "ViewRecordRequest":
        if not self.identity.account_id and not self.identity.session_id:
            raise ValueError("identity requires account_id or session_id")
        return self


class ViewRecordResponse(BaseModel):
    recorded: bool
    remaining_free_articles: Optional[int] = None


class RemainingResponse(BaseModel):
    tier: Tier
    free_article_limit: int
    remaining_free_articles: Optional[int] = Field(
        None, description="None for paid tiers (unmetered)"
    )
    resets_at: datetime


class FeatureAccessResponse(BaseModel):
    tier: Tier
    feature: str
    allowed: bool


# ============================================================================
# GET /v1/accounts/{account_id}/subscription
# ============================================================================


class SubscriptionSummaryResponse(BaseModel):
    account_id: str
    tier: Tier
    tier_name: str
    membership_status: str
    subscription_status: Optional[str] = None
    billing_cycle: Optional[str] = None
    renewal_date: Optional[datetime] = None
    cancel_at_period_end: bool = False
    grace_expires_at: Optional[datetime] = None
    trial_end: Optional[datetime] = None
    upgrade_url: Optional[str] = None
    features: list[str] = Field(default_factory=list)
