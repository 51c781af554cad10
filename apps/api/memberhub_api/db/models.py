"""SQLAlchemy ORM models for the membership / billing record."""

from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import (
    BIGINT,
    BOOLEAN,
    INTEGER,
    JSON,
    TEXT,
    TIMESTAMP,
    ForeignKey,
    Index,
    UniqueConstraint,
    text,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

# SQLite only autoincrements INTEGER PRIMARY KEY
BIGINT_ID = BIGINT().with_variant(INTEGER(), "sqlite")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Attach UTC to naive datetimes read back from SQLite."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class Base(DeclarativeBase):
    """Base class for all ORM models."""

    pass


class Account(Base):
    """Person-level identity. Never deleted, only deactivated."""

    __tablename__ = "accounts"

    account_id: Mapped[str] = mapped_column(TEXT, primary_key=True)
    email: Mapped[Optional[str]] = mapped_column(TEXT, nullable=True)
    display_name: Mapped[Optional[str]] = mapped_column(TEXT, nullable=True)
    role: Mapped[str] = mapped_column(TEXT, nullable=False, default="member")
    # member | admin | super_admin

    member_id: Mapped[Optional[str]] = mapped_column(
        TEXT, ForeignKey("members.member_id"), nullable=True
    )
    is_active: Mapped[bool] = mapped_column(BOOLEAN, nullable=False, default=True)

    created_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), nullable=False, default=utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )

    member: Mapped[Optional["Member"]] = relationship(back_populates="accounts")

    __table_args__ = (
        Index("idx_accounts_email", "email"),
        Index("idx_accounts_member", "member_id"),
    )


class Member(Base):
    """Commercial identity tied to a provider customer.

    Mutated only by the subscription reconciler; presentation code reads it.
    """

    __tablename__ = "members"

    member_id: Mapped[str] = mapped_column(TEXT, primary_key=True)
    customer_ref: Mapped[Optional[str]] = mapped_column(TEXT, nullable=True)
    email: Mapped[Optional[str]] = mapped_column(TEXT, nullable=True)
    name: Mapped[Optional[str]] = mapped_column(TEXT, nullable=True)

    membership_tier: Mapped[str] = mapped_column(TEXT, nullable=False, default="FREE")
    # FREE | COLLECTIVE | INSIDER
    membership_status: Mapped[str] = mapped_column(TEXT, nullable=False, default="INACTIVE")
    # ACTIVE | INACTIVE | PAST_DUE

    trial_start: Mapped[Optional[datetime]] = mapped_column(TIMESTAMP(timezone=True), nullable=True)
    trial_end: Mapped[Optional[datetime]] = mapped_column(TIMESTAMP(timezone=True), nullable=True)

    # Last known shipping snapshot (copied into fulfillment records)
    shipping_address: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), nullable=False, default=utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )

    accounts: Mapped[list["Account"]] = relationship(back_populates="member")
    subscriptions: Mapped[list["Subscription"]] = relationship(
        back_populates="member", order_by="Subscription.id"
    )

    __table_args__ = (
        UniqueConstraint("customer_ref", name="uq_members_customer_ref"),
        Index("idx_members_email", "email"),
    )


class Subscription(Base):
    """One row per provider subscription object.

    subscription_ref is the identity key for current-state writes. version is
    bumped on every reconciler write; a mismatch means another event for the
    same subscription committed in between.
    """

    __tablename__ = "subscriptions"

    id: Mapped[int] = mapped_column(BIGINT_ID, primary_key=True, autoincrement=True)
    subscription_ref: Mapped[str] = mapped_column(TEXT, nullable=False)
    member_id: Mapped[str] = mapped_column(
        TEXT, ForeignKey("members.member_id"), nullable=False
    )

    price_ref: Mapped[Optional[str]] = mapped_column(TEXT, nullable=True)
    tier: Mapped[Optional[str]] = mapped_column(TEXT, nullable=True)
    billing_cycle: Mapped[str] = mapped_column(TEXT, nullable=False, default="MONTHLY")
    # MONTHLY | ANNUAL
    status: Mapped[str] = mapped_column(TEXT, nullable=False)
    # trialing | active | past_due | canceled | incomplete | incomplete_expired | unpaid | paused

    current_period_start: Mapped[Optional[datetime]] = mapped_column(
        TIMESTAMP(timezone=True), nullable=True
    )
    current_period_end: Mapped[Optional[datetime]] = mapped_column(
        TIMESTAMP(timezone=True), nullable=True
    )
    cancel_at_period_end: Mapped[bool] = mapped_column(BOOLEAN, nullable=False, default=False)
    trial_start: Mapped[Optional[datetime]] = mapped_column(TIMESTAMP(timezone=True), nullable=True)
    trial_end: Mapped[Optional[datetime]] = mapped_column(TIMESTAMP(timezone=True), nullable=True)

    # Set when the row enters past_due; cleared on recovery
    grace_expires_at: Mapped[Optional[datetime]] = mapped_column(
        TIMESTAMP(timezone=True), nullable=True
    )
    canceled_at: Mapped[Optional[datetime]] = mapped_column(TIMESTAMP(timezone=True), nullable=True)

    version: Mapped[int] = mapped_column(BIGINT, nullable=False, default=0)

    created_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), nullable=False, default=utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), nullable=False, default=utcnow
    )

    member: Mapped["Member"] = relationship(back_populates="subscriptions")

    __table_args__ = (
        UniqueConstraint("subscription_ref", name="uq_subscriptions_ref"),
        Index("idx_subscriptions_member", "member_id"),
        Index("idx_subscriptions_status_grace", "status", "grace_expires_at"),
    )

    # UPDATE ... WHERE version = :loaded; zero rows matched raises StaleDataError
    __mapper_args__ = {"version_id_col": version}


class ProcessedEvent(Base):
    """Idempotency ledger for provider events.

    Atomic gate: INSERT ... ON CONFLICT (event_id) DO NOTHING RETURNING event_id,
    executed in the reconciliation transaction. Not a source of truth for
    subscription state; safe to prune after the retention window.
    """

    __tablename__ = "processed_events"

    event_id: Mapped[str] = mapped_column(TEXT, primary_key=True)
    event_type: Mapped[str] = mapped_column(TEXT, nullable=False)
    outcome: Mapped[str] = mapped_column(TEXT, nullable=False)
    # applied | skipped
    payload_hash: Mapped[Optional[str]] = mapped_column(TEXT, nullable=True)
    processed_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), nullable=False, default=utcnow
    )

    __table_args__ = (
        Index("idx_processed_events_processed_at", "processed_at"),
    )


class ArticleView(Base):
    """Append-only view fact used for the free-tier monthly quota."""

    __tablename__ = "article_views"

    id: Mapped[int] = mapped_column(BIGINT_ID, primary_key=True, autoincrement=True)
    account_id: Mapped[Optional[str]] = mapped_column(TEXT, nullable=True)
    session_id: Mapped[Optional[str]] = mapped_column(TEXT, nullable=True)
    content_id: Mapped[str] = mapped_column(TEXT, nullable=False)
    viewed_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), nullable=False, default=utcnow
    )

    __table_args__ = (
        Index("idx_article_views_account_time", "account_id", "viewed_at"),
        Index("idx_article_views_session_time", "session_id", "viewed_at"),
    )


class PaywallConfig(Base):
    """Singleton paywall configuration (config_id = 1)."""

    __tablename__ = "paywall_config"

    config_id: Mapped[int] = mapped_column(INTEGER, primary_key=True, default=1)
    free_article_limit: Mapped[int] = mapped_column(INTEGER, nullable=False, default=3)
    updated_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )


class MagazineFulfillmentRecord(Base):
    """Physical magazine fulfillment for an Insider member.

    status tracks the entitlement (active | canceled); dispatch_status tracks
    delivery of the latest notice to the fulfillment collaborator
    (pending | sent | retry_pending | failed).
    """

    __tablename__ = "magazine_fulfillment_records"

    id: Mapped[int] = mapped_column(BIGINT_ID, primary_key=True, autoincrement=True)
    member_id: Mapped[str] = mapped_column(
        TEXT, ForeignKey("members.member_id"), nullable=False
    )
    subscription_ref: Mapped[Optional[str]] = mapped_column(TEXT, nullable=True)
    tier: Mapped[str] = mapped_column(TEXT, nullable=False, default="INSIDER")
    billing_cycle: Mapped[Optional[str]] = mapped_column(TEXT, nullable=True)
    shipping_address: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)

    status: Mapped[str] = mapped_column(TEXT, nullable=False, default="active")
    started_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), nullable=False, default=utcnow
    )
    canceled_at: Mapped[Optional[datetime]] = mapped_column(TIMESTAMP(timezone=True), nullable=True)

    dispatch_status: Mapped[str] = mapped_column(TEXT, nullable=False, default="pending")
    dispatch_attempts: Mapped[int] = mapped_column(INTEGER, nullable=False, default=0)
    last_dispatch_error: Mapped[Optional[str]] = mapped_column(TEXT, nullable=True)
    last_dispatch_at: Mapped[Optional[datetime]] = mapped_column(
        TIMESTAMP(timezone=True), nullable=True
    )

    created_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), nullable=False, default=utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )

    __table_args__ = (
        # At most one active record per member
        Index(
            "uq_fulfillment_active_member",
            "member_id",
            unique=True,
            postgresql_where=text("status = 'active'"),
            sqlite_where=text("status = 'active'"),
        ),
        Index("idx_fulfillment_dispatch", "dispatch_status", "updated_at"),
    )


class AuditLogEntry(Base):
    """Audit trail for tier changes and dispatch failures.

    Written best-effort in its own transaction after billing state commits.
    """

    __tablename__ = "audit_log_entries"

    id: Mapped[int] = mapped_column(BIGINT_ID, primary_key=True, autoincrement=True)

    event_type: Mapped[str] = mapped_column(TEXT, nullable=False)
    # TIER_CHANGED, GRACE_PERIOD_EXPIRED, FULFILLMENT_DISPATCH_FAILED, ...

    member_id: Mapped[Optional[str]] = mapped_column(TEXT, nullable=True)
    related_entity_type: Mapped[Optional[str]] = mapped_column(TEXT, nullable=True)
    # SUBSCRIPTION, FULFILLMENT, EVENT
    related_entity_id: Mapped[Optional[str]] = mapped_column(TEXT, nullable=True)

    actor: Mapped[Optional[str]] = mapped_column(TEXT, nullable=True)  # WEBHOOK, REAPER, ADMIN
    details: Mapped[dict] = mapped_column(JSON, nullable=False)

    created_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), nullable=False, default=utcnow
    )

    __table_args__ = (
        Index("idx_audit_member_time", "member_id", "created_at"),
        Index("idx_audit_event_type", "event_type"),
    )
