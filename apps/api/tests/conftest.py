"""Pytest configuration and fixtures."""

import sys
from pathlib import Path
sys.path.insert(0, str(Path(__file__).resolve().parents[1]))  # => .../apps/api
sys.path.insert(0, str(Path(__file__).resolve().parents[2] / "reaper"))  # => .../apps/reaper
sys.path.insert(0, str(Path(__file__).resolve().parent))  # => webhook_helpers

import os

# Engine in memberhub_api.db.session is built at import time; tests bind their own
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ["MEMBERHUB_JSON_LOGS"] = "false"

from datetime import datetime
from unittest.mock import patch

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session

from memberhub_api.billing import stripe_client as stripe_client_module
from memberhub_api.db.engine import build_sessionmaker
from memberhub_api.db.models import Account, Base, Member, PaywallConfig, Subscription
from memberhub_api.db.redis_client import get_optional_redis
from memberhub_api.db.session import get_db
from memberhub_api.main import app
from memberhub_api.membership.clock import FixedClock
from memberhub_api.pricing import reset_catalog_loader
from memberhub_api.routers.entitlements import get_clock

from webhook_helpers import TEST_NOW, TEST_WEBHOOK_SECRET


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    """Keep process env from leaking between tests."""
    for name in (
        "MEMBERHUB_ENV",
        "APP_ENV",
        "ENTITLEMENTS_API_KEY",
        "FULFILLMENT_WEBHOOK_URL",
        "NOTIFICATION_WEBHOOK_URL",
        "NOTIFICATION_FILE_DIR",
        "REDIS_URL",
        "PRICE_CATALOG_PATH",
        "STRIPE_SECRET_KEY",
    ):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("STRIPE_WEBHOOK_SECRET", TEST_WEBHOOK_SECRET)
    reset_catalog_loader()
    stripe_client_module._stripe_client = None
    yield
    reset_catalog_loader()
    stripe_client_module._stripe_client = None


@pytest.fixture(scope="function")
def engine(tmp_path):
    """File-backed SQLite per test.

    A file (not :memory:) gives every session its own connection, so the
    webhook handler, the dispatcher and the test body see committed state
    the way separate processes would.
    """
    engine = create_engine(
        f"sqlite:///{tmp_path / 'memberhub.db'}",
        connect_args={"check_same_thread": False},
    )
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture(scope="function")
def session_factory(engine):
    return build_sessionmaker(engine)


@pytest.fixture(scope="function")
def db_session(session_factory) -> Session:
    """Fresh session for each test."""
    session = session_factory()
    try:
        yield session
        session.rollback()
    finally:
        session.close()


@pytest.fixture
def clock() -> FixedClock:
    return FixedClock(TEST_NOW)


@pytest.fixture
def test_client(db_session: Session, session_factory, clock: FixedClock):
    """TestClient bound to the per-test database and clock.

    The webhook handler opens its own sessions, so its get_db and session
    factory are patched to the same engine.
    """

    def override_get_db():
        try:
            yield db_session
        finally:
            pass  # closed by the db_session fixture

    def webhook_get_db():
        db = session_factory()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_clock] = lambda: clock
    app.dependency_overrides[get_optional_redis] = lambda: None

    with patch("memberhub_api.routers.webhooks.get_db", webhook_get_db), \
            patch("memberhub_api.routers.webhooks.get_session_factory", return_value=session_factory):
        client = TestClient(app)
        yield client

    app.dependency_overrides.clear()


# ── Seed helpers ──────────────────────────────────────────────────────────────


@pytest.fixture
def paywall_limit(db_session: Session):
    """Seed the paywall singleton (free_article_limit=3)."""
    db_session.add(PaywallConfig(config_id=1, free_article_limit=3))
    db_session.commit()
    return 3


@pytest.fixture
def make_member(db_session: Session):
    """Factory: Member (+ optional Account and Subscription), committed."""

    def _make(
        *,
        member_id: str = "mem_1",
        customer_ref: str | None = "cus_1",
        tier: str | None = None,
        status: str | None = None,
        account_id: str | None = None,
        role: str = "member",
        subscription_ref: str = "sub_1",
        grace_expires_at: datetime | None = None,
        email: str = "reader@example.com",
    ) -> Member:
        member = Member(
            member_id=member_id,
            customer_ref=customer_ref,
            email=email,
            name="Ada Reader",
            membership_tier="FREE",
            membership_status="INACTIVE",
        )
        db_session.add(member)
        if account_id:
            db_session.add(Account(account_id=account_id, email=email, role=role, member_id=member_id))
        if tier and status:
            db_session.add(Subscription(
                subscription_ref=subscription_ref,
                member_id=member_id,
                price_ref=f"price_{tier}_monthly",
                tier=tier,
                billing_cycle="MONTHLY",
                status=status,
                grace_expires_at=grace_expires_at,
            ))
        db_session.commit()
        return member

    return _make
