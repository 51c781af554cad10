"""Environment resolution and fail-fast validation."""

import pytest

from memberhub_api.config import env


class TestAppEnv:
    def test_default_is_local(self):
        assert env.get_app_env() == "local"
        assert not env.is_production_env()

    def test_canonical_beats_legacy(self, monkeypatch):
        monkeypatch.setenv("APP_ENV", "staging")
        monkeypatch.setenv("MEMBERHUB_ENV", "PROD")
        assert env.get_app_env() == "prod"
        assert env.is_production_env()

    def test_legacy_name_still_read(self, monkeypatch):
        monkeypatch.setenv("APP_ENV", "production")
        assert env.is_production_env()


class TestDatabaseUrl:
    def test_explicit_url(self, monkeypatch):
        monkeypatch.setenv("DATABASE_URL", "postgresql://u:p@db:5432/x")
        assert env.get_database_url() == "postgresql://u:p@db:5432/x"

    def test_local_fallback(self, monkeypatch):
        monkeypatch.delenv("DATABASE_URL", raising=False)
        assert env.get_database_url().startswith("postgresql://")

    def test_required_in_production(self, monkeypatch):
        monkeypatch.delenv("DATABASE_URL", raising=False)
        monkeypatch.setenv("MEMBERHUB_ENV", "prod")
        with pytest.raises(RuntimeError, match="DATABASE_URL"):
            env.get_database_url()


class TestWebhookSecret:
    def test_missing_secret(self, monkeypatch):
        monkeypatch.delenv("STRIPE_WEBHOOK_SECRET")
        with pytest.raises(ValueError, match="STRIPE_WEBHOOK_SECRET"):
            env.get_stripe_webhook_secret()

    def test_tolerance_default_and_override(self, monkeypatch):
        assert env.get_stripe_webhook_tolerance_seconds() == 300
        monkeypatch.setenv("STRIPE_WEBHOOK_TOLERANCE_SECONDS", "60")
        assert env.get_stripe_webhook_tolerance_seconds() == 60


class TestNumericSettings:
    @pytest.mark.parametrize(
        "getter,name,default",
        [
            (env.get_payment_grace_period_days, "PAYMENT_GRACE_PERIOD_DAYS", 7),
            (env.get_processed_event_retention_days, "PROCESSED_EVENT_RETENTION_DAYS", 90),
            (env.get_fulfillment_max_attempts, "FULFILLMENT_MAX_ATTEMPTS", 5),
        ],
    )
    def test_defaults(self, monkeypatch, getter, name, default):
        monkeypatch.delenv(name, raising=False)
        assert getter() == default

    def test_blank_means_default(self, monkeypatch):
        monkeypatch.setenv("PAYMENT_GRACE_PERIOD_DAYS", "  ")
        assert env.get_payment_grace_period_days() == 7

    def test_garbage_is_rejected(self, monkeypatch):
        monkeypatch.setenv("PAYMENT_GRACE_PERIOD_DAYS", "a week")
        with pytest.raises(ValueError, match="PAYMENT_GRACE_PERIOD_DAYS"):
            env.get_payment_grace_period_days()

    def test_below_minimum_is_rejected(self, monkeypatch):
        monkeypatch.setenv("FULFILLMENT_MAX_ATTEMPTS", "0")
        with pytest.raises(ValueError):
            env.get_fulfillment_max_attempts()

    def test_timeout_must_be_positive(self, monkeypatch):
        monkeypatch.setenv("FULFILLMENT_TIMEOUT_SECONDS", "-1")
        with pytest.raises(ValueError):
            env.get_fulfillment_timeout_seconds()


class TestEntitlementsKey:
    def test_optional_outside_production(self):
        assert env.get_entitlements_api_key() is None

    def test_required_in_production(self, monkeypatch):
        monkeypatch.setenv("MEMBERHUB_ENV", "production")
        with pytest.raises(ValueError, match="ENTITLEMENTS_API_KEY"):
            env.get_entitlements_api_key()

    def test_configured(self, monkeypatch):
        monkeypatch.setenv("ENTITLEMENTS_API_KEY", "k_123")
        assert env.get_entitlements_api_key() == "k_123"
