"""Subscription Reconciler: event → Subscription / Member / fulfillment state.

Each test drives normalized events (built from provider-shaped payloads)
through reconcile() and commits, the way the webhook handler does.
"""

from datetime import timedelta
from unittest.mock import patch

import pytest
from sqlalchemy import select
from sqlalchemy.orm.exc import StaleDataError

from memberhub_api.billing import reconciler as reconciler_module
from memberhub_api.billing.events import CheckoutCompleted
from memberhub_api.billing.ingress import normalize_event
from memberhub_api.billing.reconciler import CheckoutNotHydrated, InvariantViolation, reconcile
from memberhub_api.context import member_id_var
from memberhub_api.db.models import Account, MagazineFulfillmentRecord, Member, Subscription, as_utc
from memberhub_api.membership.tiers import Tier
from memberhub_api.pricing import get_price_catalog

from webhook_helpers import (
    TEST_NOW,
    checkout_session,
    invoice_object,
    stripe_event,
    subscription_object,
)


def _event(event_id, event_type, obj):
    return normalize_event(stripe_event(event_id, event_type, obj), get_price_catalog())


def _apply(db, event, now=TEST_NOW):
    result = reconcile(db, event, now=now, grace_days=7)
    db.commit()
    return result


def _member(db, customer_ref="cus_1") -> Member:
    db.expire_all()
    return db.execute(select(Member).where(Member.customer_ref == customer_ref)).scalar_one()


def _records(db, member_id, status=None) -> list[MagazineFulfillmentRecord]:
    stmt = select(MagazineFulfillmentRecord).where(MagazineFulfillmentRecord.member_id == member_id)
    if status:
        stmt = stmt.where(MagazineFulfillmentRecord.status == status)
    return db.execute(stmt.order_by(MagazineFulfillmentRecord.id)).scalars().all()


def _subscription(db, ref="sub_1") -> Subscription:
    db.expire_all()
    return db.execute(select(Subscription).where(Subscription.subscription_ref == ref)).scalar_one()


@pytest.fixture
def insider_member(db_session):
    """Scenario A state: new customer checked out monthly Insider."""
    _apply(db_session, _event("evt_checkout", "checkout.session.completed", checkout_session()))
    return _member(db_session)


class TestCheckoutCompleted:
    def test_new_customer_insider_checkout(self, db_session):
        """Scenario A."""
        result = _apply(db_session, _event("evt_a", "checkout.session.completed", checkout_session()))

        member = _member(db_session)
        assert result.outcome == "applied"
        assert member.membership_tier == "INSIDER"
        assert member.membership_status == "ACTIVE"
        assert member.email == "reader@example.com"
        assert member.shipping_address["postal_code"] == "78701"

        records = _records(db_session, member.member_id)
        assert len(records) == 1
        assert records[0].status == "active"
        assert records[0].dispatch_status == "pending"
        assert records[0].shipping_address["city"] == "Austin"
        assert result.staged.action == "fulfill"
        assert result.staged.record_id == records[0].id

        assert result.transition.before_tier == Tier.FREE
        assert result.transition.after_tier == Tier.INSIDER
        assert result.transition.is_upgrade
        assert member_id_var.get() == member.member_id

    def test_subscription_row_written(self, db_session):
        _apply(db_session, _event("evt_a", "checkout.session.completed", checkout_session()))

        sub = _subscription(db_session)
        assert sub.status == "active"
        assert sub.tier == "insider"
        assert sub.billing_cycle == "MONTHLY"
        assert sub.current_period_end is not None
        assert sub.version >= 1

    def test_collective_checkout_has_no_fulfillment(self, db_session):
        session = checkout_session(subscription=subscription_object(price_ref="price_collective_annual", interval="year"))
        result = _apply(db_session, _event("evt_a", "checkout.session.completed", session))

        member = _member(db_session)
        assert member.membership_tier == "COLLECTIVE"
        assert _records(db_session, member.member_id) == []
        assert result.staged is None

    def test_checkout_adopts_member_created_before_billing(self, db_session):
        """A member row without customer_ref (signed up, never paid) is reused by email."""
        db_session.add(Member(member_id="mem_pre", customer_ref=None, email="reader@example.com"))
        db_session.add(Account(account_id="acct_1", email="reader@example.com"))
        db_session.commit()

        session = checkout_session(metadata={"userId": "acct_1"})
        _apply(db_session, _event("evt_a", "checkout.session.completed", session))

        member = _member(db_session)
        assert member.member_id == "mem_pre"
        assert db_session.get(Account, "acct_1").member_id == "mem_pre"
        assert db_session.execute(select(Member)).scalars().all() == [member]

    def test_checkout_clears_member_trial_window(self, db_session):
        db_session.add(Member(
            member_id="mem_trial", customer_ref="cus_1", email="reader@example.com",
            trial_start=TEST_NOW - timedelta(days=3), trial_end=TEST_NOW + timedelta(days=4),
        ))
        db_session.commit()

        _apply(db_session, _event("evt_a", "checkout.session.completed", checkout_session()))

        member = _member(db_session)
        assert member.trial_start is None
        assert member.trial_end is None

    def test_unhydrated_checkout_is_rejected(self, db_session):
        event = _event("evt_a", "checkout.session.completed", checkout_session(subscription="sub_1"))
        assert isinstance(event, CheckoutCompleted)
        with pytest.raises(CheckoutNotHydrated):
            reconcile(db_session, event, now=TEST_NOW)
        db_session.rollback()

    def test_replayed_checkout_does_not_duplicate_rows(self, db_session):
        """Same content under a new event id converges on the same rows."""
        _apply(db_session, _event("evt_a1", "checkout.session.completed", checkout_session()))
        result = _apply(db_session, _event("evt_a2", "checkout.session.completed", checkout_session()))

        member = _member(db_session)
        assert len(db_session.execute(select(Subscription)).scalars().all()) == 1
        assert len(_records(db_session, member.member_id, status="active")) == 1
        assert result.staged is None
        assert not result.transition.tier_changed

    def test_late_checkout_cannot_revive_canceled_subscription(self, db_session, insider_member):
        _apply(db_session, _event("evt_c", "customer.subscription.deleted", subscription_object(status="canceled")))
        result = _apply(db_session, _event("evt_c_late", "checkout.session.completed", checkout_session()))

        assert result.outcome == "skipped"
        assert result.reason == "subscription_terminal"
        assert _subscription(db_session).status == "canceled"
        member = _member(db_session)
        assert member.membership_tier == "FREE"
        assert _records(db_session, member.member_id, status="active") == []


class TestSubscriptionUpserted:
    def test_past_due_keeps_tier_during_grace(self, db_session, insider_member):
        """Scenario B."""
        obj = subscription_object(status="past_due")
        result = _apply(db_session, _event("evt_b", "customer.subscription.updated", obj))

        sub = _subscription(db_session)
        member = _member(db_session)
        assert sub.status == "past_due"
        assert as_utc(sub.grace_expires_at) == TEST_NOW + timedelta(days=7)
        assert member.membership_status == "ACTIVE"
        assert member.membership_tier == "INSIDER"
        assert result.staged is None
        assert len(_records(db_session, member.member_id, status="active")) == 1

    def test_past_due_after_grace_downgrades(self, db_session, insider_member):
        _apply(db_session, _event("evt_b1", "customer.subscription.updated", subscription_object(status="past_due")))

        later = TEST_NOW + timedelta(days=8)
        result = _apply(
            db_session,
            _event("evt_b2", "customer.subscription.updated", subscription_object(status="past_due")),
            now=later,
        )

        member = _member(db_session)
        assert member.membership_tier == "FREE"
        assert member.membership_status == "PAST_DUE"
        assert result.staged.action == "cancel"
        assert _records(db_session, member.member_id, status="active") == []

    def test_recovery_clears_grace_marker(self, db_session, insider_member):
        _apply(db_session, _event("evt_b1", "customer.subscription.updated", subscription_object(status="past_due")))
        _apply(db_session, _event("evt_b2", "customer.subscription.updated", subscription_object(status="active")))

        assert _subscription(db_session).grace_expires_at is None

    def test_first_sighting_creates_member(self, db_session):
        obj = subscription_object(subscription_ref="sub_new", customer_ref="cus_new", price_ref="price_collective_monthly")
        result = _apply(db_session, _event("evt_c", "customer.subscription.created", obj))

        member = _member(db_session, "cus_new")
        assert result.outcome == "applied"
        assert member.membership_tier == "COLLECTIVE"
        assert member.email is None

    def test_unknown_subscription_without_customer_is_skipped(self, db_session):
        obj = subscription_object(subscription_ref="sub_orphan", customer_ref=None)
        result = _apply(db_session, _event("evt_c", "customer.subscription.updated", obj))

        assert result.outcome == "skipped"
        assert result.reason == "member_unresolvable"
        assert db_session.execute(select(Subscription)).scalars().all() == []

    def test_tier_change_moves_fulfillment(self, db_session, insider_member):
        """Insider → Collective cancels the record; back to Insider opens a new one."""
        down = _apply(
            db_session,
            _event("evt_d1", "customer.subscription.updated", subscription_object(price_ref="price_collective_monthly")),
        )
        assert down.transition.after_tier == Tier.COLLECTIVE
        assert not down.transition.is_upgrade
        assert down.staged.action == "cancel"

        annual = subscription_object(price_ref="price_insider_annual", interval="year")
        up = _apply(db_session, _event("evt_d2", "customer.subscription.updated", annual))
        assert up.staged.action == "fulfill"

        records = _records(db_session, insider_member.member_id)
        assert [r.status for r in records] == ["canceled", "active"]
        assert records[1].billing_cycle == "ANNUAL"

    def test_late_update_cannot_revive_canceled_subscription(self, db_session, insider_member):
        _apply(db_session, _event("evt_x", "customer.subscription.deleted", subscription_object(status="canceled")))
        result = _apply(db_session, _event("evt_late", "customer.subscription.updated", subscription_object(status="active")))

        assert result.outcome == "skipped"
        assert result.reason == "subscription_terminal"
        assert _member(db_session).membership_tier == "FREE"


class TestSubscriptionCanceled:
    def test_sole_subscription_canceled(self, db_session, insider_member):
        """Scenario C."""
        result = _apply(
            db_session,
            _event("evt_c", "customer.subscription.deleted", subscription_object(status="canceled")),
        )

        member = _member(db_session)
        sub = _subscription(db_session)
        assert member.membership_tier == "FREE"
        assert member.membership_status == "INACTIVE"
        assert sub.status == "canceled"
        assert sub.canceled_at is not None
        assert result.staged.action == "cancel"

        records = _records(db_session, member.member_id)
        assert len(records) == 1
        assert records[0].status == "canceled"
        assert records[0].dispatch_status == "pending"
        assert as_utc(records[0].started_at) == TEST_NOW
        assert as_utc(records[0].canceled_at) == TEST_NOW
        assert result.transition.occurred_at == TEST_NOW

    def test_deleted_event_forces_canceled_status(self, db_session, insider_member):
        """The deleted event is authoritative even if the object still says active."""
        _apply(db_session, _event("evt_c", "customer.subscription.deleted", subscription_object(status="active")))
        assert _subscription(db_session).status == "canceled"

    def test_cancel_for_unknown_subscription_is_skipped(self, db_session):
        result = _apply(
            db_session,
            _event("evt_c", "customer.subscription.deleted", subscription_object(subscription_ref="sub_missing")),
        )
        assert result.outcome == "skipped"
        assert result.reason == "subscription_not_found"

    def test_other_active_subscription_keeps_member_entitled(self, db_session, insider_member):
        second = subscription_object(subscription_ref="sub_2", price_ref="price_collective_monthly")
        _apply(db_session, _event("evt_s2", "customer.subscription.created", second), now=TEST_NOW + timedelta(minutes=1))

        _apply(
            db_session,
            _event("evt_c", "customer.subscription.deleted", subscription_object(status="canceled")),
            now=TEST_NOW + timedelta(minutes=2),
        )

        member = _member(db_session)
        assert member.membership_tier == "COLLECTIVE"
        assert member.membership_status == "ACTIVE"


class TestInvoices:
    def test_payment_failed_opens_grace(self, db_session, insider_member):
        result = _apply(db_session, _event("evt_f", "invoice.payment_failed", invoice_object()))

        sub = _subscription(db_session)
        assert result.outcome == "applied"
        assert sub.status == "past_due"
        assert as_utc(sub.grace_expires_at) == TEST_NOW + timedelta(days=7)
        assert _member(db_session).membership_tier == "INSIDER"

    def test_repeated_failure_does_not_extend_grace(self, db_session, insider_member):
        _apply(db_session, _event("evt_f1", "invoice.payment_failed", invoice_object()))
        _apply(db_session, _event("evt_f2", "invoice.payment_failed", invoice_object()), now=TEST_NOW + timedelta(days=3))

        assert as_utc(_subscription(db_session).grace_expires_at) == TEST_NOW + timedelta(days=7)

    def test_paid_invoice_keeps_deadline_while_past_due(self, db_session, insider_member):
        _apply(db_session, _event("evt_f", "invoice.payment_failed", invoice_object()))
        result = _apply(db_session, _event("evt_p", "invoice.paid", invoice_object(parent_style=True)))

        sub = _subscription(db_session)
        assert result.outcome == "applied"
        assert sub.status == "past_due"
        assert as_utc(sub.grace_expires_at) == TEST_NOW + timedelta(days=7)

        # Without a status recovery the window still closes
        _apply(db_session, _event("evt_p2", "invoice.paid", invoice_object()), now=TEST_NOW + timedelta(days=8))
        member = _member(db_session)
        assert member.membership_tier == "FREE"
        assert member.membership_status == "PAST_DUE"
        assert _records(db_session, member.member_id, status="active") == []

    def test_paid_after_recovery_clears_grace_marker(self, db_session, insider_member):
        _apply(db_session, _event("evt_f", "invoice.payment_failed", invoice_object()))
        _apply(db_session, _event("evt_u", "customer.subscription.updated", subscription_object(status="active")))
        _apply(db_session, _event("evt_p", "invoice.paid", invoice_object()))

        sub = _subscription(db_session)
        assert sub.status == "active"
        assert sub.grace_expires_at is None
        assert _member(db_session).membership_tier == "INSIDER"

    def test_failed_invoice_for_canceled_subscription_is_skipped(self, db_session, insider_member):
        _apply(db_session, _event("evt_c", "customer.subscription.deleted", subscription_object(status="canceled")))
        result = _apply(db_session, _event("evt_f", "invoice.payment_failed", invoice_object()))

        assert result.reason == "subscription_terminal"
        assert _subscription(db_session).status == "canceled"

    def test_invoice_without_subscription_is_skipped(self, db_session):
        result = _apply(db_session, _event("evt_p", "invoice.paid", invoice_object(subscription_ref=None)))
        assert result.reason == "invoice_without_subscription"

    def test_invoice_for_unknown_subscription_is_skipped(self, db_session):
        result = _apply(db_session, _event("evt_p", "invoice.paid", invoice_object(subscription_ref="sub_zz")))
        assert result.reason == "subscription_not_found"


class TestConsistency:
    def test_stored_tier_is_billing_derived_for_admins(self, db_session):
        """Admin override is applied at read time, never written to the member."""
        db_session.add(Account(account_id="acct_admin", role="admin"))
        db_session.commit()

        session = checkout_session(
            subscription=subscription_object(price_ref="price_collective_monthly"),
            metadata={"userId": "acct_admin"},
        )
        _apply(db_session, _event("evt_a", "checkout.session.completed", session))

        assert _member(db_session).membership_tier == "COLLECTIVE"

    @pytest.mark.parametrize(
        "event_type,obj",
        [
            ("customer.subscription.updated", subscription_object(status="past_due")),
            ("customer.subscription.deleted", subscription_object(status="canceled")),
            ("invoice.payment_failed", invoice_object()),
            ("invoice.paid", invoice_object()),
        ],
    )
    def test_owning_member_row_is_locked(self, db_session, insider_member, event_type, obj):
        """Sibling subscriptions of one member recompute it one at a time."""
        member_id = insider_member.member_id

        with patch.object(reconciler_module, "_lock_member", wraps=reconciler_module._lock_member) as lock:
            _apply(db_session, _event("evt_lock", event_type, obj))

        lock.assert_called_once_with(db_session, member_id)

    def test_invariant_violation_aborts(self, db_session, monkeypatch):
        monkeypatch.setattr("memberhub_api.billing.reconciler.stage_transition", lambda db, member, transition: None)

        with pytest.raises(InvariantViolation):
            reconcile(db_session, _event("evt_a", "checkout.session.completed", checkout_session()), now=TEST_NOW)
        db_session.rollback()

        assert db_session.execute(select(Member)).scalars().all() == []

    def test_concurrent_write_to_same_subscription_is_stale(self, db_session, session_factory, insider_member):
        """Version counter: the slower of two writers fails instead of overwriting."""
        slow = session_factory()
        fast = session_factory()
        try:
            slow_row = slow.execute(select(Subscription).where(Subscription.subscription_ref == "sub_1")).scalar_one()
            fast_row = fast.execute(select(Subscription).where(Subscription.subscription_ref == "sub_1")).scalar_one()

            fast_row.status = "past_due"
            fast.commit()

            slow_row.status = "canceled"
            with pytest.raises(StaleDataError):
                slow.flush()
            slow.rollback()
        finally:
            slow.close()
            fast.close()

        assert _subscription(db_session).status == "past_due"
