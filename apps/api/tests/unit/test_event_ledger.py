"""Idempotency Guard: processed-event ledger."""

from datetime import datetime, timedelta, timezone

from sqlalchemy import func, select

from memberhub_api.billing.event_ledger import prune_processed_events, set_outcome, try_record_event
from memberhub_api.db.models import ProcessedEvent


def _count(session, event_id=None) -> int:
    stmt = select(func.count()).select_from(ProcessedEvent)
    if event_id:
        stmt = stmt.where(ProcessedEvent.event_id == event_id)
    return session.execute(stmt).scalar_one()


def test_first_claim_wins_second_is_duplicate(db_session):
    assert try_record_event(db_session, "evt_1", "invoice.paid", payload_hash="abc") is True
    db_session.commit()

    assert try_record_event(db_session, "evt_1", "invoice.paid", payload_hash="abc") is False
    db_session.rollback()

    assert _count(db_session, "evt_1") == 1


def test_claim_rolled_back_with_failed_reconciliation(db_session):
    """An aborted transaction leaves no ledger row; the redelivery is processed."""
    assert try_record_event(db_session, "evt_2", "customer.subscription.updated") is True
    db_session.rollback()

    assert _count(db_session, "evt_2") == 0
    assert try_record_event(db_session, "evt_2", "customer.subscription.updated") is True


def test_duplicate_across_sessions(session_factory):
    """Two ingress paths, two sessions, one event id: exactly one claim commits."""
    first = session_factory()
    second = session_factory()
    try:
        assert try_record_event(first, "evt_3", "invoice.paid") is True
        first.commit()

        assert try_record_event(second, "evt_3", "invoice.paid") is False
        second.rollback()

        assert _count(second, "evt_3") == 1
    finally:
        first.close()
        second.close()


def test_set_outcome(db_session):
    try_record_event(db_session, "evt_4", "invoice.paid")
    set_outcome(db_session, "evt_4", "skipped")
    db_session.commit()

    row = db_session.get(ProcessedEvent, "evt_4")
    assert row.outcome == "skipped"
    assert row.event_type == "invoice.paid"


def test_prune_removes_only_rows_past_retention(db_session):
    now = datetime.now(timezone.utc)
    db_session.add_all([
        ProcessedEvent(event_id="evt_old", event_type="invoice.paid", outcome="applied",
                       processed_at=now - timedelta(days=120)),
        ProcessedEvent(event_id="evt_recent", event_type="invoice.paid", outcome="applied",
                       processed_at=now - timedelta(days=10)),
    ])
    db_session.commit()

    deleted = prune_processed_events(db_session, retention_days=90, now=now)

    assert deleted == 1
    db_session.expunge_all()
    assert db_session.get(ProcessedEvent, "evt_old") is None
    assert db_session.get(ProcessedEvent, "evt_recent") is not None
