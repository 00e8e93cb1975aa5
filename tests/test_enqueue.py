import pytest
from sqlalchemy import func, select

from integration_outbox import db, outbox
from integration_outbox.db_models import STATUS_QUEUED, OutboxRecord, as_utc
from integration_outbox.errors import InvalidRequest


def _count_records():
    session = db.get_sessionmaker()()
    try:
        return session.execute(select(func.count()).select_from(OutboxRecord)).scalar_one()
    finally:
        session.close()


def test_enqueue_creates_queued_record(database, clock):
    record = outbox.enqueue("slack", "deploy_notification", "deployment_42", {"status": "approved"}, now=clock.now())

    assert record.status == STATUS_QUEUED
    assert record.attempt_count == 0
    assert as_utc(record.next_attempt_at) == clock.now()
    assert record.last_error is None
    assert record.provider_response is None
    assert len(record.idempotency_key) == 64


def test_enqueue_twice_returns_same_record(database):
    first = outbox.enqueue("slack", "deploy_notification", "deployment_42", {"status": "approved"})
    second = outbox.enqueue("slack", "deploy_notification", "deployment_42", {"status": "approved"})

    assert second.id == first.id
    assert as_utc(second.created_at) == as_utc(first.created_at)
    assert _count_records() == 1


def test_enqueue_distinct_intents_create_distinct_records(database):
    a = outbox.enqueue("slack", "deploy_notification", "deployment_42", {"status": "approved"})
    b = outbox.enqueue("slack", "deploy_notification", "deployment_42", {"status": "rejected"})
    c = outbox.enqueue("slack", "deploy_notification", "deployment_43", {"status": "approved"})

    assert len({a.id, b.id, c.id}) == 3
    assert len({a.idempotency_key, b.idempotency_key, c.idempotency_key}) == 3
    assert _count_records() == 3


@pytest.mark.parametrize(
    "args",
    [
        (None, "op", "res", {"a": 1}),
        ("slack", "", "res", {"a": 1}),
        ("slack", "op", "   ", {"a": 1}),
        ("slack", "op", "res", None),
    ],
)
def test_enqueue_rejects_missing_fields(database, args):
    with pytest.raises(InvalidRequest, match="missing required fields"):
        outbox.enqueue(*args)

    assert _count_records() == 0


def test_enqueue_accepts_empty_payload_object(database):
    record = outbox.enqueue("zapier", "ping", "res-1", {})

    assert record.payload == {}


def test_enqueue_race_resolves_to_existing_record(database, monkeypatch):
    original = outbox.enqueue("resend", "send_email", "user-7", {"template": "welcome"})

    real_find = outbox._find_by_key
    calls = {"n": 0}

    def stale_first_lookup(session, key):
        # Simulate a producer whose lookup ran before the other insert committed.
        calls["n"] += 1
        if calls["n"] == 1:
            return None
        return real_find(session, key)

    monkeypatch.setattr(outbox, "_find_by_key", stale_first_lookup)

    again = outbox.enqueue("resend", "send_email", "user-7", {"template": "welcome"})

    assert again.id == original.id
    assert _count_records() == 1
