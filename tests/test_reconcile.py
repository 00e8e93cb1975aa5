from datetime import timedelta

import pytest
from sqlalchemy import update

from integration_outbox import db, outbox, reconcile
from integration_outbox.db_models import (
    RUN_FAILED,
    RUN_SUCCESS,
    STATUS_DEAD_LETTER,
    STATUS_QUEUED,
    STATUS_SENT,
    OutboxRecord,
    as_utc,
)
from integration_outbox.errors import InvalidRequest, NotFound
from integration_outbox.rate_limits import DEFAULT_RATE_LIMITS, RateLimitTable
from integration_outbox.reconcile import ReconciliationSweeper


def _sweeper(clock, **kwargs):
    kwargs.setdefault("stale_after_seconds", 6 * 60 * 60)
    return ReconciliationSweeper(
        RateLimitTable(DEFAULT_RATE_LIMITS),
        now=clock.now,
        monotonic=clock.monotonic,
        **kwargs,
    )


def _set(record_id, **values):
    session = db.get_sessionmaker()()
    try:
        session.execute(update(OutboxRecord).where(OutboxRecord.id == record_id).values(**values))
        session.commit()
    finally:
        session.close()


def _old_record(clock, resource, hours=7, integration="custom_api"):
    return outbox.enqueue(integration, "sync", resource, {"r": resource}, now=clock.now() - timedelta(hours=hours))


def test_stale_queued_record_is_reset(database, clock):
    record = _old_record(clock, "res-1")
    _set(record.id, attempt_count=3, next_attempt_at=clock.now() + timedelta(hours=2))

    run = _sweeper(clock).reconcile("custom_api", 3000, 6900)

    assert run.status == RUN_SUCCESS
    assert run.checked == 1
    assert run.drift_fixed == 1
    assert run.finished_at is not None
    row = outbox.get_record(record.id)
    assert row.status == STATUS_QUEUED
    assert row.attempt_count == 0
    assert as_utc(row.next_attempt_at) == clock.now()


def test_fresh_queued_record_is_not_checked(database, clock):
    record = _old_record(clock, "res-2", hours=1)
    _set(record.id, attempt_count=2)

    run = _sweeper(clock).reconcile("custom_api")

    assert run.checked == 0
    assert run.drift_fixed == 0
    assert outbox.get_record(record.id).attempt_count == 2


def test_sent_and_dead_letter_records_are_never_touched(database, clock):
    sent = _old_record(clock, "res-sent", hours=30)
    dead = _old_record(clock, "res-dead", hours=30)
    _set(sent.id, status=STATUS_SENT, attempt_count=1)
    _set(dead.id, status=STATUS_DEAD_LETTER, attempt_count=5)

    run = _sweeper(clock).reconcile("custom_api")

    assert run.checked == 0
    assert run.drift_fixed == 0
    assert outbox.get_record(sent.id).status == STATUS_SENT
    dead_row = outbox.get_record(dead.id)
    assert dead_row.status == STATUS_DEAD_LETTER
    assert dead_row.attempt_count == 5


def test_zero_hard_timeout_stops_before_any_item(database, clock):
    record = _old_record(clock, "res-3")
    _set(record.id, attempt_count=4)

    run = _sweeper(clock).reconcile("custom_api", 3000, 0)

    assert run.status == RUN_SUCCESS
    assert run.checked == 0
    assert run.drift_fixed == 0
    assert run.notes["stopped"] == "hard_timeout"
    assert outbox.get_record(record.id).attempt_count == 4


def test_hard_timeout_is_a_budget_for_the_whole_run(database, clock, monkeypatch):
    for i in range(3):
        _old_record(clock, f"res-budget-{i}")

    real_reset = outbox.reset_stuck_record

    def slow_reset(record_id, *, now):
        clock.advance(40)
        return real_reset(record_id, now=now)

    monkeypatch.setattr(outbox, "reset_stuck_record", slow_reset)

    run = _sweeper(clock).reconcile("custom_api", 3000, 60)

    assert run.status == RUN_SUCCESS
    assert run.checked == 2
    assert run.drift_fixed == 2


def test_max_items_caps_stale_records_only(database, clock):
    for i in range(3):
        _old_record(clock, f"res-fresh-{i}", hours=1)
    for i in range(3):
        _old_record(clock, f"res-cap-{i}")

    run = _sweeper(clock).reconcile("custom_api", 2, 6900)

    assert run.checked == 2
    assert run.drift_fixed == 2
    assert outbox.queue_stats()["queued"] == 6


def test_record_under_live_dispatch_lease_is_not_reset(database, clock):
    record = _old_record(clock, "res-leased")
    _set(record.id, attempt_count=3)
    assert len(outbox.claim_due_records(10, now=clock.now(), lease_seconds=900)) == 1

    run = _sweeper(clock).reconcile("custom_api")

    assert run.checked == 1
    assert run.drift_fixed == 0
    assert outbox.get_record(record.id).attempt_count == 3

    clock.advance(901)
    assert _sweeper(clock).reconcile("custom_api").drift_fixed == 1
    assert outbox.get_record(record.id).attempt_count == 0


def test_other_integrations_are_not_swept(database, clock):
    other = _old_record(clock, "res-other", integration="slack")
    _set(other.id, attempt_count=3)

    run = _sweeper(clock).reconcile("custom_api")

    assert run.checked == 0
    assert outbox.get_record(other.id).attempt_count == 3


def test_unknown_integration_is_not_found(database, clock):
    with pytest.raises(NotFound):
        _sweeper(clock).reconcile("no_such_integration")

    runs, total = reconcile.list_runs()
    assert total == 0


def test_integration_known_only_from_records_is_swept(database, clock):
    _old_record(clock, "res-legacy", integration="legacy_erp")

    run = _sweeper(clock).reconcile("legacy_erp")

    assert run.drift_fixed == 1


def test_blank_integration_is_invalid(database, clock):
    with pytest.raises(InvalidRequest):
        _sweeper(clock).reconcile("  ")


def test_unexpected_error_marks_run_failed(database, clock, monkeypatch):
    record = _old_record(clock, "res-4")
    _set(record.id, attempt_count=2)

    def broken_reset(record_id, *, now):
        raise RuntimeError("database went away")

    monkeypatch.setattr(outbox, "reset_stuck_record", broken_reset)

    run = _sweeper(clock).reconcile("custom_api")

    assert run.status == RUN_FAILED
    assert run.failures == 1
    assert run.notes == {"error": "database went away"}
    assert run.finished_at is not None
    assert outbox.get_record(record.id).attempt_count == 2


def test_successful_run_records_last_reconcile_time(database, clock):
    _old_record(clock, "res-5")

    run = _sweeper(clock).reconcile("custom_api")

    runs, total = reconcile.list_runs(integration_id="custom_api")
    assert total == 1
    assert runs[0].id == run.id
    state = outbox.get_integration_state("custom_api")
    assert as_utc(state.last_reconcile_at) == clock.now()
