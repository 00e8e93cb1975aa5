from __future__ import annotations

import logging
import uuid
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import func, or_, select, update
from sqlalchemy.exc import IntegrityError

from .db import dialect_insert, get_sessionmaker
from .db_models import (
    OUTBOX_STATUSES,
    STATUS_DEAD_LETTER,
    STATUS_QUEUED,
    STATUS_SENT,
    IntegrationState,
    OutboxRecord,
    utc_now,
)
from .errors import InvalidRequest, NotFound
from .idempotency import idempotency_key

logger = logging.getLogger(__name__)

MAX_ERROR_CHARS = 2000


def _clean_str(value: Any) -> str:
    return str(value).strip() if value is not None else ""


def _normalize_uuid(value: Any) -> uuid.UUID:
    if isinstance(value, uuid.UUID):
        return value
    try:
        return uuid.UUID(str(value))
    except ValueError:
        raise NotFound(f"outbox record {value} not found")


def _find_by_key(session, key: str) -> OutboxRecord | None:
    return session.execute(select(OutboxRecord).where(OutboxRecord.idempotency_key == key)).scalar_one_or_none()


def enqueue(
    integration_id: Any,
    operation: Any,
    stable_resource_id: Any,
    payload: Any,
    *,
    now: datetime | None = None,
) -> OutboxRecord:
    """
    Admit one delivery intent, or return the record already holding it.

    The idempotent-hit path writes nothing. A concurrent producer that wins the
    insert race is resolved by ON CONFLICT DO NOTHING plus a re-fetch, so the
    caller always gets the single record for the key.
    """
    integration_id = _clean_str(integration_id)
    operation = _clean_str(operation)
    stable_resource_id = _clean_str(stable_resource_id)
    missing = [
        name
        for name, value in (
            ("integration_id", integration_id),
            ("operation", operation),
            ("stable_resource_id", stable_resource_id),
        )
        if not value
    ]
    if payload is None:
        missing.append("payload")
    if missing:
        raise InvalidRequest(f"missing required fields: {', '.join(missing)}")

    key = idempotency_key(integration_id, operation, stable_resource_id, payload)
    now = now or utc_now()

    session = get_sessionmaker()()
    try:
        existing = _find_by_key(session, key)
        if existing is not None:
            logger.info(
                "outbox_enqueue_duplicate integration=%s operation=%s record_id=%s",
                integration_id,
                operation,
                existing.id,
            )
            return existing

        stmt = (
            dialect_insert(session, OutboxRecord)
            .values(
                id=uuid.uuid4(),
                integration_id=integration_id,
                operation=operation,
                stable_resource_id=stable_resource_id,
                payload=payload,
                idempotency_key=key,
                status=STATUS_QUEUED,
                attempt_count=0,
                next_attempt_at=now,
                created_at=now,
                updated_at=now,
            )
            .on_conflict_do_nothing(index_elements=[OutboxRecord.idempotency_key])
        )
        try:
            session.execute(stmt)
            session.commit()
        except IntegrityError:
            session.rollback()
            logger.info("outbox_enqueue_conflict integration=%s key=%s", integration_id, key)

        record = _find_by_key(session, key)
        if record is None:
            raise RuntimeError(f"outbox record vanished after enqueue key={key}")
        logger.info(
            "outbox_enqueue_ok integration=%s operation=%s resource=%s record_id=%s",
            integration_id,
            operation,
            stable_resource_id,
            record.id,
        )
        return record
    except Exception as exc:
        session.rollback()
        logger.exception("outbox_enqueue_failed integration=%s err=%s", integration_id, exc)
        raise
    finally:
        session.close()


def get_record(record_id: Any) -> OutboxRecord:
    record_uuid = _normalize_uuid(record_id)
    session = get_sessionmaker()()
    try:
        row = session.get(OutboxRecord, record_uuid)
        if row is None:
            raise NotFound(f"outbox record {record_id} not found")
        return row
    finally:
        session.close()


def list_records(
    *,
    status: str | None = None,
    integration_id: str | None = None,
    page: int = 1,
    page_size: int = 50,
) -> Tuple[List[OutboxRecord], int]:
    filters = []
    if status:
        if status not in OUTBOX_STATUSES:
            raise InvalidRequest(f"unknown status {status}")
        filters.append(OutboxRecord.status == status)
    if integration_id:
        filters.append(OutboxRecord.integration_id == integration_id)

    session = get_sessionmaker()()
    try:
        count_stmt = select(func.count()).select_from(OutboxRecord)
        stmt = select(OutboxRecord).order_by(OutboxRecord.created_at.desc())
        if filters:
            count_stmt = count_stmt.where(*filters)
            stmt = stmt.where(*filters)
        total = session.execute(count_stmt).scalar_one()
        stmt = stmt.offset((page - 1) * page_size).limit(page_size)
        rows = session.execute(stmt).scalars().all()
        return list(rows), total
    finally:
        session.close()


def queue_stats() -> Dict[str, int]:
    session = get_sessionmaker()()
    try:
        rows = session.execute(
            select(OutboxRecord.status, func.count()).group_by(OutboxRecord.status)
        ).all()
        stats = {name: 0 for name in OUTBOX_STATUSES}
        for status, count in rows:
            stats[status] = int(count)
        return stats
    finally:
        session.close()


def integration_has_records(integration_id: str) -> bool:
    session = get_sessionmaker()()
    try:
        found = session.execute(
            select(OutboxRecord.id).where(OutboxRecord.integration_id == integration_id).limit(1)
        ).first()
        return found is not None
    finally:
        session.close()


def integrations_with_queued() -> List[str]:
    session = get_sessionmaker()()
    try:
        rows = session.execute(
            select(OutboxRecord.integration_id)
            .where(OutboxRecord.status == STATUS_QUEUED)
            .group_by(OutboxRecord.integration_id)
            .order_by(OutboxRecord.integration_id)
        ).scalars()
        return list(rows)
    finally:
        session.close()


def claim_due_records(batch_size: int, *, now: datetime, lease_seconds: float) -> List[OutboxRecord]:
    """
    Select due queued records and take a dispatch lease on each.

    The lease is a conditional UPDATE on `claimed_until`, so a second dispatch
    worker that selected the same rows gets zero affected rows and skips them.
    """
    due = [
        OutboxRecord.status == STATUS_QUEUED,
        or_(OutboxRecord.next_attempt_at.is_(None), OutboxRecord.next_attempt_at <= now),
        or_(OutboxRecord.claimed_until.is_(None), OutboxRecord.claimed_until < now),
    ]
    lease_until = now + timedelta(seconds=lease_seconds)

    session = get_sessionmaker()()
    try:
        candidate_ids = (
            session.execute(
                select(OutboxRecord.id)
                .where(*due)
                .order_by(OutboxRecord.next_attempt_at.asc(), OutboxRecord.created_at.asc())
                .limit(batch_size)
                .with_for_update(skip_locked=True)
            )
            .scalars()
            .all()
        )

        claimed: List[uuid.UUID] = []
        for record_id in candidate_ids:
            result = session.execute(
                update(OutboxRecord)
                .where(OutboxRecord.id == record_id, *due)
                .values(claimed_until=lease_until, updated_at=now)
            )
            if result.rowcount > 0:
                claimed.append(record_id)
        session.commit()

        if not claimed:
            return []
        rows = (
            session.execute(
                select(OutboxRecord)
                .where(OutboxRecord.id.in_(claimed))
                .order_by(OutboxRecord.next_attempt_at.asc(), OutboxRecord.created_at.asc())
            )
            .scalars()
            .all()
        )
        return list(rows)
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def _transition(record_id: uuid.UUID, expected_attempts: int, values: Dict[str, Any]) -> bool:
    # Guarded on status and attempt_count so a concurrent writer is never overwritten.
    session = get_sessionmaker()()
    try:
        result = session.execute(
            update(OutboxRecord)
            .where(
                OutboxRecord.id == record_id,
                OutboxRecord.status == STATUS_QUEUED,
                OutboxRecord.attempt_count == expected_attempts,
            )
            .values(claimed_until=None, **values)
        )
        session.commit()
        return result.rowcount > 0
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def mark_sent(record_id: uuid.UUID, *, expected_attempts: int, response: Any, now: datetime) -> bool:
    return _transition(
        record_id,
        expected_attempts,
        {
            "status": STATUS_SENT,
            "provider_response": response,
            "attempt_count": expected_attempts + 1,
            "last_error": None,
            "sent_at": now,
            "updated_at": now,
        },
    )


def mark_rate_limited(
    record_id: uuid.UUID,
    *,
    expected_attempts: int,
    next_attempt_at: datetime,
    now: datetime,
) -> bool:
    return _transition(
        record_id,
        expected_attempts,
        {
            "rate_limited_at": now,
            "next_attempt_at": next_attempt_at,
            "updated_at": now,
        },
    )


def mark_retry(
    record_id: uuid.UUID,
    *,
    expected_attempts: int,
    next_attempt_at: datetime,
    error_message: Any,
    now: datetime,
) -> bool:
    return _transition(
        record_id,
        expected_attempts,
        {
            "attempt_count": expected_attempts + 1,
            "next_attempt_at": next_attempt_at,
            "last_error": _clean_str(error_message)[:MAX_ERROR_CHARS],
            "updated_at": now,
        },
    )


def mark_dead_letter(record_id: uuid.UUID, *, expected_attempts: int, error_message: Any, now: datetime) -> bool:
    return _transition(
        record_id,
        expected_attempts,
        {
            "status": STATUS_DEAD_LETTER,
            "attempt_count": expected_attempts + 1,
            "last_error": _clean_str(error_message)[:MAX_ERROR_CHARS],
            "updated_at": now,
        },
    )


def list_stale_queued(integration_id: str, *, created_before: datetime, limit: Optional[int] = None) -> List[OutboxRecord]:
    """Queued records of one integration created before the cutoff, oldest first."""
    session = get_sessionmaker()()
    try:
        stmt = (
            select(OutboxRecord)
            .where(
                OutboxRecord.integration_id == integration_id,
                OutboxRecord.status == STATUS_QUEUED,
                OutboxRecord.created_at < created_before,
            )
            .order_by(OutboxRecord.created_at.asc())
        )
        if limit is not None:
            stmt = stmt.limit(limit)
        return list(session.execute(stmt).scalars().all())
    finally:
        session.close()


def reset_stuck_record(record_id: uuid.UUID, *, now: datetime) -> bool:
    """Make a stale queued record due now. Records under a live dispatch lease are left alone."""
    session = get_sessionmaker()()
    try:
        result = session.execute(
            update(OutboxRecord)
            .where(
                OutboxRecord.id == record_id,
                OutboxRecord.status == STATUS_QUEUED,
                or_(OutboxRecord.claimed_until.is_(None), OutboxRecord.claimed_until < now),
            )
            .values(status=STATUS_QUEUED, attempt_count=0, next_attempt_at=now, updated_at=now)
        )
        session.commit()
        return result.rowcount > 0
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def requeue_dead_letter(record_id: Any, *, now: datetime | None = None) -> OutboxRecord:
    """Operator action: move a dead-lettered record back into the deliverable pool."""
    record_uuid = _normalize_uuid(record_id)
    now = now or utc_now()
    session = get_sessionmaker()()
    try:
        row = session.get(OutboxRecord, record_uuid)
        if row is None:
            raise NotFound(f"outbox record {record_id} not found")
        if row.status != STATUS_DEAD_LETTER:
            raise InvalidRequest(f"outbox record {record_id} is {row.status}, not {STATUS_DEAD_LETTER}")
        result = session.execute(
            update(OutboxRecord)
            .where(OutboxRecord.id == record_uuid, OutboxRecord.status == STATUS_DEAD_LETTER)
            .values(
                status=STATUS_QUEUED,
                attempt_count=0,
                next_attempt_at=now,
                claimed_until=None,
                updated_at=now,
            )
        )
        session.commit()
        if result.rowcount == 0:
            raise InvalidRequest(f"outbox record {record_id} changed while requeueing")
        session.refresh(row)
        logger.info("outbox_requeue_dead_letter record_id=%s integration=%s", row.id, row.integration_id)
        return row
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def touch_integration_state(
    integration_id: str,
    *,
    last_dispatch_at: datetime | None = None,
    last_reconcile_at: datetime | None = None,
) -> None:
    values: Dict[str, Any] = {}
    if last_dispatch_at is not None:
        values["last_dispatch_at"] = last_dispatch_at
    if last_reconcile_at is not None:
        values["last_reconcile_at"] = last_reconcile_at
    if not values:
        return
    now = utc_now()

    session = get_sessionmaker()()
    try:
        stmt = (
            dialect_insert(session, IntegrationState)
            .values(id=uuid.uuid4(), integration_id=integration_id, updated_at=now, **values)
            .on_conflict_do_update(
                index_elements=[IntegrationState.integration_id],
                set_={**values, "updated_at": now},
            )
        )
        session.execute(stmt)
        session.commit()
    except Exception as exc:
        session.rollback()
        logger.exception("integration_state_update_failed integration=%s err=%s", integration_id, exc)
        raise
    finally:
        session.close()


def get_integration_state(integration_id: str) -> IntegrationState | None:
    session = get_sessionmaker()()
    try:
        return session.execute(
            select(IntegrationState).where(IntegrationState.integration_id == integration_id)
        ).scalar_one_or_none()
    finally:
        session.close()
