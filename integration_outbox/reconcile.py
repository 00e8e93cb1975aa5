from __future__ import annotations

import logging
import time
import uuid
from datetime import timedelta
from typing import Any, Callable, Dict, List, Tuple

from sqlalchemy import func, select, update

from . import outbox, settings
from .db import get_sessionmaker
from .db_models import RUN_FAILED, RUN_RUNNING, RUN_SUCCESS, ReconcileRun, utc_now
from .errors import InvalidRequest, NotFound, SweepTimeout
from .rate_limits import RateLimitTable

logger = logging.getLogger(__name__)

DEFAULT_MAX_ITEMS = 3000
DEFAULT_HARD_TIMEOUT_SECONDS = 6900


def _open_run(integration_id: str, started_at) -> ReconcileRun:
    session = get_sessionmaker()()
    try:
        run = ReconcileRun(
            id=uuid.uuid4(),
            integration_id=integration_id,
            status=RUN_RUNNING,
            started_at=started_at,
            checked=0,
            drift_fixed=0,
            api_calls=0,
            rate_limited_429=0,
            failures=0,
        )
        session.add(run)
        session.commit()
        session.refresh(run)
        return run
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def _finish_run(run_id: uuid.UUID, status: str, counters: Dict[str, int], notes: Dict[str, Any] | None) -> ReconcileRun:
    session = get_sessionmaker()()
    try:
        session.execute(
            update(ReconcileRun)
            .where(ReconcileRun.id == run_id)
            .values(status=status, finished_at=utc_now(), notes=notes, **counters)
        )
        session.commit()
        run = session.get(ReconcileRun, run_id)
        if run is None:
            raise NotFound(f"reconcile run {run_id} not found")
        return run
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def list_runs(
    *,
    integration_id: str | None = None,
    page: int = 1,
    page_size: int = 50,
) -> Tuple[List[ReconcileRun], int]:
    session = get_sessionmaker()()
    try:
        count_stmt = select(func.count()).select_from(ReconcileRun)
        stmt = select(ReconcileRun).order_by(ReconcileRun.started_at.desc())
        if integration_id:
            count_stmt = count_stmt.where(ReconcileRun.integration_id == integration_id)
            stmt = stmt.where(ReconcileRun.integration_id == integration_id)
        total = session.execute(count_stmt).scalar_one()
        rows = session.execute(stmt.offset((page - 1) * page_size).limit(page_size)).scalars().all()
        return list(rows), total
    finally:
        session.close()


class ReconciliationSweeper:
    """
    Resets queued records that have sat in the outbox past the staleness
    threshold so the next dispatch picks them up immediately.

    Only `queued` records are ever touched; sent and dead-lettered records are
    outside the sweep. The hard timeout is a budget for the whole run.
    """

    def __init__(
        self,
        rate_limits: RateLimitTable,
        *,
        stale_after_seconds: float | None = None,
        now: Callable = utc_now,
        monotonic: Callable[[], float] = time.monotonic,
    ):
        self.rate_limits = rate_limits
        self.stale_after = timedelta(
            seconds=stale_after_seconds if stale_after_seconds is not None else settings.stale_after_seconds()
        )
        self._now = now
        self._monotonic = monotonic

    def reconcile(
        self,
        integration_id: str,
        max_items: int = DEFAULT_MAX_ITEMS,
        hard_timeout: float = DEFAULT_HARD_TIMEOUT_SECONDS,
    ) -> ReconcileRun:
        integration_id = (integration_id or "").strip()
        if not integration_id:
            raise InvalidRequest("missing integration_id")
        if max_items < 0 or hard_timeout < 0:
            raise InvalidRequest("max_items and hard_timeout must be non-negative")
        if integration_id not in self.rate_limits and not outbox.integration_has_records(integration_id):
            raise NotFound(f"integration {integration_id} not found")

        started = self._monotonic()
        run = _open_run(integration_id, self._now())
        logger.info(
            "reconcile_start run_id=%s integration=%s max_items=%s hard_timeout=%s",
            run.id,
            integration_id,
            max_items,
            hard_timeout,
        )
        counters = {"checked": 0, "drift_fixed": 0, "api_calls": 0, "rate_limited_429": 0, "failures": 0}
        notes: Dict[str, Any] | None = None

        try:
            # Only stale records count as checked, and max_items caps those.
            items = outbox.list_stale_queued(
                integration_id, created_before=self._now() - self.stale_after, limit=max_items
            )
            try:
                for item in items:
                    elapsed = self._monotonic() - started
                    if elapsed >= hard_timeout:
                        raise SweepTimeout(f"hard timeout reached after {elapsed:.1f}s")
                    if counters["checked"] >= max_items:
                        break
                    counters["checked"] += 1

                    if outbox.reset_stuck_record(item.id, now=self._now()):
                        counters["drift_fixed"] += 1
                        logger.info(
                            "reconcile_drift_fixed run_id=%s record_id=%s integration=%s",
                            run.id,
                            item.id,
                            integration_id,
                        )
            except SweepTimeout as exc:
                notes = {"stopped": "hard_timeout", "detail": str(exc)}
                logger.warning("reconcile_hard_timeout run_id=%s integration=%s checked=%s", run.id, integration_id, counters["checked"])

            outbox.touch_integration_state(integration_id, last_reconcile_at=self._now())
            run = _finish_run(run.id, RUN_SUCCESS, counters, notes)
            logger.info(
                "reconcile_done run_id=%s integration=%s checked=%s drift_fixed=%s duration_ms=%s",
                run.id,
                integration_id,
                counters["checked"],
                counters["drift_fixed"],
                int((self._monotonic() - started) * 1000),
            )
            return run
        except Exception as exc:
            logger.exception("reconcile_failed run_id=%s integration=%s err=%s", run.id, integration_id, exc)
            counters["failures"] += 1
            return _finish_run(run.id, RUN_FAILED, counters, {"error": str(exc)})
