from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta
from typing import Awaitable, Callable, Dict, List

from . import outbox, settings
from .adapters import AdapterRegistry, ProviderResult
from .db_models import OutboxRecord, utc_now
from .errors import ProviderFailure, ProviderRateLimited
from .rate_limits import Pacer, RateLimitTable

logger = logging.getLogger(__name__)


@dataclass
class DispatchSummary:
    processed: int = 0
    sent: int = 0
    failed: int = 0
    dead_letter: int = 0
    rate_limited: int = 0

    def as_dict(self) -> Dict[str, int]:
        return asdict(self)


class DispatchScheduler:
    """
    Delivers due outbox records through their provider adapters.

    Records are partitioned by integration. Partitions run concurrently, records
    inside one partition run one at a time and are paced by the integration's
    minimum call spacing. A record's failure is contained to that record.
    """

    def __init__(
        self,
        rate_limits: RateLimitTable,
        adapters: AdapterRegistry,
        *,
        max_attempts: int | None = None,
        backoff_multiplier: float | None = None,
        default_retry_after: float | None = None,
        provider_timeout: float | None = None,
        lease_seconds: float | None = None,
        now: Callable[[], datetime] = utc_now,
        monotonic: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.rate_limits = rate_limits
        self.adapters = adapters
        self.max_attempts = max_attempts if max_attempts is not None else settings.max_attempts()
        self.backoff_multiplier = (
            backoff_multiplier if backoff_multiplier is not None else settings.backoff_multiplier()
        )
        self.default_retry_after = (
            default_retry_after if default_retry_after is not None else settings.default_retry_after_seconds()
        )
        self.provider_timeout = provider_timeout if provider_timeout is not None else settings.provider_timeout_seconds()
        self.lease_seconds = lease_seconds if lease_seconds is not None else settings.claim_lease_seconds()
        self._now = now
        self._monotonic = monotonic
        self._sleep = sleep

    def backoff_seconds(self, attempt_count: int) -> float:
        return float(self.backoff_multiplier**attempt_count)

    async def dispatch_batch(self, batch_size: int = 50) -> DispatchSummary:
        summary = DispatchSummary()
        records = outbox.claim_due_records(batch_size, now=self._now(), lease_seconds=self.lease_seconds)
        if not records:
            logger.info("outbox_dispatch_idle batch_size=%s", batch_size)
            return summary

        partitions: Dict[str, List[OutboxRecord]] = {}
        for record in records:
            partitions.setdefault(record.integration_id, []).append(record)

        logger.info(
            "outbox_dispatch_start batch_size=%s claimed=%s integrations=%s",
            batch_size,
            len(records),
            ",".join(sorted(partitions)),
        )
        pacer = Pacer(self.rate_limits, clock=self._monotonic, sleep=self._sleep)
        await asyncio.gather(
            *(self._run_partition(pacer, integration_id, items, summary) for integration_id, items in partitions.items())
        )
        logger.info("outbox_dispatch_done %s", " ".join(f"{k}={v}" for k, v in summary.as_dict().items()))
        return summary

    async def _run_partition(
        self,
        pacer: Pacer,
        integration_id: str,
        records: List[OutboxRecord],
        summary: DispatchSummary,
    ) -> None:
        for record in records:
            summary.processed += 1
            try:
                await pacer.wait(integration_id)
                await self._deliver(record, summary)
            except Exception as exc:
                summary.failed += 1
                logger.exception(
                    "outbox_dispatch_record_error record_id=%s integration=%s err=%s",
                    record.id,
                    integration_id,
                    exc,
                )
        try:
            outbox.touch_integration_state(integration_id, last_dispatch_at=self._now())
        except Exception as exc:
            logger.warning("outbox_dispatch_state_failed integration=%s err=%s", integration_id, exc)

    async def _call_adapter(self, record: OutboxRecord) -> ProviderResult:
        adapter = self.adapters.get(record.integration_id)
        try:
            return await asyncio.wait_for(
                adapter.send(record.integration_id, record.operation, record.payload),
                timeout=self.provider_timeout,
            )
        except asyncio.TimeoutError:
            raise ProviderFailure(f"provider call timed out after {self.provider_timeout:g}s")

    async def _deliver(self, record: OutboxRecord, summary: DispatchSummary) -> None:
        try:
            result = await self._call_adapter(record)
        except ProviderRateLimited as exc:
            self._rate_limited(record, exc.retry_after, summary)
            return
        except Exception as exc:
            self._failed(record, str(exc) or exc.__class__.__name__, summary)
            return

        if result.rate_limited:
            self._rate_limited(record, result.retry_after, summary)
        elif result.ok:
            now = self._now()
            applied = outbox.mark_sent(
                record.id, expected_attempts=record.attempt_count, response=result.data, now=now
            )
            if applied:
                summary.sent += 1
            self._log_transition("sent", record, applied)
        else:
            self._failed(record, result.error or f"Provider returned {result.status_code}", summary)

    def _rate_limited(self, record: OutboxRecord, retry_after: float | None, summary: DispatchSummary) -> None:
        now = self._now()
        delay = retry_after if retry_after is not None else self.default_retry_after
        applied = outbox.mark_rate_limited(
            record.id,
            expected_attempts=record.attempt_count,
            next_attempt_at=now + timedelta(seconds=delay),
            now=now,
        )
        if applied:
            summary.rate_limited += 1
        self._log_transition("rate_limited", record, applied, retry_after=delay)

    def _failed(self, record: OutboxRecord, error: str, summary: DispatchSummary) -> None:
        now = self._now()
        attempts = record.attempt_count + 1
        if attempts >= self.max_attempts:
            applied = outbox.mark_dead_letter(
                record.id, expected_attempts=record.attempt_count, error_message=error, now=now
            )
            if applied:
                summary.dead_letter += 1
            self._log_transition("dead_letter", record, applied, attempts=attempts, err=error)
            return

        backoff = self.backoff_seconds(attempts)
        applied = outbox.mark_retry(
            record.id,
            expected_attempts=record.attempt_count,
            next_attempt_at=now + timedelta(seconds=backoff),
            error_message=error,
            now=now,
        )
        if applied:
            summary.failed += 1
        self._log_transition("retry", record, applied, attempts=attempts, backoff=backoff, err=error)

    def _log_transition(self, outcome: str, record: OutboxRecord, applied: bool, **fields) -> None:
        extra = " ".join(f"{k}={v}" for k, v in fields.items())
        if not applied:
            # Another worker or an operator moved the record first.
            logger.warning(
                "outbox_transition_skipped outcome=%s record_id=%s integration=%s %s",
                outcome,
                record.id,
                record.integration_id,
                extra,
            )
            return
        logger.info(
            "outbox_dispatch_%s record_id=%s integration=%s operation=%s %s",
            outcome,
            record.id,
            record.integration_id,
            record.operation,
            extra,
        )
