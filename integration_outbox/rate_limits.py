from __future__ import annotations

import asyncio
import json
import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Mapping

from . import settings

logger = logging.getLogger(__name__)

FALLBACK_INTEGRATION = "custom_api"


@dataclass(frozen=True)
class RateLimit:
    requests_per_minute: int
    requests_per_second: int

    @property
    def min_interval_seconds(self) -> float:
        return 60.0 / self.requests_per_minute


DEFAULT_RATE_LIMITS: Dict[str, RateLimit] = {
    "google_sheets": RateLimit(300, 5),
    "google_drive": RateLimit(300, 5),
    "google_docs": RateLimit(300, 5),
    "google_slides": RateLimit(300, 5),
    "google_calendar": RateLimit(300, 5),
    "slack": RateLimit(60, 1),
    "notion": RateLimit(300, 3),
    "resend": RateLimit(120, 2),
    "twilio": RateLimit(60, 1),
    "openai_tts": RateLimit(200, 1),
    "elevenlabs": RateLimit(100, 1),
    "fal_ai": RateLimit(100, 1),
    "brightdata": RateLimit(60, 1),
    "x_twitter": RateLimit(300, 1),
    "hubspot": RateLimit(300, 3),
    "monday": RateLimit(100, 1),
    "zapier": RateLimit(60, 1),
    "linkedin": RateLimit(100, 1),
    "tiktok": RateLimit(60, 1),
    FALLBACK_INTEGRATION: RateLimit(100, 1),
}


class RateLimitTable:
    """Read-only per-integration pacing table with a fallback entry."""

    def __init__(self, limits: Mapping[str, RateLimit], fallback: str = FALLBACK_INTEGRATION):
        if fallback not in limits:
            raise ValueError(f"fallback integration {fallback!r} missing from rate limit table")
        for name, limit in limits.items():
            if limit.requests_per_minute <= 0:
                raise ValueError(f"requests_per_minute must be positive for {name!r}")
        self._limits = dict(limits)
        self._fallback = fallback

    def __contains__(self, integration_id: object) -> bool:
        return integration_id in self._limits

    def integrations(self) -> list[str]:
        return sorted(self._limits)

    def limit_for(self, integration_id: str) -> RateLimit:
        return self._limits.get(integration_id) or self._limits[self._fallback]

    def min_interval_seconds(self, integration_id: str) -> float:
        return self.limit_for(integration_id).min_interval_seconds

    @classmethod
    def from_mapping(cls, raw: Mapping[str, Any], base: Mapping[str, RateLimit] | None = None) -> "RateLimitTable":
        limits = dict(base if base is not None else DEFAULT_RATE_LIMITS)
        for name, entry in raw.items():
            if not isinstance(entry, Mapping):
                raise ValueError(f"rate limit entry for {name!r} must be an object")
            rpm = int(entry.get("rpm", entry.get("requests_per_minute", 0)))
            rps = int(entry.get("rps", entry.get("requests_per_second", 1)))
            limits[str(name)] = RateLimit(rpm, rps)
        return cls(limits)


def load_rate_limit_table() -> RateLimitTable:
    raw = settings.rate_limits_json()
    if not raw:
        return RateLimitTable(DEFAULT_RATE_LIMITS)
    try:
        data = json.loads(raw)
        if not isinstance(data, dict):
            raise ValueError("OUTBOX_RATE_LIMITS_JSON must be a JSON object")
        return RateLimitTable.from_mapping(data)
    except Exception as exc:
        logger.error("rate_limits_override_invalid err=%s", exc)
        raise


class Pacer:
    """
    Enforces the minimum spacing between calls to one integration.

    Holds the time each integration was last called; `wait` sleeps only for
    the remainder of the interval, so no burst is ever allowed.
    """

    def __init__(
        self,
        table: RateLimitTable,
        *,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self._table = table
        self._clock = clock
        self._sleep = sleep
        self._last_call: Dict[str, float] = {}
        self._locks: Dict[str, asyncio.Lock] = {}

    def _lock(self, integration_id: str) -> asyncio.Lock:
        lock = self._locks.get(integration_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[integration_id] = lock
        return lock

    async def wait(self, integration_id: str) -> float:
        """Block until the next call may start; returns the seconds slept."""
        async with self._lock(integration_id):
            interval = self._table.min_interval_seconds(integration_id)
            last = self._last_call.get(integration_id)
            slept = 0.0
            if last is not None:
                remaining = interval - (self._clock() - last)
                if remaining > 0:
                    await self._sleep(remaining)
                    slept = remaining
            self._last_call[integration_id] = self._clock()
            return slept
