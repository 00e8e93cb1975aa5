from __future__ import annotations

import logging
import os
from typing import Any

logger = logging.getLogger(__name__)


def _clean_str(value: Any) -> str:
    return str(value).strip() if value is not None else ""


def _env_int(name: str, default: int, *, minimum: int = 0) -> int:
    raw = _clean_str(os.getenv(name, ""))
    if not raw:
        return default
    try:
        value = int(raw)
    except Exception:
        logger.warning("settings_invalid_int name=%s value=%s default=%s", name, raw, default)
        return default
    return max(value, minimum)


def _env_float(name: str, default: float, *, minimum: float = 0.0) -> float:
    raw = _clean_str(os.getenv(name, ""))
    if not raw:
        return default
    try:
        value = float(raw)
    except Exception:
        logger.warning("settings_invalid_float name=%s value=%s default=%s", name, raw, default)
        return default
    return max(value, minimum)


def max_attempts() -> int:
    return _env_int("OUTBOX_MAX_ATTEMPTS", 5, minimum=1)


def backoff_multiplier() -> float:
    return _env_float("OUTBOX_BACKOFF_MULTIPLIER", 2.0, minimum=1.0)


def default_retry_after_seconds() -> float:
    return _env_float("OUTBOX_DEFAULT_RETRY_AFTER_SECONDS", 60.0)


def stale_after_seconds() -> float:
    return _env_float("OUTBOX_STALE_AFTER_HOURS", 6.0) * 60 * 60


def claim_lease_seconds() -> float:
    return _env_float("OUTBOX_CLAIM_LEASE_SECONDS", 900.0, minimum=1.0)


def provider_timeout_seconds() -> float:
    return _env_float("OUTBOX_PROVIDER_TIMEOUT_SECONDS", 30.0, minimum=0.1)


def dispatch_batch_size() -> int:
    return _env_int("OUTBOX_DISPATCH_BATCH_SIZE", 50, minimum=1)


def rate_limits_json() -> str:
    return _clean_str(os.getenv("OUTBOX_RATE_LIMITS_JSON", ""))


def webhook_url_for(integration_id: str) -> str:
    return _clean_str(os.getenv(f"OUTBOX_WEBHOOK_URL_{integration_id.upper()}", ""))
