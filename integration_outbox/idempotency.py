from __future__ import annotations

import hashlib
import json
from typing import Any

from .errors import InvalidRequest


def canonical_payload(payload: Any) -> str:
    try:
        return json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=False)
    except (TypeError, ValueError) as exc:
        raise InvalidRequest(f"payload is not JSON serializable: {exc}") from exc


def idempotency_key(integration_id: str, operation: str, stable_resource_id: str, payload: Any) -> str:
    """
    Stable SHA-256 hex key for one logical delivery intent.

    The payload is canonicalized (sorted keys, compact separators) so key order
    and whitespace in the caller's JSON never produce a second record.
    """
    raw = f"{integration_id}:{operation}:{stable_resource_id}:{canonical_payload(payload)}"
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()
