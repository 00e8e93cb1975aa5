from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional, Protocol

import httpx

from . import settings
from .errors import ProviderFailure

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ProviderResult:
    ok: bool
    status_code: int | None = None
    data: Any = None
    error: str | None = None
    retry_after: float | None = None

    @property
    def rate_limited(self) -> bool:
        return self.status_code == 429


class ProviderAdapter(Protocol):
    async def send(self, integration_id: str, operation: str, payload: Any) -> ProviderResult: ...


class AdapterRegistry:
    def __init__(self, adapters: Optional[Dict[str, ProviderAdapter]] = None):
        self._adapters: Dict[str, ProviderAdapter] = dict(adapters or {})

    def register(self, integration_id: str, adapter: ProviderAdapter) -> None:
        self._adapters[integration_id] = adapter

    def get(self, integration_id: str) -> ProviderAdapter:
        adapter = self._adapters.get(integration_id)
        if adapter is None:
            raise ProviderFailure(f"no adapter registered for integration {integration_id}")
        return adapter


def parse_retry_after(value: Any) -> float | None:
    raw = str(value).strip() if value is not None else ""
    if not raw:
        return None
    try:
        seconds = float(raw)
    except ValueError:
        # HTTP-date form is not worth honoring here; fall back to the default.
        return None
    return seconds if seconds >= 0 else None


class WebhookAdapter:
    """
    Posts `{operation, payload}` as JSON to a fixed URL.

    A 2xx is success, 429 is a rate-limit signal carrying Retry-After, anything
    else is a failure with a truncated response body for `last_error`.
    """

    def __init__(
        self,
        url: str,
        *,
        headers: Optional[Dict[str, str]] = None,
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.url = url
        self.headers = {"Content-Type": "application/json", **(headers or {})}
        self.timeout = timeout
        self._transport = transport

    async def send(self, integration_id: str, operation: str, payload: Any) -> ProviderResult:
        body = json.dumps(
            {"integration_id": integration_id, "operation": operation, "payload": payload},
            ensure_ascii=False,
        ).encode("utf-8")

        async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
            resp = await client.post(self.url, content=body, headers=self.headers)

        if resp.status_code == 429:
            return ProviderResult(
                ok=False,
                status_code=429,
                error="rate limited",
                retry_after=parse_retry_after(resp.headers.get("retry-after")),
            )
        if 200 <= resp.status_code < 300:
            try:
                data = resp.json()
            except ValueError:
                data = {"body": (resp.text or "")[:600]}
            return ProviderResult(ok=True, status_code=resp.status_code, data=data)

        resp_body = (resp.text or "")[:600]
        return ProviderResult(ok=False, status_code=resp.status_code, error=f"{resp.status_code}:{resp_body}")


def build_default_registry(integration_ids: list[str]) -> AdapterRegistry:
    registry = AdapterRegistry()
    timeout = settings.provider_timeout_seconds()
    for integration_id in integration_ids:
        url = settings.webhook_url_for(integration_id)
        if url:
            registry.register(integration_id, WebhookAdapter(url, timeout=timeout))
            logger.info("adapter_registered integration=%s kind=webhook", integration_id)
    return registry
