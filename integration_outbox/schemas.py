from __future__ import annotations

from datetime import datetime
from typing import Any, Dict
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field


class OutboxRecordSchema(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    integration_id: str
    operation: str
    stable_resource_id: str
    payload: Any
    idempotency_key: str
    status: str
    attempt_count: int
    next_attempt_at: datetime | None = None
    rate_limited_at: datetime | None = None
    last_error: str | None = None
    provider_response: Any = None
    created_at: datetime
    updated_at: datetime
    sent_at: datetime | None = None


class OutboxListResponse(BaseModel):
    items: list[OutboxRecordSchema]
    page: int
    page_size: int
    total: int
    status_filter: str | None = None
    integration_filter: str | None = None


class EnqueueRequest(BaseModel):
    integration_id: str | None = None
    operation: str | None = None
    stable_resource_id: str | None = None
    payload: Any = Field(default=None, validation_alias="payload_json")

    model_config = ConfigDict(populate_by_name=True)


class DispatchRequest(BaseModel):
    batch_size: int = Field(default=50, ge=1, le=1000)


class DispatchResponse(BaseModel):
    success: bool = True
    results: Dict[str, int]
    timestamp: datetime


class ReconcileRequest(BaseModel):
    integration_id: str = Field(..., min_length=1)
    max_items: int = Field(default=3000, ge=0)
    hard_timeout: float = Field(default=6900, ge=0)


class ReconcileRunSchema(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    integration_id: str
    status: str
    started_at: datetime
    finished_at: datetime | None = None
    checked: int
    drift_fixed: int
    api_calls: int
    rate_limited_429: int
    failures: int
    notes: Dict[str, Any] | None = None


class ReconcileRunListResponse(BaseModel):
    items: list[ReconcileRunSchema]
    page: int
    page_size: int
    total: int


class QueueStatsResponse(BaseModel):
    queued: int = 0
    sent: int = 0
    dead_letter: int = 0
