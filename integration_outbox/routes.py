from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query

from . import outbox, reconcile, settings
from .auth import require_admin_auth, require_bearer
from .db_models import RUN_FAILED
from .dispatch import DispatchScheduler
from .errors import InvalidRequest, NotFound
from .reconcile import ReconciliationSweeper
from .schemas import (
    DispatchRequest,
    DispatchResponse,
    EnqueueRequest,
    OutboxListResponse,
    OutboxRecordSchema,
    QueueStatsResponse,
    ReconcileRequest,
    ReconcileRunListResponse,
    ReconcileRunSchema,
)
from .services import get_scheduler, get_sweeper

router = APIRouter(prefix="/outbox", tags=["outbox"])

DEFAULT_PAGE_SIZE = 50
MAX_PAGE_SIZE = 200


@router.post("/enqueue", response_model=OutboxRecordSchema, dependencies=[Depends(require_bearer)])
def enqueue_record(payload: EnqueueRequest):
    try:
        row = outbox.enqueue(
            payload.integration_id,
            payload.operation,
            payload.stable_resource_id,
            payload.payload,
        )
    except InvalidRequest as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    return OutboxRecordSchema.model_validate(row)


@router.post("/dispatch", response_model=DispatchResponse, dependencies=[Depends(require_admin_auth)])
def dispatch_outbox(
    payload: DispatchRequest | None = None,
    scheduler: DispatchScheduler = Depends(get_scheduler),
):
    # Runs in the threadpool on its own event loop, never on the server loop.
    batch_size = payload.batch_size if payload is not None else settings.dispatch_batch_size()
    summary = asyncio.run(scheduler.dispatch_batch(batch_size))
    return DispatchResponse(results=summary.as_dict(), timestamp=datetime.now(timezone.utc))


@router.post("/reconcile", response_model=ReconcileRunSchema, dependencies=[Depends(require_admin_auth)])
def reconcile_integration(
    payload: ReconcileRequest,
    sweeper: ReconciliationSweeper = Depends(get_sweeper),
):
    try:
        run = sweeper.reconcile(payload.integration_id, payload.max_items, payload.hard_timeout)
    except InvalidRequest as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    except NotFound as exc:
        raise HTTPException(status_code=404, detail=str(exc))
    body = ReconcileRunSchema.model_validate(run)
    if run.status == RUN_FAILED:
        raise HTTPException(status_code=500, detail=body.model_dump(mode="json"))
    return body


@router.get("", response_model=OutboxListResponse, dependencies=[Depends(require_admin_auth)])
def list_outbox(
    status: str | None = Query(default=None),
    integration_id: str | None = Query(default=None),
    page: int = Query(default=1, ge=1),
    page_size: int = Query(default=DEFAULT_PAGE_SIZE, ge=1, le=MAX_PAGE_SIZE),
):
    try:
        items, total = outbox.list_records(
            status=status, integration_id=integration_id, page=page, page_size=page_size
        )
    except InvalidRequest as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    return OutboxListResponse(
        items=[OutboxRecordSchema.model_validate(item) for item in items],
        page=page,
        page_size=page_size,
        total=total,
        status_filter=status,
        integration_filter=integration_id,
    )


@router.get("/stats", response_model=QueueStatsResponse, dependencies=[Depends(require_admin_auth)])
def outbox_stats():
    return QueueStatsResponse(**outbox.queue_stats())


@router.get("/reconcile-runs", response_model=ReconcileRunListResponse, dependencies=[Depends(require_admin_auth)])
def list_reconcile_runs(
    integration_id: str | None = Query(default=None),
    page: int = Query(default=1, ge=1),
    page_size: int = Query(default=DEFAULT_PAGE_SIZE, ge=1, le=MAX_PAGE_SIZE),
):
    items, total = reconcile.list_runs(integration_id=integration_id, page=page, page_size=page_size)
    return ReconcileRunListResponse(
        items=[ReconcileRunSchema.model_validate(item) for item in items],
        page=page,
        page_size=page_size,
        total=total,
    )


@router.get("/{record_id}", response_model=OutboxRecordSchema, dependencies=[Depends(require_admin_auth)])
def get_outbox_record(record_id: UUID):
    try:
        row = outbox.get_record(record_id)
    except NotFound:
        raise HTTPException(status_code=404, detail="outbox record not found")
    return OutboxRecordSchema.model_validate(row)


@router.post("/{record_id}/requeue", response_model=OutboxRecordSchema, dependencies=[Depends(require_admin_auth)])
def requeue_record(record_id: UUID):
    try:
        row = outbox.requeue_dead_letter(record_id)
    except NotFound:
        raise HTTPException(status_code=404, detail="outbox record not found")
    except InvalidRequest as exc:
        raise HTTPException(status_code=409, detail=str(exc))
    return OutboxRecordSchema.model_validate(row)
