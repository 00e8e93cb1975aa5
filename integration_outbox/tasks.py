import asyncio
import logging

from celery.exceptions import SoftTimeLimitExceeded

from . import outbox, settings
from .celery_app import celery_app
from .db_models import RUN_FAILED
from .errors import SweepFailure
from .reconcile import DEFAULT_HARD_TIMEOUT_SECONDS, DEFAULT_MAX_ITEMS
from .services import get_scheduler, get_sweeper

logger = logging.getLogger(__name__)


@celery_app.task(
    name="integration_outbox.tasks.dispatch_outbox",
    soft_time_limit=60 * 9,
    time_limit=60 * 10,
)
def dispatch_outbox(batch_size: int | None = None):
    size = batch_size or settings.dispatch_batch_size()
    try:
        summary = asyncio.run(get_scheduler().dispatch_batch(size))
    except SoftTimeLimitExceeded:
        # Claimed records keep their lease and are picked up again once it expires.
        logger.warning("dispatch_task_soft_timeout batch_size=%s", size)
        raise
    return summary.as_dict()


@celery_app.task(
    name="integration_outbox.tasks.reconcile_integration",
    autoretry_for=(SweepFailure,),
    retry_backoff=True,
    retry_kwargs={"max_retries": 2},
    time_limit=DEFAULT_HARD_TIMEOUT_SECONDS + 60 * 5,
)
def reconcile_integration(
    integration_id: str,
    max_items: int = DEFAULT_MAX_ITEMS,
    hard_timeout: float = DEFAULT_HARD_TIMEOUT_SECONDS,
):
    run = get_sweeper().reconcile(integration_id, max_items, hard_timeout)
    if run.status == RUN_FAILED:
        raise SweepFailure(f"reconcile run {run.id} failed: {(run.notes or {}).get('error', '')}")
    return {
        "run_id": str(run.id),
        "integration_id": run.integration_id,
        "checked": run.checked,
        "drift_fixed": run.drift_fixed,
    }


@celery_app.task(name="integration_outbox.tasks.reconcile_all_integrations")
def reconcile_all_integrations():
    integration_ids = outbox.integrations_with_queued()
    for integration_id in integration_ids:
        reconcile_integration.delay(integration_id)
    logger.info("reconcile_fanout integrations=%s", ",".join(integration_ids))
    return {"scheduled": integration_ids}
