import os
from celery import Celery
from celery.schedules import crontab
from celery.signals import setup_logging

REDIS_URL = os.getenv("REDIS_URL", "redis://localhost:6379/0")

celery_app = Celery(
    "integration_outbox",
    broker=REDIS_URL,
    backend=REDIS_URL,
    include=["integration_outbox.tasks"],
)

celery_app.conf.update(
    timezone=os.getenv("CELERY_TIMEZONE", "UTC"),
    enable_utc=True,

    task_acks_late=True,
    task_reject_on_worker_lost=True,
    task_track_started=True,
    worker_prefetch_multiplier=1,
    broker_transport_options={"visibility_timeout": 60 * 60 * 2},

    beat_schedule={
        "dispatch-outbox": {
            "task": "integration_outbox.tasks.dispatch_outbox",
            "schedule": crontab(minute="*"),
        },
        "reconcile-outbox": {
            "task": "integration_outbox.tasks.reconcile_all_integrations",
            "schedule": crontab(minute=15, hour="*/6"),
        },
    },
)


@setup_logging.connect
def _configure_worker_logging(**kwargs):
    from .logging_utils import configure_logging

    configure_logging()
