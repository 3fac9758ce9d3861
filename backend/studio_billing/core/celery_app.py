"""Celery application configuration."""

from celery import Celery
from celery.schedules import crontab

from studio_billing.core.config import settings

celery_app = Celery(
    "studio_billing",
    broker=settings.REDIS_URL,
    backend=settings.REDIS_URL,
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_track_started=True,
    task_time_limit=3600,
    worker_prefetch_multiplier=1,
    task_acks_late=True,
    task_reject_on_worker_lost=True,
    beat_schedule={
        "reconcile-all-tenant-subscriptions": {
            "task": "billing.reconcile_all_tenants",
            "schedule": crontab(hour=3, minute=15),
        },
    },
)

celery_app.autodiscover_tasks(["studio_billing.modules.billing"])
