"""
Celery application: broker and result backend from settings.
Periodic sweeps live in marketplace.workers.tasks (auto-release, subscription expiry).
"""
from celery import Celery
from celery.schedules import crontab
from celery.signals import setup_logging

from marketplace.core.config import settings
from marketplace.core.logging import configure_logging

celery_app = Celery(
    "marketplace",
    broker=settings.celery_broker_url,
    backend=settings.celery_result_backend,
    include=[
        "marketplace.workers.tasks.auto_release",
        "marketplace.workers.tasks.subscriptions",
    ],
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    task_acks_late=True,
    worker_prefetch_multiplier=1,
    task_track_started=True,
    task_time_limit=3600,
    result_expires=86400,
    beat_schedule={
        "release-due-escrows": {
            "task": "marketplace.workers.tasks.auto_release.release_due_escrows",
            "schedule": crontab(minute=f"*/{settings.auto_release_interval_minutes}"),
        },
        "expire-subscriptions": {
            "task": "marketplace.workers.tasks.subscriptions.expire_subscriptions",
            "schedule": crontab(minute=f"*/{settings.subscription_expiry_interval_minutes}"),
        },
    },
)

celery_app.conf.task_routes = {
    settings.notification_task_name: {"queue": settings.notification_queue},
}


@setup_logging.connect
def _configure_worker_logging(**kwargs) -> None:
    configure_logging()
