"""Celery application for the Stripe sync worker."""

from datetime import timedelta

from celery import Celery
from celery.schedules import crontab

from catalog_sync.config import get_settings
from catalog_sync.logging_config import configure_logging

settings = get_settings()
configure_logging()

app = Celery(
    "sync_worker",
    broker=settings.celery_broker,
    backend=settings.celery_backend,
    include=["sync_worker.tasks.sync_queue"],
)

app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_track_started=True,
    task_time_limit=300,  # 5 minutes
    task_soft_time_limit=240,  # 4 minutes
    worker_prefetch_multiplier=1,
    task_acks_late=True,
    task_reject_on_worker_lost=True,
    task_default_queue="stripe_sync",
    task_routes={
        "sync_worker.tasks.*": {"queue": "stripe_sync"},
    },
)

app.conf.beat_schedule = {
    "process-stripe-sync-queue": {
        "task": "sync_worker.tasks.sync_queue.process_stripe_sync_queue",
        "schedule": crontab(),  # Every minute
    },
    "queue-unsynced-products": {
        "task": "sync_worker.tasks.sync_queue.queue_unsynced_products",
        "schedule": timedelta(minutes=settings.sync_enqueue_interval_minutes),
    },
    "cleanup-stripe-sync-queue": {
        "task": "sync_worker.tasks.sync_queue.cleanup_stripe_sync_queue",
        "schedule": crontab(minute=0, hour=3),
    },
}


def run() -> None:
    """Run the Celery worker."""
    app.worker_main(["worker", "--loglevel=info", "-Q", "stripe_sync"])


if __name__ == "__main__":
    run()
