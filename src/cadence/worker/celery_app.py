"""Celery application for queued actions."""

from celery import Celery
from celery.schedules import crontab

from ..config import get_settings

settings = get_settings()

# Create Celery app
celery_app = Celery(
    "cadence",
    broker=settings.REDIS_URL,
    backend=settings.REDIS_URL,
    include=["cadence.worker.tasks"],
)

# Late acks so a crashed worker does not lose a conversation's next step
celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_track_started=True,
    task_acks_late=True,
    task_reject_on_worker_lost=True,
    task_time_limit=settings.LOCK_TTL,  # never outlive the conversation lock
    task_soft_time_limit=settings.LOCK_TTL - 60,
    task_ignore_result=True,
    worker_prefetch_multiplier=1,
    worker_max_tasks_per_child=1000,
    broker_connection_retry_on_startup=True,
)

# Periodic tasks (Celery Beat schedule)
celery_app.conf.beat_schedule = {
    # Season check, natural evolution and memory maintenance
    "periodic-tick": {
        "task": "cadence.worker.tasks.periodic_tick",
        "schedule": crontab(minute=0),  # Every hour on the hour
    },
}

if __name__ == "__main__":
    celery_app.start()
