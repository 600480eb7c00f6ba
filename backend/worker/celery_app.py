"""Celery application configuration.

This module sets up the Celery app with:
- Redis as broker and result backend
- Task routing to the tick and maintenance queues
- Serialization and timezone settings
- Beat schedule driving the once-a-minute engine tick
"""

from celery import Celery
from celery.schedules import crontab
from celery.signals import setup_logging as celery_setup_logging

from app.config import get_settings

settings = get_settings()

# Create Celery app
celery_app = Celery(
    "journey_engine",
    broker=settings.REDIS_URL,
    backend=settings.REDIS_URL,
)

# Configuration
celery_app.conf.update(
    # Serialization
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",

    # Timezone
    timezone="UTC",
    enable_utc=True,

    task_routes={
        "worker.tasks.tick.*": {"queue": "ticks"},
        "worker.tasks.maintenance.*": {"queue": "default"},
        "worker.tasks.*": {"queue": "default"},
    },

    # Default queue
    task_default_queue="default",

    # Result expiration (24 hours)
    result_expires=86400,

    # A tick that overruns the next beat simply overlaps it
    task_soft_time_limit=240,
    task_time_limit=300,
    task_acks_late=True,
    worker_prefetch_multiplier=1,

    task_reject_on_worker_lost=True,
    task_acks_on_failure_or_timeout=True,

    beat_schedule={
        "run-workflow-tick": {
            "task": "worker.tasks.tick.run_tick",
            "schedule": crontab(minute="*/1"),  # Every minute
            "options": {"queue": "ticks"},
        },
        "purge-old-executions": {
            "task": "worker.tasks.maintenance.run_maintenance",
            "schedule": crontab(hour=3, minute=0),  # Daily at 3 AM
            "options": {"queue": "default"},
        },
    },

    include=[
        "worker.tasks.tick",
        "worker.tasks.maintenance",
    ],
)


@celery_setup_logging.connect
def configure_worker_logging(**kwargs):
    """Replace Celery's own log setup with the shared structlog pipeline."""
    from core.logging_config import setup_logging

    setup_logging(service="worker")
