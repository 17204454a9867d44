"""
Celery Configuration for Maintenance
------------------------------------
This module configures Celery for the engine's periodic maintenance work:
archival of resources gone from both sources, retention of terminal drift
records and compaction of the event log.
"""

from celery import Celery
from celery.schedules import crontab
from driftwatch.core.config import settings

# Create Celery instance
celery_app = Celery(
    "driftwatch",
    broker=settings.CELERY_BROKER_URL,
    backend=settings.CELERY_RESULT_BACKEND,
    include=[
        "driftwatch.tasks.maintenance_tasks",
    ]
)

# Configure Celery
celery_app.conf.update(
    # Task settings
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,

    # Task routing
    task_routes={
        "driftwatch.tasks.maintenance_tasks.*": {"queue": "maintenance"},
    },

    # Worker settings
    worker_prefetch_multiplier=1,
    task_acks_late=True,
    worker_max_tasks_per_child=1000,

    # Task execution settings
    task_soft_time_limit=300,  # 5 minutes
    task_time_limit=600,       # 10 minutes
    task_max_retries=3,
    task_default_retry_delay=60,

    # Result backend settings
    result_expires=3600,  # 1 hour

    # Beat schedule for periodic tasks
    beat_schedule={
        "archive-stale-resources": {
            "task": "driftwatch.tasks.maintenance_tasks.archive_stale_resources",
            "schedule": crontab(minute=15),  # Hourly
            "options": {"queue": "maintenance"}
        },
        "purge-old-records": {
            "task": "driftwatch.tasks.maintenance_tasks.purge_old_records",
            "schedule": crontab(hour=2, minute=0),  # Daily at 2 AM
            "options": {"queue": "maintenance"}
        },
        "compact-event-log": {
            "task": "driftwatch.tasks.maintenance_tasks.compact_event_log",
            "schedule": crontab(hour=3, minute=0),  # Daily at 3 AM
            "options": {"queue": "maintenance"}
        },
    },
)
