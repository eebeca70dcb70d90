"""
WorkLog Sentinel - Celery Configuration

Celery configuration for background task processing.
Uses Redis as the message broker and result backend.
"""

from celery import Celery
from celery.schedules import crontab

from sentinel.config import settings


# Create Celery app
celery_app = Celery(
    'worklog_sentinel',
    broker=settings.redis_url,
    backend=settings.redis_url,
    include=['sentinel.tasks.celery_tasks'],
)

# Celery configuration
celery_app.conf.update(
    # Serialization
    task_serializer='json',
    accept_content=['json'],
    result_serializer='json',

    # Timezone
    timezone='UTC',
    enable_utc=True,

    # Task execution settings
    task_acks_late=True,
    task_reject_on_worker_lost=True,
    task_time_limit=900,  # 15 minutes
    task_soft_time_limit=840,

    # Worker settings
    worker_prefetch_multiplier=1,

    # Result backend settings
    result_expires=86400,  # 24 hours

    # Beat schedule for periodic tasks
    beat_schedule={
        # Retention cleanup every day at 3 AM
        'perform-retention-cleanup': {
            'task': 'sentinel.tasks.celery_tasks.perform_retention_cleanup_task',
            'schedule': crontab(hour=3, minute=0),
        },

        # Expired sessions every 15 minutes
        'cleanup-expired-sessions': {
            'task': 'sentinel.tasks.celery_tasks.cleanup_expired_sessions_task',
            'schedule': crontab(minute='*/15'),
        },
    },
)
