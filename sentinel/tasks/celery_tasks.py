"""
WorkLog Sentinel - Celery Tasks

Celery entry points for the scheduled jobs.
"""

import asyncio
import logging
from typing import Any, Dict

from celery import shared_task

from sentinel.config import settings
from sentinel.database import build_engine, build_session_factory
from sentinel.tasks import scheduled_tasks

logger = logging.getLogger(__name__)


def run_async(coro):
    """Helper to run async functions in Celery tasks."""
    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)
    try:
        return loop.run_until_complete(coro)
    finally:
        loop.close()


async def _run_job(job) -> Dict[str, Any]:
    # Pooled connections are bound to the loop that opened them
    engine = build_engine(settings.database_url_async)
    try:
        return await job(build_session_factory(engine), settings)
    finally:
        await engine.dispose()


# ===========================================
# RETENTION TASKS
# ===========================================

@shared_task(name='sentinel.tasks.celery_tasks.perform_retention_cleanup_task')
def perform_retention_cleanup_task() -> Dict[str, Any]:
    """Delete rows past their retention window."""
    result = run_async(_run_job(scheduled_tasks.perform_retention_cleanup))
    logger.info(f"Retention cleanup finished: {result['total_deleted']} row(s) removed")
    return result


@shared_task(name='sentinel.tasks.celery_tasks.cleanup_expired_sessions_task')
def cleanup_expired_sessions_task() -> Dict[str, Any]:
    """Delete expired sessions and their activity."""
    return run_async(_run_job(scheduled_tasks.cleanup_expired_sessions))
