"""
WorkLog Sentinel - Scheduled Jobs

Async job definitions shared by the Celery worker and the in-process
TaskRunner. Every job takes a session factory and settings, builds the
manager it needs, and returns a JSON-serializable summary.
"""

import logging
from typing import Any, Dict, Optional

from sqlalchemy.ext.asyncio import async_sessionmaker

from sentinel.config import Settings, settings as default_settings
from sentinel.services.archival_service import ArchivalManager, JsonlArchiveWriter
from sentinel.services.session_service import SessionManager

logger = logging.getLogger(__name__)


def build_archival_manager(session_factory: async_sessionmaker, settings: Settings) -> ArchivalManager:
    writer = JsonlArchiveWriter(settings.archive_directory) if settings.archive_directory else None
    return ArchivalManager(
        session_factory,
        audit_retention_days=settings.audit_retention_days,
        alert_retention_days=settings.alert_retention_days,
        session_retention_days=settings.session_retention_days,
        batch_size=settings.archival_batch_size,
        archive_writer=writer,
    )


# ===========================================
# SCHEDULED TASK: RETENTION CLEANUP
# ===========================================

async def perform_retention_cleanup(
    session_factory: async_sessionmaker,
    settings: Optional[Settings] = None,
) -> Dict[str, Any]:
    """
    Delete audit entries, alerts and sessions past their retention window.
    Should run daily.
    """
    manager = build_archival_manager(session_factory, settings or default_settings)
    report = await manager.perform_cleanup()
    return report.to_dict()


# ===========================================
# SCHEDULED TASK: EXPIRED SESSIONS
# ===========================================

async def cleanup_expired_sessions(
    session_factory: async_sessionmaker,
    settings: Optional[Settings] = None,
) -> Dict[str, Any]:
    """Delete sessions past their expiry. Should run every few minutes."""
    settings = settings or default_settings
    manager = SessionManager(
        session_factory,
        lifetime_minutes=settings.session_lifetime_minutes,
        max_refresh_count=settings.session_max_refresh_count,
        max_sessions_per_user=settings.max_sessions_per_user,
    )
    deleted = await manager.cleanup_expired_sessions()
    return {"deleted_sessions": deleted}


# ===========================================
# TASK RUNNER (Development)
# ===========================================

class TaskRunner:
    """
    Simple task runner for development.
    In production, the Celery beat schedule drives the same jobs.
    """

    def __init__(self, session_factory: async_sessionmaker, settings: Optional[Settings] = None):
        self.session_factory = session_factory
        self.settings = settings or default_settings

    async def run_task(self, task_func) -> Dict[str, Any]:
        """Run a single job against the runner's session factory."""
        try:
            result = await task_func(self.session_factory, self.settings)
        except Exception as e:
            logger.error(f"Task {task_func.__name__} failed: {e}")
            raise
        logger.info(f"Task {task_func.__name__} completed: {result}")
        return result

    async def run_scheduled_tasks(self) -> Dict[str, Dict[str, Any]]:
        """Run every job once; one failing job does not stop the rest."""
        results = {}

        tasks = [
            ("cleanup_expired_sessions", cleanup_expired_sessions),
            ("perform_retention_cleanup", perform_retention_cleanup),
        ]

        for name, task_func in tasks:
            try:
                result = await self.run_task(task_func)
                results[name] = {"status": "success", "result": result}
            except Exception as e:
                results[name] = {"status": "error", "error": str(e)}

        return results
