"""
WorkLog Sentinel - Background Tasks Package

Retention and session cleanup jobs.
"""

from sentinel.tasks.scheduled_tasks import (
    cleanup_expired_sessions,
    perform_retention_cleanup,
    TaskRunner,
)

__all__ = [
    "cleanup_expired_sessions",
    "perform_retention_cleanup",
    "TaskRunner",
]
