"""
WorkLog Sentinel - Archival Service

Scheduled retention sweep over audit entries, alerts and sessions.

The sweep fixes `now` once, derives one cutoff per table, and removes rows
created before the cutoff in bounded batches. Each batch is selected and
deleted in its own transaction, so an interrupted sweep leaves whole
batches behind, never half of one. When an archive directory is set each
batch is appended to a gzip JSON-lines file after its DELETE has run and
before it commits, so a failed archive write rolls the batch back. A commit
that fails after the write leaves those rows in the archive and in the
table; the next sweep appends them again, so archive readers dedupe by `id`.
"""

import asyncio
import gzip
import json
import logging
import os
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Type

from sqlalchemy import delete, func, inspect, select
from sqlalchemy.ext.asyncio import async_sessionmaker

from sentinel.models.audit import AuditEntry
from sentinel.models.security_alert import SecurityAlert
from sentinel.models.session import Session, SessionActivity
from sentinel.utils.security import utcnow

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RetentionTarget:
    table: str
    model: Type
    retention_days: int


@dataclass
class CleanupReport:
    started_at: datetime
    cutoffs: Dict[str, datetime] = field(default_factory=dict)
    deleted: Dict[str, int] = field(default_factory=dict)
    batches: int = 0

    @property
    def total_deleted(self) -> int:
        return sum(self.deleted.values())

    def to_dict(self) -> Dict[str, Any]:
        return {
            "started_at": self.started_at.isoformat(),
            "cutoffs": {table: cutoff.isoformat() for table, cutoff in self.cutoffs.items()},
            "deleted": dict(self.deleted),
            "batches": self.batches,
            "total_deleted": self.total_deleted,
        }


class JsonlArchiveWriter:
    """Appends rows to {directory}/{table}-{YYYYMMDD}.jsonl.gz"""

    def __init__(self, directory: str):
        self.directory = directory
        os.makedirs(directory, exist_ok=True)

    def path_for(self, table: str, day: datetime) -> str:
        return os.path.join(self.directory, f"{table}-{day:%Y%m%d}.jsonl.gz")

    def write(self, table: str, rows: List[Dict[str, Any]], day: datetime) -> str:
        path = self.path_for(table, day)
        with gzip.open(path, "at", encoding="utf-8") as handle:
            for row in rows:
                handle.write(json.dumps(row, default=str) + "\n")
        return path


def _row_to_dict(row) -> Dict[str, Any]:
    return {attr.key: getattr(row, attr.key) for attr in inspect(row).mapper.column_attrs}


class ArchivalManager:
    """Retention cleanup for audit_trail, security_alerts and sessions."""

    def __init__(
        self,
        session_factory: async_sessionmaker,
        audit_retention_days: int = 90,
        alert_retention_days: int = 30,
        session_retention_days: int = 7,
        batch_size: int = 500,
        archive_writer: Optional[JsonlArchiveWriter] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._session_factory = session_factory
        self.targets = [
            RetentionTarget("audit_trail", AuditEntry, audit_retention_days),
            RetentionTarget("security_alerts", SecurityAlert, alert_retention_days),
            RetentionTarget("sessions", Session, session_retention_days),
        ]
        self.batch_size = batch_size
        self._archive_writer = archive_writer
        self._clock = clock

    async def _delete_batch(self, target: RetentionTarget, cutoff: datetime, started_at: datetime) -> int:
        model = target.model
        async with self._session_factory() as db:
            result = await db.execute(
                select(model)
                .where(model.created_at < cutoff)
                .order_by(model.created_at.asc())
                .limit(self.batch_size)
            )
            rows = list(result.scalars().all())
            if not rows:
                return 0

            ids = [row.id for row in rows]
            archived = [_row_to_dict(row) for row in rows] if self._archive_writer is not None else None
            if model is Session:
                await db.execute(
                    delete(SessionActivity)
                    .where(SessionActivity.session_id.in_(ids))
                    .execution_options(synchronize_session=False)
                )
            await db.execute(
                delete(model).where(model.id.in_(ids)).execution_options(synchronize_session=False)
            )
            if archived is not None:
                # File I/O off the event loop; a failure here rolls the batch back
                await asyncio.to_thread(self._archive_writer.write, target.table, archived, started_at)
            await db.commit()
            return len(ids)

    async def perform_cleanup(self) -> CleanupReport:
        """Delete everything created before each table's cutoff."""
        now = self._clock()
        report = CleanupReport(started_at=now)

        for target in self.targets:
            cutoff = now - timedelta(days=target.retention_days)
            report.cutoffs[target.table] = cutoff
            deleted = 0
            while True:
                count = await self._delete_batch(target, cutoff, now)
                if count:
                    report.batches += 1
                deleted += count
                if count < self.batch_size:
                    break
            report.deleted[target.table] = deleted
            if deleted:
                logger.info(f"Retention cleanup removed {deleted} row(s) from {target.table} older than {cutoff.isoformat()}")

        return report

    async def get_cleanup_stats(self) -> Dict[str, Dict[str, Any]]:
        """Rows currently eligible for cleanup, per table."""
        now = self._clock()
        stats = {}
        async with self._session_factory() as db:
            for target in self.targets:
                cutoff = now - timedelta(days=target.retention_days)
                eligible = (await db.execute(
                    select(func.count()).select_from(target.model).where(target.model.created_at < cutoff)
                )).scalar_one()
                stats[target.table] = {
                    "retention_days": target.retention_days,
                    "cutoff": cutoff.isoformat(),
                    "eligible": eligible,
                }
        return stats
