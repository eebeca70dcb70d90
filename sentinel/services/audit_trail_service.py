"""
WorkLog Sentinel - Audit Trail Service

Append-only audit trail. Writes are best effort relative to the caller:
a failed or slow write is routed to the fallback log and never raised.
"""

import asyncio
import json
import logging
import uuid
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Set, Union

from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import async_sessionmaker

from sentinel.models.audit import AuditEntry, AuditEventType, FailureKind
from sentinel.schemas.audit import AuditEvent, AuditFilters, AuditPage, OpaqueMetadata
from sentinel.schemas.security import SecurityEvent
from sentinel.services.masking_service import APIMaskingManager
from sentinel.utils.error_handling import InternalPersistenceError
from sentinel.utils.security import utcnow

logger = logging.getLogger(__name__)
fallback_logger = logging.getLogger("sentinel.audit.fallback")


class AuditTrailManager:
    """
    Records and queries audit trail entries.

    Entries are masked before persistence, written in their own session with
    a bounded timeout, and forwarded to monitoring once stored.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker,
        masking: APIMaskingManager,
        monitoring=None,
        write_timeout: float = 2.0,
        max_page_size: int = 100,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._session_factory = session_factory
        self._masking = masking
        self._monitoring = monitoring
        self._write_timeout = write_timeout
        self.max_page_size = max_page_size
        self._clock = clock
        self._pending: Set[asyncio.Task] = set()
        self.fallback_count = 0
        self.monitoring_failures = 0

    # =========================================================================
    # RECORDING
    # =========================================================================

    def _build_entry(self, event: AuditEvent) -> AuditEntry:
        metadata = event.metadata.model_dump(mode="json") if event.metadata else None
        if metadata is not None:
            metadata = self._masking.mask_for_audit(metadata)

        return AuditEntry(
            id=uuid.uuid4(),
            actor=event.actor,
            event_type=event.event_type,
            resource_type=event.resource_type,
            resource_id=event.resource_id,
            before_values=self._masking.mask_for_audit(event.before_values) if event.before_values else None,
            after_values=self._masking.mask_for_audit(event.after_values) if event.after_values else None,
            source_address=event.source_address,
            user_agent=event.user_agent,
            endpoint=event.endpoint,
            method=event.method,
            success=event.success,
            failure_kind=None if event.success else (event.failure_kind or FailureKind.ERROR),
            status_code=event.status_code,
            duration_ms=event.duration_ms,
            error_message=event.error_message,
            event_metadata=metadata,
            created_at=self._clock(),
        )

    async def _persist(self, entry: AuditEntry) -> None:
        async with self._session_factory() as db:
            db.add(entry)
            await db.commit()

    def _fallback(self, snapshot: Dict[str, Any], error: InternalPersistenceError) -> None:
        self.fallback_count += 1
        fallback_logger.error(
            f"{error.message}: {json.dumps(snapshot, default=str)}",
            exc_info=error.original_error,
        )

    async def record(self, event: Union[AuditEvent, Dict[str, Any]]) -> Optional[AuditEntry]:
        """
        Record an audit event.

        Returns the stored entry, or None when persistence failed and the
        entry went to the fallback log instead.
        """
        if not isinstance(event, AuditEvent):
            event = AuditEvent.model_validate(event)
        entry = self._build_entry(event)
        # Taken before the write; a failed commit expires the instance
        snapshot = entry.to_dict()

        try:
            await asyncio.wait_for(self._persist(entry), timeout=self._write_timeout)
        except asyncio.TimeoutError as e:
            self._fallback(snapshot, InternalPersistenceError("Audit write timed out", original_error=e))
            return None
        except SQLAlchemyError as e:
            self._fallback(snapshot, InternalPersistenceError("Audit write failed", original_error=e))
            return None

        if self._monitoring is not None:
            await self._forward_to_monitoring(entry)
        return entry

    async def _forward_to_monitoring(self, entry: AuditEntry) -> None:
        # Bounded like the write; a stored entry is never turned into a caller error
        try:
            await asyncio.wait_for(
                self._monitoring.process_security_event(SecurityEvent.from_entry(entry)),
                timeout=self._write_timeout,
            )
        except Exception:
            self.monitoring_failures += 1
            fallback_logger.exception(f"Monitoring hand-off failed for audit entry {entry.id}")

    def record_nowait(self, event: Union[AuditEvent, Dict[str, Any]]) -> asyncio.Task:
        """Schedule record() without waiting for it."""
        task = asyncio.create_task(self.record(event))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return task

    async def drain(self) -> None:
        """Wait for scheduled writes (used on shutdown)."""
        if self._pending:
            await asyncio.gather(*list(self._pending))

    # =========================================================================
    # CONVENIENCE HELPERS
    # =========================================================================

    async def log_user_action(
        self,
        actor: str,
        event_type: AuditEventType,
        resource_type: str,
        resource_id: Optional[str] = None,
        before_values: Optional[Dict[str, Any]] = None,
        after_values: Optional[Dict[str, Any]] = None,
        source_address: Optional[str] = None,
        endpoint: str = "internal",
        method: str = "SYSTEM",
    ) -> Optional[AuditEntry]:
        return await self.record(AuditEvent(
            actor=actor,
            event_type=event_type,
            resource_type=resource_type,
            resource_id=resource_id,
            before_values=before_values,
            after_values=after_values,
            source_address=source_address,
            endpoint=endpoint,
            method=method,
            success=True,
        ))

    async def log_security_event(
        self,
        actor: str,
        event_type: AuditEventType,
        success: bool,
        details: Optional[Dict[str, Any]] = None,
        source_address: Optional[str] = None,
        user_agent: Optional[str] = None,
        endpoint: str = "internal",
        method: str = "SYSTEM",
        failure_kind: Optional[FailureKind] = None,
        error_message: Optional[str] = None,
    ) -> Optional[AuditEntry]:
        return await self.record(AuditEvent(
            actor=actor,
            event_type=event_type,
            success=success,
            failure_kind=failure_kind,
            error_message=error_message,
            source_address=source_address,
            user_agent=user_agent,
            endpoint=endpoint,
            method=method,
            metadata=OpaqueMetadata(data=details) if details else None,
        ))

    async def log_data_access(
        self,
        actor: str,
        resource_type: str,
        resource_id: Optional[str] = None,
        source_address: Optional[str] = None,
        endpoint: str = "internal",
        method: str = "GET",
    ) -> Optional[AuditEntry]:
        return await self.record(AuditEvent(
            actor=actor,
            event_type=AuditEventType.DATA_ACCESS,
            resource_type=resource_type,
            resource_id=resource_id,
            source_address=source_address,
            endpoint=endpoint,
            method=method,
            success=True,
        ))

    # =========================================================================
    # QUERYING
    # =========================================================================

    @staticmethod
    def _conditions(filters: AuditFilters) -> List[Any]:
        conditions = []
        if filters.actor:
            conditions.append(AuditEntry.actor == filters.actor)
        if filters.event_type:
            conditions.append(AuditEntry.event_type == filters.event_type)
        if filters.resource_type:
            conditions.append(AuditEntry.resource_type == filters.resource_type)
        if filters.start_date:
            conditions.append(AuditEntry.created_at >= filters.start_date)
        if filters.end_date:
            conditions.append(AuditEntry.created_at <= filters.end_date)
        if filters.success is not None:
            conditions.append(AuditEntry.success == filters.success)
        return conditions

    async def count(self, filters: Optional[AuditFilters] = None) -> int:
        conditions = self._conditions(filters or AuditFilters())
        async with self._session_factory() as db:
            result = await db.execute(
                select(func.count()).select_from(AuditEntry).where(*conditions)
            )
            return result.scalar_one()

    async def query(
        self,
        filters: Optional[AuditFilters] = None,
        page: int = 1,
        page_size: int = 50,
        count_only: bool = False,
    ) -> AuditPage:
        """
        Query the audit trail, newest first.

        page_size is clamped to max_page_size whatever the filters.
        """
        filters = filters or AuditFilters()
        page = max(1, page)
        page_size = max(1, min(page_size, self.max_page_size))

        total = await self.count(filters)
        if count_only:
            return AuditPage(total=total, page=page, page_size=page_size)

        async with self._session_factory() as db:
            result = await db.execute(
                select(AuditEntry)
                .where(*self._conditions(filters))
                .order_by(AuditEntry.created_at.desc())
                .offset((page - 1) * page_size)
                .limit(page_size)
            )
            items = list(result.scalars().all())
        return AuditPage(total=total, page=page, page_size=page_size, items=items)

    async def get_entry(self, entry_id: uuid.UUID) -> Optional[AuditEntry]:
        async with self._session_factory() as db:
            return await db.get(AuditEntry, entry_id)
