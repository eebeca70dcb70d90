"""
Tests for the audit trail: masking at write time, best-effort persistence,
querying, and forwarding to monitoring.
"""

import asyncio
import logging

import pytest

from sentinel.database import build_engine, build_session_factory
from sentinel.models.audit import AuditEventType, FailureKind
from sentinel.schemas.audit import AuditEvent, AuditFilters, OpaqueMetadata, RateLimitMetadata
from sentinel.services.audit_trail_service import AuditTrailManager
from sentinel.services.masking_service import REDACTED
from sentinel.services.monitoring_service import MonitoringManager


def _event(**overrides) -> AuditEvent:
    values = {
        "actor": "pm@worklog.test",
        "event_type": AuditEventType.UPDATE,
        "endpoint": "/api/v1/projects/42",
        "method": "patch",
        "success": True,
        "source_address": "10.0.0.5",
    }
    values.update(overrides)
    return AuditEvent(**values)


class TestRecording:
    """Entries are masked and stored"""

    @pytest.mark.asyncio
    async def test_record_masks_values_and_normalizes_method(self, audit):
        before = {"name": "Website", "api_token": "tok-123"}
        entry = await audit.record(_event(
            resource_type="project",
            resource_id="42",
            before_values=before,
            after_values={"name": "Website v2", "settings": {"webhook_secret": "s3cret"}},
        ))

        assert entry is not None
        stored = await audit.get_entry(entry.id)
        assert stored.method == "PATCH"
        assert stored.before_values == {"name": "Website", "api_token": REDACTED}
        assert stored.after_values["settings"]["webhook_secret"] == REDACTED
        assert before["api_token"] == "tok-123"

    @pytest.mark.asyncio
    async def test_untagged_metadata_becomes_opaque(self, audit):
        entry = await audit.record(_event(metadata={"ticket": "WL-7", "password": "pw"}))
        stored = await audit.get_entry(entry.id)
        assert stored.event_metadata == {"kind": "opaque", "data": {"ticket": "WL-7", "password": REDACTED}}

    @pytest.mark.asyncio
    async def test_tagged_metadata_keeps_its_shape(self, audit):
        entry = await audit.record(_event(
            event_type=AuditEventType.RATE_LIMIT_EXCEEDED,
            success=False,
            failure_kind=FailureKind.RATE_LIMITED,
            metadata=RateLimitMetadata(category="auth", limit=5, window_seconds=900, retry_after=60),
        ))
        stored = await audit.get_entry(entry.id)
        assert stored.event_metadata["kind"] == "rate_limit"
        assert stored.event_metadata["retry_after"] == 60
        assert stored.failure_kind == FailureKind.RATE_LIMITED

    @pytest.mark.asyncio
    async def test_failure_without_kind_defaults_to_error(self, audit):
        entry = await audit.record(_event(success=False))
        assert entry.failure_kind == FailureKind.ERROR

    @pytest.mark.asyncio
    async def test_record_accepts_plain_dict(self, audit):
        entry = await audit.record({
            "actor": "system",
            "event_type": "system_maintenance",
            "endpoint": "internal",
            "method": "SYSTEM",
            "success": True,
        })
        assert entry.event_type == AuditEventType.SYSTEM_MAINTENANCE

    @pytest.mark.asyncio
    async def test_convenience_helpers(self, audit):
        await audit.log_user_action("pm@worklog.test", AuditEventType.CREATE, "worklog", "wl-1")
        await audit.log_security_event(
            "pm@worklog.test",
            AuditEventType.ACCESS_DENIED,
            success=False,
            failure_kind=FailureKind.DENIED,
            details={"route": "/admin"},
        )
        await audit.log_data_access("pm@worklog.test", "report", "r-9")

        assert await audit.count(AuditFilters(actor="pm@worklog.test")) == 3
        denied = await audit.query(AuditFilters(event_type=AuditEventType.ACCESS_DENIED))
        assert denied.items[0].event_metadata == OpaqueMetadata(data={"route": "/admin"}).model_dump()


class TestPersistenceFailures:
    """A failed audit write never fails the caller"""

    @pytest.mark.asyncio
    async def test_database_error_goes_to_fallback_log(self, tmp_path, masking, caplog):
        # No tables were created on this database
        broken_engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'empty.db'}")
        manager = AuditTrailManager(build_session_factory(broken_engine), masking)
        try:
            with caplog.at_level(logging.ERROR, logger="sentinel.audit.fallback"):
                result = await manager.record(_event(before_values={"password": "pw"}))
        finally:
            await broken_engine.dispose()

        assert result is None
        assert manager.fallback_count == 1
        fallback_records = [r for r in caplog.records if r.name == "sentinel.audit.fallback"]
        assert len(fallback_records) == 1
        assert "pm@worklog.test" in fallback_records[0].getMessage()
        assert "\"pw\"" not in fallback_records[0].getMessage()

    @pytest.mark.asyncio
    async def test_timeout_goes_to_fallback_log(self, session_factory, masking):
        manager = AuditTrailManager(session_factory, masking, write_timeout=0)
        result = await manager.record(_event())
        assert result is None
        assert manager.fallback_count == 1
        assert await manager.count() == 0

    @pytest.mark.asyncio
    async def test_record_nowait_and_drain(self, audit):
        audit.record_nowait(_event())
        audit.record_nowait(_event(actor="other@worklog.test"))
        await audit.drain()
        assert await audit.count() == 2


class TestQuerying:
    """Filtering, ordering and page clamping"""

    @pytest.mark.asyncio
    async def test_newest_first_and_page_size_clamped(self, session_factory, masking, clock):
        manager = AuditTrailManager(session_factory, masking, max_page_size=3, clock=clock)
        for index in range(5):
            await manager.record(_event(resource_id=str(index)))
            clock.advance(seconds=1)

        page = await manager.query(page_size=500)
        assert page.page_size == 3
        assert page.total == 5
        assert page.pages == 2
        assert [entry.resource_id for entry in page.items] == ["4", "3", "2"]

        second = await manager.query(page=2, page_size=500)
        assert [entry.resource_id for entry in second.items] == ["1", "0"]

    @pytest.mark.asyncio
    async def test_filters(self, audit, clock):
        start = clock()
        await audit.record(_event(actor="a@worklog.test"))
        clock.advance(minutes=10)
        await audit.record(_event(actor="b@worklog.test", success=False, event_type=AuditEventType.ACCESS_DENIED))
        clock.advance(minutes=10)
        await audit.record(_event(actor="a@worklog.test", event_type=AuditEventType.DELETE))

        assert (await audit.query(AuditFilters(actor="a@worklog.test"))).total == 2
        assert (await audit.query(AuditFilters(success=False))).total == 1
        assert (await audit.query(AuditFilters(event_type=AuditEventType.DELETE))).total == 1
        window = AuditFilters(start_date=start.replace(minute=5), end_date=start.replace(minute=15))
        assert [e.actor for e in (await audit.query(window)).items] == ["b@worklog.test"]

    @pytest.mark.asyncio
    async def test_count_only_returns_no_items(self, audit):
        await audit.record(_event())
        page = await audit.query(count_only=True)
        assert page.total == 1
        assert page.items == []
        assert page.to_dict()["items"] == []


class TestMonitoringForwarding:
    """Stored entries feed the monitoring rules"""

    @pytest.mark.asyncio
    async def test_failed_logins_raise_alert(self, audit, monitoring):
        entries = []
        for _ in range(3):
            entries.append(await audit.record(_event(
                actor="anonymous@203.0.113.9",
                event_type=AuditEventType.LOGIN_FAILED,
                endpoint="/api/v1/auth/login",
                method="POST",
                success=False,
                failure_kind=FailureKind.DENIED,
                source_address="203.0.113.9",
            )))

        alerts, total = await monitoring.list_alerts()
        assert total == 1
        assert alerts[0].rule_id == "failed-login-attempts"
        assert alerts[0].scope_key == "203.0.113.9"
        assert alerts[0].related_audit_ids == [str(entry.id) for entry in entries]

    @pytest.mark.asyncio
    async def test_failed_write_is_not_forwarded(self, tmp_path, masking, monitoring):
        broken_engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'empty.db'}")
        manager = AuditTrailManager(build_session_factory(broken_engine), masking, monitoring=monitoring)
        try:
            for _ in range(3):
                await manager.record(_event(event_type=AuditEventType.LOGIN_FAILED, success=False))
        finally:
            await broken_engine.dispose()
        assert monitoring.counter_value("failed-login-attempts", "10.0.0.5") == 0

    @pytest.mark.asyncio
    async def test_monitoring_error_does_not_reach_caller(self, session_factory, masking, caplog):
        class BrokenMonitoring:
            async def process_security_event(self, event):
                raise RuntimeError("rule engine down")

        audit = AuditTrailManager(session_factory, masking, monitoring=BrokenMonitoring())
        with caplog.at_level(logging.ERROR, logger="sentinel.audit.fallback"):
            entry = await audit.record(_event())

        assert entry is not None
        assert await audit.get_entry(entry.id) is not None
        assert audit.monitoring_failures == 1
        assert "Monitoring hand-off failed" in caplog.text

    @pytest.mark.asyncio
    async def test_slow_monitoring_is_bounded_by_write_timeout(self, session_factory, masking):
        class StalledMonitoring:
            async def process_security_event(self, event):
                await asyncio.sleep(30)

        manager = AuditTrailManager(session_factory, masking, monitoring=StalledMonitoring(), write_timeout=0.05)
        entry = await manager.record(_event())
        assert entry is not None
        assert manager.monitoring_failures == 1


class TestAlertNotificationIsolation:
    """Webhook delivery never fails or blocks the audited request"""

    @staticmethod
    def _manager(session_factory, monotonic, clock, default_rules, notifier) -> MonitoringManager:
        monitoring = MonitoringManager(session_factory, notifier=notifier, clock=monotonic, wall_clock=clock)
        monitoring.use_rules(default_rules)
        return monitoring

    @staticmethod
    def _failed_login() -> AuditEvent:
        return _event(
            actor="anonymous@10.9.9.9",
            event_type=AuditEventType.LOGIN_FAILED,
            endpoint="/api/v1/auth/login",
            method="POST",
            success=False,
            failure_kind=FailureKind.DENIED,
            source_address="10.9.9.9",
        )

    @pytest.mark.asyncio
    async def test_notifier_error_is_contained(self, session_factory, masking, monotonic, clock, default_rules):
        class DownNotifier:
            async def notify(self, alert):
                raise RuntimeError("notifier down")

        monitoring = self._manager(session_factory, monotonic, clock, default_rules, DownNotifier())
        audit = AuditTrailManager(session_factory, masking, monitoring=monitoring, clock=clock)

        entries = [await audit.record(self._failed_login()) for _ in range(3)]
        await monitoring.drain()

        assert all(entry is not None for entry in entries)
        alerts, total = await monitoring.list_alerts()
        assert total == 1
        assert monitoring.notification_failures == 1
        assert audit.monitoring_failures == 0

    @pytest.mark.asyncio
    async def test_record_returns_while_webhook_is_pending(
        self, session_factory, masking, monotonic, clock, default_rules
    ):
        release = asyncio.Event()
        delivered = []

        class HeldNotifier:
            async def notify(self, alert):
                await release.wait()
                delivered.append(alert.id)
                return True

        monitoring = self._manager(session_factory, monotonic, clock, default_rules, HeldNotifier())
        audit = AuditTrailManager(session_factory, masking, monitoring=monitoring, write_timeout=0.5, clock=clock)

        for _ in range(3):
            assert await audit.record(self._failed_login()) is not None
        assert delivered == []

        release.set()
        await monitoring.drain()
        alerts, _ = await monitoring.list_alerts()
        assert delivered == [alerts[0].id]
