"""
Tests for rule evaluation, cooldowns, the alert lifecycle and notification.
"""

import asyncio
import json
import uuid
from datetime import timedelta

import httpx
import pytest
import respx

from sentinel.config import DEFAULT_MONITORING_RULES, MonitoringRuleConfig
from sentinel.models.security_alert import AlertSeverity, AlertStatus
from sentinel.schemas.security import SecurityEvent
from sentinel.services.masking_service import APIMaskingManager
from sentinel.services.monitoring_service import MonitoringManager, RuleSpec
from sentinel.services.notification_service import AlertNotifier
from sentinel.utils.error_handling import InvalidStateTransition, NotFoundException


WEBHOOK_URL = "https://hooks.slack.com/services/T000/B000/XXXX"


def _failed_login(address: str = "198.51.100.7", audit_id: str = None) -> SecurityEvent:
    return SecurityEvent(
        event_type="login_failed",
        actor=f"anonymous@{address}",
        source_address=address,
        audit_id=audit_id or str(uuid.uuid4()),
    )


async def _raise_alert(monitoring: MonitoringManager, address: str = "198.51.100.7"):
    alerts = []
    for _ in range(3):
        alerts.extend(await monitoring.process_security_event(_failed_login(address)))
    assert len(alerts) == 1
    return alerts[0]


class TestThresholds:
    """Windowed counting per (rule, scope)"""

    @pytest.mark.asyncio
    async def test_alert_fires_exactly_at_threshold(self, monitoring):
        assert await monitoring.process_security_event(_failed_login()) == []
        assert await monitoring.process_security_event(_failed_login()) == []
        alerts = await monitoring.process_security_event(_failed_login())

        assert len(alerts) == 1
        alert = alerts[0]
        assert alert.rule_id == "failed-login-attempts"
        assert alert.severity == AlertSeverity.HIGH
        assert alert.status == AlertStatus.OPEN
        assert alert.event_count == 3
        assert len(alert.related_audit_ids) == 3

    @pytest.mark.asyncio
    async def test_events_outside_window_do_not_count(self, monitoring, monotonic):
        await monitoring.process_security_event(_failed_login())
        await monitoring.process_security_event(_failed_login())
        monotonic.advance(600)
        assert await monitoring.process_security_event(_failed_login()) == []
        assert monitoring.counter_value("failed-login-attempts", "198.51.100.7") == 1

    @pytest.mark.asyncio
    async def test_scopes_are_counted_separately(self, monitoring):
        for address in ("198.51.100.1", "198.51.100.2", "198.51.100.1", "198.51.100.2"):
            assert await monitoring.process_security_event(_failed_login(address)) == []
        assert monitoring.counter_value("failed-login-attempts", "198.51.100.1") == 2

    @pytest.mark.asyncio
    async def test_actor_scoped_rule(self, monitoring):
        alerts = []
        for index in range(10):
            alerts.extend(await monitoring.process_security_event(SecurityEvent(
                event_type="access_denied",
                actor="contractor@worklog.test",
                source_address=f"10.1.0.{index}",
            )))
        assert [alert.rule_id for alert in alerts] == ["access-denied-pattern"]
        assert alerts[0].scope_key == "contractor@worklog.test"

    @pytest.mark.asyncio
    async def test_unmatched_event_type_is_ignored(self, monitoring):
        event = SecurityEvent(event_type="api_call", actor="x", source_address="10.0.0.1")
        for _ in range(20):
            assert await monitoring.process_security_event(event) == []


class TestCooldown:
    """After an alert the (rule, scope) pair is quiet for the cooldown"""

    @pytest.mark.asyncio
    async def test_no_duplicate_alert_during_cooldown(self, monitoring, monotonic):
        await _raise_alert(monitoring)

        for _ in range(6):
            assert await monitoring.process_security_event(_failed_login()) == []

        monotonic.advance(301)
        alerts = []
        for _ in range(3):
            alerts.extend(await monitoring.process_security_event(_failed_login()))
        assert len(alerts) == 1

        _, total = await monitoring.list_alerts()
        assert total == 2

    @pytest.mark.asyncio
    async def test_cooldown_is_per_scope(self, monitoring):
        await _raise_alert(monitoring, "198.51.100.1")
        await _raise_alert(monitoring, "198.51.100.2")


class TestRules:
    """Rule storage and enable/disable"""

    @pytest.mark.asyncio
    async def test_sync_rules_persists_and_loads(self, monitoring):
        configs = [
            MonitoringRuleConfig(
                id="bulk-export",
                name="Bulk Export",
                event_type="data_export",
                threshold=2,
                window_seconds=60,
                severity="critical",
                scope="actor",
                alert_type="data_breach",
            ),
            MonitoringRuleConfig(
                id="disabled-rule",
                name="Disabled",
                event_type="login_failed",
                threshold=1,
                window_seconds=60,
                severity="low",
                scope="source_address",
                alert_type="security_breach",
                enabled=False,
            ),
        ]
        rules = await monitoring.sync_rules(configs)
        assert {rule.id for rule in rules} == {"bulk-export"}

        export = SecurityEvent(event_type="data_export", actor="pm@worklog.test")
        assert await monitoring.process_security_event(export) == []
        alerts = await monitoring.process_security_event(export)
        assert alerts[0].severity == AlertSeverity.CRITICAL

    @pytest.mark.asyncio
    async def test_disabled_rule_does_not_fire(self, monitoring):
        await monitoring.sync_rules(DEFAULT_MONITORING_RULES)
        await monitoring.set_rule_enabled("failed-login-attempts", False)

        for _ in range(5):
            assert await monitoring.process_security_event(_failed_login()) == []

        await monitoring.set_rule_enabled("failed-login-attempts", True)
        await _raise_alert(monitoring)

    @pytest.mark.asyncio
    async def test_unknown_rule(self, monitoring):
        with pytest.raises(NotFoundException):
            await monitoring.set_rule_enabled("missing", True)
        assert await monitoring.remove_rule("missing") is False

    @pytest.mark.asyncio
    async def test_prune_counters(self, monitoring, monotonic):
        await monitoring.process_security_event(_failed_login("198.51.100.50"))
        monotonic.advance(3600)
        assert monitoring.prune_counters() == 1
        assert monitoring.counter_value("failed-login-attempts", "198.51.100.50") == 0

    def test_rule_spec_from_config(self):
        spec = RuleSpec.from_config(MonitoringRuleConfig(
            id="r", name="R", event_type="login_failed", threshold=1, window_seconds=1,
            severity="low", scope="actor", alert_type="suspicious_activity",
        ))
        assert spec.severity == AlertSeverity.LOW


class TestAlertLifecycle:
    """open -> acknowledged -> resolved, with no other transitions"""

    @pytest.mark.asyncio
    async def test_acknowledge_then_resolve(self, monitoring, clock):
        alert = await _raise_alert(monitoring)

        acknowledged = await monitoring.acknowledge(alert.id, "admin@worklog.test", note="Looking into it")
        assert acknowledged.status == AlertStatus.ACKNOWLEDGED
        assert acknowledged.acknowledgement_note == "Looking into it"
        assert acknowledged.acknowledged_by == "admin@worklog.test"
        assert acknowledged.acknowledged_at == clock()

        clock.advance(minutes=5)
        resolved = await monitoring.resolve(alert.id, "admin@worklog.test", "Blocked at the firewall")
        assert resolved.status == AlertStatus.RESOLVED
        assert resolved.acknowledgement_note == "Looking into it"
        assert resolved.resolution_note == "Blocked at the firewall"
        assert resolved.resolved_at == clock()

    @pytest.mark.asyncio
    async def test_resolve_requires_acknowledgement(self, monitoring):
        alert = await _raise_alert(monitoring)
        with pytest.raises(InvalidStateTransition) as exc_info:
            await monitoring.resolve(alert.id, "admin@worklog.test")
        assert exc_info.value.status_code == 409
        assert (await monitoring.get_alert(alert.id)).status == AlertStatus.OPEN

    @pytest.mark.asyncio
    async def test_no_transition_out_of_resolved(self, monitoring):
        alert = await _raise_alert(monitoring)
        await monitoring.acknowledge(alert.id, "admin@worklog.test")
        await monitoring.resolve(alert.id, "admin@worklog.test")
        with pytest.raises(InvalidStateTransition):
            await monitoring.acknowledge(alert.id, "admin@worklog.test")
        with pytest.raises(InvalidStateTransition):
            await monitoring.resolve(alert.id, "admin@worklog.test")

    @pytest.mark.asyncio
    async def test_unknown_alert(self, monitoring):
        with pytest.raises(NotFoundException):
            await monitoring.acknowledge(uuid.uuid4(), "admin@worklog.test")
        with pytest.raises(NotFoundException):
            await monitoring.get_alert(uuid.uuid4())

    @pytest.mark.asyncio
    async def test_concurrent_acknowledge_succeeds_once(self, monitoring):
        alert = await _raise_alert(monitoring)
        results = await asyncio.gather(
            *(monitoring.acknowledge(alert.id, f"op{i}@worklog.test") for i in range(4)),
            return_exceptions=True,
        )
        succeeded = [r for r in results if not isinstance(r, Exception)]
        failed = [r for r in results if isinstance(r, Exception)]
        assert len(succeeded) == 1
        assert all(isinstance(r, InvalidStateTransition) for r in failed)

    @pytest.mark.asyncio
    async def test_list_and_stats(self, monitoring):
        first = await _raise_alert(monitoring, "198.51.100.1")
        await _raise_alert(monitoring, "198.51.100.2")
        await monitoring.acknowledge(first.id, "admin@worklog.test")

        open_alerts, total = await monitoring.list_alerts(status=AlertStatus.OPEN)
        assert total == 1
        assert open_alerts[0].scope_key == "198.51.100.2"

        stats = await monitoring.get_stats()
        assert stats["by_status"] == {"open": 1, "acknowledged": 1}
        assert stats["by_severity"] == {"high": 2}

    @pytest.mark.asyncio
    async def test_list_filters_by_time_range(self, monitoring, clock):
        morning = clock()
        await _raise_alert(monitoring, "198.51.100.1")
        clock.advance(hours=6)
        afternoon = clock()
        await _raise_alert(monitoring, "198.51.100.2")

        later, total = await monitoring.list_alerts(start_date=afternoon)
        assert total == 1
        assert later[0].scope_key == "198.51.100.2"

        earlier, total = await monitoring.list_alerts(end_date=morning)
        assert total == 1
        assert earlier[0].scope_key == "198.51.100.1"

        _, total = await monitoring.list_alerts(start_date=morning, end_date=afternoon)
        assert total == 2
        _, total = await monitoring.list_alerts(start_date=afternoon + timedelta(seconds=1))
        assert total == 0


class TestNotification:
    """Alerts go to the log and, when configured, the webhook"""

    @pytest.mark.asyncio
    @respx.mock
    async def test_webhook_receives_masked_alert(self, session_factory, monotonic, clock, default_rules):
        route = respx.post(WEBHOOK_URL).mock(return_value=httpx.Response(200))
        notifier = AlertNotifier(APIMaskingManager(["hooks.slack.com"]), webhook_url=WEBHOOK_URL)
        monitoring = MonitoringManager(session_factory, notifier=notifier, clock=monotonic, wall_clock=clock)
        monitoring.use_rules(default_rules)
        try:
            alert = await _raise_alert(monitoring)
            await monitoring.drain()
        finally:
            await notifier.close()

        assert route.called
        body = json.loads(route.calls.last.request.content)
        assert body["type"] == "security_alert"
        assert body["alert"]["id"] == str(alert.id)
        assert body["alert"]["severity"] == "high"

    @pytest.mark.asyncio
    @respx.mock
    async def test_webhook_outside_allow_list_is_not_called(self, masking):
        route = respx.post("https://collector.example.org/hook").mock(return_value=httpx.Response(200))
        notifier = AlertNotifier(masking, webhook_url="https://collector.example.org/hook")
        delivered = await notifier.notify(_stub_alert())
        await notifier.close()
        assert delivered is False
        assert not route.called

    @pytest.mark.asyncio
    @respx.mock
    async def test_webhook_failure_does_not_raise(self, masking):
        respx.post(WEBHOOK_URL).mock(return_value=httpx.Response(503))
        notifier = AlertNotifier(masking, webhook_url=WEBHOOK_URL)
        delivered = await notifier.notify(_stub_alert())
        await notifier.close()
        assert delivered is False


def _stub_alert():
    from sentinel.models.security_alert import AlertType, SecurityAlert

    return SecurityAlert(
        id=uuid.uuid4(),
        rule_id="failed-login-attempts",
        rule_name="Multiple Failed Login Attempts",
        alert_type=AlertType.SECURITY_BREACH,
        severity=AlertSeverity.HIGH,
        scope_key="198.51.100.7",
        message="test",
        related_audit_ids=[],
        event_count=3,
        status=AlertStatus.OPEN,
    )
