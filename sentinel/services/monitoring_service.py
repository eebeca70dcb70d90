"""
WorkLog Sentinel - Monitoring Service

Evaluates security events against threshold rules and manages the alert
lifecycle.

Each (rule, scope) pair keeps a ring buffer of at most `threshold` event
times. The threshold is met when the buffer is full and its oldest entry
is still inside the window, so evaluation is O(1) amortized per rule and
never re-reads history. After an alert the pair is cleared and enters a
cooldown during which matching events raise nothing.
"""

import asyncio
import logging
import threading
import time
from collections import defaultdict, deque
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Deque, Dict, Iterable, List, Optional, Set, Tuple
from uuid import UUID

from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import async_sessionmaker

from sentinel.config import MonitoringRuleConfig
from sentinel.models.security_alert import (
    ALLOWED_TRANSITIONS,
    AlertSeverity,
    AlertStatus,
    AlertType,
    MonitoringRule,
    RuleScope,
    SecurityAlert,
)
from sentinel.schemas.security import SecurityEvent
from sentinel.utils.error_handling import (
    InternalPersistenceError,
    InvalidStateTransition,
    NotFoundException,
)
from sentinel.utils.security import utcnow

logger = logging.getLogger(__name__)
fallback_logger = logging.getLogger("sentinel.audit.fallback")

PRUNE_EVERY = 256


@dataclass(frozen=True)
class RuleSpec:
    """In-memory copy of an enabled monitoring rule."""

    id: str
    name: str
    event_type: str
    threshold: int
    window_seconds: int
    severity: AlertSeverity
    scope: RuleScope
    alert_type: AlertType

    @classmethod
    def from_model(cls, rule: MonitoringRule) -> "RuleSpec":
        return cls(
            id=rule.id,
            name=rule.name,
            event_type=rule.event_type,
            threshold=rule.threshold,
            window_seconds=rule.window_seconds,
            severity=rule.severity,
            scope=rule.scope,
            alert_type=rule.alert_type,
        )

    @classmethod
    def from_config(cls, config: MonitoringRuleConfig) -> "RuleSpec":
        return cls(
            id=config.id,
            name=config.name,
            event_type=config.event_type,
            threshold=config.threshold,
            window_seconds=config.window_seconds,
            severity=AlertSeverity(config.severity),
            scope=RuleScope(config.scope),
            alert_type=AlertType(config.alert_type),
        )


@dataclass
class _Window:
    times: Deque[float]
    audit_ids: Deque[Optional[str]]
    cooldown_until: float = 0.0
    last_seen: float = 0.0


@dataclass
class _Trigger:
    rule: RuleSpec
    scope_key: str
    audit_ids: List[str] = field(default_factory=list)


class MonitoringManager:
    """Rule evaluation over live windowed counters, plus alert lifecycle."""

    def __init__(
        self,
        session_factory: async_sessionmaker,
        cooldown_seconds: int = 300,
        notifier=None,
        clock: Callable[[], float] = time.monotonic,
        wall_clock: Callable[[], datetime] = utcnow,
    ):
        self._session_factory = session_factory
        self.cooldown_seconds = cooldown_seconds
        self._notifier = notifier
        self._clock = clock
        self._wall_clock = wall_clock
        self._lock = threading.Lock()
        self._rules: Dict[str, RuleSpec] = {}
        self._rules_by_event: Dict[str, List[RuleSpec]] = defaultdict(list)
        self._windows: Dict[Tuple[str, str], _Window] = {}
        self._events_seen = 0
        self._pending: Set[asyncio.Task] = set()
        self.notification_failures = 0

    # =========================================================================
    # RULES
    # =========================================================================

    def _index_rules(self, rules: Iterable[RuleSpec]) -> None:
        with self._lock:
            self._rules = {rule.id: rule for rule in rules}
            self._rules_by_event = defaultdict(list)
            for rule in self._rules.values():
                self._rules_by_event[rule.event_type].append(rule)
            # Drop counters of rules that no longer exist or changed shape
            self._windows = {
                key: window
                for key, window in self._windows.items()
                if key[0] in self._rules and window.times.maxlen == self._rules[key[0]].threshold
            }

    @property
    def rules(self) -> List[RuleSpec]:
        return list(self._rules.values())

    def use_rules(self, rules: Iterable[RuleSpec]) -> None:
        """Replace the active rule set without touching the database."""
        self._index_rules(rules)

    async def load_rules(self) -> List[RuleSpec]:
        """Load enabled rules from monitoring_rules."""
        async with self._session_factory() as db:
            result = await db.execute(select(MonitoringRule).where(MonitoringRule.enabled.is_(True)))
            rules = [RuleSpec.from_model(rule) for rule in result.scalars().all()]
        self._index_rules(rules)
        logger.info(f"Loaded {len(rules)} monitoring rules")
        return rules

    async def sync_rules(self, configs: Iterable[MonitoringRuleConfig]) -> List[RuleSpec]:
        """Upsert configured rules into monitoring_rules, then reload."""
        async with self._session_factory() as db:
            for config in configs:
                rule = await db.get(MonitoringRule, config.id)
                if rule is None:
                    rule = MonitoringRule(id=config.id)
                    db.add(rule)
                rule.name = config.name
                rule.event_type = config.event_type
                rule.threshold = config.threshold
                rule.window_seconds = config.window_seconds
                rule.severity = AlertSeverity(config.severity)
                rule.scope = RuleScope(config.scope)
                rule.alert_type = AlertType(config.alert_type)
                rule.enabled = config.enabled
            await db.commit()
        return await self.load_rules()

    async def add_rule(self, config: MonitoringRuleConfig) -> List[RuleSpec]:
        return await self.sync_rules([config])

    async def remove_rule(self, rule_id: str) -> bool:
        async with self._session_factory() as db:
            result = await db.execute(delete(MonitoringRule).where(MonitoringRule.id == rule_id))
            await db.commit()
        await self.load_rules()
        return result.rowcount > 0

    async def set_rule_enabled(self, rule_id: str, enabled: bool) -> None:
        async with self._session_factory() as db:
            result = await db.execute(
                update(MonitoringRule).where(MonitoringRule.id == rule_id).values(enabled=enabled)
            )
            await db.commit()
        if result.rowcount == 0:
            raise NotFoundException("Monitoring rule", rule_id)
        await self.load_rules()

    # =========================================================================
    # EVALUATION
    # =========================================================================

    @staticmethod
    def _scope_key(rule: RuleSpec, event: SecurityEvent) -> Optional[str]:
        if rule.scope == RuleScope.ACTOR:
            return event.actor
        return event.source_address

    def _evaluate(self, event: SecurityEvent) -> List[_Trigger]:
        """Update counters for event; return the rules that fired."""
        now = self._clock()
        triggers = []
        with self._lock:
            self._events_seen += 1
            for rule in self._rules_by_event.get(event.event_type, ()):
                scope_key = self._scope_key(rule, event)
                if not scope_key:
                    continue
                key = (rule.id, scope_key)
                window = self._windows.get(key)
                if window is None:
                    window = _Window(
                        times=deque(maxlen=rule.threshold),
                        audit_ids=deque(maxlen=rule.threshold),
                    )
                    self._windows[key] = window
                window.last_seen = now

                if now < window.cooldown_until:
                    continue

                window.times.append(now)
                window.audit_ids.append(event.audit_id)
                if len(window.times) == rule.threshold and now - window.times[0] < rule.window_seconds:
                    triggers.append(_Trigger(
                        rule=rule,
                        scope_key=scope_key,
                        audit_ids=[audit_id for audit_id in window.audit_ids if audit_id],
                    ))
                    window.times.clear()
                    window.audit_ids.clear()
                    window.cooldown_until = now + self.cooldown_seconds

            if self._events_seen % PRUNE_EVERY == 0:
                self._prune_locked(now)
        return triggers

    def _prune_locked(self, now: float) -> int:
        stale = []
        for key, window in self._windows.items():
            rule = self._rules.get(key[0])
            horizon = max(rule.window_seconds if rule else 0, self.cooldown_seconds)
            if now - window.last_seen > horizon and now >= window.cooldown_until:
                stale.append(key)
        for key in stale:
            del self._windows[key]
        return len(stale)

    def prune_counters(self) -> int:
        """Drop idle counters. Returns how many were removed."""
        with self._lock:
            return self._prune_locked(self._clock())

    def counter_value(self, rule_id: str, scope_key: str) -> int:
        """Events currently counted for (rule, scope) inside the window."""
        now = self._clock()
        with self._lock:
            window = self._windows.get((rule_id, scope_key))
            rule = self._rules.get(rule_id)
            if window is None or rule is None:
                return 0
            return sum(1 for t in window.times if now - t < rule.window_seconds)

    async def process_security_event(self, event: SecurityEvent) -> List[SecurityAlert]:
        """
        Evaluate an event against enabled rules.

        Returns the alerts raised. Alert write failures go to the fallback
        log and are not raised; webhook delivery is scheduled, not awaited.
        """
        alerts = []
        for trigger in self._evaluate(event):
            alert = await self._raise_alert(trigger)
            if alert is not None:
                alerts.append(alert)
        return alerts

    async def _raise_alert(self, trigger: _Trigger) -> Optional[SecurityAlert]:
        rule = trigger.rule
        alert = SecurityAlert(
            rule_id=rule.id,
            rule_name=rule.name,
            alert_type=rule.alert_type,
            severity=rule.severity,
            scope_key=trigger.scope_key,
            message=(
                f"{rule.name}: {rule.threshold} '{rule.event_type}' events "
                f"within {rule.window_seconds}s for {rule.scope.value} {trigger.scope_key}"
            ),
            related_audit_ids=trigger.audit_ids,
            event_count=rule.threshold,
            status=AlertStatus.OPEN,
            created_at=self._wall_clock(),
        )
        try:
            async with self._session_factory() as db:
                db.add(alert)
                await db.commit()
        except SQLAlchemyError as e:
            error = InternalPersistenceError("Security alert write failed", original_error=e)
            fallback_logger.error(f"{error.message}: {alert.message}", exc_info=e)
            return None

        logger.warning(f"Security alert raised [{rule.severity.value}] {alert.message}")
        if self._notifier is not None:
            # Delivery runs off the request path
            task = asyncio.create_task(self._deliver(alert))
            self._pending.add(task)
            task.add_done_callback(self._pending.discard)
        return alert

    async def _deliver(self, alert: SecurityAlert) -> None:
        try:
            await self._notifier.notify(alert)
        except Exception:
            self.notification_failures += 1
            fallback_logger.exception(f"Alert notification failed for alert {alert.id}")

    async def drain(self) -> None:
        """Wait for in-flight alert notifications."""
        if self._pending:
            await asyncio.gather(*list(self._pending))

    # =========================================================================
    # ALERT LIFECYCLE
    # =========================================================================

    async def _transition(self, alert_id: UUID, target: AlertStatus, values: Dict) -> SecurityAlert:
        expected = next(source for source, dest in ALLOWED_TRANSITIONS.items() if dest == target)
        async with self._session_factory() as db:
            # Compare-and-swap on the current status
            result = await db.execute(
                update(SecurityAlert)
                .where(SecurityAlert.id == alert_id, SecurityAlert.status == expected)
                .values(status=target, **values)
            )
            await db.commit()
            alert = await db.get(SecurityAlert, alert_id, populate_existing=True)

        if alert is None:
            raise NotFoundException("Security alert", alert_id)
        if result.rowcount == 0:
            raise InvalidStateTransition(alert.status.value, target.value)
        return alert

    async def acknowledge(self, alert_id: UUID, acknowledged_by: str, note: Optional[str] = None) -> SecurityAlert:
        """open -> acknowledged"""
        alert = await self._transition(
            alert_id,
            AlertStatus.ACKNOWLEDGED,
            {
                "acknowledged_at": self._wall_clock(),
                "acknowledged_by": acknowledged_by,
                "acknowledgement_note": note,
            },
        )
        logger.info(f"Alert {alert_id} acknowledged by {acknowledged_by}")
        return alert

    async def resolve(self, alert_id: UUID, resolved_by: str, resolution_note: Optional[str] = None) -> SecurityAlert:
        """acknowledged -> resolved"""
        alert = await self._transition(
            alert_id,
            AlertStatus.RESOLVED,
            {
                "resolved_at": self._wall_clock(),
                "resolved_by": resolved_by,
                "resolution_note": resolution_note,
            },
        )
        logger.info(f"Alert {alert_id} resolved by {resolved_by}")
        return alert

    # =========================================================================
    # QUERIES
    # =========================================================================

    async def get_alert(self, alert_id: UUID) -> SecurityAlert:
        async with self._session_factory() as db:
            alert = await db.get(SecurityAlert, alert_id)
        if alert is None:
            raise NotFoundException("Security alert", alert_id)
        return alert

    async def list_alerts(
        self,
        status: Optional[AlertStatus] = None,
        severity: Optional[AlertSeverity] = None,
        rule_id: Optional[str] = None,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None,
        page: int = 1,
        page_size: int = 50,
        max_page_size: int = 100,
    ) -> Tuple[List[SecurityAlert], int]:
        page = max(1, page)
        page_size = max(1, min(page_size, max_page_size))
        conditions = []
        if status:
            conditions.append(SecurityAlert.status == status)
        if severity:
            conditions.append(SecurityAlert.severity == severity)
        if rule_id:
            conditions.append(SecurityAlert.rule_id == rule_id)
        if start_date:
            conditions.append(SecurityAlert.created_at >= start_date)
        if end_date:
            conditions.append(SecurityAlert.created_at <= end_date)

        async with self._session_factory() as db:
            total = (await db.execute(
                select(func.count()).select_from(SecurityAlert).where(*conditions)
            )).scalar_one()
            result = await db.execute(
                select(SecurityAlert)
                .where(*conditions)
                .order_by(SecurityAlert.created_at.desc())
                .offset((page - 1) * page_size)
                .limit(page_size)
            )
            return list(result.scalars().all()), total

    async def get_stats(self) -> Dict[str, Dict[str, int]]:
        async with self._session_factory() as db:
            by_status = await db.execute(
                select(SecurityAlert.status, func.count()).group_by(SecurityAlert.status)
            )
            by_severity = await db.execute(
                select(SecurityAlert.severity, func.count()).group_by(SecurityAlert.severity)
            )
            return {
                "by_status": {row[0].value: row[1] for row in by_status.all()},
                "by_severity": {row[0].value: row[1] for row in by_severity.all()},
            }
