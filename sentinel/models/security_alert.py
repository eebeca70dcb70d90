"""
WorkLog Sentinel - Security Alert and Monitoring Rule Models
"""

import enum
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import Boolean, DateTime, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from sentinel.database import Base
from sentinel.models.base import BaseModel, JSONType, TimestampMixin, enum_column


class AlertSeverity(str, enum.Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class AlertStatus(str, enum.Enum):
    """Alert lifecycle; transitions only move forward."""
    OPEN = "open"
    ACKNOWLEDGED = "acknowledged"
    RESOLVED = "resolved"


class AlertType(str, enum.Enum):
    SECURITY_BREACH = "security_breach"
    RATE_LIMIT_EXCEEDED = "rate_limit_exceeded"
    SUSPICIOUS_ACTIVITY = "suspicious_activity"
    SYSTEM_ERROR = "system_error"
    PERFORMANCE_ISSUE = "performance_issue"
    ACCESS_DENIED = "access_denied"
    DATA_BREACH = "data_breach"
    CONFIGURATION_CHANGE = "configuration_change"


class RuleScope(str, enum.Enum):
    """What a rule's counters are keyed on."""
    ACTOR = "actor"
    SOURCE_ADDRESS = "source_address"


ALLOWED_TRANSITIONS = {
    AlertStatus.OPEN: AlertStatus.ACKNOWLEDGED,
    AlertStatus.ACKNOWLEDGED: AlertStatus.RESOLVED,
}


class MonitoringRule(Base, TimestampMixin):
    """Threshold rule evaluated against the audit event stream."""

    __tablename__ = "monitoring_rules"

    id: Mapped[str] = mapped_column(String(100), primary_key=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    event_type: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    threshold: Mapped[int] = mapped_column(Integer, nullable=False)
    window_seconds: Mapped[int] = mapped_column(Integer, nullable=False)
    severity: Mapped[AlertSeverity] = mapped_column(enum_column(AlertSeverity, length=16), nullable=False)
    scope: Mapped[RuleScope] = mapped_column(
        enum_column(RuleScope, length=20),
        nullable=False,
        default=RuleScope.SOURCE_ADDRESS,
    )
    alert_type: Mapped[AlertType] = mapped_column(
        enum_column(AlertType),
        nullable=False,
        default=AlertType.SUSPICIOUS_ACTIVITY,
    )
    enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    def __repr__(self) -> str:
        return f"<MonitoringRule(id={self.id}, event_type={self.event_type})>"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "event_type": self.event_type,
            "threshold": self.threshold,
            "window_seconds": self.window_seconds,
            "severity": self.severity.value,
            "scope": self.scope.value,
            "alert_type": self.alert_type.value,
            "enabled": self.enabled,
        }


class SecurityAlert(BaseModel):
    """Alert raised when a monitoring rule threshold is met."""

    __tablename__ = "security_alerts"

    rule_id: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    rule_name: Mapped[str] = mapped_column(String(255), nullable=False)
    alert_type: Mapped[AlertType] = mapped_column(enum_column(AlertType), nullable=False, index=True)
    severity: Mapped[AlertSeverity] = mapped_column(
        enum_column(AlertSeverity, length=16),
        nullable=False,
        index=True,
    )
    scope_key: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    related_audit_ids: Mapped[List[str]] = mapped_column(JSONType, nullable=False, default=list)
    event_count: Mapped[int] = mapped_column(Integer, nullable=False)

    status: Mapped[AlertStatus] = mapped_column(
        enum_column(AlertStatus, length=16),
        nullable=False,
        default=AlertStatus.OPEN,
        index=True,
    )
    acknowledged_at: Mapped[Optional[datetime]] = mapped_column(DateTime(), nullable=True)
    acknowledged_by: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    acknowledgement_note: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    resolved_at: Mapped[Optional[datetime]] = mapped_column(DateTime(), nullable=True)
    resolved_by: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    resolution_note: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": str(self.id),
            "rule_id": self.rule_id,
            "rule_name": self.rule_name,
            "alert_type": self.alert_type.value,
            "severity": self.severity.value,
            "scope_key": self.scope_key,
            "message": self.message,
            "related_audit_ids": list(self.related_audit_ids or []),
            "event_count": self.event_count,
            "status": self.status.value,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "acknowledged_at": self.acknowledged_at.isoformat() if self.acknowledged_at else None,
            "acknowledged_by": self.acknowledged_by,
            "acknowledgement_note": self.acknowledgement_note,
            "resolved_at": self.resolved_at.isoformat() if self.resolved_at else None,
            "resolved_by": self.resolved_by,
            "resolution_note": self.resolution_note,
        }
