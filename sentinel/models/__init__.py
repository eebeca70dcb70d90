"""
WorkLog Sentinel - Database Models
"""

from sentinel.models.base import BaseModel, TimestampMixin
from sentinel.models.audit import AuditEntry, AuditEventType, FailureKind
from sentinel.models.security_alert import (
    ALLOWED_TRANSITIONS,
    AlertSeverity,
    AlertStatus,
    AlertType,
    MonitoringRule,
    RuleScope,
    SecurityAlert,
)
from sentinel.models.session import Session, SessionActivity
from sentinel.models.api_key import APIKey, APIKeyPermission
from sentinel.models.encrypted_data import EncryptedDataRecord

__all__ = [
    "BaseModel",
    "TimestampMixin",
    "AuditEntry",
    "AuditEventType",
    "FailureKind",
    "ALLOWED_TRANSITIONS",
    "AlertSeverity",
    "AlertStatus",
    "AlertType",
    "MonitoringRule",
    "RuleScope",
    "SecurityAlert",
    "Session",
    "SessionActivity",
    "APIKey",
    "APIKeyPermission",
    "EncryptedDataRecord",
]
