"""
WorkLog Sentinel - Audit Trail Model

Append-only record of every security-relevant action.
"""

import enum
from typing import Any, Dict, Optional

from sqlalchemy import Boolean, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from sentinel.models.base import BaseModel, IPAddressType, JSONType, enum_column


class AuditEventType(str, enum.Enum):
    """Audit event types."""
    CREATE = "create"
    READ = "read"
    UPDATE = "update"
    DELETE = "delete"
    LOGIN = "login"
    LOGIN_FAILED = "login_failed"
    LOGOUT = "logout"
    SESSION_REFRESH = "session_refresh"
    SESSION_REVOKED = "session_revoked"
    ACCESS_DENIED = "access_denied"
    SECURITY_ALERT = "security_alert"
    API_CALL = "api_call"
    API_KEY_CREATED = "api_key_created"
    API_KEY_REVOKED = "api_key_revoked"
    DATA_ACCESS = "data_access"
    DATA_EXPORT = "data_export"
    DATA_IMPORT = "data_import"
    CONFIGURATION_CHANGE = "configuration_change"
    USER_PERMISSION_CHANGE = "user_permission_change"
    RATE_LIMIT_EXCEEDED = "rate_limit_exceeded"
    VALIDATION_FAILED = "validation_failed"
    SYSTEM_MAINTENANCE = "system_maintenance"


class FailureKind(str, enum.Enum):
    """Why an audited operation did not succeed."""
    VALIDATION = "validation"
    DENIED = "denied"
    RATE_LIMITED = "rate_limited"
    ERROR = "error"


class AuditEntry(BaseModel):
    """
    Immutable audit trail entry.

    Rows are inserted by the audit trail service and removed only by the
    retention sweep. Snapshots and metadata are masked before insert.
    """

    __tablename__ = "audit_trail"
    __table_args__ = (
        Index("ix_audit_trail_actor_created_at", "actor", "created_at"),
    )

    actor: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    event_type: Mapped[AuditEventType] = mapped_column(
        enum_column(AuditEventType),
        nullable=False,
        index=True,
    )

    # Target resource
    resource_type: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    resource_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    before_values: Mapped[Optional[Dict[str, Any]]] = mapped_column(JSONType, nullable=True)
    after_values: Mapped[Optional[Dict[str, Any]]] = mapped_column(JSONType, nullable=True)

    # Request context
    source_address: Mapped[Optional[str]] = mapped_column(IPAddressType, nullable=True)
    user_agent: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    endpoint: Mapped[str] = mapped_column(String(500), nullable=False)
    method: Mapped[str] = mapped_column(String(10), nullable=False)

    # Outcome
    success: Mapped[bool] = mapped_column(Boolean, nullable=False)
    failure_kind: Mapped[Optional[FailureKind]] = mapped_column(
        enum_column(FailureKind, length=20),
        nullable=True,
    )
    status_code: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    duration_ms: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    event_metadata: Mapped[Optional[Dict[str, Any]]] = mapped_column(
        "metadata",
        JSONType,
        nullable=True,
    )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": str(self.id),
            "actor": self.actor,
            "event_type": self.event_type.value,
            "resource_type": self.resource_type,
            "resource_id": self.resource_id,
            "before_values": self.before_values,
            "after_values": self.after_values,
            "source_address": self.source_address,
            "user_agent": self.user_agent,
            "endpoint": self.endpoint,
            "method": self.method,
            "success": self.success,
            "failure_kind": self.failure_kind.value if self.failure_kind else None,
            "status_code": self.status_code,
            "duration_ms": self.duration_ms,
            "error_message": self.error_message,
            "metadata": self.event_metadata,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
