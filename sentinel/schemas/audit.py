"""
WorkLog Sentinel - Audit Schemas

Audit event input, tagged metadata variants and query types.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, Field, field_validator

from sentinel.models.audit import AuditEntry, AuditEventType, FailureKind


# =============================================================================
# METADATA VARIANTS
# =============================================================================

class RequestMetadata(BaseModel):
    kind: Literal["request"] = "request"
    request_id: Optional[str] = None
    query_params: Dict[str, str] = Field(default_factory=dict)


class SessionMetadata(BaseModel):
    kind: Literal["session"] = "session"
    session_id: Optional[str] = None
    refresh_count: Optional[int] = None
    reason: Optional[str] = None


class RateLimitMetadata(BaseModel):
    kind: Literal["rate_limit"] = "rate_limit"
    category: str
    limit: int
    window_seconds: int
    retry_after: int


class ValidationMetadata(BaseModel):
    """Field names that failed validation. Values are never recorded."""
    kind: Literal["validation"] = "validation"
    schema_name: str
    fields: List[str] = Field(default_factory=list)


class APIKeyMetadata(BaseModel):
    kind: Literal["api_key"] = "api_key"
    key_id: str
    permissions: List[str] = Field(default_factory=list)
    required_permission: Optional[str] = None


class AlertMetadata(BaseModel):
    kind: Literal["alert"] = "alert"
    alert_id: str
    rule_id: str
    severity: str


class OpaqueMetadata(BaseModel):
    """Fallback for event categories without a dedicated shape."""
    kind: Literal["opaque"] = "opaque"
    data: Dict[str, Any] = Field(default_factory=dict)


AuditMetadata = Annotated[
    Union[
        RequestMetadata,
        SessionMetadata,
        RateLimitMetadata,
        ValidationMetadata,
        APIKeyMetadata,
        AlertMetadata,
        OpaqueMetadata,
    ],
    Field(discriminator="kind"),
]

METADATA_KINDS = {"request", "session", "rate_limit", "validation", "api_key", "alert", "opaque"}


# =============================================================================
# AUDIT EVENT
# =============================================================================

class AuditEvent(BaseModel):
    """An event to be written to the audit trail."""

    actor: str = Field(min_length=1, max_length=255)
    event_type: AuditEventType
    endpoint: str = Field(min_length=1, max_length=500)
    method: str = Field(min_length=1, max_length=10)
    success: bool
    failure_kind: Optional[FailureKind] = None

    resource_type: Optional[str] = None
    resource_id: Optional[str] = None
    before_values: Optional[Dict[str, Any]] = None
    after_values: Optional[Dict[str, Any]] = None
    source_address: Optional[str] = None
    user_agent: Optional[str] = None
    status_code: Optional[int] = None
    duration_ms: Optional[int] = None
    error_message: Optional[str] = None
    metadata: Optional[AuditMetadata] = None

    @field_validator("method")
    @classmethod
    def upper_method(cls, value: str) -> str:
        return value.upper()

    @field_validator("metadata", mode="before")
    @classmethod
    def wrap_untagged_metadata(cls, value: Any) -> Any:
        """Plain dicts without a known kind become opaque metadata."""
        if isinstance(value, dict) and value.get("kind") not in METADATA_KINDS:
            return {"kind": "opaque", "data": value}
        return value


# =============================================================================
# QUERY TYPES
# =============================================================================

@dataclass
class AuditFilters:
    actor: Optional[str] = None
    event_type: Optional[AuditEventType] = None
    resource_type: Optional[str] = None
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    success: Optional[bool] = None


@dataclass
class AuditPage:
    total: int
    page: int
    page_size: int
    items: List[AuditEntry] = field(default_factory=list)

    @property
    def pages(self) -> int:
        if self.page_size <= 0:
            return 0
        return (self.total + self.page_size - 1) // self.page_size

    def to_dict(self) -> Dict[str, Any]:
        return {
            "items": [entry.to_dict() for entry in self.items],
            "total": self.total,
            "page": self.page,
            "page_size": self.page_size,
            "pages": self.pages,
        }
