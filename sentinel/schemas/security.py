"""
WorkLog Sentinel - Security Schemas

Monitoring events, alert and API-key request/response schemas.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional

from pydantic import Field

from sentinel.middleware.validation import SanitizedModel
from sentinel.models.api_key import APIKeyPermission
from sentinel.models.audit import AuditEntry


@dataclass(frozen=True)
class SecurityEvent:
    """An event fed to the monitoring rules."""

    event_type: str
    actor: str
    source_address: Optional[str] = None
    audit_id: Optional[str] = None

    @classmethod
    def from_entry(cls, entry: AuditEntry) -> "SecurityEvent":
        return cls(
            event_type=entry.event_type.value,
            actor=entry.actor,
            source_address=entry.source_address,
            audit_id=str(entry.id) if entry.id else None,
        )


class AcknowledgeAlertRequest(SanitizedModel):
    note: Optional[str] = Field(None, max_length=1000)


class ResolveAlertRequest(SanitizedModel):
    resolution_note: Optional[str] = Field(None, max_length=2000)


class CreateAPIKeyRequest(SanitizedModel):
    name: str = Field(..., min_length=1, max_length=255)
    owner: Optional[str] = Field(None, max_length=255)
    permissions: List[APIKeyPermission] = Field(..., min_length=1)
    expires_at: Optional[datetime] = None
