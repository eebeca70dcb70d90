"""
WorkLog Sentinel - API Key Model

Scoped credentials for programmatic access. Only a SHA-256 hash of the
key is stored; the plaintext is shown once at creation.
"""

import enum
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import Boolean, DateTime, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from sentinel.models.base import BaseModel, JSONType


class APIKeyPermission(str, enum.Enum):
    READ_USERS = "read_users"
    WRITE_USERS = "write_users"
    READ_PROJECTS = "read_projects"
    WRITE_PROJECTS = "write_projects"
    READ_WORKLOGS = "read_worklogs"
    WRITE_WORKLOGS = "write_worklogs"
    READ_INTEGRATIONS = "read_integrations"
    WRITE_INTEGRATIONS = "write_integrations"
    ADMIN_ACCESS = "admin_access"
    EXPORT_DATA = "export_data"
    IMPORT_DATA = "import_data"


class APIKey(BaseModel):
    """Scoped API key."""

    __tablename__ = "api_keys"

    owner: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)

    key_prefix: Mapped[str] = mapped_column(String(32), nullable=False, unique=True)
    key_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    permissions: Mapped[List[str]] = mapped_column(JSONType, nullable=False, default=list)

    revoked: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    revoked_at: Mapped[Optional[datetime]] = mapped_column(DateTime(), nullable=True)
    expires_at: Mapped[Optional[datetime]] = mapped_column(DateTime(), nullable=True)
    last_used_at: Mapped[Optional[datetime]] = mapped_column(DateTime(), nullable=True)
    usage_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at is not None and now >= self.expires_at

    def has_permission(self, permission: APIKeyPermission) -> bool:
        return permission.value in (self.permissions or [])

    @property
    def masked_key(self) -> str:
        return f"ak_{self.key_prefix}_****"

    def to_dict(self) -> Dict[str, Any]:
        """Public view of the key. Never includes the hash."""
        return {
            "id": str(self.id),
            "owner": self.owner,
            "name": self.name,
            "masked_key": self.masked_key,
            "permissions": list(self.permissions or []),
            "revoked": self.revoked,
            "revoked_at": self.revoked_at.isoformat() if self.revoked_at else None,
            "expires_at": self.expires_at.isoformat() if self.expires_at else None,
            "last_used_at": self.last_used_at.isoformat() if self.last_used_at else None,
            "usage_count": self.usage_count,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
