"""
WorkLog Sentinel - Session Models

Server-tracked authentication leases and their activity log.
"""

import uuid
from datetime import datetime
from typing import Any, Dict, Optional

from sqlalchemy import Boolean, DateTime, ForeignKey, Integer, String, Text, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from sentinel.models.base import BaseModel, IPAddressType


class Session(BaseModel):
    """
    Authentication session.

    Usable only while not revoked and before expires_at. Activity moves
    last_activity_at but never expires_at; only a refresh extends expiry.
    """

    __tablename__ = "sessions"

    token_hash: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    owner: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    issued_at: Mapped[datetime] = mapped_column(DateTime(), nullable=False)
    last_activity_at: Mapped[datetime] = mapped_column(DateTime(), nullable=False)
    expires_at: Mapped[datetime] = mapped_column(DateTime(), nullable=False, index=True)
    refresh_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    revoked: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    revoked_at: Mapped[Optional[datetime]] = mapped_column(DateTime(), nullable=True)
    revoked_reason: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)

    origin_address: Mapped[Optional[str]] = mapped_column(IPAddressType, nullable=True)
    user_agent: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    def is_usable(self, now: datetime) -> bool:
        return not self.revoked and now < self.expires_at

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": str(self.id),
            "owner": self.owner,
            "issued_at": self.issued_at.isoformat(),
            "last_activity_at": self.last_activity_at.isoformat(),
            "expires_at": self.expires_at.isoformat(),
            "refresh_count": self.refresh_count,
            "revoked": self.revoked,
            "origin_address": self.origin_address,
        }


class SessionActivity(BaseModel):
    """Action performed within a session."""

    __tablename__ = "session_activities"

    session_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(),
        ForeignKey("sessions.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    owner: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    action: Mapped[str] = mapped_column(String(255), nullable=False)
    source_address: Mapped[Optional[str]] = mapped_column(IPAddressType, nullable=True)
    suspicious: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
