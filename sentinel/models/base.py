"""
WorkLog Sentinel - Base Model

Base model class, mixins and portable column types for all models.
"""

import uuid
from datetime import datetime

from sqlalchemy import JSON, DateTime, Enum as SQLEnum, String, Uuid
from sqlalchemy.dialects.postgresql import INET, JSONB
from sqlalchemy.orm import Mapped, mapped_column

from sentinel.database import Base
from sentinel.utils.security import utcnow


# JSONB and INET on PostgreSQL, generic types elsewhere (tests run on SQLite)
JSONType = JSON().with_variant(JSONB(), "postgresql")
IPAddressType = String(45).with_variant(INET(), "postgresql")


def enum_column(enum_cls, length: int = 32) -> SQLEnum:
    """Store a str enum by value in a portable VARCHAR column."""
    return SQLEnum(
        enum_cls,
        values_callable=lambda members: [member.value for member in members],
        native_enum=False,
        length=length,
    )


class TimestampMixin:
    """Mixin that adds a creation timestamp set from the application clock."""

    created_at: Mapped[datetime] = mapped_column(
        DateTime(),
        default=utcnow,
        nullable=False,
        index=True,
    )


class BaseModel(Base, TimestampMixin):
    """
    Abstract base model with UUID primary key and creation timestamp.
    All models should inherit from this class.
    """

    __abstract__ = True

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid(),
        primary_key=True,
        default=uuid.uuid4,
    )

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__}(id={self.id})>"
