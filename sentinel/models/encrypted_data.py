"""
WorkLog Sentinel - Encrypted Data Model
"""

from datetime import datetime

from sqlalchemy import DateTime, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from sentinel.models.base import BaseModel
from sentinel.utils.security import utcnow


class EncryptedDataRecord(BaseModel):
    """AES-GCM encrypted value owned by an identity, one row per field."""

    __tablename__ = "encrypted_data"
    __table_args__ = (
        UniqueConstraint("owner", "field_name", name="uq_encrypted_data_owner_field"),
    )

    owner: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    field_name: Mapped[str] = mapped_column(String(100), nullable=False)
    key_version: Mapped[str] = mapped_column(String(32), nullable=False)
    nonce: Mapped[str] = mapped_column(String(32), nullable=False)
    ciphertext: Mapped[str] = mapped_column(Text, nullable=False)
    tag: Mapped[str] = mapped_column(String(32), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(),
        default=utcnow,
        onupdate=utcnow,
        nullable=False,
    )
