"""
WorkLog Sentinel - Security Utilities

Token generation, one-way hashing and password verification helpers.
"""

import hashlib
import hmac
import secrets
from datetime import datetime, timezone

from passlib.context import CryptContext


# Password hashing context
pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")


def utcnow() -> datetime:
    """Current UTC time as a naive datetime (storage convention)."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def verify_password(plain_password: str, hashed_password: str) -> bool:
    """Verify a password against its bcrypt hash."""
    try:
        return pwd_context.verify(plain_password, hashed_password)
    except ValueError:
        # Malformed hash
        return False


def get_password_hash(password: str) -> str:
    """Hash a password using bcrypt."""
    return pwd_context.hash(password)


def generate_token(num_bytes: int = 32) -> str:
    """Generate an opaque URL-safe random token."""
    return secrets.token_urlsafe(num_bytes)


def hash_token(token: str) -> str:
    """One-way SHA-256 hash used for token and key lookup."""
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def constant_time_equals(left: str, right: str) -> bool:
    """Compare two digests without leaking timing information."""
    return hmac.compare_digest(left.encode("utf-8"), right.encode("utf-8"))
