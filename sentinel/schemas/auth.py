"""
WorkLog Sentinel - Authentication Schemas
"""

from pydantic import Field

from sentinel.middleware.validation import SanitizedModel


class LoginRequest(SanitizedModel):
    email: str = Field(..., min_length=3, max_length=255, pattern=r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
    password: str = Field(..., min_length=1, max_length=128)
