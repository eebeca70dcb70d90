"""
WorkLog Sentinel - Identity Provider

The identity provider is external to this subsystem. PasswordIdentityProvider
checks operator credentials against bcrypt hashes from configuration.
"""

from typing import Dict, Optional, Protocol

from sentinel.utils.security import verify_password


class IdentityProvider(Protocol):
    async def authenticate(self, identity: str, password: str) -> Optional[str]:
        """Return the canonical identity on success, None otherwise."""
        ...


class PasswordIdentityProvider:
    """Checks passwords against a mapping of identity -> bcrypt hash."""

    def __init__(self, accounts: Dict[str, str]):
        self._accounts = {identity.lower(): hashed for identity, hashed in accounts.items()}

    async def authenticate(self, identity: str, password: str) -> Optional[str]:
        canonical = identity.strip().lower()
        hashed = self._accounts.get(canonical)
        if hashed is None or not verify_password(password, hashed):
            return None
        return canonical
