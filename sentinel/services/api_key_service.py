"""
WorkLog Sentinel - API Key Service

Issues and verifies scoped API keys. Keys look like ak_<prefix>_<secret>;
the prefix is a public lookup handle and only a SHA-256 hash of the full
key is stored. Verification fails closed.
"""

import logging
import secrets
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Iterable, List, Optional
from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import async_sessionmaker

from sentinel.models.api_key import APIKey, APIKeyPermission
from sentinel.models.audit import AuditEventType, FailureKind
from sentinel.schemas.audit import APIKeyMetadata, AuditEvent
from sentinel.utils.error_handling import InvalidAPIKey, NotFoundException, PermissionDenied
from sentinel.utils.security import constant_time_equals, hash_token, utcnow

logger = logging.getLogger(__name__)

KEY_PREFIX = "ak"


@dataclass(frozen=True)
class IssuedAPIKey:
    """A newly generated key. plaintext is never retrievable again."""

    plaintext: str
    api_key: APIKey


def _parse_key(presented: str) -> Optional[str]:
    """Return the lookup prefix of a well-formed key, else None."""
    parts = presented.split("_", 2)
    if len(parts) != 3 or parts[0] != KEY_PREFIX or not parts[1] or not parts[2]:
        return None
    return parts[1]


class APIKeyManager:
    """Scoped credential management."""

    def __init__(
        self,
        session_factory: async_sessionmaker,
        audit=None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._session_factory = session_factory
        self._audit = audit
        self._clock = clock

    async def generate_api_key(
        self,
        owner: str,
        name: str,
        permissions: Iterable[APIKeyPermission],
        expires_at: Optional[datetime] = None,
        created_by: Optional[str] = None,
    ) -> IssuedAPIKey:
        """Create a key and return its plaintext exactly once."""
        prefix = secrets.token_hex(6)
        plaintext = f"{KEY_PREFIX}_{prefix}_{secrets.token_urlsafe(32)}"
        permission_values = sorted({APIKeyPermission(p).value for p in permissions})

        api_key = APIKey(
            owner=owner,
            name=name,
            key_prefix=prefix,
            key_hash=hash_token(plaintext),
            permissions=permission_values,
            expires_at=expires_at,
            revoked=False,
            usage_count=0,
            created_at=self._clock(),
        )
        async with self._session_factory() as db:
            db.add(api_key)
            await db.commit()

        logger.info(f"API key {api_key.masked_key} created for {owner}")
        if self._audit is not None:
            await self._audit.record(AuditEvent(
                actor=created_by or owner,
                event_type=AuditEventType.API_KEY_CREATED,
                endpoint="internal",
                method="SYSTEM",
                success=True,
                resource_type="api_key",
                resource_id=str(api_key.id),
                metadata=APIKeyMetadata(key_id=str(api_key.id), permissions=permission_values),
            ))
        return IssuedAPIKey(plaintext=plaintext, api_key=api_key)

    async def verify(self, presented_key: str, required_permission: APIKeyPermission) -> APIKey:
        """
        Verify a presented key for a permission and record its use.

        Raises:
            InvalidAPIKey: Unknown, malformed, revoked or expired key
            PermissionDenied: Key lacks required_permission
        """
        prefix = _parse_key(presented_key or "")
        if prefix is None:
            raise InvalidAPIKey()

        now = self._clock()
        async with self._session_factory() as db:
            result = await db.execute(select(APIKey).where(APIKey.key_prefix == prefix))
            api_key = result.scalar_one_or_none()

            if api_key is None or not constant_time_equals(api_key.key_hash, hash_token(presented_key)):
                raise InvalidAPIKey()
            if api_key.revoked:
                raise InvalidAPIKey("API key has been revoked")
            if api_key.is_expired(now):
                raise InvalidAPIKey("API key has expired")

            permitted = api_key.has_permission(required_permission)
            if permitted:
                await db.execute(
                    update(APIKey)
                    .where(APIKey.id == api_key.id)
                    .values(usage_count=APIKey.usage_count + 1, last_used_at=now)
                    .execution_options(synchronize_session=False)
                )
                await db.commit()
                await db.refresh(api_key)

        if not permitted:
            logger.warning(f"API key {api_key.masked_key} denied {required_permission.value}")
            if self._audit is not None:
                await self._audit.record(AuditEvent(
                    actor=api_key.owner,
                    event_type=AuditEventType.ACCESS_DENIED,
                    endpoint="internal",
                    method="SYSTEM",
                    success=False,
                    failure_kind=FailureKind.DENIED,
                    metadata=APIKeyMetadata(
                        key_id=str(api_key.id),
                        permissions=list(api_key.permissions),
                        required_permission=required_permission.value,
                    ),
                ))
            raise PermissionDenied(
                "API key does not grant the required permission",
                required_permission=required_permission.value,
            )
        return api_key

    async def revoke(self, key_id: UUID, revoked_by: str) -> APIKey:
        now = self._clock()
        async with self._session_factory() as db:
            api_key = await db.get(APIKey, key_id)
            if api_key is None:
                raise NotFoundException("API key", key_id)
            if not api_key.revoked:
                api_key.revoked = True
                api_key.revoked_at = now
                await db.commit()

        logger.info(f"API key {api_key.masked_key} revoked by {revoked_by}")
        if self._audit is not None:
            await self._audit.record(AuditEvent(
                actor=revoked_by,
                event_type=AuditEventType.API_KEY_REVOKED,
                endpoint="internal",
                method="SYSTEM",
                success=True,
                resource_type="api_key",
                resource_id=str(api_key.id),
                metadata=APIKeyMetadata(key_id=str(api_key.id), permissions=list(api_key.permissions)),
            ))
        return api_key

    async def list_keys(self, owner: Optional[str] = None) -> List[APIKey]:
        query = select(APIKey).order_by(APIKey.created_at.desc())
        if owner:
            query = query.where(APIKey.owner == owner)
        async with self._session_factory() as db:
            result = await db.execute(query)
            return list(result.scalars().all())
