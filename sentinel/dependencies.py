"""
WorkLog Sentinel - FastAPI Dependencies

Service wiring and the per-request security pipeline:

1. rate_limit(category)     - 429 with Retry-After
2. validated_body(schema)   - 400 with field errors
3. require_session          - 401 on expired/revoked/unknown sessions
4. require_admin            - 403 for non-operators
5. require_api_key(perm)    - scoped credentials for integrations

Routes declare them in this order; FastAPI resolves route-level
dependencies first and endpoint parameters in signature order.
"""

from dataclasses import dataclass
from typing import Callable, List, Optional, Type

from fastapi import Depends, Request
from fastapi.security import APIKeyHeader, HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.ext.asyncio import async_sessionmaker

from sentinel.config import Settings
from sentinel.middleware.audit_route import client_address
from sentinel.middleware.rate_limit import RateLimitCategory, RateLimiter, limits_from_settings
from sentinel.middleware.validation import SchemaT, ValidationMiddleware
from sentinel.models.api_key import APIKey, APIKeyPermission
from sentinel.models.session import Session
from sentinel.services.api_key_service import APIKeyManager
from sentinel.services.archival_service import ArchivalManager, JsonlArchiveWriter
from sentinel.services.audit_trail_service import AuditTrailManager
from sentinel.services.encryption_service import EncryptedDataStore, EncryptionManager
from sentinel.services.identity_service import IdentityProvider, PasswordIdentityProvider
from sentinel.services.masking_service import APIMaskingManager
from sentinel.services.monitoring_service import MonitoringManager
from sentinel.services.notification_service import AlertNotifier
from sentinel.services.session_service import SessionManager
from sentinel.utils.error_handling import (
    InvalidAPIKey,
    PermissionDenied,
    RateLimitExceeded,
    SessionNotFound,
)


# ===========================================
# SERVICE CONTAINER
# ===========================================

@dataclass
class SecurityServices:
    """Explicitly constructed security services shared by all requests."""

    masking: APIMaskingManager
    encryption: EncryptionManager
    encrypted_data: EncryptedDataStore
    audit: AuditTrailManager
    monitoring: MonitoringManager
    notifier: AlertNotifier
    rate_limiter: RateLimiter
    sessions: SessionManager
    api_keys: APIKeyManager
    archival: ArchivalManager
    validation: ValidationMiddleware
    identity_provider: IdentityProvider
    admin_identities: List[str]

    async def close(self) -> None:
        await self.audit.drain()
        await self.monitoring.drain()
        await self.notifier.close()


def build_services(
    session_factory: async_sessionmaker,
    settings: Settings,
    identity_provider: Optional[IdentityProvider] = None,
    encryption: Optional[EncryptionManager] = None,
) -> SecurityServices:
    """
    Wire every security service from settings.

    Raises:
        ConfigurationError: If the encryption keyring is missing or malformed
    """
    encryption = encryption or EncryptionManager.from_settings(settings)
    encryption.validate_config()

    masking = APIMaskingManager(allowed_domains=settings.external_domain_allowlist_list)
    notifier = AlertNotifier(masking, webhook_url=settings.alert_webhook_url)
    monitoring = MonitoringManager(
        session_factory,
        cooldown_seconds=settings.alert_cooldown_minutes * 60,
        notifier=notifier,
    )
    audit = AuditTrailManager(
        session_factory,
        masking,
        monitoring=monitoring,
        write_timeout=settings.audit_write_timeout_seconds,
        max_page_size=settings.audit_max_page_size,
    )
    archive_writer = JsonlArchiveWriter(settings.archive_directory) if settings.archive_directory else None

    return SecurityServices(
        masking=masking,
        encryption=encryption,
        encrypted_data=EncryptedDataStore(session_factory, encryption),
        audit=audit,
        monitoring=monitoring,
        notifier=notifier,
        rate_limiter=RateLimiter(limits_from_settings(settings), audit=audit),
        sessions=SessionManager(
            session_factory,
            lifetime_minutes=settings.session_lifetime_minutes,
            max_refresh_count=settings.session_max_refresh_count,
            max_sessions_per_user=settings.max_sessions_per_user,
        ),
        api_keys=APIKeyManager(session_factory, audit=audit),
        archival=ArchivalManager(
            session_factory,
            audit_retention_days=settings.audit_retention_days,
            alert_retention_days=settings.alert_retention_days,
            session_retention_days=settings.session_retention_days,
            batch_size=settings.archival_batch_size,
            archive_writer=archive_writer,
        ),
        validation=ValidationMiddleware(audit=audit),
        identity_provider=identity_provider or PasswordIdentityProvider(settings.operator_accounts),
        admin_identities=settings.admin_identities_list,
    )


def get_services(request: Request) -> SecurityServices:
    return request.app.state.security


# ===========================================
# PIPELINE DEPENDENCIES
# ===========================================

def rate_limit(category: RateLimitCategory) -> Callable:
    """Dependency factory applying the rate limit for category to the client address."""

    async def check_rate_limit(request: Request) -> None:
        services = get_services(request)
        address = client_address(request)
        try:
            status = await services.rate_limiter.apply_rate_limit(
                category,
                address,
                endpoint=request.url.path,
                method=request.method,
                source_address=address,
                user_agent=request.headers.get("user-agent"),
            )
        except RateLimitExceeded:
            # The limiter already wrote the audit entry
            request.state.audit_recorded = True
            raise
        request.state.rate_limit_status = status

    return check_rate_limit


def validated_body(schema: Type[SchemaT]) -> Callable:
    """Dependency factory validating the JSON body against schema."""

    async def parse_body(request: Request) -> SchemaT:
        return await get_services(request).validation.validate(request, schema)

    return parse_body


bearer_scheme = HTTPBearer(auto_error=False)
api_key_header = APIKeyHeader(name="X-API-Key", auto_error=False)


async def require_session(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
) -> Session:
    """Validate the bearer session token and record the activity."""
    if credentials is None or not credentials.credentials:
        raise SessionNotFound()

    services = get_services(request)
    token = credentials.credentials
    session = await services.sessions.validate_session(token)
    await services.sessions.track_activity(
        token,
        f"{request.method} {request.url.path}",
        client_address(request),
    )
    request.state.session = session
    request.state.session_token = token
    return session


async def require_admin(
    request: Request,
    session: Session = Depends(require_session),
) -> Session:
    """Operator routes: session owner must be listed in admin_identities."""
    if session.owner.lower() not in get_services(request).admin_identities:
        raise PermissionDenied("Operator access required")
    return session


def require_api_key(permission: APIKeyPermission) -> Callable:
    """Dependency factory verifying an X-API-Key header for permission."""

    async def verify_api_key(
        request: Request,
        presented: Optional[str] = Depends(api_key_header),
    ) -> APIKey:
        if not presented:
            raise InvalidAPIKey("API key required")
        try:
            api_key = await get_services(request).api_keys.verify(presented, permission)
        except PermissionDenied:
            # Denial already audited by the key manager
            request.state.audit_recorded = True
            raise
        request.state.api_key = api_key
        return api_key

    return verify_api_key
