"""
WorkLog Sentinel - Authentication Router

Login, refresh and logout over server-tracked sessions.
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Request
from fastapi.security import HTTPAuthorizationCredentials

from sentinel.dependencies import (
    bearer_scheme,
    get_services,
    rate_limit,
    require_session,
    validated_body,
)
from sentinel.middleware.audit_route import AuditedRoute, client_address
from sentinel.middleware.rate_limit import RateLimitCategory
from sentinel.models.audit import AuditEventType
from sentinel.models.session import Session
from sentinel.schemas.audit import SessionMetadata
from sentinel.schemas.auth import LoginRequest
from sentinel.utils.error_handling import InvalidCredentials, SessionNotFound

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/auth",
    tags=["Authentication"],
    route_class=AuditedRoute,
)


@router.post("/login", dependencies=[Depends(rate_limit(RateLimitCategory.AUTH))])
async def login(
    request: Request,
    payload: LoginRequest = Depends(validated_body(LoginRequest)),
):
    """Authenticate with the identity provider and open a session."""
    services = get_services(request)
    request.state.audit_event_type = AuditEventType.LOGIN_FAILED

    identity = await services.identity_provider.authenticate(payload.email, payload.password)
    if identity is None:
        raise InvalidCredentials()

    issued = await services.sessions.create_session(
        identity,
        address=client_address(request),
        user_agent=request.headers.get("user-agent"),
    )
    request.state.audit_event_type = AuditEventType.LOGIN
    request.state.session = issued.session
    request.state.audit_metadata = SessionMetadata(session_id=str(issued.session.id), refresh_count=0, reason="login")

    return {
        "success": True,
        "data": {
            "token": issued.token,
            "token_type": "bearer",
            "expires_at": issued.session.expires_at.isoformat(),
            "session": issued.session.to_dict(),
        },
    }


@router.post("/refresh", dependencies=[Depends(rate_limit(RateLimitCategory.AUTH))])
async def refresh(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
):
    """Extend the current session. Capped by the maximum refresh count."""
    request.state.audit_event_type = AuditEventType.SESSION_REFRESH
    if credentials is None:
        raise SessionNotFound()

    session = await get_services(request).sessions.refresh_session(credentials.credentials)
    request.state.session = session
    request.state.audit_metadata = SessionMetadata(
        session_id=str(session.id),
        refresh_count=session.refresh_count,
        reason="refresh",
    )
    return {
        "success": True,
        "data": {
            "expires_at": session.expires_at.isoformat(),
            "refresh_count": session.refresh_count,
        },
    }


@router.post("/logout", dependencies=[Depends(rate_limit(RateLimitCategory.API))])
async def logout(
    request: Request,
    session: Session = Depends(require_session),
):
    """Revoke the current session."""
    request.state.audit_event_type = AuditEventType.LOGOUT
    request.state.audit_metadata = SessionMetadata(session_id=str(session.id), reason="logout")
    await get_services(request).sessions.revoke(request.state.session_token, reason="logout")
    return {"success": True, "data": {"message": "Logged out"}}


@router.get("/session", dependencies=[Depends(rate_limit(RateLimitCategory.API))])
async def current_session(session: Session = Depends(require_session)):
    """Return the current session."""
    return {"success": True, "data": session.to_dict()}
