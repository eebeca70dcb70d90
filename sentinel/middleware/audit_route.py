"""
WorkLog Sentinel - Audited Route

APIRoute subclass that records one audit entry per request, whatever the
outcome. Stages that already recorded their own entry (rate limiter,
validation) set request.state.audit_recorded to skip the route entry.
Handlers may set request.state.audit_metadata to a typed metadata variant
in place of the default request metadata.
"""

import logging
import time
from typing import Callable, Optional

from fastapi import HTTPException, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.routing import APIRoute

from sentinel.models.audit import AuditEventType, FailureKind
from sentinel.schemas.audit import AuditEvent, RequestMetadata
from sentinel.utils.error_handling import (
    AppException,
    AuthenticationException,
    PermissionDenied,
    RateLimitExceeded,
    RequestValidationFailed,
)

logger = logging.getLogger(__name__)


def client_address(request: Request) -> str:
    return request.client.host if request.client else "unknown"


def request_actor(request: Request) -> str:
    """Session owner, API key owner, or the client address."""
    session = getattr(request.state, "session", None)
    if session is not None:
        return session.owner
    api_key = getattr(request.state, "api_key", None)
    if api_key is not None:
        return api_key.owner
    return f"anonymous@{client_address(request)}"


def _classify(exc: Exception):
    """Map an exception to (status_code, failure_kind, message)."""
    if isinstance(exc, RequestValidationError):
        return 400, FailureKind.VALIDATION, "Request validation failed"
    if isinstance(exc, AppException):
        message = exc.message if exc.status_code < 500 else exc.code.value
        if isinstance(exc, RequestValidationFailed):
            return exc.status_code, FailureKind.VALIDATION, message
        if isinstance(exc, RateLimitExceeded):
            return exc.status_code, FailureKind.RATE_LIMITED, message
        if isinstance(exc, (AuthenticationException, PermissionDenied)):
            return exc.status_code, FailureKind.DENIED, message
        return exc.status_code, FailureKind.ERROR, message
    if isinstance(exc, HTTPException):
        kind = FailureKind.DENIED if exc.status_code in (401, 403) else FailureKind.ERROR
        return exc.status_code, kind, str(exc.detail)
    return 500, FailureKind.ERROR, type(exc).__name__


async def record_request(
    request: Request,
    status_code: int,
    duration_ms: int,
    failure_kind: Optional[FailureKind] = None,
    error_message: Optional[str] = None,
) -> None:
    if getattr(request.state, "audit_recorded", False):
        return
    services = getattr(request.app.state, "security", None)
    if services is None:
        return

    success = failure_kind is None and status_code < 400
    event_type = getattr(request.state, "audit_event_type", None)
    if event_type is None:
        event_type = AuditEventType.ACCESS_DENIED if status_code == 403 else AuditEventType.API_CALL

    request.state.audit_recorded = True
    await services.audit.record(AuditEvent(
        actor=request_actor(request),
        event_type=event_type,
        endpoint=request.url.path,
        method=request.method,
        success=success,
        failure_kind=None if success else (failure_kind or FailureKind.ERROR),
        status_code=status_code,
        duration_ms=duration_ms,
        error_message=error_message,
        source_address=client_address(request),
        user_agent=request.headers.get("user-agent"),
        resource_type=getattr(request.state, "audit_resource_type", None),
        resource_id=getattr(request.state, "audit_resource_id", None),
        metadata=getattr(request.state, "audit_metadata", None) or RequestMetadata(
            request_id=request.headers.get("x-request-id"),
            query_params=dict(request.query_params),
        ),
    ))


class AuditedRoute(APIRoute):
    """Route class that audits every call, success or failure."""

    def get_route_handler(self) -> Callable:
        original_handler = super().get_route_handler()

        async def audited_handler(request: Request) -> Response:
            started = time.perf_counter()
            try:
                response = await original_handler(request)
            except Exception as exc:
                status_code, failure_kind, message = _classify(exc)
                duration_ms = int((time.perf_counter() - started) * 1000)
                await record_request(request, status_code, duration_ms, failure_kind, message)
                raise

            rate_limit_status = getattr(request.state, "rate_limit_status", None)
            if rate_limit_status is not None:
                for name, value in rate_limit_status.headers().items():
                    response.headers[name] = value

            duration_ms = int((time.perf_counter() - started) * 1000)
            await record_request(request, response.status_code, duration_ms)
            return response

        return audited_handler
