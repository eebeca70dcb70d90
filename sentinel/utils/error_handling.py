"""
Centralized Error Handling for WorkLog Sentinel

This module provides:
- The security exception hierarchy
- Standardized error responses
- FastAPI exception handlers that never leak internals
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional
import logging

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError
from starlette.exceptions import HTTPException as StarletteHTTPException

# Configure logging
logger = logging.getLogger("sentinel.errors")


class ErrorCode(str, Enum):
    """Standardized error codes for the application"""

    # Validation Errors (400)
    VALIDATION_ERROR = "VALIDATION_ERROR"
    INVALID_INPUT = "INVALID_INPUT"

    # Authentication Errors (401)
    UNAUTHORIZED = "UNAUTHORIZED"
    SESSION_EXPIRED = "SESSION_EXPIRED"
    SESSION_REVOKED = "SESSION_REVOKED"
    SESSION_NOT_FOUND = "SESSION_NOT_FOUND"
    REFRESH_LIMIT_EXCEEDED = "REFRESH_LIMIT_EXCEEDED"
    INVALID_CREDENTIALS = "INVALID_CREDENTIALS"
    INVALID_API_KEY = "INVALID_API_KEY"

    # Authorization Errors (403)
    FORBIDDEN = "FORBIDDEN"
    PERMISSION_DENIED = "PERMISSION_DENIED"
    DOMAIN_NOT_ALLOWED = "DOMAIN_NOT_ALLOWED"

    # Resource Errors (404/409)
    NOT_FOUND = "NOT_FOUND"
    RESOURCE_CONFLICT = "RESOURCE_CONFLICT"
    INVALID_STATE_TRANSITION = "INVALID_STATE_TRANSITION"

    # Rate Limiting (429)
    RATE_LIMITED = "RATE_LIMITED"

    # Internal Errors (500)
    DATABASE_ERROR = "DATABASE_ERROR"
    SECURITY_INTEGRITY_ERROR = "SECURITY_INTEGRITY_ERROR"
    INTERNAL_PERSISTENCE_ERROR = "INTERNAL_PERSISTENCE_ERROR"
    CONFIGURATION_ERROR = "CONFIGURATION_ERROR"
    INTERNAL_ERROR = "INTERNAL_ERROR"


class AppException(Exception):
    """Base exception for all application exceptions"""

    def __init__(
        self,
        code: ErrorCode,
        message: str,
        status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR,
        details: Optional[Dict[str, Any]] = None,
        field: Optional[str] = None,
        original_error: Optional[Exception] = None,
        headers: Optional[Dict[str, str]] = None,
    ):
        self.code = code
        self.message = message
        self.status_code = status_code
        self.details = details or {}
        self.field = field
        self.original_error = original_error
        self.headers = headers
        self.timestamp = datetime.now(timezone.utc)
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for JSON response"""
        result = {
            "code": self.code.value,
            "message": self.message,
            "timestamp": self.timestamp.isoformat(),
        }
        if self.field:
            result["field"] = self.field
        if self.details:
            result["details"] = self.details
        return result


# ============================================================================
# Validation Exceptions
# ============================================================================

class RequestValidationFailed(AppException):
    """Request body failed schema validation"""

    def __init__(self, field_errors: List[Dict[str, str]], message: str = "Request validation failed"):
        self.field_errors = field_errors
        super().__init__(
            code=ErrorCode.VALIDATION_ERROR,
            message=message,
            status_code=status.HTTP_400_BAD_REQUEST,
            details={"field_errors": field_errors},
        )


# ============================================================================
# Rate Limiting Exception
# ============================================================================

class RateLimitExceeded(AppException):
    """Rate limit exceeded for a category"""

    def __init__(self, category: str, retry_after: int, limit: int, message: Optional[str] = None):
        self.category = category
        self.retry_after = retry_after
        self.limit = limit
        super().__init__(
            code=ErrorCode.RATE_LIMITED,
            message=message or f"Rate limit exceeded. Please try again in {retry_after} seconds.",
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            details={"category": category, "retry_after_seconds": retry_after},
            headers={
                "Retry-After": str(retry_after),
                "X-RateLimit-Limit": str(limit),
                "X-RateLimit-Remaining": "0",
                "X-RateLimit-Reset": str(retry_after),
            },
        )


# ============================================================================
# Authentication Exceptions
# ============================================================================

class AuthenticationException(AppException):
    """Base authentication exception"""

    def __init__(
        self,
        message: str = "Authentication required",
        code: ErrorCode = ErrorCode.UNAUTHORIZED,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(
            code=code,
            message=message,
            status_code=status.HTTP_401_UNAUTHORIZED,
            details=details,
            headers={"WWW-Authenticate": "Bearer"},
        )


class SessionExpired(AuthenticationException):
    """Session lifetime has elapsed"""

    def __init__(self):
        super().__init__(
            message="Session has expired",
            code=ErrorCode.SESSION_EXPIRED,
            details={"action": "Please log in again"},
        )


class SessionRevoked(AuthenticationException):
    """Session was revoked by logout or an operator"""

    def __init__(self):
        super().__init__(message="Session has been revoked", code=ErrorCode.SESSION_REVOKED)


class SessionNotFound(AuthenticationException):
    """Token does not match any session"""

    def __init__(self):
        super().__init__(message="Session not found", code=ErrorCode.SESSION_NOT_FOUND)


class RefreshLimitExceeded(AuthenticationException):
    """Session has used all of its refreshes"""

    def __init__(self, max_refresh_count: int):
        super().__init__(
            message="Session refresh limit reached",
            code=ErrorCode.REFRESH_LIMIT_EXCEEDED,
            details={"max_refresh_count": max_refresh_count, "action": "Please log in again"},
        )


class InvalidCredentials(AuthenticationException):
    """Identity provider rejected the credentials"""

    def __init__(self):
        super().__init__(message="Invalid credentials", code=ErrorCode.INVALID_CREDENTIALS)


class InvalidAPIKey(AuthenticationException):
    """API key is unknown, malformed, revoked or expired"""

    def __init__(self, message: str = "Invalid API key"):
        super().__init__(message=message, code=ErrorCode.INVALID_API_KEY)


# ============================================================================
# Authorization Exceptions
# ============================================================================

class PermissionDenied(AppException):
    """Caller lacks the required permission"""

    def __init__(
        self,
        message: str = "Permission denied",
        required_permission: Optional[str] = None,
        code: ErrorCode = ErrorCode.PERMISSION_DENIED,
    ):
        details = {}
        if required_permission:
            details["required_permission"] = required_permission
        super().__init__(
            code=code,
            message=message,
            status_code=status.HTTP_403_FORBIDDEN,
            details=details,
        )


class DomainNotAllowed(PermissionDenied):
    """Outbound payload targeted a domain outside the allow-list"""

    def __init__(self, domain: str):
        self.domain = domain
        super().__init__(
            message=f"External domain is not allow-listed: {domain}",
            code=ErrorCode.DOMAIN_NOT_ALLOWED,
        )


# ============================================================================
# Resource Exceptions
# ============================================================================

class NotFoundException(AppException):
    """Resource not found exception"""

    def __init__(self, resource_type: str, resource_id: Optional[Any] = None):
        message = f"{resource_type} not found"
        details = {"resource_type": resource_type}
        if resource_id is not None:
            details["resource_id"] = str(resource_id)
        super().__init__(
            code=ErrorCode.NOT_FOUND,
            message=message,
            status_code=status.HTTP_404_NOT_FOUND,
            details=details,
        )


class InvalidStateTransition(AppException):
    """Alert lifecycle transition not allowed"""

    def __init__(self, current: str, target: str):
        self.current = current
        self.target = target
        super().__init__(
            code=ErrorCode.INVALID_STATE_TRANSITION,
            message=f"Cannot move alert from '{current}' to '{target}'",
            status_code=status.HTTP_409_CONFLICT,
            details={"current_status": current, "requested_status": target},
        )


# ============================================================================
# Internal Exceptions
# ============================================================================

class SecurityIntegrityError(AppException):
    """Decryption or integrity verification failed"""

    def __init__(self, message: str = "Integrity verification failed", original_error: Optional[Exception] = None):
        super().__init__(
            code=ErrorCode.SECURITY_INTEGRITY_ERROR,
            message=message,
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            original_error=original_error,
        )


class InternalPersistenceError(AppException):
    """Audit or alert write failed; handled by the fallback sink"""

    def __init__(self, message: str, original_error: Optional[Exception] = None):
        super().__init__(
            code=ErrorCode.INTERNAL_PERSISTENCE_ERROR,
            message=message,
            original_error=original_error,
        )


class ConfigurationError(AppException):
    """Required security configuration is missing or malformed"""

    def __init__(self, message: str):
        super().__init__(code=ErrorCode.CONFIGURATION_ERROR, message=message)


# ============================================================================
# Response Building & Handlers
# ============================================================================

# Plain HTTP errors raised by FastAPI/Starlette themselves (404 route, 405)
HTTP_STATUS_CODES: Dict[int, ErrorCode] = {
    400: ErrorCode.INVALID_INPUT,
    401: ErrorCode.UNAUTHORIZED,
    403: ErrorCode.FORBIDDEN,
    404: ErrorCode.NOT_FOUND,
    405: ErrorCode.INVALID_INPUT,
    409: ErrorCode.RESOURCE_CONFLICT,
    422: ErrorCode.VALIDATION_ERROR,
    429: ErrorCode.RATE_LIMITED,
}


def create_error_response(
    code: ErrorCode,
    message: str,
    status_code: int,
    details: Optional[Dict[str, Any]] = None,
    field: Optional[str] = None,
    headers: Optional[Dict[str, str]] = None,
) -> JSONResponse:
    """Build the {"detail": {...}} envelope shared by every error."""
    body: Dict[str, Any] = {
        "code": code.value,
        "message": message,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
    if field:
        body["field"] = field
    if details:
        body["details"] = details
    return JSONResponse(status_code=status_code, content={"detail": body}, headers=headers)


def _request_context(request: Request) -> Dict[str, str]:
    return {"path": request.url.path, "method": request.method}


async def app_exception_handler(request: Request, exc: AppException) -> JSONResponse:
    """Render an AppException; 5xx failures are logged and returned opaque."""
    if exc.status_code >= 500:
        logger.error(
            f"{exc.code.value} on {request.method} {request.url.path}: {exc.message}",
            extra=_request_context(request),
            exc_info=exc.original_error,
        )
        return create_error_response(
            code=exc.code,
            message="The request could not be completed",
            status_code=exc.status_code,
        )

    logger.info(f"{exc.code.value} ({exc.status_code}): {exc.message}", extra=_request_context(request))
    return create_error_response(
        code=exc.code,
        message=exc.message,
        status_code=exc.status_code,
        details=exc.details,
        field=exc.field,
        headers=exc.headers,
    )


async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    message = exc.detail if isinstance(exc.detail, str) else str(exc.detail)
    logger.warning(f"HTTP {exc.status_code}: {message}", extra=_request_context(request))
    return create_error_response(
        code=HTTP_STATUS_CODES.get(exc.status_code, ErrorCode.INTERNAL_ERROR),
        message=message,
        status_code=exc.status_code,
        headers=getattr(exc, "headers", None),
    )


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Query and path parameter failures use the same 400 shape as body validation."""
    field_errors: List[Dict[str, str]] = [
        {
            "field": ".".join(str(part) for part in error["loc"]),
            "message": error["msg"],
            "type": error["type"],
        }
        for error in exc.errors()
    ]
    logger.warning(f"Rejected parameters: {len(field_errors)} field error(s)", extra=_request_context(request))
    return create_error_response(
        code=ErrorCode.VALIDATION_ERROR,
        message="Request validation failed",
        status_code=status.HTTP_400_BAD_REQUEST,
        details={"field_errors": field_errors},
    )


async def sqlalchemy_exception_handler(request: Request, exc: SQLAlchemyError) -> JSONResponse:
    # Constraint names and SQL never leave the process
    logger.error(f"Database failure: {type(exc).__name__}", extra=_request_context(request), exc_info=True)
    return create_error_response(
        code=ErrorCode.DATABASE_ERROR,
        message="A database error occurred",
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
    )


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.critical(f"Unhandled {type(exc).__name__}", extra=_request_context(request), exc_info=True)
    return create_error_response(
        code=ErrorCode.INTERNAL_ERROR,
        message="An unexpected error occurred. Please try again later.",
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
    )


def setup_exception_handlers(app: FastAPI) -> None:
    """Register all exception handlers with the FastAPI application"""
    app.add_exception_handler(AppException, app_exception_handler)
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(SQLAlchemyError, sqlalchemy_exception_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)


__all__ = [
    "ErrorCode",
    "AppException",
    "RequestValidationFailed",
    "RateLimitExceeded",
    "AuthenticationException",
    "SessionExpired",
    "SessionRevoked",
    "SessionNotFound",
    "RefreshLimitExceeded",
    "InvalidCredentials",
    "InvalidAPIKey",
    "PermissionDenied",
    "DomainNotAllowed",
    "NotFoundException",
    "InvalidStateTransition",
    "SecurityIntegrityError",
    "InternalPersistenceError",
    "ConfigurationError",
    "create_error_response",
    "setup_exception_handlers",
]
