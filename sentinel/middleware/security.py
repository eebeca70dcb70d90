"""
WorkLog Sentinel - HTTP Security Middleware

Security headers and request logging for every response.
"""

import logging
import time
from typing import Callable

from fastapi import FastAPI, Request, Response
from starlette.middleware.base import BaseHTTPMiddleware

logger = logging.getLogger(__name__)


# ============================================================================
# SECURITY HEADERS MIDDLEWARE
# ============================================================================

class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """
    Add security headers to all responses.

    The service only serves JSON, so the content policy denies everything.
    """

    STATIC_HEADERS = {
        "Content-Security-Policy": "default-src 'none'; frame-ancestors 'none'",
        "X-Content-Type-Options": "nosniff",
        "X-Frame-Options": "DENY",
        "Referrer-Policy": "no-referrer",
        "Cache-Control": "no-store",
    }
    HSTS = "max-age=31536000; includeSubDomains"

    def __init__(self, app: FastAPI, development_mode: bool = False):
        super().__init__(app)
        self.development_mode = development_mode

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        response = await call_next(request)
        response.headers.update(self.STATIC_HEADERS)
        if not self.development_mode:
            response.headers["Strict-Transport-Security"] = self.HSTS
        return response


# ============================================================================
# REQUEST LOGGING MIDDLEWARE
# ============================================================================

class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """
    Log requests for security monitoring.

    Auth and admin paths are always logged; other paths only on errors.
    Query strings and bodies are never logged.
    """

    SENSITIVE_PATHS = [
        "/api/v1/auth",
        "/api/v1/admin",
    ]

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        start_time = time.perf_counter()
        client_ip = request.client.host if request.client else "unknown"
        path = request.url.path

        response = await call_next(request)

        duration = time.perf_counter() - start_time
        is_sensitive = any(path.startswith(p) for p in self.SENSITIVE_PATHS)
        if is_sensitive or response.status_code >= 400:
            log_level = logging.WARNING if response.status_code >= 400 else logging.INFO
            logger.log(
                log_level,
                f"{request.method} {path} - {response.status_code} - {duration:.3f}s - {client_ip}",
            )

        response.headers["X-Response-Time"] = f"{duration:.3f}s"
        return response


def setup_security_middleware(app: FastAPI, development_mode: bool = False) -> None:
    """
    Setup HTTP security middleware.

    Rate limiting, validation and session checks run per route as
    dependencies so their order is fixed by the route declaration.
    """
    # Order matters! Later middleware wraps earlier ones
    app.add_middleware(SecurityHeadersMiddleware, development_mode=development_mode)
    app.add_middleware(RequestLoggingMiddleware)

    logger.info(f"Security middleware configured: development_mode={development_mode}")
