"""
WorkLog Sentinel - FastAPI Application Entry Point

This is the main entry point for the FastAPI application.
"""

import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from sentinel import __version__
from sentinel.config import settings
from sentinel.database import async_session_factory, close_db, init_db
from sentinel.dependencies import SecurityServices, build_services
from sentinel.middleware.security import setup_security_middleware
from sentinel.routers import (
    admin_api_keys,
    admin_audit_trail,
    admin_security_alerts,
    admin_sessions,
    auth,
    integrations,
)
from sentinel.utils.error_handling import setup_exception_handlers

# Configure logging
logging.basicConfig(
    level=logging.DEBUG if settings.debug else settings.log_level,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Lifespan context manager for FastAPI.
    Handles startup and shutdown events.
    """
    # Startup
    logger.info(f"Starting {settings.app_name}...")
    logger.info(f"Environment: {settings.app_env}")

    owns_services = app.state.security is None
    if owns_services:
        # Create tables in development only; production schemas are provisioned separately
        if settings.is_development:
            await init_db()
            logger.info("Database tables initialized")

        app.state.security = build_services(async_session_factory, settings)
        rules = await app.state.security.monitoring.sync_rules(settings.monitoring_rules)
        logger.info(f"Loaded {len(rules)} monitoring rules")

    yield

    # Shutdown
    logger.info(f"Shutting down {settings.app_name}...")
    if owns_services:
        await app.state.security.close()
        await close_db()
        logger.info("Database connections closed")


def create_app(services: Optional[SecurityServices] = None) -> FastAPI:
    """
    Build the application.

    Args:
        services: Pre-built security services. When omitted they are
            wired from settings during startup.
    """
    app = FastAPI(
        title=settings.app_name,
        description="Security observability and session integrity for the WorkLog platform",
        version=__version__,
        docs_url="/api/docs" if settings.is_development else None,
        redoc_url="/api/redoc" if settings.is_development else None,
        lifespan=lifespan,
    )
    app.state.security = services

    # Configure CORS
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins_list,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    setup_security_middleware(app, development_mode=settings.is_development)
    setup_exception_handlers(app)

    # ===========================================
    # INCLUDE ROUTERS
    # ===========================================
    for module in (auth, admin_audit_trail, admin_security_alerts, admin_sessions, admin_api_keys, integrations):
        app.include_router(module.router, prefix="/api/v1")

    @app.get("/health")
    async def health_check():
        """Health check endpoint."""
        security = app.state.security
        return {
            "status": "healthy" if security is not None else "starting",
            "version": __version__,
            "audit_fallback_writes": security.audit.fallback_count if security is not None else 0,
            "monitoring_failures": security.audit.monitoring_failures if security is not None else 0,
            "notification_failures": security.monitoring.notification_failures if security is not None else 0,
        }

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.is_development,
    )
