"""
WorkLog Sentinel - API Routers
"""

from sentinel.routers import admin_api_keys, admin_audit_trail, admin_security_alerts, admin_sessions, auth, integrations

__all__ = [
    "admin_api_keys",
    "admin_audit_trail",
    "admin_security_alerts",
    "admin_sessions",
    "auth",
    "integrations",
]
