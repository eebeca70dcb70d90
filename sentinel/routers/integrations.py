"""
WorkLog Sentinel - Integration Router

API-key protected entry point for the ticketing integration. The
integration's business logic lives outside this service.
"""

from fastapi import APIRouter, Depends

from sentinel.dependencies import rate_limit, require_api_key
from sentinel.middleware.audit_route import AuditedRoute
from sentinel.middleware.rate_limit import RateLimitCategory
from sentinel.models.api_key import APIKey, APIKeyPermission

router = APIRouter(
    prefix="/integrations",
    tags=["Integrations"],
    route_class=AuditedRoute,
    dependencies=[Depends(rate_limit(RateLimitCategory.INTEGRATION))],
)


@router.get("/ping")
async def ping(api_key: APIKey = Depends(require_api_key(APIKeyPermission.READ_INTEGRATIONS))):
    return {
        "success": True,
        "data": {"status": "ok", "key": api_key.masked_key, "owner": api_key.owner},
    }
