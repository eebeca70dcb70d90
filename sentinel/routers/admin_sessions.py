"""
WorkLog Sentinel - Admin Sessions Router
"""

from fastapi import APIRouter, Depends, Query, Request

from sentinel.dependencies import get_services, rate_limit, require_admin
from sentinel.middleware.audit_route import AuditedRoute
from sentinel.middleware.rate_limit import RateLimitCategory
from sentinel.models.audit import AuditEventType
from sentinel.models.session import Session
from sentinel.schemas.audit import SessionMetadata

router = APIRouter(
    prefix="/admin/sessions",
    tags=["Admin - Sessions"],
    route_class=AuditedRoute,
    dependencies=[Depends(rate_limit(RateLimitCategory.API))],
)


@router.get("")
async def list_sessions(
    request: Request,
    owner: str = Query(..., min_length=1, max_length=255),
    include_inactive: bool = Query(False),
    operator: Session = Depends(require_admin),
):
    sessions = await get_services(request).sessions.list_sessions(owner, include_inactive=include_inactive)
    return {
        "success": True,
        "data": {"sessions": [session.to_dict() for session in sessions], "total": len(sessions)},
    }


@router.post("/revoke-all")
async def revoke_all_sessions(
    request: Request,
    owner: str = Query(..., min_length=1, max_length=255),
    operator: Session = Depends(require_admin),
):
    """Revoke every live session of owner."""
    request.state.audit_event_type = AuditEventType.SESSION_REVOKED
    request.state.audit_resource_type = "session"
    request.state.audit_resource_id = owner

    revoked = await get_services(request).sessions.revoke_all_for_owner(owner)
    request.state.audit_metadata = SessionMetadata(reason="revoked_by_operator")
    return {"success": True, "data": {"owner": owner, "revoked": revoked}}
