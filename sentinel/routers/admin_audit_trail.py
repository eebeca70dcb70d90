"""
WorkLog Sentinel - Admin Audit Trail Router

Operator read access to the audit trail.
"""

from datetime import datetime
from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Query, Request

from sentinel.dependencies import get_services, rate_limit, require_admin
from sentinel.middleware.audit_route import AuditedRoute
from sentinel.middleware.rate_limit import RateLimitCategory
from sentinel.models.audit import AuditEventType
from sentinel.models.session import Session
from sentinel.schemas.audit import AuditFilters
from sentinel.utils.error_handling import NotFoundException

router = APIRouter(
    prefix="/admin/audit-trail",
    tags=["Admin - Audit Trail"],
    route_class=AuditedRoute,
    dependencies=[Depends(rate_limit(RateLimitCategory.API))],
)


@router.get("")
async def query_audit_trail(
    request: Request,
    actor: Optional[str] = Query(None, max_length=255),
    event_type: Optional[AuditEventType] = Query(None),
    resource_type: Optional[str] = Query(None, max_length=100),
    start_date: Optional[datetime] = Query(None),
    end_date: Optional[datetime] = Query(None),
    success: Optional[bool] = Query(None),
    page: int = Query(1, ge=1),
    page_size: int = Query(50, ge=1, le=1000),
    count_only: bool = Query(False),
    operator: Session = Depends(require_admin),
):
    """
    Query audit entries, newest first.

    page_size above the configured maximum is clamped.
    """
    request.state.audit_event_type = AuditEventType.DATA_ACCESS
    request.state.audit_resource_type = "audit_trail"

    result = await get_services(request).audit.query(
        AuditFilters(
            actor=actor,
            event_type=event_type,
            resource_type=resource_type,
            start_date=start_date,
            end_date=end_date,
            success=success,
        ),
        page=page,
        page_size=page_size,
        count_only=count_only,
    )
    return {"success": True, "data": result.to_dict()}


@router.get("/{entry_id}")
async def get_audit_entry(
    request: Request,
    entry_id: UUID,
    operator: Session = Depends(require_admin),
):
    request.state.audit_event_type = AuditEventType.DATA_ACCESS
    request.state.audit_resource_type = "audit_trail"
    request.state.audit_resource_id = str(entry_id)

    entry = await get_services(request).audit.get_entry(entry_id)
    if entry is None:
        raise NotFoundException("Audit entry", entry_id)
    return {"success": True, "data": entry.to_dict()}
