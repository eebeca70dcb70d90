"""
WorkLog Sentinel - Admin Security Alerts Router

List alerts and move them through open -> acknowledged -> resolved.
"""

from datetime import datetime
from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Query, Request

from sentinel.dependencies import get_services, rate_limit, require_admin, validated_body
from sentinel.middleware.audit_route import AuditedRoute
from sentinel.middleware.rate_limit import RateLimitCategory
from sentinel.models.audit import AuditEventType
from sentinel.models.security_alert import AlertSeverity, AlertStatus
from sentinel.models.session import Session
from sentinel.schemas.audit import AlertMetadata
from sentinel.schemas.security import AcknowledgeAlertRequest, ResolveAlertRequest

router = APIRouter(
    prefix="/admin/security-alerts",
    tags=["Admin - Security Alerts"],
    route_class=AuditedRoute,
    dependencies=[Depends(rate_limit(RateLimitCategory.API))],
)


def _alert_metadata(alert) -> AlertMetadata:
    return AlertMetadata(alert_id=str(alert.id), rule_id=alert.rule_id, severity=alert.severity.value)


@router.get("")
async def list_security_alerts(
    request: Request,
    status: Optional[AlertStatus] = Query(None),
    severity: Optional[AlertSeverity] = Query(None),
    rule_id: Optional[str] = Query(None, max_length=100),
    start_date: Optional[datetime] = Query(None),
    end_date: Optional[datetime] = Query(None),
    page: int = Query(1, ge=1),
    page_size: int = Query(50, ge=1, le=1000),
    operator: Session = Depends(require_admin),
):
    """List security alerts with filtering, newest first."""
    services = get_services(request)
    alerts, total = await services.monitoring.list_alerts(
        status=status,
        severity=severity,
        rule_id=rule_id,
        start_date=start_date,
        end_date=end_date,
        page=page,
        page_size=page_size,
        max_page_size=services.audit.max_page_size,
    )
    return {
        "success": True,
        "data": {
            "alerts": [alert.to_dict() for alert in alerts],
            "total": total,
            "page": page,
            "page_size": min(page_size, services.audit.max_page_size),
        },
    }


@router.get("/stats")
async def get_alert_stats(request: Request, operator: Session = Depends(require_admin)):
    services = get_services(request)
    stats = await services.monitoring.get_stats()
    stats["rules"] = [
        {"id": rule.id, "name": rule.name, "event_type": rule.event_type, "threshold": rule.threshold}
        for rule in services.monitoring.rules
    ]
    return {"success": True, "data": stats}


@router.get("/{alert_id}")
async def get_security_alert(request: Request, alert_id: UUID, operator: Session = Depends(require_admin)):
    alert = await get_services(request).monitoring.get_alert(alert_id)
    return {"success": True, "data": alert.to_dict()}


@router.post("/{alert_id}/acknowledge")
async def acknowledge_alert(
    request: Request,
    alert_id: UUID,
    payload: AcknowledgeAlertRequest = Depends(validated_body(AcknowledgeAlertRequest)),
    operator: Session = Depends(require_admin),
):
    """open -> acknowledged"""
    request.state.audit_event_type = AuditEventType.UPDATE
    request.state.audit_resource_type = "security_alert"
    request.state.audit_resource_id = str(alert_id)

    alert = await get_services(request).monitoring.acknowledge(alert_id, operator.owner, note=payload.note)
    request.state.audit_metadata = _alert_metadata(alert)
    return {"success": True, "data": alert.to_dict()}


@router.post("/{alert_id}/resolve")
async def resolve_alert(
    request: Request,
    alert_id: UUID,
    payload: ResolveAlertRequest = Depends(validated_body(ResolveAlertRequest)),
    operator: Session = Depends(require_admin),
):
    """acknowledged -> resolved"""
    request.state.audit_event_type = AuditEventType.UPDATE
    request.state.audit_resource_type = "security_alert"
    request.state.audit_resource_id = str(alert_id)

    alert = await get_services(request).monitoring.resolve(
        alert_id,
        operator.owner,
        resolution_note=payload.resolution_note,
    )
    request.state.audit_metadata = _alert_metadata(alert)
    return {"success": True, "data": alert.to_dict()}
