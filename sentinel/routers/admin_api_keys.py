"""
WorkLog Sentinel - Admin API Keys Router

Issue, list and revoke scoped API keys. The plaintext key is only part
of the create response.
"""

from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Query, Request

from sentinel.dependencies import get_services, rate_limit, require_admin, validated_body
from sentinel.middleware.audit_route import AuditedRoute
from sentinel.middleware.rate_limit import RateLimitCategory
from sentinel.models.session import Session
from sentinel.schemas.security import CreateAPIKeyRequest

router = APIRouter(
    prefix="/admin/api-keys",
    tags=["Admin - API Keys"],
    route_class=AuditedRoute,
    dependencies=[Depends(rate_limit(RateLimitCategory.API))],
)


@router.post("", status_code=201)
async def create_api_key(
    request: Request,
    payload: CreateAPIKeyRequest = Depends(validated_body(CreateAPIKeyRequest)),
    operator: Session = Depends(require_admin),
):
    issued = await get_services(request).api_keys.generate_api_key(
        owner=payload.owner or operator.owner,
        name=payload.name,
        permissions=payload.permissions,
        expires_at=payload.expires_at,
        created_by=operator.owner,
    )
    # The key manager wrote the audit entry
    request.state.audit_recorded = True
    return {
        "success": True,
        "data": {
            "api_key": issued.plaintext,
            "key": issued.api_key.to_dict(),
            "warning": "Store this key now. It cannot be shown again.",
        },
    }


@router.get("")
async def list_api_keys(
    request: Request,
    owner: Optional[str] = Query(None, max_length=255),
    operator: Session = Depends(require_admin),
):
    keys = await get_services(request).api_keys.list_keys(owner)
    return {"success": True, "data": {"keys": [key.to_dict() for key in keys], "total": len(keys)}}


@router.delete("/{key_id}")
async def revoke_api_key(
    request: Request,
    key_id: UUID,
    operator: Session = Depends(require_admin),
):
    api_key = await get_services(request).api_keys.revoke(key_id, operator.owner)
    request.state.audit_recorded = True
    return {"success": True, "data": api_key.to_dict()}
