"""
api/routes/v1/audit.py -- Read access to the audit trail.

Routes:
  GET /api/v1/audit-logs  -- newest first; filter by action, actor, organization

Org admins only see entries of their current organization. Super admins see
everything and may narrow with ?organization_id=.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Query, Request

from api.models import AuditEntryResponse
from auth.dependencies import require_super_or_org_admin
from auth.models import Principal
from auth.roles import is_super_admin

# Auth policy: super_or_org_admin on every route.
router = APIRouter()

_org_admin = require_super_or_org_admin()


@router.get("/audit-logs", response_model=list[AuditEntryResponse])
async def list_audit_logs(
    request: Request,
    action: str | None = None,
    actor_user_id: int | None = None,
    organization_id: int | None = None,
    limit: int = Query(default=100, ge=1, le=1000),
    principal: Principal = Depends(_org_admin),
) -> list[AuditEntryResponse]:
    if not is_super_admin(principal.role):
        organization_id = principal.current_organization_id
        if organization_id is None:
            return []
    entries = request.app.state.audit.list_entries(
        organization_id=organization_id,
        actor_user_id=actor_user_id,
        action=action,
        limit=limit,
    )
    return [
        AuditEntryResponse(
            id=e.id,
            action=e.action,
            actor_user_id=e.actor_user_id,
            entity_type=e.entity_type,
            entity_id=e.entity_id,
            details=e.details,
            ip_address=e.ip_address,
            user_agent=e.user_agent,
            organization_id=e.organization_id,
            timestamp=e.timestamp.isoformat(),
        )
        for e in entries
    ]
