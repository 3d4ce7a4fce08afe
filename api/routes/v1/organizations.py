"""
api/routes/v1/organizations.py -- Organization context of the current session.

Routes:
  GET    /api/v1/organizations/current  -- home and current organization, memberships
  POST   /api/v1/organizations/assume   -- switch the session's current organization
  DELETE /api/v1/organizations/assume   -- return to the home organization

Assuming an organization changes only the session's current_organization_id;
the user's home organization_id never changes. Bearer tokens carry a fixed
organization context, so switching requires a session.
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, Request

from api.models import AssumeOrganizationRequest, OrganizationContextResponse
from auth.audit import AuditActions
from auth.dependencies import audit_event, get_current_principal, require_mfa, require_session, require_super_or_org_admin
from auth.errors import InsufficientPermissions
from auth.models import Principal, Session
from auth.roles import is_super_admin
from auth.store import UserStore

logger = logging.getLogger("clinicconnect.api")

# Auth policy:
# - GET    /api/v1/organizations/current:  requires auth (get_current_principal)
# - POST   /api/v1/organizations/assume:   super_or_org_admin + session + MFA checkpoint
# - DELETE /api/v1/organizations/assume:   requires a session
router = APIRouter()

_org_admin = require_super_or_org_admin()


def _context(user_store: UserStore, principal: Principal, current: int | None) -> OrganizationContextResponse:
    return OrganizationContextResponse(
        organization_id=principal.organization_id,
        current_organization_id=current,
        memberships=user_store.list_memberships(principal.user_id),
        assumed=current != principal.organization_id,
    )


@router.get("/organizations/current", response_model=OrganizationContextResponse)
async def current_organization(
    request: Request,
    principal: Principal = Depends(get_current_principal),
) -> OrganizationContextResponse:
    return _context(request.app.state.user_store, principal, principal.current_organization_id)


@router.post("/organizations/assume", response_model=OrganizationContextResponse)
async def assume_organization(
    request: Request,
    body: AssumeOrganizationRequest,
    principal: Principal = Depends(_org_admin),
    session: Session = Depends(require_session),
    _mfa: Principal = Depends(require_mfa),
) -> OrganizationContextResponse:
    """Act within another organization for the rest of this session.

    Super admins may assume any organization. Org admins may only assume
    their home organization or one they hold a membership in.
    """
    user_store: UserStore = request.app.state.user_store
    target = body.organization_id
    if not is_super_admin(principal.role):
        allowed = target == principal.organization_id or user_store.has_membership(principal.user_id, target)
        if not allowed:
            raise InsufficientPermissions("You are not a member of that organization.")

    previous = principal.current_organization_id
    request.app.state.session_store.set_current_organization(session.session_id, target)
    logger.info("user_id=%s assumed organization %s (was %s)", principal.user_id, target, previous)
    audit_event(
        request,
        AuditActions.ORGANIZATION_ASSUMED,
        principal,
        entity_type="organization",
        entity_id=target,
        details={"from_organization_id": previous, "to_organization_id": target},
    )
    return _context(user_store, principal, target)


@router.delete("/organizations/assume", response_model=OrganizationContextResponse)
async def release_organization(
    request: Request,
    principal: Principal = Depends(get_current_principal),
    session: Session = Depends(require_session),
) -> OrganizationContextResponse:
    """Drop an assumed organization and return to the home organization."""
    previous = principal.current_organization_id
    home = principal.organization_id
    if previous != home:
        request.app.state.session_store.set_current_organization(session.session_id, home)
        audit_event(
            request,
            AuditActions.ORGANIZATION_RELEASED,
            principal,
            entity_type="organization",
            entity_id=previous,
            details={"from_organization_id": previous, "to_organization_id": home},
        )
    return _context(request.app.state.user_store, principal, home)
