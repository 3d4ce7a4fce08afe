"""
api/routes/v1/users.py -- User management REST endpoints (organization admins).

Routes:
  POST  /api/v1/auth/users        -- create user in the caller's organization
  GET   /api/v1/auth/users        -- list users the caller may see
  PATCH /api/v1/auth/users/{id}   -- change role / active flag

Security:
  Tenant scoping: an org admin only sees and edits users of their current
       organization. A super admin sees everyone and may filter by
       ?organization_id=.
  Only a super admin may grant super_admin or edit a super admin.
  [M4] PATCH blocks self-deactivation and demoting/deactivating the last
       active admin of an organization.
  Step-down: a role change or deactivation destroys every session of the
       target user, so the old privileges end with the request.
  Mutations sit behind the MFA checkpoint.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Request
from sqlalchemy.exc import IntegrityError

from api.models import UserCreate, UserPatch, UserResponse
from auth.audit import AuditActions
from auth.dependencies import audit_event, require_mfa, require_super_or_org_admin
from auth.errors import InsufficientPermissions
from auth.models import Principal, User
from auth.rbac import can_access_organization, can_grant_role
from auth.roles import Role, is_super_admin
from auth.store import UserStore
from auth.tokens import hash_password

# Auth policy:
# - POST  /api/v1/auth/users:       super_or_org_admin + MFA checkpoint
# - GET   /api/v1/auth/users:       super_or_org_admin
# - PATCH /api/v1/auth/users/{id}:  super_or_org_admin + MFA checkpoint
router = APIRouter()

_org_admin = require_super_or_org_admin()


def _user_to_response(user: User) -> UserResponse:
    return UserResponse(
        id=user.id,
        username=user.username,
        role=user.role,
        organization_id=user.organization_id,
        is_active=user.is_active,
        created_at=user.created_at,
        last_login=user.last_login,
    )


def _in_scope(user_store: UserStore, principal: Principal, user: User) -> bool:
    if can_access_organization(principal.role, principal.current_organization_id, user.organization_id):
        return True
    org = principal.current_organization_id
    return org is not None and user_store.has_membership(user.id, org)


@router.post("/auth/users", response_model=UserResponse, status_code=201)
def create_user(
    request: Request,
    body: UserCreate,
    principal: Principal = Depends(_org_admin),
    _mfa: Principal = Depends(require_mfa),
) -> UserResponse:
    """Create a local account. Org admins always create into their current organization."""
    user_store: UserStore = request.app.state.user_store

    if not can_grant_role(principal.role, body.role):
        raise InsufficientPermissions()

    organization_id = body.organization_id
    if not is_super_admin(principal.role):
        if organization_id is not None and organization_id != principal.current_organization_id:
            raise InsufficientPermissions()
        organization_id = principal.current_organization_id

    new_user = User(
        username=body.username,
        role=body.role,
        organization_id=organization_id,
        hashed_password=hash_password(body.password),
    )
    try:
        user_id = user_store.create_user(new_user)
    except IntegrityError as exc:
        raise HTTPException(
            status_code=409,
            detail={"code": "conflict", "message": "A user with that username already exists."},
        ) from exc

    audit_event(
        request,
        AuditActions.USER_CREATED,
        principal,
        entity_id=user_id,
        details={"username": body.username, "role": body.role.value, "organization_id": organization_id},
    )
    created = user_store.get_by_id(user_id)
    return _user_to_response(created)


@router.get("/auth/users", response_model=list[UserResponse])
async def list_users(
    request: Request,
    organization_id: int | None = None,
    principal: Principal = Depends(_org_admin),
) -> list[UserResponse]:
    """List accounts. Org admins are pinned to their current organization."""
    user_store: UserStore = request.app.state.user_store
    if not is_super_admin(principal.role):
        organization_id = principal.current_organization_id
        if organization_id is None:
            return []
    users = user_store.list_users(organization_id)
    return [_user_to_response(u) for u in users]


@router.patch("/auth/users/{user_id}", response_model=UserResponse)
async def update_user(
    request: Request,
    user_id: int,
    body: UserPatch,
    principal: Principal = Depends(_org_admin),
    _mfa: Principal = Depends(require_mfa),
) -> UserResponse:
    """Update a user's role or active status.

    [M4] Prevents:
      - Self-deactivation (admin accidentally locking themselves out).
      - Removing the last active admin of an organization (no recovery path
        without a super admin).
    """
    user_store: UserStore = request.app.state.user_store
    session_store = request.app.state.session_store

    target = user_store.get_by_id(user_id)
    if target is None or not _in_scope(user_store, principal, target):
        # Out-of-tenant users are reported as missing, not forbidden.
        raise HTTPException(
            status_code=404,
            detail={"code": "not_found", "message": "User not found."},
        )
    if is_super_admin(target.role) and not is_super_admin(principal.role):
        raise InsufficientPermissions()

    updates: dict = {}
    if body.role is not None and body.role is not target.role:
        if not can_grant_role(principal.role, body.role):
            raise InsufficientPermissions()
        updates["role"] = body.role
    if body.is_active is not None and body.is_active != target.is_active:
        # [M4] Block self-deactivation
        if not body.is_active and target.id == principal.user_id:
            raise HTTPException(
                status_code=400,
                detail={"code": "self_deactivation", "message": "You cannot deactivate your own account."},
            )
        updates["is_active"] = body.is_active

    loses_admin = target.role is Role.ADMIN and target.is_active and (
        ("role" in updates and updates["role"] is not Role.ADMIN) or updates.get("is_active") is False
    )
    # [M4] Block removing the last admin
    if loses_admin and user_store.count_active_admins(target.organization_id) <= 1:
        raise HTTPException(
            status_code=400,
            detail={"code": "last_admin", "message": "Cannot remove the last active admin of an organization."},
        )

    revoked = 0
    if updates:
        user_store.update_user(user_id, **updates)
        # Step-down: the target's existing sessions carry the old role snapshot.
        revoked = session_store.destroy_user_sessions(user_id)
        details = {k: (v.value if isinstance(v, Role) else v) for k, v in updates.items()}
        details["sessions_revoked"] = revoked
        audit_event(request, AuditActions.USER_UPDATED, principal, entity_id=user_id, details=details)
        if revoked:
            audit_event(
                request,
                AuditActions.SESSIONS_REVOKED,
                principal,
                entity_id=user_id,
                details={"count": revoked, "reason": "step_down"},
            )

    updated = user_store.get_by_id(user_id)
    return _user_to_response(updated)
