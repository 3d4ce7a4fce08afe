"""
auth/rbac.py -- Role-based access policies as pure predicates.

Each policy takes a Role and returns a Decision naming the rule that admitted
or denied it. No I/O, no request objects: auth/dependencies.py wraps these in
FastAPI dependencies and records decision.policy on request.state so audit
entries can say which rule let a request through.

Rules:
  super_admin_bypass   -- Role.SUPER_ADMIN passes every role requirement
  role / any_role      -- plain set membership; roles are flat and unordered
  super_or_org_admin   -- organization management; its own rule, not an
                          any_role over {super_admin, admin}

Layer rule: no imports from api/ or ratelimit/.
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass

from auth.roles import ORG_ADMIN_ROLES, Role, is_super_admin

SUPER_ADMIN_BYPASS = "super_admin_bypass"
ROLE = "role"
ANY_ROLE = "any_role"
SUPER_OR_ORG_ADMIN = "super_or_org_admin"


@dataclass(frozen=True)
class Decision:
    allowed: bool
    policy: str

    def __bool__(self) -> bool:
        return self.allowed


def check_role(role: Role, required: Role | str) -> Decision:
    required = Role.parse(required)
    if is_super_admin(role):
        return Decision(True, SUPER_ADMIN_BYPASS)
    return Decision(role is required, ROLE)


def check_any_role(role: Role, allowed: Iterable[Role | str]) -> Decision:
    allowed_roles = {Role.parse(r) for r in allowed}
    if is_super_admin(role):
        return Decision(True, SUPER_ADMIN_BYPASS)
    return Decision(role in allowed_roles, ANY_ROLE)


def check_super_or_org_admin(role: Role) -> Decision:
    return Decision(role in ORG_ADMIN_ROLES, SUPER_OR_ORG_ADMIN)


def can_access_organization(role: Role, current_organization_id: int | None, target_organization_id: int | None) -> bool:
    """Tenant scoping for user and audit reads: super admins see every organization."""
    if is_super_admin(role):
        return True
    return current_organization_id is not None and current_organization_id == target_organization_id


def can_grant_role(actor_role: Role, target_role: Role) -> bool:
    """Only a super admin may create or promote another super admin."""
    return is_super_admin(actor_role) or target_role is not Role.SUPER_ADMIN
