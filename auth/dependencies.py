"""
auth/dependencies.py -- FastAPI Depends() helpers for authentication and authorization.

Exactly one carrier determines the Principal for a request:
  1. Authorization: Bearer <token> -- if the header is present the token alone
     decides. A bad or expired token is a 401; there is no fallback to the
     cookie.
  2. Session cookie (settings.session_cookie_name) -- signed session id; the
     session is loaded, touched (sliding expiry) and its snapshot becomes the
     Principal.
No carrier at all is a 401.

resolve_principal() stores principal, auth_carrier ("token" | "session") and
session on request.state. try_resolve_principal() is the soft variant
(returns None instead of raising).

RBAC dependency factories wrap the pure predicates in auth/rbac.py and record
the admitting policy on request.state.authorized_by.

Layer rule: no imports from api/ or ratelimit/.
  auth/dependencies.py may import from fastapi (for Depends/Request) because
  this module is part of the FastAPI dependency injection system.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Iterable

from fastapi import Depends, Request
from slowapi.util import get_remote_address

from auth.audit import AuditActions, AuditContext
from auth.errors import (
    AuthError,
    InsufficientPermissions,
    MFAInvalidCode,
    MFARequired,
    SessionRequired,
    TokenMalformed,
    Unauthenticated,
)
from auth.models import Principal, Session
from auth.rbac import Decision, check_any_role, check_role, check_super_or_org_admin
from auth.roles import Role
from auth.sessions import unsign_session_id
from auth.tokens import verify_token
from core.config import get_settings

logger = logging.getLogger("clinicconnect.auth")

MFA_CODE_HEADER = "X-MFA-Code"

# ---------------------------------------------------------------------------
# Principal materialization
# ---------------------------------------------------------------------------


def resolve_principal(request: Request) -> Principal:
    """Resolve the request's Principal from its single carrier.

    Raises Unauthenticated (or a TokenExpired/TokenMalformed subclass).
    """
    cached = getattr(request.state, "principal", None)
    if cached is not None:
        return cached

    settings = get_settings()
    session: Session | None = None
    auth_header = request.headers.get("Authorization")
    if auth_header is not None:
        scheme, _, token = auth_header.partition(" ")
        if scheme.lower() != "bearer" or not token.strip():
            raise TokenMalformed()
        principal = verify_token(token.strip())
        carrier = "token"
    else:
        raw = request.cookies.get(settings.session_cookie_name)
        if not raw:
            raise Unauthenticated()
        session_id = unsign_session_id(raw, settings)
        if session_id is None:
            raise Unauthenticated()
        store = request.app.state.session_store
        session = store.get(session_id)
        if session is None or not store.touch(session_id):
            raise Unauthenticated("Session expired. Please sign in again.")
        principal = session.principal
        carrier = "session"

    request.state.principal = principal
    request.state.auth_carrier = carrier
    request.state.session = session
    return principal


def try_resolve_principal(request: Request) -> Principal | None:
    """Soft variant of resolve_principal(). Never raises."""
    try:
        return resolve_principal(request)
    except AuthError:
        return None


def get_current_principal(request: Request) -> Principal:
    """Require authentication.

    Use as a FastAPI dependency:
        @router.get("/protected")
        def route(principal: Principal = Depends(get_current_principal)): ...
    """
    return resolve_principal(request)


def require_session(request: Request, principal: Principal = Depends(get_current_principal)) -> Session:
    """Require that the Principal came from a session, not a bearer token."""
    session = getattr(request.state, "session", None)
    if session is None:
        raise SessionRequired()
    return session


# ---------------------------------------------------------------------------
# Audit helpers
# ---------------------------------------------------------------------------


def audit_context(request: Request, principal: Principal | None = None) -> AuditContext:
    return AuditContext(
        ip_address=get_remote_address(request),
        user_agent=request.headers.get("user-agent"),
        organization_id=principal.current_organization_id if principal is not None else None,
    )


def audit_event(
    request: Request,
    action: str,
    principal: Principal | None = None,
    *,
    entity_type: str = "user",
    entity_id: str | int | None = None,
    details: dict | None = None,
) -> None:
    """Write one audit entry with the request's IP and user agent."""
    ctx = audit_context(request, principal)
    request.app.state.audit.log(
        ctx.entry(
            action,
            principal.user_id if principal is not None else None,
            entity_type=entity_type,
            entity_id=str(entity_id) if entity_id is not None else None,
            details=details or {},
        )
    )


# ---------------------------------------------------------------------------
# RBAC
# ---------------------------------------------------------------------------


def _enforce(request: Request, principal: Principal, decision: Decision, message: str | None = None) -> Principal:
    if not decision.allowed:
        logger.info(
            "Access denied for user_id=%s role=%s on %s %s (policy=%s)",
            principal.user_id,
            principal.role.value,
            request.method,
            request.url.path,
            decision.policy,
        )
        audit_event(
            request,
            AuditActions.ACCESS_DENIED,
            principal,
            entity_type="route",
            entity_id=request.url.path,
            details={"policy": decision.policy, "method": request.method},
        )
        raise InsufficientPermissions(message)
    request.state.authorized_by = decision.policy
    return principal


def require_role(role: Role | str):
    """Admit the given role (or a super admin). 401 without a principal, 403 otherwise."""
    required = Role.parse(role)

    def dependency(request: Request, principal: Principal = Depends(get_current_principal)) -> Principal:
        return _enforce(request, principal, check_role(principal.role, required))

    return dependency


def require_any_role(roles: Iterable[Role | str]):
    allowed = frozenset(Role.parse(r) for r in roles)

    def dependency(request: Request, principal: Principal = Depends(get_current_principal)) -> Principal:
        return _enforce(request, principal, check_any_role(principal.role, allowed))

    return dependency


def require_super_or_org_admin():
    """Organization-management gate: super_admin or admin, as its own named policy."""

    def dependency(request: Request, principal: Principal = Depends(get_current_principal)) -> Principal:
        return _enforce(
            request,
            principal,
            check_super_or_org_admin(principal.role),
            "Forbidden: Admin privileges required.",
        )

    return dependency


# ---------------------------------------------------------------------------
# MFA checkpoint
# ---------------------------------------------------------------------------


def require_mfa(request: Request, principal: Principal = Depends(get_current_principal)) -> Principal:
    """Sensitive-operation checkpoint.

    Users without an enabled enrollment pass. Session carriers pass if the
    session verified MFA within mfa_checkpoint_ttl_seconds; bearer carriers
    must send a current code in the X-MFA-Code header.
    """
    mfa = request.app.state.mfa_service
    if not mfa.is_enabled(principal.user_id):
        return principal

    session: Session | None = getattr(request.state, "session", None)
    if session is not None:
        ttl = get_settings().mfa_checkpoint_ttl_seconds
        if session.mfa_verified_at is not None and time.time() - session.mfa_verified_at <= ttl:
            return principal
        raise MFARequired()

    code = request.headers.get(MFA_CODE_HEADER)
    if not code:
        raise MFARequired()
    result = mfa.verify_mfa(principal.user_id, code, context=audit_context(request, principal))
    if not result.valid:
        raise MFAInvalidCode()
    return principal
