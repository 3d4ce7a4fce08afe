"""
api/routes/v1/auth.py -- Login, logout and current-identity REST endpoints.

Routes:
  POST /api/v1/auth/login              -- password login; bearer token + session cookie
  POST /api/v1/auth/logout             -- destroys the session, clears the cookie; 200
  GET  /api/v1/auth/me                 -- current principal (requires auth)
  GET  /api/v1/auth/session-status     -- sliding-expiry status; never 401
  POST /api/v1/auth/change-password    -- re-verify, replace hash, revoke other sessions
  POST /api/v1/auth/clear-rate-limit   -- development only; 404 in production

Security:
  [C1] authenticate() provides timing equalization -- use it, never inline.
  [M5] Cache-Control: no-store on login responses, success or failure.
  Session fixation: login always mints a new session id and destroys any
       session presented with the request.
  Step-down: change-password destroys every other session of the user.

Routes that run bcrypt (login, change-password) are plain def so FastAPI
runs them in its threadpool instead of on the event loop.
"""

from __future__ import annotations

import time

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import JSONResponse
from slowapi.util import get_remote_address

from api.models import (
    ChangePasswordRequest,
    LoginRequest,
    LoginResponse,
    MeResponse,
    MessageResponse,
    PrincipalResponse,
    SessionStatusResponse,
)
from auth.audit import AuditActions
from auth.dependencies import audit_event, get_current_principal, require_mfa, try_resolve_principal
from auth.errors import InvalidCredentials
from auth.models import Principal
from auth.sessions import clear_session_cookie, set_session_cookie, unsign_session_id
from auth.store import UserStore
from auth.tokens import authenticate, change_password, issue_token
from core.config import get_settings

# Auth policy:
# - POST /api/v1/auth/login:             public -- login endpoint must be unauthenticated
# - POST /api/v1/auth/logout:            public -- ending a session needs no valid principal
# - GET  /api/v1/auth/session-status:    public -- reports authenticated=false instead of 401
# - GET  /api/v1/auth/me:                requires auth (get_current_principal)
# - POST /api/v1/auth/change-password:   requires auth + MFA checkpoint (require_mfa)
# - POST /api/v1/auth/clear-rate-limit:  DEBUG only
router = APIRouter()


def _presented_session_id(request: Request) -> str | None:
    settings = get_settings()
    raw = request.cookies.get(settings.session_cookie_name)
    if not raw:
        return None
    return unsign_session_id(raw, settings)


# ---------------------------------------------------------------------------
# Public endpoints
# ---------------------------------------------------------------------------


@router.post("/auth/login", response_model=LoginResponse)
def login(request: Request, body: LoginRequest) -> JSONResponse:
    """Authenticate with username and password.

    Returns a bearer token in the body and sets the session cookie. Both
    carriers describe the same Principal; clients use one of them.

    Returns the same generic error for wrong username, wrong password and a
    deactivated account ("bad_credentials").
    """
    user_store: UserStore = request.app.state.user_store
    session_store = request.app.state.session_store
    try:
        principal = authenticate(
            user_store,
            body.username,
            body.password,
            audit=request.app.state.audit,
            ip_address=get_remote_address(request),
            user_agent=request.headers.get("user-agent"),
        )
    except InvalidCredentials as exc:
        raise InvalidCredentials(headers={"Cache-Control": "no-store"}) from exc  # [M5]

    stale_id = _presented_session_id(request)
    if stale_id is not None:
        session_store.destroy(stale_id)
    session_id = session_store.create(
        principal,
        ip_address=get_remote_address(request),
        user_agent=request.headers.get("user-agent"),
    )

    issued = issue_token(principal)
    resp = JSONResponse(
        status_code=200,
        content=LoginResponse(
            access_token=issued.token,
            token_type="bearer",  # noqa: S106 # nosec B106 -- OAuth token type, not a password
            expires_in=issued.expires_in,
            user=PrincipalResponse.from_principal(principal),
        ).model_dump(mode="json"),
    )
    set_session_cookie(resp, session_id)
    resp.headers["Cache-Control"] = "no-store"  # [M5]
    return resp


@router.post("/auth/logout", response_model=MessageResponse)
async def logout(request: Request) -> JSONResponse:
    """Destroy the presented session and clear the cookie. Idempotent."""
    principal = try_resolve_principal(request)
    session_id = _presented_session_id(request)
    if session_id is not None:
        request.app.state.session_store.destroy(session_id)
        if principal is not None:
            audit_event(request, AuditActions.LOGOUT, principal, entity_id=principal.user_id)
    resp = JSONResponse(content={"message": "Logged out."})
    clear_session_cookie(resp)
    return resp


@router.get("/auth/session-status", response_model=SessionStatusResponse)
async def session_status(request: Request) -> SessionStatusResponse:
    """Report whether the request is authenticated and how long its session has left."""
    principal = try_resolve_principal(request)
    if principal is None:
        return SessionStatusResponse(authenticated=False)
    session = getattr(request.state, "session", None)
    if session is None:
        return SessionStatusResponse(
            authenticated=True,
            auth_method="token",
            user=PrincipalResponse.from_principal(principal),
        )
    # The dependency touched the session, so activity is "now".
    now = time.time()
    expires_at = now + request.app.state.session_store.max_age
    return SessionStatusResponse(
        authenticated=True,
        auth_method="session",
        user=PrincipalResponse.from_principal(principal),
        last_activity=now,
        expires_at=expires_at,
        remaining_seconds=int(expires_at - now),
    )


# ---------------------------------------------------------------------------
# Authenticated endpoints
# ---------------------------------------------------------------------------


@router.get("/auth/me", response_model=MeResponse)
async def me(request: Request, principal: Principal = Depends(get_current_principal)) -> MeResponse:
    """Return identity information for the current principal."""
    return MeResponse(
        user_id=principal.user_id,
        username=principal.username,
        role=principal.role,
        organization_id=principal.organization_id,
        current_organization_id=principal.current_organization_id,
        auth_method=request.state.auth_carrier,
        mfa_enabled=request.app.state.mfa_service.is_enabled(principal.user_id),
    )


@router.post("/auth/change-password", response_model=MessageResponse)
def change_password_route(
    request: Request,
    body: ChangePasswordRequest,
    principal: Principal = Depends(require_mfa),
) -> MessageResponse:
    """Change the caller's password and sign out their other sessions."""
    user_store: UserStore = request.app.state.user_store
    try:
        change_password(user_store, principal.user_id, body.current_password, body.new_password)
    except ValueError as exc:
        raise HTTPException(
            status_code=400,
            detail={"code": "weak_password", "message": str(exc)},
        ) from exc

    current = getattr(request.state, "session", None)
    revoked = request.app.state.session_store.destroy_user_sessions(
        principal.user_id,
        except_session_id=current.session_id if current is not None else None,
    )
    audit_event(
        request,
        AuditActions.PASSWORD_CHANGED,
        principal,
        entity_id=principal.user_id,
        details={"sessions_revoked": revoked},
    )
    return MessageResponse(message="Password changed.")


# ---------------------------------------------------------------------------
# Development helpers
# ---------------------------------------------------------------------------


@router.post("/auth/clear-rate-limit", response_model=MessageResponse, include_in_schema=False)
async def clear_rate_limit(request: Request) -> MessageResponse:
    """Reset every rate-limit counter. DEBUG mode only; 404 otherwise."""
    if not get_settings().debug:
        raise HTTPException(status_code=404, detail={"code": "not_found", "message": "Not found."})
    request.app.state.rate_limiter.clear()
    return MessageResponse(message="Rate limits cleared.")
