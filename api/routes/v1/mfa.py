"""
api/routes/v1/mfa.py -- TOTP enrollment and verification REST endpoints.

Routes:
  GET  /api/v1/mfa/status                   -- enrollment state and remaining backup codes
  POST /api/v1/mfa/setup                    -- new secret, otpauth URI and backup codes (pending)
  POST /api/v1/mfa/verify-setup             -- first code from the app; pending -> enabled
  POST /api/v1/mfa/verify                   -- TOTP or backup code; satisfies the session checkpoint
  POST /api/v1/mfa/disable                  -- needs a current code or the account password
  POST /api/v1/mfa/regenerate-backup-codes  -- needs a current code; replaces the whole set

Every route acts on the caller's own enrollment; there is no user_id path
parameter. Responses that carry a secret or backup codes are no-store.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from api.models import (
    MessageResponse,
    MFABackupCodesResponse,
    MFACodeRequest,
    MFADisableRequest,
    MFASetupResponse,
    MFAStatusResponse,
    MFAVerifyResponse,
)
from auth.dependencies import audit_context, get_current_principal
from auth.errors import MFAInvalidCode
from auth.mfa import MFAService
from auth.models import Principal
from auth.tokens import verify_user_password

# Auth policy: every route requires auth (get_current_principal).
router = APIRouter()


def _mark_session_verified(request: Request) -> None:
    session = getattr(request.state, "session", None)
    if session is not None:
        request.app.state.session_store.mark_mfa_verified(session.session_id)


def _no_store(model) -> JSONResponse:
    resp = JSONResponse(content=model.model_dump(mode="json"))
    resp.headers["Cache-Control"] = "no-store"
    return resp


@router.get("/mfa/status", response_model=MFAStatusResponse)
async def mfa_status(request: Request, principal: Principal = Depends(get_current_principal)) -> MFAStatusResponse:
    status = request.app.state.mfa_service.status(principal.user_id)
    return MFAStatusResponse(
        enabled=status.enabled,
        pending_setup=status.pending_setup,
        backup_codes_remaining=status.backup_codes_remaining,
        method=status.method,
    )


@router.post("/mfa/setup", response_model=MFASetupResponse)
async def mfa_setup(request: Request, principal: Principal = Depends(get_current_principal)) -> JSONResponse:
    """Begin enrollment. 409 if MFA is already enabled; the active secret is untouched."""
    mfa: MFAService = request.app.state.mfa_service
    result = mfa.setup_mfa(principal.user_id, principal.username, context=audit_context(request, principal))
    return _no_store(
        MFASetupResponse(secret=result.secret, qr_code_url=result.qr_code_url, backup_codes=result.backup_codes)
    )


@router.post("/mfa/verify-setup", response_model=MFAVerifyResponse)
async def mfa_verify_setup(
    request: Request,
    body: MFACodeRequest,
    principal: Principal = Depends(get_current_principal),
) -> MFAVerifyResponse:
    mfa: MFAService = request.app.state.mfa_service
    result = mfa.verify_mfa_setup(principal.user_id, body.code, context=audit_context(request, principal))
    if not result.valid:
        raise MFAInvalidCode(result.message)
    _mark_session_verified(request)
    return MFAVerifyResponse(valid=True, message=result.message)


@router.post("/mfa/verify", response_model=MFAVerifyResponse)
async def mfa_verify(
    request: Request,
    body: MFACodeRequest,
    principal: Principal = Depends(get_current_principal),
) -> MFAVerifyResponse:
    """Verify a code. On a session this opens the sensitive-operation checkpoint window."""
    mfa: MFAService = request.app.state.mfa_service
    result = mfa.verify_mfa(principal.user_id, body.code, context=audit_context(request, principal))
    if not result.valid:
        raise MFAInvalidCode(result.message)
    _mark_session_verified(request)
    return MFAVerifyResponse(valid=True, message=result.message)


@router.post("/mfa/disable", response_model=MessageResponse)
def mfa_disable(
    request: Request,
    body: MFADisableRequest,
    principal: Principal = Depends(get_current_principal),
) -> MessageResponse:
    mfa: MFAService = request.app.state.mfa_service
    context = audit_context(request, principal)
    if body.password is not None:
        user_store = request.app.state.user_store
        password = body.password
        mfa.disable_mfa(
            principal.user_id,
            password_check=lambda: verify_user_password(user_store, principal.user_id, password),
            context=context,
        )
    else:
        mfa.disable_mfa(principal.user_id, code=body.code, context=context)
    return MessageResponse(message="MFA disabled.")


@router.post("/mfa/regenerate-backup-codes", response_model=MFABackupCodesResponse)
async def mfa_regenerate_backup_codes(
    request: Request,
    body: MFACodeRequest,
    principal: Principal = Depends(get_current_principal),
) -> JSONResponse:
    mfa: MFAService = request.app.state.mfa_service
    codes = mfa.regenerate_backup_codes(principal.user_id, body.code, context=audit_context(request, principal))
    return _no_store(MFABackupCodesResponse(backup_codes=codes))
