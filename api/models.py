"""
API request and response models for ClinicConnect auth REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/models.py, which
own the internal domain representation. Route handlers map between the two.

Separation of concerns: auth/ models = domain truth; api/ models = API contract.
"""

from typing import Annotated, Optional

from pydantic import AfterValidator, BaseModel, BeforeValidator, ConfigDict, Field

from auth.models import Principal
from auth.roles import Role
from auth.tokens import MAX_PASSWORD_BYTES, MIN_PASSWORD_LENGTH

# ---------------------------------------------------------------------------
# Shared validators
# ---------------------------------------------------------------------------


def _parse_role(value):
    """Accept legacy spellings ("superadmin", "lab-technician") at the API boundary."""
    if value is None:
        return None
    return Role.parse(value)


RoleInput = Annotated[Role, BeforeValidator(_parse_role)]


def _check_password_bytes(value: str) -> str:
    """bcrypt only accepts MAX_PASSWORD_BYTES of UTF-8; longer input is a 422, not a 500."""
    if len(value.encode("utf-8")) > MAX_PASSWORD_BYTES:
        raise ValueError(f"Password must be at most {MAX_PASSWORD_BYTES} bytes when UTF-8 encoded.")
    return value


NewPassword = Annotated[
    str,
    Field(min_length=MIN_PASSWORD_LENGTH, max_length=128),
    AfterValidator(_check_password_bytes),
]


# ---------------------------------------------------------------------------
# Errors and health
# ---------------------------------------------------------------------------


class ErrorDetail(BaseModel):
    """Machine-readable error payload."""

    model_config = ConfigDict(frozen=True)

    code: str
    message: str
    detail: Optional[str] = None


class ErrorResponse(BaseModel):
    """Top-level error envelope returned on 4xx/5xx responses."""

    model_config = ConfigDict(frozen=True)

    error: ErrorDetail


class HealthResponse(BaseModel):
    """Response for GET /api/v1/health."""

    model_config = ConfigDict(frozen=True)

    status: str = "healthy"
    version: str
    # app / database ("ok" | "error") and session_store ("durable" | "memory-fallback")
    components: dict[str, str] = Field(default_factory=dict)


class MessageResponse(BaseModel):
    message: str


# ---------------------------------------------------------------------------
# Authentication
# ---------------------------------------------------------------------------


class LoginRequest(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    username: str = Field(min_length=1, max_length=255)
    password: str = Field(min_length=1, max_length=128)


class PrincipalResponse(BaseModel):
    """The resolved identity for the current request."""

    user_id: int
    username: str
    role: Role
    organization_id: Optional[int] = None
    current_organization_id: Optional[int] = None

    @classmethod
    def from_principal(cls, principal: Principal) -> "PrincipalResponse":
        return cls(
            user_id=principal.user_id,
            username=principal.username,
            role=principal.role,
            organization_id=principal.organization_id,
            current_organization_id=principal.current_organization_id,
        )


class LoginResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"
    expires_in: int
    user: PrincipalResponse


class MeResponse(PrincipalResponse):
    auth_method: str
    mfa_enabled: bool


class SessionStatusResponse(BaseModel):
    authenticated: bool
    auth_method: Optional[str] = None
    user: Optional[PrincipalResponse] = None
    last_activity: Optional[float] = None
    expires_at: Optional[float] = None
    remaining_seconds: Optional[int] = None


class ChangePasswordRequest(BaseModel):
    current_password: str = Field(min_length=1, max_length=128)
    new_password: NewPassword


# ---------------------------------------------------------------------------
# User management
# ---------------------------------------------------------------------------


class UserCreate(BaseModel):
    """Request body for POST /api/v1/auth/users."""

    model_config = ConfigDict(str_strip_whitespace=True)

    username: str = Field(min_length=1, max_length=255)
    password: NewPassword
    role: RoleInput
    organization_id: Optional[int] = None


class UserPatch(BaseModel):
    """Request body for PATCH /api/v1/auth/users/{id}. Omitted fields are unchanged."""

    role: Optional[RoleInput] = None
    is_active: Optional[bool] = None


class UserResponse(BaseModel):
    id: int
    username: str
    role: Role
    organization_id: Optional[int] = None
    is_active: bool
    created_at: Optional[str] = None
    last_login: Optional[str] = None


# ---------------------------------------------------------------------------
# MFA
# ---------------------------------------------------------------------------


class MFACodeRequest(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    code: str = Field(min_length=6, max_length=16)


class MFADisableRequest(BaseModel):
    """Either a current code or the account password."""

    model_config = ConfigDict(str_strip_whitespace=True)

    code: Optional[str] = Field(default=None, min_length=6, max_length=16)
    password: Optional[str] = Field(default=None, min_length=1, max_length=128)


class MFAStatusResponse(BaseModel):
    enabled: bool
    pending_setup: bool
    backup_codes_remaining: int
    method: Optional[str] = None


class MFASetupResponse(BaseModel):
    secret: str
    qr_code_url: str
    backup_codes: list[str]
    message: str = "Scan the QR code with your authenticator app, then verify with a code."


class MFAVerifyResponse(BaseModel):
    valid: bool
    message: str


class MFABackupCodesResponse(BaseModel):
    backup_codes: list[str]
    message: str = "New backup codes generated. Previous codes are no longer valid."


# ---------------------------------------------------------------------------
# Organizations
# ---------------------------------------------------------------------------


class AssumeOrganizationRequest(BaseModel):
    organization_id: int = Field(gt=0)


class OrganizationContextResponse(BaseModel):
    organization_id: Optional[int] = None
    current_organization_id: Optional[int] = None
    memberships: list[int] = Field(default_factory=list)
    assumed: bool = False


# ---------------------------------------------------------------------------
# Audit
# ---------------------------------------------------------------------------


class AuditEntryResponse(BaseModel):
    id: int
    action: str
    actor_user_id: Optional[int] = None
    entity_type: str
    entity_id: Optional[str] = None
    details: dict
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    organization_id: Optional[int] = None
    timestamp: str
