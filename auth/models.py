"""
auth/models.py -- Domain dataclasses for authentication entities.

Pattern: Data class (pure data container, near-zero logic). Stores and routes
do the work; these classes own the domain shape.

Principal is the only identity route handlers ever see. It is derived per
request from exactly one carrier (bearer token xor session cookie) and never
persisted directly -- sessions persist a snapshot of its fields.

Layer rule: no imports from api/ or ratelimit/.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone

from auth.roles import Role


@dataclass
class User:
    """A local account. hashed_password is a bcrypt hash, never the plaintext."""

    username: str
    role: Role
    organization_id: int | None = None
    id: int | None = None
    hashed_password: str | None = None
    created_at: str | None = None
    last_login: str | None = None
    is_active: bool = True


@dataclass(frozen=True)
class Principal:
    """Resolved identity, role and tenant context for one request.

    current_organization_id may differ from organization_id only after an
    explicit, audited assume-organization operation on a session.
    """

    user_id: int
    username: str
    role: Role
    organization_id: int | None
    current_organization_id: int | None

    @classmethod
    def from_user(cls, user: User, current_organization_id: int | None = None) -> "Principal":
        return cls(
            user_id=user.id,
            username=user.username,
            role=user.role,
            organization_id=user.organization_id,
            current_organization_id=(
                current_organization_id if current_organization_id is not None else user.organization_id
            ),
        )


@dataclass
class Session:
    """Server-authoritative session state.

    Times are POSIX timestamps (float seconds). A session is expired once
    now - last_activity > max_age; expires_at is the derived deadline.
    """

    session_id: str
    principal: Principal
    created_at: float
    last_activity: float
    expires_at: float
    mfa_verified_at: float | None = None
    ip_address: str | None = None
    user_agent: str | None = None


@dataclass
class MFAEnrollment:
    """TOTP enrollment for one user. No row at all means Unenrolled."""

    user_id: int
    status: str  # "pending", "enabled", "disabled"
    secret: str | None = None
    backup_codes_remaining: int = 0
    last_used_step: int | None = None

    @property
    def enabled(self) -> bool:
        return self.status == "enabled"


@dataclass(frozen=True)
class AuditEntry:
    """One immutable record of a privileged or security-relevant action.

    details must never carry secrets, TOTP codes or backup codes.
    """

    action: str
    actor_user_id: int | None = None
    entity_type: str = "user"
    entity_id: str | None = None
    details: dict = field(default_factory=dict)
    ip_address: str | None = None
    user_agent: str | None = None
    organization_id: int | None = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    id: int | None = None
