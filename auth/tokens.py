"""
auth/tokens.py -- Password hashing, credential authentication, and bearer tokens.

Security design decisions:
  JWT: python-jose with HS256. Tokens are signed with SECRET_KEY and carry
       user_id, username (sub), role, organization_id and expiry (30 days by
       default). verify_token() checks signature and expiry only -- there is
       no server-side revocation list, so a token stays valid until it
       expires or SECRET_KEY is rotated. Sessions are the revocable carrier.

  Passwords: bcrypt, used directly. checkpw() compares in constant time. The
       _DUMMY_HASH constant enables timing equalization in authenticate() so
       response time does not reveal whether a username exists [C1].

  Enumeration: authenticate() raises the same InvalidCredentials for an
       unknown username, a wrong password and a deactivated account.

Layer rule: no imports from api/ or ratelimit/. Import from core/ is allowed.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING

import bcrypt
from jose import ExpiredSignatureError, JWTError, jwt

from auth.audit import AuditActions
from auth.errors import InvalidCredentials, TokenExpired, TokenMalformed
from auth.models import AuditEntry, Principal
from auth.roles import Role
from core.config import get_settings

if TYPE_CHECKING:
    from auth.audit import AuditLogger
    from auth.store import UserStore

logger = logging.getLogger("clinicconnect.auth")

# ---------------------------------------------------------------------------
# Config -- read once at module load via the lru_cache singleton [M6]
# ---------------------------------------------------------------------------

_settings = get_settings()

_ALGORITHM = "HS256"

MIN_PASSWORD_LENGTH = 8
# bcrypt's input limit; bcrypt>=5 raises instead of truncating.
MAX_PASSWORD_BYTES = 72

# ---------------------------------------------------------------------------
# Password hashing (bcrypt -- direct usage, no passlib wrapper)
# ---------------------------------------------------------------------------


def password_problem(plain: str) -> str | None:
    """Return why plain cannot be stored as a password, or None if it can."""
    if len(plain) < MIN_PASSWORD_LENGTH:
        return f"Password must be at least {MIN_PASSWORD_LENGTH} characters."
    if len(plain.encode("utf-8")) > MAX_PASSWORD_BYTES:
        return f"Password must be at most {MAX_PASSWORD_BYTES} bytes when UTF-8 encoded."
    return None


def hash_password(plain: str) -> str:
    """Return a bcrypt hash of the given plaintext password.

    Raises ValueError for passwords over MAX_PASSWORD_BYTES. The API models
    reject those with a 422 before they get here.
    """
    if len(plain.encode("utf-8")) > MAX_PASSWORD_BYTES:
        raise ValueError(f"Password must be at most {MAX_PASSWORD_BYTES} bytes when UTF-8 encoded.")
    return bcrypt.hashpw(plain.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


def verify_password(plain: str, hashed: str) -> bool:
    """Return True if the plaintext password matches the bcrypt hash.

    Passwords over MAX_PASSWORD_BYTES never match: no stored hash can have
    come from one, and older bcrypt releases would compare a truncated prefix.
    """
    encoded = plain.encode("utf-8")
    if len(encoded) > MAX_PASSWORD_BYTES:
        return False
    try:
        return bcrypt.checkpw(encoded, hashed.encode("utf-8"))
    except ValueError:
        # Corrupt or non-bcrypt hash in the DB -- treat as a mismatch.
        return False


# Timing equalization dummy hash [C1]. Computed once at module load so the
# first login attempt is not measurably slower than subsequent ones.
_DUMMY_HASH: str = hash_password("clinicconnect_timing_dummy")


# ---------------------------------------------------------------------------
# Token encode / decode
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class IssuedToken:
    token: str
    expires_at: datetime
    expires_in: int


def issue_token(
    principal: Principal,
    *,
    expire_seconds: int = 0,
    now: datetime | None = None,
    secret_key: str | None = None,
) -> IssuedToken:
    """Sign a bearer token for principal.

    Args:
        expire_seconds: Lifetime in seconds. 0 uses Settings.token_expire_seconds.
        now:            Issue time; defaults to the current UTC time.
        secret_key:     Signing key override; defaults to Settings.secret_key.
    """
    duration = expire_seconds if expire_seconds > 0 else _settings.token_expire_seconds
    issued_at = now or datetime.now(timezone.utc)
    expires_at = issued_at + timedelta(seconds=duration)
    payload = {
        "sub": principal.username,
        "user_id": principal.user_id,
        "role": principal.role.value,
        "organization_id": principal.organization_id,
        "current_organization_id": principal.current_organization_id,
        "iat": issued_at,
        "exp": expires_at,
    }
    token = jwt.encode(payload, secret_key or _settings.secret_key, algorithm=_ALGORITHM)
    return IssuedToken(token=token, expires_at=expires_at, expires_in=duration)


def create_access_token(principal: Principal, **kwargs) -> str:
    """Shorthand for issue_token(...).token."""
    return issue_token(principal, **kwargs).token


def verify_token(token: str, *, secret_key: str | None = None) -> Principal:
    """Verify signature and expiry and rebuild the Principal.

    Raises:
        TokenExpired:   signature valid but exp is in the past.
        TokenMalformed: anything else (bad signature, bad structure, unknown role).
    """
    try:
        payload = jwt.decode(token, secret_key or _settings.secret_key, algorithms=[_ALGORITHM])
    except ExpiredSignatureError as exc:
        raise TokenExpired() from exc
    except JWTError as exc:
        raise TokenMalformed() from exc

    try:
        user_id = int(payload["user_id"])
        username = str(payload["sub"])
        role = Role.parse(payload["role"])
    except (KeyError, TypeError, ValueError) as exc:
        raise TokenMalformed() from exc
    organization_id = payload.get("organization_id")
    current = payload.get("current_organization_id")
    return Principal(
        user_id=user_id,
        username=username,
        role=role,
        organization_id=organization_id,
        current_organization_id=current if current is not None else organization_id,
    )


# ---------------------------------------------------------------------------
# User authentication (constant-time) [C1]
# ---------------------------------------------------------------------------


def authenticate(
    store: UserStore,
    username: str,
    password: str,
    *,
    audit: AuditLogger | None = None,
    ip_address: str | None = None,
    user_agent: str | None = None,
) -> Principal:
    """Authenticate a username/password login and return the Principal.

    Always runs bcrypt whether or not the user exists:
    - Unknown username: bcrypt runs against _DUMMY_HASH (same cost as real check)
    - Wrong password: bcrypt runs against the real hash (same cost)

    Both outcomes are audited. The failure entry carries the attempted
    username only; it never says which check failed.
    """
    user = store.get_by_username(username)
    if user is None or user.hashed_password is None:
        verify_password(password, _DUMMY_HASH)
        ok = False
    else:
        ok = verify_password(password, user.hashed_password) and user.is_active

    if not ok:
        logger.info("Login failed for username=%r from %s", username, ip_address or "unknown")
        if audit is not None:
            audit.log(
                AuditEntry(
                    action=AuditActions.LOGIN_FAILED,
                    actor_user_id=None,
                    entity_type="user",
                    details={"username": username},
                    ip_address=ip_address,
                    user_agent=user_agent,
                )
            )
        raise InvalidCredentials()

    store.update_last_login(user.id)
    principal = Principal.from_user(user, store.default_organization(user.id))
    if audit is not None:
        audit.log(
            AuditEntry(
                action=AuditActions.LOGIN_SUCCESS,
                actor_user_id=user.id,
                entity_type="user",
                entity_id=str(user.id),
                details={"role": user.role.value},
                ip_address=ip_address,
                user_agent=user_agent,
                organization_id=principal.current_organization_id,
            )
        )
    return principal


def verify_user_password(store: UserStore, user_id: int, password: str) -> bool:
    """Re-check an authenticated user's password (constant-time) [C1]."""
    user = store.get_by_id(user_id)
    if user is None or user.hashed_password is None:
        verify_password(password, _DUMMY_HASH)
        return False
    return verify_password(password, user.hashed_password)


def change_password(store: UserStore, user_id: int, current_password: str, new_password: str) -> None:
    """Replace a user's password after re-verifying the current one.

    Raises InvalidCredentials if the current password is wrong and ValueError
    if the new password is too short or too long for bcrypt.
    """
    if not verify_user_password(store, user_id, current_password):
        raise InvalidCredentials("Current password is incorrect.")
    problem = password_problem(new_password)
    if problem:
        raise ValueError(problem)
    store.update_user(user_id, hashed_password=hash_password(new_password))
