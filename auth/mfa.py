"""
auth/mfa.py -- TOTP multi-factor enrollment, verification and backup codes.

State machine per user:
    (no row) -> pending -> enabled -> disabled -> pending -> ...

TOTP: pyotp, SHA1, 6 digits, 30 s step, +/-1 step of clock skew. Each time
step is usable once: a successful TOTP check records last_used_step with a
conditional UPDATE, so a replayed code (or two concurrent requests with the
same code) succeeds at most once.

Backup codes: 10 codes of the form XXXX-XXXX (hex). Only an HMAC-SHA256 of
the normalised code is stored, one row per code in mfa_backup_codes.
Consumption is a single DELETE ... WHERE code_hash = ?; rowcount == 1 is the
success decision, so concurrent consumption of one code yields one winner.

Lockout: mfa_max_attempts failures within mfa_attempt_window_seconds lock
the user out of every code check for mfa_lockout_seconds (RateLimited, 429
with Retry-After). A success clears the counter. The tracker is
process-local.

Audit: every transition writes an entry; secrets and codes never appear in
details or in log lines.

Layer rule: no imports from api/ or ratelimit/. Import from core/ is allowed.
"""

from __future__ import annotations

import hashlib
import hmac
import logging
import secrets
import threading
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable

import pyotp
from sqlalchemy import Column, Integer, String, Table, UniqueConstraint, func, select
from sqlalchemy.engine import Engine

from auth.audit import AuditActions, AuditContext, AuditLogger
from auth.errors import MFAAlreadyEnabled, MFAInvalidCode, MFANotEnabled, RateLimited
from auth.models import MFAEnrollment
from core.config import Settings, get_settings
from core.db import make_engine, metadata

logger = logging.getLogger("clinicconnect.mfa")

TOTP_DIGITS = 6
TOTP_INTERVAL = 30
TOTP_VALID_WINDOW = 1

PENDING = "pending"
ENABLED = "enabled"
DISABLED = "disabled"

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_user_mfa = Table(
    "user_mfa",
    metadata,
    Column("user_id", Integer, primary_key=True),
    Column("status", String(16), nullable=False),
    Column("secret", String(64)),
    Column("last_used_step", Integer),
    Column("updated_at", String(32), nullable=False),
)

_backup_codes = Table(
    "mfa_backup_codes",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, nullable=False, index=True),
    Column("code_hash", String(64), nullable=False),
    UniqueConstraint("user_id", "code_hash", name="uq_mfa_backup_code"),
)


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class MFAStore:
    """SQL persistence for enrollments. Every method is one atomic unit."""

    def __init__(self, db_url: str | None = None, *, engine: Engine | None = None) -> None:
        if engine is None:
            if db_url is None:
                raise ValueError("MFAStore needs a db_url or an engine")
            engine = make_engine(db_url)
        self.engine: Engine = engine
        metadata.create_all(self.engine, tables=[_user_mfa, _backup_codes])

    def get(self, user_id: int) -> MFAEnrollment | None:
        with self.engine.connect() as conn:
            row = conn.execute(_user_mfa.select().where(_user_mfa.c.user_id == user_id)).fetchone()
            if row is None:
                return None
            remaining = conn.execute(
                select(func.count()).select_from(_backup_codes).where(_backup_codes.c.user_id == user_id)
            ).scalar()
        return MFAEnrollment(
            user_id=row.user_id,
            status=row.status,
            secret=row.secret,
            backup_codes_remaining=remaining or 0,
            last_used_step=row.last_used_step,
        )

    def begin_setup(self, user_id: int, secret: str, code_hashes: list[str]) -> bool:
        """Store a pending secret and a fresh code set.

        Returns False, touching nothing, if the enrollment is already enabled.
        """
        with self.engine.begin() as conn:
            result = conn.execute(
                _user_mfa.update()
                .where((_user_mfa.c.user_id == user_id) & (_user_mfa.c.status != ENABLED))
                .values(status=PENDING, secret=secret, last_used_step=None, updated_at=_now_iso())
            )
            if result.rowcount == 0:
                exists = conn.execute(select(_user_mfa.c.user_id).where(_user_mfa.c.user_id == user_id)).fetchone()
                if exists is not None:
                    return False
                conn.execute(
                    _user_mfa.insert().values(user_id=user_id, status=PENDING, secret=secret, updated_at=_now_iso())
                )
            self._write_codes(conn, user_id, code_hashes)
        return True

    def enable(self, user_id: int, secret: str, step: int) -> bool:
        """pending -> enabled, only if the pending secret is still the one that was checked."""
        with self.engine.begin() as conn:
            result = conn.execute(
                _user_mfa.update()
                .where(
                    (_user_mfa.c.user_id == user_id)
                    & (_user_mfa.c.status == PENDING)
                    & (_user_mfa.c.secret == secret)
                )
                .values(status=ENABLED, last_used_step=step, updated_at=_now_iso())
            )
        return result.rowcount == 1

    def use_step(self, user_id: int, step: int) -> bool:
        """Record step as used. False if it (or a later step) was already used."""
        with self.engine.begin() as conn:
            result = conn.execute(
                _user_mfa.update()
                .where(
                    (_user_mfa.c.user_id == user_id)
                    & (_user_mfa.c.status == ENABLED)
                    & ((_user_mfa.c.last_used_step.is_(None)) | (_user_mfa.c.last_used_step < step))
                )
                .values(last_used_step=step)
            )
        return result.rowcount == 1

    def consume_backup_code(self, user_id: int, code_hash: str) -> bool:
        with self.engine.begin() as conn:
            result = conn.execute(
                _backup_codes.delete().where(
                    (_backup_codes.c.user_id == user_id) & (_backup_codes.c.code_hash == code_hash)
                )
            )
        return result.rowcount == 1

    def replace_backup_codes(self, user_id: int, code_hashes: list[str]) -> None:
        with self.engine.begin() as conn:
            self._write_codes(conn, user_id, code_hashes)

    def disable(self, user_id: int) -> bool:
        """enabled -> disabled; clears secret and every backup code."""
        with self.engine.begin() as conn:
            result = conn.execute(
                _user_mfa.update()
                .where((_user_mfa.c.user_id == user_id) & (_user_mfa.c.status == ENABLED))
                .values(status=DISABLED, secret=None, last_used_step=None, updated_at=_now_iso())
            )
            if result.rowcount != 1:
                return False
            conn.execute(_backup_codes.delete().where(_backup_codes.c.user_id == user_id))
        return True

    def close(self) -> None:
        self.engine.dispose()

    @staticmethod
    def _write_codes(conn, user_id: int, code_hashes: list[str]) -> None:
        conn.execute(_backup_codes.delete().where(_backup_codes.c.user_id == user_id))
        if code_hashes:
            conn.execute(_backup_codes.insert(), [{"user_id": user_id, "code_hash": h} for h in code_hashes])


# ---------------------------------------------------------------------------
# Result types
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class MFASetupResult:
    secret: str
    qr_code_url: str
    backup_codes: list[str]


@dataclass(frozen=True)
class MFAVerificationResult:
    valid: bool
    message: str


@dataclass(frozen=True)
class MFAStatus:
    enabled: bool
    pending_setup: bool
    backup_codes_remaining: int
    method: str | None


# ---------------------------------------------------------------------------
# Attempt tracking
# ---------------------------------------------------------------------------


class MFAAttemptTracker:
    """Counts failed code checks per user and enforces a temporary lockout."""

    def __init__(self, max_attempts: int, window_seconds: int, lockout_seconds: int, clock: Callable[[], float]) -> None:
        self.max_attempts = max_attempts
        self.window_seconds = window_seconds
        self.lockout_seconds = lockout_seconds
        self._clock = clock
        self._failures: dict[int, list[float]] = {}
        self._locked_until: dict[int, float] = {}
        self._lock = threading.Lock()

    def retry_after(self, user_id: int) -> int:
        """Seconds until user_id may try again; 0 when not locked."""
        now = self._clock()
        with self._lock:
            until = self._locked_until.get(user_id)
            if until is None:
                return 0
            if now >= until:
                del self._locked_until[user_id]
                return 0
            return max(1, int(until - now + 0.999))

    def record_failure(self, user_id: int) -> bool:
        """Record one failure. Returns True if this failure triggered a lockout."""
        now = self._clock()
        with self._lock:
            recent = [t for t in self._failures.get(user_id, []) if now - t < self.window_seconds]
            recent.append(now)
            if len(recent) >= self.max_attempts:
                self._failures.pop(user_id, None)
                self._locked_until[user_id] = now + self.lockout_seconds
                return True
            self._failures[user_id] = recent
            return False

    def reset(self, user_id: int) -> None:
        with self._lock:
            self._failures.pop(user_id, None)
            self._locked_until.pop(user_id, None)


# ---------------------------------------------------------------------------
# Service
# ---------------------------------------------------------------------------


def generate_backup_codes(count: int) -> list[str]:
    codes = []
    for _ in range(count):
        raw = secrets.token_hex(4).upper()
        codes.append(f"{raw[:4]}-{raw[4:]}")
    return codes


def normalize_backup_code(code: str) -> str:
    return code.strip().replace("-", "").replace(" ", "").upper()


class MFAService:
    """TOTP enrollment and verification over an MFAStore.

    Usage:
        mfa = MFAService(MFAStore(engine=engine), audit=audit_logger)
        setup = mfa.setup_mfa(user_id, "ade")
        mfa.verify_mfa_setup(user_id, code_from_app)
    """

    def __init__(
        self,
        store: MFAStore,
        *,
        audit: AuditLogger | None = None,
        settings: Settings | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.store = store
        self.audit = audit
        self.settings = settings or get_settings()
        self._clock = clock
        self.attempts = MFAAttemptTracker(
            self.settings.mfa_max_attempts,
            self.settings.mfa_attempt_window_seconds,
            self.settings.mfa_lockout_seconds,
            clock,
        )

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def status(self, user_id: int) -> MFAStatus:
        enrollment = self.store.get(user_id)
        if enrollment is None:
            return MFAStatus(enabled=False, pending_setup=False, backup_codes_remaining=0, method=None)
        return MFAStatus(
            enabled=enrollment.enabled,
            pending_setup=enrollment.status == PENDING,
            backup_codes_remaining=enrollment.backup_codes_remaining if enrollment.enabled else 0,
            method="totp" if enrollment.enabled else None,
        )

    def is_enabled(self, user_id: int) -> bool:
        enrollment = self.store.get(user_id)
        return enrollment is not None and enrollment.enabled

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def setup_mfa(self, user_id: int, label: str, *, context: AuditContext | None = None) -> MFASetupResult:
        """Start (or restart) enrollment with a new secret and backup codes.

        Raises MFAAlreadyEnabled, leaving the active secret untouched, when
        the user is already enrolled.
        """
        secret = pyotp.random_base32()
        codes = generate_backup_codes(self.settings.mfa_backup_code_count)
        if not self.store.begin_setup(user_id, secret, [self._hash_code(c) for c in codes]):
            self._audit(context, AuditActions.MFA_SETUP_REJECTED, user_id, {"reason": "already_enabled"})
            raise MFAAlreadyEnabled()
        qr_code_url = self._totp(secret).provisioning_uri(name=label, issuer_name=self.settings.mfa_issuer)
        self._audit(context, AuditActions.MFA_SETUP_INITIATED, user_id, {})
        logger.info("MFA setup initiated for user_id=%s", user_id)
        return MFASetupResult(secret=secret, qr_code_url=qr_code_url, backup_codes=codes)

    def verify_mfa_setup(self, user_id: int, code: str, *, context: AuditContext | None = None) -> MFAVerificationResult:
        """Confirm enrollment with a code from the authenticator app. Failure changes nothing."""
        self._check_lockout(user_id)
        enrollment = self.store.get(user_id)
        if enrollment is None or enrollment.secret is None:
            return MFAVerificationResult(False, "MFA setup not initiated")
        if enrollment.enabled:
            return MFAVerificationResult(False, "MFA already enabled")
        if enrollment.status != PENDING:
            return MFAVerificationResult(False, "MFA setup not initiated")

        step = self._matching_step(enrollment.secret, code)
        if step is None or not self.store.enable(user_id, enrollment.secret, step):
            self._record_failure(user_id, context, AuditActions.MFA_SETUP_VERIFICATION_FAILED)
            return MFAVerificationResult(False, "Invalid verification code")

        self.attempts.reset(user_id)
        self._audit(context, AuditActions.MFA_ENABLED, user_id, {})
        logger.info("MFA enabled for user_id=%s", user_id)
        return MFAVerificationResult(True, "MFA enabled successfully")

    def verify_mfa(self, user_id: int, code: str, *, context: AuditContext | None = None) -> MFAVerificationResult:
        """Check a TOTP or backup code for an enabled enrollment.

        Users without an enabled enrollment pass: MFA is not a factor for them.
        """
        enrollment = self.store.get(user_id)
        if enrollment is None or not enrollment.enabled:
            return MFAVerificationResult(True, "MFA not enabled")
        self._check_lockout(user_id)

        method = self._consume_code(enrollment, code)
        if method is None:
            self._record_failure(user_id, context, AuditActions.MFA_VERIFICATION_FAILED)
            return MFAVerificationResult(False, "Invalid MFA code")

        self.attempts.reset(user_id)
        self._audit(context, AuditActions.MFA_VERIFIED, user_id, {"method": method})
        if method == "backup_code":
            remaining = self.store.get(user_id)
            left = remaining.backup_codes_remaining if remaining is not None else 0
            return MFAVerificationResult(True, f"MFA verified with backup code. {left} codes remaining.")
        return MFAVerificationResult(True, "MFA verified")

    def disable_mfa(
        self,
        user_id: int,
        *,
        code: str | None = None,
        password_check: Callable[[], bool] | None = None,
        context: AuditContext | None = None,
    ) -> None:
        """Turn MFA off. Needs a valid code now, or a password that password_check accepts.

        Both proofs go through the same attempt counter and lockout, and a
        failed one is audited as MFA_VERIFICATION_FAILED with its method.
        """
        enrollment = self.store.get(user_id)
        if enrollment is None or not enrollment.enabled:
            raise MFANotEnabled()
        self._check_lockout(user_id)
        if password_check is not None:
            via = "password"
            if not password_check():
                self._record_failure(user_id, context, AuditActions.MFA_VERIFICATION_FAILED, {"method": via})
                raise MFAInvalidCode("Invalid password.")
        else:
            via = "code"
            if code is None or self._consume_code(enrollment, code) is None:
                self._record_failure(user_id, context, AuditActions.MFA_VERIFICATION_FAILED, {"method": via})
                raise MFAInvalidCode()
        if not self.store.disable(user_id):
            raise MFANotEnabled()
        self.attempts.reset(user_id)
        self._audit(context, AuditActions.MFA_DISABLED, user_id, {"via": via})
        logger.info("MFA disabled for user_id=%s", user_id)

    def regenerate_backup_codes(self, user_id: int, code: str, *, context: AuditContext | None = None) -> list[str]:
        """Replace the whole backup-code set after checking a current code."""
        enrollment = self.store.get(user_id)
        if enrollment is None or not enrollment.enabled:
            raise MFANotEnabled()
        self._check_lockout(user_id)
        if self._consume_code(enrollment, code) is None:
            self._record_failure(user_id, context, AuditActions.MFA_VERIFICATION_FAILED)
            raise MFAInvalidCode()
        codes = generate_backup_codes(self.settings.mfa_backup_code_count)
        self.store.replace_backup_codes(user_id, [self._hash_code(c) for c in codes])
        self.attempts.reset(user_id)
        self._audit(context, AuditActions.MFA_BACKUP_CODES_REGENERATED, user_id, {"count": len(codes)})
        return codes

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    @staticmethod
    def _totp(secret: str) -> pyotp.TOTP:
        return pyotp.TOTP(secret, digits=TOTP_DIGITS, interval=TOTP_INTERVAL)

    def current_step(self) -> int:
        return int(self._clock()) // TOTP_INTERVAL

    def _matching_step(self, secret: str, code: str) -> int | None:
        """Return the time step (within +/-1 of now) whose code equals code."""
        candidate = code.strip().replace(" ", "")
        if not (candidate.isascii() and candidate.isdigit() and len(candidate) == TOTP_DIGITS):
            return None
        totp = self._totp(secret)
        now_step = self.current_step()
        for offset in range(-TOTP_VALID_WINDOW, TOTP_VALID_WINDOW + 1):
            step = now_step + offset
            if hmac.compare_digest(totp.generate_otp(step), candidate):
                return step
        return None

    def _consume_code(self, enrollment: MFAEnrollment, code: str) -> str | None:
        """Atomically use a TOTP step or a backup code. Returns the method used, or None."""
        step = self._matching_step(enrollment.secret, code)
        if step is not None:
            return "totp" if self.store.use_step(enrollment.user_id, step) else None
        normalized = normalize_backup_code(code)
        if len(normalized) != 8:
            return None
        if self.store.consume_backup_code(enrollment.user_id, self._hash_code(normalized)):
            return "backup_code"
        return None

    def _hash_code(self, code: str) -> str:
        return hmac.new(
            self.settings.secret_key.encode("utf-8"),
            normalize_backup_code(code).encode("utf-8"),
            hashlib.sha256,
        ).hexdigest()

    def _check_lockout(self, user_id: int) -> None:
        retry_after = self.attempts.retry_after(user_id)
        if retry_after:
            raise RateLimited("Too many MFA attempts. Please try again later.", retry_after=retry_after)

    def _record_failure(
        self, user_id: int, context: AuditContext | None, action: str, details: dict | None = None
    ) -> None:
        self._audit(context, action, user_id, details or {})
        if self.attempts.record_failure(user_id):
            logger.warning("MFA lockout for user_id=%s after repeated failures", user_id)
            self._audit(context, AuditActions.MFA_LOCKED_OUT, user_id, {"lockout_seconds": self.attempts.lockout_seconds})

    def _audit(self, context: AuditContext | None, action: str, user_id: int, details: dict) -> None:
        if self.audit is None:
            return
        ctx = context or AuditContext()
        self.audit.log(ctx.entry(action, user_id, entity_type="user", entity_id=str(user_id), details=details))
