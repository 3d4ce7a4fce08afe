"""
auth/sessions.py -- Server-authoritative session state and the session cookie.

A session is the revocable carrier: logout, sliding-expiry timeout and
step-down (role change, deactivation, password change) all invalidate it on
the server. The cookie only carries a signed, opaque session id.

Expiry rule (sliding): a session is expired once
    now - last_activity > max_age
Reads of an expired session delete it and report it absent. purge_expired()
trims whatever nobody read.

Stores:
  SqlSessionStore      -- durable user_sessions table (SQLAlchemy Core)
  MemorySessionStore   -- process-local dict under a lock; same expiry rules
  FailoverSessionStore -- SQL first; on the first SQLAlchemyError it logs at
                          CRITICAL and switches permanently to memory.
                          Durability is lost, expiry enforcement is not.

Every store takes a clock (callable returning POSIX seconds) so tests can
move time without sleeping.

Layer rule: no imports from api/ or ratelimit/. Import from core/ is allowed.
"""

from __future__ import annotations

import dataclasses
import logging
import secrets
import threading
import time
from typing import Callable, Protocol

from fastapi import Response
from itsdangerous import BadSignature, Signer
from sqlalchemy import Column, Float, Integer, String, Table, Text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from auth.models import Principal, Session
from auth.roles import Role
from core.config import Settings, get_settings
from core.db import make_engine, metadata

logger = logging.getLogger("clinicconnect.sessions")

Clock = Callable[[], float]

_SESSION_ID_BYTES = 32  # 256 bits from secrets.token_urlsafe
_COOKIE_SALT = "clinicconnect.session"


def new_session_id() -> str:
    return secrets.token_urlsafe(_SESSION_ID_BYTES)


class SessionStore(Protocol):
    """Contract shared by every session backend."""

    mode: str
    max_age: int

    def create(self, principal: Principal, *, ip_address: str | None = None, user_agent: str | None = None) -> str: ...

    def get(self, session_id: str) -> Session | None: ...

    def touch(self, session_id: str) -> bool: ...

    def destroy(self, session_id: str) -> None: ...

    def destroy_user_sessions(self, user_id: int, *, except_session_id: str | None = None) -> int: ...

    def set_current_organization(self, session_id: str, organization_id: int | None) -> bool: ...

    def mark_mfa_verified(self, session_id: str) -> bool: ...

    def purge_expired(self) -> int: ...

    def close(self) -> None: ...


# ---------------------------------------------------------------------------
# Durable store
# ---------------------------------------------------------------------------

_user_sessions = Table(
    "user_sessions",
    metadata,
    Column("session_id", String(64), primary_key=True),
    Column("user_id", Integer, nullable=False, index=True),
    Column("username", String(255), nullable=False),
    Column("role", String(30), nullable=False),
    Column("organization_id", Integer),
    Column("current_organization_id", Integer),
    Column("created_at", Float, nullable=False),
    Column("last_activity", Float, nullable=False, index=True),
    Column("mfa_verified_at", Float),
    Column("ip_address", String(45)),
    Column("user_agent", Text),
)


class SqlSessionStore:
    """Sessions in the user_sessions table. Each method is one statement or one transaction."""

    mode = "durable"

    def __init__(
        self,
        db_url: str | None = None,
        *,
        engine: Engine | None = None,
        max_age: int | None = None,
        clock: Clock = time.time,
    ) -> None:
        if engine is None:
            if db_url is None:
                raise ValueError("SqlSessionStore needs a db_url or an engine")
            engine = make_engine(db_url)
        self.engine: Engine = engine
        self.max_age = max_age if max_age is not None else get_settings().session_max_age_seconds
        self._clock = clock
        metadata.create_all(self.engine, tables=[_user_sessions])

    def create(self, principal: Principal, *, ip_address: str | None = None, user_agent: str | None = None) -> str:
        session_id = new_session_id()
        now = self._clock()
        with self.engine.begin() as conn:
            conn.execute(
                _user_sessions.insert().values(
                    session_id=session_id,
                    user_id=principal.user_id,
                    username=principal.username,
                    role=principal.role.value,
                    organization_id=principal.organization_id,
                    current_organization_id=principal.current_organization_id,
                    created_at=now,
                    last_activity=now,
                    ip_address=ip_address,
                    user_agent=user_agent,
                )
            )
        return session_id

    def get(self, session_id: str) -> Session | None:
        with self.engine.connect() as conn:
            row = conn.execute(_user_sessions.select().where(_user_sessions.c.session_id == session_id)).fetchone()
        if row is None:
            return None
        if self._clock() - row.last_activity > self.max_age:
            self.destroy(session_id)
            return None
        return self._row_to_session(row)

    def touch(self, session_id: str) -> bool:
        now = self._clock()
        with self.engine.begin() as conn:
            result = conn.execute(
                _user_sessions.update()
                .where(
                    (_user_sessions.c.session_id == session_id)
                    & (_user_sessions.c.last_activity >= now - self.max_age)
                )
                .values(last_activity=now)
            )
        return result.rowcount == 1

    def destroy(self, session_id: str) -> None:
        with self.engine.begin() as conn:
            conn.execute(_user_sessions.delete().where(_user_sessions.c.session_id == session_id))

    def destroy_user_sessions(self, user_id: int, *, except_session_id: str | None = None) -> int:
        condition = _user_sessions.c.user_id == user_id
        if except_session_id is not None:
            condition = condition & (_user_sessions.c.session_id != except_session_id)
        with self.engine.begin() as conn:
            result = conn.execute(_user_sessions.delete().where(condition))
        return result.rowcount

    def set_current_organization(self, session_id: str, organization_id: int | None) -> bool:
        with self.engine.begin() as conn:
            result = conn.execute(
                _user_sessions.update()
                .where(_user_sessions.c.session_id == session_id)
                .values(current_organization_id=organization_id)
            )
        return result.rowcount == 1

    def mark_mfa_verified(self, session_id: str) -> bool:
        with self.engine.begin() as conn:
            result = conn.execute(
                _user_sessions.update()
                .where(_user_sessions.c.session_id == session_id)
                .values(mfa_verified_at=self._clock())
            )
        return result.rowcount == 1

    def purge_expired(self) -> int:
        """Delete every session idle longer than max_age. Returns rows removed."""
        cutoff = self._clock() - self.max_age
        with self.engine.begin() as conn:
            result = conn.execute(_user_sessions.delete().where(_user_sessions.c.last_activity < cutoff))
        return result.rowcount

    def close(self) -> None:
        self.engine.dispose()

    def _row_to_session(self, row) -> Session:
        principal = Principal(
            user_id=row.user_id,
            username=row.username,
            role=Role.parse(row.role),
            organization_id=row.organization_id,
            current_organization_id=row.current_organization_id,
        )
        return Session(
            session_id=row.session_id,
            principal=principal,
            created_at=row.created_at,
            last_activity=row.last_activity,
            expires_at=row.last_activity + self.max_age,
            mfa_verified_at=row.mfa_verified_at,
            ip_address=row.ip_address,
            user_agent=row.user_agent,
        )


# ---------------------------------------------------------------------------
# In-memory store
# ---------------------------------------------------------------------------


class MemorySessionStore:
    """Process-local sessions. Lost on restart; otherwise identical semantics."""

    mode = "memory"

    def __init__(self, *, max_age: int | None = None, clock: Clock = time.time) -> None:
        self.max_age = max_age if max_age is not None else get_settings().session_max_age_seconds
        self._clock = clock
        self._sessions: dict[str, Session] = {}
        self._lock = threading.Lock()

    def create(self, principal: Principal, *, ip_address: str | None = None, user_agent: str | None = None) -> str:
        session_id = new_session_id()
        now = self._clock()
        with self._lock:
            self._sessions[session_id] = Session(
                session_id=session_id,
                principal=principal,
                created_at=now,
                last_activity=now,
                expires_at=now + self.max_age,
                ip_address=ip_address,
                user_agent=user_agent,
            )
        return session_id

    def get(self, session_id: str) -> Session | None:
        now = self._clock()
        with self._lock:
            session = self._sessions.get(session_id)
            if session is None:
                return None
            if now - session.last_activity > self.max_age:
                del self._sessions[session_id]
                return None
            return dataclasses.replace(session)

    def touch(self, session_id: str) -> bool:
        now = self._clock()
        with self._lock:
            session = self._sessions.get(session_id)
            if session is None or now - session.last_activity > self.max_age:
                return False
            session.last_activity = now
            session.expires_at = now + self.max_age
            return True

    def destroy(self, session_id: str) -> None:
        with self._lock:
            self._sessions.pop(session_id, None)

    def destroy_user_sessions(self, user_id: int, *, except_session_id: str | None = None) -> int:
        with self._lock:
            doomed = [
                sid
                for sid, s in self._sessions.items()
                if s.principal.user_id == user_id and sid != except_session_id
            ]
            for sid in doomed:
                del self._sessions[sid]
        return len(doomed)

    def set_current_organization(self, session_id: str, organization_id: int | None) -> bool:
        with self._lock:
            session = self._sessions.get(session_id)
            if session is None:
                return False
            session.principal = dataclasses.replace(session.principal, current_organization_id=organization_id)
            return True

    def mark_mfa_verified(self, session_id: str) -> bool:
        now = self._clock()
        with self._lock:
            session = self._sessions.get(session_id)
            if session is None:
                return False
            session.mfa_verified_at = now
            return True

    def purge_expired(self) -> int:
        cutoff = self._clock() - self.max_age
        with self._lock:
            doomed = [sid for sid, s in self._sessions.items() if s.last_activity < cutoff]
            for sid in doomed:
                del self._sessions[sid]
        return len(doomed)

    def close(self) -> None:
        with self._lock:
            self._sessions.clear()


# ---------------------------------------------------------------------------
# Failover wrapper
# ---------------------------------------------------------------------------


class FailoverSessionStore:
    """Delegates to a durable store until it fails, then to memory for good.

    primary may be None when the durable store could not be opened at
    startup; the wrapper then starts in fallback mode.
    """

    def __init__(self, primary: SqlSessionStore | None, fallback: MemorySessionStore) -> None:
        self._primary = primary
        self._fallback = fallback
        self._lock = threading.Lock()
        self.max_age = fallback.max_age
        if primary is None:
            logger.critical(
                "SESSION STORE UNAVAILABLE: running on the in-memory fallback. "
                "Sessions will be lost on restart and are not shared between workers."
            )

    @property
    def mode(self) -> str:
        return "durable" if self._primary is not None else "memory-fallback"

    def _call(self, method: str, *args, **kwargs):
        primary = self._primary
        if primary is not None:
            try:
                return getattr(primary, method)(*args, **kwargs)
            except SQLAlchemyError:
                with self._lock:
                    if self._primary is primary:
                        self._primary = None
                        logger.critical(
                            "SESSION STORE FAILURE during %s: switching to the in-memory fallback. "
                            "Existing sessions are no longer readable; users must sign in again.",
                            method,
                            exc_info=True,
                        )
        return getattr(self._fallback, method)(*args, **kwargs)

    def create(self, principal: Principal, *, ip_address: str | None = None, user_agent: str | None = None) -> str:
        return self._call("create", principal, ip_address=ip_address, user_agent=user_agent)

    def get(self, session_id: str) -> Session | None:
        return self._call("get", session_id)

    def touch(self, session_id: str) -> bool:
        return self._call("touch", session_id)

    def destroy(self, session_id: str) -> None:
        self._call("destroy", session_id)

    def destroy_user_sessions(self, user_id: int, *, except_session_id: str | None = None) -> int:
        return self._call("destroy_user_sessions", user_id, except_session_id=except_session_id)

    def set_current_organization(self, session_id: str, organization_id: int | None) -> bool:
        return self._call("set_current_organization", session_id, organization_id)

    def mark_mfa_verified(self, session_id: str) -> bool:
        return self._call("mark_mfa_verified", session_id)

    def purge_expired(self) -> int:
        return self._call("purge_expired")

    def close(self) -> None:
        """Dispose the durable store's engine, if it is still in use."""
        primary = self._primary
        if primary is not None:
            primary.close()
        self._fallback.close()


def open_session_store(settings: Settings | None = None, *, clock: Clock = time.time) -> FailoverSessionStore:
    """Open the durable session store, falling back to memory if it cannot be reached."""
    settings = settings or get_settings()
    max_age = settings.session_max_age_seconds
    fallback = MemorySessionStore(max_age=max_age, clock=clock)
    try:
        primary = SqlSessionStore(settings.effective_session_database_url, max_age=max_age, clock=clock)
    except SQLAlchemyError:
        logger.exception("Could not open the durable session store")
        primary = None
    return FailoverSessionStore(primary, fallback)


# ---------------------------------------------------------------------------
# Cookie helpers
# ---------------------------------------------------------------------------


def _signer(settings: Settings) -> Signer:
    return Signer(settings.session_secret, salt=_COOKIE_SALT)


def sign_session_id(session_id: str, settings: Settings | None = None) -> str:
    return _signer(settings or get_settings()).sign(session_id).decode("utf-8")


def unsign_session_id(value: str, settings: Settings | None = None) -> str | None:
    """Return the session id inside a signed cookie value, or None if tampered."""
    try:
        return _signer(settings or get_settings()).unsign(value).decode("utf-8")
    except BadSignature:
        return None


def set_session_cookie(response: Response, session_id: str, settings: Settings | None = None) -> None:
    """Attach the signed session cookie.

    httponly always; secure and SameSite=strict in production, SameSite=lax
    in development so local HTTP works.
    """
    settings = settings or get_settings()
    response.set_cookie(
        key=settings.session_cookie_name,
        value=sign_session_id(session_id, settings),
        max_age=settings.session_max_age_seconds,
        httponly=True,
        secure=settings.secure_cookies,
        samesite=settings.cookie_samesite,
        path="/",
    )


def clear_session_cookie(response: Response, settings: Settings | None = None) -> None:
    settings = settings or get_settings()
    response.delete_cookie(
        key=settings.session_cookie_name,
        path="/",
        httponly=True,
        secure=settings.secure_cookies,
        samesite=settings.cookie_samesite,
    )
