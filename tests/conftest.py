"""
tests/conftest.py -- Shared test fixtures for ClinicConnect auth tests.

This module provides:
  - FakeClock: a settable clock injected into sessions, MFA and the limiter
  - _make_test_stores(): isolated in-memory DBs for users, audit and MFA
  - _patch_lifespan(): wires test stores into app.state, bypassing real startup
  - api_env: module-scoped TestClient plus seeded users for API tests

Design: Named shared-memory SQLite URIs (not plain :memory:) are required
because TestClient runs route handlers in a thread pool. Plain :memory: DBs
are per-connection and would present a blank schema to each worker thread.
The named URI format (file:name?mode=memory&cache=shared&uri=true) shares
one in-memory instance across all connections in the same process.

The DEBUG env var must be set before any auth module import so get_settings()
auto-generates SECRET_KEY and SESSION_SECRET in dev mode rather than raising
ValueError.
"""

from __future__ import annotations

import asyncio
import dataclasses
import os
from collections.abc import Generator
from contextlib import asynccontextmanager, contextmanager
from dataclasses import dataclass, field

# CRITICAL: Set DEBUG before any auth/core import so get_settings() can
# auto-generate secrets in dev mode instead of raising ValueError.
os.environ.setdefault("DEBUG", "true")

import pyotp
import pytest
from fastapi.testclient import TestClient

from api.main import _stop_tasks, app
from auth.audit import AuditLogger
from auth.mfa import MFAService, MFAStore
from auth.models import User
from auth.roles import Role
from auth.sessions import MemorySessionStore
from auth.store import UserStore
from auth.tokens import hash_password
from ratelimit.store import MemoryRateLimitStore, RateLimiter, RateLimitPolicy, build_policies

# ---------------------------------------------------------------------------
# Clock
# ---------------------------------------------------------------------------


class FakeClock:
    """Callable clock returning a settable POSIX time."""

    def __init__(self, start: float = 1_700_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


# ---------------------------------------------------------------------------
# Store helpers
# ---------------------------------------------------------------------------


def _memory_url(name: str) -> str:
    return f"sqlite:///file:test_{name}?mode=memory&cache=shared&uri=true"


def _make_test_stores(db_suffix: str, *, mfa_clock=None) -> tuple[UserStore, AuditLogger, MFAService]:
    """Create isolated named shared-memory SQLite stores for test isolation.

    The audit logger and MFA store share the user store's engine, as they do
    in the real lifespan.

    Args:
        db_suffix: Unique string appended to the DB name so test modules
                   don't share state (e.g. the module name).
        mfa_clock: Optional clock for TOTP step calculation and lockouts.
    """
    user_store = UserStore(db_url=_memory_url(f"auth_{db_suffix}"))
    audit = AuditLogger(engine=user_store.engine)
    kwargs = {"clock": mfa_clock} if mfa_clock is not None else {}
    mfa_service = MFAService(MFAStore(engine=user_store.engine), audit=audit, **kwargs)
    return user_store, audit, mfa_service


def _generous_policies() -> dict[str, RateLimitPolicy]:
    """Default policies with limits high enough that functional tests never trip them."""
    return {
        name: dataclasses.replace(policy, max_requests=10_000)
        for name, policy in build_policies().items()
    }


def _patch_lifespan(
    user_store: UserStore,
    audit: AuditLogger,
    mfa_service: MFAService,
    session_store,
    *,
    policies: dict[str, RateLimitPolicy] | None = None,
    limiter: RateLimiter | None = None,
):
    """Return an async context manager that replaces the real lifespan.

    Wires pre-created test stores into app.state so TestClient routes see
    isolated test DBs rather than the configured databases.

    The background tasks are long-sleeping coroutines that keep asyncio happy
    (a real asyncio.Task is required; MagicMock would fail on .cancel()).
    """

    @asynccontextmanager
    async def test_lifespan(app):
        app.state.user_store = user_store
        app.state.audit = audit
        app.state.mfa_service = mfa_service
        app.state.session_store = session_store
        app.state.rate_limiter = limiter or RateLimiter(MemoryRateLimitStore())
        app.state.rate_limit_policies = policies or _generous_policies()
        app.state.sweep_task = asyncio.create_task(asyncio.sleep(99999))
        app.state.purge_task = asyncio.create_task(asyncio.sleep(99999))
        yield
        await _stop_tasks(app.state.sweep_task, app.state.purge_task)

    return test_lifespan


# ---------------------------------------------------------------------------
# API environment
# ---------------------------------------------------------------------------

# (username, password, role, home organization)
SEED_USERS = [
    ("ade", "admin123", Role.SUPER_ADMIN, None),
    ("orgadmin", "orgpass123", Role.ADMIN, 1),
    ("nurse1", "nursepass1", Role.NURSE, 1),
    ("doctor2", "doctorpass2", Role.DOCTOR, 2),
]


@dataclass
class ApiEnv:
    client: TestClient
    user_store: UserStore
    audit: AuditLogger
    mfa_service: MFAService
    session_store: MemorySessionStore
    mfa_clock: FakeClock
    ids: dict[str, int] = field(default_factory=dict)

    def create_user(self, username: str, password: str, role: Role, organization_id: int | None = None) -> int:
        uid = self.user_store.create_user(
            User(
                username=username,
                role=role,
                organization_id=organization_id,
                hashed_password=hash_password(password),
            )
        )
        self.ids[username] = uid
        return uid

    def login(self, username: str, password: str) -> dict:
        """Log in with a clean cookie jar. Returns the JSON body; the jar holds the new session."""
        self.client.cookies.clear()
        resp = self.client.post("/api/v1/auth/login", json={"username": username, "password": password})
        assert resp.status_code == 200, f"Login as {username} failed: {resp.status_code} {resp.text}"
        return resp.json()

    def bearer(self, username: str, password: str) -> dict[str, str]:
        """Log in and return an Authorization header; the cookie jar is left empty."""
        token = self.login(username, password)["access_token"]
        self.client.cookies.clear()
        return {"Authorization": f"Bearer {token}"}

    def enroll_mfa(self, username: str, password: str) -> tuple[pyotp.TOTP, list[str]]:
        """Enroll username through the API. Leaves the cookie jar logged in as them."""
        self.login(username, password)
        setup = self.client.post("/api/v1/mfa/setup")
        assert setup.status_code == 200, setup.text
        data = setup.json()
        totp = pyotp.TOTP(data["secret"])
        verify = self.client.post("/api/v1/mfa/verify-setup", json={"code": self.totp_code(totp)})
        assert verify.status_code == 200, verify.text
        return totp, data["backup_codes"]

    def totp_code(self, totp: pyotp.TOTP) -> str:
        """Code for the MFA clock's current step; advances the clock so the next call gets a fresh step."""
        code = totp.at(self.mfa_clock())
        self.mfa_clock.advance(30)
        return code


@contextmanager
def _api_env(db_suffix: str, *, policies: dict[str, RateLimitPolicy] | None = None):
    mfa_clock = FakeClock()
    user_store, audit, mfa_service = _make_test_stores(db_suffix, mfa_clock=mfa_clock)
    session_store = MemorySessionStore()

    app.router.lifespan_context = _patch_lifespan(user_store, audit, mfa_service, session_store, policies=policies)

    with TestClient(app, raise_server_exceptions=True) as client:
        env = ApiEnv(
            client=client,
            user_store=user_store,
            audit=audit,
            mfa_service=mfa_service,
            session_store=session_store,
            mfa_clock=mfa_clock,
        )
        for username, password, role, org in SEED_USERS:
            env.create_user(username, password, role, org)
        yield env

    user_store.close()


@pytest.fixture(scope="module")
def api_env(request) -> Generator[ApiEnv, None, None]:
    """Yield an ApiEnv with the seed users created, one per test module.

    The TestClient uses the real FastAPI app with a patched lifespan so
    tests hit real route handlers, middleware and exception handlers but
    use isolated in-memory stores. The MFA service runs on a FakeClock so
    TOTP codes are deterministic and never collide with a used step.
    """
    with _api_env(request.module.__name__.rsplit(".", 1)[-1]) as env:
        yield env


@pytest.fixture(scope="module")
def throttled_env(request) -> Generator[ApiEnv, None, None]:
    """Like api_env but with tiny rate limits: auth 3, api 12, sensitive 2 per window."""
    tight = {
        "auth": dataclasses.replace(build_policies()["auth"], max_requests=3),
        "api": dataclasses.replace(build_policies()["api"], max_requests=12),
        "sensitive": dataclasses.replace(build_policies()["sensitive"], max_requests=2),
    }
    with _api_env(request.module.__name__.rsplit(".", 1)[-1] + "_throttled", policies=tight) as env:
        yield env


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()
