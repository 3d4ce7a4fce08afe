"""
ratelimit/store.py -- Per-key request throttling with swappable counter stores.

Algorithm (fixed window, reset on first request):
    one record per key {window_start, count}
    now in [window_start, window_start + window)  -> count += 1
    otherwise                                     -> window_start = now, count = 1
    allowed   = count <= max_requests
    remaining = max(0, max_requests - count)
A burst straddling a window boundary can briefly see up to 2x max_requests.
That is accepted; there is no sliding log.

Stores:
  MemoryRateLimitStore -- process-local dict. Increments run under a striped
                          per-key lock; sweep() drops records idle longer than
                          rate_limit_idle_seconds and only takes one stripe at
                          a time, so it never stalls the request path.
  LimitsRateLimitStore -- any `limits` storage URI (memory://, redis://, ...).
                          A shared backend gives every worker one counter
                          instead of N process-local ones.

Named policies (auth / api / sensitive) and their thresholds come from
Settings via build_policies(); keys are "{policy}:{client_ip}".

Layer rule: ratelimit/ imports from core/ only.
"""

from __future__ import annotations

import logging
import math
import threading
import time
from dataclasses import dataclass
from typing import Callable, Protocol

from limits.storage import storage_from_string

from core.config import Settings, get_settings

logger = logging.getLogger("clinicconnect.ratelimit")

_STRIPES = 64


@dataclass
class RateLimitRecord:
    key: str
    window_start: float  # epoch milliseconds
    count: int
    last_seen: float  # epoch milliseconds


@dataclass(frozen=True)
class RateLimitResult:
    allowed: bool
    remaining: int
    reset_time: float  # epoch milliseconds
    limit: int

    def retry_after(self, now_ms: float) -> int:
        """Whole seconds until the window resets (at least 1)."""
        return max(1, math.ceil((self.reset_time - now_ms) / 1000))

    def headers(self) -> dict[str, str]:
        return {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(self.remaining),
            "X-RateLimit-Reset": str(math.ceil(self.reset_time / 1000)),
        }


class RateLimitStore(Protocol):
    def hit(self, key: str, window_ms: int, now_ms: float) -> RateLimitRecord:
        """Atomically apply one request to key's window and return the updated record."""
        ...

    def clear(self, key: str | None = None) -> None: ...

    def sweep(self, idle_ms: float, now_ms: float) -> int: ...


# ---------------------------------------------------------------------------
# In-process store
# ---------------------------------------------------------------------------


class MemoryRateLimitStore:
    def __init__(self) -> None:
        self._records: dict[str, RateLimitRecord] = {}
        self._locks = [threading.Lock() for _ in range(_STRIPES)]

    def _lock_for(self, key: str) -> threading.Lock:
        return self._locks[hash(key) % _STRIPES]

    def hit(self, key: str, window_ms: int, now_ms: float) -> RateLimitRecord:
        with self._lock_for(key):
            record = self._records.get(key)
            if record is None or now_ms - record.window_start >= window_ms:
                record = RateLimitRecord(key=key, window_start=now_ms, count=1, last_seen=now_ms)
                self._records[key] = record
            else:
                record.count += 1
                record.last_seen = now_ms
            return RateLimitRecord(record.key, record.window_start, record.count, record.last_seen)

    def clear(self, key: str | None = None) -> None:
        if key is not None:
            with self._lock_for(key):
                self._records.pop(key, None)
            return
        for k in list(self._records):
            with self._lock_for(k):
                self._records.pop(k, None)

    def sweep(self, idle_ms: float, now_ms: float) -> int:
        """Drop records whose last request is older than idle_ms. Returns the count removed."""
        removed = 0
        for key, record in list(self._records.items()):
            if now_ms - record.last_seen <= idle_ms:
                continue
            with self._lock_for(key):
                current = self._records.get(key)
                if current is not None and now_ms - current.last_seen > idle_ms:
                    del self._records[key]
                    removed += 1
        return removed

    def __len__(self) -> int:
        return len(self._records)


# ---------------------------------------------------------------------------
# limits-backed store
# ---------------------------------------------------------------------------


class LimitsRateLimitStore:
    """Adapts a `limits` storage backend to the RateLimitStore contract.

    The backend's counter expires window seconds after the first increment,
    which is the same fixed-window-reset-on-first-request rule. The backend
    keeps its own clock, so now_ms is only used for last_seen. Idle records
    expire inside the backend; sweep() is a no-op.
    """

    def __init__(self, storage_uri: str) -> None:
        self.storage_uri = storage_uri
        self._storage = storage_from_string(storage_uri)
        self._prefix = "clinicconnect:rl:"

    def hit(self, key: str, window_ms: int, now_ms: float) -> RateLimitRecord:
        window_seconds = max(1, math.ceil(window_ms / 1000))
        full_key = self._prefix + key
        count = self._storage.incr(full_key, window_seconds)
        expires_at = self._storage.get_expiry(full_key)
        window_start = (expires_at - window_seconds) * 1000
        return RateLimitRecord(key=key, window_start=window_start, count=count, last_seen=now_ms)

    def clear(self, key: str | None = None) -> None:
        if key is None:
            self._storage.reset()
        else:
            self._storage.clear(self._prefix + key)

    def sweep(self, idle_ms: float, now_ms: float) -> int:
        return 0


# ---------------------------------------------------------------------------
# Limiter
# ---------------------------------------------------------------------------


class RateLimiter:
    """Applies the fixed-window algorithm over a RateLimitStore.

    Usage:
        limiter = RateLimiter(MemoryRateLimitStore())
        result = limiter.check("auth:10.0.0.7", 15 * 60 * 1000, 10)
        if not result.allowed: ...
    """

    def __init__(self, store: RateLimitStore, *, clock: Callable[[], float] = time.time) -> None:
        self.store = store
        self._clock = clock

    def now_ms(self) -> float:
        return self._clock() * 1000

    def check(self, key: str, window_ms: int, max_requests: int) -> RateLimitResult:
        record = self.store.hit(key, window_ms, self.now_ms())
        return RateLimitResult(
            allowed=record.count <= max_requests,
            remaining=max(0, max_requests - record.count),
            reset_time=record.window_start + window_ms,
            limit=max_requests,
        )

    def clear(self, key: str | None = None) -> None:
        self.store.clear(key)

    def sweep(self, idle_seconds: float) -> int:
        removed = self.store.sweep(idle_seconds * 1000, self.now_ms())
        if removed:
            logger.debug("Rate-limit sweep removed %d idle records", removed)
        return removed


# ---------------------------------------------------------------------------
# Named policies
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class RateLimitPolicy:
    name: str
    window_ms: int
    max_requests: int
    message: str

    def key(self, client_ip: str) -> str:
        return f"{self.name}:{client_ip}"


def build_policies(settings: Settings | None = None) -> dict[str, RateLimitPolicy]:
    settings = settings or get_settings()
    return {
        "auth": RateLimitPolicy(
            name="auth",
            window_ms=settings.auth_rate_limit_window_seconds * 1000,
            max_requests=settings.auth_rate_limit_max,
            message="Too many authentication attempts. Please try again in 15 minutes.",
        ),
        "api": RateLimitPolicy(
            name="api",
            window_ms=settings.api_rate_limit_window_seconds * 1000,
            max_requests=settings.api_rate_limit_max,
            message="API rate limit exceeded. Please slow down your requests.",
        ),
        "sensitive": RateLimitPolicy(
            name="sensitive",
            window_ms=settings.sensitive_rate_limit_window_seconds * 1000,
            max_requests=settings.sensitive_rate_limit_max,
            message="Rate limit for sensitive operations exceeded.",
        ),
    }


def build_limiter(settings: Settings | None = None, *, clock: Callable[[], float] = time.time) -> RateLimiter:
    settings = settings or get_settings()
    if settings.rate_limit_storage_uri:
        logger.info("Rate limiting backed by %s", settings.rate_limit_storage_uri.split("://", 1)[0])
        return RateLimiter(LimitsRateLimitStore(settings.rate_limit_storage_uri), clock=clock)
    return RateLimiter(MemoryRateLimitStore(), clock=clock)
