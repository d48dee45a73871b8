from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
import logging
import math
import time
from typing import Callable, Protocol

from redis.asyncio import Redis
from sqlalchemy import case, delete
from sqlalchemy.ext.asyncio import AsyncSession

from apptnotify.core.config import get_settings
from apptnotify.core.errors import RateLimitExceeded, RateLimitUnavailable
from apptnotify.domain.models import RateLimitWindow
from apptnotify.domain.types import utc_now
from apptnotify.persistence.db import SessionLocal
from apptnotify.persistence.upsert import dialect_insert


logger = logging.getLogger(__name__)

ROLE_ANONYMOUS = "anonymous"


@dataclass(frozen=True)
class RateLimitDecision:
    # Capture the outcome and retry hints for one counted request.
    allowed: bool
    limit: int
    count: int
    reset_at: datetime
    checked_at: datetime

    @property
    def remaining(self) -> int:
        return max(0, self.limit - self.count)

    @property
    def retry_after_s(self) -> int:
        return max(1, int(math.ceil((self.reset_at - self.checked_at).total_seconds())))


class RateLimitBackend(Protocol):
    async def hit(self, *, identity_key: str, max_requests: int, window_seconds: int) -> RateLimitDecision:
        ...


class DatabaseRateLimiter:
    """Fixed-window counter stored in ``rate_limit_windows``.

    Each hit is a single upsert: a missing or expired window is (re)started at
    count 1, a live window is incremented. The statement is atomic on both
    PostgreSQL and SQLite, so concurrent hits never lose increments.
    """

    def __init__(
        self,
        *,
        session_factory: Callable[[], AsyncSession] | None = None,
        time_provider: Callable[[], float] | None = None,
    ) -> None:
        # Allow injecting time for deterministic tests.
        self._session_factory = session_factory or SessionLocal
        self._time_provider = time_provider or time.time

    def now(self) -> datetime:
        return datetime.fromtimestamp(self._time_provider(), tz=timezone.utc)

    async def hit(self, *, identity_key: str, max_requests: int, window_seconds: int) -> RateLimitDecision:
        now = self.now()
        window_end = now + timedelta(seconds=max(1, window_seconds))
        async with self._session_factory() as session:
            insert_stmt = dialect_insert(session, RateLimitWindow).values(
                identity_key=identity_key,
                window_start=now,
                window_end=window_end,
                current_count=1,
                max_allowed=max_requests,
            )
            expired = RateLimitWindow.window_end <= now
            stmt = insert_stmt.on_conflict_do_update(
                index_elements=[RateLimitWindow.identity_key],
                set_={
                    "current_count": case((expired, 1), else_=RateLimitWindow.current_count + 1),
                    "window_start": case(
                        (expired, insert_stmt.excluded.window_start),
                        else_=RateLimitWindow.window_start,
                    ),
                    "window_end": case(
                        (expired, insert_stmt.excluded.window_end),
                        else_=RateLimitWindow.window_end,
                    ),
                    "max_allowed": insert_stmt.excluded.max_allowed,
                },
            ).returning(RateLimitWindow.current_count, RateLimitWindow.window_end)
            row = (await session.execute(stmt)).one()
            await session.commit()
        count, reset_at = int(row[0]), row[1]
        if reset_at.tzinfo is None:
            reset_at = reset_at.replace(tzinfo=timezone.utc)
        return RateLimitDecision(
            allowed=count <= max_requests,
            limit=max_requests,
            count=count,
            reset_at=reset_at,
            checked_at=now,
        )


_FIXED_WINDOW_LUA = r"""
local count = redis.call("INCR", KEYS[1])
if count == 1 then
  redis.call("PEXPIRE", KEYS[1], ARGV[1])
end
local ttl = redis.call("PTTL", KEYS[1])
if ttl < 0 then
  redis.call("PEXPIRE", KEYS[1], ARGV[1])
  ttl = tonumber(ARGV[1])
end
return {count, ttl}
"""


_redis_pool: Redis | None = None
_redis_loop: asyncio.AbstractEventLoop | None = None
_redis_lock = asyncio.Lock()


async def _get_redis() -> Redis:
    # Cache Redis connections to avoid reconnecting per request.
    global _redis_pool, _redis_loop
    current_loop = asyncio.get_running_loop()
    if _redis_pool is not None and _redis_loop == current_loop:
        return _redis_pool
    if _redis_pool is not None and _redis_loop != current_loop:
        _redis_pool = None
    async with _redis_lock:
        if _redis_pool is None:
            settings = get_settings()
            _redis_pool = Redis.from_url(settings.redis_url, encoding="utf-8", decode_responses=True)
            _redis_loop = current_loop
    return _redis_pool


class RedisRateLimiter:
    def __init__(
        self,
        *,
        redis: Redis | None = None,
        time_provider: Callable[[], float] | None = None,
    ) -> None:
        self._redis = redis
        self._time_provider = time_provider or time.time

    def now(self) -> datetime:
        return datetime.fromtimestamp(self._time_provider(), tz=timezone.utc)

    async def hit(self, *, identity_key: str, max_requests: int, window_seconds: int) -> RateLimitDecision:
        # INCR + PEXPIRE run inside one Lua script, so the window is atomic per key.
        redis = self._redis or await _get_redis()
        prefix = get_settings().rl_redis_prefix
        window_ms = max(1, window_seconds) * 1000
        result = await redis.eval(_FIXED_WINDOW_LUA, 1, f"{prefix}:{identity_key}", window_ms)
        count = int(result[0])
        ttl_ms = max(0, int(result[1]))
        now = self.now()
        return RateLimitDecision(
            allowed=count <= max_requests,
            limit=max_requests,
            count=count,
            reset_at=now + timedelta(milliseconds=ttl_ms),
            checked_at=now,
        )


_rate_limiter: RateLimitBackend | None = None


def get_rate_limiter() -> RateLimitBackend:
    # Share one limiter per process so backends reuse connections and time providers.
    global _rate_limiter
    if _rate_limiter is None:
        backend = get_settings().rate_limit_backend.lower()
        _rate_limiter = RedisRateLimiter() if backend == "redis" else DatabaseRateLimiter()
    return _rate_limiter


def set_rate_limiter(limiter: RateLimitBackend | None) -> None:
    global _rate_limiter
    _rate_limiter = limiter


def reset_rate_limiter_state() -> None:
    # Reset cached limiter and Redis connections for deterministic test setup.
    global _rate_limiter, _redis_pool, _redis_loop
    _rate_limiter = None
    _redis_pool = None
    _redis_loop = None


def default_limit_for_role(role: str | None) -> int:
    settings = get_settings()
    limits = {
        "customer": settings.rl_customer_max_requests,
        "staff": settings.rl_staff_max_requests,
        "admin": settings.rl_admin_max_requests,
    }
    return limits.get(role or ROLE_ANONYMOUS, settings.rl_anonymous_max_requests)


def rate_limit_identity(*, user_id: str | None, client_ip: str | None, path: str) -> str:
    # Authenticated callers are limited per user, everyone else per client address.
    if user_id:
        return f"user:{user_id}:{path}"
    return f"ip:{client_ip or 'unknown'}:{path}"


async def enforce_rate_limit(
    *,
    identity_key: str,
    role: str | None,
    max_requests: int | None = None,
    window_seconds: int | None = None,
) -> RateLimitDecision | None:
    """Count one request against the caller's window.

    Returns the decision for header rendering, ``None`` when limiting is
    disabled or the store is unavailable under fail-open. Raises
    ``RateLimitExceeded`` past the limit and ``RateLimitUnavailable`` when
    the store is down under fail-closed.
    """

    settings = get_settings()
    if not settings.rate_limit_enabled:
        return None
    resolved_max = max_requests if max_requests is not None else default_limit_for_role(role)
    resolved_window = window_seconds if window_seconds is not None else settings.rl_window_seconds
    limiter = get_rate_limiter()
    try:
        decision = await limiter.hit(
            identity_key=identity_key,
            max_requests=resolved_max,
            window_seconds=resolved_window,
        )
    except Exception as exc:  # noqa: BLE001 - guard against rate-limit store outages
        if settings.rl_fail_mode.lower() == "closed":
            raise RateLimitUnavailable("Rate limiting unavailable") from exc
        logger.warning("rate_limit_degraded identity=%s fail_mode=open", identity_key, exc_info=exc)
        return None
    if not decision.allowed:
        raise RateLimitExceeded(
            "Rate limit exceeded",
            retry_after_s=decision.retry_after_s,
            reset_at=int(decision.reset_at.timestamp()),
        )
    return decision


async def prune_rate_limit_windows(*, session: AsyncSession, older_than: timedelta = timedelta(days=1)) -> int:
    result = await session.execute(
        delete(RateLimitWindow).where(RateLimitWindow.window_end < utc_now() - older_than)
    )
    await session.commit()
    deleted = result.rowcount or 0
    logger.info("rate_limit_windows_pruned count=%s", deleted)
    return deleted
