from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
import logging
import math
from typing import Callable, Protocol

from fastapi import HTTPException, Request, Response, status
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession

from policytracker.core.config import get_settings
from policytracker.domain.models import RateLimitWindow
from policytracker.services.audit import AuditEventType, record_event
from policytracker.services.resilience import get_shared_redis
from policytracker.services.subscription import as_utc


logger = logging.getLogger(__name__)

WINDOW = timedelta(hours=1)

FUNCTION_RAZORPAY_ORDER = "create-razorpay-payment"
FUNCTION_PAYU_ORDER = "create-payu-payment"


class PrincipalLike(Protocol):
    # Minimal principal shape needed for rate limiting.
    user_id: str


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    function_name: str
    limit: int
    count: int
    window_start: datetime
    retry_after_ms: int


def window_start_for(now: datetime) -> datetime:
    # Fixed windows start on the UTC hour.
    return as_utc(now).replace(minute=0, second=0, microsecond=0)


def _retry_after_ms(window_start: datetime, now: datetime) -> int:
    remaining = (window_start + WINDOW) - as_utc(now)
    return max(0, int(remaining.total_seconds() * 1000))


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class FixedWindowLimiter:
    """Count requests per (user, function) in hourly windows.

    The database backend keeps one ``rate_limits`` row per window and bumps it
    with a single upsert whose update branch only fires while the count is
    under the limit, so rejected requests never consume the window. The Redis
    backend uses ``INCR`` with an expiry aligned to the window end.
    """

    def __init__(
        self,
        *,
        backend: str | None = None,
        time_provider: Callable[[], datetime] | None = None,
    ) -> None:
        self._backend = (backend or get_settings().rl_backend).lower()
        self._time_provider = time_provider or _utc_now

    @property
    def backend(self) -> str:
        return self._backend

    async def check(
        self,
        *,
        user_id: str,
        function_name: str,
        limit: int,
        db: AsyncSession | None = None,
    ) -> RateLimitDecision:
        now = self._time_provider()
        window_start = window_start_for(now)
        if self._backend == "redis":
            count, allowed = await self._check_redis(user_id, function_name, limit, window_start, now)
        else:
            if db is None:
                raise ValueError("database backend requires a session")
            count, allowed = await self._check_database(db, user_id, function_name, limit, window_start)
        return RateLimitDecision(
            allowed=allowed,
            function_name=function_name,
            limit=limit,
            count=count,
            window_start=window_start,
            retry_after_ms=0 if allowed else _retry_after_ms(window_start, now),
        )

    async def _check_database(
        self,
        db: AsyncSession,
        user_id: str,
        function_name: str,
        limit: int,
        window_start: datetime,
    ) -> tuple[int, bool]:
        dialect = db.get_bind().dialect.name
        if dialect == "postgresql":
            insert = pg_insert
        elif dialect == "sqlite":
            insert = sqlite_insert
        else:
            raise RuntimeError(f"rate limiting unsupported on dialect {dialect}")
        table = RateLimitWindow.__table__
        stmt = insert(table).values(
            user_id=user_id,
            function_name=function_name,
            window_start=window_start,
            request_count=1,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=[table.c.user_id, table.c.function_name, table.c.window_start],
            set_={"request_count": table.c.request_count + 1},
            where=table.c.request_count < limit,
        ).returning(table.c.request_count)
        try:
            result = await db.execute(stmt)
            row = result.first()
            await db.commit()
        except Exception:
            await db.rollback()
            raise
        if row is None:
            # Update branch was suppressed: the window is already full.
            return limit, False
        count = int(row[0])
        return count, count <= limit

    async def _check_redis(
        self,
        user_id: str,
        function_name: str,
        limit: int,
        window_start: datetime,
        now: datetime,
    ) -> tuple[int, bool]:
        prefix = get_settings().rl_redis_prefix
        key = f"{prefix}:{function_name}:{user_id}:{int(window_start.timestamp())}"
        redis = await get_shared_redis()
        count = int(await redis.incr(key))
        if count == 1:
            ttl_s = max(1, math.ceil(((window_start + WINDOW) - now).total_seconds()))
            await redis.expire(key, ttl_s)
        return count, count <= limit


_rate_limiter: FixedWindowLimiter | None = None


def get_rate_limiter() -> FixedWindowLimiter:
    global _rate_limiter
    if _rate_limiter is None:
        _rate_limiter = FixedWindowLimiter()
    return _rate_limiter


def set_rate_limiter(limiter: FixedWindowLimiter | None) -> None:
    # Swap the shared limiter; tests inject a fixed clock this way.
    global _rate_limiter
    _rate_limiter = limiter


def _throttle_exception(*, decision: RateLimitDecision) -> HTTPException:
    # Construct a stable 429 response with retry hints and metadata.
    retry_after_s = int(math.ceil(decision.retry_after_ms / 1000.0))
    headers = {
        "Retry-After": str(retry_after_s),
        "X-RateLimit-Limit": str(decision.limit),
        "X-RateLimit-Remaining": "0",
    }
    return HTTPException(
        status_code=status.HTTP_429_TOO_MANY_REQUESTS,
        detail={
            "code": "RATE_LIMITED",
            "message": "Rate limit exceeded. Please try again later.",
            "function": decision.function_name,
            "limit": decision.limit,
            "retry_after_ms": decision.retry_after_ms,
        },
        headers=headers,
    )


def _unavailable_exception() -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        detail={"code": "SERVICE_UNAVAILABLE", "message": "Rate limiting unavailable"},
    )


async def enforce_rate_limit(
    *,
    request: Request,
    response: Response,
    principal: PrincipalLike,
    db: AsyncSession,
    function_name: str,
    limit: int | None = None,
) -> None:
    # Enforce the hourly window after auth resolution with optional fail-open behavior.
    settings = get_settings()
    if not settings.rate_limit_enabled:
        return
    limit = limit if limit is not None else settings.rl_payment_max_per_hour
    limiter = get_rate_limiter()

    try:
        decision = await limiter.check(
            user_id=principal.user_id,
            function_name=function_name,
            limit=limit,
            db=db,
        )
    except Exception as exc:  # noqa: BLE001 - guard against limit store connectivity failures
        if settings.rl_fail_mode.lower() == "closed":
            logger.error("rate_limit_unavailable function=%s", function_name, exc_info=exc)
            raise _unavailable_exception() from exc
        response.headers["X-RateLimit-Status"] = "degraded"
        logger.warning("rate_limit_degraded function=%s", function_name, exc_info=exc)
        return

    response.headers["X-RateLimit-Limit"] = str(decision.limit)
    response.headers["X-RateLimit-Remaining"] = str(max(0, decision.limit - decision.count))
    if decision.allowed:
        return

    logger.info(
        "rate_limited user_id=%s function=%s count=%s", principal.user_id[:8], function_name, decision.count
    )
    await record_event(
        AuditEventType.RATE_LIMITED,
        user_id=principal.user_id,
        request=request,
        metadata={
            "function": function_name,
            "limit": decision.limit,
            "retry_after_ms": decision.retry_after_ms,
            "path": request.url.path,
        },
        session=db,
    )
    raise _throttle_exception(decision=decision)
