from __future__ import annotations

import asyncio
from dataclasses import dataclass
import logging
import random
from typing import Any, Awaitable, Callable

import httpx
from redis.asyncio import Redis

from policytracker.core.config import get_settings


logger = logging.getLogger(__name__)


TransientException = (TimeoutError, OSError, httpx.TransportError)


_redis_pool: Redis | None = None
_redis_loop: asyncio.AbstractEventLoop | None = None
_redis_lock = asyncio.Lock()


async def get_shared_redis() -> Redis:
    # Cache one Redis client per event loop; tests swap loops between cases.
    global _redis_pool, _redis_loop
    current_loop = asyncio.get_running_loop()
    if _redis_pool is not None and _redis_loop == current_loop:
        return _redis_pool
    if _redis_pool is not None and _redis_loop != current_loop:
        _redis_pool = None
    async with _redis_lock:
        if _redis_pool is None:
            _redis_pool = Redis.from_url(
                get_settings().redis_url,
                encoding="utf-8",
                decode_responses=True,
            )
            _redis_loop = current_loop
    return _redis_pool


def _default_retryable(exc: Exception) -> bool:
    # Retry only transient network/timeout failures and upstream 5xx responses.
    if isinstance(exc, TransientException):
        return True
    if isinstance(exc, httpx.HTTPStatusError):
        return exc.response.status_code >= 500
    status = getattr(exc, "status_code", None)
    if isinstance(status, int) and status >= 500:
        return True
    return False


@dataclass(frozen=True)
class RetryPolicy:
    timeout_ms: int
    max_attempts: int
    backoff_ms: int


def default_retry_policy() -> RetryPolicy:
    settings = get_settings()
    return RetryPolicy(
        timeout_ms=settings.ext_call_timeout_ms,
        max_attempts=settings.ext_retry_max_attempts,
        backoff_ms=settings.ext_retry_backoff_ms,
    )


async def retry_async(
    func: Callable[[], Awaitable[Any]],
    *,
    policy: RetryPolicy | None = None,
    retryable: Callable[[Exception], bool] | None = None,
) -> Any:
    # Retry helper with jittered exponential backoff for transient failures only.
    policy = policy or default_retry_policy()
    retryable = retryable or _default_retryable
    attempt = 1
    while True:
        try:
            return await asyncio.wait_for(func(), timeout=policy.timeout_ms / 1000.0)
        except Exception as exc:  # noqa: BLE001 - caller handles non-transient failures
            if attempt >= max(policy.max_attempts, 1) or not retryable(exc):
                raise
            logger.info("external_call_retry attempt=%s error=%s", attempt, type(exc).__name__)
            jitter = random.uniform(0.5, 1.5)
            sleep_s = (policy.backoff_ms / 1000.0) * (2 ** (attempt - 1)) * jitter
            await asyncio.sleep(sleep_s)
            attempt += 1
