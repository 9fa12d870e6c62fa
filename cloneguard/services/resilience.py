"""Retry and coordination helpers for work that leaves the process.

Warehouse statements are retried only when the failure says nothing reached the warehouse
or the session dropped: timeouts, connection resets, the connector's operational and
interface errors, and SQLSTATE class 08 (connection exception). Everything else surfaces
on the first attempt. Callers decide which statements are safe to replay; copies are not.
"""

from __future__ import annotations

import asyncio
import logging
import random
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

from redis.asyncio import Redis

from cloneguard.core.config import get_settings


logger = logging.getLogger(__name__)

# snowflake.connector.errors classes raised for network and session failures.
_TRANSIENT_CONNECTOR_ERRORS = frozenset({"OperationalError", "InterfaceError"})
_CONNECTION_SQLSTATE_CLASS = "08"

_lock_redis: tuple[asyncio.AbstractEventLoop, Redis] | None = None


def is_transient_platform_error(exc: BaseException) -> bool:
    if isinstance(exc, (TimeoutError, ConnectionError)):
        return True
    if exc.__class__.__name__ in _TRANSIENT_CONNECTOR_ERRORS:
        return True
    sqlstate = getattr(exc, "sqlstate", None)
    return isinstance(sqlstate, str) and sqlstate.startswith(_CONNECTION_SQLSTATE_CLASS)


@dataclass(frozen=True)
class PlatformRetryPolicy:
    max_attempts: int
    backoff_ms: int
    call_timeout_ms: int

    @classmethod
    def from_settings(cls) -> "PlatformRetryPolicy":
        settings = get_settings()
        return cls(
            max_attempts=settings.ext_retry_max_attempts,
            backoff_ms=settings.ext_retry_backoff_ms,
            call_timeout_ms=settings.platform_call_timeout_ms,
        )


async def call_platform(
    operation: str,
    func: Callable[[], Awaitable[Any]],
    *,
    policy: PlatformRetryPolicy | None = None,
) -> Any:
    policy = policy or PlatformRetryPolicy.from_settings()
    attempts = max(policy.max_attempts, 1)
    attempt = 1
    while True:
        try:
            return await asyncio.wait_for(func(), timeout=policy.call_timeout_ms / 1000.0)
        except Exception as exc:
            if attempt >= attempts or not is_transient_platform_error(exc):
                raise
            logger.warning(
                "platform_call_retry operation=%s attempt=%s of=%s error=%s",
                operation,
                attempt,
                attempts,
                exc.__class__.__name__,
            )
            # Exponential backoff, jittered so replicas do not retry in lockstep.
            delay_s = (policy.backoff_ms / 1000.0) * (2 ** (attempt - 1)) * random.uniform(0.5, 1.5)
            await asyncio.sleep(delay_s)
            attempt += 1


def get_lock_redis() -> Redis | None:
    """Client for the reaper's cross-replica lock, or None when REDIS_URL is unset.

    redis.asyncio clients are bound to the loop that created them, so a new running loop
    gets a new client.
    """
    global _lock_redis
    url = get_settings().redis_url
    if not url:
        return None
    loop = asyncio.get_running_loop()
    if _lock_redis is None or _lock_redis[0] is not loop:
        _lock_redis = (loop, Redis.from_url(url, encoding="utf-8", decode_responses=True))
    return _lock_redis[1]
