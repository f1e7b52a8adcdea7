"""Fixed-window request limiting backed by Redis."""

from __future__ import annotations

import redis.asyncio as aioredis
import structlog
from fastapi import HTTPException, Request

logger = structlog.get_logger()


def client_key(request: Request) -> str:
    return f"ip:{request.client.host if request.client else 'unknown'}"


async def enforce_rate_limit(
    redis: aioredis.Redis,
    scope: str,
    key: str,
    limit: int,
    window_seconds: int,
) -> None:
    """Count a hit for ``key`` and raise 429 once ``limit`` is exceeded in the window."""
    cache_key = f"rl:{scope}:{key}"
    count = await redis.incr(cache_key)
    if count == 1:
        await redis.expire(cache_key, window_seconds)
    if count > limit:
        retry_after = await redis.ttl(cache_key)
        logger.warning("rate_limited", scope=scope, key=key, count=count)
        raise HTTPException(
            status_code=429,
            detail="Too many requests from this IP, please try again later.",
            headers={"Retry-After": str(max(retry_after, 0))},
        )
