"""Redis connection helper."""

from __future__ import annotations

import redis.asyncio as redis

from shared.config import Settings


def create_redis(settings: Settings) -> redis.Redis:
    """Create a Redis client for the job queue broker.

    The queue stores job fields as text, so responses are decoded.
    """
    return redis.from_url(
        settings.redis_url,
        encoding="utf-8",
        decode_responses=True,
    )


async def close_redis(client: redis.Redis) -> None:
    """Close a Redis client created by :func:`create_redis`."""
    await client.aclose()
