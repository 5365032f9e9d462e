"""
Redis connection factory.

Clients are created at startup and handed to the job queue and the
rate-limit middleware; nothing here is process-global.
"""

import logging

import redis.asyncio as aioredis

from apkguard.config import Settings

_log = logging.getLogger("apkguard.redis")


def create_redis(settings: Settings) -> aioredis.Redis:
    """Build a client from REDIS_HOST / REDIS_PORT. Connects lazily."""
    return aioredis.Redis(
        host=settings.redis_host,
        port=settings.redis_port,
        db=settings.redis_db,
        decode_responses=True,
        socket_connect_timeout=5,
        socket_timeout=5,
        retry_on_timeout=True,
    )


async def close_redis(client) -> None:
    """Gracefully close the Redis connection pool."""
    if client is None:
        return
    try:
        await client.aclose()
        _log.info("[redis] Connection closed")
    except (aioredis.RedisError, OSError) as exc:
        _log.warning(f"[redis] Close failed: {exc}")


async def is_redis_healthy(client) -> bool:
    """Quick health probe; returns False rather than raising."""
    if client is None:
        return False
    try:
        return bool(await client.ping())
    except (aioredis.RedisError, OSError):
        return False
