"""Redis client for order-creation idempotency keys.

Usage:
    from atelier_engine.infrastructure.redis_client import get_redis, close_redis

    redis = get_redis()
    await redis.set("key", "value", ex=3600)
"""

from __future__ import annotations

import redis.asyncio as aioredis

from atelier_engine.config import get_settings
from atelier_engine.logging_config import get_logger

logger = get_logger(__name__)

_redis_client: aioredis.Redis | None = None


async def init_redis() -> aioredis.Redis:
    """Initialize and return the Redis client. Called during app startup."""
    global _redis_client
    settings = get_settings()
    _redis_client = aioredis.from_url(
        settings.redis_url,
        decode_responses=True,
    )
    await _redis_client.ping()
    logger.info("redis.connected", url=settings.redis_url)
    return _redis_client


def get_redis() -> aioredis.Redis:
    """Return the Redis client singleton. Must call init_redis() first."""
    if _redis_client is None:
        raise RuntimeError("Redis not initialized. Call init_redis() first.")
    return _redis_client


def redis_available() -> bool:
    return _redis_client is not None


async def close_redis() -> None:
    """Close the Redis connection. Called during app shutdown."""
    global _redis_client
    if _redis_client is not None:
        await _redis_client.aclose()
        logger.info("redis.disconnected")
        _redis_client = None


# --- Idempotency Helpers ---


async def claim_idempotency_key(
    redis: aioredis.Redis,
    key: str,
    ttl_seconds: int | None = None,
) -> bool:
    """Atomically claim a key. Returns False if it was already claimed.

    SET NX makes the check and the write one step, so two concurrent
    requests with the same key cannot both pass.
    """
    ttl = ttl_seconds or get_settings().redis_idempotency_ttl_seconds
    return bool(await redis.set(f"idempotency:{key}", "1", ex=ttl, nx=True))


async def remember_result(
    redis: aioredis.Redis,
    key: str,
    value: str,
    ttl_seconds: int | None = None,
) -> None:
    """Store the id produced for an idempotency key."""
    ttl = ttl_seconds or get_settings().redis_idempotency_ttl_seconds
    await redis.set(f"idempotency:{key}", value, ex=ttl)


async def release_idempotency_key(redis: aioredis.Redis, key: str) -> None:
    """Forget a claim after the guarded operation failed."""
    await redis.delete(f"idempotency:{key}")
