"""Redis client for webhook event de-duplication.

Redis is an optimization only: when it is down or not configured every
helper degrades to "not seen before", and correctness falls back on the
idempotent settlement path.

Usage:
    from marketplace_escrow.infrastructure.redis_client import get_redis, close_redis

    redis = get_redis()
    await redis.set("key", "value", ex=3600)
"""

from __future__ import annotations

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from marketplace_escrow.config import get_settings
from marketplace_escrow.logging_config import get_logger

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
    # Verify connectivity
    await _redis_client.ping()
    logger.info("redis.connected", url=settings.redis_url)
    return _redis_client


def get_redis() -> aioredis.Redis:
    """Return the Redis client singleton. Must call init_redis() first."""
    if _redis_client is None:
        raise RuntimeError("Redis not initialized. Call init_redis() first.")
    return _redis_client


async def close_redis() -> None:
    """Close the Redis connection. Called during app shutdown."""
    global _redis_client
    if _redis_client is not None:
        await _redis_client.aclose()
        logger.info("redis.disconnected")
        _redis_client = None


# --- Webhook De-duplication Helpers ---


def _event_key(event_id: str) -> str:
    return f"webhook:event:{event_id}"


async def is_event_processed(event_id: str) -> bool:
    """Return True if this processor event id was already handled."""
    try:
        return bool(await get_redis().exists(_event_key(event_id)))
    except (RuntimeError, RedisError) as exc:
        logger.warning("redis.dedupe_unavailable", event_id=event_id, error=str(exc))
        return False


async def mark_event_processed(event_id: str) -> None:
    """Remember a handled event id for the configured TTL."""
    settings = get_settings()
    try:
        await get_redis().set(
            _event_key(event_id),
            "1",
            ex=settings.redis_webhook_dedupe_ttl_seconds,
        )
    except (RuntimeError, RedisError) as exc:
        logger.warning("redis.dedupe_unavailable", event_id=event_id, error=str(exc))
