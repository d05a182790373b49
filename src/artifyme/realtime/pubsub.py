"""Redis pub/sub and small JSON cache helpers.

Learn: Redis pub/sub is fire-and-forget. If no one is listening, the message
is lost. That's fine for real-time UI updates (the frontend can always query
the API to catch up). The durable record of every job and order lives in
PostgreSQL; Redis only holds short-lived copies.

Channels (one per event category):
    transformation:complete   job status changes
    order:update              order status changes
    notification              user-facing notices (credits added, ...)
"""

import json
from typing import Any, Optional

import redis.asyncio as aioredis

from artifyme.config import settings

CHANNEL_TRANSFORMATION = "transformation:complete"
CHANNEL_ORDER = "order:update"
CHANNEL_NOTIFICATION = "notification"
CHANNELS = (CHANNEL_TRANSFORMATION, CHANNEL_ORDER, CHANNEL_NOTIFICATION)

# Global Redis connection pool (initialized in lifespan)
_redis: Optional[aioredis.Redis] = None


async def init_redis() -> aioredis.Redis:
    """Initialize the Redis connection pool."""
    global _redis
    _redis = aioredis.from_url(
        settings.redis_url,
        encoding="utf-8",
        decode_responses=True,
    )
    # Verify connection
    await _redis.ping()
    return _redis


async def close_redis() -> None:
    """Close the Redis connection pool."""
    global _redis
    if _redis:
        await _redis.aclose()
        _redis = None


def get_redis() -> aioredis.Redis:
    """Get the Redis connection (must be initialized first)."""
    if _redis is None:
        raise RuntimeError("Redis not initialized. Call init_redis() first.")
    return _redis


async def publish_event(channel: str, data: dict[str, Any]) -> None:
    """Publish a JSON message on one of the pub/sub channels.

    Learn: Services publish here after their database commit. The realtime
    process subscribes to all channels and routes each message to the
    sockets of data["user_id"].
    """
    r = get_redis()
    await r.publish(channel, json.dumps(data, default=str))


# ─── JSON cache ─────────────────────────────────────────


async def set_cache(key: str, value: dict[str, Any], ttl_seconds: int) -> None:
    r = get_redis()
    await r.set(key, json.dumps(value, default=str), ex=ttl_seconds)


async def get_cache(key: str) -> Optional[dict[str, Any]]:
    r = get_redis()
    raw = await r.get(key)
    if raw is None:
        return None
    return json.loads(raw)


async def delete_cache(key: str) -> None:
    r = get_redis()
    await r.delete(key)
