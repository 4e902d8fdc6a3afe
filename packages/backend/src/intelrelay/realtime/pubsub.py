"""Redis pub/sub — live delivery feed.

Learn: Redis pub/sub is fire-and-forget. If no one is listening, the message
is lost. That's fine for a live activity feed (the UI can always re-read
delivery_interactions to catch up). Delivery outcomes are stored in
PostgreSQL first; the Redis publish is only a notification.

Channel: intelrelay:deliveries
"""

import json
from typing import Any, Optional

import redis.asyncio as aioredis

from intelrelay.config import settings

DELIVERY_CHANNEL = "intelrelay:deliveries"

# Global Redis connection pool (initialized by the process entry point)
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


def redis_available() -> bool:
    return _redis is not None


def get_redis() -> aioredis.Redis:
    """Get the Redis connection (must be initialized first)."""
    if _redis is None:
        raise RuntimeError("Redis not initialized. Call init_redis() first.")
    return _redis


async def publish_event(event_type: str, data: dict[str, Any]) -> None:
    """Publish a delivery event to the live feed channel."""
    r = get_redis()
    payload = json.dumps({
        "type": event_type,
        **data,
    })
    await r.publish(DELIVERY_CHANNEL, payload)
