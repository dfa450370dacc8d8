"""Redis client: rate limit counters and pub/sub event fan-out.

Redis is optional at runtime. Without it the rate limiter lets requests
through and ledger events are simply not published.
"""

import json
import logging

import redis.asyncio as redis

logger = logging.getLogger(__name__)

_pool: redis.Redis | None = None


async def init_redis(url: str, *, max_connections: int = 50) -> None:
    global _pool  # noqa: PLW0603
    _pool = redis.from_url(  # type: ignore[no-untyped-call]
        url,
        encoding="utf-8",
        decode_responses=True,
        max_connections=max_connections,
        health_check_interval=30,
    )


async def close_redis() -> None:
    global _pool  # noqa: PLW0603
    if _pool is not None:
        await _pool.aclose()
    _pool = None


def get_redis() -> redis.Redis:
    """Redis client; raises RuntimeError when it was never initialized."""
    if _pool is None:
        msg = "Redis not initialized. Call init_redis() first."
        raise RuntimeError(msg)
    return _pool


def get_redis_or_none() -> redis.Redis | None:
    return _pool


async def publish_event(redis_client: object | None, channel: str, payload: dict) -> None:
    """Publish a JSON event on a pub/sub channel. Failures are logged, never raised."""
    if redis_client is None:
        return
    try:
        await redis_client.publish(channel, json.dumps(payload, default=str))  # type: ignore[attr-defined]
    except Exception:
        logger.warning("Failed to publish %s event", channel, exc_info=True)
