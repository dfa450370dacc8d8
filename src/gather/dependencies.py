"""Shared FastAPI dependencies."""

from collections.abc import AsyncGenerator

from gather.config import get_settings
from gather.payments.chain import ChainClient
from gather.redis_client import get_redis_or_none
from gather.tasks.queue import TaskQueue, get_task_queue


async def get_redis_dep() -> AsyncGenerator[object | None, None]:
    """Yield the Redis client (or None when not configured) as a FastAPI dependency."""
    yield get_redis_or_none()


def get_queue() -> TaskQueue:
    """Background task queue dependency."""
    return get_task_queue()


def get_chain() -> ChainClient:
    """Read-only chain RPC client for payment verification."""
    return ChainClient.from_settings(get_settings())
