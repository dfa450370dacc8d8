"""Background task queue.

Side effects that must not block or fail a request (bonus awards, chain
verification, identity reconciliation) are enqueued here instead of being
fired and forgotten. Two backends share the same job functions and retry
semantics: arq over Redis for deployments, and an in-process asyncio
runner for single-process development and tests.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import Any, Protocol

from arq import Retry, create_pool
from arq.connections import ArqRedis, RedisSettings

from gather.config import Settings

logger = logging.getLogger(__name__)

JobFunction = Callable[..., Awaitable[Any]]


class TaskQueue(Protocol):
    async def enqueue(self, job: str, *args: Any, defer_seconds: float | None = None) -> None: ...

    async def close(self) -> None: ...


class ArqTaskQueue:
    """Enqueues jobs for the arq worker (``gather.tasks.worker.WorkerSettings``)."""

    def __init__(self, pool: ArqRedis) -> None:
        self.pool = pool

    @classmethod
    async def connect(cls, redis_url: str) -> ArqTaskQueue:
        pool = await create_pool(RedisSettings.from_dsn(redis_url))
        return cls(pool)

    async def enqueue(self, job: str, *args: Any, defer_seconds: float | None = None) -> None:
        await self.pool.enqueue_job(job, *args, _defer_by=defer_seconds)

    async def close(self) -> None:
        await self.pool.aclose()


class InlineTaskQueue:
    """Runs jobs in-process with arq's retry contract.

    With ``eager=True`` a job runs to completion (retries included, delays
    skipped) before ``enqueue`` returns.
    """

    def __init__(
        self,
        functions: dict[str, JobFunction] | None = None,
        ctx: dict[str, Any] | None = None,
        max_tries: int = 3,
        eager: bool = False,
    ) -> None:
        self._functions = functions
        self.ctx = ctx or {}
        self.max_tries = max_tries
        self.eager = eager
        self._tasks: set[asyncio.Task[None]] = set()

    @property
    def functions(self) -> dict[str, JobFunction]:
        if self._functions is None:
            from gather.tasks.jobs import JOB_FUNCTIONS

            self._functions = dict(JOB_FUNCTIONS)
        return self._functions

    async def enqueue(self, job: str, *args: Any, defer_seconds: float | None = None) -> None:
        fn = self.functions.get(job)
        if fn is None:
            msg = f"Unknown job: {job}"
            raise KeyError(msg)
        if self.eager:
            await self._run(job, fn, args, defer_seconds=None)
            return
        task = asyncio.create_task(self._run(job, fn, args, defer_seconds=defer_seconds))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _run(self, job: str, fn: JobFunction, args: tuple[Any, ...], defer_seconds: float | None) -> None:
        if defer_seconds:
            await asyncio.sleep(defer_seconds)
        for attempt in range(1, self.max_tries + 1):
            ctx = {**self.ctx, "job_try": attempt}
            try:
                await fn(ctx, *args)
                return
            except Retry as exc:
                if attempt >= self.max_tries:
                    logger.warning("Job %s gave up after %d tries", job, attempt)
                    return
                if not self.eager and exc.defer_score:
                    await asyncio.sleep(exc.defer_score / 1000)
            except Exception:
                logger.exception("Job %s failed", job)
                return

    async def drain(self) -> None:
        """Wait for every scheduled job (tests and shutdown)."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def close(self) -> None:
        await self.drain()


_queue: TaskQueue | None = None


async def init_task_queue(settings: Settings) -> TaskQueue:
    """Create the process-wide queue for the configured backend."""
    global _queue  # noqa: PLW0603
    if settings.task_backend == "arq":
        _queue = await ArqTaskQueue.connect(settings.arq_redis_url)
    else:
        _queue = InlineTaskQueue(max_tries=settings.task_max_tries)
    return _queue


async def close_task_queue() -> None:
    global _queue  # noqa: PLW0603
    if _queue is not None:
        await _queue.close()
        _queue = None


def set_task_queue(queue: TaskQueue | None) -> None:
    global _queue  # noqa: PLW0603
    _queue = queue


def get_task_queue() -> TaskQueue:
    if _queue is None:
        msg = "Task queue not initialized. Call init_task_queue() first."
        raise RuntimeError(msg)
    return _queue
