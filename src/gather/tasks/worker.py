"""arq worker: ``arq gather.tasks.worker.WorkerSettings``."""

from __future__ import annotations

import logging

from arq import cron
from arq.connections import RedisSettings

from gather.config import get_settings
from gather.database import close_db, get_session_factory, init_db
from gather.middleware.logging import setup_logging
from gather.tasks.jobs import award_points, reconcile_identities, verify_sponsorship

logger = logging.getLogger(__name__)

_settings = get_settings()


async def startup(ctx: dict) -> None:  # type: ignore[type-arg]
    """Initialize logging and the DB connection on worker startup."""
    setup_logging(_settings)
    # One session per concurrent job
    await init_db(_settings.database_url, pool_size=WorkerSettings.max_jobs, max_overflow=0)
    ctx["settings"] = _settings
    ctx["session_factory"] = get_session_factory()
    logger.info("Gather worker started")


async def shutdown(ctx: dict) -> None:  # type: ignore[type-arg]
    """Clean up on worker shutdown."""
    await close_db()
    logger.info("Gather worker shut down")


class WorkerSettings:
    """arq worker settings for background awards, verification and reconciliation."""

    functions = [award_points, verify_sponsorship, reconcile_identities]
    cron_jobs = [
        cron(reconcile_identities, minute=7, run_at_startup=False),
    ]
    on_startup = startup
    on_shutdown = shutdown
    redis_settings = RedisSettings.from_dsn(_settings.arq_redis_url)
    max_jobs = 10
    max_tries = _settings.verification_max_tries
    job_timeout = 60
