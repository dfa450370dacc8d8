"""FastAPI application factory."""

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI

from gather.agents.router import admin_router as agents_admin_router
from gather.agents.router import router as agents_router
from gather.agents.seed import seed_skills, seed_slots
from gather.auth.router import router as auth_router
from gather.config import get_settings
from gather.database import close_db, get_session, init_db
from gather.health.router import router as health_router
from gather.middleware import setup_middleware
from gather.payments.router import router as payments_router
from gather.points.router import admin_router as points_admin_router
from gather.points.router import router as points_router
from gather.redis_client import close_redis, init_redis
from gather.tasks.queue import close_task_queue, init_task_queue

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(_app: FastAPI) -> AsyncGenerator[None, None]:
    """Startup and shutdown lifecycle."""
    settings = get_settings()
    await init_db(settings.database_url, pool_size=settings.db_pool_size, max_overflow=settings.db_max_overflow)
    await init_redis(settings.redis_url, max_connections=settings.redis_max_connections)
    await init_task_queue(settings)

    # Agent slots and skill catalog (idempotent)
    try:
        async for db in get_session():
            await seed_slots(db, settings.agent_slot_count, settings.agent_reserved_slots)
            await seed_skills(db)
            break
    except Exception:
        logger.warning("Agent seeding failed (tables may not exist yet)", exc_info=True)

    yield

    await close_task_queue()
    await close_db()
    await close_redis()


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    settings = get_settings()

    app = FastAPI(
        title="Gather API",
        description="Identity, points and payments core for the Gather conference app",
        version=settings.app_version,
        docs_url="/docs" if settings.debug else None,
        redoc_url="/redoc" if settings.debug else None,
        lifespan=lifespan,
    )

    setup_middleware(app, settings)
    app.include_router(health_router, tags=["Health"])
    app.include_router(auth_router)
    app.include_router(points_router)
    app.include_router(points_admin_router)
    app.include_router(payments_router)
    app.include_router(agents_router)
    app.include_router(agents_admin_router)

    return app


app = create_app()
