"""Async SQLAlchemy engine and session management.

The API and the arq worker each own one engine. Request handlers get a
session per request; background jobs open their own from the factory.
"""

from collections.abc import AsyncGenerator

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

_engine: AsyncEngine | None = None
_session_factory: async_sessionmaker[AsyncSession] | None = None


async def init_db(url: str, *, pool_size: int = 20, max_overflow: int = 10) -> None:
    """Create the engine and session factory for ``url``.

    SQLite (tests, local runs) gets a generous busy timeout since ledger
    writers on separate sessions contend for the single database lock.
    """
    global _engine, _session_factory  # noqa: PLW0603
    if url.startswith("sqlite"):
        _engine = create_async_engine(url, connect_args={"timeout": 30})
    else:
        _engine = create_async_engine(
            url,
            pool_size=pool_size,
            max_overflow=max_overflow,
            pool_pre_ping=True,
            # pgbouncer in transaction mode cannot keep prepared statements
            connect_args={"statement_cache_size": 0},
        )
    # Entities stay readable after the per-operation commits the stores make
    _session_factory = async_sessionmaker(_engine, class_=AsyncSession, expire_on_commit=False)


async def close_db() -> None:
    global _engine, _session_factory  # noqa: PLW0603
    if _engine is not None:
        await _engine.dispose()
    _engine = None
    _session_factory = None


def get_engine() -> AsyncEngine:
    if _engine is None:
        msg = "Database not initialized. Call init_db() first."
        raise RuntimeError(msg)
    return _engine


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """Session factory for code that outlives a request (jobs, seeding, tests)."""
    if _session_factory is None:
        msg = "Database not initialized. Call init_db() first."
        raise RuntimeError(msg)
    return _session_factory


async def get_session() -> AsyncGenerator[AsyncSession, None]:
    """Per-request session (FastAPI dependency)."""
    async with get_session_factory()() as session:
        yield session
