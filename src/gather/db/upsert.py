"""Dialect-aware INSERT ... ON CONFLICT helpers."""

from __future__ import annotations

from typing import Any

from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import AsyncSession


def dialect_insert(db: AsyncSession, table: Any) -> Any:
    """``insert()`` construct with ON CONFLICT support for the session's dialect."""
    dialect = db.get_bind().dialect.name
    if dialect == "sqlite":
        return sqlite.insert(table)
    return postgresql.insert(table)


async def insert_ignore(db: AsyncSession, table: Any, values: dict[str, Any], index_elements: list[str]) -> bool:
    """Insert a row unless it conflicts on ``index_elements``. Returns True if inserted."""
    stmt = dialect_insert(db, table).values(**values).on_conflict_do_nothing(index_elements=index_elements)
    result = await db.execute(stmt)
    return bool(result.rowcount)


async def upsert(
    db: AsyncSession,
    table: Any,
    values: dict[str, Any],
    index_elements: list[str],
    set_: dict[str, Any],
) -> None:
    """Insert a row or apply ``set_`` to the conflicting one."""
    stmt = dialect_insert(db, table).values(**values)
    stmt = stmt.on_conflict_do_update(index_elements=index_elements, set_=set_)
    await db.execute(stmt)
