"""Dialect-aware INSERT ... ON CONFLICT helpers.

PostgreSQL in production, SQLite in tests; both dialects expose the
same ``on_conflict_do_nothing`` / ``on_conflict_do_update`` API.
"""

from __future__ import annotations

from collections.abc import Sequence
from typing import Any

from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import AsyncSession

from dojoxp.exceptions import ConflictError


def _insert_for(db: AsyncSession, model: type) -> Any:
    dialect = db.get_bind().dialect.name
    if dialect == "postgresql":
        return postgresql.insert(model.__table__)  # type: ignore[attr-defined]
    if dialect == "sqlite":
        return sqlite.insert(model.__table__)  # type: ignore[attr-defined]
    raise NotImplementedError(f"No ON CONFLICT support for dialect {dialect!r}")


async def insert_ignore(
    db: AsyncSession,
    model: type,
    rows: Sequence[dict[str, Any]],
    conflict_columns: Sequence[str],
    *,
    strict: bool = False,
) -> int:
    """Insert rows, skipping any that collide on ``conflict_columns``.

    Returns the number of rows actually inserted. With ``strict=True``
    a collision raises ConflictError instead of being skipped silently.
    """
    if not rows:
        return 0

    inserted = 0
    for row in rows:
        stmt = _insert_for(db, model).values(**row).on_conflict_do_nothing(
            index_elements=list(conflict_columns),
        )
        result = await db.execute(stmt)
        inserted += max(result.rowcount or 0, 0)

    if strict and inserted < len(rows):
        raise ConflictError(
            f"{len(rows) - inserted} of {len(rows)} {model.__tablename__} rows already exist"  # type: ignore[attr-defined]
        )
    return inserted


async def upsert(
    db: AsyncSession,
    model: type,
    values: dict[str, Any],
    conflict_columns: Sequence[str],
    update_columns: Sequence[str],
) -> None:
    """Insert a row or overwrite ``update_columns`` on the existing one."""
    stmt = _insert_for(db, model).values(**values)
    stmt = stmt.on_conflict_do_update(
        index_elements=list(conflict_columns),
        set_={col: stmt.excluded[col] for col in update_columns},
    )
    await db.execute(stmt)
