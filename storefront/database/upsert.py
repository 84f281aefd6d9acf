"""
Dialect-aware INSERT ... ON CONFLICT and row locking helpers.

PostgreSQL and SQLite both support ``ON CONFLICT`` with ``RETURNING``, but
SQLAlchemy exposes them through dialect-specific ``insert`` constructs. The
helpers here pick the right one for the session's bind so repositories can
express idempotent writes as single statements.

SQLite has no row locks and ignores ``SELECT ... FOR UPDATE``; ``lock_rows``
takes its database write lock instead so that lock holders still serialize.
"""

from typing import Any

from sqlalchemy import update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import AsyncSession

_INSERTS = {
    "postgresql": postgresql.insert,
    "sqlite": sqlite.insert,
}


def dialect_name(session: AsyncSession) -> str:
    """Name of the dialect the session is bound to."""
    return session.get_bind().dialect.name


def dialect_insert(session: AsyncSession, model: Any):
    """
    Build an insert construct supporting ``on_conflict_*`` for the session.

    Args:
        session: Session whose bind decides the dialect
        model: ORM class or table to insert into

    Returns:
        Dialect-specific Insert

    Raises:
        NotImplementedError: For dialects without ON CONFLICT support
    """
    name = dialect_name(session)
    try:
        return _INSERTS[name](model)
    except KeyError:
        raise NotImplementedError(
            f"ON CONFLICT inserts are not supported for dialect {name!r}"
        ) from None


async def lock_rows(session: AsyncSession, model: Any, *criteria: Any) -> None:
    """
    Make a following ``with_for_update()`` select effective on SQLite.

    On SQLite this touches the matching rows, which opens the write
    transaction; concurrent callers wait on the busy timeout until it ends.
    Other dialects rely on ``FOR UPDATE`` and nothing is executed.

    Args:
        session: Session whose transaction takes the lock
        model: ORM class with an ``updated_at`` column
        *criteria: WHERE criteria selecting the rows to lock
    """
    if dialect_name(session) != "sqlite":
        return
    await session.execute(
        update(model)
        .where(*criteria)
        .values(updated_at=model.updated_at)
        .execution_options(synchronize_session=False)
    )
