"""Async engine and session handling for Codified.

One engine per process, built from ``DBConfig``. Requests, CLI commands and
merge tasks each work in a single ``AsyncSession`` transaction.
"""

from __future__ import annotations

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from typing import Any

import structlog
from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker

from codified.config import DBConfig, get_config
from codified.db.models import Base

logger = structlog.get_logger(__name__)

_engine: AsyncEngine | None = None
_session_factory: sessionmaker | None = None


def _is_sqlite(url: str) -> bool:
    return url.lower().startswith("sqlite")


def engine_options(db_config: DBConfig) -> dict[str, Any]:
    """Keyword arguments for ``create_async_engine``.

    SQLite gets no pool sizing; Postgres connections are checked before use.
    """
    options: dict[str, Any] = {"echo": db_config.echo}
    if not _is_sqlite(db_config.url):
        options.update(
            pool_size=db_config.pool_size,
            max_overflow=db_config.pool_max_overflow,
            pool_timeout=db_config.pool_timeout,
            pool_pre_ping=True,
            pool_recycle=3600,
        )
    return options


def _enable_sqlite_foreign_keys(dbapi_connection, connection_record) -> None:
    # Extraction and merge task rows cascade with their document and extraction
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


def get_engine() -> AsyncEngine:
    """Get or create the process-wide engine.

    Raises:
        KeyError: If DATABASE_URL is not configured
    """
    global _engine

    if _engine is None:
        db_config = get_config().db
        _engine = create_async_engine(db_config.url, **engine_options(db_config))
        if _is_sqlite(db_config.url):
            event.listen(_engine.sync_engine, "connect", _enable_sqlite_foreign_keys)

    return _engine


def get_session_factory() -> sessionmaker:
    """Session factory shared by routes, the worker and merge tasks.

    Objects stay loaded after commit so merge task ids and results can be read
    once the transaction is closed.
    """
    global _session_factory

    if _session_factory is None:
        _session_factory = sessionmaker(get_engine(), class_=AsyncSession, expire_on_commit=False)

    return _session_factory


@asynccontextmanager
async def get_session() -> AsyncGenerator[AsyncSession, None]:
    """Transaction scope: commit on a clean exit, roll back on any exception.

    Merge tasks scheduled inside a rolled-back block are discarded with it, so
    callers dispatch ``scheduled_task_ids(session)`` only after the block exits.
    """
    session = get_session_factory()()

    try:
        yield session
        await session.commit()
    except Exception:
        await session.rollback()
        from codified.tasks.outbox import SCHEDULED_KEY

        discarded = session.info.get(SCHEDULED_KEY)
        if discarded:
            logger.info("merge_tasks_discarded", count=len(discarded))
        raise
    finally:
        await session.close()


async def init_db(drop: bool = False) -> None:
    """Create every table, dropping them first when asked."""
    async with get_engine().begin() as conn:
        if drop:
            await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)


async def close_db() -> None:
    """Dispose the engine (API shutdown, worker shutdown, end of a CLI command)."""
    global _engine, _session_factory

    if _engine is not None:
        await _engine.dispose()
        _engine = None
        _session_factory = None
