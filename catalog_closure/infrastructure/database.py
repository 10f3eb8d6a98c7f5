"""Database configuration and session management.

Provides async SQLAlchemy engine and session factory.
"""

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any

from sqlalchemy import event
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import declarative_base

from catalog_closure.infrastructure.config import settings

# Base class for models
Base = declarative_base()


def enable_sqlite_savepoints(engine: AsyncEngine) -> None:
    """Let SQLAlchemy own BEGIN on SQLite connections.

    The sqlite3 driver defers BEGIN until the first DML statement, which
    breaks SAVEPOINT handling. Disabling the driver's own transaction
    control and emitting BEGIN from the engine restores it.

    Args:
        engine: Async engine bound to a SQLite database.
    """

    @event.listens_for(engine.sync_engine, "connect")
    def _on_connect(dbapi_connection: Any, connection_record: Any) -> None:
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def _on_begin(conn: Any) -> None:
        conn.exec_driver_sql("BEGIN")


def create_engine(url: str | None = None, **kwargs: Any) -> AsyncEngine:
    """Create an async engine for the given URL.

    Args:
        url: Database URL, defaults to ``settings.database_url``.
        **kwargs: Extra keyword arguments for ``create_async_engine``.

    Returns:
        Configured async engine.
    """
    url = url or settings.database_url
    kwargs.setdefault("echo", settings.debug)
    if not url.startswith("sqlite"):
        kwargs.setdefault("pool_pre_ping", True)

    async_engine = create_async_engine(url, **kwargs)
    if async_engine.dialect.name == "sqlite":
        enable_sqlite_savepoints(async_engine)
    return async_engine


# Create async engine
engine = create_engine()

# Session factory
async_session_factory = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
)


async def create_tables(bind: AsyncEngine | None = None) -> None:
    """Create database tables if they don't exist."""
    async with (bind or engine).begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


@asynccontextmanager
async def session_scope(
    factory: async_sessionmaker[AsyncSession] | None = None,
) -> AsyncIterator[AsyncSession]:
    """Open a session that commits on success and rolls back on error.

    Args:
        factory: Session factory, defaults to ``async_session_factory``.

    Yields:
        AsyncSession for database operations.
    """
    async with (factory or async_session_factory)() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
