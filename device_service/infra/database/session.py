"""Database engine and session factory management.

The engine and session factory are built from PostgresSettings during
application startup and kept on ``app.state``; the token ledger receives
the session factory explicitly and opens one session per operation.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING, Any

from sqlalchemy import event, text
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    from device_service.core.settings.postgres import PostgresSettings

logger = logging.getLogger(__name__)


def create_engine_from_settings(db_settings: PostgresSettings) -> AsyncEngine:
    """Create the async engine for the token store.

    Args:
        db_settings: Database settings; the SQLite fallback is used when
            PostgreSQL is disabled.
    """
    engine = create_async_engine(db_settings.url, **db_settings.sqlalchemy_engine_kwargs())

    if db_settings.is_sqlite:
        _enable_sqlite_foreign_keys(engine)

    logger.info(
        "Database engine created",
        extra={"dialect": engine.dialect.name, "pool_class": type(engine.pool).__name__},
    )
    return engine


def _enable_sqlite_foreign_keys(engine: AsyncEngine) -> None:
    """Turn on FK enforcement so refresh tokens cascade with their user."""

    @event.listens_for(engine.sync_engine, "connect")
    def _set_sqlite_pragma(dbapi_conn: Any, connection_record: Any) -> None:
        _ = connection_record
        cursor = dbapi_conn.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Create the session factory handed to repositories and the ledger."""
    return async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


async def init_database(engine: AsyncEngine, *, create_tables: bool = True) -> None:
    """Verify connectivity and optionally create the token store tables.

    Raises:
        sqlalchemy.exc.SQLAlchemyError: If the database cannot be reached.
    """
    from device_service.core.database import Base
    from device_service.features.auth import models  # noqa: F401  registers tables

    async with engine.begin() as conn:
        await conn.execute(text("SELECT 1"))
        if create_tables:
            await conn.run_sync(Base.metadata.create_all)
            logger.info("Token store tables ensured", extra={"tables": sorted(Base.metadata.tables)})


async def close_database(engine: AsyncEngine) -> None:
    """Dispose of the engine's connection pool."""
    await engine.dispose()
    logger.info("Database connections closed")


@asynccontextmanager
async def session_scope(
    session_factory: async_sessionmaker[AsyncSession],
) -> AsyncIterator[AsyncSession]:
    """Open a session that commits on success and rolls back on error.

    Example:
        async with session_scope(factory) as session:
            session.add(record)
    """
    async with session_factory() as session:
        try:
            yield session
            await session.commit()
        except BaseException:
            await session.rollback()
            raise
