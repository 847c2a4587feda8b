"""Database engine and session management.

PostgreSQL (asyncpg) in production. SQLite (aiosqlite) URLs are accepted
for local runs and tests; foreign keys are switched on per connection so
grant cascades behave the same on both.
"""

import logging
from collections.abc import AsyncGenerator

from sqlalchemy import event, text
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import AsyncAdaptedQueuePool, StaticPool
from sqlmodel import SQLModel

from crafthub.app.config import get_settings
from crafthub.core.logging_schema import LogEvent

logger = logging.getLogger(__name__)

_engine: AsyncEngine | None = None
_session_factory: async_sessionmaker[AsyncSession] | None = None


def _enable_sqlite_foreign_keys(dbapi_connection, _connection_record) -> None:
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


def _create_engine(url: str, echo: bool) -> AsyncEngine:
    if url.startswith("sqlite"):
        engine = create_async_engine(
            url,
            echo=echo,
            poolclass=StaticPool,
            connect_args={"check_same_thread": False},
        )
        event.listen(engine.sync_engine, "connect", _enable_sqlite_foreign_keys)
        return engine

    settings = get_settings()
    return create_async_engine(
        url,
        echo=echo,
        pool_size=settings.database.pool_size,
        max_overflow=settings.database.max_overflow,
        pool_recycle=3600,
        pool_pre_ping=True,
        poolclass=AsyncAdaptedQueuePool,
    )


async def init_db(url: str | None = None, create_tables: bool | None = None) -> AsyncEngine:
    """Initialize the engine and session factory.

    Args:
        url: Database URL. Defaults to DATABASE_URL from settings.
        create_tables: Create tables from SQLModel metadata. Defaults to
            DATABASE_CREATE_TABLES from settings.
    """
    global _engine, _session_factory

    # Register tables with SQLModel.metadata
    from crafthub.core.models import AccessGrant, Instance, User  # noqa: F401

    settings = get_settings()
    url = url or settings.database.url
    if create_tables is None:
        create_tables = settings.database.create_tables

    _engine = _create_engine(url, settings.database.echo)
    _session_factory = async_sessionmaker(
        bind=_engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )

    try:
        async with _engine.begin() as conn:
            await conn.execute(text("SELECT 1"))
            if create_tables:
                await conn.run_sync(SQLModel.metadata.create_all)
        logger.info(
            "Database connected",
            extra={
                "event": LogEvent.DB_CONNECTED,
                "database": url.split("@")[-1],
                "create_tables": create_tables,
            },
        )
    except Exception as e:
        logger.error(
            "Database connection failed",
            extra={
                "event": LogEvent.DB_ERROR,
                "error_type": type(e).__name__,
                "error": str(e),
            },
        )
        raise

    return _engine


async def close_db() -> None:
    global _engine, _session_factory

    if _engine:
        await _engine.dispose()
        _engine = None
        _session_factory = None


def get_engine() -> AsyncEngine:
    if _engine is None:
        raise RuntimeError("Database not initialized")
    return _engine


async def get_session() -> AsyncGenerator[AsyncSession, None]:
    if _session_factory is None:
        raise RuntimeError("Database not initialized")

    async with _session_factory() as session:
        yield session


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """Get session factory for creating new sessions.

    Services that outlive a request (orchestrator, hub) open their own
    short-lived sessions from this factory.
    """
    if _session_factory is None:
        raise RuntimeError("Database not initialized")
    return _session_factory
