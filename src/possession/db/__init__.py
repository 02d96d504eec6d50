"""Database module.

Database models and migrations:
- SQLAlchemy 2.x ORM models
- Alembic migration configuration
- Connection pooling via psycopg (PostgreSQL) or aiosqlite (development/tests)
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import TYPE_CHECKING, Any

from sqlalchemy import event
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

if TYPE_CHECKING:
    from collections.abc import AsyncGenerator

# Module-level session factory (initialized on first use)
_engine: AsyncEngine | None = None
_async_session_factory: async_sessionmaker[AsyncSession] | None = None

# Seconds a SQLite connection waits on the database write lock
SQLITE_BUSY_TIMEOUT = 30


def to_async_url(url: str) -> str:
    """Rewrite a plain database URL to its async driver form.

    Args:
        url: postgresql://, postgres:// or sqlite:// URL.

    Returns:
        URL using psycopg or aiosqlite.
    """
    if url.startswith("postgresql://"):
        return url.replace("postgresql://", "postgresql+psycopg://", 1)
    if url.startswith("postgres://"):
        return url.replace("postgres://", "postgresql+psycopg://", 1)
    if url.startswith("sqlite://"):
        return url.replace("sqlite://", "sqlite+aiosqlite://", 1)
    return url


def _install_sqlite_locking(engine: AsyncEngine) -> None:
    """Make every SQLite transaction take the write lock up front.

    pysqlite defers BEGIN until the first write, so two transactions that both
    read then write can dead-lock. Emitting BEGIN IMMEDIATE ourselves makes
    concurrent writers queue on the busy timeout instead.
    """

    @event.listens_for(engine.sync_engine, "connect")
    def _on_connect(dbapi_connection: Any, connection_record: Any) -> None:
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def _on_begin(conn: Any) -> None:
        conn.exec_driver_sql("BEGIN IMMEDIATE")


def build_engine(url: str, **kwargs: Any) -> AsyncEngine:
    """Create an async engine for the given URL.

    Pool arguments are ignored for SQLite, which gets the busy timeout and
    the BEGIN IMMEDIATE listeners instead.

    Args:
        url: Database URL (sync or async form).
        **kwargs: Extra create_async_engine arguments.

    Returns:
        Configured AsyncEngine.
    """
    url = to_async_url(url)
    if url.startswith("sqlite"):
        for key in ("pool_size", "max_overflow", "pool_timeout"):
            kwargs.pop(key, None)
        connect_args = kwargs.pop("connect_args", {})
        connect_args.setdefault("timeout", SQLITE_BUSY_TIMEOUT)
        engine = create_async_engine(url, connect_args=connect_args, **kwargs)
        _install_sqlite_locking(engine)
        return engine
    return create_async_engine(url, **kwargs)


def build_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Session factory shared by the API and the tests."""
    return async_sessionmaker(
        bind=engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )


def _init_engine() -> None:
    """Initialize the database engine and session factory."""
    global _engine, _async_session_factory

    if _engine is not None:
        return

    from possession.core.settings import get_settings

    settings = get_settings()
    _engine = build_engine(
        settings.database.url,
        pool_size=settings.database.pool_size,
        max_overflow=settings.database.max_overflow,
        pool_timeout=settings.database.pool_timeout,
        echo=settings.database.echo,
    )
    _async_session_factory = build_session_factory(_engine)


@asynccontextmanager
async def get_async_session() -> AsyncGenerator[AsyncSession, None]:
    """Get an async database session.

    This is a context manager that yields a session and rolls back on error.
    Callers commit explicitly.

    Usage:
        async with get_async_session() as session:
            result = await session.execute(query)
            await session.commit()

    Yields:
        AsyncSession for database operations.
    """
    _init_engine()

    if _async_session_factory is None:
        msg = "Database session factory not initialized"
        raise RuntimeError(msg)

    session = _async_session_factory()
    try:
        yield session
    except BaseException:
        # Cancellation (deadline exceeded) must also discard partial writes
        await session.rollback()
        raise
    finally:
        await session.close()


async def close_engine() -> None:
    """Close the database engine.

    Call this during application shutdown to clean up connections.
    """
    global _engine, _async_session_factory

    if _engine is not None:
        await _engine.dispose()
        _engine = None
        _async_session_factory = None
