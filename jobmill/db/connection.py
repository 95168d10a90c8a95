"""
Database connection management.
Handles async SQLAlchemy engine and session creation.
"""

import logging
from collections.abc import AsyncGenerator, Awaitable, Callable
from contextlib import asynccontextmanager
from typing import Any, TypeVar

from sqlalchemy import event
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from jobmill.config import Settings
from jobmill.db.models import Base

logger = logging.getLogger(__name__)

T = TypeVar("T")


class Database:
    """
    Engine and session factory shared by everything in one process.

    The default transaction callback lives here; Settings.tx_callback may
    replace it for the worker.
    """

    def __init__(self, engine: AsyncEngine):
        """
        Initialize the database handle.

        Args:
            engine: The SQLAlchemy async engine instance.
        """
        self.engine = engine
        self.session_factory = async_sessionmaker(
            bind=engine,
            class_=AsyncSession,
            expire_on_commit=False,
            autoflush=False,
        )

    @property
    def dialect(self) -> str:
        """Name of the SQL dialect, e.g. 'postgresql' or 'sqlite'."""
        return self.engine.dialect.name

    @asynccontextmanager
    async def session(self) -> AsyncGenerator[AsyncSession]:
        """
        Context manager for getting async database sessions.
        Commits on success, rolls back on error.

        Yields:
            AsyncSession: An async database session.
        """
        async with self.session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    async def transaction(self, fn: Callable[[AsyncSession], Awaitable[T]]) -> T:
        """
        Run fn inside a fresh session and transaction.

        Args:
            fn: Coroutine function receiving the session.

        Returns:
            Whatever fn returns.
        """
        async with self.session() as session:
            return await fn(session)

    async def create_all(self) -> None:
        """Create the schema. Deployments use the Alembic migration instead."""
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    async def dispose(self) -> None:
        """Close the connection pool."""
        await self.engine.dispose()
        logger.info("Database connection closed")


def _set_sqlite_pragma(dbapi_conn: Any, _connection_record: Any) -> None:
    cursor = dbapi_conn.cursor()
    cursor.execute("PRAGMA journal_mode=WAL")
    cursor.execute("PRAGMA synchronous=NORMAL")
    cursor.execute("PRAGMA busy_timeout=30000")
    cursor.close()


def create_database(settings: Settings) -> Database:
    """
    Create the async engine described by the settings.

    Args:
        settings: Application settings.

    Returns:
        Database: Handle wrapping engine and session factory.
    """
    url = settings.database_url
    kwargs: dict[str, Any] = {
        "echo": settings.log_level.upper() == "DEBUG",
        "pool_pre_ping": True,
    }
    if url.startswith("sqlite"):
        kwargs["connect_args"] = {"check_same_thread": False, "timeout": 30}
    else:
        kwargs["pool_size"] = settings.database_pool_size
        kwargs["max_overflow"] = settings.database_max_overflow

    engine = create_async_engine(url, **kwargs)
    if engine.dialect.name == "sqlite":
        event.listen(engine.sync_engine, "connect", _set_sqlite_pragma)

    logger.info("Database connection initialized", extra={"dialect": engine.dialect.name})
    return Database(engine)
