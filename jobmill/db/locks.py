"""
Cluster-wide named lock.

Serializes the claim phase of every poller sharing one database:
- PostgreSQL: session-level advisory lock (pg_try_advisory_lock), retried until the timeout
- MySQL / MariaDB: GET_LOCK(<database>_<name>, timeout)
- SQLite: an exclusive flock on "<database file>.<name>.lock", shared by every
  process using the file; in-memory databases use an asyncio lock per engine
"""

import asyncio
import fcntl
import time
import weakref
import zlib
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from typing import IO

from sqlalchemy import text
from sqlalchemy.engine import Engine
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine

# Polling step while waiting for a PostgreSQL advisory lock or a lock file
_RETRY_STEP = 0.05

_local_locks: "weakref.WeakKeyDictionary[Engine, dict[str, asyncio.Lock]]" = (
    weakref.WeakKeyDictionary()
)


def advisory_key(name: str) -> int:
    """Stable bigint key for pg advisory locks."""
    return zlib.crc32(name.encode("utf-8"))


def sqlite_lock_path(engine: AsyncEngine, name: str) -> str | None:
    """Lock file guarding name on a file-backed SQLite database, None for in-memory ones."""
    database = engine.url.database
    if not database or database == ":memory:" or database.startswith("file::memory:"):
        return None
    return f"{database}.{name}.lock"


class GlobalLock:
    """
    Named mutex visible to every client of the database.

    Usage:
        async with GlobalLock(engine, "jobmill").hold(timeout=0.5) as acquired:
            if acquired:
                ...
    """

    def __init__(self, engine: AsyncEngine, name: str):
        self._engine = engine
        self.name = name
        self._conn: AsyncConnection | None = None
        self._local: asyncio.Lock | None = None
        self._lockfile: IO[str] | None = None

    @property
    def dialect(self) -> str:
        return self._engine.dialect.name

    async def acquire(self, timeout: float) -> bool:
        """
        Try to take the lock within timeout seconds.

        Returns:
            True if the lock is now held by this instance.
        """
        if self.dialect == "sqlite":
            path = sqlite_lock_path(self._engine, self.name)
            if path is None:
                return await self._acquire_local(timeout)
            return await self._acquire_file(path, timeout)

        conn = await self._engine.connect()
        try:
            if self.dialect == "postgresql":
                acquired = await self._acquire_postgres(conn, timeout)
            elif self.dialect in ("mysql", "mariadb"):
                acquired = await self._acquire_mysql(conn, timeout)
            else:
                raise NotImplementedError(f"No global lock for dialect {self.dialect!r}")
        except BaseException:
            await conn.close()
            raise

        if not acquired:
            await conn.close()
            return False

        self._conn = conn
        return True

    async def release(self) -> None:
        """Release the lock. Only valid after a successful acquire."""
        if self._local is not None:
            self._local.release()
            self._local = None
            return
        if self._lockfile is not None:
            lockfile, self._lockfile = self._lockfile, None
            fcntl.flock(lockfile, fcntl.LOCK_UN)
            lockfile.close()
            return

        conn, self._conn = self._conn, None
        if conn is None:
            return
        try:
            if self.dialect == "postgresql":
                await conn.execute(
                    text("SELECT pg_advisory_unlock(:key)"), {"key": advisory_key(self.name)}
                )
            else:
                await conn.execute(
                    text("SELECT RELEASE_LOCK(CONCAT(DATABASE(), '_', :name))"),
                    {"name": self.name},
                )
            await conn.commit()
        finally:
            await conn.close()

    @asynccontextmanager
    async def hold(self, timeout: float) -> AsyncGenerator[bool]:
        """
        Hold the lock for the duration of the block.

        Yields:
            bool: Whether the lock was obtained. The block runs either way.
        """
        acquired = await self.acquire(timeout)
        try:
            yield acquired
        finally:
            if acquired:
                await self.release()

    async def _acquire_local(self, timeout: float) -> bool:
        locks = _local_locks.setdefault(self._engine.sync_engine, {})
        lock = locks.setdefault(self.name, asyncio.Lock())
        try:
            await asyncio.wait_for(lock.acquire(), timeout)
        except TimeoutError:
            return False
        self._local = lock
        return True

    async def _acquire_file(self, path: str, timeout: float) -> bool:
        deadline = time.monotonic() + timeout
        lockfile = open(path, "a")
        try:
            while True:
                try:
                    fcntl.flock(lockfile, fcntl.LOCK_EX | fcntl.LOCK_NB)
                except BlockingIOError:
                    remaining = deadline - time.monotonic()
                    if remaining <= 0:
                        lockfile.close()
                        return False
                    await asyncio.sleep(min(_RETRY_STEP, remaining))
                else:
                    self._lockfile = lockfile
                    return True
        except BaseException:
            lockfile.close()
            raise

    async def _acquire_postgres(self, conn: AsyncConnection, timeout: float) -> bool:
        deadline = time.monotonic() + timeout
        key = advisory_key(self.name)
        while True:
            result = await conn.execute(text("SELECT pg_try_advisory_lock(:key)"), {"key": key})
            if result.scalar():
                await conn.commit()
                return True
            await conn.rollback()
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return False
            await asyncio.sleep(min(_RETRY_STEP, remaining))

    async def _acquire_mysql(self, conn: AsyncConnection, timeout: float) -> bool:
        result = await conn.execute(
            text("SELECT GET_LOCK(CONCAT(DATABASE(), '_', :name), :timeout)"),
            {"name": self.name, "timeout": timeout},
        )
        acquired = result.scalar() == 1
        await conn.commit()
        return acquired
