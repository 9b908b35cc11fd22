"""
The single SQLite connection behind the moderation store.

Every mutation of a moderation collection rewrites that collection's row, so
the connection stays open for the whole life of the process. Writers are
queued behind one semaphore: SQLite allows a single writer and waiting in
asyncio is cheaper than waiting in the busy handler. A write block either
commits entirely or is rolled back, so a crash mid-rewrite leaves the old
document in place.

Typical use::

    await db_connection.open(Path("data/aegis.db"))

    async with db_connection.transaction() as conn:
        await conn.executemany("INSERT OR REPLACE ...", rows)

    async with db_connection.read() as conn:
        cursor = await conn.execute("SELECT ...")

    await db_connection.close()
"""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncIterator

import aiosqlite

from aegis.util.logger import get_logger

logger = get_logger("database_connection")

STARTUP_PRAGMAS = (
    "PRAGMA journal_mode = WAL",
    "PRAGMA synchronous = FULL",
    "PRAGMA busy_timeout = 5000",
    "PRAGMA temp_store = MEMORY",
)


class ConnectionManager:
    """Owns the aiosqlite connection and serialises writers."""

    def __init__(self) -> None:
        self._conn: aiosqlite.Connection | None = None
        self._writer = asyncio.Semaphore(1)
        self._path: Path | None = None

    @property
    def path(self) -> Path | None:
        """File the connection was opened on, or None before :meth:`open`."""
        return self._path

    @property
    def is_open(self) -> bool:
        return self._conn is not None

    async def open(self, path: Path) -> None:
        """Connect to ``path`` (creating parent directories) and apply the startup pragmas.

        A second call while already open is logged and ignored.
        """
        if self.is_open:
            logger.warning("[DB CONNECTION] Already open on %s; ignoring open(%s)", self._path, path)
            return

        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)

        conn = await aiosqlite.connect(path)
        conn.row_factory = aiosqlite.Row
        try:
            for pragma in STARTUP_PRAGMAS:
                await conn.execute(pragma)
            await conn.commit()
        except Exception:
            await conn.close()
            raise

        self._conn = conn
        self._path = path
        logger.info("[DB CONNECTION] Moderation store opened at %s", path)

    async def close(self) -> None:
        """Checkpoint the WAL into the main file and drop the connection."""
        conn, self._conn = self._conn, None
        if conn is None:
            return

        try:
            await conn.execute("PRAGMA wal_checkpoint(TRUNCATE)")
        except aiosqlite.Error:
            logger.exception("[DB CONNECTION] Checkpoint before close failed")
        finally:
            await conn.close()
        logger.info("[DB CONNECTION] Moderation store at %s closed", self._path)

    @property
    def connection(self) -> aiosqlite.Connection:
        """The open connection.

        Raises:
            RuntimeError: If :meth:`open` has not been awaited.
        """
        if self._conn is None:
            raise RuntimeError("moderation store is not open; await db_connection.open(path) first")
        return self._conn

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[aiosqlite.Connection]:
        """Exclusive write block: commit when the body finishes, roll back when it raises."""
        conn = self.connection
        async with self._writer:
            try:
                yield conn
                await conn.commit()
            except BaseException:
                await conn.rollback()
                raise

    @asynccontextmanager
    async def read(self) -> AsyncIterator[aiosqlite.Connection]:
        # WAL readers do not block the writer
        yield self.connection


db_connection = ConnectionManager()
