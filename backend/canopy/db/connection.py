"""Async SQLite connection wrapper with WAL mode, schema initialization and transactions."""

import asyncio
import logging
import sqlite3
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

import aiosqlite

from canopy.db.schema import SCHEMA_SQL
from canopy.events.bus import ChangeBus

logger = logging.getLogger(__name__)


class Transaction:
    """Handle passed to the body of Database.transaction().

    Statements run on the shared connection inside the open transaction.
    Conversations touched through touch() are notified after commit.
    """

    def __init__(self, connection: aiosqlite.Connection) -> None:
        self._conn = connection
        self.touched: list[str] = []

    def touch(self, conv_id: str) -> None:
        """Record that this transaction mutated conv_id."""
        if conv_id not in self.touched:
            self.touched.append(conv_id)

    async def execute(self, sql: str, params: tuple | None = None) -> aiosqlite.Cursor:
        return await self._conn.execute(sql, params or ())

    async def executemany(self, sql: str, params: list[tuple]) -> aiosqlite.Cursor:
        return await self._conn.executemany(sql, params)

    async def fetchone(self, sql: str, params: tuple | None = None) -> aiosqlite.Row | None:
        cursor = await self._conn.execute(sql, params or ())
        return await cursor.fetchone()

    async def fetchall(self, sql: str, params: tuple | None = None) -> list[aiosqlite.Row]:
        cursor = await self._conn.execute(sql, params or ())
        return list(await cursor.fetchall())


class Database:
    """Thin async wrapper around aiosqlite with WAL mode, auto-schema and atomic transactions."""

    def __init__(self, connection: aiosqlite.Connection, bus: ChangeBus | None = None) -> None:
        self._conn = connection
        self._lock = asyncio.Lock()
        self.bus = bus or ChangeBus()

    @classmethod
    async def connect(cls, path: str = "canopy.db", bus: ChangeBus | None = None) -> "Database":
        """Create a connection with WAL mode, foreign keys, and schema init.

        The connection runs in autocommit mode; multi-statement writes go
        through transaction().
        """
        conn = await aiosqlite.connect(path, isolation_level=None)
        conn.row_factory = aiosqlite.Row
        await conn.execute("PRAGMA journal_mode=WAL")
        await conn.execute("PRAGMA foreign_keys=ON")
        await conn.execute("PRAGMA busy_timeout=5000")
        db = cls(conn, bus)
        await db._ensure_schema()
        return db

    async def _ensure_schema(self) -> None:
        """Create tables if they don't exist. Idempotent."""
        await self._conn.executescript(SCHEMA_SQL)

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[Transaction]:
        """Run the body atomically. All-or-nothing, isolated from other transactions.

        sqlite errors surface as TransactionError; any other exception raised
        by the body propagates unchanged after rollback. Change notifications
        for touched conversations are dispatched only after a successful commit.
        """
        async with self._lock:
            tx = Transaction(self._conn)
            try:
                await self._conn.execute("BEGIN IMMEDIATE")
            except sqlite3.Error as e:
                raise TransactionError(f"Could not begin transaction: {e}") from e
            try:
                yield tx
            except sqlite3.Error as e:
                await self._rollback()
                raise TransactionError(str(e)) from e
            except BaseException:
                await self._rollback()
                raise
            try:
                await self._conn.execute("COMMIT")
            except sqlite3.Error as e:
                await self._rollback()
                raise TransactionError(f"Commit failed: {e}") from e

        for conv_id in tx.touched:
            self.bus.dispatch(conv_id)

    async def _rollback(self) -> None:
        try:
            await self._conn.execute("ROLLBACK")
        except sqlite3.Error:
            logger.warning("Rollback failed; transaction was already closed")

    async def execute(self, sql: str, params: tuple | None = None) -> aiosqlite.Cursor:
        """Execute a single SQL statement (autocommit)."""
        async with self._lock:
            return await self._conn.execute(sql, params or ())

    async def fetchone(self, sql: str, params: tuple | None = None) -> aiosqlite.Row | None:
        """Execute and return a single row."""
        async with self._lock:
            cursor = await self._conn.execute(sql, params or ())
            return await cursor.fetchone()

    async def fetchall(self, sql: str, params: tuple | None = None) -> list[aiosqlite.Row]:
        """Execute and return all rows."""
        async with self._lock:
            cursor = await self._conn.execute(sql, params or ())
            return list(await cursor.fetchall())

    async def close(self) -> None:
        """Close the database connection."""
        await self._conn.close()


class TransactionError(Exception):
    """The underlying atomic write failed. The transaction had no effect."""
