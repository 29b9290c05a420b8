"""Async access to the Memoria database over libsql.

The synchronous ``libsql`` driver is driven from worker threads with
``asyncio.to_thread()``. Notes, tags, conversations and the local vector
table all live in the same database, chosen in this order:

1. an explicit path (tests pass ``tmp_path / "test.db"``)
2. ``TURSO_DATABASE_URL`` with ``TURSO_AUTH_TOKEN``, a hosted libSQL database
3. ``database_path``, a local SQLite file

Stores open one connection per operation through :func:`connection`.
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

import libsql

from memoria.config import settings

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Callable, Iterable
    from pathlib import Path

logger = logging.getLogger(__name__)

_LOCAL_PRAGMAS = ("PRAGMA journal_mode=WAL", "PRAGMA busy_timeout=5000")


@dataclass(frozen=True)
class _Target:
    database: str
    auth_token: str = ""

    @property
    def remote(self) -> bool:
        return bool(self.auth_token) or "://" in self.database


def _resolve_target(path_override: Path | None) -> _Target:
    if path_override:
        path_override.parent.mkdir(parents=True, exist_ok=True)
        return _Target(str(path_override))
    if settings.turso_database_url:
        return _Target(settings.turso_database_url, settings.turso_auth_token)
    settings.database_path.parent.mkdir(parents=True, exist_ok=True)
    return _Target(str(settings.database_path))


def _open(target: _Target) -> Any:
    if target.remote:
        return libsql.connect(database=target.database, auth_token=target.auth_token)
    conn = libsql.connect(target.database)
    for pragma in _LOCAL_PRAGMAS:
        conn.execute(pragma)
    return conn


async def _in_thread(fn: Callable[..., Any], *args: Any) -> Any:
    return await asyncio.to_thread(fn, *args)


class _AsyncCursor:
    """Result of one statement; rows are fetched off the event loop."""

    def __init__(self, cursor: Any) -> None:
        self._cursor = cursor

    async def fetchone(self) -> tuple | None:
        return await _in_thread(self._cursor.fetchone)

    async def fetchall(self) -> list[tuple]:
        return await _in_thread(self._cursor.fetchall)

    @property
    def rowcount(self) -> int:
        """Rows changed by the statement (UPDATE / DELETE / INSERT)."""
        return self._cursor.rowcount


class _AsyncConnection:
    """One libsql connection used by a single store operation."""

    def __init__(self, conn: Any) -> None:
        self._conn = conn

    async def execute(self, sql: str, params: tuple = ()) -> _AsyncCursor:
        return _AsyncCursor(await _in_thread(self._conn.execute, sql, params))

    async def execute_all(self, statements: Iterable[str]) -> None:
        """Run parameterless statements in order (schema setup)."""
        for sql in statements:
            await _in_thread(self._conn.execute, sql, ())

    async def commit(self) -> None:
        await _in_thread(self._conn.commit)

    async def rollback(self) -> None:
        await _in_thread(self._conn.rollback)

    async def close(self) -> None:
        await _in_thread(self._conn.close)


async def get_connection(local_path_override: Path | None = None) -> _AsyncConnection:
    """Open a connection to the configured database.

    The caller must close it; prefer :func:`connection`.
    """
    target = _resolve_target(local_path_override)
    conn = await _in_thread(_open, target)
    logger.debug("Opened %s database connection", "remote" if target.remote else "local")
    return _AsyncConnection(conn)


@asynccontextmanager
async def connection(local_path_override: Path | None = None) -> AsyncIterator[_AsyncConnection]:
    """Yield a connection; uncommitted work is rolled back if the block raises."""
    db = await get_connection(local_path_override)
    try:
        yield db
    except BaseException:
        await db.rollback()
        raise
    finally:
        await db.close()


def placeholders(count: int) -> str:
    """``?, ?, ...`` for an ``IN (...)`` clause of *count* values."""
    return ", ".join("?" for _ in range(count))
