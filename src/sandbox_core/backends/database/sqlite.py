"""SQLite database backend."""

import asyncio
import re
import sqlite3
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any

from sandbox_core.protocols.database import Row

_PARAM_PATTERN = re.compile(r"(?<!:):(\w+)")


def _bind(query: str, params: dict[str, Any]) -> tuple[str, list[str]]:
    """Rewrite ``:name`` placeholders to ``?`` and return the name order."""
    names: list[str] = []

    def replace(match: re.Match[str]) -> str:
        names.append(match.group(1))
        return "?"

    return _PARAM_PATTERN.sub(replace, query), names


class SQLiteDatabase:
    """SQLite database backend.

    A single connection guarded by an asyncio lock; statements are short, so
    they run inline on the event loop.
    """

    def __init__(self, path: str | None = None, **kwargs: Any) -> None:
        """Initialize SQLite database.

        Args:
            path: Database file. Defaults to ./data/sandboxes.db.
                  Use ":memory:" for an in-memory database.
            **kwargs: Ignored (for compatibility with other backends)
        """
        self.path: str | Path
        if path == ":memory:":
            self.path = ":memory:"
        else:
            self.path = Path(path) if path else Path("./data/sandboxes.db")
            self.path.parent.mkdir(parents=True, exist_ok=True)

        self._conn: sqlite3.Connection | None = None
        self._lock = asyncio.Lock()
        self._in_transaction = False

    def _get_connection(self) -> sqlite3.Connection:
        if self._conn is None:
            self._conn = sqlite3.connect(str(self.path), check_same_thread=False)
            self._conn.row_factory = sqlite3.Row
            self._conn.execute("PRAGMA foreign_keys = ON")
        return self._conn

    def _commit(self, conn: sqlite3.Connection) -> None:
        # Inside transaction() the commit happens once on exit
        if not self._in_transaction:
            conn.commit()

    async def execute(
        self,
        query: str,
        params: dict[str, Any] | None = None,
    ) -> list[Row]:
        """Execute a query and return results."""
        async with self._lock:
            conn = self._get_connection()
            values: tuple[Any, ...] = ()
            if params:
                query, names = _bind(query, params)
                values = tuple(params[name] for name in names)

            cursor = conn.execute(query, values)
            rows = cursor.fetchall()
            self._commit(conn)
            return [Row(_data=dict(row)) for row in rows]

    async def execute_many(
        self,
        query: str,
        params_list: list[dict[str, Any]],
    ) -> None:
        """Execute a query multiple times with different parameters."""
        if not params_list:
            return
        async with self._lock:
            conn = self._get_connection()
            query, names = _bind(query, params_list[0])
            conn.executemany(query, [tuple(p[name] for name in names) for p in params_list])
            self._commit(conn)

    async def executescript(self, script: str) -> None:
        """Run a multi-statement script such as a schema definition."""
        async with self._lock:
            conn = self._get_connection()
            conn.executescript(script)

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator["SQLiteDatabase"]:
        """Start a transaction.

        Nested calls join the outer transaction.
        """
        if self._in_transaction:
            yield self
            return

        conn = self._get_connection()
        self._in_transaction = True
        try:
            yield self
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            self._in_transaction = False

    async def close(self) -> None:
        """Close the database connection."""
        if self._conn is not None:
            self._conn.close()
            self._conn = None
