"""Database protocol for the sandbox registry store."""

from contextlib import AbstractAsyncContextManager
from dataclasses import dataclass, field
from typing import Any, Protocol


@dataclass
class Row:
    """Query result row with attribute-style access."""

    _data: dict[str, Any] = field(repr=False)

    def __getattr__(self, name: str) -> Any:
        if name.startswith("_"):
            return object.__getattribute__(self, name)
        try:
            return self._data[name]
        except KeyError:
            raise AttributeError(f"Row has no column '{name}'") from None

    def __getitem__(self, key: str) -> Any:
        return self._data[key]

    def __contains__(self, key: str) -> bool:
        return key in self._data

    def get(self, key: str, default: Any = None) -> Any:
        """Column value or ``default`` when the column is absent or NULL."""
        value = self._data.get(key)
        return default if value is None else value

    def to_dict(self) -> dict[str, Any]:
        """Convert row to dictionary."""
        return dict(self._data)


class Database(Protocol):
    """Protocol for SQL database backends."""

    async def execute(
        self,
        query: str,
        params: dict[str, Any] | None = None,
    ) -> list[Row]:
        """Execute a query with ``:name`` parameters and return rows."""
        ...

    async def execute_many(
        self,
        query: str,
        params_list: list[dict[str, Any]],
    ) -> None:
        """Execute a query once per parameter set."""
        ...

    async def executescript(self, script: str) -> None:
        """Run several semicolon-separated statements (schema setup)."""
        ...

    def transaction(self) -> AbstractAsyncContextManager["Database"]:
        """Start a transaction. Commits on exit, rolls back on exception."""
        ...

    async def close(self) -> None:
        """Release the connection."""
        ...
