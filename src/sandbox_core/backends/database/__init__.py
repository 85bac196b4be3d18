"""Database backends for the sandbox registry."""

from typing import Any

from sandbox_core.exceptions import ConfigError
from sandbox_core.protocols.database import Database


def create_database(backend: str = "sqlite", **kwargs: Any) -> Database:
    """Create a Database instance.

    Args:
        backend: Backend name ("sqlite")
        **kwargs: Backend-specific configuration

    Raises:
        ConfigError: If the backend is unknown
    """
    if backend == "sqlite":
        from sandbox_core.backends.database.sqlite import SQLiteDatabase

        return SQLiteDatabase(**kwargs)

    raise ConfigError(f"Unknown database backend: {backend}. Use 'sqlite'.")
