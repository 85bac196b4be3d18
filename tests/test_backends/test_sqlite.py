"""Tests for SQLite database backend."""

import pytest

from sandbox_core.backends.database import create_database
from sandbox_core.backends.database.sqlite import SQLiteDatabase
from sandbox_core.exceptions import ConfigError


@pytest.fixture
async def db():
    """Create an in-memory SQLite database with a test table."""
    database = SQLiteDatabase(path=":memory:")
    await database.executescript("""
        CREATE TABLE containers (
            id TEXT PRIMARY KEY,
            name TEXT NOT NULL UNIQUE,
            status TEXT
        );
    """)
    yield database
    await database.close()


class TestSQLiteDatabase:
    """Tests for SQLiteDatabase."""

    @pytest.mark.asyncio
    async def test_execute_insert_and_select(self, db):
        """Test inserting and selecting data."""
        await db.execute(
            "INSERT INTO containers (id, name, status) VALUES (:id, :name, :status)",
            {"id": "c1", "name": "sandbox-alice", "status": "running"},
        )

        rows = await db.execute("SELECT * FROM containers WHERE id = :id", {"id": "c1"})
        assert len(rows) == 1
        assert rows[0].name == "sandbox-alice"
        assert rows[0]["status"] == "running"

    @pytest.mark.asyncio
    async def test_row_access(self, db):
        """Test Row attribute, item and dict access."""
        await db.execute(
            "INSERT INTO containers (id, name, status) VALUES (:id, :name, :status)",
            {"id": "c1", "name": "sandbox-bob", "status": None},
        )

        row = (await db.execute("SELECT * FROM containers"))[0]

        assert row.id == "c1"
        assert "name" in row
        assert row.get("status", "unknown") == "unknown"
        assert row.to_dict() == {"id": "c1", "name": "sandbox-bob", "status": None}

    @pytest.mark.asyncio
    async def test_row_missing_attribute(self, db):
        """Test accessing a missing attribute raises AttributeError."""
        await db.execute(
            "INSERT INTO containers (id, name) VALUES (:id, :name)",
            {"id": "c1", "name": "sandbox-carol"},
        )

        row = (await db.execute("SELECT * FROM containers"))[0]
        with pytest.raises(AttributeError, match="nonexistent"):
            _ = row.nonexistent

    @pytest.mark.asyncio
    async def test_repeated_parameter(self, db):
        """A parameter used twice is bound twice."""
        await db.execute(
            "INSERT INTO containers (id, name, status) VALUES (:id, :id, :status)",
            {"id": "same", "status": "created"},
        )

        rows = await db.execute("SELECT name FROM containers WHERE id = :id", {"id": "same"})
        assert rows[0].name == "same"

    @pytest.mark.asyncio
    async def test_execute_many(self, db):
        """Test inserting multiple rows."""
        await db.execute_many(
            "INSERT INTO containers (id, name, status) VALUES (:id, :name, :status)",
            [
                {"id": "1", "name": "a", "status": "running"},
                {"id": "2", "name": "b", "status": "exited"},
                {"id": "3", "name": "c", "status": "running"},
            ],
        )

        rows = await db.execute("SELECT * FROM containers ORDER BY id")
        assert len(rows) == 3

    @pytest.mark.asyncio
    async def test_execute_many_empty(self, db):
        await db.execute_many("INSERT INTO containers (id, name) VALUES (:id, :name)", [])
        assert await db.execute("SELECT * FROM containers") == []

    @pytest.mark.asyncio
    async def test_transaction_commit(self, db):
        """Test transaction commits on success."""
        async with db.transaction():
            await db.execute(
                "INSERT INTO containers (id, name) VALUES (:id, :name)",
                {"id": "1", "name": "a"},
            )
            await db.execute(
                "INSERT INTO containers (id, name) VALUES (:id, :name)",
                {"id": "2", "name": "b"},
            )

        rows = await db.execute("SELECT * FROM containers")
        assert len(rows) == 2

    @pytest.mark.asyncio
    async def test_transaction_rollback(self, db):
        """Test transaction rolls back on exception."""
        with pytest.raises(ValueError):
            async with db.transaction():
                await db.execute(
                    "INSERT INTO containers (id, name) VALUES (:id, :name)",
                    {"id": "1", "name": "a"},
                )
                raise ValueError("Simulated error")

        rows = await db.execute("SELECT * FROM containers")
        assert len(rows) == 0

    @pytest.mark.asyncio
    async def test_nested_transaction_joins_outer(self, db):
        with pytest.raises(ValueError):
            async with db.transaction():
                async with db.transaction():
                    await db.execute(
                        "INSERT INTO containers (id, name) VALUES (:id, :name)",
                        {"id": "1", "name": "a"},
                    )
                raise ValueError("outer fails")

        assert await db.execute("SELECT * FROM containers") == []

    @pytest.mark.asyncio
    async def test_empty_result(self, db):
        """Test query with no results."""
        rows = await db.execute("SELECT * FROM containers WHERE id = :id", {"id": "999"})
        assert rows == []

    @pytest.mark.asyncio
    async def test_file_database_persists(self, tmp_path):
        path = tmp_path / "nested" / "registry.db"
        first = SQLiteDatabase(path=str(path))
        await first.executescript("CREATE TABLE t (v TEXT);")
        await first.execute("INSERT INTO t (v) VALUES (:v)", {"v": "kept"})
        await first.close()

        second = SQLiteDatabase(path=str(path))
        rows = await second.execute("SELECT v FROM t")
        await second.close()
        assert rows[0].v == "kept"


class TestCreateDatabase:
    """Tests for the backend factory."""

    def test_sqlite(self):
        assert isinstance(create_database("sqlite", path=":memory:"), SQLiteDatabase)

    def test_unknown_backend(self):
        with pytest.raises(ConfigError, match="postgres"):
            create_database("postgres")
