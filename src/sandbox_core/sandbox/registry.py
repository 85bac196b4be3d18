"""Sandbox registry: cached sandbox records backed by the database."""

import time
from typing import TYPE_CHECKING, Any

from sandbox_core.observability import get_logger
from sandbox_core.protocols.database import Database
from sandbox_core.sandbox.models import Sandbox, SandboxStatus

if TYPE_CHECKING:
    from sandbox_core.sandbox.stats import SandboxStats

logger = get_logger(__name__)

SCHEMA = """
CREATE TABLE IF NOT EXISTS sandboxes (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    tenant_id TEXT NOT NULL UNIQUE,
    engine_id TEXT UNIQUE,
    name TEXT NOT NULL,
    status TEXT NOT NULL,
    tier TEXT NOT NULL,
    workspace_path TEXT NOT NULL,
    created_at REAL NOT NULL,
    last_activity_at REAL NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_sandboxes_status ON sandboxes(status);
CREATE INDEX IF NOT EXISTS idx_sandboxes_last_activity ON sandboxes(last_activity_at);

CREATE TABLE IF NOT EXISTS sandbox_metrics (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    engine_id TEXT NOT NULL,
    tenant_id TEXT NOT NULL,
    cpu_percent REAL,
    memory_usage INTEGER,
    memory_limit INTEGER,
    memory_percent REAL,
    network_rx INTEGER,
    network_tx INTEGER,
    recorded_at REAL NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_sandbox_metrics_tenant ON sandbox_metrics(tenant_id, recorded_at);
"""


class SandboxRegistry:
    """In-memory cache of sandbox records keyed by tenant id.

    The ``sandboxes`` table is the source of truth; the cache is populated on
    first use and invalidated when a sandbox is removed. Records are never
    stored with status ``destroyed``: destroying a sandbox deletes its row.
    """

    def __init__(self, db: Database) -> None:
        """Initialize the registry.

        Args:
            db: Database holding the ``sandboxes`` table
        """
        self.db = db
        self._cache: dict[str, Sandbox] = {}

    async def initialize(self) -> None:
        """Create tables if they do not exist."""
        await self.db.executescript(SCHEMA)

    def get(self, tenant_id: str) -> Sandbox | None:
        """Cached record for a tenant (no database access)."""
        return self._cache.get(tenant_id)

    def cached(self) -> list[Sandbox]:
        return list(self._cache.values())

    async def load(self, tenant_id: str) -> Sandbox | None:
        """Record for a tenant from the cache, falling back to the database."""
        sandbox = self._cache.get(tenant_id)
        if sandbox is not None:
            return sandbox

        rows = await self.db.execute(
            "SELECT * FROM sandboxes WHERE tenant_id = :tenant_id",
            {"tenant_id": tenant_id},
        )
        if not rows:
            return None
        sandbox = Sandbox.from_row(rows[0])
        self._cache[tenant_id] = sandbox
        return sandbox

    async def save(self, sandbox: Sandbox) -> Sandbox:
        """Insert or replace the tenant's record."""
        await self.db.execute(
            """
            INSERT INTO sandboxes (
                tenant_id, engine_id, name, status, tier, workspace_path,
                created_at, last_activity_at
            ) VALUES (
                :tenant_id, :engine_id, :name, :status, :tier, :workspace_path,
                :created_at, :last_activity_at
            )
            ON CONFLICT(tenant_id) DO UPDATE SET
                engine_id = excluded.engine_id,
                name = excluded.name,
                status = excluded.status,
                tier = excluded.tier,
                workspace_path = excluded.workspace_path,
                created_at = excluded.created_at,
                last_activity_at = excluded.last_activity_at
            """,
            {
                "tenant_id": sandbox.tenant_id,
                "engine_id": sandbox.id or None,
                "name": sandbox.name,
                "status": sandbox.status.value,
                "tier": sandbox.tier,
                "workspace_path": sandbox.workspace_path,
                "created_at": sandbox.created_at,
                "last_activity_at": sandbox.last_activity_at,
            },
        )
        self._cache[sandbox.tenant_id] = sandbox
        return sandbox

    def track(self, sandbox: Sandbox) -> None:
        """Cache a record that is not persisted yet (status ``creating``)."""
        self._cache[sandbox.tenant_id] = sandbox

    async def touch(self, tenant_id: str, at: float | None = None) -> None:
        """Record activity for a tenant."""
        at = time.time() if at is None else at
        sandbox = self._cache.get(tenant_id)
        if sandbox is not None:
            sandbox.last_activity_at = at
            if sandbox.status is SandboxStatus.CREATING:
                return
        await self.db.execute(
            "UPDATE sandboxes SET last_activity_at = :at WHERE tenant_id = :tenant_id",
            {"at": at, "tenant_id": tenant_id},
        )

    async def set_status(self, tenant_id: str, status: SandboxStatus) -> None:
        sandbox = self._cache.get(tenant_id)
        if sandbox is not None:
            sandbox.status = status
        await self.db.execute(
            "UPDATE sandboxes SET status = :status WHERE tenant_id = :tenant_id",
            {"status": status.value, "tenant_id": tenant_id},
        )

    async def remove(self, tenant_id: str) -> bool:
        """Delete the tenant's row and cache entry together.

        Returns:
            True if a row existed
        """
        self._cache.pop(tenant_id, None)
        params = {"tenant_id": tenant_id}
        async with self.db.transaction():
            rows = await self.db.execute(
                "SELECT id FROM sandboxes WHERE tenant_id = :tenant_id", params
            )
            await self.db.execute("DELETE FROM sandboxes WHERE tenant_id = :tenant_id", params)
        return bool(rows)

    def invalidate(self, tenant_id: str) -> None:
        """Drop the cached record; the next ``load`` reads the database."""
        self._cache.pop(tenant_id, None)

    async def list_all(self) -> list[Sandbox]:
        """All persisted records, refreshing the cache from the database."""
        rows = await self.db.execute("SELECT * FROM sandboxes ORDER BY last_activity_at")
        sandboxes = []
        for row in rows:
            sandbox = Sandbox.from_row(row)
            cached = self._cache.get(sandbox.tenant_id)
            if cached is not None and cached.id == sandbox.id:
                # Keep the live object so activity recorded in memory is not lost
                cached.status = sandbox.status
                cached.last_activity_at = max(cached.last_activity_at, sandbox.last_activity_at)
                sandbox = cached
            else:
                self._cache[sandbox.tenant_id] = sandbox
            sandboxes.append(sandbox)
        return sandboxes

    async def record_metrics(self, sandbox: Sandbox, stats: "SandboxStats") -> None:
        """Append a resource-usage sample for a sandbox."""
        await self.db.execute(
            """
            INSERT INTO sandbox_metrics (
                engine_id, tenant_id, cpu_percent, memory_usage, memory_limit,
                memory_percent, network_rx, network_tx, recorded_at
            ) VALUES (
                :engine_id, :tenant_id, :cpu_percent, :memory_usage, :memory_limit,
                :memory_percent, :network_rx, :network_tx, :recorded_at
            )
            """,
            {
                "engine_id": sandbox.id,
                "tenant_id": sandbox.tenant_id,
                "cpu_percent": stats.cpu_percent,
                "memory_usage": stats.memory_usage,
                "memory_limit": stats.memory_limit,
                "memory_percent": stats.memory_percent,
                "network_rx": stats.network_rx,
                "network_tx": stats.network_tx,
                "recorded_at": stats.recorded_at,
            },
        )

    async def recent_metrics(self, tenant_id: str, limit: int = 60) -> list[dict[str, Any]]:
        """Most recent metric samples for a tenant, newest first."""
        rows = await self.db.execute(
            """
            SELECT * FROM sandbox_metrics WHERE tenant_id = :tenant_id
            ORDER BY recorded_at DESC LIMIT :limit
            """,
            {"tenant_id": tenant_id, "limit": limit},
        )
        return [row.to_dict() for row in rows]
