"""Runtime wiring: database, engine, manager, background loops and adapters."""

import asyncio
from pathlib import Path
from typing import Any

from sandbox_core.adapters import AdapterFactory, TenantAdapters
from sandbox_core.backends.database import create_database
from sandbox_core.config import AdapterMode, Config
from sandbox_core.exceptions import ContainerEngineError, SandboxError
from sandbox_core.observability import Timer, configure_logging, emit_timer, get_logger
from sandbox_core.protocols.database import Database
from sandbox_core.protocols.engine import ContainerEngine
from sandbox_core.sandbox.manager import SandboxManager
from sandbox_core.sandbox.reaper import IdleReaper
from sandbox_core.sandbox.registry import SandboxRegistry
from sandbox_core.sandbox.stats import StatsPoller

logger = get_logger(__name__)


class SandboxRuntime:
    """Owns every long-lived component of the sandbox service.

    Example usage:
        async with SandboxRuntime.from_config("config.yaml") as runtime:
            adapters = runtime.adapters("user-123")
            result = await adapters.execution.execute(ExecutionRequest("ls -la"))
    """

    def __init__(
        self,
        config: Config,
        engine: ContainerEngine | None = None,
        db: Database | None = None,
    ) -> None:
        """Initialize the runtime.

        Use ``SandboxRuntime.from_config()`` for convenience. ``engine`` and
        ``db`` override the configured backends.
        """
        self.config = config
        self._engine = engine
        self._db = db
        self._manager: SandboxManager | None = None
        self._factory: AdapterFactory | None = None
        self._reaper: IdleReaper | None = None
        self._poller: StatsPoller | None = None
        self._initialized = False
        self._init_lock = asyncio.Lock()

    @classmethod
    def from_config(cls, path: str | Path) -> "SandboxRuntime":
        """Create a runtime from a YAML or JSON configuration file."""
        return cls(Config.from_file(path))

    @classmethod
    def from_dict(cls, config_dict: dict[str, Any]) -> "SandboxRuntime":
        """Create a runtime from a configuration dictionary."""
        return cls(Config.from_dict(config_dict))

    def _needs_engine(self) -> bool:
        adapters = self.config.adapters
        return adapters.default_mode is AdapterMode.SANDBOXED or any(
            mode is AdapterMode.SANDBOXED for mode in adapters.tenants.values()
        )

    async def initialize(self) -> None:
        """Create backends, reconcile records and start background loops.

        Safe to call more than once.
        """
        if self._initialized:
            return

        async with self._init_lock:
            if self._initialized:
                return
            await self._do_initialize()

    async def _do_initialize(self) -> None:
        configure_logging(self.config.logging.level, self.config.logging.format)

        with Timer() as timer:
            if self._db is None:
                db_config = self.config.database
                self._db = create_database(db_config.backend, path=db_config.path)
            registry = SandboxRegistry(self._db)
            await registry.initialize()

            if self._engine is None and self._needs_engine():
                from sandbox_core.backends.docker import DockerEngine

                self._engine = DockerEngine.from_config(self.config.docker)

            if self._engine is not None:
                self._manager = SandboxManager(self._engine, registry, self.config)
                try:
                    await self._manager.reconcile()
                    await self._manager.cleanup_orphans()
                except (ContainerEngineError, SandboxError) as e:
                    logger.warning("Startup reconciliation skipped", error=e)

                if self.config.reaper.enabled:
                    self._reaper = IdleReaper.from_config(self._manager, self.config.reaper)
                    self._reaper.start()
                if self.config.stats.enabled:
                    self._poller = StatsPoller(self._manager, self.config.stats.interval_seconds)
                    self._poller.start()

            self._factory = AdapterFactory(self.config, self._manager)
            self._initialized = True

        logger.info(
            "Sandbox runtime initialized",
            context={"sandboxed": self._manager is not None},
            duration_ms=timer.duration_ms,
        )
        emit_timer("runtime.init", timer.duration_ms)

    @property
    def manager(self) -> SandboxManager:
        """Get the sandbox manager."""
        if self._manager is None:
            raise RuntimeError("Sandbox manager unavailable: runtime not initialized or no engine configured")
        return self._manager

    def adapters(self, tenant_id: str, tier: str | None = None) -> TenantAdapters:
        """Capability adapters for a tenant."""
        if self._factory is None:
            raise RuntimeError("Runtime not initialized. Use async context manager or call initialize().")
        return self._factory.for_tenant(tenant_id, tier)

    async def close(self) -> None:
        """Stop background loops and release backends."""
        if self._reaper is not None:
            await self._reaper.stop()
            self._reaper = None
        if self._poller is not None:
            await self._poller.stop()
            self._poller = None
        close_engine = getattr(self._engine, "close", None)
        if close_engine is not None:
            await close_engine()
        if self._db is not None:
            await self._db.close()
        self._initialized = False

    async def __aenter__(self) -> "SandboxRuntime":
        await self.initialize()
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.close()
