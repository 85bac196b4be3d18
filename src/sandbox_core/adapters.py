"""Per-tenant selection of native or sandboxed capability adapters."""

from dataclasses import dataclass

from sandbox_core.config import AdapterMode, Config
from sandbox_core.exceptions import ConfigError
from sandbox_core.observability import get_logger
from sandbox_core.protocols.execution import ExecutionEngine
from sandbox_core.protocols.files import FileOperations
from sandbox_core.protocols.sessions import SessionDiscovery
from sandbox_core.sandbox.manager import SandboxManager
from sandbox_core.sandbox.models import workspace_path

logger = get_logger(__name__)


@dataclass(frozen=True)
class TenantAdapters:
    """The three capability interfaces bound to one tenant."""

    tenant_id: str
    mode: AdapterMode
    execution: ExecutionEngine
    files: FileOperations
    sessions: SessionDiscovery


class AdapterFactory:
    """Builds and caches ``TenantAdapters`` according to the configured mode.

    Example:
        factory = AdapterFactory(config, manager)
        adapters = factory.for_tenant("user-123")
        result = await adapters.execution.execute(ExecutionRequest("ls"))
    """

    def __init__(self, config: Config, manager: SandboxManager | None = None) -> None:
        """Initialize the factory.

        Args:
            config: Configuration holding the adapter mode settings
            manager: Sandbox manager, required for sandboxed tenants
        """
        self.config = config
        self.manager = manager
        self._adapters: dict[str, TenantAdapters] = {}

    def mode_for(self, tenant_id: str) -> AdapterMode:
        return self.config.adapters.mode_for(tenant_id)

    def for_tenant(self, tenant_id: str, tier: str | None = None) -> TenantAdapters:
        """Adapters for a tenant, created on first use.

        Raises:
            ConfigError: Sandboxed mode is configured but no manager was given
        """
        adapters = self._adapters.get(tenant_id)
        if adapters is None:
            mode = self.mode_for(tenant_id)
            if mode is AdapterMode.SANDBOXED:
                adapters = self._sandboxed(tenant_id, tier)
            else:
                adapters = self._native(tenant_id)
            self._adapters[tenant_id] = adapters
            logger.debug("Adapters created", context={"tenant_id": tenant_id, "mode": mode.value})
        return adapters

    def _native(self, tenant_id: str) -> TenantAdapters:
        from sandbox_core.execution.native import NativeExecutionEngine
        from sandbox_core.files.native import NativeFileOperations
        from sandbox_core.sessions.native import NativeSessionDiscovery

        settings = self.config.sandbox
        workspace = workspace_path(settings.data_root, tenant_id, settings.name_prefix)
        workspace.mkdir(parents=True, exist_ok=True)
        return TenantAdapters(
            tenant_id=tenant_id,
            mode=AdapterMode.NATIVE,
            execution=NativeExecutionEngine(tenant_id, workspace, self.config.timeouts),
            files=NativeFileOperations(workspace, self.config.files, self.config.timeouts),
            sessions=NativeSessionDiscovery(workspace, self.config.sessions, self.config.timeouts),
        )

    def _sandboxed(self, tenant_id: str, tier: str | None) -> TenantAdapters:
        if self.manager is None:
            raise ConfigError(f"Tenant {tenant_id} is sandboxed but no sandbox manager is configured")

        from sandbox_core.execution.sandboxed import SandboxedExecutionEngine
        from sandbox_core.files.sandboxed import SandboxedFileOperations
        from sandbox_core.sessions.sandboxed import SandboxedSessionDiscovery

        return TenantAdapters(
            tenant_id=tenant_id,
            mode=AdapterMode.SANDBOXED,
            execution=SandboxedExecutionEngine(self.manager, tenant_id, self.config, tier),
            files=SandboxedFileOperations(self.manager, tenant_id, self.config, tier),
            sessions=SandboxedSessionDiscovery(self.manager, tenant_id, self.config, tier),
        )

    def forget(self, tenant_id: str) -> None:
        """Drop cached adapters, e.g. after the tenant's mode changed."""
        self._adapters.pop(tenant_id, None)
