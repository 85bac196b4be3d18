"""Sandbox manager: per-tenant container lifecycle.

The manager is the only component that talks to the container engine. All
lifecycle operations for one tenant (create/start, stop, destroy, reap) are
serialized through a per-tenant lock, and concurrent ``get_or_create`` calls
collapse into a single in-flight operation, so N parallel callers trigger
exactly one create and all observe the same sandbox id. ``exec`` does not take
the lock; commands for a running sandbox run concurrently.
"""

import asyncio
import shutil
import time
from dataclasses import dataclass, field
from pathlib import Path

from sandbox_core.caching import KeyedLock, SingleFlight, TTLCache
from sandbox_core.config import Config
from sandbox_core.exceptions import (
    ContainerEngineError,
    ContainerNotFoundError,
    ExecFailedError,
    SandboxCreateError,
    SandboxError,
    SandboxNotFoundError,
    SandboxNotReadyError,
    SandboxNotRunningError,
)
from sandbox_core.observability import (
    TenantContext,
    Timer,
    emit_counter,
    emit_timer,
    get_logger,
)
from sandbox_core.protocols.engine import ContainerEngine, ContainerInfo, ContainerSpec
from sandbox_core.sandbox.models import Sandbox, SandboxStatus, sandbox_name, workspace_path
from sandbox_core.sandbox.registry import SandboxRegistry
from sandbox_core.sandbox.stats import SandboxStats, compute_stats
from sandbox_core.sandbox.streams import ExecStream
from sandbox_core.sandbox.tiers import resolve_tier

logger = get_logger(__name__)

READY_POLL_INTERVAL = 0.25
DESTROY_STOP_TIMEOUT = 5


@dataclass
class ReconcileReport:
    """Outcome of reconciling persisted records with the engine."""

    running: list[str] = field(default_factory=list)
    stopped: list[str] = field(default_factory=list)
    removed: list[str] = field(default_factory=list)


class SandboxManager:
    """Creates, caches, monitors and reclaims per-tenant sandboxes."""

    def __init__(
        self,
        engine: ContainerEngine,
        registry: SandboxRegistry,
        config: Config | None = None,
    ) -> None:
        """Initialize the manager.

        Args:
            engine: Container engine client
            registry: Sandbox record registry
            config: Configuration (defaults apply when omitted)
        """
        self.engine = engine
        self.registry = registry
        self.config = config or Config()
        self.settings = self.config.sandbox
        self.locks = KeyedLock()
        self._single_flight = SingleFlight()
        self._health: TTLCache[bool] = TTLCache(ttl_seconds=self.settings.health_check_ttl_seconds)

    # Naming

    def name_for(self, tenant_id: str) -> str:
        return sandbox_name(tenant_id, self.settings.name_prefix)

    def workspace_for(self, tenant_id: str) -> Path:
        return workspace_path(self.settings.data_root, tenant_id, self.settings.name_prefix)

    def _label(self, key: str) -> str:
        return f"{self.settings.label_prefix}.{key}"

    def labels_for(self, tenant_id: str, tier: str) -> dict[str, str]:
        return {
            self._label("managed"): "true",
            self._label("tenant"): tenant_id,
            self._label("tier"): tier,
            self._label("created"): str(int(time.time())),
        }

    # Lifecycle

    async def get_or_create(
        self,
        tenant_id: str,
        tier: str | None = None,
        *,
        wait: bool = True,
        timeout: float | None = None,
    ) -> Sandbox:
        """Return the tenant's running sandbox, creating or starting it if needed.

        Args:
            tenant_id: Tenant identifier
            tier: Resource tier used when a new sandbox is created
            wait: When False, fail fast with ``SandboxNotReadyError`` instead of
                waiting for an in-flight creation
            timeout: Seconds to wait (defaults to the ready timeout)

        Returns:
            Running sandbox

        Raises:
            SandboxNotReadyError: Creation did not finish in time; it keeps
                running in the background and a later call will observe it
            SandboxCreateError: The engine failed to create or start it
        """
        cached = self.registry.get(tenant_id)
        if cached is not None and cached.is_running and cached.id:
            if self._health.get(cached.id) or not wait:
                await self.registry.touch(tenant_id)
                return cached

        future = self._single_flight.start(tenant_id, lambda: self._ensure_running(tenant_id, tier))
        if not wait:
            if not future.done():
                raise SandboxNotReadyError("Sandbox is being created", tenant_id, "get_or_create")
            return future.result()

        timeout = self.settings.ready_timeout_seconds if timeout is None else timeout
        try:
            return await asyncio.wait_for(asyncio.shield(future), timeout)
        except asyncio.TimeoutError:
            emit_counter("sandbox.not_ready", {"tenant_id": tenant_id})
            raise SandboxNotReadyError(
                f"Sandbox not ready after {timeout:g}s", tenant_id, "get_or_create"
            ) from None

    async def _ensure_running(self, tenant_id: str, tier: str | None) -> Sandbox:
        async with self.locks.hold(tenant_id), TenantContext(tenant_id=tenant_id):
            sandbox = await self.registry.load(tenant_id)
            if sandbox is not None and sandbox.id:
                info = await self._inspect(sandbox.id, tenant_id, "get_or_create")
                if info is None:
                    logger.warning(
                        "Sandbox container vanished; recreating",
                        context={"sandbox_id": sandbox.id},
                    )
                    await self.registry.remove(tenant_id)
                    self._health.delete(sandbox.id)
                elif info.running:
                    if not sandbox.is_running:
                        await self.registry.set_status(tenant_id, SandboxStatus.RUNNING)
                    await self.registry.touch(tenant_id)
                    self._health.set(sandbox.id, True)
                    return sandbox
                else:
                    await self._start(sandbox)
                    return sandbox
            return await self._create(tenant_id, tier)

    async def _create(self, tenant_id: str, tier_id: str | None) -> Sandbox:
        tier = resolve_tier(tier_id, self.settings.default_tier)
        workspace = self.workspace_for(tenant_id)
        sandbox = Sandbox(
            id="",
            name=self.name_for(tenant_id),
            tenant_id=tenant_id,
            status=SandboxStatus.CREATING,
            tier=tier.id,
            workspace_path=str(workspace),
        )
        self.registry.track(sandbox)

        try:
            with Timer() as timer:
                orphan = await self.engine.inspect(sandbox.name)
                if orphan is not None:
                    logger.warning(
                        "Removing leftover container with sandbox name",
                        context={"sandbox_id": orphan.id, "name": sandbox.name},
                    )
                    await self.engine.remove(orphan.id, force=True)

                loop = asyncio.get_running_loop()
                await loop.run_in_executor(None, lambda: workspace.mkdir(parents=True, exist_ok=True))

                spec = ContainerSpec(
                    name=sandbox.name,
                    image=self.settings.image,
                    command=self.settings.command,
                    labels=self.labels_for(tenant_id, tier.id),
                    environment={"HOME": self.settings.mount_path, **self.settings.environment},
                    binds={str(workspace): self.settings.mount_path},
                    working_dir=self.settings.mount_path,
                    user=self.settings.user,
                    network_mode=self.settings.network_mode,
                    cap_add=list(self.settings.cap_add),
                    **tier.limits.to_host_config(),
                )
                sandbox.id = await self.engine.create(spec)
                await self.engine.start(sandbox.id)
                await self._wait_until_running(sandbox.id)
        except (ContainerEngineError, OSError) as e:
            self.registry.invalidate(tenant_id)
            if sandbox.id:
                await self._discard(sandbox.id)
            emit_counter("sandbox.create_failed", {"tenant_id": tenant_id})
            logger.error("Sandbox creation failed", context={"name": sandbox.name}, error=e)
            raise SandboxCreateError(str(e), tenant_id, "create") from e

        now = time.time()
        sandbox.status = SandboxStatus.RUNNING
        sandbox.created_at = now
        sandbox.last_activity_at = now
        await self.registry.save(sandbox)
        self._health.set(sandbox.id, True)

        emit_timer("sandbox.create", timer.duration_ms, {"tier": tier.id})
        logger.info(
            "Sandbox created",
            context={"sandbox_id": sandbox.id, "name": sandbox.name, "tier": tier.id},
            duration_ms=timer.duration_ms,
        )
        return sandbox

    async def _start(self, sandbox: Sandbox) -> None:
        try:
            await self.engine.start(sandbox.id)
            await self._wait_until_running(sandbox.id)
        except ContainerEngineError as e:
            raise SandboxCreateError(str(e), sandbox.tenant_id, "start") from e
        await self.registry.set_status(sandbox.tenant_id, SandboxStatus.RUNNING)
        await self.registry.touch(sandbox.tenant_id)
        self._health.set(sandbox.id, True)
        logger.info("Sandbox started", context={"sandbox_id": sandbox.id})

    async def _wait_until_running(self, container_id: str) -> None:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.settings.ready_timeout_seconds
        while True:
            info = await self.engine.inspect(container_id)
            if info is None:
                raise ContainerEngineError(f"Container {container_id} disappeared during startup")
            if info.running:
                return
            if info.status in ("exited", "dead"):
                raise ContainerEngineError(f"Container {container_id} exited during startup")
            if loop.time() >= deadline:
                raise ContainerEngineError(
                    f"Container {container_id} not running after "
                    f"{self.settings.ready_timeout_seconds:g}s"
                )
            await asyncio.sleep(READY_POLL_INTERVAL)

    async def _discard(self, container_id: str) -> None:
        """Best-effort removal of a half-created container."""
        try:
            await self.engine.remove(container_id, force=True)
        except ContainerEngineError as e:
            logger.warning("Could not remove failed container", context={"sandbox_id": container_id}, error=e)

    async def _inspect(self, container_id: str, tenant_id: str, operation: str) -> ContainerInfo | None:
        try:
            return await self.engine.inspect(container_id)
        except ContainerEngineError as e:
            raise SandboxError(str(e), tenant_id, operation) from e

    async def stop(self, tenant_id: str) -> None:
        """Stop the tenant's sandbox, keeping its workspace.

        Raises:
            SandboxNotFoundError: The tenant has no sandbox
        """
        async with self.locks.hold(tenant_id), TenantContext(tenant_id=tenant_id):
            await self._stop_locked(tenant_id)

    async def _stop_locked(self, tenant_id: str) -> None:
        sandbox = await self.registry.load(tenant_id)
        if sandbox is None or not sandbox.id:
            raise SandboxNotFoundError("No sandbox to stop", tenant_id, "stop")
        if sandbox.status is SandboxStatus.STOPPED:
            return

        self._health.delete(sandbox.id)
        try:
            await self.engine.stop(sandbox.id, timeout=self.settings.stop_timeout_seconds)
        except ContainerNotFoundError:
            logger.warning("Container already gone; dropping record", context={"sandbox_id": sandbox.id})
            await self.registry.remove(tenant_id)
            return
        except ContainerEngineError as e:
            raise SandboxError(str(e), tenant_id, "stop") from e

        await self.registry.set_status(tenant_id, SandboxStatus.STOPPED)
        emit_counter("sandbox.stopped")
        logger.info("Sandbox stopped", context={"sandbox_id": sandbox.id})

    async def destroy(self, tenant_id: str, retain_volume: bool = True) -> bool:
        """Remove the tenant's container and record.

        Args:
            tenant_id: Tenant identifier
            retain_volume: Keep the host workspace directory when True

        Returns:
            True if a container or record existed
        """
        async with self.locks.hold(tenant_id), TenantContext(tenant_id=tenant_id):
            return await self._destroy_locked(tenant_id, retain_volume)

    async def _destroy_locked(self, tenant_id: str, retain_volume: bool) -> bool:
        sandbox = await self.registry.load(tenant_id)
        reference = sandbox.id if sandbox is not None and sandbox.id else self.name_for(tenant_id)

        info = await self._inspect(reference, tenant_id, "destroy")
        if info is not None:
            self._health.delete(info.id)
            try:
                if info.running:
                    await self.engine.stop(info.id, timeout=DESTROY_STOP_TIMEOUT)
                await self.engine.remove(info.id, force=True)
            except ContainerNotFoundError:
                pass
            except ContainerEngineError as e:
                raise SandboxError(str(e), tenant_id, "destroy") from e

        removed = await self.registry.remove(tenant_id)
        if sandbox is not None:
            sandbox.status = SandboxStatus.DESTROYED

        if not retain_volume:
            workspace = Path(sandbox.workspace_path) if sandbox else self.workspace_for(tenant_id)
            loop = asyncio.get_running_loop()
            await loop.run_in_executor(None, lambda: shutil.rmtree(workspace, ignore_errors=True))

        emit_counter("sandbox.destroyed")
        logger.info(
            "Sandbox destroyed",
            context={"name": self.name_for(tenant_id), "retain_volume": retain_volume},
        )
        return info is not None or removed

    async def reap_if_idle(
        self,
        tenant_id: str,
        stop_after: float,
        destroy_after: float,
        now: float | None = None,
        retain_volume: bool = True,
    ) -> str | None:
        """Stop or destroy the sandbox if it has been idle long enough.

        The idle check happens under the tenant lock, so activity recorded by
        a concurrent ``get_or_create`` is always seen.

        Returns:
            "destroyed", "stopped" or None when left alone
        """
        async with self.locks.hold(tenant_id), TenantContext(tenant_id=tenant_id):
            sandbox = await self.registry.load(tenant_id)
            if sandbox is None:
                return None
            idle = sandbox.idle_seconds(now)
            if idle > destroy_after:
                await self._destroy_locked(tenant_id, retain_volume)
                return "destroyed"
            if idle > stop_after and sandbox.is_running:
                await self._stop_locked(tenant_id)
                return "stopped"
            return None

    # Commands and monitoring

    async def exec(
        self,
        tenant_id: str,
        command: str,
        *,
        env: dict[str, str] | None = None,
        workdir: str | None = None,
        idle_timeout: float | None = None,
    ) -> ExecStream:
        """Start a shell command in the tenant's running sandbox.

        Returns a live stream handle before the command completes. Never
        starts or creates a sandbox.

        Raises:
            SandboxNotRunningError: The sandbox is missing or not running
            ExecFailedError: The engine refused to start the command
        """
        sandbox = await self.registry.load(tenant_id)
        if sandbox is None or not sandbox.is_running or not sandbox.id:
            status = sandbox.status.value if sandbox is not None else "missing"
            raise SandboxNotRunningError(f"Sandbox is not running (status: {status})", tenant_id, "exec")

        try:
            session = await self.engine.exec(
                sandbox.id,
                ["/bin/sh", "-c", command],
                env=env,
                workdir=workdir or self.settings.mount_path,
            )
        except ContainerEngineError as e:
            self._health.delete(sandbox.id)
            raise ExecFailedError(f"[exec tenant={tenant_id}] {e}") from e

        await self.registry.touch(tenant_id)
        emit_counter("sandbox.exec")
        if idle_timeout is None:
            idle_timeout = self.config.timeouts.stream_idle
        return ExecStream(session, tenant_id, idle_timeout=idle_timeout)

    async def stats(self, tenant_id: str) -> SandboxStats:
        """Resource-usage snapshot of the tenant's running sandbox."""
        sandbox = await self.registry.load(tenant_id)
        if sandbox is None or not sandbox.is_running:
            raise SandboxNotRunningError("Sandbox is not running", tenant_id, "stats")
        try:
            raw = await self.engine.stats(sandbox.id)
        except ContainerEngineError as e:
            raise SandboxError(str(e), tenant_id, "stats") from e
        return compute_stats(raw)

    async def get(self, tenant_id: str) -> Sandbox | None:
        """The tenant's sandbox record without touching the engine."""
        return await self.registry.load(tenant_id)

    # Startup and housekeeping

    async def reconcile(self) -> ReconcileReport:
        """Align persisted records with the engine after a restart.

        Records whose container no longer exists are deleted; records whose
        container is not running are marked stopped.
        """
        report = ReconcileReport()
        for sandbox in await self.registry.list_all():
            tenant_id = sandbox.tenant_id
            async with self.locks.hold(tenant_id):
                info = await self._inspect(sandbox.id or sandbox.name, tenant_id, "reconcile")
                if info is None:
                    await self.registry.remove(tenant_id)
                    report.removed.append(tenant_id)
                elif info.running:
                    if not sandbox.is_running:
                        await self.registry.set_status(tenant_id, SandboxStatus.RUNNING)
                    report.running.append(tenant_id)
                else:
                    if sandbox.status is not SandboxStatus.STOPPED:
                        await self.registry.set_status(tenant_id, SandboxStatus.STOPPED)
                    report.stopped.append(tenant_id)

        logger.info(
            "Sandbox records reconciled",
            context={
                "running": len(report.running),
                "stopped": len(report.stopped),
                "removed": len(report.removed),
            },
        )
        return report

    async def cleanup_orphans(self) -> list[str]:
        """Remove managed containers that have no record.

        Returns:
            Ids of removed containers
        """
        try:
            containers = await self.engine.list_containers({self._label("managed"): "true"})
        except ContainerEngineError as e:
            raise SandboxError(str(e), operation="cleanup_orphans") from e

        known = {s.id for s in await self.registry.list_all() if s.id}
        known.update(s.id for s in self.registry.cached() if s.id)

        removed = []
        for container in containers:
            tenant_id = container.labels.get(self._label("tenant"), "")
            if container.id in known or self._single_flight.in_flight(tenant_id):
                continue
            try:
                await self.engine.remove(container.id, force=True)
            except ContainerEngineError as e:
                logger.warning("Could not remove orphan", context={"sandbox_id": container.id}, error=e)
                continue
            removed.append(container.id)

        if removed:
            logger.info("Removed orphan containers", context={"count": len(removed)})
        return removed
