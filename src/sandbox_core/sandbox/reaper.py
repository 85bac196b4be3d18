"""Idle reaper: stops and destroys sandboxes nobody is using."""

import asyncio
import time
from dataclasses import dataclass, field

from sandbox_core.config import ReaperConfig
from sandbox_core.exceptions import SandboxCoreError
from sandbox_core.observability import emit_counter, get_logger
from sandbox_core.sandbox.manager import SandboxManager

logger = get_logger(__name__)


@dataclass
class ReapReport:
    """Tenants acted on by one sweep."""

    stopped: list[str] = field(default_factory=list)
    destroyed: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)


class IdleReaper:
    """Background sweep over all sandboxes by last activity.

    Sandboxes idle longer than ``stop_after`` are stopped; those idle longer
    than ``destroy_after`` are destroyed. Each decision is made under the
    manager's per-tenant lock, so a sweep never races ``get_or_create``.
    """

    def __init__(
        self,
        manager: SandboxManager,
        stop_after: float,
        destroy_after: float,
        interval: float = 1800,
        retain_volume: bool = True,
    ) -> None:
        """Initialize the reaper.

        Args:
            manager: Sandbox manager whose sandboxes are swept
            stop_after: Idle seconds before a running sandbox is stopped (T1)
            destroy_after: Idle seconds before a sandbox is destroyed (T2)
            interval: Seconds between sweeps
            retain_volume: Keep workspaces of destroyed sandboxes
        """
        if destroy_after <= stop_after:
            raise ValueError("destroy_after must be greater than stop_after")
        self.manager = manager
        self.stop_after = stop_after
        self.destroy_after = destroy_after
        self.interval = interval
        self.retain_volume = retain_volume
        self._task: asyncio.Task[None] | None = None

    @classmethod
    def from_config(cls, manager: SandboxManager, config: ReaperConfig) -> "IdleReaper":
        return cls(
            manager,
            stop_after=config.stop_after_seconds,
            destroy_after=config.destroy_after_seconds,
            interval=config.interval_seconds,
            retain_volume=config.retain_volume,
        )

    async def sweep(self, now: float | None = None) -> ReapReport:
        """Run one pass over every persisted sandbox."""
        now = time.time() if now is None else now
        report = ReapReport()

        for sandbox in await self.manager.registry.list_all():
            if sandbox.idle_seconds(now) <= self.stop_after:
                continue
            try:
                action = await self.manager.reap_if_idle(
                    sandbox.tenant_id,
                    stop_after=self.stop_after,
                    destroy_after=self.destroy_after,
                    now=now,
                    retain_volume=self.retain_volume,
                )
            except SandboxCoreError as e:
                logger.error(
                    "Reaping sandbox failed",
                    context={"tenant_id": sandbox.tenant_id},
                    error=e,
                )
                report.failed.append(sandbox.tenant_id)
                continue

            if action == "destroyed":
                report.destroyed.append(sandbox.tenant_id)
                emit_counter("sandbox.reaped", {"action": action})
            elif action == "stopped":
                report.stopped.append(sandbox.tenant_id)
                emit_counter("sandbox.reaped", {"action": action})

        if report.stopped or report.destroyed:
            logger.info(
                "Idle sweep finished",
                context={"stopped": len(report.stopped), "destroyed": len(report.destroyed)},
            )
        return report

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self.interval)
            try:
                await self.sweep()
            except SandboxCoreError as e:
                logger.error("Idle sweep failed", error=e)

    def start(self) -> None:
        """Start the background loop."""
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self._run())

    async def stop(self) -> None:
        """Cancel the background loop and wait for it to finish."""
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()
