"""Sandbox resource statistics and the background stats poller."""

import asyncio
import time
from dataclasses import asdict, dataclass
from typing import TYPE_CHECKING, Any

from sandbox_core.exceptions import SandboxCoreError
from sandbox_core.observability import emit_metric, get_logger

if TYPE_CHECKING:
    from sandbox_core.sandbox.manager import SandboxManager

logger = get_logger(__name__)


@dataclass
class SandboxStats:
    """Resource-usage snapshot of one sandbox."""

    cpu_percent: float
    memory_usage: int
    memory_limit: int
    memory_percent: float
    network_rx: int
    network_tx: int
    block_read: int
    block_write: int
    pids: int
    recorded_at: float

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def _cpu_percent(raw: dict[str, Any]) -> float:
    cpu = raw.get("cpu_stats") or {}
    precpu = raw.get("precpu_stats") or {}
    cpu_delta = (cpu.get("cpu_usage") or {}).get("total_usage", 0) - (
        precpu.get("cpu_usage") or {}
    ).get("total_usage", 0)
    system_delta = cpu.get("system_cpu_usage", 0) - precpu.get("system_cpu_usage", 0)
    online = cpu.get("online_cpus") or len((cpu.get("cpu_usage") or {}).get("percpu_usage") or []) or 1
    if cpu_delta <= 0 or system_delta <= 0:
        return 0.0
    return round(cpu_delta / system_delta * online * 100, 2)


def compute_stats(raw: dict[str, Any], now: float | None = None) -> SandboxStats:
    """Turn the engine's raw one-shot stats into a ``SandboxStats``."""
    memory = raw.get("memory_stats") or {}
    usage = int(memory.get("usage", 0))
    limit = int(memory.get("limit", 0))

    rx = tx = 0
    for interface in (raw.get("networks") or {}).values():
        rx += int(interface.get("rx_bytes", 0))
        tx += int(interface.get("tx_bytes", 0))

    block_read = block_write = 0
    for entry in (raw.get("blkio_stats") or {}).get("io_service_bytes_recursive") or []:
        op = str(entry.get("op", "")).lower()
        if op == "read":
            block_read += int(entry.get("value", 0))
        elif op == "write":
            block_write += int(entry.get("value", 0))

    return SandboxStats(
        cpu_percent=_cpu_percent(raw),
        memory_usage=usage,
        memory_limit=limit,
        memory_percent=round(usage / limit * 100, 2) if limit else 0.0,
        network_rx=rx,
        network_tx=tx,
        block_read=block_read,
        block_write=block_write,
        pids=int((raw.get("pids_stats") or {}).get("current", 0)),
        recorded_at=time.time() if now is None else now,
    )


class StatsPoller:
    """Periodically samples running sandboxes and records their usage.

    Runs on its own cadence, independent of request traffic.
    """

    def __init__(self, manager: "SandboxManager", interval: float = 60) -> None:
        """Initialize the poller.

        Args:
            manager: Sandbox manager to sample through
            interval: Seconds between sweeps
        """
        self.manager = manager
        self.interval = interval
        self._task: asyncio.Task[None] | None = None

    async def poll_once(self) -> dict[str, SandboxStats]:
        """Sample every running sandbox once.

        Returns:
            Stats keyed by tenant id
        """
        results: dict[str, SandboxStats] = {}
        for sandbox in await self.manager.registry.list_all():
            if not sandbox.is_running:
                continue
            try:
                stats = await self.manager.stats(sandbox.tenant_id)
            except SandboxCoreError as e:
                logger.warning(
                    "Stats sample failed",
                    context={"tenant_id": sandbox.tenant_id},
                    error=e,
                )
                continue
            await self.manager.registry.record_metrics(sandbox, stats)
            labels = {"tenant_id": sandbox.tenant_id}
            emit_metric("sandbox.cpu_percent", stats.cpu_percent, labels)
            emit_metric("sandbox.memory_percent", stats.memory_percent, labels)
            results[sandbox.tenant_id] = stats
        return results

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self.interval)
            try:
                await self.poll_once()
            except SandboxCoreError as e:
                logger.error("Stats sweep failed", error=e)

    def start(self) -> None:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self._run())

    async def stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
