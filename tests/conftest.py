"""Pytest configuration and fixtures."""

import asyncio
import os
import random
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import pytest

from sandbox_core.backends.database.sqlite import SQLiteDatabase
from sandbox_core.config import Config
from sandbox_core.exceptions import ContainerEngineError, ContainerNotFoundError
from sandbox_core.protocols.engine import ContainerInfo, ContainerSpec
from sandbox_core.sandbox.demux import Channel, encode_frame
from sandbox_core.sandbox.manager import SandboxManager
from sandbox_core.sandbox.models import workspace_path
from sandbox_core.sandbox.registry import SandboxRegistry

TENANT = "tenant-1"

SAMPLE_STATS = {
    "cpu_stats": {
        "cpu_usage": {"total_usage": 400_000_000},
        "system_cpu_usage": 20_000_000_000,
        "online_cpus": 2,
    },
    "precpu_stats": {
        "cpu_usage": {"total_usage": 300_000_000},
        "system_cpu_usage": 19_000_000_000,
    },
    "memory_stats": {"usage": 256 * 1024 * 1024, "limit": 1024 * 1024 * 1024},
    "networks": {
        "eth0": {"rx_bytes": 1000, "tx_bytes": 500},
        "eth1": {"rx_bytes": 24, "tx_bytes": 12},
    },
    "blkio_stats": {
        "io_service_bytes_recursive": [
            {"op": "Read", "value": 4096},
            {"op": "Write", "value": 8192},
        ]
    },
    "pids_stats": {"current": 7},
}


@dataclass
class FakeContainer:
    id: str
    name: str
    status: str
    labels: dict[str, str] = field(default_factory=dict)
    spec: ContainerSpec | None = None

    def info(self) -> ContainerInfo:
        return ContainerInfo(id=self.id, name=self.name, status=self.status, labels=dict(self.labels))


class FakeExecSession:
    """Runs the command with the local shell and serves its output as framed bytes.

    Frames are handed out in random chunk sizes so consumers see the same
    arbitrary splits a real engine socket produces.
    """

    def __init__(self, process: asyncio.subprocess.Process, rng: random.Random) -> None:
        self.exec_id = uuid.uuid4().hex
        self._process = process
        self._rng = rng
        self._pending = bytearray()
        self._queue: asyncio.Queue[bytes | None] = asyncio.Queue()
        self._open = 2
        self._closed = False
        self._pumps = [
            asyncio.create_task(self._pump(process.stdout, Channel.STDOUT)),
            asyncio.create_task(self._pump(process.stderr, Channel.STDERR)),
        ]

    async def _pump(self, stream: asyncio.StreamReader, channel: Channel) -> None:
        try:
            while True:
                data = await stream.read(1024)
                if not data:
                    break
                await self._queue.put(encode_frame(channel, data))
        finally:
            await self._queue.put(None)

    async def read(self) -> bytes:
        while not self._pending and self._open > 0 and not self._closed:
            item = await self._queue.get()
            if item is None:
                self._open -= 1
            else:
                self._pending.extend(item)
        if not self._pending:
            return b""
        size = self._rng.randint(1, len(self._pending))
        chunk = bytes(self._pending[:size])
        del self._pending[:size]
        return chunk

    async def exit_code(self) -> int | None:
        try:
            return await asyncio.wait_for(asyncio.shield(self._process.wait()), 0.05)
        except asyncio.TimeoutError:
            return None

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        for pump in self._pumps:
            pump.cancel()
        # Wake a reader blocked on the queue
        self._queue.put_nowait(None)
        self._queue.put_nowait(None)


class FakeEngine:
    """In-process container engine implementing the ``ContainerEngine`` protocol."""

    def __init__(self, create_delay: float = 0.0, seed: int = 1234) -> None:
        self.create_delay = create_delay
        self.containers: dict[str, FakeContainer] = {}
        self.create_count = 0
        self.start_count = 0
        self.stop_count = 0
        self.exec_commands: list[list[str]] = []
        self.fail_create: Exception | None = None
        self.fail_start: Exception | None = None
        self.raw_stats: dict[str, Any] = SAMPLE_STATS
        self._rng = random.Random(seed)
        self._processes: list[asyncio.subprocess.Process] = []

    def _find(self, container_id_or_name: str) -> FakeContainer | None:
        container = self.containers.get(container_id_or_name)
        if container is not None:
            return container
        for candidate in self.containers.values():
            if candidate.name == container_id_or_name:
                return candidate
        return None

    def _require(self, container_id: str) -> FakeContainer:
        container = self._find(container_id)
        if container is None:
            raise ContainerNotFoundError(f"No such container: {container_id}")
        return container

    def add_container(self, name: str, status: str = "running", labels: dict[str, str] | None = None) -> str:
        """Register a container created outside the manager."""
        container_id = uuid.uuid4().hex
        self.containers[container_id] = FakeContainer(container_id, name, status, labels or {})
        return container_id

    async def create(self, spec: ContainerSpec) -> str:
        if self.create_delay:
            await asyncio.sleep(self.create_delay)
        if self.fail_create is not None:
            raise self.fail_create
        if self._find(spec.name) is not None:
            raise ContainerEngineError(f"Conflict: container name {spec.name} is already in use")
        self.create_count += 1
        container_id = uuid.uuid4().hex
        self.containers[container_id] = FakeContainer(
            container_id, spec.name, "created", dict(spec.labels), spec
        )
        return container_id

    async def start(self, container_id: str) -> None:
        if self.fail_start is not None:
            raise self.fail_start
        self.start_count += 1
        self._require(container_id).status = "running"

    async def stop(self, container_id: str, timeout: int = 10) -> None:
        container = self._require(container_id)
        if container.status == "running":
            self.stop_count += 1
        container.status = "exited"

    async def remove(self, container_id: str, force: bool = True) -> None:
        container = self._find(container_id)
        if container is not None:
            del self.containers[container.id]

    async def inspect(self, container_id_or_name: str) -> ContainerInfo | None:
        container = self._find(container_id_or_name)
        return container.info() if container is not None else None

    async def list_containers(self, labels: dict[str, str]) -> list[ContainerInfo]:
        return [
            c.info()
            for c in self.containers.values()
            if all(c.labels.get(key) == value for key, value in labels.items())
        ]

    async def exec(
        self,
        container_id: str,
        command: list[str],
        env: dict[str, str] | None = None,
        workdir: str | None = None,
    ) -> FakeExecSession:
        container = self._require(container_id)
        if container.status != "running":
            raise ContainerEngineError(f"Container {container_id} is not running")
        if workdir is not None and not os.path.isdir(workdir):
            raise ContainerEngineError(f"chdir to {workdir}: no such file or directory")
        self.exec_commands.append(command)
        process = await asyncio.create_subprocess_exec(
            *command,
            cwd=workdir,
            env={**os.environ, **(env or {})},
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        self._processes.append(process)
        return FakeExecSession(process, self._rng)

    async def stats(self, container_id: str) -> dict[str, Any]:
        self._require(container_id)
        return self.raw_stats

    async def shutdown(self) -> None:
        """Kill processes left behind by tests."""
        for process in self._processes:
            if process.returncode is None:
                try:
                    process.kill()
                except ProcessLookupError:
                    continue
                await process.wait()


@pytest.fixture
def sample_config_dict(tmp_path: Path) -> dict[str, Any]:
    """Sample configuration dictionary for testing.

    The sandbox mount path is the tenant's host workspace, so commands the
    fake engine runs with the local shell see the same paths a container would.
    """
    data_root = tmp_path / "data"
    return {
        "sandbox": {
            "data_root": str(data_root),
            "mount_path": str(workspace_path(data_root, TENANT)),
            "pid_dir": str(tmp_path),
            "ready_timeout_seconds": 5,
        },
        "database": {"backend": "sqlite", "path": ":memory:"},
        "reaper": {"enabled": False},
        "logging": {"level": "DEBUG"},
    }


@pytest.fixture
def config(sample_config_dict: dict[str, Any]) -> Config:
    return Config.from_dict(sample_config_dict)


@pytest.fixture
def workspace(config: Config) -> Path:
    """Host workspace of ``TENANT``."""
    path = workspace_path(config.sandbox.data_root, TENANT)
    path.mkdir(parents=True, exist_ok=True)
    return path


@pytest.fixture
async def db():
    """In-memory SQLite database."""
    database = SQLiteDatabase(path=":memory:")
    yield database
    await database.close()


@pytest.fixture
async def registry(db: SQLiteDatabase) -> SandboxRegistry:
    reg = SandboxRegistry(db)
    await reg.initialize()
    return reg


@pytest.fixture
async def engine():
    fake = FakeEngine()
    yield fake
    await fake.shutdown()


@pytest.fixture
def manager(engine: FakeEngine, registry: SandboxRegistry, config: Config) -> SandboxManager:
    return SandboxManager(engine, registry, config)
