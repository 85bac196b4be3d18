"""Container engine protocol.

The sandbox manager is the only consumer; everything it needs from the
engine (lifecycle, inspection, raw exec streams, stats) is expressed here so
that tests can substitute an in-process engine.
"""

from dataclasses import dataclass, field
from typing import Any, Protocol


@dataclass
class ContainerSpec:
    """Everything needed to create a sandbox container."""

    name: str
    image: str
    command: list[str] | None = None
    labels: dict[str, str] = field(default_factory=dict)
    environment: dict[str, str] = field(default_factory=dict)
    binds: dict[str, str] = field(default_factory=dict)  # host path -> container path
    working_dir: str = "/workspace"
    user: str | None = None
    network_mode: str = "bridge"
    memory_bytes: int | None = None
    cpu_quota: int | None = None
    cpu_period: int | None = None
    pids_limit: int | None = None
    cap_add: list[str] = field(default_factory=list)
    security_opt: list[str] = field(default_factory=lambda: ["no-new-privileges:true"])


@dataclass
class ContainerInfo:
    """Inspection snapshot of a container."""

    id: str
    name: str
    status: str  # engine status string: created, running, exited, ...
    labels: dict[str, str] = field(default_factory=dict)

    @property
    def running(self) -> bool:
        return self.status == "running"


class ExecSession(Protocol):
    """A started exec whose raw multiplexed output can be read."""

    exec_id: str

    async def read(self) -> bytes:
        """Read the next chunk of raw framed output; b"" at end of stream."""
        ...

    async def exit_code(self) -> int | None:
        """Exit code once the process has finished, else None."""
        ...

    async def close(self) -> None:
        """Release the underlying transport connection."""
        ...


class ContainerEngine(Protocol):
    """Protocol for container engines (Docker)."""

    async def create(self, spec: ContainerSpec) -> str:
        """Create a container and return its engine id."""
        ...

    async def start(self, container_id: str) -> None:
        ...

    async def stop(self, container_id: str, timeout: int = 10) -> None:
        """Stop a container. Stopping a stopped container is not an error."""
        ...

    async def remove(self, container_id: str, force: bool = True) -> None:
        """Remove a container. Removing a missing container is not an error."""
        ...

    async def inspect(self, container_id_or_name: str) -> ContainerInfo | None:
        """Inspect a container, or None if it does not exist."""
        ...

    async def list_containers(self, labels: dict[str, str]) -> list[ContainerInfo]:
        """List containers (running or not) carrying all given labels."""
        ...

    async def exec(
        self,
        container_id: str,
        command: list[str],
        env: dict[str, str] | None = None,
        workdir: str | None = None,
    ) -> ExecSession:
        """Start a command and return its raw output stream."""
        ...

    async def stats(self, container_id: str) -> dict[str, Any]:
        """One-shot raw resource statistics."""
        ...
