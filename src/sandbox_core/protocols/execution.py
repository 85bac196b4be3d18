"""Execution engine protocol and its request/result types."""

from dataclasses import dataclass, field
from typing import Protocol, runtime_checkable

from sandbox_core.exceptions import ExecFailedError
from sandbox_core.sandbox.demux import Channel


@dataclass(frozen=True)
class OutputChunk:
    """A piece of command output delivered to a sink."""

    channel: Channel
    data: bytes
    session_id: str

    @property
    def text(self) -> str:
        return self.data.decode("utf-8", errors="replace")


@runtime_checkable
class Sink(Protocol):
    """Write-chunk destination supplied by the calling transport."""

    @property
    def is_streaming(self) -> bool:
        """True when chunks are pushed to a live consumer as they arrive."""
        ...

    async def write(self, chunk: OutputChunk) -> None:
        ...


@dataclass
class ExecutionRequest:
    """A command to run for a tenant."""

    command: str
    cwd: str | None = None
    env: dict[str, str] = field(default_factory=dict)
    session_id: str | None = None
    sink: Sink | None = None
    timeout: float | None = None  # None uses the configured exec timeout, 0 disables


@dataclass
class ExecutionResult:
    """Outcome of an execution."""

    success: bool
    output: str
    exit_code: int | None
    error: str | None = None
    session_id: str = ""
    stderr: str = ""
    aborted: bool = False
    duration_ms: float = 0.0

    def raise_for_status(self) -> "ExecutionResult":
        """Raise ``ExecFailedError`` unless the command succeeded."""
        if not self.success:
            raise ExecFailedError(
                self.error or f"Command exited with code {self.exit_code}",
                exit_code=self.exit_code,
                stderr=self.stderr,
            )
        return self


@runtime_checkable
class ExecutionEngine(Protocol):
    """Runs commands for one tenant (natively or inside its sandbox)."""

    async def execute(self, request: ExecutionRequest) -> ExecutionResult:
        """Run a command, writing output chunks to ``request.sink`` as they arrive."""
        ...

    async def abort(self, session_id: str) -> bool:
        """Terminate the running command for a session. False if none is active."""
        ...

    def is_active(self, session_id: str) -> bool:
        ...

    def list_active(self) -> list[str]:
        ...
