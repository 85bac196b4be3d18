"""Active-run bookkeeping shared by both execution engines."""

import asyncio
import time
from dataclasses import dataclass, field
from typing import Awaitable, Callable

from sandbox_core.exceptions import ExecFailedError
from sandbox_core.protocols.execution import ExecutionResult


@dataclass
class ActiveRun:
    """A command currently executing for a session."""

    session_id: str
    command: str
    cancel: Callable[[], Awaitable[None]] | None = None
    started_at: float = field(default_factory=time.time)
    aborted: bool = False
    done: asyncio.Event = field(default_factory=asyncio.Event)


class ActiveRuns:
    """Registry of in-flight runs keyed by session id.

    A session runs at most one command at a time.
    """

    def __init__(self) -> None:
        self._runs: dict[str, ActiveRun] = {}

    def add(self, run: ActiveRun) -> None:
        if run.session_id in self._runs:
            raise ExecFailedError(f"Session {run.session_id} already has a running command")
        self._runs[run.session_id] = run

    def finish(self, session_id: str) -> None:
        run = self._runs.pop(session_id, None)
        if run is not None:
            run.done.set()

    def get(self, session_id: str) -> ActiveRun | None:
        return self._runs.get(session_id)

    def is_active(self, session_id: str) -> bool:
        return session_id in self._runs

    def session_ids(self) -> list[str]:
        return list(self._runs)

    async def abort(self, session_id: str) -> bool:
        """Mark the run aborted and invoke its cancel hook."""
        run = self._runs.get(session_id)
        if run is None:
            return False
        run.aborted = True
        if run.cancel is not None:
            await run.cancel()
        return True


def build_result(
    run: ActiveRun,
    stdout: bytes,
    stderr: bytes,
    exit_code: int | None,
    duration_ms: float,
) -> ExecutionResult:
    """Assemble the result of a finished (or aborted) run."""
    error = None
    if run.aborted:
        error = "Execution aborted"
    elif exit_code is None:
        error = "Exit code unavailable"
    elif exit_code != 0:
        error = f"Command exited with code {exit_code}"

    return ExecutionResult(
        success=not run.aborted and exit_code == 0,
        output=stdout.decode("utf-8", errors="replace"),
        exit_code=exit_code,
        error=error,
        session_id=run.session_id,
        stderr=stderr.decode("utf-8", errors="replace"),
        aborted=run.aborted,
        duration_ms=duration_ms,
    )
