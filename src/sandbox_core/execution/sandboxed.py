"""Sandboxed execution: commands run inside the tenant's container.

Each command is launched in its own session inside the sandbox, and its pid
is written to a per-run file so ``abort`` can signal the process group from a
second exec. Closing the output stream alone would leave the process running.
"""

import asyncio
import posixpath
import shlex
import uuid

from sandbox_core.config import Config
from sandbox_core.exceptions import (
    ExecFailedError,
    OperationTimeoutError,
    SandboxError,
    StreamProtocolError,
)
from sandbox_core.execution.runs import ActiveRun, ActiveRuns, build_result
from sandbox_core.execution.sink import BufferSink
from sandbox_core.files.paths import join_workspace
from sandbox_core.observability import TenantContext, Timer, emit_timer, get_logger
from sandbox_core.protocols.execution import ExecutionRequest, ExecutionResult, OutputChunk, Sink
from sandbox_core.sandbox.demux import Channel
from sandbox_core.sandbox.manager import SandboxManager
from sandbox_core.sandbox.streams import ExecStream

logger = get_logger(__name__)

ABORT_GRACE_SECONDS = 2.0
ABORT_PID_RETRIES = 5
ABORT_PID_RETRY_INTERVAL = 0.1


def wrap_command(command: str, pid_file: str) -> str:
    """Wrap a command so its pid is recorded and its exit code preserved."""
    quoted = shlex.quote(command)
    pid = shlex.quote(pid_file)
    return (
        "if command -v setsid >/dev/null 2>&1; "
        f"then setsid /bin/sh -c {quoted} & "
        f"else /bin/sh -c {quoted} & fi; "
        f"pid=$!; echo $pid > {pid}; "
        f"wait $pid; rc=$?; rm -f {pid}; exit $rc"
    )


def kill_command(pid_file: str, sig: str = "TERM") -> str:
    """Signal the process group recorded in ``pid_file``."""
    pid = shlex.quote(pid_file)
    return (
        f"pid=$(cat {pid} 2>/dev/null); "
        'if [ -z "$pid" ]; then echo NO_PID; exit 0; fi; '
        f"kill -{sig} -$pid 2>/dev/null || kill -{sig} $pid 2>/dev/null; "
        "echo KILLED"
    )


class SandboxedExecutionEngine:
    """Runs commands inside the tenant's sandbox through the manager."""

    def __init__(
        self,
        manager: SandboxManager,
        tenant_id: str,
        config: Config | None = None,
        tier: str | None = None,
    ) -> None:
        """Initialize the engine.

        Args:
            manager: Sandbox manager
            tenant_id: Tenant identifier
            config: Configuration (defaults to the manager's)
            tier: Tier used if the sandbox must be created
        """
        self.manager = manager
        self.tenant_id = tenant_id
        self.config = config or manager.config
        self.tier = tier
        self._runs = ActiveRuns()

    def _workdir(self, cwd: str | None) -> str:
        return join_workspace(self.config.sandbox.mount_path, cwd or ".")

    def _pid_file(self, token: str) -> str:
        return posixpath.join(self.config.sandbox.pid_dir, f".sandbox-exec-{token}.pid")

    async def execute(self, request: ExecutionRequest) -> ExecutionResult:
        """Run a command in the sandbox, creating or starting it first if needed.

        Raises:
            SandboxNotReadyError: The sandbox is still being created
            ExecFailedError: The command could not be started
            OperationTimeoutError: The command exceeded its timeout
        """
        session_id = request.session_id or str(uuid.uuid4())
        sink: Sink = request.sink or BufferSink()
        timeout = self.config.timeouts.exec if request.timeout is None else request.timeout
        workdir = self._workdir(request.cwd)
        pid_file = self._pid_file(uuid.uuid4().hex)

        run = ActiveRun(session_id=session_id, command=request.command)
        self._runs.add(run)
        try:
            async with TenantContext(tenant_id=self.tenant_id, session_id=session_id):
                await self.manager.get_or_create(self.tenant_id, self.tier)
                stream = await self.manager.exec(
                    self.tenant_id,
                    wrap_command(request.command, pid_file),
                    env=request.env or None,
                    workdir=workdir,
                    idle_timeout=0,
                )
                run.cancel = lambda: self._kill(run, stream, pid_file)
                if run.aborted:
                    await self._signal(pid_file)
                try:
                    return await self._wait(run, stream, sink, timeout, pid_file)
                finally:
                    await stream.close()
        finally:
            self._runs.finish(session_id)

    async def _wait(
        self,
        run: ActiveRun,
        stream: ExecStream,
        sink: Sink,
        timeout: float,
        pid_file: str,
    ) -> ExecutionResult:
        buffers = {Channel.STDOUT: bytearray(), Channel.STDERR: bytearray()}

        async def complete() -> int | None:
            try:
                async for frame in stream.frames():
                    buffers[frame.channel].extend(frame.payload)
                    await sink.write(OutputChunk(frame.channel, frame.payload, run.session_id))
            except StreamProtocolError:
                # Closing the stream on abort can cut a frame short.
                if not run.aborted:
                    raise
                return None
            return await stream.exit_code()

        with Timer() as timer:
            try:
                if timeout:
                    exit_code = await asyncio.wait_for(complete(), timeout)
                else:
                    exit_code = await complete()
            except asyncio.TimeoutError:
                await self._signal(pid_file, "KILL")
                logger.warning(
                    "Command timed out",
                    context={"session_id": run.session_id, "timeout": timeout},
                )
                raise OperationTimeoutError("exec", timeout) from None
            except asyncio.CancelledError:
                await self._signal(pid_file, "KILL")
                raise

        emit_timer("execution.sandboxed", timer.duration_ms, {"exit_code": str(exit_code)})
        logger.info(
            "Command finished",
            context={"session_id": run.session_id, "exit_code": exit_code, "aborted": run.aborted},
            duration_ms=timer.duration_ms,
        )
        return build_result(
            run,
            bytes(buffers[Channel.STDOUT]),
            bytes(buffers[Channel.STDERR]),
            exit_code,
            timer.duration_ms,
        )

    async def _signal(self, pid_file: str, sig: str = "TERM", retries: int = ABORT_PID_RETRIES) -> bool:
        """Send ``sig`` to the run's process group inside the sandbox.

        Returns:
            True if a pid was found and signalled
        """
        for _ in range(retries):
            try:
                stream = await self.manager.exec(self.tenant_id, kill_command(pid_file, sig))
                output = await stream.collect(
                    timeout=self.config.timeouts.default, operation="abort"
                )
            except (SandboxError, ExecFailedError, OperationTimeoutError) as e:
                logger.warning("Could not signal command", context={"pid_file": pid_file}, error=e)
                return False
            if "KILLED" in output.stdout_text:
                return True
            # The wrapper may not have written its pid yet.
            await asyncio.sleep(ABORT_PID_RETRY_INTERVAL)
        return False

    async def _kill(self, run: ActiveRun, stream: ExecStream, pid_file: str) -> None:
        """SIGTERM the run, escalating to SIGKILL, then drop the stream if it still hangs."""
        await self._signal(pid_file)
        if await self._settled(run):
            return
        # A missing pid file now means the command already exited
        await self._signal(pid_file, "KILL", retries=1)
        if not await self._settled(run):
            await stream.close()

    async def _settled(self, run: ActiveRun) -> bool:
        try:
            await asyncio.wait_for(asyncio.shield(run.done.wait()), ABORT_GRACE_SECONDS)
        except asyncio.TimeoutError:
            return False
        return True

    async def abort(self, session_id: str) -> bool:
        aborted = await self._runs.abort(session_id)
        if aborted:
            logger.info("Command aborted", context={"session_id": session_id})
        return aborted

    def is_active(self, session_id: str) -> bool:
        return self._runs.is_active(session_id)

    def list_active(self) -> list[str]:
        return self._runs.session_ids()
