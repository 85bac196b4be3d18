"""Native execution: commands run as host subprocesses in the tenant workspace."""

import asyncio
import os
import signal
import uuid
from pathlib import Path

from sandbox_core.config import TimeoutsConfig
from sandbox_core.exceptions import ExecFailedError, OperationTimeoutError, PathNotFoundError
from sandbox_core.execution.runs import ActiveRun, ActiveRuns, build_result
from sandbox_core.execution.sink import BufferSink
from sandbox_core.files.paths import join_workspace
from sandbox_core.observability import TenantContext, Timer, emit_timer, get_logger
from sandbox_core.protocols.execution import ExecutionRequest, ExecutionResult, OutputChunk, Sink
from sandbox_core.sandbox.demux import Channel

logger = get_logger(__name__)

READ_SIZE = 4096
KILL_GRACE_SECONDS = 2.0


class NativeExecutionEngine:
    """Runs commands with ``/bin/sh -c`` on the host, one process group per run."""

    def __init__(
        self,
        tenant_id: str,
        workspace: str | Path,
        timeouts: TimeoutsConfig | None = None,
    ) -> None:
        """Initialize the engine.

        Args:
            tenant_id: Tenant identifier
            workspace: Host workspace directory commands run in
            timeouts: Timeout settings (``exec`` bounds each run)
        """
        self.tenant_id = tenant_id
        self.workspace = Path(workspace)
        self.timeouts = timeouts or TimeoutsConfig()
        self._runs = ActiveRuns()

    def _resolve_cwd(self, cwd: str | None) -> str:
        root = str(self.workspace.resolve())
        directory = join_workspace(root, cwd or ".")
        if not os.path.isdir(directory):
            raise PathNotFoundError(f"Working directory not found: {cwd}", cwd or ".")
        return directory

    async def execute(self, request: ExecutionRequest) -> ExecutionResult:
        session_id = request.session_id or str(uuid.uuid4())
        sink: Sink = request.sink or BufferSink()
        timeout = self.timeouts.exec if request.timeout is None else request.timeout

        self.workspace.mkdir(parents=True, exist_ok=True)
        cwd = self._resolve_cwd(request.cwd)

        run = ActiveRun(session_id=session_id, command=request.command)
        self._runs.add(run)
        try:
            async with TenantContext(tenant_id=self.tenant_id, session_id=session_id):
                try:
                    process = await asyncio.create_subprocess_exec(
                        "/bin/sh",
                        "-c",
                        request.command,
                        cwd=cwd,
                        env={**os.environ, **request.env},
                        stdin=asyncio.subprocess.DEVNULL,
                        stdout=asyncio.subprocess.PIPE,
                        stderr=asyncio.subprocess.PIPE,
                        start_new_session=True,
                    )
                except OSError as e:
                    raise ExecFailedError(f"Failed to start command: {e}") from e

                run.cancel = lambda: self._terminate(process)
                if run.aborted:
                    await self._terminate(process)
                return await self._wait(run, process, sink, timeout)
        finally:
            self._runs.finish(session_id)

    async def _wait(
        self,
        run: ActiveRun,
        process: asyncio.subprocess.Process,
        sink: Sink,
        timeout: float,
    ) -> ExecutionResult:
        buffers = {Channel.STDOUT: bytearray(), Channel.STDERR: bytearray()}

        async def pump(stream: asyncio.StreamReader, channel: Channel) -> None:
            while True:
                data = await stream.read(READ_SIZE)
                if not data:
                    return
                buffers[channel].extend(data)
                await sink.write(OutputChunk(channel, data, run.session_id))

        async def complete() -> int:
            await asyncio.gather(
                pump(process.stdout, Channel.STDOUT),
                pump(process.stderr, Channel.STDERR),
            )
            return await process.wait()

        with Timer() as timer:
            try:
                if timeout:
                    exit_code = await asyncio.wait_for(complete(), timeout)
                else:
                    exit_code = await complete()
            except asyncio.TimeoutError:
                await self._terminate(process, sig=signal.SIGKILL)
                logger.warning(
                    "Command timed out",
                    context={"session_id": run.session_id, "timeout": timeout},
                )
                raise OperationTimeoutError("exec", timeout) from None
            except BaseException:
                await self._terminate(process, sig=signal.SIGKILL)
                raise

        emit_timer("execution.native", timer.duration_ms, {"exit_code": str(exit_code)})
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

    async def _terminate(
        self,
        process: asyncio.subprocess.Process,
        sig: signal.Signals = signal.SIGTERM,
    ) -> None:
        """Signal the run's whole process group, escalating to SIGKILL."""
        if process.returncode is not None:
            return
        try:
            os.killpg(process.pid, sig)
        except ProcessLookupError:
            return
        except PermissionError:
            process.send_signal(sig)

        if sig is signal.SIGKILL:
            return
        try:
            await asyncio.wait_for(asyncio.shield(process.wait()), KILL_GRACE_SECONDS)
        except asyncio.TimeoutError:
            try:
                os.killpg(process.pid, signal.SIGKILL)
            except ProcessLookupError:
                pass

    async def abort(self, session_id: str) -> bool:
        aborted = await self._runs.abort(session_id)
        if aborted:
            logger.info("Command aborted", context={"session_id": session_id})
        return aborted

    def is_active(self, session_id: str) -> bool:
        return self._runs.is_active(session_id)

    def list_active(self) -> list[str]:
        return self._runs.session_ids()
