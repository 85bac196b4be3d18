"""Behavior shared by the native and sandboxed execution engines."""

import asyncio
import time
from pathlib import Path

import pytest

from sandbox_core.config import Config
from sandbox_core.exceptions import ExecFailedError, OperationTimeoutError, PathTraversalError
from sandbox_core.execution import (
    BufferSink,
    CallbackSink,
    NativeExecutionEngine,
    SandboxedExecutionEngine,
)
from sandbox_core.protocols.execution import ExecutionEngine, ExecutionRequest, OutputChunk
from sandbox_core.sandbox.demux import Channel
from sandbox_core.sandbox.manager import SandboxManager
from conftest import TENANT


@pytest.fixture(params=["native", "sandboxed"])
def executor(request, manager: SandboxManager, workspace: Path, config: Config) -> ExecutionEngine:
    if request.param == "native":
        return NativeExecutionEngine(TENANT, workspace, config.timeouts)
    return SandboxedExecutionEngine(manager, TENANT, config)


async def wait_until_active(executor: ExecutionEngine, session_id: str) -> None:
    for _ in range(100):
        if executor.is_active(session_id):
            return
        await asyncio.sleep(0.01)
    raise AssertionError(f"{session_id} never became active")


class TestExecute:
    """Tests for execute."""

    @pytest.mark.asyncio
    async def test_success(self, executor: ExecutionEngine):
        result = await executor.execute(ExecutionRequest("echo hello; echo oops >&2"))

        assert result.success
        assert result.exit_code == 0
        assert result.error is None
        assert result.output == "hello\n"
        assert result.stderr == "oops\n"
        assert result.session_id
        assert result.duration_ms >= 0

    @pytest.mark.asyncio
    async def test_non_zero_exit(self, executor: ExecutionEngine):
        result = await executor.execute(ExecutionRequest("echo partial; exit 3"))

        assert not result.success
        assert result.exit_code == 3
        assert result.error == "Command exited with code 3"
        assert result.output == "partial\n"
        with pytest.raises(ExecFailedError):
            result.raise_for_status()

    @pytest.mark.asyncio
    async def test_cwd_and_env(self, executor: ExecutionEngine, workspace: Path):
        (workspace / "sub").mkdir()

        result = await executor.execute(
            ExecutionRequest('pwd; echo "$GREETING"', cwd="sub", env={"GREETING": "hi there"})
        )

        assert result.output.splitlines() == [str(workspace / "sub"), "hi there"]

    @pytest.mark.asyncio
    async def test_default_cwd_is_workspace(self, executor: ExecutionEngine, workspace: Path):
        result = await executor.execute(ExecutionRequest("pwd"))
        assert result.output.strip() == str(workspace)

    @pytest.mark.asyncio
    async def test_cwd_outside_workspace_rejected(self, executor: ExecutionEngine):
        with pytest.raises(PathTraversalError):
            await executor.execute(ExecutionRequest("pwd", cwd="../.."))

    @pytest.mark.asyncio
    async def test_chunks_streamed_in_order(self, executor: ExecutionEngine):
        """Chunks reach the sink while the command is still running."""
        arrivals: list[tuple[str, float]] = []

        async def record(chunk: OutputChunk) -> None:
            arrivals.append((chunk.text, time.monotonic()))

        sink = CallbackSink(record)
        result = await executor.execute(
            ExecutionRequest("echo first; sleep 0.5; echo second", session_id="stream", sink=sink)
        )

        assert "".join(text for text, _ in arrivals) == "first\nsecond\n"
        assert arrivals[-1][1] - arrivals[0][1] >= 0.3
        assert result.output == "first\nsecond\n"

    @pytest.mark.asyncio
    async def test_channels_tagged(self, executor: ExecutionEngine):
        sink = BufferSink()

        await executor.execute(ExecutionRequest("echo out; echo err >&2", session_id="s", sink=sink))

        assert sink.stdout == "out\n"
        assert sink.stderr == "err\n"
        assert {c.channel for c in sink.chunks} == {Channel.STDOUT, Channel.STDERR}
        assert {c.session_id for c in sink.chunks} == {"s"}

    @pytest.mark.asyncio
    async def test_large_output(self, executor: ExecutionEngine):
        result = await executor.execute(ExecutionRequest("seq 1 20000"))
        lines = result.output.splitlines()
        assert len(lines) == 20000
        assert lines[-1] == "20000"

    @pytest.mark.asyncio
    async def test_timeout(self, executor: ExecutionEngine):
        started = time.monotonic()

        with pytest.raises(OperationTimeoutError):
            await executor.execute(ExecutionRequest("sleep 30", session_id="slow", timeout=0.3))

        assert time.monotonic() - started < 10
        assert not executor.is_active("slow")


class TestAbort:
    """Tests for abort and the active-run registry."""

    @pytest.mark.asyncio
    async def test_abort_running_command(self, executor: ExecutionEngine):
        started = asyncio.Event()

        async def on_output(chunk: OutputChunk) -> None:
            started.set()

        task = asyncio.create_task(
            executor.execute(
                ExecutionRequest("echo started; sleep 30", session_id="run-1", sink=CallbackSink(on_output))
            )
        )
        await asyncio.wait_for(started.wait(), 10)
        assert executor.list_active() == ["run-1"]

        assert await executor.abort("run-1") is True
        result = await asyncio.wait_for(task, 10)

        assert result.aborted
        assert not result.success
        assert result.error == "Execution aborted"
        assert result.output == "started\n"
        assert not executor.is_active("run-1")
        assert executor.list_active() == []

    @pytest.mark.asyncio
    async def test_abort_unknown_session(self, executor: ExecutionEngine):
        assert await executor.abort("nothing") is False

    @pytest.mark.asyncio
    async def test_one_command_per_session(self, executor: ExecutionEngine):
        task = asyncio.create_task(executor.execute(ExecutionRequest("sleep 30", session_id="busy")))
        await wait_until_active(executor, "busy")

        with pytest.raises(ExecFailedError, match="already has a running command"):
            await executor.execute(ExecutionRequest("echo", session_id="busy"))

        await executor.abort("busy")
        await asyncio.wait_for(task, 10)

    @pytest.mark.asyncio
    async def test_parallel_sessions(self, executor: ExecutionEngine):
        results = await asyncio.gather(
            *(executor.execute(ExecutionRequest(f"echo {i}", session_id=f"s{i}")) for i in range(5))
        )
        assert [r.output for r in results] == [f"{i}\n" for i in range(5)]
