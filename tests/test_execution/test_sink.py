"""Tests for output sinks and run bookkeeping."""

import asyncio

import pytest

from sandbox_core.exceptions import ExecFailedError
from sandbox_core.execution.runs import ActiveRun, ActiveRuns, build_result
from sandbox_core.execution.sink import BufferSink, CallbackSink, QueueSink
from sandbox_core.protocols.execution import ExecutionResult, OutputChunk, Sink
from sandbox_core.sandbox.demux import Channel


def chunk(data: bytes, channel: Channel = Channel.STDOUT) -> OutputChunk:
    return OutputChunk(channel, data, "s1")


class TestSinks:
    """Tests for the sink implementations."""

    def test_protocol(self):
        assert isinstance(BufferSink(), Sink)
        assert isinstance(QueueSink(), Sink)
        assert not BufferSink.is_streaming
        assert QueueSink.is_streaming

    @pytest.mark.asyncio
    async def test_buffer_sink(self):
        sink = BufferSink()
        await sink.write(chunk(b"out "))
        await sink.write(chunk(b"err", Channel.STDERR))
        await sink.write(chunk(b"more"))

        assert sink.stdout == "out more"
        assert sink.stderr == "err"
        assert len(sink.chunks) == 3

    @pytest.mark.asyncio
    async def test_queue_sink_iteration(self):
        sink = QueueSink()

        async def produce():
            for i in range(3):
                await sink.write(chunk(str(i).encode()))
            await sink.close()

        producer = asyncio.create_task(produce())
        received = [c.text async for c in sink]
        await producer

        assert received == ["0", "1", "2"]

    @pytest.mark.asyncio
    async def test_queue_sink_backpressure(self):
        sink = QueueSink(maxsize=1)
        await sink.write(chunk(b"a"))

        blocked = asyncio.create_task(sink.write(chunk(b"b")))
        await asyncio.sleep(0.01)
        assert not blocked.done()

        iterator = sink.__aiter__()
        assert (await iterator.__anext__()).text == "a"
        await blocked

    @pytest.mark.asyncio
    async def test_queue_sink_drops_after_close(self):
        sink = QueueSink()
        await sink.close()
        await sink.write(chunk(b"late"))
        assert [c async for c in sink] == []

    @pytest.mark.asyncio
    async def test_callback_sink(self):
        seen = []

        async def callback(c: OutputChunk) -> None:
            seen.append(c.text)

        sink = CallbackSink(callback)
        await sink.write(chunk(b"hi"))
        assert seen == ["hi"]


class TestActiveRuns:
    """Tests for ActiveRuns and build_result."""

    def test_one_run_per_session(self):
        runs = ActiveRuns()
        runs.add(ActiveRun("s1", "sleep 1"))

        with pytest.raises(ExecFailedError, match="already has a running command"):
            runs.add(ActiveRun("s1", "echo"))

        runs.finish("s1")
        runs.add(ActiveRun("s1", "echo"))

    @pytest.mark.asyncio
    async def test_abort_invokes_cancel(self):
        runs = ActiveRuns()
        cancelled = []

        async def cancel() -> None:
            cancelled.append(True)

        run = ActiveRun("s1", "sleep 10", cancel=cancel)
        runs.add(run)

        assert await runs.abort("s1") is True
        assert run.aborted
        assert cancelled == [True]
        assert await runs.abort("missing") is False

    def test_finish_sets_done(self):
        runs = ActiveRuns()
        run = ActiveRun("s1", "true")
        runs.add(run)
        runs.finish("s1")

        assert run.done.is_set()
        assert not runs.is_active("s1")
        assert runs.session_ids() == []

    @pytest.mark.parametrize(
        "exit_code,aborted,success,error",
        [
            (0, False, True, None),
            (2, False, False, "Command exited with code 2"),
            (None, False, False, "Exit code unavailable"),
            (0, True, False, "Execution aborted"),
            (143, True, False, "Execution aborted"),
        ],
    )
    def test_build_result(self, exit_code, aborted, success, error):
        run = ActiveRun("s1", "cmd", aborted=aborted)

        result = build_result(run, b"out", b"err", exit_code, 12.5)

        assert result.success is success
        assert result.error == error
        assert result.output == "out"
        assert result.stderr == "err"
        assert result.session_id == "s1"
        assert result.duration_ms == 12.5

    def test_raise_for_status(self):
        ok = ExecutionResult(success=True, output="", exit_code=0)
        assert ok.raise_for_status() is ok

        failed = ExecutionResult(success=False, output="", exit_code=3, stderr="boom")
        with pytest.raises(ExecFailedError) as exc_info:
            failed.raise_for_status()
        assert exc_info.value.exit_code == 3
        assert exc_info.value.stderr == "boom"
