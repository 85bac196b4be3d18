"""Live exec stream handles returned by ``SandboxManager.exec``."""

import asyncio
from collections.abc import AsyncIterator
from dataclasses import dataclass

from sandbox_core.exceptions import OperationTimeoutError
from sandbox_core.protocols.engine import ExecSession
from sandbox_core.sandbox.demux import Channel, StreamDemultiplexer, StreamFrame

EXIT_CODE_POLLS = 40
EXIT_CODE_POLL_INTERVAL = 0.05


@dataclass
class ExecOutput:
    """Fully collected output of a finished command."""

    stdout: bytes
    stderr: bytes
    exit_code: int | None

    @property
    def ok(self) -> bool:
        return self.exit_code == 0

    @property
    def stdout_text(self) -> str:
        return self.stdout.decode("utf-8", errors="replace")

    @property
    def stderr_text(self) -> str:
        return self.stderr.decode("utf-8", errors="replace")


class ExecStream:
    """Demultiplexed view over a running exec.

    Returned before the command completes. Reading is bounded by
    ``idle_timeout`` per chunk so a stalled command cannot pin the
    connection forever.
    """

    def __init__(
        self,
        session: ExecSession,
        tenant_id: str,
        idle_timeout: float | None = None,
    ) -> None:
        self._session = session
        self.tenant_id = tenant_id
        self.idle_timeout = idle_timeout or None
        self._closed = False

    @property
    def exec_id(self) -> str:
        return self._session.exec_id

    async def _read(self) -> bytes:
        if self.idle_timeout is None:
            return await self._session.read()
        try:
            return await asyncio.wait_for(self._session.read(), self.idle_timeout)
        except asyncio.TimeoutError:
            raise OperationTimeoutError("exec stream read", self.idle_timeout) from None

    async def frames(self) -> AsyncIterator[StreamFrame]:
        """Yield frames in arrival order until the command's output ends."""
        demux = StreamDemultiplexer()
        while True:
            chunk = await self._read()
            if not chunk:
                break
            for frame in demux.feed(chunk):
                yield frame
        demux.close()

    async def exit_code(self) -> int | None:
        """Exit code of the finished command.

        The engine can report the exec as running for a moment after its
        output ends, so this polls briefly.
        """
        for _ in range(EXIT_CODE_POLLS):
            code = await self._session.exit_code()
            if code is not None:
                return code
            await asyncio.sleep(EXIT_CODE_POLL_INTERVAL)
        return None

    async def collect(self, timeout: float | None = None, operation: str = "exec") -> ExecOutput:
        """Read everything, wait for the exit code and release the stream.

        Raises:
            OperationTimeoutError: If the command does not finish in time
        """
        buffers = {Channel.STDOUT: bytearray(), Channel.STDERR: bytearray()}

        async def drain() -> int | None:
            async for frame in self.frames():
                buffers[frame.channel].extend(frame.payload)
            return await self.exit_code()

        try:
            if timeout:
                exit_code = await asyncio.wait_for(drain(), timeout)
            else:
                exit_code = await drain()
        except asyncio.TimeoutError:
            raise OperationTimeoutError(operation, timeout or 0) from None
        finally:
            await self.close()

        return ExecOutput(
            stdout=bytes(buffers[Channel.STDOUT]),
            stderr=bytes(buffers[Channel.STDERR]),
            exit_code=exit_code,
        )

    async def close(self) -> None:
        if not self._closed:
            self._closed = True
            await self._session.close()
