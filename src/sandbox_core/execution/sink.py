"""Sinks that receive command output chunks."""

import asyncio
from collections.abc import AsyncIterator
from typing import Awaitable, Callable

from sandbox_core.protocols.execution import OutputChunk
from sandbox_core.sandbox.demux import Channel


class BufferSink:
    """Accumulates output for request/response callers."""

    is_streaming = False

    def __init__(self) -> None:
        self.chunks: list[OutputChunk] = []

    async def write(self, chunk: OutputChunk) -> None:
        self.chunks.append(chunk)

    def _joined(self, channel: Channel) -> bytes:
        return b"".join(c.data for c in self.chunks if c.channel is channel)

    @property
    def stdout(self) -> str:
        return self._joined(Channel.STDOUT).decode("utf-8", errors="replace")

    @property
    def stderr(self) -> str:
        return self._joined(Channel.STDERR).decode("utf-8", errors="replace")


class QueueSink:
    """Pushes chunks into a bounded queue for a live consumer.

    A full queue applies backpressure to the producer. ``close()`` ends
    iteration for the consumer.

    Example:
        sink = QueueSink()
        task = asyncio.create_task(engine.execute(ExecutionRequest(cmd, sink=sink)))
        async for chunk in sink:
            await websocket.send_text(chunk.text)
    """

    is_streaming = True

    def __init__(self, maxsize: int = 256) -> None:
        self._queue: asyncio.Queue[OutputChunk | None] = asyncio.Queue(maxsize=maxsize)
        self._closed = False

    async def write(self, chunk: OutputChunk) -> None:
        if self._closed:
            return
        await self._queue.put(chunk)

    async def close(self) -> None:
        if not self._closed:
            self._closed = True
            await self._queue.put(None)

    def __aiter__(self) -> AsyncIterator[OutputChunk]:
        return self._iterate()

    async def _iterate(self) -> AsyncIterator[OutputChunk]:
        while True:
            chunk = await self._queue.get()
            if chunk is None:
                return
            yield chunk


class CallbackSink:
    """Forwards each chunk to an async callback (e.g. a websocket send)."""

    is_streaming = True

    def __init__(self, callback: Callable[[OutputChunk], Awaitable[None]]) -> None:
        self._callback = callback

    async def write(self, chunk: OutputChunk) -> None:
        await self._callback(chunk)
