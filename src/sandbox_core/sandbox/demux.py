"""Demultiplexer for the container engine's framed exec output.

Without a TTY, the engine multiplexes stdout and stderr onto one byte stream.
Each frame is an 8-byte header followed by its payload::

    byte 0      stream type (0 stdin, 1 stdout, 2 stderr, 3 engine error)
    bytes 1..3  reserved
    bytes 4..7  payload length, big-endian uint32

Input arrives in arbitrarily split chunks, so the parser keeps its partial
buffer and state between ``feed`` calls.
"""

import struct
from collections.abc import Iterable
from dataclasses import dataclass
from enum import Enum

from sandbox_core.exceptions import StreamProtocolError

HEADER_SIZE = 8
_HEADER = struct.Struct(">B3xI")


class Channel(str, Enum):
    """Logical output channel of an exec'd process."""

    STDOUT = "stdout"
    STDERR = "stderr"


_STREAM_TYPES: dict[int, Channel] = {
    0: Channel.STDOUT,
    1: Channel.STDOUT,
    2: Channel.STDERR,
    3: Channel.STDERR,
}


@dataclass(frozen=True)
class StreamFrame:
    """One complete frame routed to its channel."""

    channel: Channel
    payload: bytes


class ParserState(str, Enum):
    AWAITING_HEADER = "awaiting_header"
    AWAITING_PAYLOAD = "awaiting_payload"


class StreamDemultiplexer:
    """Incremental parser for one exec connection.

    Example:
        demux = StreamDemultiplexer()
        for chunk in chunks:
            for frame in demux.feed(chunk):
                route(frame.channel, frame.payload)
        demux.close()
    """

    def __init__(self) -> None:
        self._buffer = bytearray()
        self.state = ParserState.AWAITING_HEADER
        self._channel: Channel | None = None
        self._length = 0

    @property
    def pending_bytes(self) -> int:
        """Bytes buffered but not yet emitted."""
        return len(self._buffer)

    def feed(self, data: bytes) -> list[StreamFrame]:
        """Consume a chunk and return every frame it completes, in order."""
        self._buffer.extend(data)
        frames: list[StreamFrame] = []

        while True:
            if self.state is ParserState.AWAITING_HEADER:
                if len(self._buffer) < HEADER_SIZE:
                    break
                stream_type, length = _HEADER.unpack_from(self._buffer)
                channel = _STREAM_TYPES.get(stream_type)
                if channel is None:
                    raise StreamProtocolError(f"Unknown stream type {stream_type} in frame header")
                del self._buffer[:HEADER_SIZE]
                self._channel = channel
                self._length = length
                self.state = ParserState.AWAITING_PAYLOAD

            if len(self._buffer) < self._length:
                break

            payload = bytes(self._buffer[: self._length])
            del self._buffer[: self._length]
            if payload:
                assert self._channel is not None
                frames.append(StreamFrame(self._channel, payload))
            self._channel = None
            self._length = 0
            self.state = ParserState.AWAITING_HEADER

        return frames

    def close(self) -> None:
        """Signal end of input.

        Raises:
            StreamProtocolError: If the stream ended inside a frame
        """
        if self.state is ParserState.AWAITING_PAYLOAD or self._buffer:
            raise StreamProtocolError(
                f"Stream ended mid-frame ({self.state.value}, {len(self._buffer)} bytes buffered)"
            )


def encode_frame(channel: Channel, payload: bytes) -> bytes:
    """Build one frame in the engine's wire format."""
    stream_type = 1 if channel is Channel.STDOUT else 2
    return _HEADER.pack(stream_type, len(payload)) + payload


def demultiplex(chunks: Iterable[bytes]) -> tuple[bytes, bytes]:
    """Split a complete framed byte sequence into (stdout, stderr)."""
    demux = StreamDemultiplexer()
    out = {Channel.STDOUT: bytearray(), Channel.STDERR: bytearray()}
    for chunk in chunks:
        for frame in demux.feed(chunk):
            out[frame.channel].extend(frame.payload)
    demux.close()
    return bytes(out[Channel.STDOUT]), bytes(out[Channel.STDERR])
