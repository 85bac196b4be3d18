"""Command execution engines (native and sandboxed)."""

from sandbox_core.execution.native import NativeExecutionEngine
from sandbox_core.execution.sandboxed import SandboxedExecutionEngine
from sandbox_core.execution.sink import BufferSink, CallbackSink, QueueSink

__all__ = [
    "BufferSink",
    "CallbackSink",
    "NativeExecutionEngine",
    "QueueSink",
    "SandboxedExecutionEngine",
]
