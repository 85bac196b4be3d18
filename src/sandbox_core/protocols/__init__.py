"""Protocol interfaces for pluggable backends and capability adapters."""

from sandbox_core.protocols.database import Database, Row
from sandbox_core.protocols.engine import ContainerEngine, ContainerInfo, ContainerSpec, ExecSession
from sandbox_core.protocols.execution import (
    ExecutionEngine,
    ExecutionRequest,
    ExecutionResult,
    OutputChunk,
    Sink,
)
from sandbox_core.protocols.files import FileContent, FileInfo, FileNode, FileOperations
from sandbox_core.protocols.sessions import (
    MessagePage,
    SearchResult,
    SessionDiscovery,
    SessionPage,
    SessionSummary,
)

__all__ = [
    "ContainerEngine",
    "ContainerInfo",
    "ContainerSpec",
    "Database",
    "ExecSession",
    "ExecutionEngine",
    "ExecutionRequest",
    "ExecutionResult",
    "FileContent",
    "FileInfo",
    "FileNode",
    "FileOperations",
    "MessagePage",
    "OutputChunk",
    "Row",
    "SearchResult",
    "SessionDiscovery",
    "SessionPage",
    "SessionSummary",
    "Sink",
]
