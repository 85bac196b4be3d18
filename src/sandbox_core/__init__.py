"""Sandbox Core - per-tenant container sandboxes with dual-mode capability adapters."""

from sandbox_core.adapters import AdapterFactory, TenantAdapters
from sandbox_core.caching import KeyedLock, SingleFlight, TTLCache
from sandbox_core.config import AdapterMode, Config
from sandbox_core.exceptions import (
    ExecFailedError,
    FileOperationError,
    FileTooLargeError,
    OperationTimeoutError,
    PathNotFoundError,
    PathPermissionError,
    PathTraversalError,
    SandboxCoreError,
    SandboxCreateError,
    SandboxNotReadyError,
    SandboxNotRunningError,
    SessionNotFoundError,
)
from sandbox_core.observability import (
    LogLevel,
    StructuredLogger,
    TenantContext,
    Timer,
    configure_logging,
    emit_counter,
    emit_metric,
    emit_timer,
    get_logger,
    register_metric_callback,
)
from sandbox_core.protocols.execution import ExecutionRequest, ExecutionResult
from sandbox_core.runtime import SandboxRuntime
from sandbox_core.sandbox.manager import SandboxManager
from sandbox_core.sandbox.reaper import IdleReaper

__version__ = "0.1.0"
__all__ = [
    # Core
    "AdapterFactory",
    "AdapterMode",
    "Config",
    "ExecutionRequest",
    "ExecutionResult",
    "IdleReaper",
    "SandboxManager",
    "SandboxRuntime",
    "TenantAdapters",
    # Caching
    "KeyedLock",
    "SingleFlight",
    "TTLCache",
    # Errors
    "ExecFailedError",
    "FileOperationError",
    "FileTooLargeError",
    "OperationTimeoutError",
    "PathNotFoundError",
    "PathPermissionError",
    "PathTraversalError",
    "SandboxCoreError",
    "SandboxCreateError",
    "SandboxNotReadyError",
    "SandboxNotRunningError",
    "SessionNotFoundError",
    # Observability
    "LogLevel",
    "StructuredLogger",
    "TenantContext",
    "Timer",
    "configure_logging",
    "emit_counter",
    "emit_metric",
    "emit_timer",
    "get_logger",
    "register_metric_callback",
]
