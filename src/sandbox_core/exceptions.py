"""Sandbox Core exceptions."""


class SandboxCoreError(Exception):
    """Base exception for sandbox-core."""

    pass


class ConfigError(SandboxCoreError):
    """Configuration error."""

    pass


class NotFoundError(SandboxCoreError):
    """Resource not found."""

    pass


class SessionNotFoundError(NotFoundError):
    """Session transcript not found."""

    def __init__(self, session_id: str, project: str | None = None) -> None:
        self.session_id = session_id
        self.project = project
        where = f" in project {project}" if project else ""
        super().__init__(f"Session not found: {session_id}{where}")


class ContainerEngineError(SandboxCoreError):
    """The container engine rejected or failed a call."""

    pass


class ContainerNotFoundError(ContainerEngineError):
    """The container engine has no such container."""

    pass


class SandboxError(SandboxCoreError):
    """Sandbox lifecycle error with tenant and operation context."""

    def __init__(
        self,
        message: str,
        tenant_id: str | None = None,
        operation: str | None = None,
    ) -> None:
        self.tenant_id = tenant_id
        self.operation = operation
        self.message = message
        prefix = []
        if operation:
            prefix.append(operation)
        if tenant_id:
            prefix.append(f"tenant={tenant_id}")
        text = f"[{' '.join(prefix)}] {message}" if prefix else message
        super().__init__(text)


class SandboxNotReadyError(SandboxError):
    """Sandbox is still being created.

    Transient: callers should return an empty or pending result and retry
    later instead of reporting a failure.
    """

    pass


class SandboxCreateError(SandboxError):
    """Sandbox could not be created or started."""

    pass


class SandboxNotRunningError(SandboxError):
    """Sandbox exists but is not running."""

    pass


class SandboxNotFoundError(SandboxError):
    """Tenant has no sandbox."""

    pass


class ExecFailedError(SandboxCoreError):
    """A command could not be run or exited unsuccessfully."""

    def __init__(
        self,
        message: str,
        exit_code: int | None = None,
        stderr: str = "",
    ) -> None:
        self.exit_code = exit_code
        self.stderr = stderr
        super().__init__(message)


class StreamProtocolError(ExecFailedError):
    """Malformed multiplexed exec stream."""

    pass


class OperationTimeoutError(SandboxCoreError):
    """An operation exceeded its per-operation timeout."""

    def __init__(self, operation: str, timeout: float) -> None:
        self.operation = operation
        self.timeout = timeout
        super().__init__(f"{operation} timed out after {timeout:g}s")


class FileOperationError(SandboxCoreError):
    """File operation failed.

    The ``code`` attribute is identical for native and sandboxed adapters,
    so callers never need to know which mode produced the error.
    """

    code = "file_error"

    def __init__(self, message: str, path: str | None = None) -> None:
        self.path = path
        super().__init__(message)


class PathNotFoundError(FileOperationError):
    """File or directory does not exist."""

    code = "not_found"


class PathPermissionError(FileOperationError):
    """Access to the path is not permitted."""

    code = "permission_denied"


class PathTraversalError(FileOperationError):
    """Path escapes the workspace root."""

    code = "path_traversal"


class FileTooLargeError(FileOperationError):
    """File exceeds the configured size limit."""

    code = "too_large"

    def __init__(self, path: str, size: int, limit: int) -> None:
        self.size = size
        self.limit = limit
        super().__init__(f"File too large: {path} ({size} bytes, limit {limit})", path)
