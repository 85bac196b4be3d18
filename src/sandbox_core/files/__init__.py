"""Workspace file operations (native and sandboxed)."""

from sandbox_core.files.listing import parse_ls_output
from sandbox_core.files.native import NativeFileOperations
from sandbox_core.files.sandboxed import SandboxedFileOperations

__all__ = [
    "NativeFileOperations",
    "SandboxedFileOperations",
    "parse_ls_output",
]
