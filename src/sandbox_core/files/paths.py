"""Workspace path validation shared by both file adapters.

Both adapters accept workspace-relative paths (or absolute paths inside the
workspace) and reject anything that could escape it, before touching the
filesystem or building a shell command. Identical checks on both sides keep
the two modes' error behavior the same.
"""

import posixpath
import re
from urllib.parse import unquote

from sandbox_core.exceptions import PathTraversalError

_CONTROL_CHARS = re.compile("[\x00-\x1f\x7f\ufffd]")


def check_path(path: str) -> str:
    """Reject traversal sequences, NUL bytes and backslashes.

    Args:
        path: Caller-supplied path

    Returns:
        The path unchanged

    Raises:
        PathTraversalError: If the path is unsafe
    """
    for candidate in (path, unquote(path)):
        if "\x00" in candidate or "\\" in candidate:
            raise PathTraversalError(f"Invalid path: {path!r}", path)
        if ".." in candidate.split("/"):
            raise PathTraversalError(f"Path traversal rejected: {path}", path)
    return path


def join_workspace(root: str, path: str) -> str:
    """Resolve ``path`` against a POSIX workspace root.

    Args:
        root: Absolute workspace root (e.g. ``/workspace``)
        path: Relative path, or absolute path under ``root``

    Returns:
        Normalized absolute path inside ``root``

    Raises:
        PathTraversalError: If the path is unsafe or outside ``root``
    """
    check_path(path)
    root = posixpath.normpath(root)
    if posixpath.isabs(path):
        full = posixpath.normpath(path)
    else:
        full = posixpath.normpath(posixpath.join(root, path or "."))
    if full != root and not full.startswith(root.rstrip("/") + "/"):
        raise PathTraversalError(f"Path outside workspace: {path}", path)
    return full


def relative_path(root: str, full: str) -> str:
    """Workspace-relative form of an absolute path ("." for the root)."""
    relative = posixpath.relpath(posixpath.normpath(full), posixpath.normpath(root))
    return "." if relative == "." else relative


def clean_name(name: str) -> str:
    """Strip control characters and replacement characters from a name."""
    return _CONTROL_CHARS.sub("", name)


def is_hidden(name: str) -> bool:
    return name.startswith(".")
