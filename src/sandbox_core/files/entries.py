"""Content encoding and tree assembly shared by both file adapters."""

import base64
import binascii
import posixpath

from sandbox_core.exceptions import FileOperationError, FileTooLargeError
from sandbox_core.protocols.files import FileContent, FileInfo, FileNode

ENCODINGS = ("utf-8", "base64")


def check_encoding(encoding: str) -> str:
    if encoding not in ENCODINGS:
        raise FileOperationError(f"Unsupported encoding: {encoding}")
    return encoding


def decode_content(path: str, content: str, encoding: str, limit: int) -> bytes:
    """Bytes to write for ``content`` in the given encoding.

    Raises:
        FileOperationError: Invalid base64 or unsupported encoding
        FileTooLargeError: Decoded content exceeds ``limit``
    """
    check_encoding(encoding)
    if encoding == "base64":
        try:
            data = base64.b64decode(content, validate=True)
        except (binascii.Error, ValueError) as e:
            raise FileOperationError(f"Invalid base64 content for {path}: {e}", path) from e
    else:
        data = content.encode("utf-8")
    if len(data) > limit:
        raise FileTooLargeError(path, len(data), limit)
    return data


def encode_content(path: str, data: bytes, encoding: str) -> FileContent:
    """Build a ``FileContent``; non-UTF-8 data is returned as base64."""
    check_encoding(encoding)
    if encoding == "utf-8":
        try:
            return FileContent(path=path, content=data.decode("utf-8"), encoding="utf-8", size=len(data))
        except UnicodeDecodeError:
            pass
    return FileContent(
        path=path,
        content=base64.b64encode(data).decode("ascii"),
        encoding="base64",
        size=len(data),
    )


def sort_key(entry: FileInfo) -> tuple[bool, str]:
    """Directories first, then by name."""
    return (not entry.is_directory, entry.name)


def sort_entries(entries: list[FileInfo]) -> list[FileInfo]:
    return sorted(entries, key=sort_key)


def _node(entry: FileInfo) -> FileNode:
    return FileNode(
        name=entry.name,
        path=entry.path,
        type=entry.type,
        size=entry.size,
        modified=entry.modified,
        permissions=entry.permissions,
        target=entry.target,
        children=[] if entry.is_directory else None,
    )


def build_tree(root: FileInfo, entries: list[FileInfo], max_entries: int) -> FileNode:
    """Assemble a sorted tree from a flat list of entries below ``root``.

    Entries are attached to their parent by path, children are sorted
    directories first then by name, and at most ``max_entries`` entries are
    kept, counted in pre-order.
    """
    by_parent: dict[str, list[FileInfo]] = {}
    for entry in entries:
        parent = posixpath.dirname(entry.path) or "."
        by_parent.setdefault(parent, []).append(entry)

    root_node = _node(root)
    remaining = max_entries

    def attach(node: FileNode) -> None:
        nonlocal remaining
        for entry in sort_entries(by_parent.get(node.path, [])):
            if remaining <= 0:
                return
            remaining -= 1
            child = _node(entry)
            node.children.append(child)
            if child.children is not None:
                attach(child)

    if root_node.children is not None:
        attach(root_node)
    return root_node
