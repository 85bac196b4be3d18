"""FileOperations protocol for workspace file access."""

from dataclasses import dataclass
from typing import Any, Protocol, runtime_checkable


@dataclass
class FileInfo:
    """A file or directory entry."""

    name: str
    path: str  # relative to the workspace root, POSIX form
    type: str  # file | directory | symlink | other
    size: int = 0
    modified: int | None = None
    permissions: str | None = None
    target: str | None = None  # symlink target, when known

    @property
    def is_directory(self) -> bool:
        return self.type == "directory"

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        data = {
            "name": self.name,
            "path": self.path,
            "type": self.type,
            "size": self.size,
            "modified": self.modified,
            "permissions": self.permissions,
        }
        if self.target is not None:
            data["target"] = self.target
        return data


@dataclass
class FileNode(FileInfo):
    """A tree entry; ``children`` is a list for directories and None for files."""

    children: list["FileNode"] | None = None

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        data["children"] = (
            [child.to_dict() for child in self.children] if self.children is not None else None
        )
        return data


@dataclass(frozen=True)
class FileContent:
    """File content as returned by ``read``."""

    path: str
    content: str
    encoding: str  # utf-8 | base64
    size: int


@runtime_checkable
class FileOperations(Protocol):
    """Workspace file operations (native filesystem or inside a sandbox)."""

    async def read(self, path: str, encoding: str = "utf-8") -> FileContent:
        """Read a file. ``encoding="base64"`` returns base64 text for binary content."""
        ...

    async def write(self, path: str, content: str, encoding: str = "utf-8") -> FileInfo:
        """Create or replace a file, creating parent directories."""
        ...

    async def tree(
        self,
        path: str = ".",
        max_depth: int | None = None,
        include_hidden: bool = False,
    ) -> FileNode:
        """Recursive listing rooted at ``path``."""
        ...

    async def stat(self, path: str) -> FileInfo:
        ...

    async def delete(self, path: str) -> None:
        """Delete a file or directory tree."""
        ...

    async def exists(self, path: str) -> bool:
        ...

    async def mkdir(self, path: str) -> FileInfo:
        """Create a directory and any missing parents."""
        ...

    async def list_directory(self, path: str = ".", include_hidden: bool = False) -> list[FileInfo]:
        """Immediate children of a directory, directories first."""
        ...
