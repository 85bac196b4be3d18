"""Native file operations on the host workspace directory."""

import asyncio
import atexit
import os
import shutil
import stat as stat_module
import uuid
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from typing import Callable, TypeVar

from sandbox_core.config import FilesConfig, TimeoutsConfig
from sandbox_core.exceptions import (
    FileOperationError,
    FileTooLargeError,
    OperationTimeoutError,
    PathNotFoundError,
    PathPermissionError,
    PathTraversalError,
)
from sandbox_core.files.entries import build_tree, decode_content, encode_content, sort_entries
from sandbox_core.files.paths import is_hidden, join_workspace, relative_path
from sandbox_core.observability import get_logger
from sandbox_core.protocols.files import FileContent, FileInfo, FileNode

logger = get_logger(__name__)

T = TypeVar("T")

# Thread pool for blocking file I/O - configurable via environment
_max_workers = int(os.environ.get("SANDBOX_FILE_WORKERS", "16"))
_executor = ThreadPoolExecutor(max_workers=_max_workers)

atexit.register(_executor.shutdown, wait=False)


def _entry_type(mode: int) -> str:
    if stat_module.S_ISLNK(mode):
        return "symlink"
    if stat_module.S_ISDIR(mode):
        return "directory"
    if stat_module.S_ISREG(mode):
        return "file"
    return "other"


def _info(name: str, path: str, st: os.stat_result) -> FileInfo:
    return FileInfo(
        name=name,
        path=path,
        type=_entry_type(st.st_mode),
        size=st.st_size,
        modified=int(st.st_mtime),
        permissions=stat_module.filemode(st.st_mode),
    )


class NativeFileOperations:
    """File operations directly on the tenant's workspace directory.

    Every call is validated against the workspace root, including after
    symlink resolution, and runs in a thread pool under its operation's
    timeout.
    """

    def __init__(
        self,
        workspace: str | Path,
        files: FilesConfig | None = None,
        timeouts: TimeoutsConfig | None = None,
    ) -> None:
        """Initialize native file operations.

        Args:
            workspace: Host workspace directory
            files: Size and tree limits
            timeouts: Per-operation timeouts
        """
        self.workspace = Path(workspace)
        self.files = files or FilesConfig()
        self.timeouts = timeouts or TimeoutsConfig()

    @property
    def root(self) -> Path:
        return self.workspace.resolve()

    def _resolve(self, path: str) -> tuple[Path, str]:
        """Host path and workspace-relative path for a caller path."""
        root = str(self.root)
        full = join_workspace(root, path)
        target = Path(full)
        resolved = target.resolve()
        try:
            resolved.relative_to(self.root)
        except ValueError:
            raise PathTraversalError(f"Path escapes workspace: {path}", path) from None
        return target, relative_path(root, full)

    async def _run(self, operation: str, path: str, func: Callable[[], T]) -> T:
        loop = asyncio.get_running_loop()
        timeout = self.timeouts.for_operation(operation)
        try:
            return await asyncio.wait_for(loop.run_in_executor(_executor, func), timeout)
        except asyncio.TimeoutError:
            raise OperationTimeoutError(f"{operation} {path}", timeout) from None
        except FileNotFoundError as e:
            raise PathNotFoundError(f"Path not found: {path}", path) from e
        except NotADirectoryError as e:
            raise PathNotFoundError(f"Path not found: {path}", path) from e
        except PermissionError as e:
            raise PathPermissionError(f"Permission denied: {path}", path) from e
        except IsADirectoryError as e:
            raise FileOperationError(f"Not a file: {path}", path) from e
        except OSError as e:
            raise FileOperationError(f"{operation} failed for {path}: {e.strerror or e}", path) from e

    async def read(self, path: str, encoding: str = "utf-8") -> FileContent:
        target, relative = self._resolve(path)
        limit = self.files.max_file_size

        def _read() -> bytes:
            if target.is_dir():
                raise IsADirectoryError(str(target))
            size = target.stat().st_size
            if size > limit:
                raise FileTooLargeError(relative, size, limit)
            return target.read_bytes()

        data = await self._run("read", path, _read)
        return encode_content(relative, data, encoding)

    async def write(self, path: str, content: str, encoding: str = "utf-8") -> FileInfo:
        target, relative = self._resolve(path)
        if relative == ".":
            raise FileOperationError("Cannot write to the workspace root", path)
        data = decode_content(relative, content, encoding, self.files.max_file_size)

        def _write() -> FileInfo:
            target.parent.mkdir(parents=True, exist_ok=True)
            temp = target.with_name(f".{target.name}.tmp-{uuid.uuid4().hex}")
            try:
                temp.write_bytes(data)
                os.replace(temp, target)
            finally:
                if temp.exists():
                    temp.unlink()
            return _info(target.name, relative, target.stat())

        info = await self._run("write", path, _write)
        logger.debug("File written", context={"path": relative, "size": len(data)})
        return info

    async def stat(self, path: str) -> FileInfo:
        target, relative = self._resolve(path)
        return await self._run(
            "stat", path, lambda: _info(target.name if relative != "." else ".", relative, target.stat())
        )

    async def exists(self, path: str) -> bool:
        target, _ = self._resolve(path)
        return await self._run("exists", path, lambda: os.path.lexists(target))

    async def delete(self, path: str) -> None:
        target, relative = self._resolve(path)
        if relative == ".":
            raise PathPermissionError("Cannot delete the workspace root", path)

        def _delete() -> None:
            if target.is_dir() and not target.is_symlink():
                shutil.rmtree(target)
            else:
                target.unlink()

        await self._run("delete", path, _delete)
        logger.debug("Path deleted", context={"path": relative})

    async def mkdir(self, path: str) -> FileInfo:
        target, relative = self._resolve(path)

        def _mkdir() -> FileInfo:
            try:
                target.mkdir(parents=True, exist_ok=True)
            except FileExistsError as e:
                raise FileOperationError(f"Not a directory: {path}", path) from e
            return _info(target.name, relative, target.stat())

        return await self._run("mkdir", path, _mkdir)

    def _scan(self, directory: Path, relative: str, include_hidden: bool) -> list[FileInfo]:
        entries = []
        with os.scandir(directory) as it:
            for entry in it:
                if not include_hidden and is_hidden(entry.name):
                    continue
                child = entry.name if relative == "." else f"{relative}/{entry.name}"
                entries.append(_info(entry.name, child, entry.stat(follow_symlinks=False)))
        return entries

    async def list_directory(self, path: str = ".", include_hidden: bool = False) -> list[FileInfo]:
        target, relative = self._resolve(path)
        entries = await self._run("listing", path, lambda: self._scan(target, relative, include_hidden))
        return sort_entries(entries)

    async def tree(
        self,
        path: str = ".",
        max_depth: int | None = None,
        include_hidden: bool = False,
    ) -> FileNode:
        target, relative = self._resolve(path)
        depth = self.files.tree_max_depth if max_depth is None else max_depth
        excluded = set(self.files.excluded_dirs)

        def _walk() -> tuple[FileInfo, list[FileInfo]]:
            root_info = _info(
                target.name if relative != "." else ".", relative, target.stat(follow_symlinks=False)
            )
            collected: list[FileInfo] = []
            pending = [(target, relative, 0)] if root_info.is_directory else []
            while pending:
                directory, rel, level = pending.pop()
                if level >= depth:
                    continue
                try:
                    children = self._scan(directory, rel, include_hidden)
                except PermissionError:
                    continue
                for child in children:
                    if child.is_directory and child.name in excluded:
                        continue
                    collected.append(child)
                    if child.is_directory:
                        pending.append((directory / child.name, child.path, level + 1))
            return root_info, collected

        root_info, entries = await self._run("tree", path, _walk)
        return build_tree(root_info, entries, self.files.tree_max_entries)
