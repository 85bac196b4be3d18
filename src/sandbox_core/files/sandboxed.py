"""Sandboxed file operations: shell commands executed inside the sandbox.

Every operation is a single ``/bin/sh -c`` script run through
``SandboxManager.exec``. Paths are validated and quoted before they reach the
shell, and failures reported by the shell (sentinels on stderr or coreutils
messages) are normalized into the same exception types the native adapter
raises.
"""

import base64
import posixpath
import shlex
import uuid

from sandbox_core.config import Config
from sandbox_core.exceptions import (
    FileOperationError,
    FileTooLargeError,
    PathNotFoundError,
    PathPermissionError,
    PathTraversalError,
    SandboxCoreError,
    SandboxNotReadyError,
)
from sandbox_core.files.entries import build_tree, decode_content, encode_content, sort_entries
from sandbox_core.files.listing import parse_find_output, parse_ls_output, parse_stat_output
from sandbox_core.files.paths import is_hidden, join_workspace, relative_path
from sandbox_core.observability import get_logger
from sandbox_core.protocols.files import FileContent, FileInfo, FileNode
from sandbox_core.sandbox.manager import SandboxManager
from sandbox_core.sandbox.streams import ExecOutput

logger = get_logger(__name__)

FIND_FORMAT = "%y|%s|%T@|%M|%P\\0"
STAT_FORMAT = "%F|%s|%Y|%A"

NOT_FOUND_MARKERS = ("NOT_FOUND", "No such file", "Not a directory")
PERMISSION_MARKERS = ("Permission denied", "Operation not permitted", "Read-only file system")


class SandboxedFileOperations:
    """File operations on the workspace mounted inside the tenant's sandbox."""

    def __init__(
        self,
        manager: SandboxManager,
        tenant_id: str,
        config: Config | None = None,
        tier: str | None = None,
    ) -> None:
        """Initialize sandboxed file operations.

        Args:
            manager: Sandbox manager
            tenant_id: Tenant identifier
            config: Configuration (defaults to the manager's)
            tier: Tier used if the sandbox must be created
        """
        self.manager = manager
        self.tenant_id = tenant_id
        self.config = config or manager.config
        self.tier = tier
        self.root = self.config.sandbox.mount_path
        self.files = self.config.files

    def _resolve(self, path: str) -> tuple[str, str]:
        """Sandbox path and workspace-relative path for a caller path."""
        full = join_workspace(self.root, path)
        return full, relative_path(self.root, full)

    def _guard(self, full: str) -> str:
        """Shell prefix failing with ESCAPES_WORKSPACE when symlinks lead out of the workspace."""
        return (
            f"r=$(realpath -m -- {shlex.quote(full)}) || exit 6; "
            f"root=$(realpath -m -- {shlex.quote(self.root)}) || exit 6; "
            'case "$r" in "$root"|"$root"/*) ;; *) echo ESCAPES_WORKSPACE >&2; exit 5;; esac; '
        )

    async def _exec(self, operation: str, path: str, script: str, full: str | None = None) -> ExecOutput:
        if full is not None:
            script = self._guard(full) + script
        timeout = self.config.timeouts.for_operation(operation)
        await self.manager.get_or_create(self.tenant_id, self.tier, timeout=timeout)
        stream = await self.manager.exec(self.tenant_id, f"LC_ALL=C; export LC_ALL; {script}")
        return await stream.collect(timeout=timeout, operation=f"{operation} {path}")

    def _raise_for_output(self, output: ExecOutput, operation: str, path: str) -> None:
        if output.ok:
            return
        message = (output.stderr_text or output.stdout_text).strip()
        if "ESCAPES_WORKSPACE" in message:
            raise PathTraversalError(f"Path escapes workspace: {path}", path)
        if any(marker in message for marker in NOT_FOUND_MARKERS):
            raise PathNotFoundError(f"Path not found: {path}", path)
        if any(marker in message for marker in PERMISSION_MARKERS):
            raise PathPermissionError(f"Permission denied: {path}", path)
        if "IS_DIRECTORY" in message:
            raise FileOperationError(f"Not a file: {path}", path)
        detail = message.splitlines()[-1] if message else f"exit code {output.exit_code}"
        raise FileOperationError(f"{operation} failed for {path}: {detail}", path)

    async def read(self, path: str, encoding: str = "utf-8") -> FileContent:
        full, relative = self._resolve(path)
        limit = self.files.max_file_size
        script = (
            f"p={shlex.quote(full)}; "
            'if [ -d "$p" ]; then echo IS_DIRECTORY >&2; exit 3; fi; '
            'size=$(stat -L -c %s -- "$p") || exit 2; '
            f'if [ "$size" -gt {limit} ]; then echo "TOO_LARGE $size" >&2; exit 4; fi; '
            'cat -- "$p"'
        )
        output = await self._exec("read", path, script, full)
        if output.exit_code == 4:
            size = output.stderr_text.strip().rsplit(" ", 1)[-1]
            raise FileTooLargeError(relative, int(size) if size.isdigit() else limit + 1, limit)
        self._raise_for_output(output, "read", path)
        return encode_content(relative, output.stdout, encoding)

    async def write(self, path: str, content: str, encoding: str = "utf-8") -> FileInfo:
        """Write a file in base64 chunks appended to a temp file, then rename it.

        Chunking keeps every command below the kernel's per-argument limit.
        """
        full, relative = self._resolve(path)
        if relative == ".":
            raise FileOperationError("Cannot write to the workspace root", path)
        data = decode_content(relative, content, encoding, self.files.max_file_size)

        target = shlex.quote(full)
        temp = shlex.quote(
            posixpath.join(posixpath.dirname(full), f".{posixpath.basename(full)}.tmp-{uuid.uuid4().hex}")
        )
        prepare = (
            f"if [ -d {target} ]; then echo IS_DIRECTORY >&2; exit 3; fi; "
            f"mkdir -p -- {shlex.quote(posixpath.dirname(full))} && : > {temp}"
        )
        self._raise_for_output(await self._exec("write", path, prepare, full), "write", path)

        raw_chunk = max(self.files.write_chunk_size // 4 * 3, 3)
        try:
            for offset in range(0, len(data), raw_chunk):
                encoded = base64.b64encode(data[offset:offset + raw_chunk]).decode("ascii")
                output = await self._exec(
                    "write", path, f"printf %s {shlex.quote(encoded)} | base64 -d >> {temp}", full
                )
                self._raise_for_output(output, "write", path)
            output = await self._exec("write", path, f"mv -f -- {temp} {target}", full)
            self._raise_for_output(output, "write", path)
        except Exception:
            try:
                stream = await self.manager.exec(self.tenant_id, f"rm -f -- {temp}")
                await stream.collect(timeout=self.config.timeouts.default, operation="write cleanup")
            except SandboxCoreError as e:
                logger.warning("Could not remove partial write", context={"path": relative}, error=e)
            raise

        logger.debug("File written", context={"path": relative, "size": len(data)})
        return await self.stat(path)

    async def stat(self, path: str) -> FileInfo:
        full, relative = self._resolve(path)
        output = await self._exec(
            "stat", path, f"stat -L -c {shlex.quote(STAT_FORMAT)} -- {shlex.quote(full)}", full
        )
        self._raise_for_output(output, "stat", path)
        name = posixpath.basename(full) if relative != "." else "."
        info = parse_stat_output(output.stdout_text, name, relative)
        if info is None:
            raise FileOperationError(f"Unexpected stat output for {path}", path)
        return info

    async def exists(self, path: str) -> bool:
        full, _ = self._resolve(path)
        quoted = shlex.quote(full)
        output = await self._exec(
            "exists",
            path,
            f"if [ -e {quoted} ] || [ -L {quoted} ]; then echo EXISTS; else echo NOT_EXISTS; fi",
            full,
        )
        answer = output.stdout_text.strip()
        if answer == "EXISTS":
            return True
        if answer == "NOT_EXISTS":
            return False
        self._raise_for_output(output, "exists", path)
        raise FileOperationError(f"Unexpected exists output for {path}", path)

    async def delete(self, path: str) -> None:
        full, relative = self._resolve(path)
        if relative == ".":
            raise PathPermissionError("Cannot delete the workspace root", path)
        quoted = shlex.quote(full)
        output = await self._exec(
            "delete",
            path,
            f"if [ -e {quoted} ] || [ -L {quoted} ]; then rm -rf -- {quoted}; "
            "else echo NOT_FOUND >&2; exit 2; fi",
            full,
        )
        self._raise_for_output(output, "delete", path)
        logger.debug("Path deleted", context={"path": relative})

    async def mkdir(self, path: str) -> FileInfo:
        full, _ = self._resolve(path)
        output = await self._exec("mkdir", path, f"mkdir -p -- {shlex.quote(full)}", full)
        self._raise_for_output(output, "mkdir", path)
        return await self.stat(path)

    async def list_directory(self, path: str = ".", include_hidden: bool = False) -> list[FileInfo]:
        full, relative = self._resolve(path)
        script = (
            f"p={shlex.quote(full)}; "
            'if [ ! -d "$p" ]; then '
            'if [ -e "$p" ]; then echo "Not a directory" >&2; else echo NOT_FOUND >&2; fi; exit 2; fi; '
            'if ls -d --time-style=+%s -- "$p" >/dev/null 2>&1; '
            'then ls -la --time-style=+%s -- "$p/"; else ls -la -- "$p/"; fi'
        )
        try:
            output = await self._exec("listing", path, script, full)
        except SandboxNotReadyError:
            logger.info("Sandbox not ready; returning empty listing", context={"path": relative})
            return []
        # ls exits 1 on minor problems after printing the rest of the listing
        if not output.stdout:
            self._raise_for_output(output, "listing", path)

        entries = parse_ls_output(output.stdout_text, relative)
        if not include_hidden:
            entries = [e for e in entries if not is_hidden(e.name)]
        return sort_entries(entries)

    def _find_script(self, full: str, depth: int, include_hidden: bool) -> str:
        excluded = " -o ".join(f"-name {shlex.quote(name)}" for name in self.files.excluded_dirs)
        pruned = []
        if not include_hidden:
            pruned.append("-name '.*'")
        if excluded:
            pruned.append(f"-type d \\( {excluded} \\)")
        prune = f"\\( ! -name . \\( {' -o '.join(pruned)} \\) \\) -prune -o " if pruned else ""
        return (
            f"p={shlex.quote(full)}; "
            'if [ -d "$p" ]; then '
            f'cd "$p" && find . -maxdepth {int(depth)} {prune}-printf {shlex.quote(FIND_FORMAT)}; '
            'elif [ -e "$p" ] || [ -L "$p" ]; then echo NOT_A_DIRECTORY; '
            "else echo NOT_FOUND >&2; exit 2; fi"
        )

    async def tree(
        self,
        path: str = ".",
        max_depth: int | None = None,
        include_hidden: bool = False,
    ) -> FileNode:
        full, relative = self._resolve(path)
        depth = self.files.tree_max_depth if max_depth is None else max_depth

        try:
            script = self._find_script(full, depth, include_hidden)
            output = await self._exec("tree", path, script, full)
        except SandboxNotReadyError:
            logger.info("Sandbox not ready; returning empty tree", context={"path": relative})
            name = posixpath.basename(full) if relative != "." else "."
            return FileNode(name=name, path=relative, type="directory", children=[])

        if output.stdout_text.strip() == "NOT_A_DIRECTORY":
            info = await self.stat(path)
            return build_tree(info, [], self.files.tree_max_entries)

        # find exits non-zero on unreadable subdirectories but still lists the rest
        if not output.stdout:
            self._raise_for_output(output, "tree", path)

        records = parse_find_output(output.stdout, relative)
        roots = [entry for entry in records if entry.path == relative]
        if not roots:
            raise FileOperationError(f"Unexpected tree output for {path}", path)
        entries = [entry for entry in records if entry.path != relative]
        return build_tree(roots[0], entries, self.files.tree_max_entries)
