"""Behavior shared by the native and sandboxed file adapters.

Every test runs against both modes; callers must not be able to tell them
apart from results or error codes.
"""

import base64
from pathlib import Path

import pytest

from sandbox_core.config import Config
from sandbox_core.exceptions import (
    FileOperationError,
    FileTooLargeError,
    PathNotFoundError,
    PathPermissionError,
    PathTraversalError,
)
from sandbox_core.files import NativeFileOperations, SandboxedFileOperations
from sandbox_core.protocols.files import FileOperations
from sandbox_core.sandbox.manager import SandboxManager
from conftest import TENANT


def populate(root: Path) -> None:
    (root / "src" / "lib" / "deep").mkdir(parents=True)
    (root / "src" / "app.py").write_text("print('hi')\n")
    (root / "src" / "lib" / "util.py").write_text("x = 1\n")
    (root / "src" / "lib" / "deep" / "leaf.py").write_text("")
    (root / "README.md").write_text("# readme\n")
    (root / "build").write_text("not a build directory\n")
    (root / ".hidden").write_text("secret\n")
    (root / ".config").mkdir()
    (root / "node_modules" / "pkg").mkdir(parents=True)
    (root / "node_modules" / "pkg" / "index.js").write_text("")


def names(node) -> list[str]:
    return [child.name for child in node.children]


@pytest.fixture(params=["native", "sandboxed"])
def ops(request, manager: SandboxManager, workspace: Path, config: Config) -> FileOperations:
    if request.param == "native":
        return NativeFileOperations(workspace, config.files, config.timeouts)
    return SandboxedFileOperations(manager, TENANT, config)


class TestReadWrite:
    """Tests for read and write."""

    @pytest.mark.asyncio
    async def test_write_then_read_text(self, ops: FileOperations, workspace: Path):
        info = await ops.write("notes/today.md", "héllo\nworld\n")

        assert info.path == "notes/today.md"
        assert info.name == "today.md"
        assert info.type == "file"
        assert info.size == len("héllo\nworld\n".encode())
        assert (workspace / "notes" / "today.md").read_text() == "héllo\nworld\n"

        content = await ops.read("notes/today.md")
        assert content.content == "héllo\nworld\n"
        assert content.encoding == "utf-8"
        assert content.path == "notes/today.md"

    @pytest.mark.asyncio
    async def test_write_then_read_base64(self, ops: FileOperations, workspace: Path):
        data = bytes(range(256))
        await ops.write("blob.bin", base64.b64encode(data).decode(), encoding="base64")

        assert (workspace / "blob.bin").read_bytes() == data
        content = await ops.read("blob.bin", encoding="base64")
        assert base64.b64decode(content.content) == data
        assert content.size == 256

    @pytest.mark.asyncio
    async def test_binary_read_falls_back_to_base64(self, ops: FileOperations, workspace: Path):
        (workspace / "image.png").write_bytes(b"\x89PNG\xff\x00")

        content = await ops.read("image.png")

        assert content.encoding == "base64"
        assert base64.b64decode(content.content) == b"\x89PNG\xff\x00"

    @pytest.mark.asyncio
    async def test_overwrite(self, ops: FileOperations, workspace: Path):
        await ops.write("a.txt", "first version")
        await ops.write("a.txt", "second")

        assert (workspace / "a.txt").read_text() == "second"
        assert [p.name for p in workspace.iterdir()] == ["a.txt"]

    @pytest.mark.asyncio
    async def test_empty_file(self, ops: FileOperations, workspace: Path):
        info = await ops.write("empty.txt", "")
        assert info.size == 0
        assert (await ops.read("empty.txt")).content == ""

    @pytest.mark.asyncio
    async def test_read_missing(self, ops: FileOperations, workspace: Path):
        with pytest.raises(PathNotFoundError) as exc_info:
            await ops.read("missing.txt")
        assert exc_info.value.code == "not_found"

    @pytest.mark.asyncio
    async def test_read_directory(self, ops: FileOperations, workspace: Path):
        (workspace / "dir").mkdir()
        with pytest.raises(FileOperationError, match="Not a file") as exc_info:
            await ops.read("dir")
        assert not isinstance(exc_info.value, PathNotFoundError)

    @pytest.mark.asyncio
    async def test_read_too_large(self, ops: FileOperations, workspace: Path, config: Config):
        config.files.max_file_size = 10
        (workspace / "big.txt").write_text("x" * 20)

        with pytest.raises(FileTooLargeError) as exc_info:
            await ops.read("big.txt")
        assert exc_info.value.size == 20
        assert exc_info.value.limit == 10

    @pytest.mark.asyncio
    async def test_write_too_large(self, ops: FileOperations, workspace: Path, config: Config):
        config.files.max_file_size = 10
        with pytest.raises(FileTooLargeError):
            await ops.write("big.txt", "x" * 11)
        assert not (workspace / "big.txt").exists()

    @pytest.mark.asyncio
    async def test_write_root_rejected(self, ops: FileOperations, workspace: Path):
        with pytest.raises(FileOperationError):
            await ops.write(".", "data")

    @pytest.mark.asyncio
    async def test_write_over_directory(self, ops: FileOperations, workspace: Path):
        (workspace / "dir").mkdir()
        with pytest.raises(FileOperationError):
            await ops.write("dir", "data")
        assert (workspace / "dir").is_dir()


class TestPathValidation:
    """Unsafe paths fail identically in both modes."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize("path", ["../outside.txt", "a/../../b", "%2e%2e/x", "bad\\path", "/etc/passwd"])
    async def test_traversal_rejected(self, ops: FileOperations, workspace: Path, path: str):
        for call in (ops.read(path), ops.write(path, "x"), ops.delete(path), ops.stat(path)):
            with pytest.raises(PathTraversalError) as exc_info:
                await call
            assert exc_info.value.code == "path_traversal"

    @pytest.mark.asyncio
    async def test_symlink_escape_rejected(self, ops: FileOperations, workspace: Path, tmp_path: Path):
        outside = tmp_path / "outside"
        outside.mkdir()
        (outside / "secret.txt").write_text("TOPSECRET")
        (workspace / "escape").symlink_to(outside)

        calls = (
            ops.read("escape/secret.txt"),
            ops.write("escape/planted.txt", "x"),
            ops.stat("escape/secret.txt"),
            ops.exists("escape/secret.txt"),
            ops.delete("escape/secret.txt"),
            ops.list_directory("escape"),
            ops.tree("escape"),
        )
        for call in calls:
            with pytest.raises(PathTraversalError) as exc_info:
                await call
            assert exc_info.value.code == "path_traversal"

        assert (outside / "secret.txt").read_text() == "TOPSECRET"
        assert not (outside / "planted.txt").exists()

    @pytest.mark.asyncio
    async def test_symlink_inside_workspace_allowed(self, ops: FileOperations, workspace: Path):
        (workspace / "docs").mkdir()
        (workspace / "docs" / "a.txt").write_text("abc")
        (workspace / "alias").symlink_to(workspace / "docs")

        assert (await ops.read("alias/a.txt")).content == "abc"

    @pytest.mark.asyncio
    async def test_absolute_path_inside_workspace(self, ops: FileOperations, workspace: Path):
        (workspace / "a.txt").write_text("abc")
        content = await ops.read(str(workspace / "a.txt"))
        assert content.content == "abc"
        assert content.path == "a.txt"


class TestStatExistsDelete:
    """Tests for stat, exists, delete and mkdir."""

    @pytest.mark.asyncio
    async def test_stat_file(self, ops: FileOperations, workspace: Path):
        (workspace / "src").mkdir()
        (workspace / "src" / "a.py").write_text("12345")

        info = await ops.stat("src/a.py")

        assert info.name == "a.py"
        assert info.path == "src/a.py"
        assert info.type == "file"
        assert info.size == 5
        assert info.permissions.startswith("-")
        assert info.modified == int((workspace / "src" / "a.py").stat().st_mtime)

    @pytest.mark.asyncio
    async def test_stat_root(self, ops: FileOperations, workspace: Path):
        info = await ops.stat(".")
        assert info.name == "."
        assert info.path == "."
        assert info.type == "directory"

    @pytest.mark.asyncio
    async def test_stat_missing(self, ops: FileOperations, workspace: Path):
        with pytest.raises(PathNotFoundError):
            await ops.stat("nope")

    @pytest.mark.asyncio
    async def test_exists(self, ops: FileOperations, workspace: Path):
        (workspace / "here.txt").write_text("")
        (workspace / "dangling").symlink_to("missing-target")

        assert await ops.exists("here.txt")
        assert await ops.exists(".")
        assert await ops.exists("dangling")
        assert not await ops.exists("missing")

    @pytest.mark.asyncio
    async def test_delete_file_and_tree(self, ops: FileOperations, workspace: Path):
        populate(workspace)

        await ops.delete("README.md")
        await ops.delete("src")

        assert not (workspace / "README.md").exists()
        assert not (workspace / "src").exists()
        assert (workspace / "build").exists()

    @pytest.mark.asyncio
    async def test_delete_missing(self, ops: FileOperations, workspace: Path):
        with pytest.raises(PathNotFoundError):
            await ops.delete("missing")

    @pytest.mark.asyncio
    async def test_delete_root_forbidden(self, ops: FileOperations, workspace: Path):
        (workspace / "keep.txt").write_text("")
        for path in (".", "", str(workspace)):
            with pytest.raises(PathPermissionError) as exc_info:
                await ops.delete(path)
            assert exc_info.value.code == "permission_denied"
        assert (workspace / "keep.txt").exists()

    @pytest.mark.asyncio
    async def test_mkdir(self, ops: FileOperations, workspace: Path):
        info = await ops.mkdir("a/b/c")

        assert (workspace / "a" / "b" / "c").is_dir()
        assert info.type == "directory"
        assert info.path == "a/b/c"
        # Existing directories are fine
        await ops.mkdir("a/b")

    @pytest.mark.asyncio
    async def test_mkdir_over_file(self, ops: FileOperations, workspace: Path):
        (workspace / "taken").write_text("")
        with pytest.raises(FileOperationError):
            await ops.mkdir("taken")


class TestListing:
    """Tests for list_directory and tree."""

    @pytest.mark.asyncio
    async def test_list_directory(self, ops: FileOperations, workspace: Path):
        populate(workspace)

        entries = await ops.list_directory()

        assert [e.name for e in entries] == ["node_modules", "src", "README.md", "build"]
        assert [e.type for e in entries] == ["directory", "directory", "file", "file"]
        readme = entries[2]
        assert readme.path == "README.md"
        assert readme.size == len("# readme\n")
        assert readme.modified == int((workspace / "README.md").stat().st_mtime)

    @pytest.mark.asyncio
    async def test_list_directory_hidden(self, ops: FileOperations, workspace: Path):
        populate(workspace)
        entries = await ops.list_directory(".", include_hidden=True)
        assert [e.name for e in entries][:3] == [".config", "node_modules", "src"]
        assert ".hidden" in [e.name for e in entries]

    @pytest.mark.asyncio
    async def test_list_subdirectory(self, ops: FileOperations, workspace: Path):
        populate(workspace)
        entries = await ops.list_directory("src")
        assert [(e.name, e.path) for e in entries] == [("lib", "src/lib"), ("app.py", "src/app.py")]

    @pytest.mark.asyncio
    async def test_list_directory_empty(self, ops: FileOperations, workspace: Path):
        (workspace / "empty").mkdir()
        assert await ops.list_directory("empty") == []

    @pytest.mark.asyncio
    async def test_list_directory_missing(self, ops: FileOperations, workspace: Path):
        with pytest.raises(PathNotFoundError):
            await ops.list_directory("missing")

    @pytest.mark.asyncio
    async def test_tree_defaults(self, ops: FileOperations, workspace: Path):
        """Hidden entries and excluded directories are pruned; depth defaults to 3."""
        populate(workspace)

        tree = await ops.tree()

        assert tree.name == "."
        assert tree.path == "."
        assert tree.type == "directory"
        assert names(tree) == ["src", "README.md", "build"]
        src = tree.children[0]
        assert names(src) == ["lib", "app.py"]
        lib = src.children[0]
        assert names(lib) == ["deep", "util.py"]
        assert lib.children[0].path == "src/lib/deep"
        assert lib.children[0].children == []
        assert src.children[1].children is None

    @pytest.mark.asyncio
    async def test_tree_depth(self, ops: FileOperations, workspace: Path):
        populate(workspace)

        tree = await ops.tree(max_depth=1)

        assert names(tree) == ["src", "README.md", "build"]
        assert tree.children[0].children == []

    @pytest.mark.asyncio
    async def test_tree_include_hidden(self, ops: FileOperations, workspace: Path):
        populate(workspace)

        tree = await ops.tree(max_depth=1, include_hidden=True)

        assert names(tree) == [".config", "src", ".hidden", "README.md", "build"]

    @pytest.mark.asyncio
    async def test_tree_subdirectory(self, ops: FileOperations, workspace: Path):
        populate(workspace)

        tree = await ops.tree("src/lib")

        assert tree.name == "lib"
        assert tree.path == "src/lib"
        assert [c.path for c in tree.children] == ["src/lib/deep", "src/lib/util.py"]
        assert [c.path for c in tree.children[0].children] == ["src/lib/deep/leaf.py"]

    @pytest.mark.asyncio
    async def test_tree_of_file(self, ops: FileOperations, workspace: Path):
        populate(workspace)
        tree = await ops.tree("README.md")
        assert tree.type == "file"
        assert tree.children is None

    @pytest.mark.asyncio
    async def test_tree_max_entries(self, ops: FileOperations, workspace: Path, config: Config):
        config.files.tree_max_entries = 2
        populate(workspace)

        tree = await ops.tree()

        assert names(tree) == ["src"]
        assert names(tree.children[0]) == ["lib"]

    @pytest.mark.asyncio
    async def test_tree_missing(self, ops: FileOperations, workspace: Path):
        with pytest.raises(PathNotFoundError):
            await ops.tree("missing")


class TestModeEquivalence:
    """Both adapters return identical data for the same workspace."""

    @pytest.mark.asyncio
    async def test_same_results(self, manager: SandboxManager, workspace: Path, config: Config):
        populate(workspace)
        native = NativeFileOperations(workspace, config.files, config.timeouts)
        sandboxed = SandboxedFileOperations(manager, TENANT, config)

        for include_hidden in (False, True):
            native_tree = await native.tree(include_hidden=include_hidden)
            sandboxed_tree = await sandboxed.tree(include_hidden=include_hidden)
            assert native_tree.to_dict() == sandboxed_tree.to_dict()

            native_list = await native.list_directory("src", include_hidden=include_hidden)
            sandboxed_list = await sandboxed.list_directory("src", include_hidden=include_hidden)
            assert [e.to_dict() for e in native_list] == [e.to_dict() for e in sandboxed_list]

        assert await native.stat("src/app.py") == await sandboxed.stat("src/app.py")
        assert await native.read("src/app.py") == await sandboxed.read("src/app.py")
