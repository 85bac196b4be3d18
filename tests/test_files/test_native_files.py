"""Tests for native-only file operation behavior."""

import time
from pathlib import Path

import pytest

from sandbox_core.config import FilesConfig, TimeoutsConfig
from sandbox_core.exceptions import OperationTimeoutError, PathTraversalError
from sandbox_core.files.native import NativeFileOperations


@pytest.fixture
def ops(tmp_path: Path) -> NativeFileOperations:
    root = tmp_path / "workspace"
    root.mkdir()
    return NativeFileOperations(root)


class TestSymlinks:
    """Symlinks are validated after resolution."""

    @pytest.mark.asyncio
    async def test_symlink_escape_rejected(self, ops: NativeFileOperations, tmp_path: Path):
        outside = tmp_path / "outside"
        outside.mkdir()
        (outside / "secret.txt").write_text("top secret")
        (ops.workspace / "escape").symlink_to(outside)

        with pytest.raises(PathTraversalError, match="escapes workspace"):
            await ops.read("escape/secret.txt")
        with pytest.raises(PathTraversalError):
            await ops.write("escape/new.txt", "data")
        assert not (outside / "new.txt").exists()

    @pytest.mark.asyncio
    async def test_symlink_inside_workspace_followed(self, ops: NativeFileOperations):
        (ops.workspace / "real.txt").write_text("content")
        (ops.workspace / "alias.txt").symlink_to("real.txt")

        assert (await ops.read("alias.txt")).content == "content"
        assert (await ops.stat("alias.txt")).type == "file"

    @pytest.mark.asyncio
    async def test_listing_does_not_follow_symlinks(self, ops: NativeFileOperations, tmp_path: Path):
        outside = tmp_path / "outside"
        outside.mkdir()
        (outside / "secret.txt").write_text("")
        (ops.workspace / "escape").symlink_to(outside)

        tree = await ops.tree()

        [link] = tree.children
        assert link.type == "symlink"
        assert link.children is None


class TestNativeWrite:
    @pytest.mark.asyncio
    async def test_no_temp_files_left(self, ops: NativeFileOperations):
        await ops.write("dir/file.txt", "a")
        await ops.write("dir/file.txt", "b")

        assert [p.name for p in (ops.workspace / "dir").iterdir()] == ["file.txt"]

    @pytest.mark.asyncio
    async def test_limits_from_config(self, tmp_path: Path):
        ops = NativeFileOperations(tmp_path, FilesConfig(tree_max_depth=1))
        (tmp_path / "a" / "b").mkdir(parents=True)

        tree = await ops.tree()

        assert tree.children[0].children == []


class TestNativeTimeouts:
    @pytest.mark.asyncio
    async def test_timeout_raises_operation_timeout(self, tmp_path: Path, monkeypatch):
        ops = NativeFileOperations(tmp_path, timeouts=TimeoutsConfig(read=0.05))
        (tmp_path / "slow.txt").write_text("x")
        run = ops._run

        async def slow_run(operation, path, func):
            def slow():
                time.sleep(0.2)
                return func()

            return await run(operation, path, slow)

        monkeypatch.setattr(ops, "_run", slow_run)

        with pytest.raises(OperationTimeoutError) as exc_info:
            await ops.read("slow.txt")
        assert exc_info.value.timeout == 0.05
        assert exc_info.value.operation == "read slow.txt"
