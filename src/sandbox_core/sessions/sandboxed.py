"""Sandboxed session discovery: transcripts read through one exec per call.

All transcripts of a project are streamed back in a single command as
NUL-separated ``name, mtime, content`` records, then parsed with the same
helpers the native adapter uses.
"""

import shlex

from sandbox_core.config import Config
from sandbox_core.exceptions import ExecFailedError, SandboxNotReadyError, SessionNotFoundError
from sandbox_core.observability import get_logger
from sandbox_core.protocols.sessions import MessagePage, SearchResult, SessionPage
from sandbox_core.sandbox.manager import SandboxManager
from sandbox_core.sessions.index import (
    EXCLUDED_PREFIX,
    check_session_id,
    files_holding,
    list_page,
    message_page,
    project_directory,
    search_result,
)
from sandbox_core.sessions.jsonl import TranscriptFile

logger = get_logger(__name__)


def read_script(root: str, pattern: str) -> str:
    """Shell loop printing ``<name>\\0<mtime>\\0<content>\\0`` per transcript.

    Args:
        root: Projects directory; names are printed relative to it
        pattern: Glob relative to ``root`` (e.g. ``-workspace/*.jsonl``)
    """
    quoted_root = shlex.quote(root)
    return (
        f"root={quoted_root}; "
        '[ -d "$root" ] || exit 0; '
        f'for f in "$root"/{pattern}; do '
        '[ -f "$f" ] || continue; '
        f'case "$(basename "$f")" in {EXCLUDED_PREFIX}*) continue;; esac; '
        'printf \'%s\\0%s\\0\' "${f#$root/}" "$(stat -c %Y -- "$f")"; '
        'cat -- "$f"; printf \'\\0\'; '
        "done"
    )


def parse_records(data: bytes) -> list[TranscriptFile]:
    """Split NUL-separated records into transcript files."""
    parts = data.split(b"\0")
    if parts and parts[-1] == b"":
        parts.pop()
    files = []
    for i in range(0, len(parts) - 2, 3):
        name = parts[i].decode("utf-8", errors="replace").lstrip("\n")
        try:
            modified = float(parts[i + 1])
        except ValueError:
            continue
        content = parts[i + 2].decode("utf-8", errors="replace")
        files.append(TranscriptFile(name=name, content=content, modified=modified))
    return files


class SandboxedSessionDiscovery:
    """Reads transcripts from the workspace mounted inside the tenant's sandbox."""

    def __init__(
        self,
        manager: SandboxManager,
        tenant_id: str,
        config: Config | None = None,
        tier: str | None = None,
    ) -> None:
        self.manager = manager
        self.tenant_id = tenant_id
        self.config = config or manager.config
        self.settings = self.config.sessions
        self.tier = tier
        self.root = self.config.sandbox.mount_path

    @property
    def projects_root(self) -> str:
        return f"{self.root.rstrip('/')}/{self.settings.projects_subdir}"

    async def _load(self, project: str | None) -> list[TranscriptFile]:
        if project is None:
            pattern = "*/*.jsonl"
        else:
            directory = project_directory(self.root, project, self.settings)
            pattern = f"{shlex.quote(directory.rsplit('/', 1)[-1])}/*.jsonl"

        timeout = self.config.timeouts.sessions
        await self.manager.get_or_create(self.tenant_id, self.tier, timeout=timeout)
        stream = await self.manager.exec(self.tenant_id, read_script(self.projects_root, pattern))
        output = await stream.collect(timeout=timeout, operation="sessions")
        if not output.ok:
            raise ExecFailedError(
                f"Reading transcripts failed: {output.stderr_text.strip()}",
                exit_code=output.exit_code,
                stderr=output.stderr_text,
            )
        return parse_records(output.stdout)

    async def list_sessions(
        self,
        project: str = ".",
        limit: int | None = None,
        offset: int = 0,
        order: str = "desc",
    ) -> SessionPage:
        try:
            files = await self._load(project)
        except SandboxNotReadyError:
            logger.info("Sandbox not ready; returning pending session page")
            return SessionPage(pending=True)
        return list_page(files, self.settings, limit, offset, order)

    async def get_messages(
        self,
        session_id: str,
        project: str = ".",
        limit: int | None = None,
        offset: int = 0,
    ) -> MessagePage:
        check_session_id(session_id, project)
        try:
            files = await self._load(project)
        except SandboxNotReadyError:
            logger.info("Sandbox not ready; returning pending message page")
            return MessagePage(session_id=session_id, pending=True)
        return message_page(files, session_id, self.settings, limit, offset, project)

    async def delete(self, session_id: str, project: str = ".") -> None:
        check_session_id(session_id, project)
        holding = files_holding(await self._load(project), session_id)
        if not holding:
            raise SessionNotFoundError(session_id, project)

        paths = " ".join(shlex.quote(f"{self.projects_root}/{t.name}") for t in holding)
        stream = await self.manager.exec(self.tenant_id, f"rm -f -- {paths}")
        output = await stream.collect(timeout=self.config.timeouts.delete, operation="session delete")
        if not output.ok:
            raise ExecFailedError(
                f"Deleting session {session_id} failed: {output.stderr_text.strip()}",
                exit_code=output.exit_code,
                stderr=output.stderr_text,
            )
        logger.info("Session deleted", context={"session_id": session_id, "files": len(holding)})

    async def search(
        self,
        query: str,
        project: str | None = None,
        limit: int | None = None,
    ) -> SearchResult:
        try:
            files = await self._load(project)
        except SandboxNotReadyError:
            logger.info("Sandbox not ready; returning pending search result")
            return SearchResult(query=query, pending=True)
        return search_result(files, query, self.settings, limit)
