"""Native session discovery: transcripts read directly from the host workspace."""

import asyncio
import atexit
import os
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path

from sandbox_core.config import SessionsConfig, TimeoutsConfig
from sandbox_core.exceptions import OperationTimeoutError, SessionNotFoundError
from sandbox_core.observability import get_logger
from sandbox_core.protocols.sessions import MessagePage, SearchResult, SessionPage
from sandbox_core.sessions.index import (
    check_session_id,
    files_holding,
    is_transcript,
    list_page,
    message_page,
    project_directory,
    search_result,
)
from sandbox_core.sessions.jsonl import TranscriptFile

logger = get_logger(__name__)

_executor = ThreadPoolExecutor(max_workers=int(os.environ.get("SANDBOX_SESSION_WORKERS", "4")))

atexit.register(_executor.shutdown, wait=False)


def _read_directory(directory: Path, prefix: str) -> list[TranscriptFile]:
    files = []
    if not directory.is_dir():
        return files
    for path in directory.iterdir():
        if not path.is_file() or not is_transcript(path.name):
            continue
        try:
            content = path.read_text(encoding="utf-8", errors="replace")
            modified = int(path.stat().st_mtime)  # whole seconds, as stat reports inside a sandbox
        except OSError as e:
            logger.warning("Skipping unreadable transcript", context={"file": path.name}, error=e)
            continue
        files.append(TranscriptFile(name=f"{prefix}/{path.name}", content=content, modified=modified))
    return files


class NativeSessionDiscovery:
    """Lists and reads transcripts under ``<workspace>/.claude/projects``."""

    def __init__(
        self,
        workspace: str | Path,
        settings: SessionsConfig | None = None,
        timeouts: TimeoutsConfig | None = None,
    ) -> None:
        self.workspace = Path(workspace)
        self.settings = settings or SessionsConfig()
        self.timeouts = timeouts or TimeoutsConfig()

    @property
    def root(self) -> str:
        return str(self.workspace.resolve())

    @property
    def projects_root(self) -> Path:
        return Path(self.root) / self.settings.projects_subdir

    async def _load(self, project: str | None) -> list[TranscriptFile]:
        if project is None:
            def _read() -> list[TranscriptFile]:
                files = []
                if self.projects_root.is_dir():
                    for directory in sorted(self.projects_root.iterdir()):
                        files.extend(_read_directory(directory, directory.name))
                return files
        else:
            directory = Path(project_directory(self.root, project, self.settings))

            def _read() -> list[TranscriptFile]:
                return _read_directory(directory, directory.name)

        loop = asyncio.get_running_loop()
        timeout = self.timeouts.sessions
        try:
            return await asyncio.wait_for(loop.run_in_executor(_executor, _read), timeout)
        except asyncio.TimeoutError:
            raise OperationTimeoutError("sessions", timeout) from None

    async def list_sessions(
        self,
        project: str = ".",
        limit: int | None = None,
        offset: int = 0,
        order: str = "desc",
    ) -> SessionPage:
        return list_page(await self._load(project), self.settings, limit, offset, order)

    async def get_messages(
        self,
        session_id: str,
        project: str = ".",
        limit: int | None = None,
        offset: int = 0,
    ) -> MessagePage:
        check_session_id(session_id, project)
        files = await self._load(project)
        return message_page(files, session_id, self.settings, limit, offset, project)

    async def delete(self, session_id: str, project: str = ".") -> None:
        check_session_id(session_id, project)
        holding = files_holding(await self._load(project), session_id)
        if not holding:
            raise SessionNotFoundError(session_id, project)

        def _unlink() -> None:
            for transcript in holding:
                (self.projects_root / transcript.name).unlink(missing_ok=True)

        loop = asyncio.get_running_loop()
        await loop.run_in_executor(_executor, _unlink)
        logger.info("Session deleted", context={"session_id": session_id, "files": len(holding)})

    async def search(
        self,
        query: str,
        project: str | None = None,
        limit: int | None = None,
    ) -> SearchResult:
        return search_result(await self._load(project), query, self.settings, limit)
