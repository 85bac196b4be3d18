"""Mode-independent session listing, paging and search.

Both discovery adapters only load ``TranscriptFile`` objects; everything
callers observe (ordering, pagination, search matching, not-found errors) is
computed here, so the two modes return identical pages for identical files.
"""

import posixpath
import re
from typing import Any, TypeVar

from sandbox_core.config import SessionsConfig
from sandbox_core.exceptions import SessionNotFoundError
from sandbox_core.files.paths import join_workspace
from sandbox_core.protocols.sessions import MessagePage, SearchResult, SessionPage, SessionSummary
from sandbox_core.sessions.jsonl import (
    TranscriptFile,
    encode_project_path,
    parse_lines,
    parse_transcript,
    session_entries,
)

T = TypeVar("T")

SESSION_ID_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_-]*$")
EXCLUDED_PREFIX = "agent-"


def check_session_id(session_id: str, project: str | None = None) -> str:
    """Reject ids that could not name a transcript.

    Raises:
        SessionNotFoundError: The id is empty or malformed
    """
    if not isinstance(session_id, str) or not SESSION_ID_PATTERN.match(session_id):
        raise SessionNotFoundError(str(session_id), project)
    return session_id


def is_transcript(name: str) -> bool:
    base = posixpath.basename(name)
    return base.endswith(".jsonl") and not base.startswith(EXCLUDED_PREFIX)


def project_directory(root: str, project: str, settings: SessionsConfig) -> str:
    """Transcript directory for a workspace-relative project.

    Args:
        root: Workspace root as the runtime sees it
        project: Project directory relative to the workspace
        settings: Sessions settings

    Raises:
        PathTraversalError: The project lies outside the workspace
    """
    project_path = join_workspace(root, project or ".")
    projects = posixpath.join(root, settings.projects_subdir)
    return posixpath.join(projects, encode_project_path(project_path))


def paginate(items: list[T], limit: int, offset: int) -> tuple[list[T], int, bool]:
    """Slice a page; ``has_more`` is ``offset + limit < total``."""
    offset = max(offset, 0)
    limit = max(limit, 0)
    total = len(items)
    return items[offset:offset + limit], total, offset + limit < total


def summarize(files: list[TranscriptFile], settings: SessionsConfig) -> list[SessionSummary]:
    """Sessions across files, first occurrence of a session id wins."""
    sessions: dict[str, SessionSummary] = {}
    for transcript in sorted(files, key=lambda f: f.name):
        for session in parse_transcript(transcript.content, transcript.modified, settings.summary_length):
            sessions.setdefault(session.id, session)
    return list(sessions.values())


def sort_sessions(sessions: list[SessionSummary], order: str = "desc") -> list[SessionSummary]:
    if order not in ("asc", "desc"):
        raise ValueError(f"Invalid order: {order}")
    return sorted(sessions, key=lambda s: (s.last_activity, s.id), reverse=order == "desc")


def list_page(
    files: list[TranscriptFile],
    settings: SessionsConfig,
    limit: int | None,
    offset: int,
    order: str,
) -> SessionPage:
    sessions = sort_sessions(summarize(files, settings), order)
    page, total, has_more = paginate(sessions, settings.default_limit if limit is None else limit, offset)
    return SessionPage(sessions=page, total=total, has_more=has_more)


def message_page(
    files: list[TranscriptFile],
    session_id: str,
    settings: SessionsConfig,
    limit: int | None,
    offset: int,
    project: str | None = None,
) -> MessagePage:
    """Raw entries of a session across files, ordered by timestamp.

    Raises:
        SessionNotFoundError: No file holds the session
    """
    messages: list[dict[str, Any]] = []
    for transcript in sorted(files, key=lambda f: f.name):
        messages.extend(session_entries(transcript.content, session_id))
    if not messages:
        raise SessionNotFoundError(session_id, project)

    messages.sort(key=lambda entry: str(entry.get("timestamp") or ""))
    page, total, has_more = paginate(messages, settings.default_limit if limit is None else limit, offset)
    return MessagePage(session_id=session_id, messages=page, total=total, has_more=has_more)


def files_holding(files: list[TranscriptFile], session_id: str) -> list[TranscriptFile]:
    """Transcript files that contain entries of the session."""
    return [
        transcript
        for transcript in files
        if any(entry.get("sessionId") == session_id for entry in parse_lines(transcript.content))
    ]


def search_result(
    files: list[TranscriptFile],
    query: str,
    settings: SessionsConfig,
    limit: int | None,
) -> SearchResult:
    """Case-insensitive match on summary or last user message."""
    needle = query.lower()
    matches = [
        session
        for session in sort_sessions(summarize(files, settings))
        if needle in session.summary.lower() or needle in (session.last_user_message or "").lower()
    ]
    limit = settings.default_limit if limit is None else limit
    return SearchResult(query=query, sessions=matches[:limit], total=len(matches))
