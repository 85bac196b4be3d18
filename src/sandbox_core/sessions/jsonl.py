"""JSONL transcript parsing.

A transcript file holds one JSON object per line. Entries carrying a
``sessionId`` belong to that session; ``summary`` entries without one are
linked to a session through ``leafUuid`` and the session's ``parentUuid``.
"""

import json
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

from sandbox_core.protocols.sessions import SessionSummary

DEFAULT_SUMMARY = "New Session"

SYSTEM_MESSAGE_PREFIXES = (
    "<command-name>",
    "<command-message>",
    "<command-args>",
    "<local-command-stdout>",
    "<system-reminder>",
    "Caveat:",
    "This session is being continued from a previous",
    "Invalid API key",
    "Warmup",
)

API_ERROR_MARKERS = (
    '{"subtasks":',
    "CRITICAL: You MUST respond with ONLY a JSON",
)


@dataclass(frozen=True)
class TranscriptFile:
    """Raw transcript file contents as read from a workspace."""

    name: str  # path relative to the projects directory
    content: str
    modified: float


def encode_project_path(path: str) -> str:
    """Directory name under which transcripts of ``path`` are stored.

    >>> encode_project_path("/workspace/my-app")
    '-workspace-my-app'
    """
    return path.rstrip("/").replace("/", "-") or "-"


def to_iso(value: Any, fallback: float) -> str:
    """Normalize a transcript timestamp to ISO-8601 UTC."""
    if isinstance(value, str) and value:
        try:
            parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            parsed = None
        if parsed is not None:
            if parsed.tzinfo is None:
                parsed = parsed.replace(tzinfo=timezone.utc)
            return parsed.astimezone(timezone.utc).isoformat()
    return datetime.fromtimestamp(fallback, tz=timezone.utc).isoformat()


def parse_lines(text: str) -> list[dict[str, Any]]:
    """JSON objects in ``text``; malformed lines are skipped."""
    entries = []
    for line in text.splitlines():
        if not line.strip():
            continue
        try:
            entry = json.loads(line)
        except ValueError:
            continue
        if isinstance(entry, dict):
            entries.append(entry)
    return entries


def extract_text(content: Any, last: bool = False) -> str | None:
    """Text of a message's content (string or list of parts)."""
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        texts = [
            part.get("text")
            for part in content
            if isinstance(part, dict) and part.get("type") == "text" and part.get("text")
        ]
        if texts:
            return texts[-1] if last else texts[0]
    return None


def is_system_message(text: str) -> bool:
    return text.startswith(SYSTEM_MESSAGE_PREFIXES) or is_api_error(text)


def is_api_error(text: str) -> bool:
    return any(marker in text for marker in API_ERROR_MARKERS)


def _role(entry: dict[str, Any]) -> str | None:
    message = entry.get("message")
    if isinstance(message, dict) and message.get("role"):
        return message["role"]
    return entry.get("role")


def _content(entry: dict[str, Any]) -> Any:
    message = entry.get("message")
    if isinstance(message, dict):
        return message.get("content")
    return message


def parse_transcript(
    text: str,
    modified: float = 0.0,
    summary_length: int = 50,
) -> list[SessionSummary]:
    """Summarize the sessions in one transcript file.

    Args:
        text: File contents
        modified: File modification time, used when entries carry no timestamp
        summary_length: Length at which fallback summaries are truncated

    Returns:
        Sessions in order of first appearance. Empty sessions and sessions
        whose summary is a raw JSON error response are dropped.
    """
    sessions: dict[str, SessionSummary] = {}
    pending_summaries: dict[str, str] = {}

    for entry in parse_lines(text):
        if entry.get("type") == "summary" and entry.get("summary") and not entry.get("sessionId"):
            if entry.get("leafUuid"):
                pending_summaries[entry["leafUuid"]] = entry["summary"]
            continue

        session_id = entry.get("sessionId")
        if not isinstance(session_id, str) or not session_id:
            continue

        session = sessions.get(session_id)
        if session is None:
            session = SessionSummary(
                id=session_id,
                summary=DEFAULT_SUMMARY,
                message_count=0,
                last_activity=to_iso(None, modified),
                cwd=entry.get("cwd") or "",
            )
            sessions[session_id] = session

        parent = entry.get("parentUuid")
        if session.summary == DEFAULT_SUMMARY and parent in pending_summaries:
            session.summary = pending_summaries[parent]
        if entry.get("type") == "summary" and entry.get("summary"):
            session.summary = entry["summary"]

        role = _role(entry)
        if role == "user":
            text_content = extract_text(_content(entry))
            if text_content and not is_system_message(text_content):
                session.last_user_message = text_content
        elif role == "assistant" and entry.get("isApiErrorMessage") is not True:
            text_content = extract_text(_content(entry), last=True)
            if text_content and not is_api_error(text_content):
                session.last_assistant_message = text_content

        session.message_count += 1
        if entry.get("timestamp"):
            session.last_activity = to_iso(entry["timestamp"], modified)

    results = []
    for session in sessions.values():
        if session.summary == DEFAULT_SUMMARY:
            last_message = session.last_user_message or session.last_assistant_message
            if last_message:
                session.summary = (
                    last_message[:summary_length] + "..."
                    if len(last_message) > summary_length
                    else last_message
                )
        if session.message_count == 0 or session.summary.startswith('{ "'):
            continue
        results.append(session)
    return results


def session_entries(text: str, session_id: str) -> list[dict[str, Any]]:
    """Entries of one session in a transcript file."""
    return [entry for entry in parse_lines(text) if entry.get("sessionId") == session_id]
