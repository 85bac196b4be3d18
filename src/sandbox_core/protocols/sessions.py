"""SessionDiscovery protocol for AI conversation transcripts."""

from dataclasses import asdict, dataclass, field
from typing import Any, Protocol, runtime_checkable


@dataclass
class SessionSummary:
    """One conversation found in a project's transcripts."""

    id: str
    summary: str
    message_count: int
    last_activity: str  # ISO-8601, UTC
    cwd: str = ""
    last_user_message: str | None = None
    last_assistant_message: str | None = None

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return asdict(self)


@dataclass
class SessionPage:
    """A page of sessions ordered by last activity."""

    sessions: list[SessionSummary] = field(default_factory=list)
    total: int = 0
    has_more: bool = False
    pending: bool = False  # sandbox still starting; retry later


@dataclass
class MessagePage:
    """A page of raw transcript entries for one session, oldest first."""

    session_id: str
    messages: list[dict[str, Any]] = field(default_factory=list)
    total: int = 0
    has_more: bool = False
    pending: bool = False


@dataclass
class SearchResult:
    """Sessions whose summary or last user message match a query."""

    query: str
    sessions: list[SessionSummary] = field(default_factory=list)
    total: int = 0
    pending: bool = False


@runtime_checkable
class SessionDiscovery(Protocol):
    """Transcript discovery for one tenant (host filesystem or sandbox)."""

    async def list_sessions(
        self,
        project: str = ".",
        limit: int | None = None,
        offset: int = 0,
        order: str = "desc",
    ) -> SessionPage:
        ...

    async def get_messages(
        self,
        session_id: str,
        project: str = ".",
        limit: int | None = None,
        offset: int = 0,
    ) -> MessagePage:
        """Messages of one session.

        Raises:
            SessionNotFoundError: No transcript contains the session
        """
        ...

    async def delete(self, session_id: str, project: str = ".") -> None:
        """Delete the transcript files holding a session.

        Raises:
            SessionNotFoundError: No transcript contains the session
        """
        ...

    async def search(
        self,
        query: str,
        project: str | None = None,
        limit: int | None = None,
    ) -> SearchResult:
        """Case-insensitive search; ``project=None`` searches every project."""
        ...
