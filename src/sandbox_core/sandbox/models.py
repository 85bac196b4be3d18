"""Sandbox record and naming."""

import hashlib
import re
import time
from dataclasses import dataclass, field, replace
from enum import Enum
from pathlib import Path
from typing import Any

_UNSAFE_NAME_CHARS = re.compile(r"[^a-zA-Z0-9_.-]+")


class SandboxStatus(str, Enum):
    """Sandbox lifecycle states.

    creating -> running; running <-> stopped; any -> destroyed (terminal).
    """

    CREATING = "creating"
    RUNNING = "running"
    STOPPED = "stopped"
    DESTROYED = "destroyed"


def sandbox_name(tenant_id: str, prefix: str = "sandbox-") -> str:
    """Deterministic container name for a tenant.

    The readable part is sanitized for the engine's name rules; the digest
    keeps tenants whose ids sanitize to the same text apart.
    """
    readable = _UNSAFE_NAME_CHARS.sub("-", tenant_id).strip("-.")[:40] or "tenant"
    digest = hashlib.sha256(tenant_id.encode()).hexdigest()[:8]
    return f"{prefix}{readable}-{digest}"


def workspace_path(data_root: str | Path, tenant_id: str, prefix: str = "sandbox-") -> Path:
    """Host directory holding a tenant's workspace.

    Shared by both adapter modes, so switching a tenant between native and
    sandboxed execution keeps its files.
    """
    return Path(data_root).resolve() / sandbox_name(tenant_id, prefix)


@dataclass
class Sandbox:
    """One tenant's sandbox."""

    id: str
    name: str
    tenant_id: str
    status: SandboxStatus
    tier: str
    workspace_path: str
    created_at: float = field(default_factory=time.time)
    last_activity_at: float = field(default_factory=time.time)

    @property
    def is_running(self) -> bool:
        return self.status is SandboxStatus.RUNNING

    def idle_seconds(self, now: float | None = None) -> float:
        return (time.time() if now is None else now) - self.last_activity_at

    def descriptor(self) -> dict[str, str]:
        """The {id, name, status} view returned to upper layers."""
        return {"id": self.id, "name": self.name, "status": self.status.value}

    def with_status(self, status: SandboxStatus) -> "Sandbox":
        return replace(self, status=status)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "tenant_id": self.tenant_id,
            "status": self.status.value,
            "tier": self.tier,
            "workspace_path": self.workspace_path,
            "created_at": self.created_at,
            "last_activity_at": self.last_activity_at,
        }

    @classmethod
    def from_row(cls, row: Any) -> "Sandbox":
        """Create from a ``sandboxes`` table row."""
        return cls(
            id=row["engine_id"] or "",
            name=row["name"],
            tenant_id=row["tenant_id"],
            status=SandboxStatus(row["status"]),
            tier=row["tier"],
            workspace_path=row["workspace_path"],
            created_at=row["created_at"],
            last_activity_at=row["last_activity_at"],
        )
