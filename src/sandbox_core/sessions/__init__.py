"""Conversation transcript discovery (native and sandboxed)."""

from sandbox_core.sessions.jsonl import encode_project_path, parse_transcript
from sandbox_core.sessions.native import NativeSessionDiscovery
from sandbox_core.sessions.sandboxed import SandboxedSessionDiscovery

__all__ = [
    "NativeSessionDiscovery",
    "SandboxedSessionDiscovery",
    "encode_project_path",
    "parse_transcript",
]
