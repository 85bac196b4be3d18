"""Per-tenant sandbox lifecycle: naming, records, engine orchestration."""

from sandbox_core.sandbox.demux import Channel, StreamDemultiplexer, StreamFrame, demultiplex
from sandbox_core.sandbox.models import Sandbox, SandboxStatus, sandbox_name, workspace_path
from sandbox_core.sandbox.tiers import SANDBOX_TIERS, TierConfig, TierLimits, get_tier

__all__ = [
    "Channel",
    "SANDBOX_TIERS",
    "Sandbox",
    "SandboxStatus",
    "StreamDemultiplexer",
    "StreamFrame",
    "TierConfig",
    "TierLimits",
    "demultiplex",
    "get_tier",
    "sandbox_name",
    "workspace_path",
]
