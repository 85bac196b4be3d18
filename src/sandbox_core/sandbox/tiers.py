"""Sandbox resource tiers.

Defines the resource classes a tenant's sandbox can be created with
(Free, Pro, Enterprise) and how they translate into container limits.
"""

from dataclasses import dataclass
from typing import Any

GIB = 1024 * 1024 * 1024
DEFAULT_CPU_PERIOD = 100_000


@dataclass(frozen=True)
class TierLimits:
    """Container resource limits for a tier."""

    memory_bytes: int
    cpu_quota: int
    cpu_period: int = DEFAULT_CPU_PERIOD
    pids_limit: int = 512

    @property
    def cpus(self) -> float:
        """Effective CPU count (quota / period)."""
        return self.cpu_quota / self.cpu_period

    def to_host_config(self) -> dict[str, int]:
        """Limits as container-creation keyword arguments."""
        return {
            "memory_bytes": self.memory_bytes,
            "cpu_quota": self.cpu_quota,
            "cpu_period": self.cpu_period,
            "pids_limit": self.pids_limit,
        }


@dataclass(frozen=True)
class TierConfig:
    """Complete configuration for a sandbox tier."""

    id: str
    display_name: str
    limits: TierLimits

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for API responses."""
        return {
            "id": self.id,
            "display_name": self.display_name,
            "limits": {
                "memory_bytes": self.limits.memory_bytes,
                "cpus": self.limits.cpus,
                "pids_limit": self.limits.pids_limit,
            },
        }


SANDBOX_TIERS: dict[str, TierConfig] = {
    "free": TierConfig(
        id="free",
        display_name="Free",
        limits=TierLimits(memory_bytes=1 * GIB, cpu_quota=50_000, pids_limit=256),
    ),
    "pro": TierConfig(
        id="pro",
        display_name="Pro",
        limits=TierLimits(memory_bytes=4 * GIB, cpu_quota=200_000, pids_limit=512),
    ),
    "enterprise": TierConfig(
        id="enterprise",
        display_name="Enterprise",
        limits=TierLimits(memory_bytes=8 * GIB, cpu_quota=400_000, pids_limit=1024),
    ),
}


def get_tier(tier_id: str) -> TierConfig | None:
    """Get tier configuration by ID.

    Args:
        tier_id: Tier identifier (free, pro, enterprise)

    Returns:
        TierConfig or None if not found
    """
    return SANDBOX_TIERS.get(tier_id)


def list_tiers() -> list[TierConfig]:
    """Get all available tiers."""
    return list(SANDBOX_TIERS.values())


def resolve_tier(tier_id: str | None, default: str = "free") -> TierConfig:
    """Get a tier, falling back to ``default`` for unknown or missing ids."""
    tier = get_tier(tier_id) if tier_id else None
    return tier or SANDBOX_TIERS.get(default) or SANDBOX_TIERS["free"]
