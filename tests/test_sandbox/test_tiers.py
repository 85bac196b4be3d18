"""Tests for sandbox tiers."""

from sandbox_core.sandbox.tiers import GIB, get_tier, list_tiers, resolve_tier


class TestTiers:
    """Tests for tier lookup and limits."""

    def test_default_tiers(self):
        assert [t.id for t in list_tiers()] == ["free", "pro", "enterprise"]

    def test_free_limits(self):
        free = get_tier("free")
        assert free.limits.memory_bytes == 1 * GIB
        assert free.limits.cpu_quota == 50_000
        assert free.limits.cpu_period == 100_000
        assert free.limits.cpus == 0.5

    def test_enterprise_limits(self):
        enterprise = get_tier("enterprise")
        assert enterprise.limits.memory_bytes == 8 * GIB
        assert enterprise.limits.cpus == 4

    def test_get_unknown(self):
        assert get_tier("platinum") is None

    def test_resolve_falls_back_to_default(self):
        assert resolve_tier("platinum").id == "free"
        assert resolve_tier(None, default="pro").id == "pro"
        assert resolve_tier("enterprise").id == "enterprise"

    def test_host_config(self):
        assert get_tier("pro").limits.to_host_config() == {
            "memory_bytes": 4 * GIB,
            "cpu_quota": 200_000,
            "cpu_period": 100_000,
            "pids_limit": 512,
        }

    def test_to_dict(self):
        data = get_tier("pro").to_dict()
        assert data["display_name"] == "Pro"
        assert data["limits"]["cpus"] == 2
