"""
Tests for the package's public names.
"""
import gpu_ssh_stats


class TestPublicApi:
    """Everything exported is importable."""

    def test_exports_resolve(self):
        for name in gpu_ssh_stats.__all__:
            assert getattr(gpu_ssh_stats, name) is not None

    def test_exports(self):
        assert sorted(gpu_ssh_stats.__all__) == [
            "AcceleratorSample",
            "ConnectionPool",
            "ConnectionProfile",
            "FleetCoordinator",
            "FleetState",
            "HistoryPoint",
            "NodeSnapshot",
            "NodeState",
            "NodeStatus",
            "ProcessSample",
            "SSHCollector",
            "parse_output",
            "parse_ssh_config",
        ]
