"""GPU SSH Stats: GPU, CPU and memory telemetry from remote nodes over SSH."""
from __future__ import annotations

from .coordinator import FleetCoordinator
from .fleet import FleetState
from .models import (
    AcceleratorSample,
    ConnectionProfile,
    HistoryPoint,
    NodeSnapshot,
    NodeState,
    NodeStatus,
    ProcessSample,
)
from .parser import parse_output
from .ssh_collector import ConnectionPool, SSHCollector
from .ssh_config import parse_ssh_config

__all__ = [
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
