"""Diagnostics support for GPU SSH Stats."""
from __future__ import annotations

from typing import Any, Dict, Iterable, Mapping

from .coordinator import FleetCoordinator

TO_REDACT = {"host", "username", "password", "identityFile", "proxyJump", "proxyCommand"}
REDACTED = "**REDACTED**"


def redact_data(data: Mapping[str, Any], to_redact: Iterable[str]) -> Dict[str, Any]:
    """Return a copy of *data* with the *to_redact* keys masked."""
    keys = set(to_redact)
    return {
        key: (REDACTED if key in keys and value else value) for key, value in data.items()
    }


def get_diagnostics(coordinator: FleetCoordinator) -> Dict[str, Any]:
    """Return a redacted dump of the coordinator and its fleet."""

    nodes = []
    for state in coordinator.fleet.nodes():
        snapshot = state.snapshot
        nodes.append(
            {
                "profile": redact_data(state.profile.to_dict(), TO_REDACT),
                "status": state.status.value,
                "error": snapshot.error if snapshot else None,
                "last_update": snapshot.timestamp if snapshot else None,
                "gpus": len(snapshot.gpus) if snapshot else 0,
                "history_points": len(state.history),
                "dropped_lines": [str(diag) for diag in state.diagnostics],
            }
        )
    return {
        "interval": coordinator.interval,
        "pooled_connections": len(coordinator.collector.pool),
        "nodes": nodes,
    }
