"""Shared fleet state: the latest published :class:`NodeState` per node."""
from __future__ import annotations

import logging
import threading
from typing import Callable, Dict, List, Optional

from .models import NodeState

_LOGGER = logging.getLogger(__name__)

# Called with (node_id, state); state is None when the node was removed
FleetListener = Callable[[str, Optional[NodeState]], None]


class FleetState:
    """Lock-guarded table of node states.

    The coordinator is the only writer. Readers (publishers, diagnostics,
    other threads) only ever see whole entries.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._nodes: Dict[str, NodeState] = {}
        self._listeners: List[FleetListener] = []

    def __len__(self) -> int:
        with self._lock:
            return len(self._nodes)

    def __contains__(self, node_id: object) -> bool:
        with self._lock:
            return node_id in self._nodes

    def get(self, node_id: str) -> Optional[NodeState]:
        with self._lock:
            return self._nodes.get(node_id)

    def nodes(self) -> List[NodeState]:
        """Return the current entries, one per node."""
        with self._lock:
            return list(self._nodes.values())

    def publish(self, state: NodeState) -> None:
        """Replace the entry for ``state.node_id`` and notify listeners."""
        with self._lock:
            self._nodes[state.node_id] = state
        self._notify(state.node_id, state)

    def discard(self, node_id: str) -> Optional[NodeState]:
        with self._lock:
            state = self._nodes.pop(node_id, None)
        if state is not None:
            self._notify(node_id, None)
        return state

    def add_listener(self, listener: FleetListener) -> Callable[[], None]:
        """Register *listener*; return a callable that removes it again."""
        self._listeners.append(listener)

        def _remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _remove

    def _notify(self, node_id: str, state: Optional[NodeState]) -> None:
        for listener in list(self._listeners):
            try:
                listener(node_id, state)
            except Exception:  # pragma: no cover - listeners are best effort
                _LOGGER.exception("Fleet listener failed for node %s", node_id)
