"""Websocket feed of fleet state for dashboards.

A client first receives the whole fleet, then one message per node update.
"""
from __future__ import annotations

import json
import logging
from typing import Any, Dict, Optional, Set

import websockets

from .fleet import FleetState
from .models import NodeState

_LOGGER = logging.getLogger(__name__)


def fleet_message(fleet: FleetState) -> Dict[str, Any]:
    return {"type": "fleet", "nodes": [state.as_dict() for state in fleet.nodes()]}


def node_message(node_id: str, state: Optional[NodeState]) -> Dict[str, Any]:
    if state is None:
        return {"type": "removed", "id": node_id}
    return {"type": "node", "node": state.as_dict()}


class FleetFeed:
    """Serve fleet updates to websocket clients."""

    def __init__(self, fleet: FleetState) -> None:
        self._fleet = fleet
        self._clients: Set[Any] = set()
        self._server: Any = None

    @property
    def clients(self) -> int:
        return len(self._clients)

    async def handler(self, websocket: Any) -> None:
        self._clients.add(websocket)
        _LOGGER.debug("Feed client connected (%s total)", len(self._clients))
        try:
            await websocket.send(json.dumps(fleet_message(self._fleet)))
            await websocket.wait_closed()
        except websockets.ConnectionClosed:
            _LOGGER.debug("Feed client went away")
        finally:
            self._clients.discard(websocket)

    def __call__(self, node_id: str, state: Optional[NodeState]) -> None:
        if not self._clients:
            return
        websockets.broadcast(self._clients, json.dumps(node_message(node_id, state)))

    async def async_start(self, host: str, port: int) -> None:
        self._server = await websockets.serve(self.handler, host, port)
        _LOGGER.info("Websocket feed listening on %s:%s", host, port)

    async def async_stop(self) -> None:
        if self._server is None:
            return
        self._server.close()
        await self._server.wait_closed()
        self._server = None
