"""
Tests for the fleet table and the websocket feed.
"""
import json
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
import websockets

from gpu_ssh_stats.feed import FleetFeed, node_message
from gpu_ssh_stats.fleet import FleetState
from gpu_ssh_stats.models import ConnectionProfile, NodeState


def _state(node_id="a"):
    return NodeState(profile=ConnectionProfile(name=node_id, host="h", username="u", id=node_id))


class TestFleetState:
    """Publishing and listeners."""

    def test_publish_and_discard(self):
        fleet = FleetState()
        seen = []
        remove = fleet.add_listener(lambda node_id, state: seen.append((node_id, state)))
        state = _state()

        fleet.publish(state)
        assert fleet.get("a") is state
        assert fleet.nodes() == [state]
        assert len(fleet) == 1

        assert fleet.discard("a") is state
        assert fleet.discard("a") is None
        remove()
        fleet.publish(_state("b"))

        assert seen == [("a", state), ("a", None)]
        assert "a" not in fleet

    def test_failing_listener_does_not_stop_others(self):
        fleet = FleetState()
        seen = []
        fleet.add_listener(MagicMock(side_effect=RuntimeError("boom")))
        fleet.add_listener(lambda node_id, state: seen.append(node_id))

        fleet.publish(_state())

        assert seen == ["a"]


class TestFleetFeed:
    """Websocket messages."""

    def test_messages(self):
        assert node_message("a", None) == {"type": "removed", "id": "a"}
        assert node_message("a", _state())["node"]["id"] == "a"

    @pytest.mark.asyncio
    async def test_new_client_gets_fleet(self):
        fleet = FleetState()
        fleet.publish(_state())
        feed = FleetFeed(fleet)
        websocket = MagicMock()
        websocket.send = AsyncMock()
        websocket.wait_closed = AsyncMock()

        await feed.handler(websocket)

        message = json.loads(websocket.send.await_args.args[0])
        assert message["type"] == "fleet"
        assert [node["id"] for node in message["nodes"]] == ["a"]
        assert feed.clients == 0

    @pytest.mark.asyncio
    async def test_closed_client_is_dropped(self):
        feed = FleetFeed(FleetState())
        websocket = MagicMock()
        websocket.send = AsyncMock(side_effect=websockets.ConnectionClosed(None, None))

        await feed.handler(websocket)

        assert feed.clients == 0

    def test_broadcast_only_with_clients(self):
        feed = FleetFeed(FleetState())
        with patch("gpu_ssh_stats.feed.websockets.broadcast") as broadcast:
            feed("a", _state())
            broadcast.assert_not_called()

            client = MagicMock()
            feed._clients.add(client)
            feed("a", None)

        clients, message = broadcast.call_args.args
        assert client in clients
        assert json.loads(message) == {"type": "removed", "id": "a"}
