"""
Tests for the polling coordinator.
"""
import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from gpu_ssh_stats.coordinator import FleetCoordinator
from gpu_ssh_stats.diagnostics import REDACTED, get_diagnostics
from gpu_ssh_stats.errors import NodeConnectionError, RemoteCommandError
from gpu_ssh_stats.models import NodeStatus
from gpu_ssh_stats.profiles import ProfileStore


def _collector(fetch):
    collector = MagicMock()
    collector.async_fetch = AsyncMock(side_effect=fetch)
    collector.async_close = AsyncMock()
    collector.pool = MagicMock()
    collector.pool.__len__.return_value = 0
    return collector


class TestRefresh:
    """One poll cycle."""

    @pytest.mark.asyncio
    async def test_connected_node(self, make_profile, sample_output):
        coordinator = FleetCoordinator(_collector(lambda profile: sample_output))
        coordinator.add_node(make_profile("a"))

        published = await coordinator.async_refresh()

        state = published["a"]
        assert state.status is NodeStatus.CONNECTED
        assert len(state.snapshot.gpus) == 2
        assert len(state.history) == 1
        assert coordinator.fleet.get("a") is state
        coordinator.collector.pool.evict_idle.assert_called_once()

    @pytest.mark.asyncio
    async def test_failing_node_does_not_affect_others(self, make_profile, sample_output):
        def fetch(profile):
            if profile.name == "bad":
                raise RemoteCommandError("nvidia-smi: not found", exit_status=127)
            return sample_output

        coordinator = FleetCoordinator(_collector(fetch))
        coordinator.add_node(make_profile("good"))
        coordinator.add_node(make_profile("bad"))

        published = await coordinator.async_refresh()

        assert published["good"].status is NodeStatus.CONNECTED
        bad = published["bad"]
        assert bad.status is NodeStatus.ERRORED
        assert bad.snapshot.connected is False
        assert bad.snapshot.error == "nvidia-smi: not found"
        assert bad.snapshot.gpus == []

    @pytest.mark.asyncio
    async def test_unexpected_exception_becomes_error_snapshot(self, make_profile):
        def fetch(profile):
            raise ValueError()

        coordinator = FleetCoordinator(_collector(fetch))
        coordinator.add_node(make_profile("a"))

        state = (await coordinator.async_refresh())["a"]

        assert state.status is NodeStatus.ERRORED
        assert state.snapshot.error == "ValueError"

    @pytest.mark.asyncio
    async def test_history_carries_across_cycles(self, make_profile, sample_output):
        outputs = iter([sample_output, NodeConnectionError("down"), sample_output])

        def fetch(profile):
            item = next(outputs)
            if isinstance(item, Exception):
                raise item
            return item

        coordinator = FleetCoordinator(_collector(fetch), history_size=2)
        coordinator.add_node(make_profile("a"))

        await coordinator.async_refresh()
        errored = (await coordinator.async_refresh())["a"]
        assert errored.status is NodeStatus.ERRORED
        assert len(errored.history) == 2
        assert errored.history[-1].cpu_usage == 0.0

        final = (await coordinator.async_refresh())["a"]
        assert final.status is NodeStatus.CONNECTED
        assert len(final.history) == 2
        assert final.history[0] == errored.history[-1]

    @pytest.mark.asyncio
    async def test_bad_lines_are_kept_as_diagnostics(self, make_profile):
        coordinator = FleetCoordinator(_collector(lambda profile: "___SECTION_GPU___\ngarbage\n"))
        coordinator.add_node(make_profile("a"))

        state = (await coordinator.async_refresh())["a"]

        assert state.status is NodeStatus.CONNECTED
        assert len(state.diagnostics) == 1

    @pytest.mark.asyncio
    async def test_slow_node_bounds_cycle(self, make_profile, sample_output):
        async def fetch(profile):
            if profile.name == "node-13":
                await asyncio.sleep(0.3)
                raise NodeConnectionError("Timed out")
            return sample_output

        coordinator = FleetCoordinator(_collector(fetch))
        for i in range(50):
            coordinator.add_node(make_profile(f"node-{i:02d}"))

        loop = asyncio.get_running_loop()
        started = loop.time()
        published = await coordinator.async_refresh()
        elapsed = loop.time() - started

        assert elapsed < 1.0
        assert len(published) == 50
        assert published["node-13"].status is NodeStatus.ERRORED
        assert sum(s.status is NodeStatus.CONNECTED for s in published.values()) == 49

    @pytest.mark.asyncio
    async def test_in_flight_node_is_skipped(self, make_profile, sample_output):
        release = asyncio.Event()

        async def fetch(profile):
            await release.wait()
            return sample_output

        collector = _collector(fetch)
        coordinator = FleetCoordinator(collector)
        coordinator.add_node(make_profile("a"))

        first = asyncio.create_task(coordinator.async_refresh())
        await asyncio.sleep(0)
        second = await coordinator.async_refresh()
        release.set()
        published = await first

        assert second == {}
        assert "a" in published
        assert collector.async_fetch.await_count == 1


class TestMembership:
    """Adding, updating and removing nodes."""

    @pytest.mark.asyncio
    async def test_added_node_is_published_as_unknown(self, make_profile):
        coordinator = FleetCoordinator(_collector(lambda profile: ""))
        coordinator.add_node(make_profile("a"))

        state = coordinator.fleet.get("a")
        assert state.status is NodeStatus.UNKNOWN
        assert state.snapshot is None
        assert state.history == ()

    @pytest.mark.asyncio
    async def test_remove_discards_state(self, make_profile, sample_output):
        coordinator = FleetCoordinator(_collector(lambda profile: sample_output))
        profile = make_profile("a")
        coordinator.add_node(profile)
        await coordinator.async_refresh()

        coordinator.remove_node("a")

        assert "a" not in coordinator.fleet
        assert coordinator.profiles == []
        coordinator.collector.pool.discard.assert_called_with(profile.transport_key)

    @pytest.mark.asyncio
    async def test_late_result_of_removed_node_is_dropped(self, make_profile, sample_output):
        release = asyncio.Event()

        async def fetch(profile):
            await release.wait()
            return sample_output

        coordinator = FleetCoordinator(_collector(fetch))
        coordinator.add_node(make_profile("a"))

        cycle = asyncio.create_task(coordinator.async_refresh())
        await asyncio.sleep(0)
        coordinator.remove_node("a")
        release.set()
        published = await cycle

        assert published == {}
        assert "a" not in coordinator.fleet

    @pytest.mark.asyncio
    async def test_readded_node_starts_fresh(self, make_profile, sample_output):
        coordinator = FleetCoordinator(_collector(lambda profile: sample_output))
        coordinator.add_node(make_profile("a"))
        await coordinator.async_refresh()
        coordinator.remove_node("a")

        coordinator.add_node(make_profile("a"))
        state = (await coordinator.async_refresh())["a"]

        assert len(state.history) == 1

    @pytest.mark.asyncio
    async def test_update_keeps_history_and_reconnects(self, make_profile, sample_output):
        coordinator = FleetCoordinator(_collector(lambda profile: sample_output))
        old = make_profile("a")
        coordinator.add_node(old)
        await coordinator.async_refresh()

        coordinator.update_node(make_profile("a", host="10.9.9.9"))

        state = coordinator.fleet.get("a")
        assert state.profile.host == "10.9.9.9"
        assert len(state.history) == 1
        coordinator.collector.pool.discard.assert_called_once_with(old.transport_key)

    @pytest.mark.asyncio
    async def test_unchanged_update_keeps_connection(self, make_profile):
        coordinator = FleetCoordinator(_collector(lambda profile: ""))
        coordinator.add_node(make_profile("a"))

        coordinator.add_node(make_profile("a"))

        coordinator.collector.pool.discard.assert_not_called()

    @pytest.mark.asyncio
    async def test_set_nodes(self, make_profile):
        coordinator = FleetCoordinator(_collector(lambda profile: ""))
        coordinator.set_nodes([make_profile("a"), make_profile("b")])
        coordinator.set_nodes([make_profile("b"), make_profile("c")])

        assert sorted(p.id for p in coordinator.profiles) == ["b", "c"]
        assert "a" not in coordinator.fleet

    @pytest.mark.asyncio
    async def test_attach_follows_store(self, make_profile):
        store = ProfileStore([make_profile("a")])
        coordinator = FleetCoordinator(_collector(lambda profile: ""))

        coordinator.attach(store)
        store.add(make_profile("b"))
        store.remove("a")

        assert [p.id for p in coordinator.profiles] == ["b"]


class TestTimer:
    """Interval handling and shutdown."""

    def test_interval_must_be_positive(self):
        with pytest.raises(ValueError):
            FleetCoordinator(_collector(lambda profile: ""), interval=0)

    @pytest.mark.asyncio
    async def test_set_interval_keeps_history(self, make_profile, sample_output):
        coordinator = FleetCoordinator(_collector(lambda profile: sample_output))
        coordinator.add_node(make_profile("a"))
        await coordinator.async_refresh()

        coordinator.set_interval(10)

        assert coordinator.interval == 10.0
        assert len(coordinator.fleet.get("a").history) == 1
        with pytest.raises(ValueError):
            coordinator.set_interval(-1)

    @pytest.mark.asyncio
    async def test_timer_polls_until_shutdown(self, make_profile, sample_output):
        collector = _collector(lambda profile: sample_output)
        coordinator = FleetCoordinator(collector, interval=0.05)
        coordinator.add_node(make_profile("a"))

        coordinator.start()
        await asyncio.sleep(0.18)
        await coordinator.async_shutdown()
        polls = collector.async_fetch.await_count
        await asyncio.sleep(0.1)

        assert polls >= 2
        assert collector.async_fetch.await_count == polls
        collector.async_close.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_interval_change_applies_to_running_timer(self, make_profile, sample_output):
        collector = _collector(lambda profile: sample_output)
        coordinator = FleetCoordinator(collector, interval=60)
        coordinator.add_node(make_profile("a"))

        coordinator.start()
        await asyncio.sleep(0.01)
        coordinator.set_interval(0.05)
        await asyncio.sleep(0.2)
        await coordinator.async_shutdown()

        assert collector.async_fetch.await_count >= 2


class TestDiagnostics:
    """Redacted coordinator dump."""

    @pytest.mark.asyncio
    async def test_profile_fields_are_redacted(self, make_profile, sample_output):
        coordinator = FleetCoordinator(_collector(lambda profile: sample_output))
        coordinator.add_node(make_profile("a", password="secret", identity_file="/keys/id"))
        await coordinator.async_refresh()

        diag = get_diagnostics(coordinator)

        node = diag["nodes"][0]
        assert diag["interval"] == 3.0
        assert diag["pooled_connections"] == 0
        assert node["profile"]["password"] == REDACTED
        assert node["profile"]["host"] == REDACTED
        assert node["profile"]["identityFile"] == REDACTED
        assert node["profile"]["proxyJump"] is None
        assert node["profile"]["name"] == "a"
        assert node["status"] == "connected"
        assert node["gpus"] == 2
        assert node["history_points"] == 1
