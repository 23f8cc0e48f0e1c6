"""Coordinator that polls every registered node over SSH."""
from __future__ import annotations

import asyncio
import itertools
import logging
from functools import partial
from typing import Callable, Dict, Iterable, List, Optional, Set, Tuple

from .errors import DecodeError, GpuSshStatsError
from .fleet import FleetState
from .history import HISTORY_SIZE, extend_history
from .models import ConnectionProfile, NodeSnapshot, NodeState, NodeStatus
from .parser import parse_output
from .profiles import PROFILE_REMOVED, ProfileStore
from .ssh_collector import SSHCollector

_LOGGER = logging.getLogger(__name__)

DEFAULT_INTERVAL = 3.0


def _error_text(err: BaseException) -> str:
    return str(err).strip() or err.__class__.__name__


class FleetCoordinator:
    """Poll all nodes concurrently and publish their state.

    Each cycle runs one task per node. A task turns any failure into an
    error snapshot for its own node, so a slow or broken node never holds
    up the others or the timer.
    """

    def __init__(
        self,
        collector: SSHCollector,
        fleet: Optional[FleetState] = None,
        interval: float = DEFAULT_INTERVAL,
        history_size: int = HISTORY_SIZE,
    ) -> None:
        self.collector = collector
        self.fleet = fleet or FleetState()
        self._interval = self._check_interval(interval)
        self._history_size = history_size
        self._profiles: Dict[str, ConnectionProfile] = {}
        # bumped on every add so results from a previous registration are dropped
        self._generations: Dict[str, int] = {}
        self._counter = itertools.count()
        self._in_flight: Dict[str, asyncio.Task] = {}
        self._cycles: Set[asyncio.Task] = set()
        self._timer: Optional[asyncio.Task] = None
        self._wakeup = asyncio.Event()

    @staticmethod
    def _check_interval(seconds: float) -> float:
        if seconds <= 0:
            raise ValueError(f"Poll interval must be positive, got {seconds}")
        return float(seconds)

    @property
    def interval(self) -> float:
        return self._interval

    def set_interval(self, seconds: float) -> None:
        """Change the poll interval; the running timer restarts with it."""
        self._interval = self._check_interval(seconds)
        self._wakeup.set()
        _LOGGER.info("Poll interval set to %ss", self._interval)

    @property
    def profiles(self) -> List[ConnectionProfile]:
        return list(self._profiles.values())

    def add_node(self, profile: ConnectionProfile) -> None:
        """Start polling *profile*'s node from the next cycle on."""
        profile.validate()
        if profile.id in self._profiles:
            self.update_node(profile)
            return
        self._profiles[profile.id] = profile
        self._generations[profile.id] = next(self._counter)
        self.fleet.publish(NodeState(profile=profile))
        _LOGGER.debug("Added node %s (%s)", profile.name, profile.transport_key)

    def update_node(self, profile: ConnectionProfile) -> None:
        """Replace a node's profile, keeping its history."""
        profile.validate()
        old = self._profiles.get(profile.id)
        if old is None:
            self.add_node(profile)
            return
        self._profiles[profile.id] = profile
        if old != profile:
            # address or credentials changed; reconnect on the next poll
            self.collector.pool.discard(old.transport_key)
        state = self.fleet.get(profile.id)
        if state is not None:
            self.fleet.publish(
                NodeState(
                    profile=profile,
                    status=state.status,
                    snapshot=state.snapshot,
                    history=state.history,
                    diagnostics=state.diagnostics,
                )
            )

    def remove_node(self, node_id: str) -> None:
        """Stop polling a node and drop its snapshot and history."""
        profile = self._profiles.pop(node_id, None)
        self._generations.pop(node_id, None)
        if profile is not None:
            self.collector.pool.discard(profile.transport_key)
            _LOGGER.debug("Removed node %s", profile.name)
        self.fleet.discard(node_id)

    def set_nodes(self, profiles: Iterable[ConnectionProfile]) -> None:
        """Make the registered nodes exactly *profiles*."""
        wanted = {profile.id: profile for profile in profiles}
        for node_id in list(self._profiles):
            if node_id not in wanted:
                self.remove_node(node_id)
        for profile in wanted.values():
            self.add_node(profile)

    def attach(self, store: ProfileStore) -> Callable[[], None]:
        """Follow *store*: its profiles become the polled nodes."""
        self.set_nodes(store)

        def _handle_change(event: str, profile: ConnectionProfile) -> None:
            if event == PROFILE_REMOVED:
                self.remove_node(profile.id)
            else:
                self.add_node(profile)

        return store.add_listener(_handle_change)

    async def async_refresh(self) -> Dict[str, NodeState]:
        """Run one poll cycle and return the states it published."""
        tasks: Dict[str, asyncio.Task] = {}
        for node_id, profile in list(self._profiles.items()):
            if node_id in self._in_flight:
                _LOGGER.debug("Previous poll of %s still running; skipping", profile.name)
                continue
            task = asyncio.create_task(
                self._async_update_node(profile, self._generations[node_id]),
                name=f"poll-{profile.name}",
            )
            self._in_flight[node_id] = task
            task.add_done_callback(partial(self._node_task_done, node_id))
            tasks[node_id] = task

        published: Dict[str, NodeState] = {}
        if tasks:
            results = await asyncio.gather(*tasks.values(), return_exceptions=True)
            for node_id, result in zip(tasks, results):
                if isinstance(result, NodeState):
                    published[node_id] = result
                elif isinstance(result, BaseException):  # pragma: no cover - tasks catch everything
                    _LOGGER.error("Poll task for %s failed: %s", node_id, result)

        self.collector.pool.evict_idle()
        _LOGGER.debug(
            "Poll cycle done: %s of %s node(s) connected",
            sum(1 for state in published.values() if state.status is NodeStatus.CONNECTED),
            len(tasks),
        )
        return published

    async def _async_update_node(
        self, profile: ConnectionProfile, generation: int
    ) -> Optional[NodeState]:
        try:
            output = await self.collector.async_fetch(profile)
        except GpuSshStatsError as err:
            _LOGGER.warning("Failed to collect stats for %s: %s", profile.name, err)
            snapshot = NodeSnapshot(node_id=profile.id, error=_error_text(err))
            return self._merge(profile, generation, snapshot, ())
        except Exception as err:
            _LOGGER.exception("Unexpected error collecting stats for %s", profile.name)
            snapshot = NodeSnapshot(node_id=profile.id, error=_error_text(err))
            return self._merge(profile, generation, snapshot, ())

        result = parse_output(output, profile.id)
        return self._merge(profile, generation, result.snapshot, tuple(result.diagnostics))

    def _merge(
        self,
        profile: ConnectionProfile,
        generation: int,
        snapshot: NodeSnapshot,
        diagnostics: Tuple[DecodeError, ...],
    ) -> Optional[NodeState]:
        if self._generations.get(profile.id) != generation:
            _LOGGER.debug("Discarding late result for removed node %s", profile.name)
            return None
        previous = self.fleet.get(profile.id)
        history = extend_history(
            previous.history if previous else (), snapshot, self._history_size
        )
        state = NodeState(
            profile=self._profiles[profile.id],
            status=NodeStatus.CONNECTED if snapshot.connected else NodeStatus.ERRORED,
            snapshot=snapshot,
            history=history,
            diagnostics=diagnostics,
        )
        self.fleet.publish(state)
        return state

    def _node_task_done(self, node_id: str, task: asyncio.Task) -> None:
        if self._in_flight.get(node_id) is task:
            del self._in_flight[node_id]

    def start(self) -> None:
        """Start the poll timer on the running event loop."""
        if self._timer is None or self._timer.done():
            self._timer = asyncio.create_task(self._async_run_timer(), name="poll-timer")

    async def _async_run_timer(self) -> None:
        while True:
            cycle = asyncio.create_task(self.async_refresh(), name="poll-cycle")
            self._cycles.add(cycle)
            cycle.add_done_callback(self._cycle_done)
            await self._async_wait_interval()

    async def _async_wait_interval(self) -> None:
        while True:
            self._wakeup.clear()
            try:
                await asyncio.wait_for(self._wakeup.wait(), self._interval)
            except asyncio.TimeoutError:
                return
            # interval changed: wait again with the new value

    def _cycle_done(self, task: asyncio.Task) -> None:
        self._cycles.discard(task)
        if not task.cancelled() and task.exception() is not None:  # pragma: no cover
            _LOGGER.error("Poll cycle failed: %s", task.exception())

    async def async_shutdown(self) -> None:
        """Stop the timer, cancel running polls and close connections."""
        pending = [task for task in (self._timer, *self._cycles, *self._in_flight.values()) if task]
        for task in pending:
            task.cancel()
        await asyncio.gather(*pending, return_exceptions=True)
        self._timer = None
        await self.collector.async_close()
