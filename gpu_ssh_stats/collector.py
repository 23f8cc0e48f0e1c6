"""Collector daemon: poll the configured nodes forever."""
from __future__ import annotations

import asyncio
import logging
from typing import Optional

import voluptuous as vol

from .askpass import AskPass
from .config import Settings, load_settings
from .coordinator import FleetCoordinator
from .errors import ProfileError
from .feed import FleetFeed
from .models import NodeState
from .mqtt_publisher import MqttPublisher, state_payload
from .profiles import ProfileStore, profile_from_data
from .ssh_collector import ConnectionPool, SSHCollector
from .ssh_config import load_ssh_config

_LOGGER = logging.getLogger(__name__)


def _setup_logging(level: str = "INFO") -> None:
    """Configure module wide logging."""
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="%(asctime)s [%(levelname)s] %(message)s",
    )


def build_store(settings: Settings) -> ProfileStore:
    """Collect profiles from ``SSH_CONFIG`` and ``SERVERS_JSON``."""
    store = ProfileStore()
    if settings.ssh_config:
        try:
            store.merge(load_ssh_config(settings.ssh_config))
        except OSError as exc:
            _LOGGER.error("Failed to read %s: %s", settings.ssh_config, exc)
    for entry in settings.servers:
        try:
            store.merge([profile_from_data(entry)])
        except ProfileError as exc:
            _LOGGER.warning("Skipping server: %s", exc)
    return store


def build_coordinator(settings: Settings) -> FleetCoordinator:
    pool = ConnectionPool(
        askpass=AskPass(settings.askpass_dir, settings.askpass_helper),
        connect_timeout=settings.connect_timeout,
        idle_timeout=settings.control_persist,
    )
    collector = SSHCollector(pool, command_timeout=settings.command_timeout)
    return FleetCoordinator(
        collector,
        interval=settings.interval,
        history_size=settings.history_size,
    )


def _log_state(node_id: str, state: Optional[NodeState]) -> None:
    if state is None or state.snapshot is None:
        return
    _LOGGER.info("Stats for %s: %s", state.profile.name, state_payload(state))


async def async_main(settings: Settings) -> None:
    store = build_store(settings)
    if not len(store):
        _LOGGER.warning("No servers configured; exiting")
        return
    _LOGGER.info("Configured servers: %s", [profile.name for profile in store])

    coordinator = build_coordinator(settings)
    publisher = MqttPublisher.from_settings(settings)
    coordinator.fleet.add_listener(publisher or _log_state)

    feed: Optional[FleetFeed] = None
    if settings.ws_host:
        feed = FleetFeed(coordinator.fleet)
        coordinator.fleet.add_listener(feed)
        await feed.async_start(settings.ws_host, settings.ws_port)

    coordinator.attach(store)
    coordinator.start()
    try:
        await asyncio.Event().wait()
    finally:
        await coordinator.async_shutdown()
        if feed is not None:
            await feed.async_stop()
        if publisher is not None:
            publisher.close()


def main() -> int:
    try:
        settings = load_settings()
    except vol.Invalid as exc:
        _setup_logging()
        _LOGGER.error("Invalid configuration: %s", exc)
        return 1
    _setup_logging(settings.log_level)
    try:
        asyncio.run(async_main(settings))
    except KeyboardInterrupt:
        _LOGGER.info("Stopped")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
