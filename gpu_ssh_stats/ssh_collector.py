"""SSH utilities for GPU SSH Stats."""
from __future__ import annotations

import asyncio
import logging
import socket
import time
from dataclasses import dataclass
from typing import Any, Dict, Optional, Set, Tuple

import asyncssh

from .askpass import AskPass
from .errors import NodeConnectionError, RemoteCommandError
from .models import ConnectionProfile
from .remote_script import REMOTE_SCRIPT

_LOGGER = logging.getLogger(__name__)

CONNECT_TIMEOUT = 5.0
COMMAND_TIMEOUT = 15.0
# Keep idle connections around as long as OpenSSH's ControlPersist=600 would
CONTROL_PERSIST = 600.0


@dataclass
class _PoolEntry:
    conn: asyncssh.SSHClientConnection
    last_used: float


class ConnectionPool:
    """Reusable SSH connections keyed by ``user@host:port``.

    Connections idle for longer than *idle_timeout* seconds are closed the
    next time the pool is used.
    """

    def __init__(
        self,
        askpass: Optional[AskPass] = None,
        connect_timeout: float = CONNECT_TIMEOUT,
        idle_timeout: float = CONTROL_PERSIST,
    ) -> None:
        self._askpass = askpass or AskPass()
        self._connect_timeout = connect_timeout
        self._idle_timeout = idle_timeout
        self._entries: Dict[str, _PoolEntry] = {}
        self._locks: Dict[str, asyncio.Lock] = {}
        # callers holding or waiting for each lock
        self._users: Dict[str, int] = {}
        self._connecting: Set[str] = set()
        # keys discarded while their connection was still being opened
        self._dropped: Set[str] = set()

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: object) -> bool:
        return key in self._entries

    async def async_get(self, profile: ConnectionProfile) -> Tuple[asyncssh.SSHClientConnection, bool]:
        """Return a connection for *profile* and whether it was reused."""
        key = profile.transport_key
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._users[key] = self._users.get(key, 0) + 1
        try:
            async with lock:
                return await self._async_get_locked(profile, key)
        finally:
            self._users[key] -= 1
            if not self._users[key]:
                del self._users[key]
                if key not in self._entries:
                    self._locks.pop(key, None)

    async def _async_get_locked(
        self, profile: ConnectionProfile, key: str
    ) -> Tuple[asyncssh.SSHClientConnection, bool]:
        self.evict_idle()
        entry = self._entries.get(key)
        if entry is not None:
            entry.last_used = time.monotonic()
            return entry.conn, True
        self._connecting.add(key)
        try:
            conn = await self._async_connect(profile)
        finally:
            self._connecting.discard(key)
            dropped = key in self._dropped
            self._dropped.discard(key)
        if dropped:
            conn.close()
            raise NodeConnectionError(f"Connection to {key} was discarded while connecting")
        self._entries[key] = _PoolEntry(conn, time.monotonic())
        _LOGGER.debug("Opened SSH connection %s", key)
        return conn, False

    def touch(self, key: str) -> None:
        entry = self._entries.get(key)
        if entry is not None:
            entry.last_used = time.monotonic()

    def discard(self, key: str) -> None:
        """Close and forget the connection for *key*, if any."""
        entry = self._entries.pop(key, None)
        if entry is not None:
            _LOGGER.debug("Closing SSH connection %s", key)
            entry.conn.close()
        if key in self._connecting:
            self._dropped.add(key)
        if key not in self._users:
            self._locks.pop(key, None)

    def evict_idle(self, now: Optional[float] = None) -> int:
        """Close connections idle for longer than the idle window."""
        now = time.monotonic() if now is None else now
        stale = [
            key
            for key, entry in self._entries.items()
            if now - entry.last_used > self._idle_timeout
        ]
        for key in stale:
            self.discard(key)
        return len(stale)

    async def async_close(self) -> None:
        entries = list(self._entries.values())
        self._entries.clear()
        for key in [key for key in self._locks if key not in self._users]:
            del self._locks[key]
        self._dropped.update(self._connecting)
        for entry in entries:
            entry.conn.close()
        for entry in entries:
            try:
                await entry.conn.wait_closed()
            except (asyncssh.Error, OSError) as err:  # pragma: no cover - best effort
                _LOGGER.debug("Error while closing SSH connection: %s", err)

    async def _async_connect(self, profile: ConnectionProfile) -> asyncssh.SSHClientConnection:
        key = profile.transport_key
        options: Dict[str, Any] = {
            "port": profile.port,
            "username": profile.username.strip(),
            # unknown host keys are accepted instead of prompting
            "known_hosts": None,
        }
        if profile.identity_file:
            options["client_keys"] = [profile.identity_file]
        elif profile.password:
            options["password"] = await self._askpass.async_get_secret(profile.password)
        else:
            # keys and agent only: fail instead of waiting on a prompt
            options["password_auth"] = False
            options["kbdint_auth"] = False
        if profile.proxy_jump:
            options["tunnel"] = profile.proxy_jump
        if profile.proxy_command:
            options["proxy_command"] = profile.proxy_command

        try:
            return await asyncio.wait_for(
                asyncssh.connect(profile.host.strip(), **options),
                self._connect_timeout,
            )
        except asyncio.TimeoutError as err:
            raise NodeConnectionError(
                f"Timed out connecting to {key} after {self._connect_timeout:g}s"
            ) from err
        except asyncssh.PermissionDenied as err:
            raise NodeConnectionError(f"Authentication failed for {key}: {err.reason}") from err
        except socket.gaierror as err:
            raise NodeConnectionError(f"Unable to resolve host: {profile.host}") from err
        except (asyncssh.Error, OSError) as err:
            raise NodeConnectionError(f"Cannot connect to {key}: {err}") from err


class SSHCollector:
    """Run the inspection script on nodes, reusing pooled connections."""

    def __init__(
        self,
        pool: Optional[ConnectionPool] = None,
        script: str = REMOTE_SCRIPT,
        command_timeout: float = COMMAND_TIMEOUT,
    ) -> None:
        self.pool = pool or ConnectionPool()
        self._script = script
        self._command_timeout = command_timeout

    async def async_fetch(self, profile: ConnectionProfile) -> str:
        """Return the raw inspection output of *profile*'s node."""
        return await self.async_run(profile, self._script)

    async def async_run(self, profile: ConnectionProfile, command: str) -> str:
        """Run *command* on the node and return its stdout.

        Raises :class:`NodeConnectionError` when the node cannot be reached
        and :class:`RemoteCommandError` when the command exits non-zero.
        """
        profile.validate()
        key = profile.transport_key

        for attempt in (1, 2):
            conn, reused = await self.pool.async_get(profile)
            try:
                result = await asyncio.wait_for(
                    conn.run(command, check=False, errors="ignore"),
                    self._command_timeout,
                )
            except asyncio.TimeoutError as err:
                self.pool.discard(key)
                raise NodeConnectionError(
                    f"Command timed out on {key} after {self._command_timeout:g}s"
                ) from err
            except (asyncssh.Error, OSError) as err:
                self.pool.discard(key)
                if reused and attempt == 1:
                    _LOGGER.debug("Pooled connection %s failed (%s); reconnecting", key, err)
                    continue
                raise NodeConnectionError(f"SSH session to {key} failed: {err}") from err
            break

        self.pool.touch(key)
        if result.exit_status != 0:
            stderr = (result.stderr or "").strip()
            raise RemoteCommandError(
                stderr or f"Remote command exited with status {result.exit_status}",
                exit_status=result.exit_status,
                stderr=stderr,
            )
        return result.stdout or ""

    async def async_close(self) -> None:
        await self.pool.async_close()
