"""Exceptions raised by GPU SSH Stats."""
from __future__ import annotations

from typing import Optional


class GpuSshStatsError(Exception):
    """Base class for all GPU SSH Stats errors."""


class ConfigParseError(GpuSshStatsError):
    """A line of an ssh config file that could not be used.

    The resolver never raises this; instances are collected as diagnostics.
    """

    def __init__(self, lineno: int, line: str, reason: str) -> None:
        super().__init__(f"line {lineno}: {reason}: {line!r}")
        self.lineno = lineno
        self.line = line
        self.reason = reason


class ProfileError(GpuSshStatsError):
    """A connection profile is missing required fields or is malformed."""


class NodeConnectionError(GpuSshStatsError, ConnectionError):
    """Connecting to or talking to a node failed (timeout, auth, unreachable)."""


class RemoteCommandError(NodeConnectionError):
    """The inspection script ran but exited with a non-zero status."""

    def __init__(self, message: str, exit_status: Optional[int] = None, stderr: str = "") -> None:
        super().__init__(message)
        self.exit_status = exit_status
        self.stderr = stderr


class DecodeError(GpuSshStatsError):
    """A line of inspection output that was dropped while decoding.

    The decoder never raises this; instances are collected as diagnostics.
    """

    def __init__(self, section: str, line: str, reason: str) -> None:
        super().__init__(f"{section}: {reason}: {line!r}")
        self.section = section
        self.line = line
        self.reason = reason
