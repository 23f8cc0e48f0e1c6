"""Data records shared by the collector, parser and coordinator."""
from __future__ import annotations

import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from .errors import DecodeError, ProfileError

DEFAULT_PORT = 22


def _clean(value: Any) -> Optional[str]:
    """Return *value* stripped, or ``None`` for missing/blank values."""

    if value is None:
        return None
    text = str(value).strip()
    return text or None


@dataclass
class ConnectionProfile:
    """How to reach one node over SSH."""

    name: str
    host: str
    username: str
    port: int = DEFAULT_PORT
    password: Optional[str] = None
    identity_file: Optional[str] = None
    proxy_jump: Optional[str] = None
    proxy_command: Optional[str] = None
    id: str = field(default_factory=lambda: str(uuid.uuid4()))

    @property
    def transport_key(self) -> str:
        """Return the ``user@host:port`` key used for connection reuse."""
        return f"{self.username.strip()}@{self.host.strip()}:{self.port}"

    def validate(self) -> None:
        """Raise :class:`ProfileError` when host or username is empty."""
        if not self.host or not self.host.strip():
            raise ProfileError(f"Profile {self.name!r} has no host")
        if not self.username or not self.username.strip():
            raise ProfileError(f"Profile {self.name!r} has no username")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "host": self.host,
            "port": self.port,
            "username": self.username,
            "password": self.password,
            "identityFile": self.identity_file,
            "proxyJump": self.proxy_jump,
            "proxyCommand": self.proxy_command,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ConnectionProfile":
        """Build a profile from the collaborator JSON shape."""
        host = _clean(data.get("host")) or ""
        profile = cls(
            name=_clean(data.get("name")) or host,
            host=host,
            username=_clean(data.get("username")) or "",
            port=int(data.get("port") or DEFAULT_PORT),
            password=data.get("password") or None,
            identity_file=_clean(data.get("identityFile")),
            proxy_jump=_clean(data.get("proxyJump")),
            proxy_command=_clean(data.get("proxyCommand")),
        )
        if data.get("id"):
            profile.id = str(data["id"])
        return profile


@dataclass
class AcceleratorSample:
    """One GPU as reported by ``nvidia-smi --query-gpu``."""

    index: int
    uuid: str
    name: str
    util_gpu: float
    util_memory: float
    memory_used: float  # MB
    memory_total: float  # MB
    temperature: float  # °C
    power_draw: float  # W
    power_limit: float  # W

    @property
    def memory_used_percent(self) -> float:
        if self.memory_total <= 0:
            return 0.0
        return self.memory_used / self.memory_total * 100.0

    def as_dict(self) -> Dict[str, Any]:
        return {
            "index": self.index,
            "uuid": self.uuid,
            "name": self.name,
            "util_gpu": self.util_gpu,
            "util_memory": self.util_memory,
            "memory_used": self.memory_used,
            "memory_total": self.memory_total,
            "memory_used_percent": round(self.memory_used_percent, 2),
            "temperature": self.temperature,
            "power_draw": self.power_draw,
            "power_limit": self.power_limit,
        }


@dataclass
class ProcessSample:
    """A process using GPU (or, in the ``ps`` fallback, host) memory."""

    pid: str
    user: str
    command: str
    memory_used: float  # MB
    gpu_index: Optional[int] = None

    def as_dict(self) -> Dict[str, Any]:
        return {
            "pid": self.pid,
            "user": self.user,
            "command": self.command,
            "gpu_index": self.gpu_index,
            "memory_used": self.memory_used,
        }


@dataclass
class NodeSnapshot:
    """Latest telemetry for one node."""

    node_id: str
    connected: bool = False
    timestamp: float = field(default_factory=time.time)
    error: Optional[str] = None
    cpu_usage: float = 0.0
    ram_used: float = 0.0  # GB
    ram_total: float = 0.0  # GB
    gpus: List[AcceleratorSample] = field(default_factory=list)
    processes: List[ProcessSample] = field(default_factory=list)

    @property
    def ram_percent(self) -> float:
        if self.ram_total <= 0:
            return 0.0
        return self.ram_used / self.ram_total * 100.0

    def as_dict(self) -> Dict[str, Any]:
        return {
            "node_id": self.node_id,
            "connected": self.connected,
            "timestamp": self.timestamp,
            "error": self.error,
            "cpu": round(self.cpu_usage, 2),
            "ram_used": round(self.ram_used, 2),
            "ram_total": round(self.ram_total, 2),
            "ram_percent": round(self.ram_percent, 2),
            "gpus": [gpu.as_dict() for gpu in self.gpus],
            "processes": [proc.as_dict() for proc in self.processes],
        }


@dataclass(frozen=True)
class HistoryPoint:
    """Summary of one snapshot, kept for trend charts."""

    timestamp: float
    cpu_usage: float
    ram_usage: float
    gpu_utilizations: Dict[int, float] = field(default_factory=dict)

    @classmethod
    def from_snapshot(cls, snapshot: NodeSnapshot) -> "HistoryPoint":
        return cls(
            timestamp=snapshot.timestamp,
            cpu_usage=snapshot.cpu_usage,
            ram_usage=snapshot.ram_percent,
            gpu_utilizations={gpu.index: gpu.util_gpu for gpu in snapshot.gpus},
        )

    def as_dict(self) -> Dict[str, Any]:
        return {
            "timestamp": self.timestamp,
            "cpu": round(self.cpu_usage, 2),
            "ram": round(self.ram_usage, 2),
            "gpus": {str(k): v for k, v in self.gpu_utilizations.items()},
        }


class NodeStatus(str, Enum):
    """Connection state of a node, re-evaluated every poll cycle."""

    UNKNOWN = "unknown"
    CONNECTED = "connected"
    ERRORED = "errored"


@dataclass
class NodeState:
    """The fleet table entry published for one node."""

    profile: ConnectionProfile
    status: NodeStatus = NodeStatus.UNKNOWN
    snapshot: Optional[NodeSnapshot] = None
    history: Tuple[HistoryPoint, ...] = ()
    diagnostics: Tuple[DecodeError, ...] = ()

    @property
    def node_id(self) -> str:
        return self.profile.id

    def as_dict(self) -> Dict[str, Any]:
        return {
            "id": self.profile.id,
            "name": self.profile.name,
            "status": self.status.value,
            "snapshot": self.snapshot.as_dict() if self.snapshot else None,
            "history": [point.as_dict() for point in self.history],
        }
