"""Settings read from the environment."""
from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional

import voluptuous as vol

from .coordinator import DEFAULT_INTERVAL
from .history import HISTORY_SIZE
from .ssh_collector import COMMAND_TIMEOUT, CONNECT_TIMEOUT, CONTROL_PERSIST

DEFAULT_MQTT_PORT = 1883
DEFAULT_WS_PORT = 8098
DISCOVERY_PREFIX = "homeassistant"


def _json_list(value: Any) -> List[Any]:
    try:
        data = json.loads(value) if isinstance(value, str) else value
    except ValueError as err:
        raise vol.Invalid(f"invalid JSON: {err}") from err
    if not isinstance(data, list):
        raise vol.Invalid("expected a JSON array")
    return data


_positive = vol.All(vol.Coerce(float), vol.Range(min=0, min_included=False))
_port = vol.All(vol.Coerce(int), vol.Range(min=1, max=65535))


def _optional_text(value: Any) -> Optional[str]:
    text = str(value).strip()
    return text or None


ENV_SCHEMA = vol.Schema(
    {
        vol.Optional("INTERVAL", default=DEFAULT_INTERVAL): vol.All(
            vol.Coerce(float), vol.Range(min=1)
        ),
        vol.Optional("SERVERS_JSON", default=list): _json_list,
        vol.Optional("SSH_CONFIG"): _optional_text,
        vol.Optional("HISTORY_SIZE", default=HISTORY_SIZE): vol.All(
            vol.Coerce(int), vol.Range(min=1)
        ),
        vol.Optional("CONNECT_TIMEOUT", default=CONNECT_TIMEOUT): _positive,
        vol.Optional("COMMAND_TIMEOUT", default=COMMAND_TIMEOUT): _positive,
        vol.Optional("CONTROL_PERSIST", default=CONTROL_PERSIST): _positive,
        vol.Optional("ASKPASS_DIR"): _optional_text,
        vol.Optional("ASKPASS_HELPER"): _optional_text,
        vol.Optional("MQTT_HOST"): _optional_text,
        vol.Optional("MQTT_PORT", default=DEFAULT_MQTT_PORT): _port,
        vol.Optional("MQTT_USER"): _optional_text,
        vol.Optional("MQTT_PASS"): _optional_text,
        vol.Optional("WS_HOST"): _optional_text,
        vol.Optional("WS_PORT", default=DEFAULT_WS_PORT): _port,
        vol.Optional("LOG_LEVEL", default="INFO"): vol.All(
            str, vol.Upper, vol.In(["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"])
        ),
    },
    extra=vol.REMOVE_EXTRA,
)


@dataclass
class Settings:
    """Collector settings."""

    interval: float = DEFAULT_INTERVAL
    servers: List[Dict[str, Any]] = field(default_factory=list)
    ssh_config: Optional[str] = None
    history_size: int = HISTORY_SIZE
    connect_timeout: float = CONNECT_TIMEOUT
    command_timeout: float = COMMAND_TIMEOUT
    control_persist: float = CONTROL_PERSIST
    askpass_dir: Optional[str] = None
    askpass_helper: Optional[str] = None
    mqtt_host: Optional[str] = None
    mqtt_port: int = DEFAULT_MQTT_PORT
    mqtt_user: Optional[str] = None
    mqtt_pass: Optional[str] = None
    ws_host: Optional[str] = None
    ws_port: int = DEFAULT_WS_PORT
    log_level: str = "INFO"


def load_settings(environ: Optional[Mapping[str, str]] = None) -> Settings:
    """Build :class:`Settings` from *environ* (defaults to ``os.environ``).

    Raises ``vol.Invalid`` when a variable has an unusable value.
    """
    env = os.environ if environ is None else environ
    names = [str(key) for key in ENV_SCHEMA.schema]
    data = ENV_SCHEMA({name: env[name] for name in names if name in env})
    return Settings(
        interval=data["INTERVAL"],
        servers=data["SERVERS_JSON"],
        ssh_config=data.get("SSH_CONFIG"),
        history_size=data["HISTORY_SIZE"],
        connect_timeout=data["CONNECT_TIMEOUT"],
        command_timeout=data["COMMAND_TIMEOUT"],
        control_persist=data["CONTROL_PERSIST"],
        askpass_dir=data.get("ASKPASS_DIR"),
        askpass_helper=data.get("ASKPASS_HELPER"),
        mqtt_host=data.get("MQTT_HOST"),
        mqtt_port=data["MQTT_PORT"],
        mqtt_user=data.get("MQTT_USER"),
        mqtt_pass=data.get("MQTT_PASS"),
        ws_host=data.get("WS_HOST"),
        ws_port=data["WS_PORT"],
        log_level=data["LOG_LEVEL"],
    )
