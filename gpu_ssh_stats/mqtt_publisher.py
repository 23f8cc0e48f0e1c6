"""Forward published node states to an MQTT broker.

State goes to ``gpu_ssh/<node>/state``; Home Assistant discovery configs are
published (retained) the first time a node or one of its GPUs is seen.
"""
from __future__ import annotations

import json
import logging
import re
from collections import defaultdict
from typing import Any, Dict, Optional, Set

import paho.mqtt.client as mqtt

from .config import DISCOVERY_PREFIX, Settings
from .models import NodeState

_LOGGER = logging.getLogger(__name__)

STATE_TOPIC = "gpu_ssh/{name}/state"

NODE_SENSORS = (
    # key, unit, device_class, str_value
    ("status", None, None, True),
    ("cpu", "%", None, False),
    ("ram", "%", None, False),
    ("ram_used", "GB", None, False),
    ("ram_total", "GB", None, False),
    ("gpu_count", None, None, False),
    ("error", None, None, True),
)

GPU_SENSORS = (
    ("util", "%", None),
    ("mem", "%", None),
    ("temp", "°C", "temperature"),
    ("power", "W", "power"),
)


def _sanitize(name: str) -> str:
    """Return a lowercase, MQTT/HA friendly name."""
    return re.sub(r"[^a-zA-Z0-9_]+", "_", name).lower()


def state_payload(state: NodeState) -> Dict[str, Any]:
    """Flatten *state* into the JSON published on the state topic."""
    snapshot = state.snapshot
    payload: Dict[str, Any] = {"status": state.status.value, "error": ""}
    if snapshot is None:
        return payload
    payload.update(
        {
            "cpu": round(snapshot.cpu_usage, 1),
            "ram": round(snapshot.ram_percent, 1),
            "ram_used": round(snapshot.ram_used, 2),
            "ram_total": round(snapshot.ram_total, 2),
            "gpu_count": len(snapshot.gpus),
            "error": snapshot.error or "",
        }
    )
    for gpu in snapshot.gpus:
        payload[f"gpu{gpu.index}_util"] = gpu.util_gpu
        payload[f"gpu{gpu.index}_mem"] = round(gpu.memory_used_percent, 1)
        payload[f"gpu{gpu.index}_temp"] = gpu.temperature
        payload[f"gpu{gpu.index}_power"] = gpu.power_draw
    return payload


class MqttPublisher:
    """Fleet listener publishing every node update to MQTT."""

    def __init__(self, client: mqtt.Client, discovery_prefix: str = DISCOVERY_PREFIX) -> None:
        self._client = client
        self._prefix = discovery_prefix
        self._discovered: Dict[str, Set[str]] = defaultdict(set)
        # node id -> sanitized name used in topics
        self._names: Dict[str, str] = {}

    @classmethod
    def from_settings(cls, settings: Settings) -> Optional["MqttPublisher"]:
        """Connect to the configured broker; ``None`` when MQTT is disabled or down."""
        if not settings.mqtt_host:
            _LOGGER.info("MQTT disabled; stats will be printed to log")
            return None

        client = mqtt.Client(callback_api_version=mqtt.CallbackAPIVersion.VERSION2)
        if settings.mqtt_user:
            client.username_pw_set(settings.mqtt_user, settings.mqtt_pass)
        try:
            rc = client.connect(settings.mqtt_host, settings.mqtt_port, 60)
        except OSError as exc:
            _LOGGER.error("MQTT connection failed: %s", exc)
            return None

        if rc != mqtt.MQTT_ERR_SUCCESS:
            _LOGGER.error("Failed to connect to MQTT broker: %s", mqtt.error_string(rc))
            return None
        _LOGGER.info("Connected to MQTT broker at %s:%s", settings.mqtt_host, settings.mqtt_port)
        client.loop_start()
        return cls(client)

    def publish_discovery(
        self,
        name: str,
        key: str,
        unit: Optional[str] = None,
        device_class: Optional[str] = None,
        str_value: bool = False,
    ) -> None:
        """Publish the MQTT discovery config for a single sensor."""
        uid = f"gpu_ssh_{name}_{key}"
        default = "''" if str_value else 0
        payload: Dict[str, Any] = {
            "name": f"{name} {key}",
            "state_topic": STATE_TOPIC.format(name=name),
            "value_template": f"{{{{ value_json.{key} | default({default}) }}}}",
            "unique_id": uid,
            "device": {"identifiers": [f"gpu_ssh_{name}"], "name": name},
        }
        if unit:
            payload["unit_of_measurement"] = unit
        if device_class:
            payload["device_class"] = device_class
        self._client.publish(f"{self._prefix}/sensor/{uid}/config", json.dumps(payload), retain=True)

    def ensure_discovery(self, name: str, state: NodeState) -> None:
        """Publish discovery for the node and any GPU not announced yet."""
        known = self._discovered[name]
        if "node" not in known:
            known.add("node")
            for key, unit, device_class, str_value in NODE_SENSORS:
                self.publish_discovery(name, key, unit, device_class, str_value)
        if state.snapshot is None:
            return
        for gpu in state.snapshot.gpus:
            tag = f"gpu{gpu.index}"
            if tag in known:
                continue
            known.add(tag)
            for metric, unit, device_class in GPU_SENSORS:
                self.publish_discovery(name, f"{tag}_{metric}", unit, device_class)

    def remove_discovery(self, name: str) -> None:
        """Clear the retained discovery configs published for *name*."""
        known = self._discovered.pop(name, set())
        keys = [key for key, *_ in NODE_SENSORS] if "node" in known else []
        for tag in sorted(known - {"node"}):
            keys.extend(f"{tag}_{metric}" for metric, *_ in GPU_SENSORS)
        for key in keys:
            uid = f"gpu_ssh_{name}_{key}"
            self._client.publish(f"{self._prefix}/sensor/{uid}/config", "", retain=True)
        if keys:
            _LOGGER.debug("Removed discovery for %s", name)

    def __call__(self, node_id: str, state: Optional[NodeState]) -> None:
        if state is None:
            name = self._names.pop(node_id, None)
            if name is not None:
                self.remove_discovery(name)
            return
        if state.snapshot is None:
            return
        name = _sanitize(state.profile.name)
        previous = self._names.get(node_id)
        if previous is not None and previous != name:
            self.remove_discovery(previous)
        self._names[node_id] = name
        self.ensure_discovery(name, state)
        payload = state_payload(state)
        info = self._client.publish(STATE_TOPIC.format(name=name), json.dumps(payload), retain=False)
        if info.rc == mqtt.MQTT_ERR_SUCCESS:
            _LOGGER.debug("Published stats for %s: %s", name, payload)
        else:
            _LOGGER.error("Failed to publish stats for %s: %s", name, mqtt.error_string(info.rc))

    def close(self) -> None:
        self._client.loop_stop()
        self._client.disconnect()
