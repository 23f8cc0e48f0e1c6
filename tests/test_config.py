"""
Tests for environment settings.
"""
import pytest
import voluptuous as vol

from gpu_ssh_stats.collector import build_coordinator, build_store
from gpu_ssh_stats.config import DEFAULT_WS_PORT, load_settings


class TestLoadSettings:
    """Reading settings from environment variables."""

    def test_defaults(self):
        settings = load_settings({})

        assert settings.interval == 3.0
        assert settings.servers == []
        assert settings.history_size == 60
        assert settings.connect_timeout == 5.0
        assert settings.control_persist == 600.0
        assert settings.mqtt_host is None
        assert settings.ws_port == DEFAULT_WS_PORT
        assert settings.log_level == "INFO"

    def test_values(self):
        settings = load_settings(
            {
                "INTERVAL": "10",
                "SERVERS_JSON": '[{"host": "10.0.0.1", "username": "u"}]',
                "MQTT_HOST": "broker",
                "MQTT_PORT": "1884",
                "MQTT_USER": "  ",
                "LOG_LEVEL": "debug",
                "PATH": "/usr/bin",
            }
        )

        assert settings.interval == 10.0
        assert settings.servers == [{"host": "10.0.0.1", "username": "u"}]
        assert settings.mqtt_host == "broker"
        assert settings.mqtt_port == 1884
        assert settings.mqtt_user is None
        assert settings.log_level == "DEBUG"

    @pytest.mark.parametrize(
        "env",
        [
            {"INTERVAL": "0.5"},
            {"INTERVAL": "often"},
            {"SERVERS_JSON": "{}"},
            {"SERVERS_JSON": "[oops"},
            {"MQTT_PORT": "0"},
            {"LOG_LEVEL": "LOUD"},
        ],
    )
    def test_invalid(self, env):
        with pytest.raises(vol.Invalid):
            load_settings(env)


class TestBuild:
    """Wiring settings into the store and coordinator."""

    def test_build_store(self, tmp_path):
        config = tmp_path / "config"
        config.write_text("Host node-01\n  HostName 10.0.0.1\n  User ubuntu\n")
        settings = load_settings(
            {
                "SSH_CONFIG": str(config),
                "SERVERS_JSON": '[{"name": "node-01", "host": "10.0.0.9", "username": "root"},'
                ' {"name": "node-02", "host": "10.0.0.2", "username": "root"},'
                ' {"name": "broken"}]',
            }
        )

        store = build_store(settings)

        assert sorted(p.name for p in store) == ["node-01", "node-02"]
        assert store.find_by_name("node-01").host == "10.0.0.9"

    def test_missing_ssh_config(self, tmp_path):
        settings = load_settings({"SSH_CONFIG": str(tmp_path / "missing")})

        assert len(build_store(settings)) == 0

    @pytest.mark.asyncio
    async def test_build_coordinator(self):
        coordinator = build_coordinator(load_settings({"INTERVAL": "5", "HISTORY_SIZE": "10"}))

        assert coordinator.interval == 5.0
        assert len(coordinator.collector.pool) == 0
