"""Tests for configuration loading and defaults."""

import pytest

from taskhive.config import (
    AutonomyConfig,
    HiveConfig,
    PeerConfig,
    PeerLinkConfig,
    SchedulerConfig,
    load_config,
    render_default_config,
)


class TestDefaults:
    def test_documented_defaults(self):
        """Test the default configuration values."""
        config = HiveConfig()
        assert config.node.listen_port == 8800
        assert config.node.peers == []
        assert config.scheduler.max_queue_size == 100
        assert config.scheduler.task_timeout_ms == 30_000
        assert config.scheduler.require_feedback is False
        assert config.scheduler.default_spawn_position == {"x": 0, "y": 64, "z": 0}
        assert config.autonomy.enabled is False
        assert config.autonomy.interval_ms == 10_000
        assert config.autonomy.max_tasks == 3
        assert config.autonomy.sender == "autonomy"
        assert config.autonomy.temperature == 0.3
        assert config.peer_link.heartbeat_interval_ms == 15_000
        assert config.peer_link.max_reconnect_attempts == 10
        assert config.peer_link.reconnect_base_delay_ms == 4_000

    def test_autonomy_clamps(self):
        """Autonomy settings are clamped into range."""
        config = AutonomyConfig(interval_ms=10, max_tasks=50, temperature=5)
        assert config.interval_ms == 1_000
        assert config.max_tasks == 10
        assert config.temperature == 2.0
        assert AutonomyConfig(max_tasks=0).max_tasks == 1

    def test_api_key_falls_back_to_env(self, monkeypatch):
        """Test reading the oracle API key from the environment."""
        monkeypatch.setenv("OPENAI_API_KEY", "sk-env")
        assert AutonomyConfig().resolved_api_key() == "sk-env"
        assert AutonomyConfig(api_key="sk-own").resolved_api_key() == "sk-own"

    def test_reconnect_delay_backoff(self):
        """Test the reconnect delay doubling up to its cap."""
        config = PeerLinkConfig()
        assert config.reconnect_delay(0) == pytest.approx(4.0)
        assert config.reconnect_delay(2) == pytest.approx(9.0)

    def test_timeout_per_action(self):
        """Test per-action timeout overrides and the fallback."""
        config = SchedulerConfig(action_timeouts_ms={"mine": 60_000})
        assert config.timeout_for("mine") == 60.0
        assert config.timeout_for("build") == 30.0

    def test_invalid_values(self):
        """Test that out-of-range values raise ValueError."""
        with pytest.raises(ValueError):
            SchedulerConfig(max_queue_size=0)
        with pytest.raises(ValueError):
            PeerConfig(url="http://example.com")
        with pytest.raises(ValueError):
            PeerLinkConfig(task_timeout_ms=-1)

    def test_peer_name_defaults_to_url(self):
        """A peer without a name is named by its URL."""
        assert PeerConfig(url="ws://10.0.0.2:8800/ws").name == "ws://10.0.0.2:8800/ws"


class TestFromMapping:
    def test_camel_case_keys(self):
        """Test accepting camelCase option names."""
        config = HiveConfig.from_mapping(
            {
                "node": {
                    "nodeName": "alpha",
                    "listenPort": 9000,
                    "peers": [{"url": "ws://beta:8800", "displayName": "beta"}],
                },
                "scheduler": {"maxQueueSize": 5, "actionTimeoutsMs": {"mine": 1000}},
                "autonomy": {"mockResponse": {"tasks": [], "rationale": "noop"}},
                "peerLink": {"maxReconnectAttempts": 2},
            }
        )
        assert config.node.node_name == "alpha"
        assert config.node.listen_port == 9000
        assert config.node.peers[0].name == "beta"
        assert config.scheduler.max_queue_size == 5
        assert config.scheduler.action_timeouts_ms == {"mine": 1000}
        assert config.autonomy.mock_response == {"tasks": [], "rationale": "noop"}
        assert config.peer_link.max_reconnect_attempts == 2

    def test_unknown_option(self):
        """Unknown options are refused."""
        with pytest.raises(ValueError, match="unknown option"):
            HiveConfig.from_mapping({"scheduler": {"queueDepth": 3}})


class TestLoadConfig:
    def test_missing_file_gives_defaults(self, tmp_path):
        """Test loading from a path that does not exist."""
        config = load_config(tmp_path / "absent.toml")
        assert config == HiveConfig()

    def test_default_config_round_trips(self, tmp_path):
        """Test that the starter config loads back to the defaults."""
        path = tmp_path / "config.toml"
        path.write_text(render_default_config())
        config = load_config(path)
        assert config.node.node_name == "taskhive-node"
        assert config.scheduler.max_queue_size == 100

    def test_toml_file(self, tmp_path):
        """Test loading options from a TOML file."""
        path = tmp_path / "config.toml"
        path.write_text(
            '[node]\nnode_name = "gamma"\n\n'
            '[[node.peers]]\nurl = "ws://delta:8800/ws"\nspecialization = ["mine"]\n\n'
            "[autonomy]\nenabled = true\nintervalMs = 2000\n"
        )
        config = load_config(path)
        assert config.node.node_name == "gamma"
        assert config.node.peers[0].specialization == ["mine"]
        assert config.autonomy.enabled is True
        assert config.autonomy.interval_ms == 2000
