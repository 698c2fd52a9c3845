"""Configuration objects for a scheduler node.

All durations are in milliseconds, matching the option names. Components
accept the already-built dataclasses; loading from TOML is a convenience
for the CLI.
"""

from __future__ import annotations

import os
import re
import tomllib
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any

DEFAULT_CONFIG_PATH = Path.home() / ".taskhive" / "config.toml"

DEFAULT_INSTRUCTIONS = (
    "You coordinate a small crew of autonomous agents maintaining a shared "
    "base. Look at the current agent roster and queue, then propose the next "
    "few useful tasks. Prefer work that keeps idle agents busy, avoid "
    "duplicating queued tasks, and keep details short. Reply with JSON only: "
    '{"tasks": [{"action", "details", "target", "metadata", "priority"}], '
    '"rationale": "..."}.'
)


def _clamp(value: float, low: float, high: float) -> float:
    return max(low, min(high, value))


@dataclass
class PeerConfig:
    """One outbound peer scheduler."""

    url: str
    name: str = ""
    specialization: list[str] = field(default_factory=list)
    weight: float = 1.0
    priority: int = 0
    enabled: bool = True

    def __post_init__(self) -> None:
        if not self.url.startswith(("ws://", "wss://")):
            raise ValueError(f"peer url must be ws:// or wss://, got {self.url!r}")
        if self.weight < 0:
            raise ValueError("peer weight must be >= 0")
        if not self.name:
            self.name = self.url

    @classmethod
    def from_mapping(cls, data: dict[str, Any]) -> PeerConfig:
        data = dict(data)
        if "display_name" in data:
            data.setdefault("name", data.pop("display_name"))
        return cls(**data)


@dataclass
class NodeConfig:
    """Identity and listener of this node."""

    node_name: str = "taskhive-node"
    listen_host: str = "0.0.0.0"
    listen_port: int = 8800
    peers: list[PeerConfig] = field(default_factory=list)
    max_message_bytes: int = 1024 * 1024
    client_heartbeat_s: float = 30.0

    def __post_init__(self) -> None:
        if not 0 <= self.listen_port <= 65535:
            raise ValueError(f"listen_port out of range: {self.listen_port}")
        if self.max_message_bytes <= 0:
            raise ValueError("max_message_bytes must be positive")
        self.peers = [
            p if isinstance(p, PeerConfig) else PeerConfig.from_mapping(p) for p in self.peers
        ]


@dataclass
class SchedulerConfig:
    """Queue, dispatch and simulation settings."""

    max_queue_size: int = 100
    task_timeout_ms: int = 30_000
    require_feedback: bool = False
    default_spawn_position: dict[str, float] = field(
        default_factory=lambda: {"x": 0, "y": 64, "z": 0}
    )
    action_timeouts_ms: dict[str, int] = field(default_factory=dict)
    simulated_task_ms: int = 3_000
    simulated_step_ms: int = 750

    def __post_init__(self) -> None:
        if self.max_queue_size < 1:
            raise ValueError("max_queue_size must be >= 1")
        if self.task_timeout_ms <= 0:
            raise ValueError("task_timeout_ms must be positive")
        for action, timeout in self.action_timeouts_ms.items():
            if timeout <= 0:
                raise ValueError(f"timeout for {action} must be positive")

    def timeout_for(self, action: str) -> float:
        """Per-task timeout in seconds for an action."""
        return self.action_timeouts_ms.get(action, self.task_timeout_ms) / 1000


@dataclass
class AutonomyConfig:
    """Periodic task synthesis."""

    MIN_INTERVAL_MS = 1_000
    MAX_TASKS_LIMIT = 10

    enabled: bool = False
    interval_ms: int = 10_000
    max_tasks: int = 3
    allow_when_busy: bool = False
    sender: str = "autonomy"
    temperature: float = 0.3
    instructions: str = DEFAULT_INSTRUCTIONS
    mock_response: dict[str, Any] | str | None = None
    model: str = "gpt-4o-mini"
    api_base: str = "https://api.openai.com/v1"
    api_key: str | None = None
    oracle_timeout_ms: int = 20_000

    def __post_init__(self) -> None:
        self.interval_ms = max(self.MIN_INTERVAL_MS, int(self.interval_ms))
        self.max_tasks = int(_clamp(int(self.max_tasks), 1, self.MAX_TASKS_LIMIT))
        self.temperature = _clamp(float(self.temperature), 0.0, 2.0)
        if not self.instructions.strip():
            self.instructions = DEFAULT_INSTRUCTIONS

    def resolved_api_key(self) -> str | None:
        return self.api_key or os.environ.get("OPENAI_API_KEY") or None


@dataclass
class PeerLinkConfig:
    """Timers shared by every outbound peer link."""

    heartbeat_interval_ms: int = 15_000
    connection_timeout_ms: int = 30_000
    task_timeout_ms: int = 30_000
    max_reconnect_attempts: int = 10
    reconnect_base_delay_ms: int = 4_000

    RECONNECT_MULTIPLIER = 1.5
    HEARTBEAT_MISS_FACTOR = 3

    def __post_init__(self) -> None:
        for f in fields(self):
            if getattr(self, f.name) < 0:
                raise ValueError(f"{f.name} must be >= 0")

    def reconnect_delay(self, attempts: int) -> float:
        """Backoff in seconds before attempt ``attempts + 1``."""
        return self.reconnect_base_delay_ms * self.RECONNECT_MULTIPLIER**attempts / 1000


@dataclass
class HiveConfig:
    """Everything a node needs."""

    node: NodeConfig = field(default_factory=NodeConfig)
    scheduler: SchedulerConfig = field(default_factory=SchedulerConfig)
    autonomy: AutonomyConfig = field(default_factory=AutonomyConfig)
    peer_link: PeerLinkConfig = field(default_factory=PeerLinkConfig)

    SECTIONS = {
        "node": NodeConfig,
        "scheduler": SchedulerConfig,
        "autonomy": AutonomyConfig,
        "peer_link": PeerLinkConfig,
    }

    @classmethod
    def from_mapping(cls, data: dict[str, Any]) -> HiveConfig:
        """Build from a plain mapping; camelCase and snake_case keys both work."""
        normalized = _snake_keys(data)
        sections: dict[str, Any] = {}
        for name, section_cls in cls.SECTIONS.items():
            raw = normalized.get(name) or {}
            if not isinstance(raw, dict):
                raise ValueError(f"section [{name}] must be a table")
            known = {f.name for f in fields(section_cls)}
            unknown = set(raw) - known
            if unknown:
                raise ValueError(f"unknown option(s) in [{name}]: {', '.join(sorted(unknown))}")
            sections[name] = section_cls(**raw)
        return cls(**sections)


_CAMEL_RE = re.compile(r"(?<!^)(?=[A-Z])")

# Keys whose values are user data and must keep their spelling.
_OPAQUE_KEYS = {"action_timeouts_ms", "mock_response", "default_spawn_position"}


def _snake(key: str) -> str:
    return _CAMEL_RE.sub("_", key).lower()


def _snake_keys(value: Any) -> Any:
    if isinstance(value, dict):
        out = {}
        for key, item in value.items():
            name = _snake(key)
            out[name] = item if name in _OPAQUE_KEYS else _snake_keys(item)
        return out
    if isinstance(value, list):
        return [_snake_keys(item) for item in value]
    return value


def load_config(path: Path | str | None = None) -> HiveConfig:
    """Read a TOML config file, or return defaults when it does not exist."""
    config_path = Path(path) if path is not None else DEFAULT_CONFIG_PATH
    if not config_path.exists():
        return HiveConfig()
    with config_path.open("rb") as fh:
        data = tomllib.load(fh)
    return HiveConfig.from_mapping(data)


def render_default_config() -> str:
    """TOML text for ``taskhive init``."""
    return """\
[node]
node_name = "taskhive-node"
listen_host = "0.0.0.0"
listen_port = 8800

# [[node.peers]]
# url = "ws://10.0.0.2:8800/ws"
# name = "mining-node"
# specialization = ["mine", "gather"]

[scheduler]
max_queue_size = 100
task_timeout_ms = 30000
require_feedback = false
default_spawn_position = { x = 0, y = 64, z = 0 }

[scheduler.action_timeouts_ms]
build = 120000

[autonomy]
enabled = false
interval_ms = 10000
max_tasks = 3
allow_when_busy = false
sender = "autonomy"
temperature = 0.3

[peer_link]
heartbeat_interval_ms = 15000
connection_timeout_ms = 30000
task_timeout_ms = 30000
max_reconnect_attempts = 10
reconnect_base_delay_ms = 4000
"""
