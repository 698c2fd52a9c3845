"""Language-model oracle interface and the offline mock."""

from __future__ import annotations

import json
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any

import structlog

from taskhive.config import AutonomyConfig

logger = structlog.get_logger(__name__)


@dataclass
class OracleResult:
    """Tasks proposed by an oracle, unvalidated."""

    tasks: list[dict[str, Any]] = field(default_factory=list)
    rationale: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {"tasks": list(self.tasks), "rationale": self.rationale}


def parse_oracle_payload(payload: Any, max_tasks: int) -> OracleResult:
    """
    Coerce a raw oracle reply (dict or JSON text) into an OracleResult.

    Raises ValueError when the reply is not a JSON object.
    """
    if isinstance(payload, (str, bytes)):
        payload = json.loads(payload)
    if not isinstance(payload, dict):
        raise ValueError(f"oracle reply must be an object, got {type(payload).__name__}")

    tasks = payload.get("tasks") or []
    if not isinstance(tasks, list):
        raise ValueError("oracle reply 'tasks' must be an array")

    rationale = payload.get("rationale")
    return OracleResult(
        tasks=[t for t in tasks if isinstance(t, dict)][:max_tasks],
        rationale=str(rationale) if rationale is not None else None,
    )


class TaskOracle(ABC):
    """Something that proposes tasks from a status snapshot."""

    name = "oracle"

    @abstractmethod
    async def generate(
        self,
        snapshot: dict[str, Any],
        instructions: str,
        max_tasks: int,
        temperature: float,
    ) -> OracleResult:
        """Return at most ``max_tasks`` proposals. May raise; callers absorb errors."""

    async def close(self) -> None:
        pass


class MockOracle(TaskOracle):
    """Replays a fixed reply. Records every call in ``calls``."""

    name = "mock"

    def __init__(self, response: dict[str, Any] | str | None = None) -> None:
        self.response = response if response is not None else {"tasks": []}
        self.calls: list[dict[str, Any]] = []

    async def generate(
        self,
        snapshot: dict[str, Any],
        instructions: str,
        max_tasks: int,
        temperature: float,
    ) -> OracleResult:
        self.calls.append(
            {
                "snapshot": snapshot,
                "instructions": instructions,
                "max_tasks": max_tasks,
                "temperature": temperature,
            }
        )
        return parse_oracle_payload(self.response, max_tasks)


def build_oracle(config: AutonomyConfig) -> TaskOracle | None:
    """Mock when a mock reply is configured, HTTP when an API key exists, else None."""
    if config.mock_response is not None:
        return MockOracle(config.mock_response)

    api_key = config.resolved_api_key()
    if api_key:
        from taskhive.oracle.http import ChatCompletionsOracle

        return ChatCompletionsOracle(
            api_key=api_key,
            model=config.model,
            base_url=config.api_base,
            timeout_s=config.oracle_timeout_ms / 1000,
        )

    logger.info("oracle_unavailable", reason="no mock response and no API key")
    return None
