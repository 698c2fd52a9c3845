"""Agent Registry - Lifecycle state of every worker agent."""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any

import structlog

from taskhive.errors import AgentStateError
from taskhive.events import EventBus
from taskhive.tasks.models import Task

logger = structlog.get_logger(__name__)


class AgentState(StrEnum):
    """Agent lifecycle states."""

    IDLE = "idle"
    WORKING = "working"
    OFFLINE = "offline"


@dataclass
class Agent:
    """A long-lived worker owned by the scheduler."""

    id: str
    role: str = "builder"
    state: AgentState = AgentState.IDLE
    current_task: Task | None = None
    progress: float = 0.0  # 0-100
    position: dict[str, float] | None = None
    awaiting_feedback: bool = False
    last_update: float = field(default_factory=time.time)

    def __post_init__(self) -> None:
        if not self.id:
            raise ValueError("agent id must be non-empty")

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "role": self.role,
            "state": str(self.state),
            "task": str(self.current_task.action) if self.current_task else None,
            "task_id": self.current_task.id if self.current_task else None,
            "progress": self.progress,
            "position": dict(self.position) if self.position else None,
            "awaiting_feedback": self.awaiting_feedback,
            "last_update": self.last_update,
        }


class AgentRegistry:
    """
    Tracks agents in registration order.

    Transitions:
    - idle <-> working (dispatcher only)
    - idle | working -> offline (unregister)
    - offline -> idle (re-register)
    """

    _ALLOWED = {
        AgentState.IDLE: {AgentState.WORKING, AgentState.OFFLINE},
        AgentState.WORKING: {AgentState.IDLE, AgentState.OFFLINE},
        AgentState.OFFLINE: set(),
    }

    def __init__(self, bus: EventBus | None = None) -> None:
        self.bus = bus or EventBus()
        self._agents: dict[str, Agent] = {}

    def __len__(self) -> int:
        return len(self._agents)

    def __contains__(self, agent_id: object) -> bool:
        return agent_id in self._agents

    def register(
        self,
        agent_id: str,
        role: str = "builder",
        position: dict[str, float] | None = None,
    ) -> Agent:
        """Register a new agent, or revive an offline one."""
        existing = self._agents.get(agent_id)
        if existing is not None and existing.state != AgentState.OFFLINE:
            raise AgentStateError(agent_id, str(existing.state), "register")

        agent = Agent(id=agent_id, role=role, position=dict(position) if position else None)
        # Revived agents keep their place in the enumeration order.
        self._agents[agent_id] = agent
        logger.info("agent_registered", agent_id=agent_id, role=role)
        self.bus.emit("agent_registered", agent_id=agent_id, role=role)
        return agent

    def unregister(self, agent_id: str) -> Agent | None:
        """Mark an agent offline. Returns it, or None if unknown."""
        agent = self._agents.get(agent_id)
        if agent is None:
            return None
        if agent.state != AgentState.OFFLINE:
            self.set_state(agent_id, AgentState.OFFLINE)
        logger.info("agent_unregistered", agent_id=agent_id)
        self.bus.emit("agent_unregistered", agent_id=agent_id)
        return agent

    def get(self, agent_id: str) -> Agent | None:
        return self._agents.get(agent_id)

    def agents(self) -> list[Agent]:
        return list(self._agents.values())

    def list_idle(self) -> list[Agent]:
        """Idle agents without a task, in registration order."""
        return [
            a
            for a in self._agents.values()
            if a.state == AgentState.IDLE and a.current_task is None
        ]

    def list_working(self) -> list[Agent]:
        return [a for a in self._agents.values() if a.state == AgentState.WORKING]

    def set_state(self, agent_id: str, state: AgentState, task: Task | None = None) -> Agent:
        """
        Apply a validated transition.

        WORKING requires ``task``; every other state clears the task,
        progress and feedback flag.
        """
        agent = self._agents.get(agent_id)
        if agent is None:
            raise AgentStateError(agent_id, None, str(state))
        if state not in self._ALLOWED[agent.state]:
            raise AgentStateError(agent_id, str(agent.state), str(state))
        if state == AgentState.WORKING and task is None:
            raise AgentStateError(agent_id, str(agent.state), "working without a task")

        previous = agent.state
        agent.state = state
        agent.current_task = task if state == AgentState.WORKING else None
        agent.progress = 0.0
        agent.awaiting_feedback = False
        agent.last_update = time.time()

        self.bus.emit(
            "agent_state_changed",
            agent_id=agent_id,
            previous=str(previous),
            state=str(state),
        )
        return agent

    def update_progress(self, agent_id: str, progress: float) -> float | None:
        """Clamp and store progress for a working agent."""
        agent = self._agents.get(agent_id)
        if agent is None or agent.state != AgentState.WORKING:
            return None
        agent.progress = max(0.0, min(100.0, float(progress)))
        agent.last_update = time.time()
        return agent.progress

    def get_stats(self) -> dict[str, int]:
        """Agent counts by state."""
        stats = {str(s): 0 for s in AgentState}
        for agent in self._agents.values():
            stats[str(agent.state)] += 1
        stats["total"] = len(self._agents)
        return stats
