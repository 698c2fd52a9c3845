"""
Bridge Adapters — Transport Between the Scheduler and the World

A bridge turns a dispatched task into concrete action and reports back
through events on its own bus. Payloads use snake_case keys:

    agent_spawned   {agent_id, position?}
    agent_status    {agent_id, progress?, status?, success?, position?}
    task_feedback   {agent_id, task_id?, progress?, success?, message?}
    support_request {agent_id, reason?, hazard?, target?, priority?, level?}
    request_tools   {agent_id, items, target?, reason?}

The scheduler never pushes anything back except through ``dispatch``,
``spawn`` and ``cancel``.
"""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from typing import Any

import structlog

from taskhive.events import EventBus, Handler
from taskhive.tasks.models import Task

logger = structlog.get_logger(__name__)

BRIDGE_EVENTS = (
    "agent_spawned",
    "agent_status",
    "task_feedback",
    "support_request",
    "request_tools",
)


class BaseBridge(ABC):
    """Abstract actuation layer."""

    transport = "bridge"
    supports_feedback = True

    def __init__(self) -> None:
        self.events = EventBus()

    def on(self, event: str, handler: Handler) -> Handler:
        return self.events.on(event, handler)

    def off(self, event: str, handler: Handler) -> None:
        self.events.off(event, handler)

    @abstractmethod
    async def dispatch(self, task: Task, agent_id: str) -> dict[str, Any]:
        """Hand a task to an agent. Raise (or return ``{"error": ...}``) on refusal."""

    def is_connected(self) -> bool:
        return True

    async def spawn(
        self, agent_id: str, position: dict[str, float], role: str | None = None
    ) -> dict[str, Any]:
        raise NotImplementedError(f"{type(self).__name__} cannot spawn agents")

    def cancel(self, agent_id: str, task_id: str) -> None:
        """Abandon a task the scheduler has already resolved. Default: nothing."""

    async def close(self) -> None:
        self.events.clear()


class SimulatedBridge(BaseBridge):
    """
    In-process stand-in for a real world.

    Tasks with ``metadata.steps`` report one progress update per step;
    others finish after ``task_ms``. Completion arrives as a synthetic
    ``task_feedback`` with ``success=True``.
    """

    transport = "simulation"

    DEFAULT_TASK_MS = 3_000
    DEFAULT_STEP_MS = 750

    def __init__(self, task_ms: int = DEFAULT_TASK_MS, step_ms: int = DEFAULT_STEP_MS) -> None:
        super().__init__()
        self.task_ms = task_ms
        self.step_ms = step_ms
        self._jobs: dict[str, tuple[str, asyncio.Task[None]]] = {}

    @property
    def running(self) -> int:
        return len(self._jobs)

    def step_interval(self, steps: int) -> float:
        """Seconds between progress updates for a plan of ``steps`` steps."""
        return max(self.step_ms, self.task_ms / steps) / 1000

    async def dispatch(self, task: Task, agent_id: str) -> dict[str, Any]:
        if agent_id in self._jobs:
            self.cancel(agent_id, self._jobs[agent_id][0])
        job = asyncio.get_running_loop().create_task(self._run(task, agent_id))
        self._jobs[agent_id] = (task.id, job)
        steps = len(task.steps)
        return {"accepted": True, "transport": self.transport, "steps": steps}

    async def spawn(
        self, agent_id: str, position: dict[str, float], role: str | None = None
    ) -> dict[str, Any]:
        self.events.emit("agent_spawned", agent_id=agent_id, position=dict(position), role=role)
        return {"spawned": True, "agent_id": agent_id, "position": dict(position)}

    def cancel(self, agent_id: str, task_id: str) -> None:
        current = self._jobs.get(agent_id)
        if current is None or current[0] != task_id:
            return
        del self._jobs[agent_id]
        current[1].cancel()

    async def close(self) -> None:
        jobs = [job for _, job in self._jobs.values()]
        self._jobs.clear()
        for job in jobs:
            job.cancel()
        if jobs:
            await asyncio.gather(*jobs, return_exceptions=True)
        await super().close()

    async def _run(self, task: Task, agent_id: str) -> None:
        steps = task.steps
        if steps:
            interval = self.step_interval(len(steps))
            for index, step in enumerate(steps, start=1):
                await asyncio.sleep(interval)
                self.events.emit(
                    "task_feedback",
                    agent_id=agent_id,
                    task_id=task.id,
                    progress=round(index / len(steps) * 100),
                    message=_describe_step(step, index),
                )
        else:
            await asyncio.sleep(self.task_ms / 1000)

        self._jobs.pop(agent_id, None)
        logger.debug("simulation_finished", agent_id=agent_id, task_id=task.id)
        self.events.emit(
            "task_feedback",
            agent_id=agent_id,
            task_id=task.id,
            progress=100,
            success=True,
            message=f"Simulated {task.action} complete",
        )


def _describe_step(step: Any, index: int) -> str:
    if isinstance(step, str):
        return step
    if isinstance(step, dict):
        return str(step.get("description") or step.get("action") or f"step {index}")
    return f"step {index}"
