"""
Dispatcher — Matches Tasks to Agents and Drives the Task Lifecycle

Per task, events are strictly ordered:
    task_queued? -> task_assigned -> task_dispatched -> task_progress* -> task_completed

Dispatch and timeout failures never raise to the caller; they end in
``task_completed`` with ``success=False`` and an ``error`` record. Nothing
is retried here.

Usage:
    from taskhive.engine import Dispatcher

    dispatcher = Dispatcher()
    dispatcher.register_agent("npc-1", role="miner")
    admission = dispatcher.submit({"action": "mine", ...})
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Any

import structlog

from taskhive.config import SchedulerConfig
from taskhive.engine.bridge import BRIDGE_EVENTS, BaseBridge, SimulatedBridge
from taskhive.engine.queue import PriorityTaskQueue, QueueEntry
from taskhive.engine.registry import Agent, AgentRegistry, AgentState
from taskhive.errors import (
    AgentStateError,
    DispatchFailed,
    QueueFull,
    TaskhiveError,
    TaskTimeout,
    ValidationFailed,
)
from taskhive.events import EventBus
from taskhive.tasks.models import Task
from taskhive.tasks.roles import role_matches
from taskhive.tasks.validator import SUPPORT_LEVELS, validate_task

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class Admission:
    """Outcome of a successful ``submit``."""

    task: Task
    status: str  # assigned | queued
    agent_id: str | None = None
    position: int | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "task_id": self.task.id,
            "status": self.status,
            "agent_id": self.agent_id,
            "position": self.position,
        }


class Dispatcher:
    """
    Owns the queue, the registry and every per-task timer.

    All methods must be called from the event loop thread. ``submit`` and
    ``complete`` are synchronous; bridge I/O runs in background tasks.
    """

    def __init__(
        self,
        config: SchedulerConfig | None = None,
        bus: EventBus | None = None,
        registry: AgentRegistry | None = None,
        queue: PriorityTaskQueue | None = None,
        bridge: BaseBridge | None = None,
    ) -> None:
        self.config = config or SchedulerConfig()
        self.bus = bus or EventBus()
        self.registry = registry or AgentRegistry(self.bus)
        self.queue = queue or PriorityTaskQueue(self.config.max_queue_size, self.bus)
        self.simulation = SimulatedBridge(
            task_ms=self.config.simulated_task_ms,
            step_ms=self.config.simulated_step_ms,
        )
        self.bridge: BaseBridge | None = None
        self.counters = {"submitted": 0, "completed": 0, "failed": 0}

        self._timers: dict[str, asyncio.TimerHandle] = {}
        self._jobs: set[asyncio.Task[None]] = set()
        # task id -> completion feedback received before dispatch returned
        self._dispatching: dict[str, dict[str, Any] | None] = {}
        self._bridge_handlers = {
            "agent_spawned": self._on_agent_spawned,
            "agent_status": self._on_agent_status,
            "task_feedback": self._on_task_feedback,
            "support_request": self._on_support_request,
            "request_tools": self._on_request_tools,
        }
        self._subscribe(self.simulation)
        if bridge is not None:
            self.attach_bridge(bridge)

    # ── Bridge wiring ──────────────────────────────────────────────────────

    def attach_bridge(self, bridge: BaseBridge) -> None:
        if self.bridge is not None:
            self.detach_bridge()
        self.bridge = bridge
        self._subscribe(bridge)
        logger.info("bridge_attached", bridge=type(bridge).__name__)

    def detach_bridge(self) -> BaseBridge | None:
        bridge, self.bridge = self.bridge, None
        if bridge is not None:
            for event in BRIDGE_EVENTS:
                bridge.off(event, self._bridge_handlers[event])
        return bridge

    def _subscribe(self, bridge: BaseBridge) -> None:
        for event in BRIDGE_EVENTS:
            bridge.on(event, self._bridge_handlers[event])

    @property
    def active_bridge(self) -> BaseBridge:
        return self.bridge or self.simulation

    @property
    def transport(self) -> str:
        return "bridge" if self.bridge is not None else "simulation"

    def _expects_feedback(self) -> bool:
        if self.bridge is None:
            return True
        return bool(
            self.config.require_feedback
            and self.bridge.is_connected()
            and self.bridge.supports_feedback
        )

    # ── Agents ─────────────────────────────────────────────────────────────

    def register_agent(
        self,
        agent_id: str,
        role: str = "builder",
        position: dict[str, float] | None = None,
    ) -> Agent:
        """Register (or revive) an agent and give it queued work."""
        agent = self.registry.register(agent_id, role=role, position=position)
        if self.queue:
            self.pump_queue()
        return agent

    def unregister_agent(self, agent_id: str) -> bool:
        """Take an agent offline. An in-flight task fails with ``agent_unregistered``."""
        agent = self.registry.get(agent_id)
        if agent is None or agent.state == AgentState.OFFLINE:
            return False

        task = agent.current_task
        self._cancel_timer(agent_id)
        self.registry.unregister(agent_id)

        if task is not None:
            self.active_bridge.cancel(agent_id, task.id)
            self.counters["failed"] += 1
            logger.warning("task_abandoned", agent_id=agent_id, task_id=task.id)
            self.bus.emit(
                "task_completed",
                agent_id=agent_id,
                success=False,
                task=task.snapshot(),
                metadata={},
                reason="agent_unregistered",
            )
            self.pump_queue()
        return True

    async def spawn_agent(self, agent_id: str) -> dict[str, Any]:
        """Ask the bridge to spawn a registered agent at its position or the default."""
        agent = self.registry.get(agent_id)
        if agent is None:
            raise AgentStateError(agent_id, None, "spawn")
        position = agent.position or dict(self.config.default_spawn_position)
        result = await self.active_bridge.spawn(agent_id, position, agent.role)
        logger.info("agent_spawn_requested", agent_id=agent_id, position=position)
        return result

    def _find_idle_agent(self, task: Task, exclude: str | None = None) -> Agent | None:
        for agent in self.registry.list_idle():
            if agent.id != exclude and role_matches(task.preferred_roles, agent.role):
                return agent
        return None

    # ── Admission ──────────────────────────────────────────────────────────

    def submit(self, raw: dict[str, Any] | Task, sender: str | None = None) -> Admission:
        """
        Validate, normalize and either assign or enqueue a task.

        Raises:
            ValidationFailed: The task is malformed.
            QueueFull: No idle agent and the queue refused the task.
        """
        task = self._admit(raw, sender)

        agent = self._find_idle_agent(task)
        if agent is not None:
            self.counters["submitted"] += 1
            self._assign(agent, task)
            return Admission(task, "assigned", agent_id=agent.id)

        position = self.queue.enqueue(task)
        self.counters["submitted"] += 1
        logger.info(
            "task_queued",
            task_id=task.id,
            action=str(task.action),
            priority=str(task.priority),
            position=position,
        )
        self.bus.emit("task_queued", task=task.snapshot(), position=position)
        self.pump_queue()

        for candidate in self.registry.agents():
            if candidate.current_task is task:
                return Admission(task, "assigned", agent_id=candidate.id)
        return Admission(task, "queued", position=position)

    def _admit(self, raw: dict[str, Any] | Task, sender: str | None) -> Task:
        wire = raw.to_wire() if isinstance(raw, Task) else raw
        result = validate_task(wire)
        if not result.valid:
            logger.warning("task_invalid", errors=result.errors)
            self.bus.emit("task_invalid", task=wire, errors=list(result.errors))
            raise ValidationFailed(result.errors)
        if isinstance(raw, Task):
            return raw
        return Task.from_wire(raw, sender=sender)

    def pump_queue(self) -> int:
        """
        Hand queued work to idle agents. Returns the number assigned.

        Each idle agent takes its first role match. When a full pass
        assigns nothing, the head goes to the first idle agent.
        """
        assigned = 0
        while self.queue:
            idle = self.registry.list_idle()
            if not idle:
                break

            matched = False
            for agent in idle:
                if agent.state != AgentState.IDLE:
                    continue
                entry = self.queue.find_first_match(
                    lambda e, role=agent.role: role_matches(e.task.preferred_roles, role)
                )
                if entry is None:
                    continue
                self._dequeue_and_assign(agent, entry)
                assigned += 1
                matched = True
                if not self.queue:
                    break

            if not matched:
                head = self.queue.peek()
                if head is None:
                    break
                self._dequeue_and_assign(idle[0], head)
                assigned += 1
        return assigned

    def _dequeue_and_assign(self, agent: Agent, entry: QueueEntry) -> None:
        self.queue.remove(entry)
        self.bus.emit("task_dequeued", task=entry.task.snapshot(), remaining=len(self.queue))
        self._assign(agent, entry.task)

    # ── Lifecycle ──────────────────────────────────────────────────────────

    def _assign(self, agent: Agent, task: Task) -> None:
        loop = asyncio.get_running_loop()
        self.registry.set_state(agent.id, AgentState.WORKING, task)
        agent.awaiting_feedback = self._expects_feedback()

        logger.info(
            "task_assigned",
            agent_id=agent.id,
            task_id=task.id,
            action=str(task.action),
            preferred_roles=list(task.preferred_roles),
        )
        self.bus.emit("task_assigned", agent_id=agent.id, task=task.snapshot())

        timeout_s = self.config.timeout_for(task.action)
        self._cancel_timer(agent.id)
        self._timers[agent.id] = loop.call_later(
            timeout_s, self._on_timeout, agent.id, task.id, timeout_s
        )

        self._dispatching[task.id] = None
        job = loop.create_task(self._dispatch(agent.id, task, self.transport))
        self._jobs.add(job)
        job.add_done_callback(self._jobs.discard)

    async def _dispatch(self, agent_id: str, task: Task, transport: str) -> None:
        bridge = self.active_bridge
        try:
            response = await bridge.dispatch(task, agent_id)
            if isinstance(response, dict) and response.get("error"):
                raise DispatchFailed(response["error"])
        except asyncio.CancelledError:
            self._dispatching.pop(task.id, None)
            raise
        except Exception as exc:
            self._dispatching.pop(task.id, None)
            if not self._is_current(agent_id, task.id):
                return
            error = exc if isinstance(exc, DispatchFailed) else DispatchFailed(exc)
            logger.warning("task_dispatch_failed", agent_id=agent_id, task_id=task.id, error=str(exc))
            self.bus.emit(
                "task_dispatch_failed",
                agent_id=agent_id,
                task=task.snapshot(),
                error=error.to_dict(),
            )
            self.complete(agent_id, False, task_id=task.id, error=error)
            return

        early = self._dispatching.pop(task.id, None)
        if not self._is_current(agent_id, task.id):
            return
        self.bus.emit(
            "task_dispatched",
            agent_id=agent_id,
            task_id=task.id,
            transport=transport,
            response=response,
        )
        if early is not None:
            self._complete_from_feedback(agent_id, task.id, early)
            return
        agent = self.registry.get(agent_id)
        if agent is not None and not agent.awaiting_feedback:
            self.complete(agent_id, True, metadata={"response": response}, task_id=task.id)

    def _is_current(self, agent_id: str, task_id: str) -> bool:
        agent = self.registry.get(agent_id)
        return bool(agent and agent.current_task and agent.current_task.id == task_id)

    def complete(
        self,
        agent_id: str,
        success: bool = True,
        metadata: dict[str, Any] | None = None,
        task_id: str | None = None,
        error: TaskhiveError | None = None,
    ) -> bool:
        """
        Resolve an agent's current task. Idempotent.

        Returns False (and changes nothing) when the agent is unknown, has no
        task, or ``task_id`` names a task it is no longer running.
        """
        agent = self.registry.get(agent_id)
        if agent is None or agent.current_task is None:
            return False
        if task_id is not None and agent.current_task.id != task_id:
            return False

        task = agent.current_task
        self._cancel_timer(agent_id)
        self.registry.set_state(agent_id, AgentState.IDLE)
        self.counters["completed" if success else "failed"] += 1

        log = logger.info if success else logger.warning
        log("task_completed", agent_id=agent_id, task_id=task.id, success=success)

        payload: dict[str, Any] = {
            "agent_id": agent_id,
            "success": success,
            "task": task.snapshot(),
            "metadata": dict(metadata or {}),
        }
        if error is not None:
            payload["error"] = error.to_dict()
        self.bus.emit("task_completed", **payload)

        self.pump_queue()
        return True

    def _on_timeout(self, agent_id: str, task_id: str, timeout_s: float) -> None:
        self._timers.pop(agent_id, None)
        if not self._is_current(agent_id, task_id):
            return
        error = TaskTimeout(task_id, agent_id=agent_id, timeout_s=timeout_s)
        logger.warning("task_timeout", agent_id=agent_id, task_id=task_id, timeout_s=timeout_s)
        self.bus.emit("task_timeout", agent_id=agent_id, task_id=task_id, error=error.to_dict())
        self.active_bridge.cancel(agent_id, task_id)
        self.complete(agent_id, False, task_id=task_id, error=error)

    def _cancel_timer(self, agent_id: str) -> None:
        timer = self._timers.pop(agent_id, None)
        if timer is not None:
            timer.cancel()

    # ── Bridge events ──────────────────────────────────────────────────────

    def _current_for(self, payload: dict[str, Any]) -> Agent | None:
        """The agent a feedback event refers to, if it is still running that task."""
        agent = self.registry.get(payload.get("agent_id", ""))
        if agent is None or agent.current_task is None:
            logger.debug("feedback_ignored", agent_id=payload.get("agent_id"))
            return None
        task_id = payload.get("task_id")
        if task_id is not None and task_id != agent.current_task.id:
            logger.debug("stale_feedback_ignored", agent_id=agent.id, task_id=task_id)
            return None
        return agent

    def _apply_feedback(self, agent: Agent, payload: dict[str, Any]) -> None:
        task = agent.current_task
        if task is None:
            return

        if payload.get("progress") is not None:
            progress = self.registry.update_progress(agent.id, payload["progress"])
            self.bus.emit(
                "task_progress",
                agent_id=agent.id,
                task_id=task.id,
                progress=progress,
                message=payload.get("message"),
            )

        if not isinstance(payload.get("success"), bool):
            return
        if task.id in self._dispatching:
            # settled once task_dispatched has been emitted
            if self._dispatching[task.id] is None:
                self._dispatching[task.id] = dict(payload)
            return
        self._complete_from_feedback(agent.id, task.id, payload)

    def _complete_from_feedback(self, agent_id: str, task_id: str, payload: dict[str, Any]) -> None:
        metadata = {k: v for k, v in payload.items() if k not in ("agent_id", "success")}
        self.complete(agent_id, payload["success"], metadata=metadata, task_id=task_id)

    def _on_task_feedback(self, payload: dict[str, Any]) -> None:
        agent = self._current_for(payload)
        if agent is None:
            return
        if payload.get("progress") is None and not isinstance(payload.get("success"), bool):
            self.bus.emit("bridge_feedback", **payload)
            return
        self._apply_feedback(agent, payload)

    def _on_agent_status(self, payload: dict[str, Any]) -> None:
        agent = self.registry.get(payload.get("agent_id", ""))
        if agent is not None and isinstance(payload.get("position"), dict):
            agent.position = dict(payload["position"])
        self.bus.emit("agent_status", **payload)
        agent = self._current_for(payload)
        if agent is not None:
            self._apply_feedback(agent, payload)

    def _on_agent_spawned(self, payload: dict[str, Any]) -> None:
        agent = self.registry.get(payload.get("agent_id", ""))
        if agent is not None and isinstance(payload.get("position"), dict):
            agent.position = dict(payload["position"])
        self.bus.emit("agent_spawned", **payload)

    def _on_support_request(self, payload: dict[str, Any]) -> None:
        requester = payload.get("agent_id", "")
        hazard = payload.get("hazard") or payload.get("reason")
        metadata: dict[str, Any] = {"targetAgent": requester}
        if hazard:
            metadata["hazard"] = hazard
        if payload.get("reason"):
            metadata["notes"] = payload["reason"]
        level = _support_level(payload)
        if level:
            metadata["level"] = level

        wire = {
            "action": "support",
            "details": f"Support {requester} near {hazard}" if hazard else f"Support {requester}",
            "metadata": metadata,
            "priority": _followup_priority(payload.get("priority")),
        }
        target = self._resolve_target(requester, payload)
        if target:
            wire["target"] = target
        self._submit_followup(wire, exclude=requester)

    def _on_request_tools(self, payload: dict[str, Any]) -> None:
        requester = payload.get("agent_id", "")
        items = payload.get("items")
        if not isinstance(items, list) or not items:
            logger.info("tool_request_ignored", agent_id=requester, reason="no items")
            return

        metadata: dict[str, Any] = {"targetAgent": requester, "items": list(items)}
        if payload.get("reason"):
            metadata["notes"] = payload["reason"]
        wire = {
            "action": "deliver",
            "details": f"Deliver supplies to {requester}",
            "metadata": metadata,
            "priority": _followup_priority(payload.get("priority")),
        }
        target = self._resolve_target(requester, payload)
        if target:
            wire["target"] = target
        self._submit_followup(wire, exclude=requester)

    def _resolve_target(self, agent_id: str, payload: dict[str, Any]) -> dict[str, Any] | None:
        for key in ("target", "location", "position"):
            if isinstance(payload.get(key), dict):
                return dict(payload[key])
        agent = self.registry.get(agent_id)
        if agent is None:
            return None
        if agent.current_task is not None and agent.current_task.target is not None:
            return agent.current_task.target.to_wire()
        return dict(agent.position) if agent.position else None

    def _submit_followup(self, wire: dict[str, Any], exclude: str) -> Task | None:
        """Assign a follow-up to an idle agent other than ``exclude``, or enqueue it."""
        result = validate_task(wire)
        if not result.valid:
            logger.warning("followup_invalid", action=wire["action"], errors=result.errors)
            return None

        task = Task.from_wire(wire, sender="bridge")
        agent = self._find_idle_agent(task, exclude=exclude)
        if agent is None:
            agent = next((a for a in self.registry.list_idle() if a.id != exclude), None)

        self.bus.emit("followup_created", task=task.snapshot(), requester=exclude)
        if agent is not None:
            self.counters["submitted"] += 1
            self._assign(agent, task)
            return task

        try:
            position = self.queue.enqueue(task)
        except QueueFull:
            return None
        self.counters["submitted"] += 1
        self.bus.emit("task_queued", task=task.snapshot(), position=position)
        return task

    # ── Introspection ──────────────────────────────────────────────────────

    def status(self) -> dict[str, Any]:
        """Roster, queue and counters. This is what the autonomy oracle sees."""
        stats = self.registry.get_stats()
        bridge_connected = self.bridge.is_connected() if self.bridge is not None else False
        return {
            "agents": [
                {
                    "id": a.id,
                    "role": a.role,
                    "state": str(a.state),
                    "task": str(a.current_task.action) if a.current_task else None,
                    "progress": a.progress,
                }
                for a in self.registry.agents()
            ],
            "total": stats["total"],
            "idle": stats[str(AgentState.IDLE)],
            "working": stats[str(AgentState.WORKING)],
            "queue_length": len(self.queue),
            "queue": self.queue.snapshot(),
            "counters": {
                **self.counters,
                "dropped": self.queue.dropped,
                "rejected": self.queue.rejected,
            },
            "transport": self.transport,
            "bridge_connected": bridge_connected,
        }

    async def shutdown(self) -> None:
        """Cancel every timer and background dispatch, then close the bridges."""
        for agent_id in list(self._timers):
            self._cancel_timer(agent_id)
        jobs = list(self._jobs)
        for job in jobs:
            job.cancel()
        if jobs:
            await asyncio.gather(*jobs, return_exceptions=True)
        await self.simulation.close()
        if self.bridge is not None:
            await self.bridge.close()
        logger.info("dispatcher_shutdown")


def _followup_priority(value: Any) -> str:
    if not value:
        return "high"
    normalized = str(value).lower()
    if normalized in ("low", "normal", "high"):
        return normalized
    if normalized in ("urgent", "critical", "emergency"):
        return "high"
    return "normal"


def _support_level(payload: dict[str, Any]) -> str | None:
    level = str(payload.get("level") or "").lower()
    if level in SUPPORT_LEVELS:
        return level
    if level == "urgent":
        return "high"
    severity = str(payload.get("severity") or "").lower()
    return {"critical": "emergency", "high": "high", "moderate": "normal"}.get(severity)
