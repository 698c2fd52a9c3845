"""
Scheduler Node — One Process Worth of Scheduling, Delegation and Collaboration

Wires a dispatcher, the autonomy controller, the node sync manager and the
collaboration engine around one shared event bus.

Tasks arriving as ``{type: "task"}`` frames are submitted locally and
answered with exactly one ``task_response`` once they complete, fail, are
dropped from the queue or are refused at admission.

Usage:
    from taskhive.config import load_config
    from taskhive.node import SchedulerNode

    node = SchedulerNode(load_config())
    await node.start()
    ...
    await node.shutdown()
"""

from __future__ import annotations

import asyncio
from typing import Any

import structlog

from taskhive.cluster import protocol
from taskhive.cluster.peer_link import Connector
from taskhive.cluster.router import select_peer
from taskhive.cluster.sync_manager import NodeSyncManager
from taskhive.collab.engine import CollaborationEngine
from taskhive.config import HiveConfig
from taskhive.engine.autonomy import AutonomyController
from taskhive.engine.bridge import BaseBridge
from taskhive.engine.dispatcher import Dispatcher
from taskhive.engine.registry import AgentState
from taskhive.errors import NoCapableAgent, QueueFull, ValidationFailed
from taskhive.events import EventBus
from taskhive.oracle.base import TaskOracle, build_oracle
from taskhive.tasks.models import Task

logger = structlog.get_logger(__name__)


class SchedulerNode:
    """Owns every scheduler component of one node."""

    def __init__(
        self,
        config: HiveConfig | None = None,
        bridge: BaseBridge | None = None,
        oracle: TaskOracle | None = None,
        connector: Connector | None = None,
    ) -> None:
        self.config = config or HiveConfig()
        self.bus = EventBus()
        self.dispatcher = Dispatcher(self.config.scheduler, self.bus, bridge=bridge)
        self.oracle = oracle if oracle is not None else build_oracle(self.config.autonomy)
        self.autonomy = AutonomyController(self.dispatcher, self.config.autonomy, self.oracle)
        self.sync = NodeSyncManager(
            self.config.node, self.config.peer_link, self.bus, connector=connector
        )
        self.collab = CollaborationEngine(broadcaster=self.sync, bus=self.bus)

        # local task id -> (reply source, remote taskId)
        self._inbound: dict[str, tuple[str, str]] = {}
        self._replies: set[asyncio.Task[bool]] = set()
        self._started = False

        self.sync.register_handler(protocol.TASK, self._on_task_frame)
        self.bus.on("task_completed", self._on_task_completed)
        self.bus.on("task_dropped", self._on_task_dropped)

    @property
    def name(self) -> str:
        return self.config.node.node_name

    async def start(self) -> None:
        await self.sync.start()
        if self.config.autonomy.enabled:
            self.autonomy.enable()
        self._started = True
        logger.info("node_started", node=self.name, port=self.sync.port)

    async def shutdown(self) -> None:
        """Stop autonomy, fail outstanding work and release every resource."""
        self.autonomy.disable()
        await self.dispatcher.shutdown()
        if self._started:
            await self.sync.stop()
            self._started = False
        if self._replies:
            await asyncio.gather(*self._replies, return_exceptions=True)
        if self.oracle is not None:
            await self.oracle.close()
        logger.info("node_shutdown", node=self.name)

    # ── Routing ────────────────────────────────────────────────────────────

    def has_local_agents(self) -> bool:
        return any(a.state != AgentState.OFFLINE for a in self.dispatcher.registry.agents())

    async def route(self, task: Task | dict[str, Any], sender: str | None = None) -> dict[str, Any]:
        """
        Run a task here when any agent is registered, else delegate to a peer.

        Raises:
            ValidationFailed: The task is malformed.
            QueueFull: Local queue refused the task.
            NoCapableAgent: No local agent and no connected peer accepts the action.
            PeerDisconnected, TaskTimeout, DispatchFailed: Delegation failed.
        """
        if self.has_local_agents():
            admission = self.dispatcher.submit(task, sender=sender)
            return {"routed": "local", **admission.to_dict()}

        action = str(task.action) if isinstance(task, Task) else str(task.get("action"))
        link = select_peer(action, self.sync.links)
        if link is None:
            logger.warning("no_capable_agent", action=action)
            raise NoCapableAgent(action)

        logger.info("task_delegated", peer=link.name, action=action)
        result = await link.send_task(task)
        return {"routed": "peer", "peer": link.name, "result": result}

    # ── Inbound delegation ─────────────────────────────────────────────────

    def _on_task_frame(self, frame: dict[str, Any], source: str) -> None:
        remote_id = frame.get("taskId")
        if not isinstance(remote_id, str) or not remote_id:
            logger.warning("inbound_task_without_id", source=source)
            return

        payload = frame.get("payload")
        try:
            admission = self.dispatcher.submit(
                payload if isinstance(payload, dict) else {}, sender=source
            )
        except (ValidationFailed, QueueFull) as exc:
            logger.warning("inbound_task_refused", source=source, task_id=remote_id, error=str(exc))
            self._reply(source, protocol.task_response_frame(remote_id, error=str(exc)))
            return

        task_id = admission.task.id
        self._inbound[task_id] = (source, remote_id)
        logger.info("inbound_task_admitted", source=source, task_id=task_id, status=admission.status)

    def _on_task_completed(self, payload: dict[str, Any]) -> None:
        entry = self._inbound.pop(payload["task"]["id"], None)
        if entry is None:
            return
        source, remote_id = entry
        if payload.get("success"):
            result = {
                "success": True,
                "agent_id": payload.get("agent_id"),
                "metadata": payload.get("metadata", {}),
            }
            self._reply(source, protocol.task_response_frame(remote_id, result=result))
            return

        error = payload.get("error") or {}
        message = error.get("message") or payload.get("reason") or "task failed"
        self._reply(source, protocol.task_response_frame(remote_id, error=message))

    def _on_task_dropped(self, payload: dict[str, Any]) -> None:
        entry = self._inbound.pop(payload["task"]["id"], None)
        if entry is None:
            return
        source, remote_id = entry
        reason = payload.get("reason", "dropped")
        self._reply(source, protocol.task_response_frame(remote_id, error=f"task dropped: {reason}"))

    def _reply(self, source: str, frame: dict[str, Any]) -> None:
        reply = asyncio.get_running_loop().create_task(self.sync.reply(source, frame))
        self._replies.add(reply)
        reply.add_done_callback(self._replies.discard)

    def status(self) -> dict[str, Any]:
        return {
            "node": self.name,
            "scheduler": self.dispatcher.status(),
            "autonomy": {
                "enabled": self.autonomy.enabled,
                "cycles": self.autonomy.cycles,
                "last_report": (
                    self.autonomy.last_report.to_dict() if self.autonomy.last_report else None
                ),
            },
            "sync": self.sync.status(),
            "sessions": len(self.collab.sessions),
            "inbound_tasks": len(self._inbound),
        }
