"""Collaboration Engine - Multi-agent sessions with partitioned work."""

from __future__ import annotations

import copy
import secrets
import time
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any, Protocol

import structlog

from taskhive.cluster import protocol
from taskhive.collab.partitioners import Partitioner, spatial_x_partitioner
from taskhive.errors import ParticipantNotFound, SessionNotFound
from taskhive.events import EventBus

logger = structlog.get_logger(__name__)


class Broadcaster(Protocol):
    def broadcast_cluster_event(self, event_type: str, payload: Any) -> int: ...


class SessionStatus(StrEnum):
    ACTIVE = "active"
    COMPLETED = "completed"


@dataclass
class Participant:
    agent_id: str
    role: str | None = None
    capabilities: list[str] = field(default_factory=list)
    progress: float = 0.0  # 0-100
    metadata: dict[str, Any] = field(default_factory=dict)
    assignment: dict[str, Any] | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "agent_id": self.agent_id,
            "role": self.role,
            "capabilities": list(self.capabilities),
            "progress": self.progress,
            "metadata": copy.deepcopy(self.metadata),
            "assignment": copy.deepcopy(self.assignment),
        }


@dataclass
class Session:
    id: str
    plan: dict[str, Any] | None = None
    participants: dict[str, Participant] = field(default_factory=dict)
    assignments: dict[str, dict[str, Any]] = field(default_factory=dict)
    metadata: dict[str, Any] = field(default_factory=dict)
    status: SessionStatus = SessionStatus.ACTIVE
    partitioner: Partitioner | None = None
    created_at: float = field(default_factory=time.time)
    updated_at: float | None = None
    completed_at: float | None = None

    def touch(self) -> None:
        self.updated_at = time.time()

    def snapshot(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "plan": copy.deepcopy(self.plan),
            "participants": [p.to_dict() for p in self.participants.values()],
            "assignments": copy.deepcopy(self.assignments),
            "metadata": copy.deepcopy(self.metadata),
            "status": str(self.status),
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "completed_at": self.completed_at,
        }


def new_session_id() -> str:
    return f"collab_{int(time.time() * 1000):x}_{secrets.token_hex(3)}"


class CollaborationEngine:
    """
    Owns collaboration sessions on this node.

    Every mutation emits a local event on ``bus`` and broadcasts the matching
    ``collab_*`` cluster event through the optional broadcaster. Sessions are
    never garbage-collected.
    """

    def __init__(
        self,
        broadcaster: Broadcaster | None = None,
        partitioner: Partitioner = spatial_x_partitioner,
        bus: EventBus | None = None,
    ) -> None:
        self.broadcaster = broadcaster
        self.partitioner = partitioner
        self.bus = bus or EventBus()
        self.sessions: dict[str, Session] = {}

    def _get(self, session_id: str) -> Session:
        session = self.sessions.get(session_id)
        if session is None:
            raise SessionNotFound(session_id)
        return session

    def _publish(self, local_event: str, cluster_event: str, payload: dict[str, Any]) -> None:
        self.bus.emit(local_event, **payload)
        if self.broadcaster is not None:
            self.broadcaster.broadcast_cluster_event(cluster_event, payload)

    def create_session(
        self,
        plan: dict[str, Any] | None = None,
        participants: list[dict[str, Any]] | None = None,
        metadata: dict[str, Any] | None = None,
        session_id: str | None = None,
        partitioner: Partitioner | None = None,
    ) -> dict[str, Any]:
        """Create a session and return its snapshot. Duplicate ids raise ValueError."""
        session_id = session_id or new_session_id()
        if session_id in self.sessions:
            raise ValueError(f"Session {session_id} already exists")

        session = Session(
            id=session_id,
            plan=copy.deepcopy(plan) if plan else None,
            metadata=copy.deepcopy(metadata or {}),
            partitioner=partitioner,
        )
        self.sessions[session_id] = session
        for participant in participants or ():
            self.add_participant(session_id, participant)

        snapshot = session.snapshot()
        logger.info("collab_session_created", session_id=session_id, participants=len(session.participants))
        self._publish("session_created", protocol.COLLAB_SESSION_CREATED, {"session": snapshot})
        return snapshot

    def add_participant(self, session_id: str, participant: dict[str, Any]) -> dict[str, Any]:
        """Add (or replace) a participant keyed by ``agent_id``."""
        session = self._get(session_id)
        agent_id = participant.get("agent_id") if isinstance(participant, dict) else None
        if not isinstance(agent_id, str) or not agent_id:
            raise ValueError("Participant must include an agent_id")

        capabilities = participant.get("capabilities")
        entry = Participant(
            agent_id=agent_id,
            role=participant.get("role"),
            capabilities=list(capabilities) if isinstance(capabilities, list) else [],
            progress=_clamp_progress(participant.get("progress", 0)),
            metadata=dict(participant.get("metadata") or {}),
        )
        session.participants[agent_id] = entry
        session.assignments.pop(agent_id, None)
        session.touch()

        self._publish(
            "participant_added",
            protocol.COLLAB_PARTICIPANT_ADDED,
            {"session_id": session_id, "participant": entry.to_dict()},
        )
        return session.snapshot()

    def remove_participant(self, session_id: str, agent_id: str) -> bool:
        session = self.sessions.get(session_id)
        if session is None or agent_id not in session.participants:
            return False

        del session.participants[agent_id]
        session.assignments.pop(agent_id, None)
        session.touch()

        self._publish(
            "participant_removed",
            protocol.COLLAB_PARTICIPANT_REMOVED,
            {"session_id": session_id, "agent_id": agent_id},
        )
        return True

    def allocate_work(
        self, session_id: str, partitioner: Partitioner | None = None
    ) -> dict[str, Any]:
        """Partition work across participants, replacing earlier assignments."""
        session = self._get(session_id)
        strategy = partitioner or session.partitioner or self.partitioner
        participants = list(session.participants.values())
        assignments = strategy(participants, session.metadata, session)

        session.assignments = {k: copy.deepcopy(v) for k, v in assignments.items()}
        for participant in participants:
            assigned = session.assignments.get(participant.agent_id)
            participant.assignment = copy.deepcopy(assigned) if assigned is not None else None
        session.touch()

        payload = {"session_id": session_id, "assignments": copy.deepcopy(session.assignments)}
        logger.info("collab_work_allocated", session_id=session_id, participants=len(participants))
        self._publish("assignments_updated", protocol.COLLAB_ASSIGNMENTS_UPDATED, payload)
        return payload

    def update_progress(
        self,
        session_id: str,
        agent_id: str,
        progress: float,
        metadata: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        session = self._get(session_id)
        participant = session.participants.get(agent_id)
        if participant is None:
            raise ParticipantNotFound(session_id, agent_id)

        participant.progress = _clamp_progress(progress)
        participant.metadata.update(metadata or {})
        session.touch()

        payload = {
            "session_id": session_id,
            "agent_id": agent_id,
            "progress": participant.progress,
            "metadata": copy.deepcopy(participant.metadata),
        }
        self._publish("progress_updated", protocol.COLLAB_PROGRESS_UPDATED, payload)
        return payload

    def complete_session(self, session_id: str, metadata: dict[str, Any] | None = None) -> bool:
        session = self.sessions.get(session_id)
        if session is None:
            return False

        session.status = SessionStatus.COMPLETED
        session.completed_at = time.time()
        session.metadata.update(metadata or {})
        session.touch()

        logger.info("collab_session_completed", session_id=session_id)
        self._publish(
            "session_completed",
            protocol.COLLAB_SESSION_COMPLETED,
            {"session": session.snapshot()},
        )
        return True

    def get_session(self, session_id: str) -> dict[str, Any] | None:
        session = self.sessions.get(session_id)
        return session.snapshot() if session else None

    def aggregate_progress(self, session_id: str) -> float:
        """Mean participant progress, 0 for an empty session."""
        session = self._get(session_id)
        if not session.participants:
            return 0.0
        return sum(p.progress for p in session.participants.values()) / len(session.participants)


def _clamp_progress(value: Any) -> float:
    try:
        number = float(value)
    except (TypeError, ValueError):
        return 0.0
    if number != number:  # NaN
        return 0.0
    return max(0.0, min(100.0, number))
