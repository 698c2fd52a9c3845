"""Error kinds surfaced by the scheduler, its peer links and the autonomy loop."""

from __future__ import annotations

from collections.abc import Sequence
from typing import Any


class TaskhiveError(Exception):
    """Base class for every error the scheduler raises."""

    kind = "error"

    def to_dict(self) -> dict[str, Any]:
        return {"kind": self.kind, "message": str(self)}


class ValidationFailed(TaskhiveError):
    """A task failed admission validation."""

    kind = "validation_failed"

    def __init__(self, errors: Sequence[str]) -> None:
        self.errors = list(errors)
        super().__init__("; ".join(self.errors) or "invalid task")

    def to_dict(self) -> dict[str, Any]:
        return {"kind": self.kind, "message": str(self), "errors": list(self.errors)}


class QueueFull(TaskhiveError):
    """The queue is saturated and the incoming task does not outrank its tail."""

    kind = "queue_full"

    def __init__(self, task: Any, retained_because: str = "lower_priority") -> None:
        self.task = task
        self.retained_because = retained_because
        action = getattr(task, "action", "?")
        super().__init__(f"Queue at capacity, rejected {action} task ({retained_because})")


class NoCapableAgent(TaskhiveError):
    """Neither a local agent nor a peer can take the action."""

    kind = "no_capable_agent"

    def __init__(self, action: str) -> None:
        self.action = action
        super().__init__(f"No agent or peer can handle action: {action}")


class DispatchFailed(TaskhiveError):
    """The bridge (or a peer) rejected or errored on a dispatch."""

    kind = "dispatch_failed"

    def __init__(self, cause: str | BaseException) -> None:
        self.cause = cause
        super().__init__(f"Dispatch failed: {cause}")


class TaskTimeout(TaskhiveError):
    """A per-task safety timer expired."""

    kind = "task_timeout"

    def __init__(
        self,
        task_id: str,
        agent_id: str | None = None,
        peer: str | None = None,
        timeout_s: float | None = None,
    ) -> None:
        self.task_id = task_id
        self.agent_id = agent_id
        self.peer = peer
        self.timeout_s = timeout_s
        owner = agent_id or peer or "unknown"
        after = f" after {timeout_s:g}s" if timeout_s is not None else ""
        super().__init__(f"Task {task_id} on {owner} timed out{after}")


class PeerDisconnected(TaskhiveError):
    """A peer link lost (or never had) its connection."""

    kind = "peer_disconnected"

    def __init__(self, peer: str, reason: str) -> None:
        self.peer = peer
        self.reason = reason
        super().__init__(f"Peer {peer} disconnected: {reason}")


class PeerMaxReconnectReached(TaskhiveError):
    """A peer link exhausted its reconnect attempts."""

    kind = "peer_max_reconnect_reached"

    def __init__(self, peer: str) -> None:
        self.peer = peer
        super().__init__(f"Max reconnection attempts reached for {peer}")


class OracleUnavailable(TaskhiveError):
    """The autonomy controller has no oracle to ask."""

    kind = "oracle_unavailable"

    def __init__(self, reason: str = "missing oracle") -> None:
        self.reason = reason
        super().__init__(reason)


class InvalidPeerMessage(TaskhiveError):
    """A frame from a peer was malformed, oversized or of an unknown type."""

    kind = "invalid_peer_message"

    def __init__(self, peer: str, reason: str) -> None:
        self.peer = peer
        self.reason = reason
        super().__init__(f"Invalid message from {peer}: {reason}")


class AgentStateError(TaskhiveError):
    """An illegal agent lifecycle transition was requested."""

    kind = "agent_state_error"

    def __init__(self, agent_id: str, current: str | None, requested: str) -> None:
        self.agent_id = agent_id
        self.current = current
        self.requested = requested
        super().__init__(f"Agent {agent_id}: cannot move from {current} to {requested}")


class SessionNotFound(TaskhiveError, KeyError):
    """No collaboration session with the given id."""

    kind = "session_not_found"

    def __init__(self, session_id: str) -> None:
        self.session_id = session_id
        super().__init__(f"Unknown collaboration session {session_id}")

    def __str__(self) -> str:
        return f"Unknown collaboration session {self.session_id}"


class ParticipantNotFound(TaskhiveError, KeyError):
    """The agent is not a participant of the session."""

    kind = "participant_not_found"

    def __init__(self, session_id: str, agent_id: str) -> None:
        self.session_id = session_id
        self.agent_id = agent_id
        super().__init__(f"Agent {agent_id} is not part of session {session_id}")

    def __str__(self) -> str:
        return f"Agent {self.agent_id} is not part of session {self.session_id}"
