"""JSON frames exchanged between scheduler nodes."""

from __future__ import annotations

import json
import time
from typing import Any

from taskhive.errors import InvalidPeerMessage

DEFAULT_MAX_MESSAGE_BYTES = 1024 * 1024

HEARTBEAT = "heartbeat"
TASK = "task"
TASK_RESPONSE = "task_response"

CORE_TYPES = frozenset({"sync", "update", HEARTBEAT, "state", TASK, TASK_RESPONSE})
CLUSTER_EVENT_PREFIX = "collab_"

COLLAB_SESSION_CREATED = "collab_session_created"
COLLAB_PARTICIPANT_ADDED = "collab_participant_added"
COLLAB_PARTICIPANT_REMOVED = "collab_participant_removed"
COLLAB_ASSIGNMENTS_UPDATED = "collab_assignments_updated"
COLLAB_PROGRESS_UPDATED = "collab_progress_updated"
COLLAB_SESSION_COMPLETED = "collab_session_completed"


def now_ms() -> int:
    return int(time.time() * 1000)


def is_allowed_type(frame_type: Any) -> bool:
    """Core types plus any ``collab_*`` cluster-event tag."""
    if not isinstance(frame_type, str):
        return False
    return frame_type in CORE_TYPES or (
        frame_type.startswith(CLUSTER_EVENT_PREFIX) and len(frame_type) > len(CLUSTER_EVENT_PREFIX)
    )


def decode_frame(
    raw: str | bytes,
    peer: str,
    max_bytes: int = DEFAULT_MAX_MESSAGE_BYTES,
    restrict_types: bool = True,
) -> dict[str, Any]:
    """
    Parse one frame.

    Raises:
        InvalidPeerMessage: oversized, not JSON, not an object, no ``type``,
            or (with ``restrict_types``) a type outside the allowed set.
    """
    size = len(raw) if isinstance(raw, bytes) else len(raw.encode("utf-8"))
    if size > max_bytes:
        raise InvalidPeerMessage(peer, f"frame of {size} bytes exceeds {max_bytes}")

    try:
        frame = json.loads(raw)
    except (ValueError, UnicodeDecodeError) as exc:
        raise InvalidPeerMessage(peer, f"malformed JSON: {exc}") from exc

    if not isinstance(frame, dict):
        raise InvalidPeerMessage(peer, "frame must be a JSON object")
    frame_type = frame.get("type")
    if not isinstance(frame_type, str) or not frame_type:
        raise InvalidPeerMessage(peer, "frame has no type")
    if restrict_types and not is_allowed_type(frame_type):
        raise InvalidPeerMessage(peer, f"unknown frame type {frame_type!r}")
    return frame


def encode_frame(frame: dict[str, Any]) -> str:
    return json.dumps(frame, separators=(",", ":"), default=str)


def heartbeat_frame() -> dict[str, Any]:
    return {"type": HEARTBEAT, "timestamp": now_ms()}


def task_frame(task_id: str, payload: dict[str, Any]) -> dict[str, Any]:
    return {"type": TASK, "taskId": task_id, "payload": payload, "timestamp": now_ms()}


def task_response_frame(
    task_id: str, result: Any = None, error: str | None = None
) -> dict[str, Any]:
    frame: dict[str, Any] = {"type": TASK_RESPONSE, "taskId": task_id}
    if error is not None:
        frame["error"] = error
    else:
        frame["result"] = result
    return frame


def cluster_event_frame(event_type: str, data: Any, origin: str) -> dict[str, Any]:
    return {"type": event_type, "data": data, "from": origin}
