"""Collaboration sessions and work partitioners."""

from taskhive.collab.engine import (
    CollaborationEngine,
    Participant,
    Session,
    SessionStatus,
    new_session_id,
)
from taskhive.collab.partitioners import Partitioner, slot_partitioner, spatial_x_partitioner

__all__ = [
    "CollaborationEngine",
    "Participant",
    "Partitioner",
    "Session",
    "SessionStatus",
    "new_session_id",
    "slot_partitioner",
    "spatial_x_partitioner",
]
