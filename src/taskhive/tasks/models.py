"""Task value objects and their JSON wire form."""

from __future__ import annotations

import copy
import secrets
import time
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any

from taskhive.tasks.roles import derive_preferred_roles

MAX_DETAILS_LENGTH = 500


class Action(StrEnum):
    """Closed set of task actions."""

    BUILD = "build"
    MINE = "mine"
    EXPLORE = "explore"
    GATHER = "gather"
    GUARD = "guard"
    CRAFT = "craft"
    INTERACT = "interact"
    COMBAT = "combat"
    SUPPORT = "support"
    DELIVER = "deliver"


class Priority(StrEnum):
    """Queue bands, highest first."""

    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"

    @property
    def weight(self) -> int:
        return _PRIORITY_WEIGHTS[self]


_PRIORITY_WEIGHTS = {Priority.LOW: 0, Priority.NORMAL: 1, Priority.HIGH: 2}


def new_task_id() -> str:
    """128-bit random id, hex encoded."""
    return secrets.token_hex(16)


@dataclass(frozen=True)
class Target:
    """Spatial target of a task."""

    x: float
    y: float
    z: float
    dimension: str | None = None
    facing: dict[str, float] | None = None

    @classmethod
    def from_wire(cls, raw: dict[str, Any]) -> Target:
        facing = raw.get("facing")
        return cls(
            x=raw["x"],
            y=raw["y"],
            z=raw["z"],
            dimension=raw.get("dimension"),
            facing=dict(facing) if facing else None,
        )

    def to_wire(self) -> dict[str, Any]:
        out: dict[str, Any] = {"x": self.x, "y": self.y, "z": self.z}
        if self.dimension is not None:
            out["dimension"] = self.dimension
        if self.facing is not None:
            out["facing"] = dict(self.facing)
        return out


@dataclass(frozen=True)
class Task:
    """
    An admitted, immutable unit of work.

    Build one with :meth:`from_wire` after validation; the metadata mapping
    is deep-copied on the way in and on the way out.
    """

    action: Action
    details: str
    target: Target | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    priority: Priority = Priority.NORMAL
    preferred_roles: tuple[str, ...] = ()
    sender: str = "api"
    id: str = field(default_factory=new_task_id)
    submitted_at: float = field(default_factory=time.time)

    @classmethod
    def from_wire(cls, raw: dict[str, Any], sender: str | None = None) -> Task:
        """Normalize a validated wire dict: default priority, derived roles, fresh id."""
        action = Action(raw["action"])
        metadata = copy.deepcopy(raw.get("metadata") or {})
        target = raw.get("target")
        return cls(
            action=action,
            details=raw["details"].strip(),
            target=Target.from_wire(target) if target else None,
            metadata=metadata,
            priority=Priority(raw.get("priority") or Priority.NORMAL),
            preferred_roles=derive_preferred_roles(
                action, raw.get("preferredAgentRoles"), metadata
            ),
            sender=sender or raw.get("sender") or "api",
        )

    def to_wire(self) -> dict[str, Any]:
        out: dict[str, Any] = {
            "action": str(self.action),
            "details": self.details,
            "metadata": copy.deepcopy(self.metadata),
            "priority": str(self.priority),
            "preferredAgentRoles": list(self.preferred_roles),
        }
        if self.target is not None:
            out["target"] = self.target.to_wire()
        return out

    def snapshot(self) -> dict[str, Any]:
        """Wire form plus identity; what events carry."""
        out = self.to_wire()
        out["id"] = self.id
        out["sender"] = self.sender
        out["submitted_at"] = self.submitted_at
        return out

    @property
    def steps(self) -> list[Any]:
        steps = self.metadata.get("steps")
        return list(steps) if isinstance(steps, list) else []
