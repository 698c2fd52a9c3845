"""Task action to agent role affinity."""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from typing import Any

# Ordered: earlier roles are preferred.
ACTION_ROLE_AFFINITY: dict[str, tuple[str, ...]] = {
    "build": ("builder", "worker"),
    "mine": ("miner", "worker"),
    "explore": ("scout", "explorer", "builder"),
    "gather": ("farmer", "gatherer", "miner"),
    "guard": ("guard", "fighter"),
    "craft": ("crafter", "builder"),
    "interact": ("support", "builder", "worker"),
    "combat": ("fighter", "guard"),
    "support": ("support", "guard", "fighter"),
    "deliver": ("support", "gatherer", "worker"),
}


def derive_preferred_roles(
    action: str,
    explicit: Iterable[str] | None = None,
    metadata: Mapping[str, Any] | None = None,
) -> tuple[str, ...]:
    """
    Merge role preferences for a task.

    Order: explicit roles, then ``metadata.preferredAgentRole``, then the
    action's affinity table. Duplicates keep their first position.
    """
    merged: list[str] = []

    def add(role: Any) -> None:
        if isinstance(role, str) and role.strip() and role.strip() not in merged:
            merged.append(role.strip())

    for role in explicit or ():
        add(role)
    if metadata:
        add(metadata.get("preferredAgentRole"))
    for role in ACTION_ROLE_AFFINITY.get(action, ()):
        add(role)

    return tuple(merged)


def role_matches(preferred: Iterable[str], role: str) -> bool:
    """Empty preferences accept any role."""
    preferred = tuple(preferred)
    return not preferred or role in preferred
