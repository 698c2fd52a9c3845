"""
Task Admission Validator

Pure, total validation of wire-form tasks. Every violation is collected;
nothing short-circuits and nothing is mutated.

Usage:
    from taskhive.tasks.validator import validate_task

    result = validate_task({"action": "mine", "details": "stone", ...})
    if not result.valid:
        print(result.errors)
"""

from __future__ import annotations

import math
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from taskhive.tasks.models import MAX_DETAILS_LENGTH, Action, Priority

INTERACT_MODES = ("inspect", "deposit", "withdraw", "use")
COMBAT_STYLES = ("melee", "ranged", "defensive", "support", "balanced")
SUPPORT_LEVELS = ("low", "normal", "high", "emergency")
MINING_PRIORITY_RANKS = ("primary", "secondary", "tertiary", "optional")
HAZARD_TYPES = (
    "lava",
    "water",
    "enemy",
    "void",
    "fall",
    "explosive",
    "cave_in",
    "darkness",
    "drowning",
    "gravel",
    "unknown",
    "custom",
)
HAZARD_SEVERITIES = ("low", "moderate", "high", "critical")

_RESOURCE_NAME_KEYS = ("block", "ore", "material", "id", "name", "tag")


@dataclass(frozen=True)
class ValidationResult:
    valid: bool
    errors: list[str] = field(default_factory=list)


def _non_empty_str(value: Any) -> bool:
    return isinstance(value, str) and bool(value.strip())


def _positive_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool) and value > 0


def _finite_number(value: Any) -> bool:
    if not isinstance(value, (int, float)) or isinstance(value, bool):
        return False
    try:
        return math.isfinite(value)
    except OverflowError:  # int beyond float range
        return False


def _one_of(options: tuple[str, ...]) -> str:
    return ", ".join(options)


# ── Descriptor checks ──────────────────────────────────────────────────────


def _check_item(descriptor: Any, errors: list[str], context: str) -> None:
    if isinstance(descriptor, str):
        return
    if not isinstance(descriptor, dict):
        errors.append(f"{context} item must be a string or object")
        return

    name = descriptor.get("item") or descriptor.get("id") or descriptor.get("name")
    if not isinstance(name, str) or not name:
        errors.append(f"{context} item must include an item/id/name string")

    count = descriptor.get("count")
    quantity = descriptor.get("quantity")
    if count is not None and quantity is not None and count != quantity:
        errors.append(f"{context} item count and quantity must match when both provided")

    amount = count if count is not None else quantity
    if amount is not None and not _positive_int(amount):
        errors.append(f"{context} item quantity must be a positive integer")


def _check_items(items: Any, errors: list[str], context: str) -> None:
    for item in items:
        _check_item(item, errors, context)


def _check_resource(descriptor: Any, errors: list[str], context: str) -> None:
    if isinstance(descriptor, str):
        return
    if not isinstance(descriptor, dict):
        errors.append(f"{context} must be a string or object")
        return

    name = next((descriptor[k] for k in _RESOURCE_NAME_KEYS if descriptor.get(k)), None)
    if not _non_empty_str(name):
        errors.append(f"{context} must identify a block, ore, material, id, name, or tag")

    rank = descriptor.get("priority")
    if rank and rank not in MINING_PRIORITY_RANKS:
        errors.append(f"{context}.priority must be one of {_one_of(MINING_PRIORITY_RANKS)}")

    if "quantity" in descriptor and not _positive_int(descriptor["quantity"]):
        errors.append(f"{context}.quantity must be a positive integer when provided")

    if "depthRange" in descriptor:
        depth = descriptor["depthRange"] or {}
        if not isinstance(depth, dict):
            errors.append(f"{context}.depthRange must be an object when provided")
        else:
            for bound in ("min", "max"):
                if bound in depth and not _finite_number(depth[bound]):
                    errors.append(f"{context}.depthRange.{bound} must be a number when provided")


def _check_mining_target(target: Any, errors: list[str], context: str) -> None:
    _check_resource(target, errors, context)
    if not isinstance(target, dict) or "avoidHazards" not in target:
        return
    avoid = target["avoidHazards"]
    if not isinstance(avoid, list):
        errors.append(f"{context}.avoidHazards must be an array when provided")
        return
    for index, hazard in enumerate(avoid):
        if not _non_empty_str(hazard):
            errors.append(f"{context}.avoidHazards[{index}] must be a non-empty string")


def _check_hazard(descriptor: Any, errors: list[str], context: str) -> None:
    if isinstance(descriptor, str):
        return
    if not isinstance(descriptor, dict):
        errors.append(f"{context} must be a string or object")
        return

    kind = descriptor.get("type")
    if kind and kind not in HAZARD_TYPES:
        errors.append(f"{context}.type must be one of {_one_of(HAZARD_TYPES)}")

    severity = descriptor.get("severity")
    if severity and severity not in HAZARD_SEVERITIES:
        errors.append(f"{context}.severity must be one of {_one_of(HAZARD_SEVERITIES)}")

    if "mitigation" in descriptor:
        mitigation = descriptor["mitigation"]
        if isinstance(mitigation, list):
            for index, step in enumerate(mitigation):
                if not _non_empty_str(step):
                    errors.append(f"{context}.mitigation[{index}] must be a non-empty string")
        elif not _non_empty_str(mitigation):
            errors.append(
                f"{context}.mitigation must be a string or array of strings when provided"
            )


# ── Per-action metadata schemas ────────────────────────────────────────────

MetadataCheck = Callable[[dict[str, Any] | None, list[str]], None]


def _no_extra_rules(metadata: dict[str, Any] | None, errors: list[str]) -> None:
    """Actions whose metadata is free-form."""


def _check_mine(metadata: dict[str, Any] | None, errors: list[str]) -> None:
    if metadata is None:
        errors.append("mine tasks require metadata describing the resource and safety plan")
        return

    resource = metadata.get("resource") or metadata.get("ore") or metadata.get("block")
    if not resource:
        errors.append("mine metadata.resource must describe the block or ore being extracted")
    else:
        _check_resource(resource, errors, "mine metadata.resource")

    if "targets" in metadata:
        targets = metadata["targets"]
        if not isinstance(targets, list) or not targets:
            errors.append("mine metadata.targets must be a non-empty array when provided")
        else:
            for index, target in enumerate(targets):
                _check_mining_target(target, errors, f"mine metadata.targets[{index}]")

    if "hazards" not in metadata:
        errors.append(
            "mine metadata.hazards must be provided "
            "(use an empty array if no hazards are present)"
        )
    elif not isinstance(metadata["hazards"], list):
        errors.append("mine metadata.hazards must be an array")
    else:
        for index, hazard in enumerate(metadata["hazards"]):
            _check_hazard(hazard, errors, f"mine metadata.hazards[{index}]")

    rank = metadata.get("priority")
    if rank and rank not in MINING_PRIORITY_RANKS:
        errors.append(f"mine metadata.priority must be one of {_one_of(MINING_PRIORITY_RANKS)}")

    if "tools" in metadata:
        if not isinstance(metadata["tools"], list):
            errors.append("mine metadata.tools must be an array when provided")
        else:
            _check_items(metadata["tools"], errors, "mine metadata.tools")

    if "mitigations" in metadata:
        mitigations = metadata["mitigations"]
        if not isinstance(mitigations, list):
            errors.append("mine metadata.mitigations must be an array of steps when provided")
        else:
            for index, step in enumerate(mitigations):
                as_object = isinstance(step, dict) and _non_empty_str(step.get("action"))
                if not _non_empty_str(step) and not as_object:
                    errors.append(
                        f"mine metadata.mitigations[{index}] must be a string "
                        "or object with an action"
                    )


def _check_craft(metadata: dict[str, Any] | None, errors: list[str]) -> None:
    if metadata is None:
        errors.append("craft tasks require metadata describing the recipe")
        return

    if not _non_empty_str(metadata.get("output")):
        errors.append("craft metadata.output must describe the crafted item")

    recipe = metadata.get("recipe")
    if not isinstance(recipe, list):
        recipe = metadata.get("ingredients")
    if not isinstance(recipe, list) or not recipe:
        errors.append("craft metadata.recipe must describe required ingredients")
    else:
        _check_items(recipe, errors, "craft metadata.recipe")

    if "quantity" in metadata and not _positive_int(metadata["quantity"]):
        errors.append("craft metadata.quantity must be a positive integer when provided")


def _check_combat(metadata: dict[str, Any] | None, errors: list[str]) -> None:
    if metadata is None:
        errors.append("combat tasks require metadata describing the target and combat style")
        return

    target = metadata.get("target")
    named = isinstance(target, dict) and _non_empty_str(target.get("name"))
    if not _non_empty_str(target) and not named:
        errors.append("combat metadata.target must describe an enemy or objective name")

    if "targetType" in metadata and not _non_empty_str(metadata["targetType"]):
        errors.append("combat metadata.targetType must be a non-empty string when provided")

    style = metadata.get("style")
    if style and style not in COMBAT_STYLES:
        errors.append(f"combat metadata.style must be one of {_one_of(COMBAT_STYLES)}")

    for key in ("weapons", "potions"):
        if key not in metadata:
            continue
        if isinstance(metadata[key], list):
            _check_items(metadata[key], errors, f"combat metadata.{key}")
        else:
            errors.append(f"combat metadata.{key} must be an array of items when provided")

    if "support" in metadata and not isinstance(metadata["support"], (bool, list)):
        errors.append("combat metadata.support must be a boolean or array of support actions")


def _check_interact(metadata: dict[str, Any] | None, errors: list[str]) -> None:
    if metadata is None:
        errors.append("interact tasks require metadata describing the interaction mode")
        return

    mode = metadata.get("mode")
    if mode not in INTERACT_MODES:
        errors.append(f"interact metadata.mode must be one of {_one_of(INTERACT_MODES)}")

    if mode in ("deposit", "withdraw"):
        items = metadata.get("items")
        if not isinstance(items, list) or not items:
            errors.append(f"interact metadata.items must list at least one item for {mode} actions")
        else:
            _check_items(items, errors, "interact metadata.items")


def _check_deliver(metadata: dict[str, Any] | None, errors: list[str]) -> None:
    items = (metadata or {}).get("items")
    if not isinstance(items, list) or not items:
        errors.append("deliver metadata.items must list at least one item")
    else:
        _check_items(items, errors, "deliver metadata.items")


def _check_support(metadata: dict[str, Any] | None, errors: list[str]) -> None:
    if metadata is None:
        return
    level = metadata.get("level")
    if level is not None and level not in SUPPORT_LEVELS:
        errors.append(f"support metadata.level must be one of {_one_of(SUPPORT_LEVELS)}")


METADATA_CHECKS: dict[Action, MetadataCheck] = {
    Action.BUILD: _no_extra_rules,
    Action.MINE: _check_mine,
    Action.EXPLORE: _no_extra_rules,
    Action.GATHER: _no_extra_rules,
    Action.GUARD: _no_extra_rules,
    Action.CRAFT: _check_craft,
    Action.INTERACT: _check_interact,
    Action.COMBAT: _check_combat,
    Action.SUPPORT: _check_support,
    Action.DELIVER: _check_deliver,
}


# ── Entry point ────────────────────────────────────────────────────────────


def _check_target(target: Any, errors: list[str]) -> None:
    if not isinstance(target, dict):
        errors.append("Task target must be an object with x, y, z")
        return
    if not all(_finite_number(target.get(axis)) for axis in ("x", "y", "z")):
        errors.append("Target coordinates must be finite numbers")
    if "dimension" in target and not _non_empty_str(target["dimension"]):
        errors.append("Target dimension must be a non-empty string when provided")
    if "facing" in target:
        facing = target["facing"]
        if not isinstance(facing, dict) or not all(
            _finite_number(v) for k, v in facing.items() if k in ("pitch", "yaw")
        ):
            errors.append("Target facing must be an object with numeric pitch/yaw")


def validate_task(raw: Any) -> ValidationResult:
    """Validate a wire-form task. Pure function of its input."""
    if not isinstance(raw, dict):
        return ValidationResult(valid=False, errors=["Task must be an object"])

    errors: list[str] = []

    action = raw.get("action")
    known_action = action in Action.__members__.values()
    if not known_action:
        errors.append(f"Unknown action: {action}")

    details = raw.get("details")
    if not _non_empty_str(details):
        errors.append("Task details must be a non-empty string")
    elif len(details.strip()) > MAX_DETAILS_LENGTH:
        errors.append(f"Task details must be at most {MAX_DETAILS_LENGTH} characters")

    if raw.get("target") is not None:
        _check_target(raw["target"], errors)

    priority = raw.get("priority")
    if priority is not None and priority not in Priority.__members__.values():
        errors.append(f"Invalid priority: {priority}")

    roles = raw.get("preferredAgentRoles")
    if roles is not None and (
        not isinstance(roles, list) or not all(_non_empty_str(r) for r in roles)
    ):
        errors.append("preferredAgentRoles must be a list of non-empty strings")

    metadata = raw.get("metadata")
    if metadata is not None and not isinstance(metadata, dict):
        errors.append("Task metadata must be an object when provided")
        metadata = None
    elif metadata is not None and "steps" in metadata and not isinstance(metadata["steps"], list):
        errors.append("metadata.steps must be an array when provided")

    if known_action:
        METADATA_CHECKS[Action(action)](metadata, errors)

    return ValidationResult(valid=not errors, errors=errors)
