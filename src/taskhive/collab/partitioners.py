"""Work partitioners for collaboration sessions.

A partitioner maps the ordered participants of a session to opaque
assignment records: ``(participants, metadata, session) -> {agent_id: record}``.
"""

from __future__ import annotations

import math
from collections.abc import Callable, Sequence
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from taskhive.collab.engine import Participant, Session

Partitioner = Callable[
    [Sequence["Participant"], dict[str, Any], "Session | None"], dict[str, dict[str, Any]]
]


def slot_partitioner(
    participants: Sequence[Participant],
    metadata: dict[str, Any] | None = None,
    session: Session | None = None,
) -> dict[str, dict[str, Any]]:
    """Each participant gets its index as a slot."""
    return {p.agent_id: {"slot": index} for index, p in enumerate(participants)}


def spatial_x_partitioner(
    participants: Sequence[Participant],
    metadata: dict[str, Any] | None = None,
    session: Session | None = None,
) -> dict[str, dict[str, Any]]:
    """
    Slice ``metadata.workArea`` (or ``metadata.area``) evenly along x.

    Columns are shared out in participant order, the first ``width % n``
    participants taking one extra. Slices never overlap and together cover
    the whole area; participants beyond the area width get ``area: None``.
    Without an area this falls back to :func:`slot_partitioner`.
    """
    if not participants:
        return {}

    metadata = metadata or {}
    area = metadata.get("workArea") or metadata.get("area")
    if not (
        isinstance(area, dict)
        and isinstance(area.get("start"), dict)
        and isinstance(area.get("end"), dict)
    ):
        return slot_partitioner(participants, metadata, session)

    start, end = area["start"], area["end"]
    try:
        x1 = float(start.get("x", 0))
        x2 = float(end.get("x", x1))
    except (TypeError, ValueError, OverflowError):
        return slot_partitioner(participants, metadata, session)
    if not (math.isfinite(x1) and math.isfinite(x2)):
        return slot_partitioner(participants, metadata, session)
    z1 = start.get("z", 0)
    z2 = end.get("z", z1)
    y1 = start.get("y")
    y2 = end.get("y", y1)

    direction = 1 if x2 >= x1 else -1
    width = math.floor(abs(x2 - x1)) + 1
    base, extra = divmod(width, len(participants))

    assignments: dict[str, dict[str, Any]] = {}
    offset = 0
    for index, participant in enumerate(participants):
        size = base + (1 if index < extra else 0)
        if size == 0:
            assignments[participant.agent_id] = {"area": None, "index": index}
            continue
        seg_start = x1 + offset * direction
        offset += size
        seg_end = x2 if offset == width else x1 + (offset - 1) * direction
        assignments[participant.agent_id] = {
            "area": {
                "start": {"x": _int_if_whole(seg_start), "y": y1, "z": z1},
                "end": {"x": _int_if_whole(seg_end), "y": y2, "z": z2},
            },
            "index": index,
        }
    return assignments


def _int_if_whole(value: float) -> float | int:
    return int(value) if float(value).is_integer() else value
