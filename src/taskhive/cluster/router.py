"""
Peer Router — Best-Fit Peer Selection for Delegated Tasks

Scoring formula:
    fit = specialist_bonus + max(0, LOAD_CEILING - active_tasks) + reliability
    score = fit * weight

Ties go to the lower ``priority`` value, then to configuration order.
"""

from __future__ import annotations

from collections.abc import Iterable
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from taskhive.cluster.peer_link import PeerLink

SPECIALIST_BONUS = 10.0  # peer lists the action explicitly
LOAD_CEILING = 10.0
RELIABILITY_SCALE = 10.0
UNPROVEN_RELIABILITY = 5.0  # no finished tasks yet


def fit_score(link: PeerLink, action: str) -> float:
    """Weighted best-fit score of one link for an action."""
    score = SPECIALIST_BONUS if action in link.specialization else 0.0
    score += max(0.0, LOAD_CEILING - link.active_tasks)

    finished = link.completed_tasks + link.failed_tasks
    if finished:
        score += link.completed_tasks / finished * RELIABILITY_SCALE
    else:
        score += UNPROVEN_RELIABILITY

    return score * link.weight


def select_peer(action: str, links: Iterable[PeerLink]) -> PeerLink | None:
    """Connected, enabled peer best suited to ``action``, or None."""
    best: PeerLink | None = None
    best_key: tuple[float, int] | None = None
    for link in links:
        if not (link.connected and link.can_handle(action)):
            continue
        key = (fit_score(link, action), -link.priority)
        if best_key is None or key > best_key:
            best, best_key = link, key
    return best
