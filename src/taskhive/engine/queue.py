"""Priority task queue with backpressure."""

from __future__ import annotations

import time
from collections.abc import Callable
from dataclasses import dataclass, field

import structlog

from taskhive.errors import QueueFull
from taskhive.events import EventBus
from taskhive.tasks.models import Task

logger = structlog.get_logger(__name__)


@dataclass
class QueueEntry:
    task: Task
    enqueued_at: float = field(default_factory=time.time)

    @property
    def weight(self) -> int:
        return self.task.priority.weight


class PriorityTaskQueue:
    """
    Bounded queue ordered by priority band, FIFO inside a band.

    When full, an incoming task evicts the tail only if it strictly
    outranks it; otherwise it is rejected with :class:`QueueFull`.
    """

    DEFAULT_CAPACITY = 100

    def __init__(self, capacity: int = DEFAULT_CAPACITY, bus: EventBus | None = None) -> None:
        if capacity < 1:
            raise ValueError("queue capacity must be >= 1")
        self.capacity = capacity
        self.bus = bus or EventBus()
        self._entries: list[QueueEntry] = []
        self.dropped = 0
        self.rejected = 0

    def __len__(self) -> int:
        return len(self._entries)

    def __bool__(self) -> bool:
        return bool(self._entries)

    def enqueue(self, task: Task) -> int:
        """Admit a task and return its 1-based position."""
        if len(self._entries) >= self.capacity:
            tail = self._entries[-1]
            if task.priority.weight <= tail.weight:
                self.rejected += 1
                logger.warning(
                    "task_rejected",
                    task_id=task.id,
                    action=str(task.action),
                    priority=str(task.priority),
                    queue_length=len(self._entries),
                )
                error = QueueFull(task)
                self.bus.emit("task_rejected", task=task.snapshot(), error=error.to_dict())
                raise error

            self._entries.pop()
            self.dropped += 1
            logger.warning(
                "task_dropped",
                task_id=tail.task.id,
                dropped_for=task.id,
                reason="back_pressure",
            )
            self.bus.emit(
                "task_dropped",
                task=tail.task.snapshot(),
                reason="back_pressure",
                dropped_for=task.id,
            )

        entry = QueueEntry(task)
        index = len(self._entries)
        for i, existing in enumerate(self._entries):
            if existing.weight < entry.weight:
                index = i
                break
        self._entries.insert(index, entry)
        return index + 1

    def find_first_match(self, predicate: Callable[[QueueEntry], bool]) -> QueueEntry | None:
        """First entry from the head satisfying ``predicate``."""
        for entry in self._entries:
            if predicate(entry):
                return entry
        return None

    def peek(self) -> QueueEntry | None:
        return self._entries[0] if self._entries else None

    def remove(self, entry: QueueEntry) -> bool:
        for i, existing in enumerate(self._entries):
            if existing is entry:
                del self._entries[i]
                return True
        return False

    def snapshot(self) -> list[dict]:
        """Head to tail."""
        return [
            {**entry.task.snapshot(), "enqueued_at": entry.enqueued_at}
            for entry in self._entries
        ]

    def clear(self) -> list[QueueEntry]:
        entries, self._entries = self._entries, []
        return entries
