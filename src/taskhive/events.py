"""In-process event bus shared by the scheduler components."""

from __future__ import annotations

from collections import defaultdict
from collections.abc import Callable
from typing import Any

import structlog

logger = structlog.get_logger(__name__)

Handler = Callable[[dict[str, Any]], None]


class EventBus:
    """
    Synchronous publish/subscribe hub.

    Handlers run inline, in subscription order, with the payload dict.
    A handler that raises is logged and skipped so one faulty listener
    cannot interrupt a state transition half way.
    """

    WILDCARD = "*"

    def __init__(self) -> None:
        self._handlers: dict[str, list[Handler]] = defaultdict(list)

    def on(self, event: str, handler: Handler) -> Handler:
        """Subscribe to an event (``"*"`` receives everything)."""
        self._handlers[event].append(handler)
        return handler

    def off(self, event: str, handler: Handler) -> None:
        """Unsubscribe; unknown handlers are ignored."""
        handlers = self._handlers.get(event)
        if handlers and handler in handlers:
            handlers.remove(handler)

    def emit(self, event: str, **payload: Any) -> int:
        """Deliver an event and return the number of handlers invoked."""
        targets = list(self._handlers.get(event, ()))
        wildcard = list(self._handlers.get(self.WILDCARD, ()))
        delivered = 0

        for handler in targets:
            delivered += self._invoke(event, handler, dict(payload))
        for handler in wildcard:
            delivered += self._invoke(event, handler, {"event": event, **payload})

        return delivered

    def listener_count(self, event: str) -> int:
        return len(self._handlers.get(event, ()))

    def clear(self) -> None:
        self._handlers.clear()

    @staticmethod
    def _invoke(event: str, handler: Handler, payload: dict[str, Any]) -> int:
        try:
            handler(payload)
        except Exception:
            logger.exception("event_handler_failed", event_name=event)
            return 0
        return 1


class EventRecorder:
    """Collects every event on a bus, in order. Used by the CLI and tests."""

    def __init__(self, bus: EventBus) -> None:
        self.events: list[tuple[str, dict[str, Any]]] = []
        bus.on(EventBus.WILDCARD, self._record)

    def _record(self, payload: dict[str, Any]) -> None:
        event = payload.pop("event")
        self.events.append((event, payload))

    def names(self) -> list[str]:
        return [name for name, _ in self.events]

    def of(self, event: str) -> list[dict[str, Any]]:
        return [payload for name, payload in self.events if name == event]
