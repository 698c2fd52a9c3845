"""Shared fixtures for the taskhive test suite."""

from __future__ import annotations

import asyncio
import json
from collections.abc import Callable
from typing import Any

import pytest

from taskhive.config import SchedulerConfig
from taskhive.engine.bridge import BaseBridge
from taskhive.engine.dispatcher import Dispatcher
from taskhive.events import EventBus, EventRecorder
from taskhive.tasks.models import Task


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


def make_task(action: str = "build", **overrides: Any) -> dict[str, Any]:
    """Minimal valid wire task for an action."""
    metadata: dict[str, Any] = {
        "mine": {"resource": "iron_ore", "hazards": []},
        "craft": {"output": "iron_pickaxe", "recipe": ["iron_ingot", "stick"]},
        "combat": {"target": "zombie"},
        "interact": {"mode": "inspect"},
        "deliver": {"items": ["torch"]},
    }.get(action, {})
    task: dict[str, Any] = {
        "action": action,
        "details": f"{action} something useful",
        "target": {"x": 10, "y": 64, "z": -5},
        "metadata": metadata,
    }
    task.update(overrides)
    return task


async def wait_until(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    """Poll the loop until ``predicate()`` holds or fail the test."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.005)


class RecordingBridge(BaseBridge):
    """Bridge that accepts every dispatch and remembers it."""

    transport = "recording"

    def __init__(self, response: dict[str, Any] | None = None, connected: bool = True) -> None:
        super().__init__()
        self.response = response if response is not None else {"accepted": True}
        self.connected = connected
        self.dispatched: list[tuple[str, Task]] = []
        self.cancelled: list[tuple[str, str]] = []
        self.closed = False

    async def dispatch(self, task: Task, agent_id: str) -> dict[str, Any]:
        self.dispatched.append((agent_id, task))
        return self.response

    def is_connected(self) -> bool:
        return self.connected

    def cancel(self, agent_id: str, task_id: str) -> None:
        self.cancelled.append((agent_id, task_id))

    async def close(self) -> None:
        self.closed = True
        await super().close()


class FailingBridge(BaseBridge):
    transport = "failing"

    async def dispatch(self, task: Task, agent_id: str) -> dict[str, Any]:
        raise ConnectionError("bridge offline")


@pytest.fixture
def bus() -> EventBus:
    return EventBus()


@pytest.fixture
def recorder(bus: EventBus) -> EventRecorder:
    return EventRecorder(bus)


@pytest.fixture
def fast_config() -> SchedulerConfig:
    return SchedulerConfig(simulated_task_ms=40, simulated_step_ms=10, task_timeout_ms=5_000)


@pytest.fixture
def dispatcher(fast_config: SchedulerConfig, bus: EventBus) -> Dispatcher:
    return Dispatcher(fast_config, bus)


class MemoryTransport:
    """In-memory stand-in for a peer WebSocket."""

    def __init__(self) -> None:
        self.inbox: asyncio.Queue[str | None] = asyncio.Queue()
        self.outbox: asyncio.Queue[dict[str, Any]] = asyncio.Queue()
        self.sent: list[dict[str, Any]] = []
        self.closed = False

    async def send(self, text: str) -> None:
        if self.closed:
            raise ConnectionResetError("transport closed")
        frame = json.loads(text)
        self.sent.append(frame)
        self.outbox.put_nowait(frame)

    async def receive(self) -> str | None:
        return await self.inbox.get()

    async def close(self) -> None:
        self.closed = True
        self.inbox.put_nowait(None)

    def feed(self, frame: dict[str, Any] | str) -> None:
        """Deliver a frame from the remote side."""
        self.inbox.put_nowait(frame if isinstance(frame, str) else json.dumps(frame))

    def hang_up(self) -> None:
        self.inbox.put_nowait(None)

    async def next_sent(self, frame_type: str, timeout: float = 2.0) -> dict[str, Any]:
        """Wait for the next frame of ``frame_type`` written by the link."""
        async with asyncio.timeout(timeout):
            while True:
                frame = await self.outbox.get()
                if frame["type"] == frame_type:
                    return frame


class MemoryConnector:
    """Connector handing out MemoryTransports, or failing when ``refuse`` is set."""

    def __init__(self, refuse: bool = False) -> None:
        self.refuse = refuse
        self.urls: list[str] = []
        self.transports: list[MemoryTransport] = []

    async def __call__(self, url: str) -> MemoryTransport:
        self.urls.append(url)
        if self.refuse:
            raise ConnectionRefusedError(f"connection to {url} refused")
        transport = MemoryTransport()
        self.transports.append(transport)
        return transport

    @property
    def last(self) -> MemoryTransport:
        return self.transports[-1]
