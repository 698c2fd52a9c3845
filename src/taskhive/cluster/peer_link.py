"""
Peer Link — Durable Channel to One Peer Scheduler

State machine:
    disconnected -> connecting     connect(), if enabled and under the attempt cap
    connecting   -> connected      transport open; attempts reset; heartbeat starts
    any          -> disconnected   close, send error, connect failure, heartbeat lost

Losing the connection fails every pending delegated task and schedules a
reconnect after ``base * 1.5 ** attempts``. ``destroy()`` is terminal.

Events (on ``link.events``, every payload carries ``peer``):
    connecting, connected, disconnected, heartbeat, message, error,
    reconnect_scheduled, max_reconnect_reached
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Awaitable, Callable
from enum import StrEnum
from typing import Any, Protocol

import aiohttp
import structlog

from taskhive.cluster import protocol
from taskhive.config import PeerConfig, PeerLinkConfig
from taskhive.errors import (
    DispatchFailed,
    InvalidPeerMessage,
    NoCapableAgent,
    PeerDisconnected,
    PeerMaxReconnectReached,
    TaskTimeout,
    ValidationFailed,
)
from taskhive.events import EventBus
from taskhive.handles import CompletionHandle
from taskhive.tasks.models import Task, new_task_id
from taskhive.tasks.validator import validate_task

logger = structlog.get_logger(__name__)


class ConnectionState(StrEnum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"


class Transport(Protocol):
    """Bidirectional text channel."""

    async def send(self, text: str) -> None: ...

    async def receive(self) -> str | bytes | None:
        """Next frame, or None once the channel is closed."""
        ...

    async def close(self) -> None: ...


Connector = Callable[[str], Awaitable[Transport]]


class AiohttpTransport:
    """Transport over an aiohttp client WebSocket."""

    def __init__(self, session: aiohttp.ClientSession, ws: aiohttp.ClientWebSocketResponse) -> None:
        self._session = session
        self._ws = ws

    async def send(self, text: str) -> None:
        await self._ws.send_str(text)

    async def receive(self) -> str | bytes | None:
        msg = await self._ws.receive()
        if msg.type in (aiohttp.WSMsgType.TEXT, aiohttp.WSMsgType.BINARY):
            return msg.data
        return None

    async def close(self) -> None:
        try:
            await self._ws.close()
        finally:
            await self._session.close()


def aiohttp_connector(max_message_bytes: int = protocol.DEFAULT_MAX_MESSAGE_BYTES) -> Connector:
    """Connector opening a real WebSocket with aiohttp."""

    async def connect(url: str) -> Transport:
        session = aiohttp.ClientSession()
        try:
            ws = await session.ws_connect(url, autoping=True, max_msg_size=max_message_bytes)
        except BaseException:
            await session.close()
            raise
        return AiohttpTransport(session, ws)

    return connect


class PeerLink:
    """Auto-reconnecting link to one peer, used for delegation and cluster events."""

    def __init__(
        self,
        peer: PeerConfig,
        config: PeerLinkConfig | None = None,
        connector: Connector | None = None,
        max_message_bytes: int = protocol.DEFAULT_MAX_MESSAGE_BYTES,
    ) -> None:
        self.peer = peer
        self.name = peer.name
        self.url = peer.url
        self.specialization = frozenset(peer.specialization)
        self.weight = peer.weight
        self.priority = peer.priority
        self.enabled = peer.enabled

        self.config = config or PeerLinkConfig()
        self.max_message_bytes = max_message_bytes
        self.events = EventBus()
        self._connector = connector or aiohttp_connector(max_message_bytes)

        self.state = ConnectionState.DISCONNECTED
        self.reconnect_attempts = 0
        self.last_heartbeat: float | None = None
        self.pending: dict[str, CompletionHandle] = {}
        self.completed_tasks = 0
        self.failed_tasks = 0

        self._destroyed = False
        self._transport: Transport | None = None
        self._outbox: asyncio.Queue[str] | None = None
        self._last_inbound = 0.0
        self._connect_task: asyncio.Task[None] | None = None
        self._io_tasks: list[asyncio.Task[None]] = []
        self._closing: set[asyncio.Task[None]] = set()
        self._reconnect_timer: asyncio.TimerHandle | None = None

    # ── Introspection ──────────────────────────────────────────────────────

    @property
    def connected(self) -> bool:
        return self.state == ConnectionState.CONNECTED

    @property
    def active_tasks(self) -> int:
        return len(self.pending)

    @property
    def destroyed(self) -> bool:
        return self._destroyed

    def can_handle(self, action: str | None) -> bool:
        """Empty specialization accepts any action."""
        if not self.enabled or not action:
            return False
        return not self.specialization or action in self.specialization

    def status(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "url": self.url,
            "specialization": sorted(self.specialization),
            "state": str(self.state),
            "enabled": self.enabled,
            "priority": self.priority,
            "weight": self.weight,
            "active_tasks": self.active_tasks,
            "completed_tasks": self.completed_tasks,
            "failed_tasks": self.failed_tasks,
            "reconnect_attempts": self.reconnect_attempts,
            "last_heartbeat": self.last_heartbeat,
        }

    # ── Connection lifecycle ───────────────────────────────────────────────

    def connect(self) -> bool:
        """Begin a connection attempt. Returns False when none was started."""
        if self._destroyed or not self.enabled:
            return False
        if self.state != ConnectionState.DISCONNECTED:
            return False
        if self.reconnect_attempts >= self.config.max_reconnect_attempts:
            self._give_up()
            return False

        self.state = ConnectionState.CONNECTING
        logger.info("peer_connecting", peer=self.name, url=self.url, attempt=self.reconnect_attempts)
        self.events.emit("connecting", peer=self.name, attempt=self.reconnect_attempts)
        self._connect_task = asyncio.get_running_loop().create_task(self._open())
        return True

    async def _open(self) -> None:
        try:
            transport = await asyncio.wait_for(
                self._connector(self.url),
                timeout=self.config.connection_timeout_ms / 1000,
            )
        except asyncio.TimeoutError:
            self._handle_disconnect("timeout")
            return
        except Exception as exc:
            logger.warning("peer_connect_failed", peer=self.name, error=str(exc))
            self.events.emit("error", peer=self.name, error=str(exc))
            self._handle_disconnect("connect_error")
            return

        if self._destroyed or self.state != ConnectionState.CONNECTING:
            await transport.close()
            return

        loop = asyncio.get_running_loop()
        self._transport = transport
        self._outbox = asyncio.Queue()
        self.state = ConnectionState.CONNECTED
        self.reconnect_attempts = 0
        self._last_inbound = loop.time()
        self.last_heartbeat = time.time()
        self._io_tasks = [
            loop.create_task(self._read_loop(transport)),
            loop.create_task(self._write_loop(transport, self._outbox)),
        ]
        if self.config.heartbeat_interval_ms > 0:
            self._io_tasks.append(loop.create_task(self._heartbeat_loop(transport)))

        logger.info("peer_connected", peer=self.name)
        self.events.emit("connected", peer=self.name)

    def _handle_disconnect(self, reason: str) -> None:
        if self.state == ConnectionState.DISCONNECTED:
            return

        self.state = ConnectionState.DISCONNECTED
        transport, self._transport = self._transport, None
        self._outbox = None

        current = asyncio.current_task()
        for task in self._io_tasks:
            if task is not current:
                task.cancel()
        self._io_tasks = []

        if transport is not None:
            closing = asyncio.get_running_loop().create_task(transport.close())
            self._closing.add(closing)
            closing.add_done_callback(self._closing.discard)

        for handle in list(self.pending.values()):
            handle.reject(PeerDisconnected(self.name, reason))
        self.pending.clear()

        logger.warning("peer_disconnected", peer=self.name, reason=reason)
        self.events.emit("disconnected", peer=self.name, reason=reason)

        if self.enabled and not self._destroyed:
            self._schedule_reconnect()

    def _give_up(self) -> None:
        error = PeerMaxReconnectReached(self.name)
        logger.error("peer_max_reconnect_reached", peer=self.name, attempts=self.reconnect_attempts)
        self.events.emit("max_reconnect_reached", peer=self.name, error=error.to_dict())

    def _schedule_reconnect(self) -> None:
        if self.reconnect_attempts >= self.config.max_reconnect_attempts:
            self._give_up()
            return
        delay = self.config.reconnect_delay(self.reconnect_attempts)
        self._reconnect_timer = asyncio.get_running_loop().call_later(delay, self._reconnect)
        logger.info("peer_reconnect_scheduled", peer=self.name, delay_s=delay)
        self.events.emit("reconnect_scheduled", peer=self.name, delay_s=delay)

    def _reconnect(self) -> None:
        self._reconnect_timer = None
        self.reconnect_attempts += 1
        self.connect()

    async def destroy(self) -> None:
        """Terminal shutdown: fail pending tasks, stop timers, close the transport."""
        self.enabled = False
        self._destroyed = True
        if self._reconnect_timer is not None:
            self._reconnect_timer.cancel()
            self._reconnect_timer = None

        connecting = self._connect_task
        self._connect_task = None
        if self.state != ConnectionState.DISCONNECTED:
            self._handle_disconnect("destroyed")
        if connecting is not None and not connecting.done():
            connecting.cancel()
            await asyncio.gather(connecting, return_exceptions=True)
        if self._closing:
            await asyncio.gather(*self._closing, return_exceptions=True)

        self.events.clear()
        logger.info("peer_destroyed", peer=self.name)

    # ── I/O loops ──────────────────────────────────────────────────────────

    async def _read_loop(self, transport: Transport) -> None:
        reason = "close"
        while True:
            try:
                raw = await transport.receive()
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.warning("peer_receive_failed", peer=self.name, error=str(exc))
                reason = "receive_error"
                break
            if raw is None:
                break
            self._on_raw(raw)
        if self._transport is transport:
            self._handle_disconnect(reason)

    async def _write_loop(self, transport: Transport, outbox: asyncio.Queue[str]) -> None:
        while True:
            text = await outbox.get()
            try:
                await transport.send(text)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.warning("peer_send_failed", peer=self.name, error=str(exc))
                self.events.emit("error", peer=self.name, error=str(exc))
                if self._transport is transport:
                    self._handle_disconnect("send_error")
                return

    async def _heartbeat_loop(self, transport: Transport) -> None:
        interval = self.config.heartbeat_interval_ms / 1000
        limit = interval * self.config.HEARTBEAT_MISS_FACTOR
        loop = asyncio.get_running_loop()
        while self._transport is transport:
            await asyncio.sleep(interval)
            if self._transport is not transport:
                return
            silence = loop.time() - self._last_inbound
            if silence > limit:
                logger.warning("peer_heartbeat_lost", peer=self.name, silence_s=round(silence, 3))
                self._handle_disconnect("heartbeat_timeout")
                return
            self.send(protocol.heartbeat_frame())

    def _on_raw(self, raw: str | bytes) -> None:
        try:
            frame = protocol.decode_frame(
                raw, self.name, self.max_message_bytes, restrict_types=False
            )
        except InvalidPeerMessage as exc:
            logger.warning("peer_frame_dropped", peer=self.name, reason=exc.reason)
            self.events.emit("error", peer=self.name, error=exc.to_dict())
            return

        self._last_inbound = asyncio.get_running_loop().time()
        self.last_heartbeat = time.time()

        if frame["type"] == protocol.HEARTBEAT:
            self.events.emit("heartbeat", peer=self.name)
        elif frame["type"] == protocol.TASK_RESPONSE and frame.get("taskId"):
            self._on_task_response(frame)
        else:
            self.events.emit("message", peer=self.name, message=frame)

    def _on_task_response(self, frame: dict[str, Any]) -> None:
        handle = self.pending.get(frame["taskId"])
        if handle is None:
            logger.debug("peer_unknown_task_response", peer=self.name, task_id=frame["taskId"])
            return
        if frame.get("error"):
            handle.reject(DispatchFailed(frame["error"]))
        else:
            handle.resolve(frame.get("result"))

    # ── Sending ────────────────────────────────────────────────────────────

    def send(self, frame: dict[str, Any]) -> bool:
        """Queue a frame for the writer. False when not connected."""
        if self.state != ConnectionState.CONNECTED or self._outbox is None:
            return False
        try:
            text = protocol.encode_frame(frame)
        except (TypeError, ValueError) as exc:
            logger.warning("peer_encode_failed", peer=self.name, error=str(exc))
            return False
        self._outbox.put_nowait(text)
        return True

    async def send_task(self, task: Task | dict[str, Any]) -> Any:
        """
        Delegate a task and wait for the peer's single ``task_response``.

        Raises:
            PeerDisconnected: not connected, or the link dropped while waiting.
            ValidationFailed: the task is malformed.
            NoCapableAgent: the peer's specialization excludes the action.
            TaskTimeout: no response within ``task_timeout_ms``.
            DispatchFailed: the peer answered with an error.
        """
        if not self.connected:
            raise PeerDisconnected(self.name, "not_connected")

        wire = task.to_wire() if isinstance(task, Task) else task
        result = validate_task(wire)
        if not result.valid:
            raise ValidationFailed(result.errors)
        if not self.can_handle(wire["action"]):
            raise NoCapableAgent(wire["action"])

        task_id = new_task_id()
        timeout_s = self.config.task_timeout_ms / 1000
        handle = CompletionHandle(
            timeout_s=timeout_s,
            on_timeout=lambda: TaskTimeout(task_id, peer=self.name, timeout_s=timeout_s),
            on_settle=lambda h: self._task_settled(task_id, h),
        )
        self.pending[task_id] = handle
        logger.info("peer_task_sent", peer=self.name, task_id=task_id, action=wire["action"])

        if not self.send(protocol.task_frame(task_id, wire)):
            handle.reject(DispatchFailed("failed to send task"))
        return await handle

    def _task_settled(self, task_id: str, handle: CompletionHandle) -> None:
        self.pending.pop(task_id, None)
        if handle.failed:
            self.failed_tasks += 1
        else:
            self.completed_tasks += 1
