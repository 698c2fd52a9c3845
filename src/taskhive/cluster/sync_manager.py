"""
Node Sync Manager — Listener for Peer Connections and Owner of Outbound Links

Inbound: an aiohttp WebSocket endpoint. Each connection gets an id, frames
are size-limited and restricted to the allowed type set; anything else is
logged and dropped. Heartbeats are echoed.

Outbound: one PeerLink per configured peer, connected on ``start()``.

Frames from either side are routed to handlers registered per type; a type
without handlers fires a generic ``message`` event on the bus.

Usage:
    from taskhive.cluster import NodeSyncManager

    sync = NodeSyncManager(NodeConfig(node_name="node-a", listen_port=8800))
    sync.register_handler("collab_session_created", on_session)
    await sync.start()
"""

from __future__ import annotations

import asyncio
import inspect
import secrets
from collections import defaultdict
from collections.abc import Callable
from typing import Any

import structlog
from aiohttp import WSCloseCode, WSMsgType, web

from taskhive.cluster import protocol
from taskhive.cluster.peer_link import Connector, PeerLink
from taskhive.config import NodeConfig, PeerLinkConfig
from taskhive.errors import InvalidPeerMessage
from taskhive.events import EventBus

logger = structlog.get_logger(__name__)

# (frame, source) -> None | awaitable; source is a connection id or "peer:<name>"
FrameHandler = Callable[[dict[str, Any], str], Any]

PEER_SOURCE_PREFIX = "peer:"


class NodeSyncManager:
    """Accepts inbound peer connections and drives outbound peer links."""

    # aiohttp closes connections whose frames exceed this multiple of the limit
    HARD_LIMIT_FACTOR = 2

    _LINK_EVENTS = {
        "connecting": "peer_connecting",
        "connected": "peer_connected",
        "disconnected": "peer_disconnected",
        "error": "peer_error",
        "max_reconnect_reached": "peer_max_reconnect_reached",
    }

    def __init__(
        self,
        config: NodeConfig | None = None,
        link_config: PeerLinkConfig | None = None,
        bus: EventBus | None = None,
        connector: Connector | None = None,
    ) -> None:
        self.config = config or NodeConfig()
        self.node_name = self.config.node_name
        self.bus = bus or EventBus()
        self.links = [
            PeerLink(
                peer,
                link_config,
                connector=connector,
                max_message_bytes=self.config.max_message_bytes,
            )
            for peer in self.config.peers
        ]
        self.clients: dict[str, web.WebSocketResponse] = {}
        self.invalid_messages = 0
        self.port: int | None = None

        self._handlers: dict[str, list[FrameHandler]] = defaultdict(list)
        self._runner: web.AppRunner | None = None
        self._pending: set[asyncio.Task[Any]] = set()

    # ── Lifecycle ──────────────────────────────────────────────────────────

    def build_app(self) -> web.Application:
        app = web.Application()
        app.router.add_get("/", self._handle_ws)
        app.router.add_get("/ws", self._handle_ws)
        return app

    async def start(self) -> None:
        """Bind the listener, then connect every enabled outbound link."""
        runner = web.AppRunner(self.build_app(), access_log=None)
        await runner.setup()
        site = web.TCPSite(runner, self.config.listen_host, self.config.listen_port)
        await site.start()
        self._runner = runner
        self.port = runner.addresses[0][1] if runner.addresses else self.config.listen_port

        for link in self.links:
            self._watch_link(link)
            link.connect()

        logger.info(
            "node_sync_started",
            node=self.node_name,
            host=self.config.listen_host,
            port=self.port,
            peers=len(self.links),
        )

    async def stop(self) -> None:
        for link in self.links:
            await link.destroy()
        for ws in list(self.clients.values()):
            await ws.close(code=WSCloseCode.GOING_AWAY, message=b"node shutdown")
        if self._pending:
            await asyncio.gather(*self._pending, return_exceptions=True)
        if self._runner is not None:
            await self._runner.cleanup()
            self._runner = None
        logger.info("node_sync_stopped", node=self.node_name)

    def _watch_link(self, link: PeerLink) -> None:
        for event, forwarded in self._LINK_EVENTS.items():
            link.events.on(event, lambda payload, name=forwarded: self.bus.emit(name, **payload))
        link.events.on(
            "message",
            lambda payload: self._dispatch_frame(
                payload["message"], PEER_SOURCE_PREFIX + payload["peer"]
            ),
        )

    # ── Inbound ────────────────────────────────────────────────────────────

    async def _handle_ws(self, request: web.Request) -> web.WebSocketResponse:
        ws = web.WebSocketResponse(
            heartbeat=self.config.client_heartbeat_s,
            max_msg_size=self.config.max_message_bytes * self.HARD_LIMIT_FACTOR,
        )
        await ws.prepare(request)

        conn_id = f"client-{secrets.token_hex(4)}"
        self.clients[conn_id] = ws
        logger.info("client_connected", connection=conn_id, remote=request.remote)
        self.bus.emit("client_connected", connection=conn_id)

        try:
            async for msg in ws:
                if msg.type in (WSMsgType.TEXT, WSMsgType.BINARY):
                    await self._on_client_frame(conn_id, msg.data)
                elif msg.type == WSMsgType.ERROR:
                    logger.warning("client_error", connection=conn_id, error=str(ws.exception()))
        finally:
            self.clients.pop(conn_id, None)
            logger.info("client_disconnected", connection=conn_id)
            self.bus.emit("client_disconnected", connection=conn_id)
        return ws

    async def _on_client_frame(self, conn_id: str, raw: str | bytes) -> None:
        try:
            frame = protocol.decode_frame(raw, conn_id, self.config.max_message_bytes)
        except InvalidPeerMessage as exc:
            self.invalid_messages += 1
            logger.warning("inbound_frame_dropped", connection=conn_id, reason=exc.reason)
            self.bus.emit("invalid_message", connection=conn_id, error=exc.to_dict())
            return

        if frame["type"] == protocol.HEARTBEAT:
            await self.send_to(conn_id, protocol.heartbeat_frame())
            return
        self._dispatch_frame(frame, conn_id)

    # ── Routing ────────────────────────────────────────────────────────────

    def register_handler(self, frame_type: str, handler: FrameHandler) -> None:
        """React to inbound frames of one type. Coroutine handlers are scheduled."""
        self._handlers[frame_type].append(handler)

    def unregister_handler(self, frame_type: str, handler: FrameHandler) -> None:
        handlers = self._handlers.get(frame_type)
        if handlers and handler in handlers:
            handlers.remove(handler)

    def _dispatch_frame(self, frame: dict[str, Any], source: str) -> None:
        handlers = list(self._handlers.get(frame["type"], ()))
        if not handlers:
            self.bus.emit("message", source=source, message=frame)
            return

        for handler in handlers:
            try:
                result = handler(frame, source)
            except Exception:
                logger.exception("frame_handler_failed", frame_type=frame["type"], source=source)
                continue
            if inspect.isawaitable(result):
                self._track(asyncio.ensure_future(result), frame["type"], source)

    def _track(self, future: asyncio.Future[Any], frame_type: str, source: str) -> None:
        self._pending.add(future)

        def done(fut: asyncio.Future[Any]) -> None:
            self._pending.discard(fut)
            if not fut.cancelled() and fut.exception() is not None:
                logger.error(
                    "frame_handler_failed",
                    frame_type=frame_type,
                    source=source,
                    exc_info=fut.exception(),
                )

        future.add_done_callback(done)

    # ── Outbound ───────────────────────────────────────────────────────────

    async def send_to(self, conn_id: str, frame: dict[str, Any]) -> bool:
        """Send a frame to one inbound client."""
        ws = self.clients.get(conn_id)
        if ws is None or ws.closed:
            return False
        try:
            await ws.send_str(protocol.encode_frame(frame))
        except (ConnectionResetError, RuntimeError) as exc:
            logger.warning("client_send_failed", connection=conn_id, error=str(exc))
            return False
        return True

    async def reply(self, source: str, frame: dict[str, Any]) -> bool:
        """Answer whoever sent a frame: an inbound client or an outbound link."""
        if source.startswith(PEER_SOURCE_PREFIX):
            name = source[len(PEER_SOURCE_PREFIX) :]
            link = self.get_link(name)
            return link.send(frame) if link is not None else False
        return await self.send_to(source, frame)

    def get_link(self, name: str) -> PeerLink | None:
        return next((link for link in self.links if link.name == name), None)

    def broadcast_cluster_event(self, event_type: str, payload: Any) -> int:
        """Send ``{type, data, from}`` to every outbound peer. Returns successful sends."""
        frame = protocol.cluster_event_frame(event_type, payload, self.node_name)
        sent = sum(1 for link in self.links if link.send(frame))
        logger.debug("cluster_event_broadcast", event_type=event_type, sent=sent)
        return sent

    def status(self) -> dict[str, Any]:
        return {
            "node_name": self.node_name,
            "port": self.port,
            "links": [link.status() for link in self.links],
            "connected_peers": sum(1 for link in self.links if link.connected),
            "clients": sorted(self.clients),
            "invalid_messages": self.invalid_messages,
        }
