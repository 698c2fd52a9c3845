"""
Tests for peer links.

Covers: connection lifecycle, delegated tasks, heartbeats, reconnect backoff,
destroy, and the protocol helpers.
"""

import asyncio

import pytest

from conftest import MemoryConnector, make_task, wait_until
from taskhive.cluster import protocol
from taskhive.cluster.peer_link import ConnectionState, PeerLink
from taskhive.config import PeerConfig, PeerLinkConfig
from taskhive.errors import (
    DispatchFailed,
    InvalidPeerMessage,
    NoCapableAgent,
    PeerDisconnected,
    TaskTimeout,
    ValidationFailed,
)
from taskhive.events import EventRecorder


def make_link(
    connector: MemoryConnector,
    specialization: list[str] | None = None,
    **overrides,
) -> PeerLink:
    peer = PeerConfig(url="ws://peer-b:8800/ws", name="peer-b", specialization=specialization or [])
    return PeerLink(peer, PeerLinkConfig(**overrides), connector=connector)


async def connected_link(connector: MemoryConnector, **kwargs) -> PeerLink:
    link = make_link(connector, **kwargs)
    assert link.connect()
    await wait_until(lambda: link.connected)
    return link


# ═══════════════════════════════════════════════════════════════════════════
# CONNECTION LIFECYCLE
# ═══════════════════════════════════════════════════════════════════════════


class TestLifecycle:
    @pytest.mark.anyio
    async def test_connect(self):
        """Test connecting a link and emitting peer_connected."""
        connector = MemoryConnector()
        link = make_link(connector)
        events = EventRecorder(link.events)

        assert link.connect()
        assert link.state == ConnectionState.CONNECTING
        assert not link.connect()
        await wait_until(lambda: link.connected)

        assert connector.urls == ["ws://peer-b:8800/ws"]
        assert events.names() == ["connecting", "connected"]
        assert link.reconnect_attempts == 0
        await link.destroy()

    @pytest.mark.anyio
    async def test_disabled_peer_never_connects(self):
        """A disabled peer is never dialled."""
        connector = MemoryConnector()
        peer = PeerConfig(url="ws://peer-c:8800", enabled=False)
        link = PeerLink(peer, connector=connector)
        assert not link.connect()
        assert connector.urls == []

    @pytest.mark.anyio
    async def test_reconnect_backoff_until_cap(self):
        """Test reconnect delays doubling up to the cap."""
        connector = MemoryConnector(refuse=True)
        link = make_link(connector, reconnect_base_delay_ms=10, max_reconnect_attempts=3)
        events = EventRecorder(link.events)

        link.connect()
        await wait_until(lambda: "max_reconnect_reached" in events.names())

        assert [e["attempt"] for e in events.of("connecting")] == [0, 1, 2]
        assert [e["reason"] for e in events.of("disconnected")] == ["connect_error"] * 3
        delays = [e["delay_s"] for e in events.of("reconnect_scheduled")]
        assert delays == pytest.approx([0.01, 0.015, 0.0225])
        assert len(connector.urls) == 3
        assert events.of("max_reconnect_reached")[0]["error"]["kind"] == (
            "peer_max_reconnect_reached"
        )
        assert link.state == ConnectionState.DISCONNECTED
        await link.destroy()

    @pytest.mark.anyio
    async def test_reconnects_after_remote_close(self):
        """Test reconnecting after the remote side closes."""
        connector = MemoryConnector()
        link = await connected_link(connector, reconnect_base_delay_ms=5)
        events = EventRecorder(link.events)

        connector.last.hang_up()
        await wait_until(lambda: len(connector.transports) == 2 and link.connected)

        assert events.of("disconnected")[0]["reason"] == "close"
        assert link.reconnect_attempts == 0
        await link.destroy()

    @pytest.mark.anyio
    async def test_destroy_is_terminal(self):
        """A destroyed link stays down."""
        connector = MemoryConnector()
        link = await connected_link(connector, reconnect_base_delay_ms=5)
        pending = asyncio.ensure_future(link.send_task(make_task()))
        await connector.last.next_sent(protocol.TASK)

        await link.destroy()

        with pytest.raises(PeerDisconnected) as excinfo:
            await pending
        assert excinfo.value.reason == "destroyed"
        assert link.destroyed
        assert not link.connect()
        assert connector.last.closed
        await asyncio.sleep(0.02)
        assert len(connector.transports) == 1


# ═══════════════════════════════════════════════════════════════════════════
# DELEGATED TASKS
# ═══════════════════════════════════════════════════════════════════════════


class TestSendTask:
    @pytest.mark.anyio
    async def test_resolves_on_task_response(self):
        """Test resolving send_task from a task_response frame."""
        connector = MemoryConnector()
        link = await connected_link(connector)

        pending = asyncio.ensure_future(link.send_task(make_task("mine")))
        frame = await connector.last.next_sent(protocol.TASK)
        assert len(frame["taskId"]) == 32
        assert frame["payload"]["action"] == "mine"
        assert link.active_tasks == 1

        connector.last.feed(protocol.task_response_frame(frame["taskId"], result={"ok": True}))
        assert await pending == {"ok": True}
        assert link.active_tasks == 0
        assert link.completed_tasks == 1
        await link.destroy()

    @pytest.mark.anyio
    async def test_error_response_rejects(self):
        """Test that an error response rejects the pending task."""
        connector = MemoryConnector()
        link = await connected_link(connector)

        pending = asyncio.ensure_future(link.send_task(make_task()))
        frame = await connector.last.next_sent(protocol.TASK)
        connector.last.feed(protocol.task_response_frame(frame["taskId"], error="no agents"))

        with pytest.raises(DispatchFailed, match="no agents"):
            await pending
        assert link.failed_tasks == 1
        assert link.pending == {}
        await link.destroy()

    @pytest.mark.anyio
    async def test_response_for_unknown_task_is_ignored(self):
        """Responses for unknown task ids are dropped."""
        connector = MemoryConnector()
        link = await connected_link(connector)
        connector.last.feed(protocol.task_response_frame("f" * 32, result=1))
        await asyncio.sleep(0.01)
        assert link.completed_tasks == 0
        assert link.connected
        await link.destroy()

    @pytest.mark.anyio
    async def test_timeout(self):
        """Test send_task timing out without a response."""
        connector = MemoryConnector()
        link = await connected_link(connector, task_timeout_ms=20)

        with pytest.raises(TaskTimeout) as excinfo:
            await link.send_task(make_task())
        assert excinfo.value.peer == "peer-b"
        assert link.pending == {}
        assert link.failed_tasks == 1
        await link.destroy()

    @pytest.mark.anyio
    async def test_preconditions(self):
        """Test the checks send_task makes before sending."""
        connector = MemoryConnector()
        link = make_link(connector, specialization=["mine"])
        with pytest.raises(PeerDisconnected):
            await link.send_task(make_task("mine"))

        link.connect()
        await wait_until(lambda: link.connected)
        with pytest.raises(ValidationFailed):
            await link.send_task({"action": "mine", "details": ""})
        with pytest.raises(NoCapableAgent):
            await link.send_task(make_task("build"))
        assert link.pending == {}
        await link.destroy()

    @pytest.mark.anyio
    async def test_connection_loss_fails_every_pending_task(self):
        """Losing the connection fails every pending task."""
        connector = MemoryConnector()
        link = await connected_link(connector)

        first = asyncio.ensure_future(link.send_task(make_task()))
        second = asyncio.ensure_future(link.send_task(make_task()))
        await connector.last.next_sent(protocol.TASK)
        await connector.last.next_sent(protocol.TASK)
        assert link.active_tasks == 2

        connector.last.hang_up()
        for pending in (first, second):
            with pytest.raises(PeerDisconnected):
                await pending
        assert link.active_tasks == 0
        assert link.failed_tasks == 2
        await link.destroy()


# ═══════════════════════════════════════════════════════════════════════════
# HEARTBEAT AND INBOUND FRAMES
# ═══════════════════════════════════════════════════════════════════════════


class TestHeartbeat:
    @pytest.mark.anyio
    async def test_silent_peer_is_dropped(self):
        """Test dropping a peer that stops sending heartbeats."""
        connector = MemoryConnector()
        link = await connected_link(connector, heartbeat_interval_ms=10)
        events = EventRecorder(link.events)
        pending = asyncio.ensure_future(link.send_task(make_task()))

        beat = await connector.last.next_sent(protocol.HEARTBEAT)
        assert "timestamp" in beat

        with pytest.raises(PeerDisconnected) as excinfo:
            await pending
        assert excinfo.value.reason == "heartbeat_timeout"
        assert events.of("disconnected")[0]["reason"] == "heartbeat_timeout"
        await link.destroy()

    @pytest.mark.anyio
    async def test_inbound_traffic_keeps_link_alive(self):
        """Any inbound frame counts as a heartbeat."""
        connector = MemoryConnector()
        link = await connected_link(connector, heartbeat_interval_ms=10)
        events = EventRecorder(link.events)

        for _ in range(10):
            connector.last.feed(protocol.heartbeat_frame())
            await asyncio.sleep(0.01)

        assert link.connected
        assert "heartbeat" in events.names()
        assert link.last_heartbeat is not None
        await link.destroy()

    @pytest.mark.anyio
    async def test_other_frames_become_message_events(self):
        """Test surfacing unhandled frames as message events."""
        connector = MemoryConnector()
        link = await connected_link(connector)
        events = EventRecorder(link.events)

        frame = protocol.cluster_event_frame("collab_session_created", {"id": "s1"}, "peer-b")
        connector.last.feed(frame)
        connector.last.feed("{not json")
        await wait_until(lambda: events.of("message") and events.of("error"))

        assert events.of("message")[0]["message"] == frame
        assert events.of("error")[0]["error"]["kind"] == "invalid_peer_message"
        assert link.connected
        await link.destroy()

    @pytest.mark.anyio
    async def test_status(self):
        """Test the link status snapshot."""
        connector = MemoryConnector()
        link = await connected_link(connector, specialization=["mine", "gather"])
        status = link.status()
        assert status["name"] == "peer-b"
        assert status["state"] == "connected"
        assert status["specialization"] == ["gather", "mine"]
        assert status["active_tasks"] == 0
        assert link.can_handle("mine")
        assert not link.can_handle("build")
        await link.destroy()


class TestProtocol:
    def test_allowed_types(self):
        """Test decoding each allowed frame type."""
        assert protocol.is_allowed_type("task")
        assert protocol.is_allowed_type("collab_progress_updated")
        assert not protocol.is_allowed_type("collab_")
        assert not protocol.is_allowed_type("shutdown")

    def test_decode_rejections(self):
        """Test the frames the decoder refuses."""
        with pytest.raises(InvalidPeerMessage, match="exceeds"):
            protocol.decode_frame('{"type": "task"}', "p", max_bytes=4)
        with pytest.raises(InvalidPeerMessage, match="no type"):
            protocol.decode_frame('{"data": 1}', "p")
        with pytest.raises(InvalidPeerMessage, match="unknown frame type"):
            protocol.decode_frame('{"type": "reboot"}', "p")
        assert protocol.decode_frame('{"type": "reboot"}', "p", restrict_types=False)

    def test_task_response_has_result_or_error(self):
        """A task response carries either a result or an error."""
        assert protocol.task_response_frame("t", result=1) == {
            "type": "task_response",
            "taskId": "t",
            "result": 1,
        }
        assert "result" not in protocol.task_response_frame("t", error="x")
