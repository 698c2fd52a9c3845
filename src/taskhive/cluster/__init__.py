"""Peer links, peer routing and the node sync listener."""

from taskhive.cluster.peer_link import (
    AiohttpTransport,
    ConnectionState,
    Connector,
    PeerLink,
    Transport,
    aiohttp_connector,
)
from taskhive.cluster.router import fit_score, select_peer
from taskhive.cluster.sync_manager import NodeSyncManager

__all__ = [
    "AiohttpTransport",
    "ConnectionState",
    "Connector",
    "NodeSyncManager",
    "PeerLink",
    "Transport",
    "aiohttp_connector",
    "fit_score",
    "select_peer",
]
