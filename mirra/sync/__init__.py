"""
Mirra Sync Engine

Wire protocol and the two roles of a mirra: the root server pushing served
modules to nodes, and the node sessions replicating synced modules.
"""

from mirra.sync.backoff import BackoffPolicy
from mirra.sync.client import LinkPool, NodeSession, PeerLink, SyncedModuleManager
from mirra.sync.handshake import PeerInfo, client_handshake, server_handshake
from mirra.sync.protocol import Frame, MessageKind
from mirra.sync.server import PeerOutbox, RootServer, ServedModule
from mirra.sync.state import IndexDelta, SyncReport
from mirra.sync.transport import FramedConnection

__all__ = [
    "BackoffPolicy",
    "Frame",
    "FramedConnection",
    "IndexDelta",
    "LinkPool",
    "MessageKind",
    "NodeSession",
    "PeerInfo",
    "PeerLink",
    "PeerOutbox",
    "RootServer",
    "ServedModule",
    "SyncReport",
    "SyncedModuleManager",
    "client_handshake",
    "server_handshake",
]
