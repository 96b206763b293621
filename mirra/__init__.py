"""Mirra - peer-to-peer mirroring of directory trees."""

__version__ = "0.1.0"

from mirra.errors import MirraError
from mirra.identity import IdentityManager, TrustStore
from mirra.models import ChangeBatch, ChangeEvent, ChangeOp, IndexEntry, ModuleIndex
from mirra.registry import Module, ModuleRegistry, ModuleRole, PeerEndpoint, SyncState
from mirra.store import ContentStore, compute_fingerprint
from mirra.watcher import ChangeWatcher

__all__ = [
    "ChangeBatch",
    "ChangeEvent",
    "ChangeOp",
    "ChangeWatcher",
    "ContentStore",
    "IdentityManager",
    "IndexEntry",
    "MirraError",
    "Module",
    "ModuleIndex",
    "ModuleRegistry",
    "ModuleRole",
    "PeerEndpoint",
    "SyncState",
    "TrustStore",
    "compute_fingerprint",
]
