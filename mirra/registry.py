"""
Module Registry

In-memory catalogue of the modules this mirra serves and syncs, with the
per-module sync state persisted next to the keys. Reads are plain dict
lookups; edits are serialized and never remove a module out from under a
running transfer.
"""

import asyncio
import json
import os
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any

from mirra.errors import ConfigError, ModuleNotFound
from mirra.logging import get_logger

logger = get_logger("registry")

DEFAULT_PORT = 6007
# Sequence-only progress is written to state.json at most this often
DEFAULT_PERSIST_INTERVAL = 5.0


class ModuleRole(Enum):
    """How this mirra relates to a module."""

    SERVED = "served"
    SYNCED = "synced"


class SyncState(Enum):
    """Node-side connection states of a synced module."""

    DISCONNECTED = "disconnected"
    HANDSHAKING = "handshaking"
    INDEX_EXCHANGE = "index_exchange"
    FULL_SYNC = "full_sync"
    STREAMING = "streaming"
    RECONCILING = "reconciling"


@dataclass(frozen=True)
class PeerEndpoint:
    """Where a synced module's root lives and which key it must present."""

    host: str
    port: int = DEFAULT_PORT
    public_key: str | None = None

    @property
    def endpoint_id(self) -> str:
        return f"{self.host}:{self.port}"

    @property
    def address(self) -> str:
        """Websocket URI of the remote root."""
        host = f"[{self.host}]" if ":" in self.host else self.host
        return f"ws://{host}:{self.port}"

    @classmethod
    def parse(cls, address: str, public_key: str | None = None) -> "PeerEndpoint":
        """Parse ``host`` or ``host:port`` (``[v6]:port`` for IPv6)."""
        address = address.strip()
        if not address:
            raise ConfigError("empty address")
        if address.startswith("["):
            host, _, rest = address[1:].partition("]")
            port_text = rest[1:] if rest.startswith(":") else ""
        elif address.count(":") == 1:
            host, _, port_text = address.partition(":")
        else:
            host, port_text = address, ""
        try:
            port = int(port_text) if port_text else DEFAULT_PORT
        except ValueError as e:
            raise ConfigError(f"invalid port in address {address!r}") from e
        if not host or not 0 < port < 65536:
            raise ConfigError(f"invalid address {address!r}")
        return cls(host=host, port=port, public_key=public_key)


@dataclass(frozen=True)
class Module:
    """A named, independently synchronized directory tree."""

    name: str
    path: Path
    role: ModuleRole
    peer: PeerEndpoint | None = None
    reshare: bool = False

    def __post_init__(self):
        if not self.name or "/" in self.name:
            raise ConfigError(f"invalid module name {self.name!r}")
        if (self.role == ModuleRole.SYNCED) != (self.peer is not None):
            raise ConfigError(f"module {self.name!r}: a peer endpoint is required iff synced")
        if self.reshare and self.role != ModuleRole.SYNCED:
            raise ConfigError(f"module {self.name!r}: only synced modules can be reshared")

    @property
    def is_served(self) -> bool:
        return self.role == ModuleRole.SERVED or self.reshare


@dataclass
class ModuleStatus:
    """Observable sync progress of a module."""

    state: SyncState = SyncState.DISCONNECTED
    last_error: str | None = None
    last_sequence: int = 0
    last_synced: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "state": self.state.value,
            "last_error": self.last_error,
            "last_sequence": self.last_sequence,
            "last_synced": self.last_synced.isoformat() if self.last_synced else None,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ModuleStatus":
        last_synced = data.get("last_synced")
        return cls(
            # Nothing is connected when the process starts
            state=SyncState.DISCONNECTED,
            last_error=data.get("last_error"),
            last_sequence=int(data.get("last_sequence", 0)),
            last_synced=datetime.fromisoformat(last_synced) if last_synced else None,
        )


Stopper = Callable[[], Awaitable[None]]


@dataclass
class _Entry:
    module: Module
    status: ModuleStatus = field(default_factory=ModuleStatus)


class ModuleRegistry:
    """
    Catalogue of served and synced modules.

    The sync engine attaches a stopper for every module it is working on;
    :meth:`remove` calls it and waits before dropping the entry.
    """

    def __init__(
        self,
        modules: list[Module] | None = None,
        state_file: Path | None = None,
        persist_interval: float = DEFAULT_PERSIST_INTERVAL,
    ):
        self.state_file = state_file
        self.persist_interval = persist_interval
        self._dirty = False
        self._saved_at = 0.0
        self._entries: dict[str, _Entry] = {}
        self._active: dict[str, Stopper] = {}
        self._edit_lock = asyncio.Lock()
        self._on_added: list[Callable[[Module], Awaitable[None]]] = []

        saved = self._load_state()
        for module in modules or []:
            self._insert(module)
            if module.name in saved:
                self._entries[module.name].status = saved[module.name]

        logger.info(
            f"Registry loaded: {len(self.list_served())} served, {len(self.list_synced())} synced"
        )

    def _insert(self, module: Module) -> None:
        if module.name in self._entries:
            raise ConfigError(f"duplicate module name {module.name!r}")
        if module.role == ModuleRole.SERVED:
            if not module.path.is_dir() or not os.access(module.path, os.R_OK | os.X_OK):
                raise ConfigError(
                    f"served module {module.name!r}: {module.path} is not a readable directory"
                )
        self._entries[module.name] = _Entry(module=module)

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def _load_state(self) -> dict[str, ModuleStatus]:
        if not self.state_file or not self.state_file.exists():
            return {}
        try:
            data = json.loads(self.state_file.read_text())
            return {name: ModuleStatus.from_dict(item) for name, item in data.items()}
        except (OSError, ValueError, AttributeError) as e:
            logger.warning(f"Ignoring unreadable state file {self.state_file}: {e}")
            return {}

    def _save_state(self) -> None:
        if not self.state_file:
            return
        data = {name: entry.status.to_dict() for name, entry in self._entries.items()}
        self.state_file.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.state_file.with_suffix(".tmp")
        tmp.write_text(json.dumps(data, indent=2))
        os.replace(tmp, self.state_file)
        self._dirty = False
        self._saved_at = time.monotonic()

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def names(self) -> list[str]:
        return sorted(self._entries)

    def list_served(self) -> list[Module]:
        """Modules the local root server exposes, reshared synced ones included."""
        return [e.module for e in self._entries.values() if e.module.is_served]

    def list_synced(self) -> list[Module]:
        return [e.module for e in self._entries.values() if e.module.role == ModuleRole.SYNCED]

    def get(self, name: str) -> Module:
        entry = self._entries.get(name)
        if entry is None:
            raise ModuleNotFound(f"module {name!r} is not registered", module=name)
        return entry.module

    def get_served(self, name: str) -> Module:
        module = self.get(name)
        if not module.is_served:
            raise ModuleNotFound(f"module {name!r} is not served here", module=name)
        return module

    def status(self, name: str) -> ModuleStatus:
        self.get(name)
        return self._entries[name].status

    def __contains__(self, name: object) -> bool:
        return name in self._entries

    # ------------------------------------------------------------------
    # State updates
    # ------------------------------------------------------------------

    def update_sync_state(
        self,
        name: str,
        new_state: SyncState,
        error: str | None = None,
        sequence: int | None = None,
    ) -> None:
        """
        Record a state transition of a synced module.

        State and error changes are written at once; progress that only
        moves the sequence is written at most every ``persist_interval``.
        """
        status = self.status(name)
        changed = status.state != new_state
        if changed:
            logger.debug(f"{name}: {status.state.value} -> {new_state.value}")
        status.state = new_state
        if error is not None:
            changed = changed or status.last_error != error
            status.last_error = error
        elif new_state == SyncState.STREAMING and status.last_error is not None:
            status.last_error = None
            changed = True
        if sequence is not None:
            status.last_sequence = sequence
        if new_state == SyncState.STREAMING:
            status.last_synced = datetime.now()

        self._dirty = True
        if changed or time.monotonic() - self._saved_at >= self.persist_interval:
            self.flush()

    def flush(self) -> None:
        """Write pending status changes to the state file."""
        if self._dirty:
            self._save_state()

    # ------------------------------------------------------------------
    # Edits
    # ------------------------------------------------------------------

    def add_listener(self, callback: Callable[[Module], Awaitable[None]]) -> None:
        """Call ``callback`` whenever a module is added at runtime."""
        self._on_added.append(callback)

    def attach(self, name: str, stopper: Stopper) -> None:
        """Register the stop hook of the task working on ``name``."""
        self._active[name] = stopper

    def detach(self, name: str, stopper: Stopper | None = None) -> None:
        if stopper is None or self._active.get(name) is stopper:
            self._active.pop(name, None)

    def is_active(self, name: str) -> bool:
        return name in self._active

    async def add(self, module: Module) -> None:
        async with self._edit_lock:
            self._insert(module)
            self._save_state()
            logger.info(f"Added {module.role.value} module {module.name}")
        for callback in self._on_added:
            await callback(module)

    async def remove(self, name: str) -> Module:
        """
        Remove a module, first stopping and awaiting any task attached to it.
        """
        async with self._edit_lock:
            module = self.get(name)
            stopper = self._active.pop(name, None)
            if stopper is not None:
                logger.info(f"Waiting for {name} to quiesce before removal")
                await stopper()
            del self._entries[name]
            self._save_state()
            logger.info(f"Removed module {name}")
            return module
