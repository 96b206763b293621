"""Shared fixtures for the Mirra test suite."""

import asyncio
from pathlib import Path

import pytest

from mirra.identity import IdentityManager, TrustStore
from mirra.registry import Module, ModuleRegistry, ModuleRole, PeerEndpoint
from mirra.store import ContentStore


def write_tree(root: Path, files: dict[str, bytes | str]) -> None:
    """Create ``files`` (relative path -> content) under ``root``."""
    for rel, content in files.items():
        path = root / rel
        path.parent.mkdir(parents=True, exist_ok=True)
        if isinstance(content, str):
            content = content.encode()
        path.write_bytes(content)


def read_tree(root: Path) -> dict[str, bytes]:
    """Relative path -> content of every regular file outside .mirra."""
    result = {}
    if not root.exists():
        return result
    for path in sorted(root.rglob("*")):
        rel = path.relative_to(root).as_posix()
        if path.is_file() and ".mirra" not in path.relative_to(root).parts:
            result[rel] = path.read_bytes()
    return result


def chunks_of(*parts: bytes):
    """Content reader yielding ``parts``."""

    async def reader():
        for part in parts:
            yield part

    return reader


async def wait_for_condition(predicate, timeout: float = 10.0, interval: float = 0.05) -> bool:
    """Poll ``predicate`` until it is true or ``timeout`` elapses."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while loop.time() < deadline:
        if predicate():
            return True
        await asyncio.sleep(interval)
    return predicate()


@pytest.fixture
def identity(tmp_path):
    return IdentityManager(tmp_path / "root-keys", "root").generate()


@pytest.fixture
def node_identity(tmp_path):
    return IdentityManager(tmp_path / "node-keys", "node").generate()


@pytest.fixture
def trust(tmp_path):
    return TrustStore(tmp_path / "known_peers.json")


@pytest.fixture
def served_dir(tmp_path):
    path = tmp_path / "served"
    path.mkdir()
    return path


@pytest.fixture
def store(tmp_path):
    root = tmp_path / "store"
    root.mkdir()
    return ContentStore("docs", root)


@pytest.fixture
def synced_module(tmp_path):
    return Module(
        name="docs",
        path=tmp_path / "replica",
        role=ModuleRole.SYNCED,
        peer=PeerEndpoint("127.0.0.1", 1),
    )


@pytest.fixture
def node_registry(tmp_path, synced_module):
    return ModuleRegistry([synced_module], state_file=tmp_path / "node-state.json")


class MemorySocket:
    """One end of an in-memory websocket pair."""

    def __init__(self):
        self.inbox: asyncio.Queue = asyncio.Queue()
        self.other: "MemorySocket | None" = None
        self.closed = False
        self.sent: list[bytes] = []

    async def send(self, data):
        from websockets.exceptions import ConnectionClosedOK

        if self.closed:
            raise ConnectionClosedOK(None, None)
        self.sent.append(data)
        await self.other.inbox.put(data)

    async def recv(self):
        from websockets.exceptions import ConnectionClosedOK

        data = await self.inbox.get()
        if data is None:
            raise ConnectionClosedOK(None, None)
        return data

    async def close(self):
        if self.closed:
            return
        self.closed = True
        await self.inbox.put(None)
        if self.other is not None and not self.other.closed:
            self.other.closed = True
            await self.other.inbox.put(None)


def memory_pipe() -> tuple[MemorySocket, MemorySocket]:
    """Two connected in-memory sockets; create inside a running loop."""
    a, b = MemorySocket(), MemorySocket()
    a.other, b.other = b, a
    return a, b


class FakeObserver:
    """Stands in for a watchdog observer; changes are notified by hand."""

    instances: list["FakeObserver"] = []

    def __init__(self):
        self.alive = False
        self.scheduled = []
        FakeObserver.instances.append(self)

    def schedule(self, handler, path, recursive=False):
        self.scheduled.append((path, recursive))

    def start(self):
        self.alive = True

    def stop(self):
        self.alive = False

    def join(self, timeout=None):
        pass

    def is_alive(self):
        return self.alive
