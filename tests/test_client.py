"""
Tests for the node side: sessions applying batches, full syncs and links.
"""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest
from conftest import read_tree, wait_for_condition, write_tree

from mirra.errors import (
    AuthenticationFailed,
    ConnectionLost,
    ContentMismatch,
    ContentNotFound,
    ModuleNotFound,
    ProtocolError,
    SequenceGap,
)
from mirra.models import ChangeBatch, ChangeEvent, ChangeOp, IndexEntry, ModuleIndex
from mirra.registry import PeerEndpoint, SyncState
from mirra.store import ContentStore, compute_fingerprint
from mirra.sync.backoff import BackoffPolicy
from mirra.sync.client import LinkPool, NodeSession, PeerLink, SyncedModuleManager, parse_batch
from mirra.sync.handshake import PeerInfo
from mirra.sync.protocol import Frame, MessageKind, create_error, create_heartbeat

FAST_BACKOFF = BackoffPolicy(initial_delay=0.01, factor=2.0, max_delay=0.05, jitter=False)


class FakeLink:
    """Serves file content from a dict the way a PeerLink streams it."""

    def __init__(self, files=None, broken=()):
        self.files = {k: v.encode() if isinstance(v, str) else v for k, v in (files or {}).items()}
        self.broken = set(broken)
        self.requests = []

    def index(self, sequence=0):
        return ModuleIndex(
            "docs",
            [
                IndexEntry(path, compute_fingerprint(data), len(data))
                for path, data in self.files.items()
            ],
            sequence=sequence,
        )

    async def fetch_content(self, module, path):
        self.requests.append(path)
        if path not in self.files:
            raise ContentNotFound(f"{path} is gone", path=path)
        data = self.files[path]
        yield data[: len(data) // 2]
        yield data[len(data) // 2 :]
        if path in self.broken:
            raise ContentMismatch(f"{path} was corrupted", path=path)

    def event(self, path, op, sequence, source=None):
        data = self.files.get(path)
        return ChangeEvent(
            "docs",
            path,
            op,
            compute_fingerprint(data) if data is not None and op != ChangeOp.DELETE else None,
            len(data) if data is not None else 0,
            sequence=sequence,
            source=source,
        )


@pytest.fixture
def session(synced_module, node_registry):
    store = ContentStore("docs", synced_module.path)
    store.ensure_root()
    return NodeSession(synced_module, node_registry, store, MagicMock(), backoff=FAST_BACKOFF)


class TestApplyBatch:
    """Ordering and gap detection of streamed batches."""

    def test_consecutive_batches(self, session):
        link = FakeLink({f"f{n}.txt": f"content {n}" for n in range(3, 8)})
        session.last_seq = 2

        async def scenario():
            first = ChangeBatch(
                "docs", [link.event(f"f{n}.txt", ChangeOp.CREATE, n) for n in (3, 4, 5)]
            )
            second = ChangeBatch(
                "docs", [link.event(f"f{n}.txt", ChangeOp.CREATE, n) for n in (6, 7)]
            )
            return await session.apply_batch(link, first), await session.apply_batch(link, second)

        assert asyncio.run(scenario()) == (3, 2)
        assert session.last_seq == 7
        assert len(read_tree(session.store.root)) == 5
        assert session.registry.status("docs").last_sequence == 7
        assert session.registry.status("docs").state == SyncState.STREAMING

    def test_already_applied_events_are_skipped(self, session):
        link = FakeLink({"a.txt": "a", "b.txt": "b"})
        session.last_seq = 5

        async def scenario():
            batch = ChangeBatch(
                "docs",
                [link.event("a.txt", ChangeOp.CREATE, 5), link.event("b.txt", ChangeOp.CREATE, 6)],
            )
            return await session.apply_batch(link, batch)

        assert asyncio.run(scenario()) == 1
        assert link.requests == ["b.txt"]
        assert session.last_seq == 6

    def test_gap_raises(self, session):
        link = FakeLink({"a.txt": "a"})
        session.last_seq = 10

        with pytest.raises(SequenceGap) as exc_info:
            asyncio.run(
                session.apply_batch(
                    link, ChangeBatch("docs", [link.event("a.txt", ChangeOp.CREATE, 15)])
                )
            )
        assert exc_info.value.expected == 11
        assert exc_info.value.received == 15
        assert session.last_seq == 10
        assert read_tree(session.store.root) == {}

    def test_delete_and_rename_events(self, session):
        write_tree(session.store.root, {"old.txt": "moving", "gone.txt": "bye"})
        link = FakeLink({"new.txt": "moving"})

        async def scenario():
            batch = ChangeBatch(
                "docs",
                [
                    link.event("new.txt", ChangeOp.RENAME, 1, source="old.txt"),
                    link.event("gone.txt", ChangeOp.DELETE, 2),
                ],
            )
            return await session.apply_batch(link, batch)

        assert asyncio.run(scenario()) == 2
        assert read_tree(session.store.root) == {"new.txt": b"moving"}
        # Renamed locally, nothing fetched
        assert link.requests == []

    def test_failed_file_is_recorded_and_sequence_advances(self, session):
        link = FakeLink({"bad.txt": "corrupt", "ok.txt": "fine"}, broken={"bad.txt"})

        async def scenario():
            batch = ChangeBatch(
                "docs",
                [
                    link.event("bad.txt", ChangeOp.CREATE, 1),
                    link.event("ok.txt", ChangeOp.CREATE, 2),
                ],
            )
            return await session.apply_batch(link, batch)

        assert asyncio.run(scenario()) == 2
        assert "bad.txt" in session.failed
        assert read_tree(session.store.root) == {"ok.txt": b"fine"}

    def test_vanished_file_is_skipped(self, session):
        link = FakeLink({"a.txt": "a"})
        event = link.event("a.txt", ChangeOp.CREATE, 1)
        del link.files["a.txt"]

        assert asyncio.run(session.apply_batch(link, ChangeBatch("docs", [event]))) == 1
        assert session.failed == {}
        assert read_tree(session.store.root) == {}


class TestHandleFrame:
    def test_heartbeat_ahead_is_a_gap(self, session):
        session.last_seq = 3
        with pytest.raises(SequenceGap):
            session.handle_frame(None, create_heartbeat("docs", 5))

    def test_heartbeat_in_step(self, session):
        session.last_seq = 5
        session.handle_frame(None, create_heartbeat("docs", 5))

    def test_link_error_is_raised(self, session):
        with pytest.raises(ConnectionLost):
            session.handle_frame(None, ConnectionLost("reset"))

    def test_error_frame_is_raised(self, session):
        frame = create_error(ModuleNotFound("unknown module"), module="docs")
        with pytest.raises(ModuleNotFound):
            session.handle_frame(None, frame)

    def test_parse_batch_rejects_garbage(self):
        with pytest.raises(ProtocolError):
            parse_batch({"module": "docs", "events": [{"path": "a"}]})


class TestFullSync:
    """Tests for NodeSession.full_sync."""

    def test_converges_to_remote_index(self, session):
        write_tree(
            session.store.root,
            {"same.txt": "unchanged", "stale.txt": "old", "extra.txt": "remove me"},
        )
        link = FakeLink({"same.txt": "unchanged", "stale.txt": "new", "added/deep.txt": "deep"})

        report = asyncio.run(session.full_sync(link, link.index(sequence=10)))

        assert read_tree(session.store.root) == link.files
        assert sorted(report.fetched) == ["added/deep.txt", "stale.txt"]
        assert report.deleted == ["extra.txt"]
        assert report.unchanged == 1
        assert report.success
        assert session.last_seq == 10

    def test_is_idempotent(self, session):
        link = FakeLink({"a.txt": "a", "b.txt": "b"})
        asyncio.run(session.full_sync(link, link.index()))
        link.requests.clear()

        report = asyncio.run(session.full_sync(link, link.index()))
        assert report.changed == 0
        assert link.requests == []

    def test_duplicate_content_is_copied_locally(self, session):
        write_tree(session.store.root, {"original.txt": "shared bytes"})
        link = FakeLink({"original.txt": "shared bytes", "duplicate.txt": "shared bytes"})

        report = asyncio.run(session.full_sync(link, link.index()))

        assert report.copied == ["duplicate.txt"]
        assert link.requests == []
        assert (session.store.root / "duplicate.txt").read_bytes() == b"shared bytes"

    def test_per_file_failures_do_not_abort(self, session):
        link = FakeLink({"bad.txt": "corrupt", "good.txt": "fine"}, broken={"bad.txt"})

        report = asyncio.run(session.full_sync(link, link.index()))

        assert report.fetched == ["good.txt"]
        assert list(report.failed) == ["bad.txt"]
        assert session.failed == report.failed
        assert not (session.store.root / "bad.txt").exists()

    def test_file_removed_after_index_is_skipped(self, session):
        link = FakeLink({"a.txt": "a", "b.txt": "b"})
        index = link.index()
        del link.files["b.txt"]

        report = asyncio.run(session.full_sync(link, index))
        assert report.fetched == ["a.txt"]
        assert report.failed == {}

    def test_network_failure_aborts(self, session):
        class DeadLink(FakeLink):
            async def fetch_content(self, module, path):
                raise ConnectionLost("reset by peer")
                yield b""

        link = DeadLink({"a.txt": "a"})
        with pytest.raises(ConnectionLost):
            asyncio.run(session.full_sync(link, link.index(sequence=4)))
        assert session.last_seq == 0


class TestSessionLifecycle:
    def test_non_retryable_error_stops_the_session(self, session):
        session.pool.acquire = AsyncMock(side_effect=AuthenticationFailed("wrong key"))

        asyncio.run(session.run())

        assert session.pool.acquire.await_count == 1
        assert session.state == SyncState.DISCONNECTED
        assert "wrong key" in session.registry.status("docs").last_error

    def test_transient_errors_are_retried_until_stopped(self, session):
        session.pool.acquire = AsyncMock(side_effect=ConnectionLost("refused"))

        async def scenario():
            session.start()
            assert await wait_for_condition(lambda: session.pool.acquire.await_count >= 3)
            await session.stop(grace=2)

        asyncio.run(scenario())
        assert session.state == SyncState.DISCONNECTED
        assert isinstance(session.last_error, ConnectionLost)

    def test_stop_before_start(self, session):
        asyncio.run(session.stop())
        assert session.stopping


class TestPeerLinkRouting:
    def test_full_inbox_drops_pushed_frames(self, trust, node_identity):
        link = PeerLink(PeerEndpoint("127.0.0.1", 1), node_identity, trust, inbox_size=1)

        async def scenario():
            inbox = asyncio.Queue(maxsize=1)
            link._inboxes["docs"] = inbox
            link._route(create_heartbeat("docs", 1))
            link._route(create_heartbeat("docs", 2))
            return inbox

        inbox = asyncio.run(scenario())
        assert inbox.qsize() == 1
        assert inbox.get_nowait().payload["sequence"] == 1

    def test_failure_reaches_full_inbox(self, trust, node_identity):
        link = PeerLink(PeerEndpoint("127.0.0.1", 1), node_identity, trust)

        async def scenario():
            inbox = asyncio.Queue(maxsize=1)
            inbox.put_nowait(create_heartbeat("docs", 1))
            link._inboxes["docs"] = inbox
            link._fail(ConnectionLost("reset"))
            return inbox.get_nowait()

        assert isinstance(asyncio.run(scenario()), ConnectionLost)
        assert not link.is_open

    def test_close_frame_ends_link(self, trust, node_identity):
        link = PeerLink(PeerEndpoint("127.0.0.1", 1), node_identity, trust)
        with pytest.raises(ConnectionLost):
            link._route(Frame(MessageKind.CLOSE, {"reason": "shutdown"}))

    def test_unsigned_payload_is_rejected(self, trust, node_identity, identity):
        link = PeerLink(PeerEndpoint("127.0.0.1", 1), node_identity, trust)
        link.peer = PeerInfo("root", identity.public_key_b64)

        signed = Frame(MessageKind.INDEX_RESPONSE, identity.sign_payload({"module": "docs"}))
        assert link.verified(signed)["module"] == "docs"
        with pytest.raises(ProtocolError):
            link.verified(Frame(MessageKind.INDEX_RESPONSE, {"module": "docs"}))


def fake_connect(public_key):
    async def connect(self):
        conn = AsyncMock()
        conn.closed = False
        self._conn = conn
        self.peer = PeerInfo("root", public_key)
        return self.peer

    return connect


class TestLinkPool:
    def test_links_are_shared_per_endpoint(self, monkeypatch, trust, node_identity, identity):
        monkeypatch.setattr(PeerLink, "connect", fake_connect(identity.public_key_b64))
        pool = LinkPool(node_identity, trust)
        endpoint = PeerEndpoint("127.0.0.1", 7000)

        async def scenario():
            first = await pool.acquire(endpoint)
            second = await pool.acquire(endpoint)
            assert first is second and first.refs == 2
            await pool.release(first)
            assert len(pool) == 1 and first.is_open
            await pool.release(second)
            return first

        link = asyncio.run(scenario())
        assert len(pool) == 0
        assert not link.is_open

    def test_shared_link_with_other_expected_key(
        self, monkeypatch, trust, node_identity, identity
    ):
        monkeypatch.setattr(PeerLink, "connect", fake_connect(identity.public_key_b64))
        pool = LinkPool(node_identity, trust)

        async def scenario():
            await pool.acquire(PeerEndpoint("127.0.0.1", 7000))
            with pytest.raises(AuthenticationFailed):
                await pool.acquire(
                    PeerEndpoint("127.0.0.1", 7000, public_key=node_identity.public_key_b64)
                )
            await pool.close()

        asyncio.run(scenario())


class TestSyncedModuleManager:
    def test_sessions_attach_to_registry(self, node_registry, node_identity, trust):
        manager = SyncedModuleManager(node_registry, node_identity, trust, backoff=FAST_BACKOFF)
        manager.pool.acquire = AsyncMock(side_effect=ConnectionLost("refused"))

        async def scenario():
            await manager.start()
            active = node_registry.is_active("docs")
            session = manager.get_session("docs")
            await node_registry.remove("docs")
            return active, session

        active, session = asyncio.run(scenario())

        assert active
        assert session.stopping
        assert manager.get_session("docs") is None
        assert manager.sessions() == []
        assert "docs" not in node_registry
