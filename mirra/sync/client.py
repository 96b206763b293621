"""
Sync Client

Node side of the protocol. A PeerLink is the authenticated connection to one
remote root, shared by every NodeSession replicating a module from that root.
Each NodeSession drives one synced module through the states

    Disconnected -> Handshaking -> IndexExchange -> FullSync -> Streaming
                                        (Reconciling <-> Streaming)

and reconnects with exponential backoff after transient failures.
"""

import asyncio
import hashlib
import time
from collections.abc import AsyncIterator
from typing import Any

import websockets
from websockets.exceptions import WebSocketException

from mirra.errors import (
    ApplyError,
    AuthenticationFailed,
    ConnectionLost,
    ContentMismatch,
    ContentNotFound,
    HandshakeTimeout,
    InvalidPath,
    MirraError,
    ProtocolError,
    SequenceGap,
)
from mirra.identity import IdentityManager, TrustStore
from mirra.logging import get_logger
from mirra.models import ChangeBatch, ChangeEvent, ChangeOp, ModuleIndex
from mirra.registry import Module, ModuleRegistry, PeerEndpoint, SyncState
from mirra.store import ContentStore
from mirra.sync.backoff import BackoffPolicy
from mirra.sync.handshake import DEFAULT_HANDSHAKE_TIMEOUT, PeerInfo, client_handshake
from mirra.sync.protocol import (
    Frame,
    MessageKind,
    create_close,
    create_content_request,
    create_index_request,
    create_subscribe,
    create_unsubscribe,
    new_request_id,
)
from mirra.sync.server import MAX_MESSAGE_SIZE
from mirra.sync.state import IndexDelta, SyncReport
from mirra.sync.transport import FramedConnection

logger = get_logger("sync.client")

DEFAULT_REQUEST_TIMEOUT = 60.0
DEFAULT_INBOX_SIZE = 256
DEFAULT_RECONCILE_INTERVAL = 300.0
DEFAULT_STOP_GRACE = 30.0
# How often a waiting session checks for a stop request
STOP_POLL_INTERVAL = 0.5

# Failures that only affect the file being applied
_FILE_ERRORS = (ApplyError, ContentNotFound, InvalidPath, OSError)


class PeerLink:
    """
    Authenticated connection to one remote root.

    A reader task routes responses to the request that asked for them (by
    ``request_id``) and pushed frames (change batches, heartbeats) to the
    inbox of the subscribed module. When the connection fails every waiter
    receives the error.
    """

    def __init__(
        self,
        endpoint: PeerEndpoint,
        identity: IdentityManager,
        trust: TrustStore,
        handshake_timeout: float = DEFAULT_HANDSHAKE_TIMEOUT,
        request_timeout: float = DEFAULT_REQUEST_TIMEOUT,
        inbox_size: int = DEFAULT_INBOX_SIZE,
    ):
        self.endpoint = endpoint
        self.identity = identity
        self.trust = trust
        self.handshake_timeout = handshake_timeout
        self.request_timeout = request_timeout
        self.inbox_size = inbox_size

        self.peer: PeerInfo | None = None
        self.refs = 0
        self._conn: FramedConnection | None = None
        self._reader: asyncio.Task | None = None
        self._pending: dict[str, asyncio.Queue] = {}
        self._inboxes: dict[str, asyncio.Queue] = {}
        self._error: MirraError | None = None

    @property
    def is_open(self) -> bool:
        return self._conn is not None and not self._conn.closed and self._error is None

    async def connect(self) -> PeerInfo:
        """
        Open the websocket and run the handshake.

        Raises:
            ConnectionLost: if the root is unreachable
            HandshakeTimeout: if the root does not complete the handshake
            AuthenticationFailed: if the root's key is not trusted
        """
        address = self.endpoint.address
        try:
            websocket = await asyncio.wait_for(
                websockets.connect(address, max_size=MAX_MESSAGE_SIZE),
                timeout=self.handshake_timeout,
            )
        except asyncio.TimeoutError as e:
            raise HandshakeTimeout(f"connecting to {address} timed out") from e
        except (OSError, WebSocketException) as e:
            raise ConnectionLost(f"cannot connect to {address}: {e}") from e

        conn = FramedConnection(websocket, peer=self.endpoint.endpoint_id)
        try:
            self.peer = await client_handshake(
                conn, self.identity, self.trust, self.endpoint, self.handshake_timeout
            )
        except BaseException:
            await conn.close()
            raise

        self._conn = conn
        self._reader = asyncio.create_task(self._read_loop())
        return self.peer

    async def close(self) -> None:
        conn, self._conn = self._conn, None
        if conn is not None and not conn.closed:
            try:
                await conn.send(create_close("bye"))
            except ConnectionLost:
                pass
            await conn.close()
        if self._reader is not None:
            self._reader.cancel()
            await asyncio.gather(self._reader, return_exceptions=True)
            self._reader = None
        self._fail(ConnectionLost(f"link to {self.endpoint.endpoint_id} closed"))

    # ------------------------------------------------------------------
    # Routing
    # ------------------------------------------------------------------

    async def _read_loop(self) -> None:
        assert self._conn is not None
        try:
            while True:
                frame = await self._conn.recv()
                self._route(frame)
        except MirraError as e:
            logger.info(f"Link to {self.endpoint.endpoint_id} failed: {e}")
            self._fail(e)
            await self._conn.close()

    def _route(self, frame: Frame) -> None:
        if frame.kind == MessageKind.CLOSE:
            raise ConnectionLost(
                f"{self.endpoint.endpoint_id} closed the link: {frame.payload.get('reason', '')}"
            )

        request_id = frame.request_id
        if request_id:
            queue = self._pending.get(request_id)
            if queue is None:
                logger.debug(f"Dropping {frame.kind.name} for finished request {request_id}")
                return
            queue.put_nowait(frame)
            return

        if frame.kind in (MessageKind.CHANGE_BATCH, MessageKind.HEARTBEAT, MessageKind.ERROR):
            module = frame.module
            inbox = self._inboxes.get(module) if module else None
            if inbox is None:
                if frame.kind == MessageKind.ERROR:
                    raise frame.to_exception()
                logger.debug(f"Dropping {frame.kind.name} for unsubscribed module {module}")
                return
            try:
                inbox.put_nowait(frame)
            except asyncio.QueueFull:
                # The session sees the gap and reconciles
                logger.warning(f"{module}: inbox full, dropping {frame.kind.name}")
            return

        raise ProtocolError(f"unexpected {frame.kind.name} frame from root")

    def _fail(self, error: MirraError) -> None:
        if self._error is None:
            self._error = error
        for queue in list(self._pending.values()) + list(self._inboxes.values()):
            try:
                queue.put_nowait(error)
            except asyncio.QueueFull:
                # Make room: the error must reach the consumer
                queue.get_nowait()
                queue.put_nowait(error)

    def _check_open(self) -> FramedConnection:
        if self._error is not None:
            raise self._error
        if self._conn is None:
            raise ConnectionLost(f"link to {self.endpoint.endpoint_id} is not connected")
        return self._conn

    async def _next(self, queue: asyncio.Queue) -> Frame:
        try:
            item = await asyncio.wait_for(queue.get(), timeout=self.request_timeout)
        except asyncio.TimeoutError as e:
            raise ConnectionLost(
                f"{self.endpoint.endpoint_id} did not answer within {self.request_timeout}s"
            ) from e
        if isinstance(item, MirraError):
            raise item
        return item

    def verified(self, frame: Frame) -> dict[str, Any]:
        """Payload of a frame signed by the root; ProtocolError if unsigned or forged."""
        assert self.peer is not None
        if not IdentityManager.verify_payload(self.peer.public_key, frame.payload):
            raise ProtocolError(
                f"bad signature on {frame.kind.name} from {self.endpoint.endpoint_id}"
            )
        return frame.payload

    # ------------------------------------------------------------------
    # Requests
    # ------------------------------------------------------------------

    async def request(self, frame: Frame) -> Frame:
        """Send a request and wait for its single response frame."""
        conn = self._check_open()
        request_id = frame.request_id
        assert request_id
        queue: asyncio.Queue = asyncio.Queue()
        self._pending[request_id] = queue
        try:
            await conn.send(frame)
            return await self._next(queue)
        finally:
            self._pending.pop(request_id, None)

    async def subscribe(self, module: str) -> asyncio.Queue:
        """
        Subscribe to a module's change stream.

        The inbox is registered before the request so no batch pushed right
        after the acknowledgement is lost.
        """
        self._check_open()
        inbox: asyncio.Queue = asyncio.Queue(maxsize=self.inbox_size)
        self._inboxes[module] = inbox
        try:
            (await self.request(create_subscribe(module, new_request_id()))).expect(MessageKind.OK)
        except BaseException:
            self._inboxes.pop(module, None)
            raise
        logger.debug(f"Subscribed to {module} on {self.endpoint.endpoint_id}")
        return inbox

    async def unsubscribe(self, module: str) -> None:
        if self._inboxes.pop(module, None) is None:
            return
        if self.is_open:
            try:
                await self._check_open().send(create_unsubscribe(module))
            except ConnectionLost:
                pass

    async def fetch_index(self, module: str) -> ModuleIndex:
        response = await self.request(create_index_request(module, new_request_id()))
        response.expect(MessageKind.INDEX_RESPONSE)
        try:
            index = ModuleIndex.from_dict(self.verified(response))
        except (KeyError, TypeError, ValueError) as e:
            raise ProtocolError(f"malformed index of {module}: {e}") from e
        if index.module != module:
            raise ProtocolError(f"asked for the index of {module}, got {index.module}")
        return index

    async def fetch_content(self, module: str, path: str) -> AsyncIterator[bytes]:
        """
        Stream a file from the root.

        Raises:
            ContentNotFound: if the root no longer has the file
            ContentMismatch: if the bytes do not hash to the signed fingerprint
        """
        conn = self._check_open()
        request_id = new_request_id()
        queue: asyncio.Queue = asyncio.Queue()
        self._pending[request_id] = queue
        hasher = hashlib.sha256()
        received = 0
        try:
            await conn.send(create_content_request(module, path, request_id))
            while True:
                frame = (await self._next(queue)).expect(MessageKind.CONTENT_RESPONSE)
                if frame.payload.get("offset") != received:
                    raise ProtocolError(f"content of {path} arrived out of order")
                hasher.update(frame.blob)
                received += len(frame.blob)
                if frame.blob:
                    yield frame.blob
                if frame.payload.get("final"):
                    payload = self.verified(frame)
                    break
        finally:
            self._pending.pop(request_id, None)

        if payload.get("path") != path or payload.get("module") != module:
            raise ProtocolError(f"content response for {path} names another file")
        if hasher.hexdigest() != payload.get("fingerprint") or received != payload.get("size"):
            raise ContentMismatch(f"{module}/{path}: received content does not match", path=path)


class LinkPool:
    """One shared PeerLink per endpoint, reference counted by sessions."""

    def __init__(self, identity: IdentityManager, trust: TrustStore, **link_options: Any):
        self.identity = identity
        self.trust = trust
        self.link_options = link_options
        self._links: dict[str, PeerLink] = {}
        self._locks: dict[str, asyncio.Lock] = {}

    async def acquire(self, endpoint: PeerEndpoint) -> PeerLink:
        key = endpoint.endpoint_id
        lock = self._locks.setdefault(key, asyncio.Lock())
        async with lock:
            link = self._links.get(key)
            if link is None or not link.is_open:
                link = PeerLink(endpoint, self.identity, self.trust, **self.link_options)
                await link.connect()
                self._links[key] = link
            elif endpoint.public_key and link.peer and link.peer.public_key != endpoint.public_key:
                raise AuthenticationFailed(
                    f"{key} presented key {link.peer.key_id}, expected another key",
                    endpoint=key,
                )
            link.refs += 1
            return link

    async def release(self, link: PeerLink) -> None:
        link.refs -= 1
        if link.refs > 0:
            return
        if self._links.get(link.endpoint.endpoint_id) is link:
            del self._links[link.endpoint.endpoint_id]
        await link.close()

    async def close(self) -> None:
        for link in list(self._links.values()):
            await link.close()
        self._links.clear()

    def __len__(self) -> int:
        return len(self._links)


class NodeSession:
    """
    Replicates one synced module from its root.

    :meth:`run` loops until :meth:`stop` is called or a non-retryable error
    (module not found, authentication failure) leaves the module
    Disconnected with the error recorded in the registry.
    """

    def __init__(
        self,
        module: Module,
        registry: ModuleRegistry,
        store: ContentStore,
        pool: LinkPool,
        backoff: BackoffPolicy | None = None,
        reconcile_interval: float = DEFAULT_RECONCILE_INTERVAL,
    ):
        assert module.peer is not None
        self.module = module
        self.name = module.name
        self.registry = registry
        self.store = store
        self.pool = pool
        self.backoff = backoff or BackoffPolicy()
        self.reconcile_interval = reconcile_interval

        self.state = SyncState.DISCONNECTED
        self.last_seq = 0
        self.last_error: MirraError | None = None
        self.last_report: SyncReport | None = None
        self.failed: dict[str, str] = {}
        self._attempt = 0
        self._stop = asyncio.Event()
        self._task: asyncio.Task | None = None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> asyncio.Task:
        self._task = asyncio.create_task(self.run())
        return self._task

    async def stop(self, grace: float = DEFAULT_STOP_GRACE) -> None:
        """
        Ask the session to stop and wait for it. The change being applied
        completes first; only a session stuck past ``grace`` is cancelled.
        """
        self._stop.set()
        task = self._task
        if task is None or task.done():
            return
        try:
            await asyncio.wait_for(asyncio.shield(task), timeout=grace)
        except asyncio.TimeoutError:
            logger.warning(f"{self.name}: did not stop within {grace}s, cancelling")
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)

    @property
    def stopping(self) -> bool:
        return self._stop.is_set()

    def _set_state(
        self, state: SyncState, error: MirraError | None = None, sequence: int | None = None
    ) -> None:
        if self.state != state:
            logger.info(f"{self.name}: {self.state.value} -> {state.value}")
        self.state = state
        if self.name in self.registry:
            self.registry.update_sync_state(
                self.name, state, error=str(error) if error else None, sequence=sequence
            )

    async def _sleep(self, delay: float) -> None:
        """Sleep that ends early on a stop request."""
        try:
            await asyncio.wait_for(self._stop.wait(), timeout=delay)
        except asyncio.TimeoutError:
            pass

    async def run(self) -> None:
        while not self.stopping:
            try:
                await self._connect_and_sync()
            except MirraError as e:
                self.last_error = e
                self._set_state(SyncState.DISCONNECTED, error=e)
                if not e.retryable:
                    logger.error(f"{self.name}: {e} (not retrying)")
                    return
            except OSError as e:
                # Local filesystem trouble, e.g. an unreadable module directory
                self.last_error = ApplyError(str(e))
                self._set_state(SyncState.DISCONNECTED, error=self.last_error)
            else:
                continue
            delay = self.backoff.calculate_delay(self._attempt)
            self._attempt += 1
            logger.warning(f"{self.name}: {self.last_error}; reconnecting in {delay:.1f}s")
            await self._sleep(delay)
        self._set_state(SyncState.DISCONNECTED)
        logger.info(f"{self.name}: session stopped")

    async def _connect_and_sync(self) -> None:
        assert self.module.peer is not None
        self._set_state(SyncState.HANDSHAKING)
        link = await self.pool.acquire(self.module.peer)
        try:
            self._set_state(SyncState.INDEX_EXCHANGE)
            inbox = await link.subscribe(self.name)
            index = await link.fetch_index(self.name)
            self._set_state(SyncState.FULL_SYNC)
            await self.full_sync(link, index)
            if self.stopping:
                return
            self._attempt = 0
            await self._stream(link, inbox)
        finally:
            await link.unsubscribe(self.name)
            await self.pool.release(link)

    async def sync_once(self) -> SyncReport:
        """Connect, run one full sync and disconnect."""
        assert self.module.peer is not None
        self._set_state(SyncState.HANDSHAKING)
        link = await self.pool.acquire(self.module.peer)
        try:
            self._set_state(SyncState.INDEX_EXCHANGE)
            index = await link.fetch_index(self.name)
            self._set_state(SyncState.FULL_SYNC)
            return await self.full_sync(link, index)
        finally:
            await self.pool.release(link)
            self._set_state(SyncState.DISCONNECTED, sequence=self.last_seq)

    # ------------------------------------------------------------------
    # Full sync
    # ------------------------------------------------------------------

    async def full_sync(self, link: PeerLink, index: ModuleIndex) -> SyncReport:
        """
        Make the local tree equal ``index``.

        Idempotent: files already matching are left alone. A file that
        cannot be applied is recorded in the report and retried by the next
        reconciliation; network failures abort the pass.
        """
        started = time.monotonic()
        self.store.ensure_root()
        local = await self.store.snapshot()
        delta = IndexDelta.compute(local, index)
        report = SyncReport(module=self.name, unchanged=delta.unchanged)
        if not delta.is_empty():
            logger.info(
                f"{self.name}: syncing {len(delta.fetch)} fetches, {len(delta.copy)} local copies, "
                f"{len(delta.delete)} deletions"
            )

        for entry, source in delta.copy:
            if self.stopping:
                break
            try:
                await self.store.apply(
                    entry.path,
                    ChangeOp.CREATE,
                    self.store.local_reader(source, entry.fingerprint),
                    fingerprint=entry.fingerprint,
                )
                report.copied.append(entry.path)
                continue
            except (ContentMismatch, OSError) as e:
                logger.debug(f"{self.name}: local copy of {entry.path} failed ({e}), fetching")
            await self._fetch_into(link, entry.path, entry.fingerprint, report)

        for entry in delta.fetch:
            if self.stopping:
                break
            await self._fetch_into(link, entry.path, entry.fingerprint, report)

        for path in delta.delete:
            if self.stopping:
                break
            try:
                await self.store.apply(path, ChangeOp.DELETE)
                report.deleted.append(path)
            except _FILE_ERRORS as e:
                report.failed[path] = str(e)
                logger.warning(f"{self.name}: failed to delete {path}: {e}")

        if not self.stopping:
            self.last_seq = index.sequence
        self.failed = dict(report.failed)
        report.duration_ms = int((time.monotonic() - started) * 1000)
        self.last_report = report
        logger.info(
            f"{self.name}: full sync done in {report.duration_ms}ms "
            f"({len(report.fetched)} fetched, {len(report.copied)} copied, "
            f"{len(report.deleted)} deleted, {report.unchanged} unchanged, "
            f"{len(report.failed)} failed)"
        )
        return report

    async def _fetch_into(
        self, link: PeerLink, path: str, fingerprint: str, report: SyncReport
    ) -> None:
        try:
            await self.store.apply(
                path,
                ChangeOp.CREATE,
                lambda: link.fetch_content(self.name, path),
                fingerprint=fingerprint,
            )
            report.fetched.append(path)
        except ContentNotFound:
            # Gone on the root since the index was taken
            logger.debug(f"{self.name}: {path} vanished on the root, skipping")
        except _FILE_ERRORS as e:
            report.failed[path] = str(e)
            logger.warning(f"{self.name}: failed to fetch {path}: {e}")

    async def reconcile(self, link: PeerLink) -> SyncReport:
        """Re-request the index and re-run the full sync diff on the open link."""
        self._set_state(SyncState.RECONCILING)
        index = await link.fetch_index(self.name)
        report = await self.full_sync(link, index)
        self._set_state(SyncState.STREAMING, sequence=self.last_seq)
        return report

    # ------------------------------------------------------------------
    # Streaming
    # ------------------------------------------------------------------

    async def _stream(self, link: PeerLink, inbox: asyncio.Queue) -> None:
        self._set_state(SyncState.STREAMING, sequence=self.last_seq)
        loop = asyncio.get_running_loop()
        next_reconcile = loop.time() + self.reconcile_interval

        while not self.stopping:
            remaining = next_reconcile - loop.time()
            if remaining <= 0:
                logger.debug(f"{self.name}: periodic reconciliation")
                await self.reconcile(link)
                next_reconcile = loop.time() + self.reconcile_interval
                continue

            try:
                item = await asyncio.wait_for(
                    inbox.get(), timeout=min(remaining, STOP_POLL_INTERVAL)
                )
            except asyncio.TimeoutError:
                continue

            try:
                self.handle_frame(link, item)
                if item.kind == MessageKind.CHANGE_BATCH:
                    batch = parse_batch(link.verified(item))
                    await self.apply_batch(link, batch)
            except SequenceGap as gap:
                logger.info(f"{self.name}: {gap}, reconciling")
                await self.reconcile(link)
                next_reconcile = loop.time() + self.reconcile_interval

    def handle_frame(self, link: PeerLink, item: Frame | MirraError) -> None:
        """
        Check a pushed frame. Raises the link's error, and SequenceGap for
        a heartbeat announcing events this session has not seen.
        """
        if isinstance(item, MirraError):
            raise item
        if item.kind == MessageKind.ERROR:
            raise item.to_exception()
        if item.kind == MessageKind.HEARTBEAT:
            sequence = int(item.payload.get("sequence", 0))
            if sequence > self.last_seq:
                raise SequenceGap(self.last_seq + 1, sequence)

    async def apply_batch(self, link: PeerLink, batch: ChangeBatch) -> int:
        """
        Apply a batch in sequence order.

        Events at or below the last applied sequence are already reflected
        and skipped.

        Returns:
            Number of events applied

        Raises:
            SequenceGap: if an event is missing before this batch
        """
        applied = 0
        for event in batch.events:
            if self.stopping:
                break
            if event.sequence <= self.last_seq:
                continue
            if event.sequence != self.last_seq + 1:
                raise SequenceGap(self.last_seq + 1, event.sequence)
            await self.apply_event(link, event)
            self.last_seq = event.sequence
            applied += 1
        if applied:
            self._set_state(SyncState.STREAMING, sequence=self.last_seq)
        return applied

    async def apply_event(self, link: PeerLink, event: ChangeEvent) -> None:
        """Materialize one event; per-file failures are recorded, not raised."""

        def reader():
            return link.fetch_content(self.name, event.path)

        try:
            changed = await self.store.apply(
                event.path,
                event.op,
                reader if event.op != ChangeOp.DELETE else None,
                fingerprint=event.fingerprint,
                source=event.source,
            )
            self.failed.pop(event.path, None)
            if changed:
                logger.info(
                    f"{self.name}: applied {event.op.value} {event.path} (#{event.sequence})"
                )
            else:
                logger.debug(f"{self.name}: {event.op.value} {event.path} already applied")
        except ContentNotFound:
            logger.debug(f"{self.name}: {event.path} vanished on the root, skipping")
        except _FILE_ERRORS as e:
            self.failed[event.path] = str(e)
            logger.warning(f"{self.name}: failed to apply {event.op.value} {event.path}: {e}")


class SyncedModuleManager:
    """
    Runs one NodeSession per synced module, sharing links per endpoint.
    """

    def __init__(
        self,
        registry: ModuleRegistry,
        identity: IdentityManager,
        trust: TrustStore,
        stores: dict[str, ContentStore] | None = None,
        backoff: BackoffPolicy | None = None,
        reconcile_interval: float = DEFAULT_RECONCILE_INTERVAL,
        **link_options: Any,
    ):
        self.registry = registry
        self.stores = stores if stores is not None else {}
        self.backoff = backoff or BackoffPolicy()
        self.reconcile_interval = reconcile_interval
        self.pool = LinkPool(identity, trust, **link_options)
        self._sessions: dict[str, NodeSession] = {}

    def store_for(self, module: Module) -> ContentStore:
        store = self.stores.get(module.name)
        if store is None:
            store = ContentStore(module.name, module.path)
            self.stores[module.name] = store
        return store

    def create_session(self, module: Module) -> NodeSession:
        return NodeSession(
            module,
            self.registry,
            self.store_for(module),
            self.pool,
            backoff=self.backoff,
            reconcile_interval=self.reconcile_interval,
        )

    async def start(self) -> None:
        for module in self.registry.list_synced():
            self.start_module(module)
        logger.info(f"Started {len(self._sessions)} node sessions")

    def start_module(self, module: Module) -> NodeSession:
        existing = self._sessions.get(module.name)
        if existing is not None and existing._task is not None and not existing._task.done():
            return existing

        session = self.create_session(module)
        session.start()
        self._sessions[module.name] = session

        async def stopper() -> None:
            await self.stop_module(module.name)

        self.registry.attach(module.name, stopper)
        return session

    async def stop_module(self, name: str) -> None:
        session = self._sessions.pop(name, None)
        if session is None:
            return
        await session.stop()
        self.registry.detach(name)

    async def stop(self) -> None:
        for name in list(self._sessions):
            await self.stop_module(name)
        await self.pool.close()
        logger.info("Node sessions stopped")

    def get_session(self, name: str) -> NodeSession | None:
        return self._sessions.get(name)

    def sessions(self) -> list[NodeSession]:
        return list(self._sessions.values())


def parse_batch(payload: dict[str, Any]) -> ChangeBatch:
    try:
        return ChangeBatch.from_dict(payload)
    except (KeyError, TypeError, ValueError) as e:
        raise ProtocolError(f"malformed change batch: {e}") from e
