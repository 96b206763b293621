"""
Root Server

WebSocket server exposing the locally served modules to node peers: answers
index and content requests and pushes every watcher batch to the subscribed
peers.
"""

import asyncio
import hashlib
from collections.abc import Iterator
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

import websockets

from mirra.errors import ConnectionLost, ContentNotFound, MirraError, ModuleNotFound, ProtocolError
from mirra.identity import IdentityManager
from mirra.logging import get_logger
from mirra.models import ChangeBatch
from mirra.registry import Module, ModuleRegistry
from mirra.store import ContentStore
from mirra.sync.handshake import DEFAULT_HANDSHAKE_TIMEOUT, PeerInfo, server_handshake
from mirra.sync.protocol import (
    HEADER,
    MAX_BLOB_SIZE,
    MAX_META_SIZE,
    Frame,
    MessageKind,
    create_content_chunk,
    create_content_final,
    create_error,
    create_heartbeat,
    create_index_response,
    create_ok,
)
from mirra.sync.transport import FramedConnection
from mirra.watcher import ChangeWatcher

logger = get_logger("sync.server")

DEFAULT_OUTBOX_SIZE = 64
DEFAULT_STALL_TIMEOUT = 5.0
DEFAULT_HEARTBEAT_INTERVAL = 15.0
MAX_MESSAGE_SIZE = HEADER.size + MAX_META_SIZE + MAX_BLOB_SIZE
# Pause before restarting a failed watcher
WATCH_RETRY_DELAY = 1.0


class PeerOutbox:
    """
    Bounded queue of frames for one subscription of one peer, drained by a
    pump task that writes them to the peer's connection.

    Producers never wait on a peer: :meth:`submit` queues a frame or, when
    the queue is full, leaves it to a per-peer stall task that waits up to
    ``stall_timeout`` for room. Frames submitted while that task is pending
    are dropped; the peer sees the gap and reconciles.
    """

    def __init__(
        self,
        conn: FramedConnection,
        module: str,
        maxsize: int = DEFAULT_OUTBOX_SIZE,
        stall_timeout: float = DEFAULT_STALL_TIMEOUT,
    ):
        self.conn = conn
        self.module = module
        self.stall_timeout = stall_timeout
        self.queue: asyncio.Queue[Frame] = asyncio.Queue(maxsize=maxsize)
        self.dropped = 0
        self._task: asyncio.Task | None = None
        self._stall: asyncio.Task | None = None

    @property
    def closed(self) -> bool:
        return self.conn.closed or (self._task is not None and self._task.done())

    @property
    def lagging(self) -> bool:
        """True while a frame is waiting for room in the full queue."""
        return self._stall is not None and not self._stall.done()

    def start(self) -> None:
        self._task = asyncio.create_task(self._pump())

    def submit(self, frame: Frame) -> bool:
        """
        Hand a frame to this peer without waiting.

        Returns:
            True if the frame was queued right away
        """
        if self.lagging:
            self.dropped += 1
            logger.debug(f"{self.module}: {self.conn.peer} is lagging, dropping {frame.kind.name}")
            return False
        try:
            self.queue.put_nowait(frame)
            return True
        except asyncio.QueueFull:
            self._stall = asyncio.create_task(self.offer(frame))
            return False

    async def offer(self, frame: Frame) -> bool:
        """
        Enqueue a frame, waiting at most ``stall_timeout`` for room.

        Returns:
            False if the frame was dropped for this peer
        """
        try:
            await asyncio.wait_for(self.queue.put(frame), timeout=self.stall_timeout)
            return True
        except asyncio.TimeoutError:
            self.dropped += 1
            logger.warning(
                f"{self.module}: outbox of {self.conn.peer} full for {self.stall_timeout}s, "
                f"dropping {frame.kind.name}"
            )
            return False

    def offer_nowait(self, frame: Frame) -> bool:
        if self.lagging:
            return False
        try:
            self.queue.put_nowait(frame)
            return True
        except asyncio.QueueFull:
            return False

    async def _pump(self) -> None:
        try:
            while True:
                frame = await self.queue.get()
                await self.conn.send(frame)
        except ConnectionLost:
            logger.debug(f"{self.module}: pump to {self.conn.peer} stopped, connection lost")

    async def close(self) -> None:
        for task in (self._stall, self._task):
            if task is not None:
                task.cancel()
                await asyncio.gather(task, return_exceptions=True)
        self._stall = None
        self._task = None


@dataclass
class ServedModule:
    """Runtime state of one module exposed by this root."""

    module: Module
    store: ContentStore
    watcher: ChangeWatcher
    subscribers: dict[str, PeerOutbox] = field(default_factory=dict)
    # Highest sequence offered to every subscriber
    delivered_seq: int = 0
    task: asyncio.Task | None = None

    @property
    def name(self) -> str:
        return self.module.name


@dataclass
class ConnectedPeer:
    """Information about a connected node."""

    peer_id: str
    info: PeerInfo
    conn: FramedConnection
    connected_at: datetime = field(default_factory=datetime.now)
    last_activity: datetime = field(default_factory=datetime.now)
    subscriptions: set[str] = field(default_factory=set)
    tasks: set[asyncio.Task] = field(default_factory=set)


class RootServer:
    """
    Serves modules to node peers.

    Each served module runs a watcher task whose batches are handed to
    every subscribed peer's outbox. Delivery is independent per peer: a
    full outbox waits up to ``stall_timeout`` on its own, never holding up
    the other peers, and a peer that misses batches recovers by reconciling.
    """

    def __init__(
        self,
        identity: IdentityManager,
        registry: ModuleRegistry,
        host: str = "0.0.0.0",
        port: int = 6007,
        stores: dict[str, ContentStore] | None = None,
        handshake_timeout: float = DEFAULT_HANDSHAKE_TIMEOUT,
        outbox_size: int = DEFAULT_OUTBOX_SIZE,
        stall_timeout: float = DEFAULT_STALL_TIMEOUT,
        heartbeat_interval: float = DEFAULT_HEARTBEAT_INTERVAL,
        watcher_options: dict[str, Any] | None = None,
    ):
        self.identity = identity
        self.registry = registry
        self.host = host
        self.port = port
        self.stores = stores if stores is not None else {}
        self.handshake_timeout = handshake_timeout
        self.outbox_size = outbox_size
        self.stall_timeout = stall_timeout
        self.heartbeat_interval = heartbeat_interval
        self.watcher_options = watcher_options or {}

        self._modules: dict[str, ServedModule] = {}
        self._peers: dict[str, ConnectedPeer] = {}
        self._server = None
        self._heartbeat_task: asyncio.Task | None = None
        self._running = False
        self._next_peer = 0

        logger.info(f"RootServer initialized on port {port}")

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Start watching every served module and listen for nodes."""
        if self._running:
            logger.warning("Server already running")
            return

        for module in self.registry.list_served():
            await self.add_module(module)

        self._server = await websockets.serve(
            self._handle_connection,
            self.host,
            self.port,
            max_size=MAX_MESSAGE_SIZE,
        )
        sockets = getattr(self._server, "sockets", None) or []
        if sockets:
            self.port = sockets[0].getsockname()[1]
        self._heartbeat_task = asyncio.create_task(self._heartbeat_loop())
        self._running = True
        logger.info(f"Root server listening on {self.host}:{self.port}")

    async def stop(self) -> None:
        if not self._running:
            return
        self._running = False

        if self._heartbeat_task is not None:
            self._heartbeat_task.cancel()
            await asyncio.gather(self._heartbeat_task, return_exceptions=True)
            self._heartbeat_task = None

        for name in list(self._modules):
            await self.remove_module(name)

        for peer in list(self._peers.values()):
            await peer.conn.close()

        if self._server is not None:
            self._server.close()
            await self._server.wait_closed()
            self._server = None

        logger.info("Root server stopped")

    @property
    def is_running(self) -> bool:
        return self._running

    # ------------------------------------------------------------------
    # Served modules
    # ------------------------------------------------------------------

    def store_for(self, module: Module) -> ContentStore:
        store = self.stores.get(module.name)
        if store is None:
            store = ContentStore(module.name, module.path)
            self.stores[module.name] = store
        return store

    async def add_module(self, module: Module) -> ServedModule:
        """Start serving ``module``; a no-op if it is already served."""
        existing = self._modules.get(module.name)
        if existing is not None:
            return existing

        store = self.store_for(module)
        store.ensure_root()
        served = ServedModule(
            module=module,
            store=store,
            watcher=ChangeWatcher(store, **self.watcher_options),
        )
        await served.watcher.start()
        served.delivered_seq = served.watcher.sequence
        served.task = asyncio.create_task(self._watch(served))
        self._modules[module.name] = served
        logger.info(f"Serving module {module.name} from {module.path}")
        return served

    async def remove_module(self, name: str) -> None:
        served = self._modules.pop(name, None)
        if served is None:
            return
        if served.task is not None:
            served.task.cancel()
            await asyncio.gather(served.task, return_exceptions=True)
        served.watcher.stop()
        for outbox in list(served.subscribers.values()):
            await outbox.close()
        served.subscribers.clear()
        logger.info(f"Stopped serving module {name}")

    def get_served(self, name: str) -> ServedModule:
        served = self._modules.get(name)
        if served is None:
            raise ModuleNotFound(f"module {name!r} is not served here", module=name)
        return served

    def served_names(self) -> list[str]:
        return sorted(self._modules)

    async def _watch(self, served: ServedModule) -> None:
        while True:
            try:
                async for batch in served.watcher.batches():
                    await self.fan_out(served, batch)
            except Exception:
                logger.exception(f"{served.name}: watcher failed, restarting with a re-scan")
                served.watcher.request_rescan()
                await asyncio.sleep(WATCH_RETRY_DELAY)

    async def fan_out(self, served: ServedModule, batch: ChangeBatch) -> int:
        """
        Hand a batch to every subscriber without waiting on any of them.

        Returns:
            Number of peers the batch was queued for right away
        """
        frame = Frame(MessageKind.CHANGE_BATCH, self.identity.sign_payload(batch.to_dict()))
        delivered = lagging = 0
        for peer_id, outbox in list(served.subscribers.items()):
            if outbox.closed:
                served.subscribers.pop(peer_id, None)
                continue
            if outbox.submit(frame):
                delivered += 1
            else:
                lagging += 1
        served.delivered_seq = max(served.delivered_seq, batch.last_sequence)
        logger.debug(
            f"{served.name}: batch {batch.first_sequence}..{batch.last_sequence} "
            f"queued for {delivered} peers, {lagging} lagging"
        )
        return delivered

    async def _heartbeat_loop(self) -> None:
        while True:
            await asyncio.sleep(self.heartbeat_interval)
            self.send_heartbeats()

    def send_heartbeats(self) -> None:
        """Queue a heartbeat behind pending batches of every subscription."""
        for served in self._modules.values():
            frame = create_heartbeat(served.name, served.delivered_seq)
            for outbox in list(served.subscribers.values()):
                outbox.offer_nowait(frame)

    # ------------------------------------------------------------------
    # Connections
    # ------------------------------------------------------------------

    async def _handle_connection(self, websocket) -> None:
        """Handle a new WebSocket connection."""
        address = getattr(websocket, "remote_address", None)
        label = f"{address[0]}:{address[1]}" if address else "unknown"
        conn = FramedConnection(websocket, peer=label)

        try:
            info = await server_handshake(conn, self.identity, self.handshake_timeout)
        except MirraError as e:
            logger.warning(f"Handshake with {label} failed: {e}")
            await conn.close()
            return

        self._next_peer += 1
        peer = ConnectedPeer(peer_id=f"{label}#{self._next_peer}", info=info, conn=conn)
        self._peers[peer.peer_id] = peer
        logger.info(f"Peer connected: {info.name} ({info.key_id}) from {label}")

        try:
            while True:
                frame = await conn.recv()
                peer.last_activity = datetime.now()
                if frame.kind == MessageKind.CLOSE:
                    break
                await self._dispatch(peer, frame)
        except ConnectionLost:
            pass
        except ProtocolError as e:
            logger.warning(f"Protocol error from {label}: {e}")
            try:
                await conn.send(create_error(e))
            except ConnectionLost:
                pass
        finally:
            await self._drop_peer(peer)

    async def _drop_peer(self, peer: ConnectedPeer) -> None:
        self._peers.pop(peer.peer_id, None)
        for name in list(peer.subscriptions):
            await self._unsubscribe(peer, name)
        for task in list(peer.tasks):
            task.cancel()
        await asyncio.gather(*peer.tasks, return_exceptions=True)
        await peer.conn.close()
        logger.info(f"Peer disconnected: {peer.info.name} ({peer.peer_id})")

    async def _dispatch(self, peer: ConnectedPeer, frame: Frame) -> None:
        handlers = {
            MessageKind.SUBSCRIBE: self._handle_subscribe,
            MessageKind.UNSUBSCRIBE: self._handle_unsubscribe,
            MessageKind.INDEX_REQUEST: self._handle_index_request,
            MessageKind.CONTENT_REQUEST: self._handle_content_request,
        }
        handler = handlers.get(frame.kind)
        if handler is None:
            raise ProtocolError(f"unexpected {frame.kind.name} frame from a node")

        if frame.kind in (MessageKind.INDEX_REQUEST, MessageKind.CONTENT_REQUEST):
            # Long-running; keep reading other requests meanwhile
            task = asyncio.create_task(self._run_request(handler, peer, frame))
            peer.tasks.add(task)
            task.add_done_callback(peer.tasks.discard)
        else:
            await self._run_request(handler, peer, frame)

    async def _run_request(self, handler, peer: ConnectedPeer, frame: Frame) -> None:
        try:
            await handler(peer, frame)
        except ConnectionLost:
            pass
        except MirraError as e:
            logger.debug(f"Request {frame.kind.name} from {peer.peer_id} failed: {e}")
            await self._send_error(peer, e, frame)
        except Exception as e:
            logger.exception(f"Request {frame.kind.name} from {peer.peer_id} crashed")
            await self._send_error(peer, MirraError(f"internal error: {e}"), frame)

    async def _send_error(self, peer: ConnectedPeer, error: MirraError, frame: Frame) -> None:
        try:
            await peer.conn.send(create_error(error, frame.request_id, frame.module))
        except ConnectionLost:
            pass

    async def _handle_subscribe(self, peer: ConnectedPeer, frame: Frame) -> None:
        served = self.get_served(str(frame.module))
        old = served.subscribers.pop(peer.peer_id, None)
        if old is not None:
            await old.close()

        outbox = PeerOutbox(peer.conn, served.name, self.outbox_size, self.stall_timeout)
        outbox.start()
        served.subscribers[peer.peer_id] = outbox
        peer.subscriptions.add(served.name)
        await peer.conn.send(
            create_ok(frame.request_id, module=served.name, sequence=served.watcher.sequence)
        )
        logger.info(f"{peer.info.name} subscribed to {served.name}")

    async def _handle_unsubscribe(self, peer: ConnectedPeer, frame: Frame) -> None:
        await self._unsubscribe(peer, str(frame.module))

    async def _unsubscribe(self, peer: ConnectedPeer, name: str) -> None:
        peer.subscriptions.discard(name)
        served = self._modules.get(name)
        if served is None:
            return
        outbox = served.subscribers.pop(peer.peer_id, None)
        if outbox is not None:
            await outbox.close()

    async def _handle_index_request(self, peer: ConnectedPeer, frame: Frame) -> None:
        served = self.get_served(str(frame.module))
        # Read before scanning: the index reflects at least this sequence
        sequence = served.watcher.sequence
        index = await served.store.snapshot(sequence=sequence)
        response = create_index_response(index, str(frame.request_id))
        response.payload = self.identity.sign_payload(response.payload)
        await peer.conn.send(response)
        logger.debug(
            f"Sent index of {served.name} ({len(index)} files, seq {sequence}) to {peer.peer_id}"
        )

    async def _handle_content_request(self, peer: ConnectedPeer, frame: Frame) -> None:
        served = self.get_served(str(frame.module))
        path = str(frame.payload.get("path", ""))
        request_id = str(frame.request_id)
        served.store.resolve(path)

        chunks = served.store.read_chunks(path)
        try:
            await self._stream_content(peer, served, path, request_id, chunks)
        except OSError as e:
            raise ContentNotFound(f"{served.name}/{path} is not available: {e}", path=path) from e

    async def _stream_content(
        self,
        peer: ConnectedPeer,
        served: ServedModule,
        path: str,
        request_id: str,
        chunks: Iterator[bytes],
    ) -> None:
        hasher = hashlib.sha256()
        offset = 0
        current = await asyncio.to_thread(next, chunks, None)
        while True:
            chunk = current or b""
            following = await asyncio.to_thread(next, chunks, None) if current else None
            hasher.update(chunk)
            if following is None:
                final = create_content_final(
                    request_id,
                    served.name,
                    path,
                    offset,
                    chunk,
                    hasher.hexdigest(),
                    offset + len(chunk),
                )
                final.payload = self.identity.sign_payload(final.payload)
                await peer.conn.send(final)
                return
            await peer.conn.send(create_content_chunk(request_id, offset, chunk))
            offset += len(chunk)
            current = following

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    def get_peers(self) -> list[ConnectedPeer]:
        return list(self._peers.values())

    @property
    def peer_count(self) -> int:
        return len(self._peers)
