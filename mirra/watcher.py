"""
Change Watcher

Turns filesystem notifications for a served module into coalesced, sequenced
batches of ChangeEvents. Notifications only mark paths dirty; when the tree
has been quiet for the debounce window the dirty paths are compared against
the last known index, so intermediate states are never emitted.

If the notification subscription is lost the watcher restarts it and emits a
reconciliation batch from a full re-scan instead of dropping changes.
"""

import asyncio
import os
import time
from collections.abc import AsyncIterator, Callable
from pathlib import Path, PurePosixPath
from typing import Any

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

from mirra.logging import get_logger
from mirra.models import ChangeBatch, ChangeEvent, ChangeOp, IndexEntry
from mirra.store import ContentStore, is_ignored

logger = get_logger("watcher")

DEFAULT_DEBOUNCE = 0.25
DEFAULT_MAX_DELAY = 2.0
DEFAULT_HEALTH_INTERVAL = 1.0
# Distinct dirty paths buffered before falling back to a full re-scan
DEFAULT_MAX_PENDING = 10_000


class _DirtyPathHandler(FileSystemEventHandler):
    """Forwards every watchdog event to the watcher as dirty paths."""

    def __init__(self, watcher: "ChangeWatcher"):
        super().__init__()
        self._watcher = watcher

    def on_any_event(self, event: FileSystemEvent) -> None:
        if event.event_type in ("opened", "closed_no_write"):
            return
        paths = [event.src_path]
        dest = getattr(event, "dest_path", "")
        if dest:
            paths.append(dest)
        self._watcher.notify_threadsafe(paths)


class ChangeWatcher:
    """
    Watches one module's directory tree.

    Iterate :meth:`batches` (or :meth:`events`) to consume changes; the
    iteration never ends on its own. Sequence numbers keep increasing across
    subscription restarts.
    """

    def __init__(
        self,
        store: ContentStore,
        debounce: float = DEFAULT_DEBOUNCE,
        max_delay: float = DEFAULT_MAX_DELAY,
        health_interval: float = DEFAULT_HEALTH_INTERVAL,
        max_pending: int = DEFAULT_MAX_PENDING,
        observer_factory: Callable[[], Any] = Observer,
    ):
        self.store = store
        self.module = store.module
        self.debounce = debounce
        self.max_delay = max_delay
        self.health_interval = health_interval
        self.max_pending = max_pending
        self._observer_factory = observer_factory

        self._sequence = 0
        self._known: dict[str, IndexEntry] | None = None
        self._dirty: set[str] = set()
        self._overflowed = False
        self._wake: asyncio.Event | None = None
        self._loop: asyncio.AbstractEventLoop | None = None
        self._observer: Any = None
        self._root_id: tuple[int, int] | None = None

    @property
    def sequence(self) -> int:
        """Sequence number of the last emitted event."""
        return self._sequence

    @property
    def is_running(self) -> bool:
        return self._observer is not None

    # ------------------------------------------------------------------
    # Subscription
    # ------------------------------------------------------------------

    def _stat_root(self) -> tuple[int, int] | None:
        try:
            st = os.stat(self.store.root)
        except OSError:
            return None
        return (st.st_dev, st.st_ino)

    def _start_observer(self) -> bool:
        self._stop_observer()
        observer = self._observer_factory()
        try:
            observer.schedule(_DirtyPathHandler(self), str(self.store.root), recursive=True)
            observer.start()
        except OSError as e:
            logger.warning(f"{self.module}: cannot watch {self.store.root}: {e}")
            return False
        self._observer = observer
        self._root_id = self._stat_root()
        logger.debug(f"{self.module}: watching {self.store.root}")
        return True

    def _stop_observer(self) -> None:
        observer, self._observer = self._observer, None
        if observer is None:
            return
        try:
            observer.stop()
            observer.join(timeout=2.0)
        except RuntimeError:
            # Never started
            pass

    def _subscription_lost(self) -> bool:
        if self._observer is None or not self._observer.is_alive():
            return True
        return self._stat_root() != self._root_id

    async def start(self) -> None:
        """Take the baseline index (first start only) and subscribe."""
        self._loop = asyncio.get_running_loop()
        self._wake = asyncio.Event()
        if self._known is None:
            index = await asyncio.to_thread(self.store.current_index)
            self._known = index.as_map()
            logger.info(f"{self.module}: baseline of {len(self._known)} files")
        self._start_observer()
        if self._overflowed:
            self._wake.set()

    def stop(self) -> None:
        self._stop_observer()

    def request_rescan(self) -> None:
        """Make the next batch a full re-scan against the last known index."""
        self._overflowed = True
        if self._wake is not None:
            self._wake.set()

    def notify_threadsafe(self, paths: list[str | bytes]) -> None:
        """Called from the observer thread."""
        loop = self._loop
        if loop is None or loop.is_closed():
            return
        try:
            loop.call_soon_threadsafe(self._mark_dirty, paths)
        except RuntimeError:
            # Loop shut down between the check and the call
            pass

    def _mark_dirty(self, paths: list[str | bytes]) -> None:
        for raw in paths:
            path = os.fsdecode(raw)
            rel = os.path.relpath(path, self.store.root)
            if rel == "." or rel.startswith(".."):
                continue
            rel = PurePosixPath(Path(rel)).as_posix()
            if is_ignored(rel):
                continue
            if len(self._dirty) >= self.max_pending:
                self._overflowed = True
                continue
            self._dirty.add(rel)
        if self._wake is not None and (self._dirty or self._overflowed):
            self._wake.set()

    # ------------------------------------------------------------------
    # Diffing
    # ------------------------------------------------------------------

    def _diff(
        self, old: dict[str, IndexEntry], new: dict[str, IndexEntry]
    ) -> list[ChangeEvent]:
        """Net events turning ``old`` into ``new``; renames matched by fingerprint."""
        deleted = [p for p in old if p not in new]
        created = [p for p in new if p not in old]
        modified = [p for p in new if p in old and old[p].fingerprint != new[p].fingerprint]

        renames: list[tuple[str, str]] = []
        unclaimed = {}
        for path in sorted(created):
            unclaimed.setdefault(new[path].fingerprint, []).append(path)
        for path in sorted(deleted):
            candidates = unclaimed.get(old[path].fingerprint)
            if candidates:
                renames.append((path, candidates.pop(0)))
        moved_from = {src for src, _ in renames}
        moved_to = {dst for _, dst in renames}

        events = []
        for src, dst in renames:
            entry = new[dst]
            events.append(
                ChangeEvent(
                    module=self.module,
                    path=dst,
                    op=ChangeOp.RENAME,
                    fingerprint=entry.fingerprint,
                    size=entry.size,
                    source=src,
                )
            )
        for path in sorted(created):
            if path in moved_to:
                continue
            entry = new[path]
            events.append(
                ChangeEvent(self.module, path, ChangeOp.CREATE, entry.fingerprint, entry.size)
            )
        for path in sorted(modified):
            entry = new[path]
            events.append(
                ChangeEvent(self.module, path, ChangeOp.MODIFY, entry.fingerprint, entry.size)
            )
        for path in sorted(deleted):
            if path in moved_from:
                continue
            events.append(ChangeEvent(self.module, path, ChangeOp.DELETE))
        return events

    def _collect(self, dirty: set[str]) -> list[ChangeEvent]:
        """Events for the given dirty paths, updating the known index."""
        known = self._known if self._known is not None else {}
        candidates: set[str] = set()
        for rel in dirty:
            full = self.store.root.joinpath(*PurePosixPath(rel).parts)
            prefix = rel + "/"
            candidates.update(p for p in known if p.startswith(prefix))
            if full.is_dir() and not full.is_symlink():
                for dirpath, dirnames, filenames in os.walk(full, followlinks=False):
                    dirnames[:] = [d for d in dirnames if not is_ignored(d)]
                    for filename in filenames:
                        sub = self.store.relative(Path(dirpath) / filename)
                        if not is_ignored(sub):
                            candidates.add(sub)
            else:
                candidates.add(rel)

        old = {p: known[p] for p in candidates if p in known}
        new = {}
        for rel in candidates:
            entry = self.store.entry(rel)
            if entry is not None:
                new[rel] = entry

        for path in old:
            known.pop(path, None)
        known.update(new)
        self._known = known
        return self._diff(old, new)

    def rescan(self) -> list[ChangeEvent]:
        """Full re-scan against the last known index (reconciliation batch)."""
        current = self.store.current_index().as_map()
        old = self._known if self._known is not None else {}
        events = self._diff(old, current)
        self._known = current
        return events

    def _sequence_events(self, events: list[ChangeEvent]) -> ChangeBatch:
        for event in events:
            self._sequence += 1
            event.sequence = self._sequence
        return ChangeBatch(module=self.module, events=events)

    # ------------------------------------------------------------------
    # Iteration
    # ------------------------------------------------------------------

    async def _wait_for_activity(self) -> bool:
        """Wait for notifications. Returns True if the subscription was lost."""
        assert self._wake is not None
        while True:
            try:
                await asyncio.wait_for(self._wake.wait(), timeout=self.health_interval)
                return False
            except asyncio.TimeoutError:
                if self._subscription_lost():
                    return True

    async def _settle(self) -> None:
        """Wait until no notification arrived for ``debounce`` seconds."""
        assert self._wake is not None
        started = time.monotonic()
        while True:
            self._wake.clear()
            remaining = self.max_delay - (time.monotonic() - started)
            if remaining <= 0:
                return
            try:
                await asyncio.wait_for(self._wake.wait(), timeout=min(self.debounce, remaining))
            except asyncio.TimeoutError:
                return

    async def next_batch(self) -> ChangeBatch:
        """Block until the next non-empty batch of changes is available."""
        if self._wake is None:
            await self.start()
        while True:
            lost = await self._wait_for_activity()
            if not lost:
                await self._settle()

            if lost or self._overflowed or self._subscription_lost():
                logger.warning(f"{self.module}: watch subscription lost, re-scanning")
                self._dirty.clear()
                self._overflowed = False
                self._start_observer()
                events = await asyncio.to_thread(self.rescan)
            else:
                dirty, self._dirty = self._dirty, set()
                self._wake.clear()
                events = await asyncio.to_thread(self._collect, dirty)

            if events:
                batch = self._sequence_events(events)
                logger.debug(
                    f"{self.module}: batch of {len(batch)} events "
                    f"({batch.first_sequence}..{batch.last_sequence})"
                )
                return batch

    async def batches(self) -> AsyncIterator[ChangeBatch]:
        """Infinite stream of change batches."""
        await self.start()
        try:
            while True:
                yield await self.next_batch()
        finally:
            self.stop()

    async def events(self) -> AsyncIterator[ChangeEvent]:
        """Infinite stream of individual change events."""
        async for batch in self.batches():
            for event in batch.events:
                yield event
