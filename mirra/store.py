"""
Content Store

Content-addressed view of a module's backing directory. Computes manifests,
reads content in chunks and applies changes atomically: every write goes to a
temporary file in the target directory and is moved into place with
``os.replace``, so a reader never observes a half-written file.
"""

import asyncio
import hashlib
import os
import shutil
import stat
import tempfile
import threading
from collections.abc import AsyncIterator, Callable, Iterator
from contextlib import aclosing
from pathlib import Path, PurePosixPath

from mirra.errors import ApplyError, ContentMismatch, InvalidPath
from mirra.logging import get_logger
from mirra.models import ChangeOp, IndexEntry, ModuleIndex

logger = get_logger("store")

MIRRA_DIR = ".mirra"
TEMP_PREFIX = ".mirra-tmp-"
CHUNK_SIZE = 256 * 1024

# Attempts to get a stable fingerprint of a file that is being written to
_STABLE_READ_ATTEMPTS = 3

ContentReader = Callable[[], AsyncIterator[bytes]]


def compute_fingerprint(data: bytes) -> str:
    """SHA-256 hex digest of ``data``."""
    return hashlib.sha256(data).hexdigest()


def fingerprint_file(path: Path, chunk_size: int = CHUNK_SIZE) -> tuple[str, int]:
    """Stream a file through SHA-256. Returns (fingerprint, size)."""
    hasher = hashlib.sha256()
    size = 0
    with open(path, "rb") as f:
        while chunk := f.read(chunk_size):
            hasher.update(chunk)
            size += len(chunk)
    return hasher.hexdigest(), size


def is_ignored(rel_path: str) -> bool:
    """Paths that never take part in indexing, watching or syncing."""
    parts = PurePosixPath(rel_path).parts
    if not parts:
        return True
    return MIRRA_DIR in parts or parts[-1].startswith(TEMP_PREFIX)


class ContentStore:
    """
    One module's files on disk.

    Mutations go through :meth:`apply`, which holds the per-module lock so at
    most one change is materialized at a time for this module.
    """

    def __init__(self, module: str, root: Path, chunk_size: int = CHUNK_SIZE):
        self.module = module
        self.root = Path(root)
        self.chunk_size = chunk_size
        self.lock = asyncio.Lock()
        # path -> (size, mtime_ns, fingerprint); shared with watcher threads
        self._cache: dict[str, tuple[int, int, str]] = {}
        self._cache_lock = threading.Lock()

    def ensure_root(self) -> None:
        self.root.mkdir(parents=True, exist_ok=True)

    # ------------------------------------------------------------------
    # Fingerprint cache
    # ------------------------------------------------------------------

    def _cached(self, rel_path: str) -> tuple[int, int, str] | None:
        with self._cache_lock:
            return self._cache.get(rel_path)

    def _remember(self, rel_path: str, value: tuple[int, int, str]) -> None:
        with self._cache_lock:
            self._cache[rel_path] = value

    def _forget(self, rel_path: str) -> tuple[int, int, str] | None:
        with self._cache_lock:
            return self._cache.pop(rel_path, None)

    def _prune_cache(self, present: set[str]) -> None:
        with self._cache_lock:
            for stale in [p for p in self._cache if p not in present]:
                del self._cache[stale]

    # ------------------------------------------------------------------
    # Paths
    # ------------------------------------------------------------------

    def resolve(self, rel_path: str) -> Path:
        """
        Map a module-relative POSIX path onto the filesystem.

        Raises:
            InvalidPath: for absolute paths, ``..`` segments or ignored names
        """
        if not rel_path or "\\" in rel_path or "\x00" in rel_path:
            raise InvalidPath(f"invalid path {rel_path!r}", path=rel_path)
        pure = PurePosixPath(rel_path)
        if pure.is_absolute() or any(part in ("..", ".") for part in pure.parts):
            raise InvalidPath(f"path escapes module root: {rel_path!r}", path=rel_path)
        if is_ignored(rel_path):
            raise InvalidPath(f"reserved path {rel_path!r}", path=rel_path)
        return self.root.joinpath(*pure.parts)

    def relative(self, path: Path) -> str:
        return PurePosixPath(Path(path).relative_to(self.root)).as_posix()

    # ------------------------------------------------------------------
    # Reading
    # ------------------------------------------------------------------

    def list_files(self) -> list[str]:
        """Relative paths of every regular file, sorted. Symlinks are skipped."""
        if not self.root.is_dir():
            return []

        found = []
        for dirpath, dirnames, filenames in os.walk(self.root, followlinks=False):
            dirnames[:] = [d for d in dirnames if d != MIRRA_DIR]
            for filename in filenames:
                if filename.startswith(TEMP_PREFIX):
                    continue
                full = Path(dirpath) / filename
                try:
                    st = full.lstat()
                except FileNotFoundError:
                    continue
                if stat.S_ISREG(st.st_mode):
                    found.append(self.relative(full))
        return sorted(found)

    def entry(self, rel_path: str) -> IndexEntry | None:
        """
        Fingerprint one file, reusing the cached digest while size and
        mtime are unchanged. Returns None if the file does not exist.
        """
        path = self.root.joinpath(*PurePosixPath(rel_path).parts)
        for _ in range(_STABLE_READ_ATTEMPTS):
            try:
                before = path.lstat()
            except FileNotFoundError:
                self._forget(rel_path)
                return None
            if not stat.S_ISREG(before.st_mode):
                self._forget(rel_path)
                return None

            cached = self._cached(rel_path)
            if cached and cached[0] == before.st_size and cached[1] == before.st_mtime_ns:
                return IndexEntry(rel_path, cached[2], cached[0])

            try:
                fingerprint, size = fingerprint_file(path, self.chunk_size)
                after = path.lstat()
            except FileNotFoundError:
                self._forget(rel_path)
                return None

            # Re-read if the file changed while it was being hashed
            if after.st_size == size and after.st_mtime_ns == before.st_mtime_ns:
                self._remember(rel_path, (size, after.st_mtime_ns, fingerprint))
                return IndexEntry(rel_path, fingerprint, size)

        logger.debug(f"{self.module}: {rel_path} kept changing while hashing")
        return IndexEntry(rel_path, fingerprint, size)

    def current_index(self, sequence: int = 0) -> ModuleIndex:
        """
        Compute a fresh manifest of the module.

        The directory listing is taken first, then each listed file is
        fingerprinted; files that vanish in between are left out.
        """
        listing = self.list_files()
        entries = []
        for rel_path in listing:
            entry = self.entry(rel_path)
            if entry is not None:
                entries.append(entry)

        self._prune_cache(set(listing))

        return ModuleIndex(module=self.module, entries=entries, sequence=sequence)

    async def snapshot(self, sequence: int = 0) -> ModuleIndex:
        """:meth:`current_index` off the event loop, serialized with writes."""
        async with self.lock:
            return await asyncio.to_thread(self.current_index, sequence)

    def read_chunks(self, rel_path: str) -> Iterator[bytes]:
        """Yield a file's content in ``chunk_size`` pieces."""
        path = self.resolve(rel_path)
        with open(path, "rb") as f:
            while chunk := f.read(self.chunk_size):
                yield chunk

    def local_reader(self, rel_path: str, fingerprint: str | None = None) -> ContentReader:
        """
        Content reader backed by another file of this module.

        Used to deduplicate: identical content already on disk is copied
        instead of transferred. If ``fingerprint`` is given the copied bytes
        must hash to it.
        """

        async def reader() -> AsyncIterator[bytes]:
            hasher = hashlib.sha256()
            chunks = self.read_chunks(rel_path)
            try:
                while (chunk := await asyncio.to_thread(next, chunks, None)) is not None:
                    hasher.update(chunk)
                    yield chunk
            finally:
                chunks.close()
            if fingerprint is not None and hasher.hexdigest() != fingerprint:
                raise ContentMismatch(
                    f"local copy source {rel_path} no longer matches", path=rel_path
                )

        return reader

    # ------------------------------------------------------------------
    # Mutation
    # ------------------------------------------------------------------

    async def apply(
        self,
        path: str,
        op: ChangeOp,
        content_reader: ContentReader | None = None,
        *,
        fingerprint: str | None = None,
        source: str | None = None,
    ) -> bool:
        """
        Materialize one change.

        Hashing and disk writes run in worker threads while the module lock
        is held, so the event loop keeps serving other peers.

        Args:
            path: Module-relative target path
            op: Kind of change
            content_reader: Zero-argument callable returning an async iterator
                of content chunks; required for create/modify and used as the
                fallback of a rename whose source is missing
            fingerprint: Expected fingerprint of the target content. A file
                already holding it is left untouched, and written content
                must hash to it.
            source: Old path of a rename

        Returns:
            True if the disk changed, False if the change was already reflected

        Raises:
            ContentMismatch: if written content does not hash to ``fingerprint``
        """
        async with self.lock:
            if op in (ChangeOp.CREATE, ChangeOp.MODIFY):
                return await self._write(path, content_reader, fingerprint)
            if op == ChangeOp.DELETE:
                return await asyncio.to_thread(self._delete, path)
            if op == ChangeOp.RENAME:
                if source is None:
                    raise ApplyError("rename without a source path", path=path)
                return await self._rename(source, path, fingerprint, content_reader)
            raise ApplyError(f"unsupported operation {op}", path=path)

    async def _write(
        self,
        rel_path: str,
        content_reader: ContentReader | None,
        fingerprint: str | None,
    ) -> bool:
        target = self.resolve(rel_path)

        if fingerprint is not None:
            current = await asyncio.to_thread(self.entry, rel_path)
            if current is not None and current.fingerprint == fingerprint:
                return False

        if content_reader is None:
            raise ApplyError(f"no content available for {rel_path}", path=rel_path)

        await asyncio.to_thread(self._prepare_target, target)

        fd, tmp_name = tempfile.mkstemp(prefix=TEMP_PREFIX, dir=target.parent)
        tmp = Path(tmp_name)
        hasher = hashlib.sha256()
        size = 0
        try:
            with os.fdopen(fd, "wb") as f:
                async with aclosing(content_reader()) as chunks:
                    async for chunk in chunks:
                        await asyncio.to_thread(_write_chunk, f, hasher, chunk)
                        size += len(chunk)
                await asyncio.to_thread(_sync_file, f)

            digest = hasher.hexdigest()
            if fingerprint is not None and digest != fingerprint:
                raise ContentMismatch(
                    f"{self.module}/{rel_path}: wrote {digest[:12]}, expected {fingerprint[:12]}",
                    path=rel_path,
                )
            st = await asyncio.to_thread(_replace, tmp, target)
        except BaseException:
            tmp.unlink(missing_ok=True)
            raise

        self._remember(rel_path, (size, st.st_mtime_ns, digest))
        logger.debug(f"{self.module}: wrote {rel_path} ({size} bytes)")
        return True

    def _delete(self, rel_path: str) -> bool:
        target = self.resolve(rel_path)
        self._forget(rel_path)

        if target.is_dir() and not target.is_symlink():
            logger.debug(f"{self.module}: not deleting directory {rel_path}")
            return False
        try:
            target.unlink()
        except FileNotFoundError:
            return False

        self._prune_empty_parents(target)
        logger.debug(f"{self.module}: deleted {rel_path}")
        return True

    def _move(self, source: str, rel_path: str, fingerprint: str | None) -> bool | None:
        """
        Rename on disk if the source holds the expected content.

        Returns:
            True if moved, False if the source does not qualify, None if
            the source does not exist
        """
        src = self.resolve(source)
        target = self.resolve(rel_path)
        src_entry = self.entry(source) if src.is_file() else None
        if src_entry is None:
            return None
        if fingerprint is not None and src_entry.fingerprint != fingerprint:
            return False

        self._prepare_target(target)
        os.replace(src, target)
        cached = self._forget(source)
        if cached is not None:
            self._remember(rel_path, cached)
        self._prune_empty_parents(src)
        return True

    async def _rename(
        self,
        source: str,
        rel_path: str,
        fingerprint: str | None,
        content_reader: ContentReader | None,
    ) -> bool:
        moved = await asyncio.to_thread(self._move, source, rel_path, fingerprint)
        if moved:
            logger.debug(f"{self.module}: renamed {source} -> {rel_path}")
            return True
        source_exists = moved is not None

        if fingerprint is not None:
            current = await asyncio.to_thread(self.entry, rel_path)
            if current is not None and current.fingerprint == fingerprint:
                # Already moved
                if source_exists:
                    await asyncio.to_thread(self._delete, source)
                return False

        # Source missing or holding other content: the old path is gone on
        # the root either way, so fetch the target and drop the source
        logger.debug(f"{self.module}: rename source {source} unusable, fetching {rel_path}")
        changed = await self._write(rel_path, content_reader, fingerprint)
        if source_exists:
            await asyncio.to_thread(self._delete, source)
        return changed

    def _prepare_target(self, target: Path) -> None:
        """Make room for a file at ``target``; the root's layout wins."""
        current = self.root
        for part in target.relative_to(self.root).parts[:-1]:
            current = current / part
            if current.is_symlink() or current.is_file():
                logger.debug(f"{self.module}: replacing file {current} with a directory")
                current.unlink()
        target.parent.mkdir(parents=True, exist_ok=True)
        if target.is_dir() and not target.is_symlink():
            logger.debug(f"{self.module}: replacing directory {target} with a file")
            shutil.rmtree(target)

    def _prune_empty_parents(self, path: Path) -> None:
        parent = path.parent
        while parent != self.root and self.root in parent.parents:
            try:
                parent.rmdir()
            except OSError:
                break
            parent = parent.parent


def _write_chunk(f, hasher, chunk: bytes) -> None:
    f.write(chunk)
    hasher.update(chunk)


def _sync_file(f) -> None:
    f.flush()
    os.fsync(f.fileno())


def _replace(tmp: Path, target: Path) -> os.stat_result:
    os.replace(tmp, target)
    return target.lstat()
