"""
Tests for the content store.
"""

import asyncio
import os
import threading
import time

import pytest
from conftest import chunks_of, read_tree, write_tree

from mirra import store as store_module
from mirra.errors import ApplyError, ContentMismatch, InvalidPath
from mirra.models import ChangeOp
from mirra.store import (
    TEMP_PREFIX,
    ContentStore,
    compute_fingerprint,
    fingerprint_file,
    is_ignored,
)


class TestFingerprints:
    def test_file_matches_bytes(self, tmp_path):
        path = tmp_path / "f.bin"
        data = os.urandom(300_000)
        path.write_bytes(data)
        assert fingerprint_file(path, chunk_size=4096) == (compute_fingerprint(data), len(data))

    def test_is_ignored(self):
        assert is_ignored(".mirra/state.json")
        assert is_ignored(f"dir/{TEMP_PREFIX}abc")
        assert not is_ignored("dir/file.txt")


class TestIndex:
    """Tests for manifest computation."""

    def test_current_index(self, store):
        write_tree(store.root, {"a.txt": "alpha", "sub/b.txt": "beta"})
        index = store.current_index(sequence=5)

        assert [e.path for e in index.entries] == ["a.txt", "sub/b.txt"]
        assert index.sequence == 5
        assert index.as_map()["a.txt"].fingerprint == compute_fingerprint(b"alpha")
        assert index.as_map()["sub/b.txt"].size == 4

    def test_skips_control_and_temp_files(self, store):
        write_tree(
            store.root,
            {"keep.txt": "x", ".mirra/Mirra.toml": "y", f"{TEMP_PREFIX}partial": "z"},
        )
        assert store.list_files() == ["keep.txt"]

    def test_skips_symlinks(self, store):
        write_tree(store.root, {"real.txt": "data"})
        os.symlink(store.root / "real.txt", store.root / "link.txt")
        assert store.list_files() == ["real.txt"]

    def test_missing_root_is_empty(self, tmp_path):
        assert len(ContentStore("docs", tmp_path / "absent").current_index()) == 0

    def test_cache_refreshes_on_change(self, store):
        write_tree(store.root, {"a.txt": "one"})
        first = store.entry("a.txt")
        (store.root / "a.txt").write_bytes(b"three")
        os.utime(store.root / "a.txt", ns=(1, 1))

        second = store.entry("a.txt")
        assert first.fingerprint != second.fingerprint
        assert second.size == 5

    def test_entry_of_missing_file(self, store):
        assert store.entry("nope.txt") is None

    def test_snapshot(self, store):
        write_tree(store.root, {"a.txt": "alpha"})
        index = asyncio.run(store.snapshot(sequence=3))
        assert index.sequence == 3
        assert len(index) == 1


class TestPaths:
    @pytest.mark.parametrize(
        "path", ["", "/etc/passwd", "../outside", "a/../../b", ".mirra/x", "a\\b"]
    )
    def test_rejects_unsafe_paths(self, store, path):
        with pytest.raises(InvalidPath):
            store.resolve(path)

    def test_resolves_nested_path(self, store):
        assert store.resolve("a/b/c.txt") == store.root / "a" / "b" / "c.txt"


class TestApply:
    """Tests for materializing changes."""

    def test_create_writes_content(self, store):
        changed = asyncio.run(
            store.apply("sub/new.txt", ChangeOp.CREATE, chunks_of(b"hel", b"lo"))
        )
        assert changed
        assert read_tree(store.root) == {"sub/new.txt": b"hello"}

    def test_create_is_idempotent(self, store):
        """Re-applying content that is already present is a no-op."""
        fingerprint = compute_fingerprint(b"hello")
        asyncio.run(store.apply("a.txt", ChangeOp.CREATE, chunks_of(b"hello")))

        changed = asyncio.run(
            store.apply("a.txt", ChangeOp.MODIFY, chunks_of(b"hello"), fingerprint=fingerprint)
        )
        assert not changed

    def test_modify_replaces_content(self, store):
        write_tree(store.root, {"a.txt": "old"})
        asyncio.run(
            store.apply(
                "a.txt",
                ChangeOp.MODIFY,
                chunks_of(b"new"),
                fingerprint=compute_fingerprint(b"new"),
            )
        )
        assert (store.root / "a.txt").read_bytes() == b"new"

    def test_write_without_content(self, store):
        with pytest.raises(ApplyError):
            asyncio.run(store.apply("a.txt", ChangeOp.CREATE))

    def test_failed_reader_leaves_no_temp_file(self, store):
        write_tree(store.root, {"a.txt": "original"})

        async def broken():
            yield b"partial"
            raise OSError("stream reset")

        with pytest.raises(OSError):
            asyncio.run(store.apply("a.txt", ChangeOp.MODIFY, broken))

        assert read_tree(store.root) == {"a.txt": b"original"}
        assert not [p for p in store.root.iterdir() if p.name.startswith(TEMP_PREFIX)]

    def test_delete_prunes_empty_directories(self, store):
        write_tree(store.root, {"a/b/c.txt": "x", "keep.txt": "y"})
        assert asyncio.run(store.apply("a/b/c.txt", ChangeOp.DELETE))
        assert not (store.root / "a").exists()
        assert (store.root / "keep.txt").exists()

    def test_delete_missing_is_noop(self, store):
        assert not asyncio.run(store.apply("gone.txt", ChangeOp.DELETE))

    def test_rename_moves_file(self, store):
        write_tree(store.root, {"old.txt": "content"})
        changed = asyncio.run(
            store.apply(
                "new/name.txt",
                ChangeOp.RENAME,
                fingerprint=compute_fingerprint(b"content"),
                source="old.txt",
            )
        )
        assert changed
        assert read_tree(store.root) == {"new/name.txt": b"content"}

    def test_rename_with_missing_source_fetches(self, store):
        changed = asyncio.run(
            store.apply(
                "new.txt",
                ChangeOp.RENAME,
                chunks_of(b"fetched"),
                fingerprint=compute_fingerprint(b"fetched"),
                source="old.txt",
            )
        )
        assert changed
        assert read_tree(store.root) == {"new.txt": b"fetched"}

    def test_rename_with_stale_source_fetches_and_drops_source(self, store):
        """A source holding other content is not moved; the target is fetched."""
        write_tree(store.root, {"old.txt": "stale"})
        asyncio.run(
            store.apply(
                "new.txt",
                ChangeOp.RENAME,
                chunks_of(b"fresh"),
                fingerprint=compute_fingerprint(b"fresh"),
                source="old.txt",
            )
        )
        assert read_tree(store.root) == {"new.txt": b"fresh"}

    def test_rename_already_applied(self, store):
        write_tree(store.root, {"new.txt": "content"})
        changed = asyncio.run(
            store.apply(
                "new.txt",
                ChangeOp.RENAME,
                fingerprint=compute_fingerprint(b"content"),
                source="old.txt",
            )
        )
        assert not changed

    def test_rename_requires_source(self, store):
        with pytest.raises(ApplyError):
            asyncio.run(store.apply("new.txt", ChangeOp.RENAME, chunks_of(b"x")))

    def test_file_replaces_directory(self, store):
        write_tree(store.root, {"thing/inner.txt": "x"})
        asyncio.run(store.apply("thing", ChangeOp.CREATE, chunks_of(b"file now")))
        assert read_tree(store.root) == {"thing": b"file now"}

    def test_directory_replaces_file(self, store):
        write_tree(store.root, {"thing": "file"})
        asyncio.run(store.apply("thing/inner.txt", ChangeOp.CREATE, chunks_of(b"nested")))
        assert read_tree(store.root) == {"thing/inner.txt": b"nested"}

    def test_invalid_path_is_rejected(self, store):
        with pytest.raises(InvalidPath):
            asyncio.run(store.apply("../escape.txt", ChangeOp.CREATE, chunks_of(b"x")))


class TestLocalReader:
    def test_copies_identical_content(self, store):
        write_tree(store.root, {"a.txt": "shared"})
        fingerprint = compute_fingerprint(b"shared")

        asyncio.run(
            store.apply(
                "b.txt",
                ChangeOp.CREATE,
                store.local_reader("a.txt", fingerprint),
                fingerprint=fingerprint,
            )
        )
        assert (store.root / "b.txt").read_bytes() == b"shared"

    def test_changed_source_is_a_mismatch(self, store):
        write_tree(store.root, {"a.txt": "changed since the index"})

        with pytest.raises(ContentMismatch):
            asyncio.run(
                store.apply(
                    "b.txt",
                    ChangeOp.CREATE,
                    store.local_reader("a.txt", compute_fingerprint(b"shared")),
                )
            )
        assert not (store.root / "b.txt").exists()


class TestApplyVerification:
    def test_content_not_matching_the_fingerprint_is_rejected(self, store):
        write_tree(store.root, {"a.txt": "original"})

        with pytest.raises(ContentMismatch):
            asyncio.run(
                store.apply(
                    "a.txt",
                    ChangeOp.MODIFY,
                    chunks_of(b"tampered"),
                    fingerprint=compute_fingerprint(b"expected"),
                )
            )

        assert read_tree(store.root) == {"a.txt": b"original"}
        assert not [p for p in store.root.iterdir() if p.name.startswith(TEMP_PREFIX)]

    def test_new_file_with_wrong_content_is_not_created(self, store):
        with pytest.raises(ContentMismatch):
            asyncio.run(
                store.apply(
                    "new.txt",
                    ChangeOp.CREATE,
                    chunks_of(b"junk"),
                    fingerprint=compute_fingerprint(b"real"),
                )
            )
        assert read_tree(store.root) == {}


class TestApplyConcurrency:
    """Blocking work in apply runs off the event loop."""

    def test_hashing_does_not_block_the_loop(self, store, monkeypatch):
        write_tree(store.root, {"big.bin": "existing"})
        real_fingerprint = store_module.fingerprint_file

        def slow_fingerprint(path, chunk_size=store_module.CHUNK_SIZE):
            time.sleep(0.3)
            return real_fingerprint(path, chunk_size)

        monkeypatch.setattr(store_module, "fingerprint_file", slow_fingerprint)

        async def scenario():
            ticks = 0

            async def ticker():
                nonlocal ticks
                while True:
                    await asyncio.sleep(0.01)
                    ticks += 1

            task = asyncio.create_task(ticker())
            await store.apply(
                "big.bin",
                ChangeOp.MODIFY,
                chunks_of(b"replacement"),
                fingerprint=compute_fingerprint(b"replacement"),
            )
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
            return ticks

        assert asyncio.run(scenario()) >= 10
        assert (store.root / "big.bin").read_bytes() == b"replacement"

    def test_index_while_applying_from_another_thread(self, store):
        """A watcher thread indexing the tree while writes land stays consistent."""
        write_tree(store.root, {f"seed/{n}.txt": str(n) for n in range(50)})
        errors = []
        done = threading.Event()

        def index_repeatedly():
            try:
                while not done.is_set():
                    store.current_index()
            except Exception as e:  # collected for the assertion below
                errors.append(e)

        async def scenario():
            thread = threading.Thread(target=index_repeatedly)
            thread.start()
            try:
                for n in range(100):
                    await store.apply(f"new/{n}.txt", ChangeOp.CREATE, chunks_of(b"x" * n))
                    if n % 3 == 0:
                        await store.apply(f"seed/{n % 50}.txt", ChangeOp.DELETE)
            finally:
                done.set()
                await asyncio.to_thread(thread.join)

        asyncio.run(scenario())
        assert errors == []
        assert len(store.current_index()) == 100 + 50 - 34
