"""
Sync State

Diffing of a local module index against the root's, and the report produced
by a full sync or reconciliation pass.
"""

from dataclasses import dataclass, field
from typing import Any

from mirra.logging import get_logger
from mirra.models import IndexEntry, ModuleIndex

logger = get_logger("sync.state")


@dataclass
class IndexDelta:
    """What a node must do to make its index equal the root's."""

    module: str
    sequence: int
    fetch: list[IndexEntry] = field(default_factory=list)
    # (target entry, local path already holding the same content)
    copy: list[tuple[IndexEntry, str]] = field(default_factory=list)
    delete: list[str] = field(default_factory=list)
    unchanged: int = 0

    @classmethod
    def compute(cls, local: ModuleIndex, remote: ModuleIndex) -> "IndexDelta":
        """
        Compare a local manifest against the authoritative remote one.

        Entries missing or different locally are copied when their content
        already exists at another local path and fetched otherwise; local
        entries absent remotely are deleted.
        """
        local_map = local.as_map()
        remote_map = remote.as_map()
        local_by_fp = local.by_fingerprint()

        delta = cls(module=remote.module, sequence=remote.sequence)
        for path, entry in remote_map.items():
            current = local_map.get(path)
            if current is not None and current.fingerprint == entry.fingerprint:
                delta.unchanged += 1
                continue
            sources = [p for p in local_by_fp.get(entry.fingerprint, []) if p != path]
            if sources:
                delta.copy.append((entry, sources[0]))
            else:
                delta.fetch.append(entry)

        delta.delete = sorted(path for path in local_map if path not in remote_map)
        return delta

    def is_empty(self) -> bool:
        return not self.fetch and not self.copy and not self.delete

    @property
    def transfer_size(self) -> int:
        """Bytes that have to come over the network."""
        return sum(entry.size for entry in self.fetch)

    def __len__(self) -> int:
        return len(self.fetch) + len(self.copy) + len(self.delete)


@dataclass
class SyncReport:
    """Result of a full sync or reconciliation pass."""

    module: str
    fetched: list[str] = field(default_factory=list)
    copied: list[str] = field(default_factory=list)
    deleted: list[str] = field(default_factory=list)
    unchanged: int = 0
    failed: dict[str, str] = field(default_factory=dict)
    duration_ms: int = 0

    @property
    def success(self) -> bool:
        return not self.failed

    @property
    def changed(self) -> int:
        return len(self.fetched) + len(self.copied) + len(self.deleted)

    def to_dict(self) -> dict[str, Any]:
        return {
            "module": self.module,
            "fetched": self.fetched,
            "copied": self.copied,
            "deleted": self.deleted,
            "unchanged": self.unchanged,
            "failed": self.failed,
            "duration_ms": self.duration_ms,
        }
