"""
Core data models shared by the store, the watcher and the sync engine.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class ChangeOp(Enum):
    """Kinds of filesystem mutation propagated between mirras."""

    CREATE = "create"
    MODIFY = "modify"
    DELETE = "delete"
    RENAME = "rename"


@dataclass(frozen=True)
class IndexEntry:
    """One file in a module manifest."""

    path: str
    fingerprint: str
    size: int

    def to_list(self) -> list[Any]:
        return [self.path, self.fingerprint, self.size]

    @classmethod
    def from_list(cls, data: list[Any]) -> "IndexEntry":
        path, fingerprint, size = data
        return cls(path=str(path), fingerprint=str(fingerprint), size=int(size))


@dataclass
class ModuleIndex:
    """
    Full manifest of a module: every file with its fingerprint and size,
    sorted by path. ``sequence`` is the root's change sequence at the time
    the snapshot was taken.
    """

    module: str
    entries: list[IndexEntry] = field(default_factory=list)
    sequence: int = 0

    def __post_init__(self):
        self.entries = sorted(self.entries, key=lambda e: e.path)

    def as_map(self) -> dict[str, IndexEntry]:
        return {entry.path: entry for entry in self.entries}

    def fingerprint_map(self) -> dict[str, str]:
        """path -> fingerprint, the comparable state of a module."""
        return {entry.path: entry.fingerprint for entry in self.entries}

    def by_fingerprint(self) -> dict[str, list[str]]:
        """fingerprint -> paths holding that content."""
        result: dict[str, list[str]] = {}
        for entry in self.entries:
            result.setdefault(entry.fingerprint, []).append(entry.path)
        return result

    @property
    def total_size(self) -> int:
        return sum(entry.size for entry in self.entries)

    def __len__(self) -> int:
        return len(self.entries)

    def same_content(self, other: "ModuleIndex") -> bool:
        """True when both manifests describe identical files."""
        return self.fingerprint_map() == other.fingerprint_map()

    def to_dict(self) -> dict[str, Any]:
        return {
            "module": self.module,
            "sequence": self.sequence,
            "entries": [entry.to_list() for entry in self.entries],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ModuleIndex":
        return cls(
            module=data["module"],
            sequence=int(data.get("sequence", 0)),
            entries=[IndexEntry.from_list(item) for item in data.get("entries", [])],
        )


@dataclass
class ChangeEvent:
    """
    A single mutation of a module's content.

    For a rename ``source`` is the old path and ``path`` the new one.
    """

    module: str
    path: str
    op: ChangeOp
    fingerprint: str | None = None
    size: int = 0
    sequence: int = 0
    source: str | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "path": self.path,
            "op": self.op.value,
            "sequence": self.sequence,
        }
        if self.fingerprint is not None:
            data["fingerprint"] = self.fingerprint
            data["size"] = self.size
        if self.source is not None:
            data["source"] = self.source
        return data

    @classmethod
    def from_dict(cls, module: str, data: dict[str, Any]) -> "ChangeEvent":
        return cls(
            module=module,
            path=data["path"],
            op=ChangeOp(data["op"]),
            fingerprint=data.get("fingerprint"),
            size=int(data.get("size", 0)),
            sequence=int(data["sequence"]),
            source=data.get("source"),
        )


@dataclass
class ChangeBatch:
    """Events flushed together by a watcher, in sequence order."""

    module: str
    events: list[ChangeEvent] = field(default_factory=list)

    @property
    def first_sequence(self) -> int:
        return self.events[0].sequence if self.events else 0

    @property
    def last_sequence(self) -> int:
        return self.events[-1].sequence if self.events else 0

    def __len__(self) -> int:
        return len(self.events)

    def to_dict(self) -> dict[str, Any]:
        return {
            "module": self.module,
            "events": [event.to_dict() for event in self.events],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ChangeBatch":
        module = data["module"]
        return cls(
            module=module,
            events=[ChangeEvent.from_dict(module, item) for item in data.get("events", [])],
        )
