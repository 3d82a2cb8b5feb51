"""Core data model for the scan → reconcile → write → rename → sync pipeline.

Records here are plain dataclasses with explicitly optional fields, so that
"unknown" (None / empty tuple) is never confused with a blank string.
"""

from __future__ import annotations

import hashlib
import time
from collections.abc import Iterable, Iterator
from dataclasses import dataclass, field, fields, replace
from enum import StrEnum
from pathlib import Path
from typing import Any


def _clean(value: Any) -> str | None:
    """Coerce a raw value to a stripped string, mapping blanks to None."""
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _clean_list(values: Iterable[Any] | str | None) -> tuple[str, ...]:
    """Strip, drop blanks and de-duplicate while keeping first-seen order."""
    if values is None:
        return ()
    if isinstance(values, str):
        values = [values]
    seen: set[str] = set()
    result: list[str] = []
    for value in values:
        text = _clean(value)
        if text is None or text in seen:
            continue
        seen.add(text)
        result.append(text)
    return tuple(result)


def file_id_for(path: Path | str) -> str:
    """Stable short identifier for a file path."""
    return hashlib.sha1(str(path).encode()).hexdigest()[:12]


class GroupKind(StrEnum):
    """How the files of a group relate to each other."""

    SINGLE = "single"
    MULTI_FILE = "multi-file"
    SERIES = "series"


class TagSlot(StrEnum):
    """Logical target tag fields, mapped to physical keys by each codec."""

    TITLE = "title"
    SUBTITLE = "subtitle"
    ALBUM = "album"
    ARTIST = "artist"
    ALBUM_ARTIST = "album_artist"
    NARRATOR = "narrator"
    GENRE = "genre"
    GROUPING = "grouping"
    SERIES = "series"
    SERIES_PART = "series_part"
    YEAR = "year"
    COMMENT = "comment"
    PUBLISHER = "publisher"
    ISBN = "isbn"


@dataclass(frozen=True)
class FileTags:
    """
    Embedded tags of one file, as read by a codec.

    Every field is optional. Blank strings are normalized to None and genre
    entries are kept as discrete values.
    """

    title: str | None = None
    subtitle: str | None = None
    artist: str | None = None
    album: str | None = None
    album_artist: str | None = None
    narrator: str | None = None
    composer: str | None = None
    comment: str | None = None
    genres: tuple[str, ...] = ()
    year: str | None = None
    grouping: str | None = None
    series: str | None = None
    series_part: str | None = None
    publisher: str | None = None
    isbn: str | None = None

    def __post_init__(self) -> None:
        for f in fields(self):
            value = getattr(self, f.name)
            if f.name == "genres":
                object.__setattr__(self, f.name, _clean_list(value))
            else:
                object.__setattr__(self, f.name, _clean(value))

    def slot_value(self, slot: TagSlot) -> str | tuple[str, ...] | None:
        """Current value of a logical slot."""
        if slot is TagSlot.GENRE:
            return self.genres
        return getattr(self, slot.value)

    def to_dict(self) -> dict[str, Any]:
        return {f.name: getattr(self, f.name) for f in fields(self)}


@dataclass(frozen=True)
class Metadata:
    """
    Canonical record describing one audiobook.

    Any field may be absent (None). Empty strings are coerced to None and
    genres are stored as an order-preserving tuple without duplicates.
    """

    title: str | None = None
    subtitle: str | None = None
    author: str | None = None
    narrator: str | None = None
    series: str | None = None
    sequence: str | None = None
    year: str | None = None
    genres: tuple[str, ...] = ()
    description: str | None = None
    publisher: str | None = None
    isbn: str | None = None

    def __post_init__(self) -> None:
        for f in fields(self):
            value = getattr(self, f.name)
            if f.name == "genres":
                object.__setattr__(self, f.name, _clean_list(value))
            else:
                object.__setattr__(self, f.name, _clean(value))

    @classmethod
    def field_names(cls) -> tuple[str, ...]:
        return tuple(f.name for f in fields(cls))

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Metadata:
        """Build from a loose mapping, ignoring unknown keys."""
        known = {name: data.get(name) for name in cls.field_names() if name in data}
        if "genres" in known and known["genres"] is None:
            known["genres"] = ()
        return cls(**known)

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {}
        for name in self.field_names():
            value = getattr(self, name)
            result[name] = list(value) if name == "genres" else value
        return result

    def is_empty(self) -> bool:
        return all(not getattr(self, name) for name in self.field_names())

    def merged_with(self, **changes: Any) -> Metadata:
        return replace(self, **changes)


@dataclass(frozen=True)
class Candidate:
    """A candidate record returned by one metadata provider."""

    source: str
    metadata: Metadata
    score: float = 0.0


@dataclass
class AudioFile:
    """An audio file discovered by the scanner. Identity is the absolute path."""

    path: Path
    tags: FileTags
    format: str
    size: int
    part: int | None = None

    @property
    def id(self) -> str:
        return file_id_for(self.path)

    @property
    def filename(self) -> str:
        return self.path.name


@dataclass(frozen=True)
class FieldChange:
    """A single slot mutation."""

    old: str | tuple[str, ...] | None
    new: str | tuple[str, ...]


@dataclass
class ChangeMap:
    """Minimal set of slot mutations for one file. Empty means up to date."""

    path: Path
    changes: dict[TagSlot, FieldChange] = field(default_factory=dict)

    def __len__(self) -> int:
        return len(self.changes)

    def __bool__(self) -> bool:
        return bool(self.changes)

    def __iter__(self) -> Iterator[TagSlot]:
        return iter(self.changes)

    def __contains__(self, slot: object) -> bool:
        return slot in self.changes

    def __getitem__(self, slot: TagSlot) -> FieldChange:
        return self.changes[slot]

    def new_values(self) -> dict[TagSlot, str | tuple[str, ...]]:
        return {slot: change.new for slot, change in self.changes.items()}

    def to_dict(self) -> dict[str, Any]:
        return {
            "path": str(self.path),
            "changes": {
                slot.value: {
                    "old": list(c.old) if isinstance(c.old, tuple) else c.old,
                    "new": list(c.new) if isinstance(c.new, tuple) else c.new,
                }
                for slot, c in self.changes.items()
            },
        }


@dataclass
class Group:
    """A set of files judged to represent one audiobook or one series."""

    key: str
    kind: GroupKind
    name: str
    files: list[AudioFile] = field(default_factory=list)
    metadata: Metadata | None = None
    member_metadata: dict[Path, Metadata] = field(default_factory=dict)
    change_maps: dict[Path, ChangeMap] = field(default_factory=dict)

    @property
    def id(self) -> str:
        return hashlib.sha1(self.key.encode()).hexdigest()[:12]

    @property
    def total_changes(self) -> int:
        """Number of member files with a non-empty ChangeMap."""
        return sum(1 for cm in self.change_maps.values() if cm)

    def metadata_for(self, audio_file: AudioFile) -> Metadata | None:
        """Canonical record that applies to one member file."""
        return self.member_metadata.get(audio_file.path, self.metadata)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "key": self.key,
            "kind": self.kind.value,
            "name": self.name,
            "files": [
                {
                    "id": f.id,
                    "path": str(f.path),
                    "format": f.format,
                    "size": f.size,
                    "status": "changed" if self.change_maps.get(f.path) else "unchanged",
                    "changes": self.change_maps[f.path].to_dict()["changes"]
                    if f.path in self.change_maps
                    else {},
                }
                for f in self.files
            ],
            "metadata": self.metadata.to_dict() if self.metadata else None,
            "total_changes": self.total_changes,
        }


@dataclass(frozen=True)
class ScanError:
    """A discovered path that could not be read."""

    path: Path
    reason: str


@dataclass
class ScanResult:
    groups: list[Group] = field(default_factory=list)
    errors: list[ScanError] = field(default_factory=list)

    @property
    def files(self) -> list[AudioFile]:
        return [f for g in self.groups for f in g.files]


class WriteOutcome(StrEnum):
    SUCCESS = "success"
    FAILED = "failed"


@dataclass
class WriteResult:
    """Outcome of writing one file. Exactly one per requested file."""

    path: Path
    outcome: WriteOutcome
    fields_changed: int = 0
    reason: str | None = None
    backup_path: Path | None = None
    # Caller's id when it names no scanned file
    requested_id: str | None = None

    @property
    def file_id(self) -> str:
        return self.requested_id or file_id_for(self.path)

    @property
    def ok(self) -> bool:
        return self.outcome is WriteOutcome.SUCCESS

    @classmethod
    def success(
        cls, path: Path, fields_changed: int = 0, backup_path: Path | None = None
    ) -> WriteResult:
        return cls(path, WriteOutcome.SUCCESS, fields_changed, None, backup_path)

    @classmethod
    def failed(
        cls,
        path: Path,
        reason: str,
        backup_path: Path | None = None,
        requested_id: str | None = None,
    ) -> WriteResult:
        return cls(path, WriteOutcome.FAILED, 0, reason, backup_path, requested_id)


@dataclass
class WriteBatchResult:
    """Summary of a write batch: counts plus one WriteResult per file."""

    results: list[WriteResult] = field(default_factory=list)

    @property
    def success(self) -> int:
        return sum(1 for r in self.results if r.ok)

    @property
    def failed(self) -> int:
        return sum(1 for r in self.results if not r.ok)

    @property
    def errors(self) -> list[dict[str, str]]:
        return [
            {"file_id": r.file_id, "path": str(r.path), "error": r.reason or ""}
            for r in self.results
            if not r.ok
        ]

    def by_path(self) -> dict[Path, WriteResult]:
        return {r.path: r for r in self.results}

    def to_dict(self) -> dict[str, Any]:
        return {"success": self.success, "failed": self.failed, "errors": self.errors}


@dataclass
class RenameResult:
    path: Path
    success: bool
    new_path: Path | None = None
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "path": str(self.path),
            "success": self.success,
            "new_path": str(self.new_path) if self.new_path else None,
            "error": self.error,
        }


@dataclass
class WriteAndRenameResult:
    write_result: WriteBatchResult
    rename_results: list[RenameResult] = field(default_factory=list)


class SyncOutcome(StrEnum):
    UPDATED = "updated"
    UNMATCHED = "unmatched"
    FAILED = "failed"


@dataclass
class SyncItem:
    """A file whose canonical metadata should be pushed to the remote library."""

    path: Path
    metadata: Metadata
    outcome: SyncOutcome | None = None
    reason: str | None = None
    status_code: int | None = None
    item_id: str | None = None


@dataclass
class PushResult:
    """Batch summary of a sync push."""

    items: list[SyncItem] = field(default_factory=list)

    @property
    def updated(self) -> int:
        """Number of remote items updated (several files may share one item)."""
        updated = [i for i in self.items if i.outcome is SyncOutcome.UPDATED]
        return len({i.item_id or str(i.path) for i in updated})

    @property
    def unmatched(self) -> list[Path]:
        return [i.path for i in self.items if i.outcome is SyncOutcome.UNMATCHED]

    @property
    def failed(self) -> list[SyncItem]:
        return [i for i in self.items if i.outcome is SyncOutcome.FAILED]

    def to_dict(self) -> dict[str, Any]:
        return {
            "updated": self.updated,
            "unmatched": [str(p) for p in self.unmatched],
            "failed": [
                {"path": str(i.path), "reason": i.reason, "status": i.status_code}
                for i in self.failed
            ],
        }


@dataclass(frozen=True)
class CacheEntry:
    """A persisted provider response."""

    fingerprint: str
    payload: Any
    cached_at: float
    expires_at: float

    def is_expired(self, now: float | None = None) -> bool:
        return (now if now is not None else time.time()) >= self.expires_at


## Tests


def test_metadata_blank_fields_are_absent():
    meta = Metadata(title="  ", author="Jane Doe", genres=["Mystery", " ", "Mystery", "Thriller"])
    assert meta.title is None
    assert meta.author == "Jane Doe"
    assert meta.genres == ("Mystery", "Thriller")


def test_file_tags_slot_value():
    tags = FileTags(title="BookA", genres=("Mystery",))
    assert tags.slot_value(TagSlot.TITLE) == "BookA"
    assert tags.slot_value(TagSlot.GENRE) == ("Mystery",)
    assert tags.slot_value(TagSlot.NARRATOR) is None


def test_write_batch_result_counts():
    batch = WriteBatchResult(
        [WriteResult.success(Path("/a.m4b"), 2), WriteResult.failed(Path("/b.m4b"), "locked")]
    )
    assert batch.success == 1
    assert batch.failed == 1
    assert batch.errors[0]["path"] == "/b.m4b"
    assert batch.errors[0]["error"] == "locked"
