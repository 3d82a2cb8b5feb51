"""Shared fixtures: an in-memory tag store, stub providers and sample files."""

from __future__ import annotations

import struct
import threading
from dataclasses import replace
from pathlib import Path

import pytest

from tome_tagger.cache import MetadataCache
from tome_tagger.codec import ALL_SLOTS, TagCodec
from tome_tagger.config import Config
from tome_tagger.errors import CodecError, ProviderError
from tome_tagger.models import Candidate, ChangeMap, FileTags, Metadata, TagSlot
from tome_tagger.providers.base import BookQuery, MetadataProvider


def create_minimal_mp3(path: Path) -> None:
    """Create a minimal valid MP3 file for testing."""
    # ID3v2.4 header with 0 size, then one MPEG frame (sync word + header + padding)
    id3_header = b"ID3\x04\x00\x00\x00\x00\x00\x00"
    mpeg_frame = b"\xff\xfb\x90\x00" + b"\x00" * 417

    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "wb") as f:
        f.write(id3_header)
        f.write(mpeg_frame)


def _atom(name: bytes, payload: bytes = b"") -> bytes:
    return struct.pack(">I4s", 8 + len(payload), name) + payload


def create_minimal_m4b(path: Path) -> None:
    """Create a tagless M4B: ftyp plus a moov holding only a movie header."""
    ftyp = _atom(b"ftyp", b"M4B " + struct.pack(">I", 0) + b"M4B isom")
    # Version 0 mvhd: flags, created, modified, timescale 1000, zero duration
    mvhd = _atom(b"mvhd", struct.pack(">IIIII", 0, 0, 0, 1000, 0) + b"\x00" * 80)

    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(ftyp + _atom(b"moov", mvhd))


def create_minimal_flac(path: Path) -> None:
    """Create a FLAC file with a STREAMINFO block (44.1 kHz, stereo, 16 bit) and no frames."""
    streaminfo = (
        struct.pack(">HH", 4096, 4096)  # min/max block size
        + b"\x00" * 6  # min/max frame size
        + bytes.fromhex("0ac442f000000000")  # sample rate, channels, bits, total samples
        + b"\x00" * 16  # MD5
    )
    header = struct.pack(">B", 0x80) + len(streaminfo).to_bytes(3, "big")

    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(b"fLaC" + header + streaminfo)


def create_minimal_opus(path: Path) -> None:
    """Create an Ogg Opus stream: ID header, empty comment header and one final page."""
    from mutagen.ogg import OggPage

    vendor = b"tome-tagger"
    packets = [
        b"OpusHead" + struct.pack("<BBHIhB", 1, 2, 0, 48000, 0, 0),
        b"OpusTags" + struct.pack("<I", len(vendor)) + vendor + struct.pack("<I", 0),
        b"\xf8\xff\xfe",
    ]
    pages = []
    for sequence, packet in enumerate(packets):
        page = OggPage()
        page.serial = 1
        page.sequence = sequence
        page.packets = [packet]
        page.first = sequence == 0
        page.last = sequence == len(packets) - 1
        page.position = 960 if page.last else 0
        pages.append(page.write())

    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(b"".join(pages))


def _attr(slot: TagSlot) -> str:
    return "genres" if slot is TagSlot.GENRE else slot.value


class FakeLibrary:
    """
    Files on disk whose tags live in memory.

    ``codec_factory`` hands out codecs backed by the shared store, so scanner,
    writer and pipeline tests exercise real paths without real containers.
    """

    def __init__(self, root: Path):
        self.root = root
        self.tags: dict[Path, FileTags] = {}
        self.read_only: set[Path] = set()
        self.unreadable: set[Path] = set()
        # Slots silently dropped on save, to provoke verification failures
        self.lossy: dict[Path, set[TagSlot]] = {}
        self.writes: list[Path] = []
        self.supported_slots = ALL_SLOTS

    def add(self, relative: str, **tags: object) -> Path:
        path = self.root / relative
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(b"\x00" * 64)
        self.tags[path] = FileTags(**tags)  # type: ignore[arg-type]
        return path

    def codec_factory(self, path: Path) -> TagCodec:
        return FakeCodec(self)


class FakeCodec(TagCodec):
    format_name = "fake"

    def __init__(self, library: FakeLibrary):
        self.library = library
        self.supported_slots = library.supported_slots

    def read(self, file_path: Path) -> FileTags:
        if file_path in self.library.unreadable or not file_path.exists():
            raise CodecError(file_path, "Could not read tags")
        return self.library.tags.get(file_path, FileTags())

    def write(self, file_path: Path, change_map: ChangeMap) -> int:
        if file_path in self.library.read_only:
            raise CodecError(file_path, "File is read-only")
        dropped = self.library.lossy.get(file_path, set())
        updates = {
            _attr(slot): change.new
            for slot, change in change_map.changes.items()
            if slot not in dropped
        }
        self.library.tags[file_path] = replace(self.read(file_path), **updates)
        self.library.writes.append(file_path)
        return len(change_map)

    def read_raw(self, file_path: Path) -> dict[str, list[str]]:
        result: dict[str, list[str]] = {}
        for name, value in self.read(file_path).to_dict().items():
            if isinstance(value, tuple) and value:
                result[name.upper()] = list(value)
            elif isinstance(value, str):
                result[name.upper()] = [value]
        return result


class StubProvider(MetadataProvider):
    """Provider returning canned records and counting calls."""

    def __init__(
        self,
        name: str = "audible",
        results: list[Metadata] | None = None,
        error: ProviderError | None = None,
        delay: float = 0.0,
    ):
        self._name = name
        self.results = results or []
        self.error = error
        self.delay = delay
        self.calls: list[BookQuery] = []
        self._lock = threading.Lock()

    @property
    def name(self) -> str:
        return self._name

    def search(self, query: BookQuery) -> list[Candidate]:
        with self._lock:
            self.calls.append(query)
        if self.delay:
            threading.Event().wait(self.delay)
        if self.error is not None:
            raise self.error
        return [Candidate(source=self.name, metadata=m) for m in self.results]


@pytest.fixture
def library(tmp_path: Path) -> FakeLibrary:
    return FakeLibrary(tmp_path.resolve() / "library")


@pytest.fixture
def cache(tmp_path: Path) -> MetadataCache:
    return MetadataCache(tmp_path / "cache", ttl_seconds=3600)


@pytest.fixture
def config(tmp_path: Path) -> Config:
    return Config(
        max_workers=4,
        backup_tags=False,
        cache={"directory": tmp_path / "cache"},  # type: ignore[arg-type]
    )
