"""Tag codecs for audiobook containers.

Maps the logical tag slots onto ID3v2.4 (MP3), MP4 atoms (M4B/M4A) and Vorbis
comments (FLAC/OGG/Opus). All changes for a file are applied to the loaded
tag object and saved once, so a failure before the save leaves the file
untouched.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any

from mutagen import MutagenError

from tome_tagger.errors import CodecError, UnsupportedFormatError
from tome_tagger.models import ChangeMap, FileTags, TagSlot

log = logging.getLogger(__name__)

SUPPORTED_EXTENSIONS = frozenset({".m4b", ".m4a", ".mp4", ".mp3", ".flac", ".ogg", ".opus"})

ALL_SLOTS = frozenset(TagSlot)


def _norm(value: str | tuple[str, ...] | None) -> str | tuple[str, ...] | None:
    if isinstance(value, tuple):
        return tuple(v.strip() for v in value if v.strip())
    if value is None:
        return None
    return value.strip() or None


class TagCodec(ABC):
    """
    Reads embedded tags into FileTags and applies ChangeMaps.

    Subclasses implement one container family.
    """

    format_name: str = ""
    supported_slots: frozenset[TagSlot] = ALL_SLOTS

    @abstractmethod
    def read(self, file_path: Path) -> FileTags:
        """Read the logical tag record. Raises CodecError."""

    @abstractmethod
    def write(self, file_path: Path, change_map: ChangeMap) -> int:
        """Apply the change map and save. Returns number of slots written. Raises CodecError."""

    @abstractmethod
    def read_raw(self, file_path: Path) -> dict[str, list[str]]:
        """Every physical tag key with its values, for inspection."""

    def verify(self, file_path: Path, change_map: ChangeMap) -> list[TagSlot]:
        """
        Re-read the file and compare every changed slot.

        Returns:
            Slots whose stored value differs from the requested value
        """
        current = self.read(file_path)
        mismatched = []
        for slot, change in change_map.changes.items():
            if _norm(current.slot_value(slot)) != _norm(change.new):
                mismatched.append(slot)
        return mismatched


class ID3Codec(TagCodec):
    """ID3v2.4 frames for MP3 files."""

    format_name = "id3"

    TEXT_FRAMES = {
        TagSlot.TITLE: "TIT2",
        TagSlot.SUBTITLE: "TIT3",
        TagSlot.ALBUM: "TALB",
        TagSlot.ARTIST: "TPE1",
        TagSlot.ALBUM_ARTIST: "TPE2",
        TagSlot.GROUPING: "TIT1",
        TagSlot.YEAR: "TDRC",
        TagSlot.PUBLISHER: "TPUB",
    }

    TXXX_FRAMES = {
        TagSlot.NARRATOR: "NARRATOR",
        TagSlot.SERIES: "SERIES",
        TagSlot.SERIES_PART: "SERIES-PART",
        TagSlot.ISBN: "ISBN",
    }

    def _load(self, file_path: Path, create: bool = False) -> Any:
        from mutagen.id3 import ID3, ID3NoHeaderError

        try:
            return ID3(file_path)
        except ID3NoHeaderError:
            if not file_path.is_file():
                raise CodecError(file_path, "File not found") from None
            return ID3() if create else None
        except (MutagenError, OSError) as e:
            raise CodecError(file_path, f"Could not read ID3 tags ({e})") from e

    @staticmethod
    def _first_text(frame: Any) -> str | None:
        if frame is None or not getattr(frame, "text", None):
            return None
        return str(frame.text[0])

    def read(self, file_path: Path) -> FileTags:
        tags = self._load(file_path)
        if tags is None:
            return FileTags()

        values: dict[str, Any] = {}
        for slot, frame_id in self.TEXT_FRAMES.items():
            values[slot.value] = self._first_text(tags.get(frame_id))
        for slot, desc in self.TXXX_FRAMES.items():
            values[slot.value] = self._first_text(tags.get(f"TXXX:{desc}"))

        genre_frame = tags.get("TCON")
        values["genres"] = tuple(genre_frame.genres) if genre_frame is not None else ()
        values["composer"] = self._first_text(tags.get("TCOM"))

        comments = tags.getall("COMM")
        plain = [c for c in comments if c.desc == ""] or comments
        values["comment"] = self._first_text(plain[0]) if plain else None

        return FileTags(**values)

    def write(self, file_path: Path, change_map: ChangeMap) -> int:
        from mutagen.id3 import COMM, TCON, TXXX, Frames

        tags = self._load(file_path, create=True)

        for slot, change in change_map.changes.items():
            new = change.new
            if slot in self.TEXT_FRAMES:
                frame_id = self.TEXT_FRAMES[slot]
                tags.delall(frame_id)
                tags.add(Frames[frame_id](encoding=3, text=[new]))
            elif slot in self.TXXX_FRAMES:
                desc = self.TXXX_FRAMES[slot]
                tags.delall(f"TXXX:{desc}")
                tags.add(TXXX(encoding=3, desc=desc, text=[new]))
            elif slot is TagSlot.GENRE:
                tags.delall("TCON")
                if new:
                    tags.add(TCON(encoding=3, text=list(new)))
            elif slot is TagSlot.COMMENT:
                for key in [k for k in tags.keys() if k.startswith("COMM::")]:
                    del tags[key]
                tags.add(COMM(encoding=3, lang="eng", desc="", text=[new]))

        try:
            tags.save(file_path, v2_version=4)
        except (MutagenError, OSError) as e:
            raise CodecError(file_path, f"Could not save ID3 tags ({e})") from e
        return len(change_map)

    def read_raw(self, file_path: Path) -> dict[str, list[str]]:
        tags = self._load(file_path)
        if tags is None:
            return {}
        result: dict[str, list[str]] = {}
        for key, frame in tags.items():
            if hasattr(frame, "text"):
                result[key] = [str(t) for t in frame.text]
            elif hasattr(frame, "data"):
                result[key] = [f"<binary {len(frame.data)} bytes>"]
            else:
                result[key] = [str(frame)]
        return result


class MP4Codec(TagCodec):
    """iTunes-style atoms for M4B/M4A files."""

    format_name = "mp4"

    TEXT_ATOMS = {
        TagSlot.TITLE: "\xa9nam",
        TagSlot.ALBUM: "\xa9alb",
        TagSlot.ARTIST: "\xa9ART",
        TagSlot.ALBUM_ARTIST: "aART",
        TagSlot.NARRATOR: "\xa9nrt",
        TagSlot.GROUPING: "\xa9grp",
        TagSlot.YEAR: "\xa9day",
        TagSlot.COMMENT: "\xa9cmt",
        TagSlot.PUBLISHER: "\xa9pub",
    }

    FREEFORM_PREFIX = "----:com.apple.iTunes:"

    FREEFORM_ATOMS = {
        TagSlot.SUBTITLE: "SUBTITLE",
        TagSlot.SERIES: "SERIES",
        TagSlot.SERIES_PART: "SERIES-PART",
        TagSlot.ISBN: "ISBN",
    }

    def _load(self, file_path: Path) -> Any:
        from mutagen.mp4 import MP4

        try:
            return MP4(file_path)
        except (MutagenError, OSError) as e:
            raise CodecError(file_path, f"Could not read MP4 tags ({e})") from e

    @staticmethod
    def _decode(value: Any) -> str:
        return value.decode("utf-8") if isinstance(value, bytes) else str(value)

    def read(self, file_path: Path) -> FileTags:
        audio = self._load(file_path)
        tags = audio.tags
        if tags is None:
            return FileTags()

        def first(key: str) -> str | None:
            values = tags.get(key)
            return self._decode(values[0]) if values else None

        values: dict[str, Any] = {}
        for slot, atom in self.TEXT_ATOMS.items():
            values[slot.value] = first(atom)
        for slot, name in self.FREEFORM_ATOMS.items():
            values[slot.value] = first(f"{self.FREEFORM_PREFIX}{name}")
        if values["narrator"] is None:
            values["narrator"] = first(f"{self.FREEFORM_PREFIX}NARRATOR")
        values["genres"] = tuple(self._decode(g) for g in tags.get("\xa9gen", []))
        values["composer"] = first("\xa9wrt")
        return FileTags(**values)

    def write(self, file_path: Path, change_map: ChangeMap) -> int:
        from mutagen.mp4 import MP4FreeForm

        audio = self._load(file_path)
        if audio.tags is None:
            audio.add_tags()
        tags = audio.tags

        for slot, change in change_map.changes.items():
            new = change.new
            if slot in self.TEXT_ATOMS:
                tags[self.TEXT_ATOMS[slot]] = [new]
            elif slot in self.FREEFORM_ATOMS:
                key = f"{self.FREEFORM_PREFIX}{self.FREEFORM_ATOMS[slot]}"
                tags[key] = [MP4FreeForm(str(new).encode("utf-8"))]
            elif slot is TagSlot.GENRE:
                if new:
                    tags["\xa9gen"] = list(new)
                elif "\xa9gen" in tags:
                    del tags["\xa9gen"]

        try:
            audio.save()
        except (MutagenError, OSError) as e:
            raise CodecError(file_path, f"Could not save MP4 tags ({e})") from e
        return len(change_map)

    def read_raw(self, file_path: Path) -> dict[str, list[str]]:
        audio = self._load(file_path)
        if audio.tags is None:
            return {}
        result: dict[str, list[str]] = {}
        for key, values in audio.tags.items():
            if key == "covr":
                result[key] = [f"<binary {len(v)} bytes>" for v in values]
            elif isinstance(values, list):
                result[key] = [self._decode(v) for v in values]
            else:
                result[key] = [self._decode(values)]
        return result


class VorbisCodec(TagCodec):
    """Vorbis comments for FLAC, Ogg Vorbis and Opus files."""

    format_name = "vorbis"

    FIELD_KEYS = {
        TagSlot.TITLE: "TITLE",
        TagSlot.SUBTITLE: "SUBTITLE",
        TagSlot.ALBUM: "ALBUM",
        TagSlot.ARTIST: "ARTIST",
        TagSlot.ALBUM_ARTIST: "ALBUMARTIST",
        TagSlot.NARRATOR: "NARRATOR",
        TagSlot.GROUPING: "GROUPING",
        TagSlot.SERIES: "SERIES",
        TagSlot.SERIES_PART: "SERIES-PART",
        TagSlot.YEAR: "DATE",
        TagSlot.COMMENT: "COMMENT",
        TagSlot.PUBLISHER: "PUBLISHER",
        TagSlot.ISBN: "ISBN",
    }

    # Read-only fallbacks used by other taggers
    READ_FALLBACKS = {
        TagSlot.COMMENT: "DESCRIPTION",
        TagSlot.PUBLISHER: "ORGANIZATION",
    }

    def _load(self, file_path: Path) -> Any:
        from mutagen import File

        try:
            audio = File(file_path)
        except (MutagenError, OSError) as e:
            raise CodecError(file_path, f"Could not read Vorbis comments ({e})") from e
        if audio is None:
            raise CodecError(file_path, "Unrecognized audio container")
        return audio

    def read(self, file_path: Path) -> FileTags:
        audio = self._load(file_path)
        tags = audio.tags
        if tags is None:
            return FileTags()

        def first(key: str) -> str | None:
            values = tags.get(key)
            return str(values[0]) if values else None

        values: dict[str, Any] = {}
        for slot, key in self.FIELD_KEYS.items():
            values[slot.value] = first(key)
            if values[slot.value] is None and slot in self.READ_FALLBACKS:
                values[slot.value] = first(self.READ_FALLBACKS[slot])
        values["genres"] = tuple(tags.get("GENRE", []))
        values["composer"] = first("COMPOSER")
        return FileTags(**values)

    def write(self, file_path: Path, change_map: ChangeMap) -> int:
        audio = self._load(file_path)
        if audio.tags is None:
            audio.add_tags()
        tags = audio.tags

        for slot, change in change_map.changes.items():
            new = change.new
            if slot is TagSlot.GENRE:
                if new:
                    tags["GENRE"] = list(new)
                elif "GENRE" in tags:
                    del tags["GENRE"]
            else:
                tags[self.FIELD_KEYS[slot]] = [new]

        try:
            audio.save()
        except (MutagenError, OSError) as e:
            raise CodecError(file_path, f"Could not save Vorbis comments ({e})") from e
        return len(change_map)

    def read_raw(self, file_path: Path) -> dict[str, list[str]]:
        audio = self._load(file_path)
        if audio.tags is None:
            return {}
        raw = audio.tags.as_dict()
        return {key.upper(): [str(v) for v in values] for key, values in raw.items()}


def get_codec_for_file(file_path: Path) -> TagCodec:
    """Get the codec for a file based on its extension."""
    suffix = file_path.suffix.lower()

    if suffix == ".mp3":
        return ID3Codec()
    elif suffix in (".m4b", ".m4a", ".mp4"):
        return MP4Codec()
    elif suffix in (".flac", ".ogg", ".opus"):
        return VorbisCodec()
    else:
        raise UnsupportedFormatError(file_path)


def inspect_tags(file_path: Path) -> dict[str, Any]:
    """Logical record plus raw physical keys of one file."""
    codec = get_codec_for_file(file_path)
    return {
        "path": str(file_path),
        "codec": codec.format_name,
        "tags": codec.read(file_path).to_dict(),
        "raw": codec.read_raw(file_path),
    }
