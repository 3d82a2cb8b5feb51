"""
Change set computation: canonical Metadata vs. a file's current tags.

Pure functions. A slot appears in a ChangeMap only when its target value
differs from the current one, so applying a ChangeMap and diffing again
yields an empty map. Absent metadata fields never clear a tag.
"""

from __future__ import annotations

from collections.abc import Callable, Collection
from pathlib import Path

from tome_tagger.models import (
    AudioFile,
    ChangeMap,
    FieldChange,
    Group,
    GroupKind,
    Metadata,
    TagSlot,
)
from tome_tagger.normalize import format_grouping

# Metadata field -> slots it fills
SLOT_MAPPING: dict[str, tuple[TagSlot, ...]] = {
    "title": (TagSlot.TITLE, TagSlot.ALBUM),
    "subtitle": (TagSlot.SUBTITLE,),
    "author": (TagSlot.ARTIST, TagSlot.ALBUM_ARTIST),
    "narrator": (TagSlot.NARRATOR,),
    "genres": (TagSlot.GENRE,),
    "series": (TagSlot.GROUPING, TagSlot.SERIES),
    "sequence": (TagSlot.SERIES_PART,),
    "year": (TagSlot.YEAR,),
    "description": (TagSlot.COMMENT,),
    "publisher": (TagSlot.PUBLISHER,),
    "isbn": (TagSlot.ISBN,),
}

TagValue = str | tuple[str, ...]


def _comparable(value: TagValue | None) -> TagValue | None:
    if isinstance(value, tuple):
        return tuple(v.strip() for v in value if v.strip())
    if value is None:
        return None
    return value.strip() or None


def part_title(title: str, part: int | None) -> str:
    return f"{title} - Part {part}" if part is not None else title


def target_values(
    metadata: Metadata, part: int | None = None, multi_file: bool = False
) -> dict[TagSlot, TagValue]:
    """
    Slot values a file should carry for the given metadata.

    Args:
        metadata: Canonical record
        part: Part number of the file within a multi-file book
        multi_file: Whether the file is one part of a multi-file book

    Returns:
        Target value per slot, for present fields only
    """
    targets: dict[TagSlot, TagValue] = {}

    if metadata.title:
        targets[TagSlot.TITLE] = part_title(metadata.title, part) if multi_file else metadata.title
        targets[TagSlot.ALBUM] = metadata.title
    if metadata.subtitle:
        targets[TagSlot.SUBTITLE] = metadata.subtitle
    if metadata.author:
        targets[TagSlot.ARTIST] = metadata.author
        targets[TagSlot.ALBUM_ARTIST] = metadata.author
    if metadata.narrator:
        targets[TagSlot.NARRATOR] = metadata.narrator
    if metadata.genres:
        targets[TagSlot.GENRE] = metadata.genres
    if metadata.series:
        targets[TagSlot.GROUPING] = format_grouping(metadata.series, metadata.sequence)
        targets[TagSlot.SERIES] = metadata.series
        if metadata.sequence:
            targets[TagSlot.SERIES_PART] = metadata.sequence
    if metadata.year:
        targets[TagSlot.YEAR] = metadata.year
    if metadata.description:
        targets[TagSlot.COMMENT] = metadata.description
    if metadata.publisher:
        targets[TagSlot.PUBLISHER] = metadata.publisher
    if metadata.isbn:
        targets[TagSlot.ISBN] = metadata.isbn

    return targets


def compute_change_map(
    metadata: Metadata,
    audio_file: AudioFile,
    supported: Collection[TagSlot] | None = None,
    multi_file: bool = False,
) -> ChangeMap:
    """
    Minimal ChangeMap bringing one file's tags in line with metadata.

    Args:
        metadata: Canonical record for the file
        audio_file: File with its current tags
        supported: Slots the file's codec can store (None = all)
        multi_file: Whether the file is one part of a multi-file book

    Returns:
        ChangeMap containing only differing slots
    """
    change_map = ChangeMap(path=audio_file.path)
    targets = target_values(metadata, audio_file.part, multi_file)

    for slot, new in targets.items():
        if supported is not None and slot not in supported:
            continue
        old = audio_file.tags.slot_value(slot)
        if _comparable(old) != _comparable(new):
            change_map.changes[slot] = FieldChange(old=old, new=new)

    return change_map


def compute_group_changes(
    group: Group,
    supported_for: Callable[[Path], Collection[TagSlot] | None] | None = None,
) -> dict[Path, ChangeMap]:
    """
    ChangeMaps for every file of a reconciled group.

    Files without applicable metadata get an empty ChangeMap.
    """
    multi_file = group.kind is GroupKind.MULTI_FILE
    result: dict[Path, ChangeMap] = {}
    for audio_file in group.files:
        metadata = group.metadata_for(audio_file)
        if metadata is None:
            result[audio_file.path] = ChangeMap(path=audio_file.path)
            continue
        supported = supported_for(audio_file.path) if supported_for else None
        result[audio_file.path] = compute_change_map(metadata, audio_file, supported, multi_file)
    return result


## Tests


def _file(path: str = "/lib/BookA.m4b", part: int | None = None, **tags: object) -> AudioFile:
    from tome_tagger.models import FileTags

    return AudioFile(Path(path), FileTags(**tags), "m4b", 0, part)


def test_change_map_only_differing_slots():
    audio = _file(title="BookA", album="BookA", artist="jane doe")
    meta = Metadata(title="BookA", author="Jane Doe")
    change_map = compute_change_map(meta, audio)
    assert set(change_map) == {TagSlot.ARTIST, TagSlot.ALBUM_ARTIST}
    assert change_map[TagSlot.ARTIST].old == "jane doe"


def test_absent_fields_never_clear():
    audio = _file(title="BookA", album="BookA", narrator="Sam Reader", comment="kept")
    assert not compute_change_map(Metadata(title="BookA"), audio)


def test_multi_file_part_titles():
    audio = _file("/lib/BookA - Part2.m4b", part=2, title="BookA - Part2")
    change_map = compute_change_map(Metadata(title="BookA"), audio, multi_file=True)
    assert change_map[TagSlot.TITLE].new == "BookA - Part 2"
    assert change_map[TagSlot.ALBUM].new == "BookA"


def test_series_fills_grouping_and_discrete_slots():
    meta = Metadata(title="BookB", series="Mysteries of A", sequence="2")
    changes = compute_change_map(meta, _file()).new_values()
    assert changes[TagSlot.GROUPING] == "Mysteries of A #2"
    assert changes[TagSlot.SERIES] == "Mysteries of A"
    assert changes[TagSlot.SERIES_PART] == "2"


def test_unsupported_slots_skipped():
    meta = Metadata(title="BookA", isbn="9781234567897")
    change_map = compute_change_map(meta, _file(), supported={TagSlot.TITLE})
    assert list(change_map) == [TagSlot.TITLE]
