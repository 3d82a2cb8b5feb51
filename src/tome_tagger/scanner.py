"""
Library scanner: discovers audio files, reads their tags and groups them.

Grouping is a partition: every readable file lands in exactly one group.
Untagged chapter files take their folder name as title. Files sharing a
normalized author+title become one multi-file book; the remaining files
sharing an author+series with distinct sequence numbers form a series;
everything else is a single.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from collections.abc import Callable, Iterable
from dataclasses import dataclass, replace
from pathlib import Path

from tome_tagger.batch import WorkerPool, collect_audio_files
from tome_tagger.codec import SUPPORTED_EXTENSIONS, TagCodec, get_codec_for_file
from tome_tagger.config import Config
from tome_tagger.models import AudioFile, Group, GroupKind, ScanError, ScanResult
from tome_tagger.normalize import (
    clean_title,
    natural_sort_key,
    normalize_author,
    normalize_title,
    parse_book_number,
    parse_filename,
    parse_grouping,
    parse_part,
    sequence_sort_key,
)

log = logging.getLogger(__name__)

CodecFactory = Callable[[Path], TagCodec]


@dataclass(frozen=True)
class FileHints:
    """What a file's tags and names say about the book it belongs to."""

    title: str | None
    author: str | None
    series: str | None = None
    sequence: str | None = None
    part: int | None = None

    @property
    def title_key(self) -> str:
        return normalize_title(self.title)

    @property
    def author_key(self) -> str:
        return normalize_author(self.author)

    @property
    def series_key(self) -> str:
        return normalize_title(self.series)


def extract_hints(audio_file: AudioFile) -> FileHints:
    """
    Derive grouping and query hints for one file.

    Title comes from the album tag, then the title tag, then the cleaned
    filename. Series/sequence come from the dedicated tags, then the grouping
    tag, then ``(Book #N)`` markers in the file or folder name.
    """
    tags = audio_file.tags
    from_name = parse_filename(audio_file.path.stem)

    title = clean_title(tags.album) or clean_title(tags.title) or from_name.title
    author = tags.album_artist or tags.artist

    series, sequence = tags.series, tags.series_part
    if not series or not sequence:
        grouped_series, grouped_sequence = parse_grouping(tags.grouping)
        series = series or grouped_series
        sequence = sequence or grouped_sequence

    if not sequence:
        sequence = from_name.sequence or parse_book_number(audio_file.path.parent.name)
        if sequence and not series and from_name.sequence:
            # "<Series>/<Title> (Book 2).mp3": the folder names the series
            series = clean_title(audio_file.path.parent.name)

    return FileHints(
        title=title,
        author=author,
        series=series,
        sequence=sequence,
        part=audio_file.part,
    )


def _sequence_identity(sequence: str) -> str:
    # "01" and "1" are the same book
    try:
        return str(float(sequence))
    except ValueError:
        return sequence.strip().casefold()


def _with_folder_titles(
    hinted: list[tuple[AudioFile, FileHints]],
) -> list[tuple[AudioFile, FileHints]]:
    """
    Title untagged chapter files after their folder.

    ``BookA/01 - Opening.mp3``, ``BookA/02 - The Road.mp3``: siblings without
    an album tag that each carry a distinct track or part index and a distinct
    name are chapters of the book the folder is named after.
    """
    by_folder: dict[Path, list[int]] = defaultdict(list)
    for i, (audio_file, _) in enumerate(hinted):
        by_folder[audio_file.path.parent].append(i)

    result = list(hinted)
    for folder, indices in by_folder.items():
        members = [hinted[i] for i in indices]
        folder_title = clean_title(folder.name)
        parts = [f.part for f, _ in members]
        if (
            len(members) < 2
            or not folder_title
            or any(f.tags.album for f, _ in members)
            or None in parts
            or len(set(parts)) != len(parts)
            or len({h.title_key for _, h in members}) != len(members)
            or len({h.author_key for _, h in members}) != 1
        ):
            continue
        log.debug(f"Titling {len(members)} chapter files after folder {folder.name!r}")
        for i in indices:
            audio_file, hints = hinted[i]
            result[i] = (audio_file, replace(hints, title=folder_title))
    return result


class LibraryScanner:
    """Walks library roots, reads tags in the worker pool and forms Groups."""

    def __init__(
        self,
        config: Config | None = None,
        pool: WorkerPool | None = None,
        codec_factory: CodecFactory = get_codec_for_file,
        extensions: Iterable[str] = SUPPORTED_EXTENSIONS,
    ):
        self.config = config or Config()
        self.pool = pool or WorkerPool(self.config.max_workers)
        self.codec_factory = codec_factory
        self.extensions = frozenset(extensions)

    def _read_file(self, path: Path) -> AudioFile:
        codec = self.codec_factory(path)
        tags = codec.read(path)
        return AudioFile(
            path=path,
            tags=tags,
            format=path.suffix.lower().lstrip("."),
            size=path.stat().st_size,
            part=parse_part(path.stem),
        )

    def scan(
        self,
        paths: Iterable[Path],
        progress_callback: Callable[[int, int], None] | None = None,
    ) -> ScanResult:
        """
        Scan files and directories into groups.

        Args:
            paths: Library roots or individual files
            progress_callback: Called with (files read, total files)

        Returns:
            ScanResult with the groups and per-path errors
        """
        files, problems = collect_audio_files(paths, self.extensions)
        errors = [ScanError(path, reason) for path, reason in problems]
        log.info(f"Discovered {len(files)} audio files")

        pool = self.pool.scaled(self.config.scan_parallelism_factor)
        audio_files: list[AudioFile] = []
        for outcome in pool.run(files, self._read_file, progress_callback):
            if outcome.ok and outcome.value is not None:
                audio_files.append(outcome.value)
            else:
                log.warning(f"Failed to read tags from {outcome.item}: {outcome.error}")
                errors.append(ScanError(outcome.item, str(outcome.error)))

        groups = group_files(audio_files)
        log.info(f"Formed {len(groups)} groups from {len(audio_files)} files")
        return ScanResult(groups=groups, errors=errors)


def group_files(audio_files: Iterable[AudioFile]) -> list[Group]:
    """Partition files into multi-file, series and single groups."""
    hinted = _with_folder_titles([(f, extract_hints(f)) for f in audio_files])
    groups: list[Group] = []

    by_title: dict[tuple[str, str], list[tuple[AudioFile, FileHints]]] = defaultdict(list)
    for audio_file, hints in hinted:
        if hints.title_key:
            by_title[(hints.author_key, hints.title_key)].append((audio_file, hints))

    claimed: set[Path] = set()
    for (author_key, title_key), members in by_title.items():
        if len(members) < 2:
            continue
        members.sort(
            key=lambda m: (
                m[0].part is None,
                m[0].part or 0,
                natural_sort_key(m[0].filename),
            )
        )
        groups.append(
            Group(
                key=f"{author_key}|{title_key}",
                kind=GroupKind.MULTI_FILE,
                name=members[0][1].title or members[0][0].path.stem,
                files=[m[0] for m in members],
            )
        )
        claimed.update(m[0].path for m in members)

    remaining = [(f, h) for f, h in hinted if f.path not in claimed]

    by_series: dict[tuple[str, str], list[tuple[AudioFile, FileHints]]] = defaultdict(list)
    singles: list[tuple[AudioFile, FileHints]] = []
    for audio_file, hints in remaining:
        if hints.series_key and hints.sequence:
            by_series[(hints.author_key, hints.series_key)].append((audio_file, hints))
        else:
            singles.append((audio_file, hints))

    for (author_key, series_key), members in sorted(by_series.items()):
        sequences = [_sequence_identity(h.sequence or "") for _, h in members]
        if len(members) < 2 or len(set(sequences)) != len(sequences):
            singles.extend(members)
            continue
        members.sort(
            key=lambda m: (sequence_sort_key(m[1].sequence), natural_sort_key(m[0].filename))
        )
        groups.append(
            Group(
                key=f"{author_key}|series:{series_key}",
                kind=GroupKind.SERIES,
                name=members[0][1].series or series_key,
                files=[m[0] for m in members],
            )
        )

    for audio_file, hints in singles:
        if hints.title_key:
            key = f"{hints.author_key}|{hints.title_key}"
        else:
            key = f"path:{audio_file.path}"
        groups.append(
            Group(
                key=key,
                kind=GroupKind.SINGLE,
                name=hints.title or audio_file.path.stem,
                files=[audio_file],
            )
        )

    groups.sort(key=lambda g: (g.name.casefold(), g.key))
    return groups


## Tests


def _audio(path: str, **tags: object) -> AudioFile:
    from tome_tagger.models import FileTags

    p = Path(path)
    return AudioFile(
        path=p, tags=FileTags(**tags), format=p.suffix.lstrip("."), size=0, part=parse_part(p.stem)
    )


def test_extract_hints_prefers_album_and_album_artist():
    hints = extract_hints(
        _audio(
            "/lib/x/01 - Chapter One.mp3",
            album="BookA (Unabridged)",
            title="Chapter One",
            artist="Narr",
            album_artist="Jane Doe",
        )
    )
    assert hints.title == "BookA"
    assert hints.author == "Jane Doe"


def test_extract_hints_series_from_grouping_and_folder():
    hints = extract_hints(_audio("/lib/x/BookA.m4b", title="BookA", grouping="Mysteries of A #2"))
    assert (hints.series, hints.sequence) == ("Mysteries of A", "2")

    hints = extract_hints(_audio("/lib/Mysteries of A/BookB (Book 3).mp3"))
    assert hints.title == "BookB"
    assert (hints.series, hints.sequence) == ("Mysteries of A", "3")


def test_group_files_partitions():
    files = [
        _audio("/lib/BookA/BookA - Part1.m4b"),
        _audio("/lib/BookA/BookA - Part2.m4b"),
        _audio("/lib/S/One.mp3", title="One", artist="Jane Doe", series="S", series_part="1"),
        _audio("/lib/S/Two.mp3", title="Two", artist="Jane Doe", series="S", series_part="2"),
        _audio("/lib/Loose.mp3", title="Loose"),
    ]
    groups = group_files(files)

    kinds = {g.name: g.kind for g in groups}
    assert kinds == {"BookA": GroupKind.MULTI_FILE, "S": GroupKind.SERIES, "Loose": GroupKind.SINGLE}
    assert sorted(f.path for g in groups for f in g.files) == sorted(f.path for f in files)


def test_series_with_duplicate_sequence_falls_back_to_singles():
    files = [
        _audio("/lib/S/One.mp3", title="One", series="S", series_part="1"),
        _audio("/lib/S/Uno.mp3", title="Uno", series="S", series_part="01"),
    ]
    groups = group_files(files)
    assert [g.kind for g in groups] == [GroupKind.SINGLE, GroupKind.SINGLE]
