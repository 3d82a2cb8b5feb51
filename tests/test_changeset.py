"""Property tests for change set computation."""

from __future__ import annotations

from dataclasses import replace
from pathlib import Path

from hypothesis import given
from hypothesis import strategies as st

from tome_tagger.changeset import compute_change_map, target_values
from tome_tagger.models import AudioFile, FileTags, Metadata, TagSlot

_text = st.one_of(
    st.none(),
    st.text(alphabet="abcXYZ -'&#0123", min_size=0, max_size=12),
)
_genres = st.lists(st.sampled_from(["Mystery", "Thriller", "Crime", " ", "Romance"]), max_size=4)


@st.composite
def _metadata(draw: st.DrawFn) -> Metadata:
    return Metadata(
        title=draw(_text),
        author=draw(_text),
        narrator=draw(_text),
        series=draw(_text),
        sequence=draw(st.sampled_from([None, "1", "2", "2.5"])),
        year=draw(st.sampled_from([None, "2019", "2021"])),
        genres=tuple(draw(_genres)),
        description=draw(_text),
        publisher=draw(_text),
        isbn=draw(st.sampled_from([None, "9781234567897"])),
    )


@st.composite
def _tags(draw: st.DrawFn) -> FileTags:
    return FileTags(
        title=draw(_text),
        album=draw(_text),
        artist=draw(_text),
        album_artist=draw(_text),
        narrator=draw(_text),
        genres=tuple(draw(_genres)),
        grouping=draw(_text),
        comment=draw(_text),
        year=draw(st.sampled_from([None, "2019", "2021"])),
    )


def _apply(tags: FileTags, change_map) -> FileTags:
    updates = {
        ("genres" if slot is TagSlot.GENRE else slot.value): change.new
        for slot, change in change_map.changes.items()
    }
    return replace(tags, **updates)


@given(_metadata(), _tags(), st.one_of(st.none(), st.integers(1, 9)), st.booleans())
def test_change_map_is_deterministic_and_converges(metadata, tags, part, multi_file):
    audio = AudioFile(Path("/lib/book.m4b"), tags, "m4b", 0, part)

    first = compute_change_map(metadata, audio, multi_file=multi_file)
    second = compute_change_map(metadata, audio, multi_file=multi_file)
    assert first == second

    updated = AudioFile(audio.path, _apply(tags, first), "m4b", 0, part)
    assert not compute_change_map(metadata, updated, multi_file=multi_file)


@given(_metadata(), _tags())
def test_change_map_only_contains_differences(metadata, tags):
    audio = AudioFile(Path("/lib/book.m4b"), tags, "m4b", 0)
    change_map = compute_change_map(metadata, audio)

    for slot, change in change_map.changes.items():
        assert change.old == tags.slot_value(slot)
        assert change.new != tags.slot_value(slot)
    assert set(change_map) <= set(target_values(metadata))


def test_genres_are_discrete_entries():
    audio = AudioFile(Path("/lib/book.mp3"), FileTags(genres=("Mystery; Thriller",)), "mp3", 0)
    change_map = compute_change_map(Metadata(genres=("Mystery", "Thriller")), audio)
    assert change_map[TagSlot.GENRE].new == ("Mystery", "Thriller")
