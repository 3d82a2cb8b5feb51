"""Tests for template renaming and reorganization."""

from __future__ import annotations

from pathlib import Path

import pytest

from tome_tagger.errors import RenameCollisionError, RenameError
from tome_tagger.models import Metadata, WriteResult
from tome_tagger.rename import RenamePlanner, RenameRequest

BOOK_A = Metadata(title="BookA", author="Jane Doe", year="2021")
BOOK_B = Metadata(title="BookB", author="Jane Doe", series="Mysteries of A", sequence="2")


def _touch(path: Path, content: bytes = b"audio") -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(content)
    return path


def test_preview_in_place(tmp_path):
    source = _touch(tmp_path / "01 track.m4b")
    target = RenamePlanner().preview(source, BOOK_A)
    assert target == tmp_path / "Jane Doe - BookA (2021).m4b"
    assert source.exists()


def test_preview_reorganize_by_author_and_series(tmp_path):
    source = _touch(tmp_path / "in" / "x.mp3")
    target = RenamePlanner().preview(source, BOOK_B, reorganize=True, library_root=tmp_path / "lib")
    assert target == (
        tmp_path / "lib" / "Jane Doe" / "Mysteries of A" / "Jane Doe - Mysteries of A #2 - BookB.mp3"
    )


def test_reorganize_requires_root_and_author(tmp_path):
    source = _touch(tmp_path / "x.mp3")
    with pytest.raises(RenameError):
        RenamePlanner().preview(source, BOOK_A, reorganize=True)
    with pytest.raises(RenameError):
        RenamePlanner(library_root=tmp_path).preview(
            source, Metadata(title="BookA"), reorganize=True
        )


def test_collision_with_existing_file_is_error(tmp_path):
    source = _touch(tmp_path / "x.m4b", b"mine")
    existing = _touch(tmp_path / "Jane Doe - BookA (2021).m4b", b"theirs")

    with pytest.raises(RenameCollisionError) as exc_info:
        RenamePlanner().preview(source, BOOK_A)
    assert exc_info.value.target == existing

    result = RenamePlanner().apply(source, BOOK_A)
    assert not result.success
    assert "already exists" in (result.error or "")
    assert existing.read_bytes() == b"theirs"
    assert source.exists()


def test_already_named_file_is_not_a_collision(tmp_path):
    source = _touch(tmp_path / "Jane Doe - BookA (2021).m4b")
    result = RenamePlanner().apply(source, BOOK_A)
    assert result.success
    assert result.new_path == source


def test_multi_file_parts_get_suffix(tmp_path):
    source = _touch(tmp_path / "p2.m4b")
    target = RenamePlanner().preview(source, BOOK_A, part=2)
    assert target.name == "Jane Doe - BookA (2021) - Part 2.m4b"


def test_batch_duplicate_targets_both_rejected(tmp_path):
    first = _touch(tmp_path / "a" / "one.m4b")
    second = _touch(tmp_path / "b" / "two.m4b")
    planner = RenamePlanner()

    results = planner.apply_batch(
        [RenameRequest(first, BOOK_A), RenameRequest(second, BOOK_A)],
        reorganize=True,
        library_root=tmp_path / "lib",
    )

    assert [r.success for r in results] == [False, False]
    assert all("Another file in this batch" in (r.error or "") for r in results)
    assert first.exists() and second.exists()


def test_batch_skips_files_whose_write_failed(tmp_path):
    written = _touch(tmp_path / "one.m4b")
    failed = _touch(tmp_path / "two.m4b")
    write_results = {
        written: WriteResult.success(written, 3),
        failed: WriteResult.failed(failed, "File is read-only"),
    }

    results = RenamePlanner().apply_batch(
        [RenameRequest(written, BOOK_A), RenameRequest(failed, BOOK_B)],
        write_results=write_results,
    )

    assert results[0].success
    assert results[0].new_path == tmp_path / "Jane Doe - BookA (2021).m4b"
    assert not results[1].success
    assert results[1].error is not None and "skipped" in results[1].error
    assert failed.exists()


def test_custom_template_with_unknown_placeholder(tmp_path):
    source = _touch(tmp_path / "x.m4b")
    result = RenamePlanner("{title} - {narrator}").apply(source, BOOK_A)
    assert not result.success
    assert "narrator" in (result.error or "")
