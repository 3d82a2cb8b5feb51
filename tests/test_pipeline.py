"""End-to-end tests through the pipeline facade with in-memory tags."""

from __future__ import annotations

from conftest import StubProvider

from tome_tagger.changeset import compute_change_map
from tome_tagger.models import GroupKind, Metadata, TagSlot
from tome_tagger.pipeline import TaggingPipeline


def _pipeline(config, library, cache, *providers) -> TaggingPipeline:
    return TaggingPipeline(
        config, providers=list(providers), cache=cache, codec_factory=library.codec_factory
    )


def test_multi_file_book_gets_discrete_genres(config, library, cache):
    library.add("BookA/BookA - Part1.m4b")
    library.add("BookA/BookA - Part2.m4b")
    provider = StubProvider(
        results=[Metadata(title="BookA", author="Jane Doe", genres=("Mystery", "Thriller"))]
    )
    pipeline = _pipeline(config, library, cache, provider)

    result = pipeline.scan([library.root])
    assert len(result.groups) == 1
    assert result.groups[0].kind is GroupKind.MULTI_FILE
    assert len(result.groups[0].files) == 2

    (group,) = pipeline.reconcile()
    assert len(provider.calls) == 1
    assert len(group.change_maps) == 2
    for audio_file in group.files:
        change_map = group.change_maps[audio_file.path]
        assert change_map[TagSlot.GENRE].new == ("Mystery", "Thriller")
        assert change_map[TagSlot.ALBUM].new == "BookA"
        assert change_map[TagSlot.ARTIST].new == "Jane Doe"
        assert change_map[TagSlot.TITLE].new == f"BookA - Part {audio_file.part}"


def test_chapter_folder_queried_by_folder_title(config, library, cache):
    for name in ("01 - Opening", "02 - The Road", "03 - Home"):
        library.add(f"Jane Doe/BookA/{name}.mp3", artist="Jane Doe")
    provider = StubProvider(results=[Metadata(title="BookA", author="Jane Doe", year="2021")])
    pipeline = _pipeline(config, library, cache, provider)
    pipeline.scan([library.root])

    (group,) = pipeline.reconcile()

    assert [q.title for q in provider.calls] == ["BookA"]
    assert group.metadata.year == "2021"
    assert all(m[TagSlot.ALBUM].new == "BookA" for m in group.change_maps.values())


def test_narrator_goes_to_narrator_slot(config, library, cache):
    library.add("BookA.m4b", album="BookA", artist="Jane Doe")
    provider = StubProvider(
        results=[Metadata(title="BookA", author="Jane Doe", narrator="John Smith")]
    )
    pipeline = _pipeline(config, library, cache, provider)
    pipeline.scan([library.root])

    (group,) = pipeline.reconcile()
    change_map = next(iter(group.change_maps.values()))

    assert change_map[TagSlot.NARRATOR].new == "John Smith"
    assert TagSlot.COMMENT not in change_map
    assert all(
        change.new != "John Smith"
        for slot, change in change_map.changes.items()
        if slot is not TagSlot.NARRATOR
    )


def test_write_then_rediff_is_empty(config, library, cache):
    path = library.add("BookA.m4b", album="BookA", artist="Jane Doe")
    provider = StubProvider(
        results=[
            Metadata(
                title="BookA",
                author="Jane Doe",
                narrator="John Smith",
                genres=("Mystery",),
                year="2021",
            )
        ]
    )
    pipeline = _pipeline(config, library, cache, provider)
    scan = pipeline.scan([library.root])
    pipeline.reconcile()

    result = pipeline.write([scan.files[0].id])
    assert (result.success, result.failed) == (1, 0)
    assert library.tags[path].narrator == "John Smith"
    assert library.tags[path].genres == ("Mystery",)

    rescanned = pipeline.scan([library.root]).files[0]
    assert not compute_change_map(pipeline.reconciler.reconcile_book(rescanned), rescanned)


def test_write_reports_unknown_ids_and_keeps_order(config, library, cache):
    library.add("BookA.m4b", album="BookA", artist="Jane Doe")
    pipeline = _pipeline(config, library, cache, StubProvider(results=[]))
    file_id = pipeline.scan([library.root]).files[0].id
    pipeline.reconcile()

    result = pipeline.write(["missing", file_id])

    assert [r.ok for r in result.results] == [False, True]
    assert result.errors[0]["error"] == "unknown file id"
    assert result.errors[0]["file_id"] == "missing"


def test_write_collapses_repeated_ids(config, library, cache):
    path = library.add("BookA.m4b", album="BookA", artist="Jane Doe")
    pipeline = _pipeline(
        config, library, cache, StubProvider(results=[Metadata(title="BookA", year="2021")])
    )
    file_id = pipeline.scan([library.root]).files[0].id
    pipeline.reconcile()

    result = pipeline.write([file_id, file_id, "missing", "missing"])

    assert [r.ok for r in result.results] == [True, False]
    assert library.writes == [path]
    assert library.tags[path].year == "2021"


def test_write_isolates_failures(config, library, cache):
    paths = [library.add(f"Book{c}.m4b", album=f"Book{c}") for c in "ABCD"]
    library.read_only.add(paths[2])
    provider = StubProvider(results=[])
    pipeline = _pipeline(config, library, cache, provider)
    files = pipeline.scan([library.root]).files
    pipeline.reconcile()

    # Force a change on every file
    changes = {
        f.id: compute_change_map(Metadata(title=f.tags.album, narrator="Sam Reader"), f)
        for f in files
    }
    result = pipeline.write([f.id for f in files], changes=changes)

    assert result.success + result.failed == len(files)
    assert result.failed == 1
    assert [e["path"] for e in result.errors] == [str(paths[2])]
    assert library.tags[paths[0]].narrator == "Sam Reader"


def test_write_and_rename_skips_failed_writes(config, library, cache):
    ok = library.add("in/BookA.m4b", album="BookA", artist="Jane Doe")
    locked = library.add("in/BookB.m4b", album="BookB", artist="Jane Doe")
    library.read_only.add(locked)
    provider = StubProvider(
        results=[
            Metadata(title="BookA", author="Jane Doe", year="2021"),
            Metadata(title="BookB", author="Jane Doe", year="2022"),
        ]
    )
    pipeline = _pipeline(config, library, cache, provider)
    files = pipeline.scan([library.root]).files
    pipeline.reconcile()

    result = pipeline.write_and_rename(
        [f.id for f in files], reorganize=True, library_root=library.root / "sorted"
    )

    assert result.write_result.failed == 1
    assert len(result.rename_results) == 1
    renamed = result.rename_results[0]
    assert renamed.success
    assert renamed.path == ok
    assert renamed.new_path == library.root / "sorted" / "Jane Doe" / "Jane Doe - BookA (2021).m4b"
    assert renamed.new_path.exists()
    assert locked.exists()


def test_series_members_keep_their_own_titles(config, library, cache):
    library.add("Saga/One.m4b", album="One", artist="Jane Doe", grouping="Saga #1")
    library.add("Saga/Two.m4b", album="Two", artist="Jane Doe", grouping="Saga #2")
    pipeline = _pipeline(config, library, cache, StubProvider(results=[]))
    pipeline.scan([library.root])

    (group,) = pipeline.reconcile()

    assert group.kind is GroupKind.SERIES
    assert group.metadata is not None
    assert group.metadata.series == "Saga"
    titles = [group.metadata_for(f).title for f in group.files]
    assert titles == ["One", "Two"]
    sequences = [group.metadata_for(f).sequence for f in group.files]
    assert sequences == ["1", "2"]


def test_clear_cache_and_config(config, library, cache, tmp_path):
    pipeline = _pipeline(config, library, cache, StubProvider())
    cache.put("fingerprint", [])

    assert pipeline.clear_cache() == 1
    assert pipeline.get_config() is config

    config.max_workers = 3
    saved = pipeline.save_config(config, tmp_path / "config.yaml")
    assert saved.exists()
    assert "max_workers: 3" in saved.read_text()


def test_sync_items_limited_to_written_files(config, library, cache):
    ok = library.add("BookA.m4b", album="BookA", artist="Jane Doe")
    locked = library.add("BookB.m4b", album="BookB", artist="Jane Doe")
    library.read_only.add(locked)
    provider = StubProvider(
        results=[
            Metadata(title="BookA", author="Jane Doe", year="2021"),
            Metadata(title="BookB", author="Jane Doe", year="2022"),
        ]
    )
    pipeline = _pipeline(config, library, cache, provider)
    files = pipeline.scan([library.root]).files
    pipeline.reconcile()

    written = pipeline.write([f.id for f in files])

    assert written.failed == 1
    assert {item.path for item in pipeline.sync_items()} == {ok, locked}
    assert [item.path for item in pipeline.sync_items(written=written)] == [ok]
