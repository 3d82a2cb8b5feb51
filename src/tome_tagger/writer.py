"""
Tag writer: applies ChangeMaps to files.

Each file is handled independently. An empty ChangeMap is a successful no-op
that never opens the file. Otherwise the file is optionally backed up, the
codec saves the change set, and the file is re-read to verify every changed
slot. Failures are reported per file and never affect other files.
"""

from __future__ import annotations

import logging
import shutil
from collections.abc import Callable, Sequence
from pathlib import Path

from tome_tagger.batch import WorkerPool
from tome_tagger.codec import TagCodec, get_codec_for_file
from tome_tagger.errors import CodecError
from tome_tagger.models import ChangeMap, WriteBatchResult, WriteResult, file_id_for

log = logging.getLogger(__name__)

BACKUP_SUFFIX = ".backup"


def backup_path_for(path: Path, backup_dir: Path | None = None) -> Path:
    """``<name>.<ext>.backup`` beside the file, or inside ``backup_dir``."""
    if backup_dir is None:
        return path.with_name(path.name + BACKUP_SUFFIX)
    # Files from different folders may share a name
    return backup_dir / f"{file_id_for(path)}-{path.name}{BACKUP_SUFFIX}"


class TagWriter:
    """Writes change sets through the codec layer using the worker pool."""

    def __init__(
        self,
        codec_factory: Callable[[Path], TagCodec] = get_codec_for_file,
        pool: WorkerPool | None = None,
    ):
        self.codec_factory = codec_factory
        self.pool = pool or WorkerPool()

    def write_file(
        self, change_map: ChangeMap, backup: bool = False, backup_dir: Path | None = None
    ) -> WriteResult:
        """
        Apply one ChangeMap.

        Args:
            change_map: Slot mutations for the file
            backup: Copy the original file before writing
            backup_dir: Directory for backups (default: beside the file)

        Returns:
            WriteResult for the file; never raises for per-file problems
        """
        path = change_map.path
        if not change_map:
            return WriteResult.success(path, 0)

        if not path.exists():
            log.warning(f"Cannot write tags, file is gone: {path}")
            return WriteResult.failed(path, "file not found")

        backup_path = None
        if backup:
            backup_path = backup_path_for(path, backup_dir)
            try:
                backup_path.parent.mkdir(parents=True, exist_ok=True)
                shutil.copy2(path, backup_path)
            except OSError as e:
                log.error(f"Backup failed for {path}: {e}")
                return WriteResult.failed(path, f"backup failed: {e}")

        try:
            codec = self.codec_factory(path)
            written = codec.write(path, change_map)
            mismatched = codec.verify(path, change_map)
        except CodecError as e:
            log.error(f"Failed to write tags to {path}: {e}")
            return WriteResult.failed(path, str(e), backup_path)
        except OSError as e:
            log.error(f"Failed to write tags to {path}: {e}")
            return WriteResult.failed(path, f"write failed: {e}", backup_path)

        if mismatched:
            slots = ", ".join(slot.value for slot in mismatched)
            log.error(f"Verification failed for {path}: {slots}")
            return WriteResult.failed(path, f"verification failed: {slots}", backup_path)

        log.info(f"Wrote {written} tag fields to {path}")
        return WriteResult.success(path, written, backup_path)

    def write_batch(
        self,
        change_maps: Sequence[ChangeMap],
        backup: bool = False,
        backup_dir: Path | None = None,
        progress_callback: Callable[[int, int], None] | None = None,
    ) -> WriteBatchResult:
        """
        Write many files concurrently.

        Returns:
            WriteBatchResult with exactly one WriteResult per ChangeMap, in
            input order. Files not started before cancellation are failed
            with reason ``cancelled``.
        """
        outcomes = self.pool.run(
            change_maps,
            lambda cm: self.write_file(cm, backup, backup_dir),
            progress_callback,
        )

        results: list[WriteResult] = []
        for outcome in outcomes:
            if outcome.ok and outcome.value is not None:
                results.append(outcome.value)
            elif outcome.cancelled:
                results.append(WriteResult.failed(outcome.item.path, "cancelled"))
            else:
                log.error(f"Unexpected error writing {outcome.item.path}: {outcome.error}")
                results.append(WriteResult.failed(outcome.item.path, str(outcome.error)))

        batch = WriteBatchResult(results)
        log.info(f"Write batch finished: {batch.success} succeeded, {batch.failed} failed")
        return batch


## Tests


def test_backup_path_for():
    assert backup_path_for(Path("/lib/BookA.m4b")) == Path("/lib/BookA.m4b.backup")
    target = backup_path_for(Path("/lib/BookA.m4b"), Path("/backups"))
    assert target.parent == Path("/backups")
    assert target.name.endswith("-BookA.m4b.backup")


def test_empty_change_map_never_touches_file():
    def factory(path: Path) -> TagCodec:
        raise AssertionError("codec must not be created")

    result = TagWriter(factory).write_file(ChangeMap(Path("/does/not/exist.m4b")))
    assert result.ok
    assert result.fields_changed == 0
