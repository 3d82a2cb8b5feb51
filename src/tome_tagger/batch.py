"""Bounded worker pool for the per-file pipeline stages.

Provides:
- Input-ordered results regardless of completion order
- Per-item error capture, so one failure never aborts a batch
- Cooperative cancellation checked before an item starts, never mid-item
- Audio file discovery in deterministic order
"""

from __future__ import annotations

import logging
import os
import threading
from collections.abc import Callable, Iterable, Iterator
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from pathlib import Path
from typing import Generic, TypeVar

from tome_tagger.codec import SUPPORTED_EXTENSIONS

log = logging.getLogger(__name__)

T = TypeVar("T")
R = TypeVar("R")

# macOS metadata files that share audio suffixes
IGNORED_NAMES = frozenset({".DS_Store"})
IGNORED_PREFIXES = ("._",)


class Cancelled(Exception):
    """Raised in place of running an item after cancellation was requested."""


class CancelToken:
    """Thread-safe cancellation flag shared between a caller and running stages."""

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    def reset(self) -> None:
        self._event.clear()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()


@dataclass
class TaskOutcome(Generic[T, R]):
    """Result of running one item: the value, or the exception it raised."""

    item: T
    value: R | None = None
    error: BaseException | None = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @property
    def cancelled(self) -> bool:
        return isinstance(self.error, Cancelled)


class WorkerPool:
    """
    Thin wrapper over ThreadPoolExecutor with a fixed worker bound.

    A new executor is created per `run` call, so stages are independent and
    leave no threads behind.
    """

    def __init__(self, max_workers: int = 10, cancel_token: CancelToken | None = None):
        if max_workers < 1:
            raise ValueError("max_workers must be >= 1")
        self.max_workers = max_workers
        self.cancel_token = cancel_token or CancelToken()

    def scaled(self, factor: int) -> WorkerPool:
        """A pool sharing this cancel token with ``max_workers * factor`` workers."""
        return WorkerPool(self.max_workers * factor, self.cancel_token)

    def run(
        self,
        items: Iterable[T],
        fn: Callable[[T], R],
        progress_callback: Callable[[int, int], None] | None = None,
    ) -> list[TaskOutcome[T, R]]:
        """
        Apply ``fn`` to every item concurrently.

        Args:
            items: Items to process
            fn: Function applied to each item; exceptions are captured per item
            progress_callback: Called with (completed, total) after each item

        Returns:
            One TaskOutcome per item, in input order
        """
        items = list(items)
        total = len(items)
        if not items:
            return []

        completed = 0
        progress_lock = threading.Lock()

        def run_one(item: T) -> TaskOutcome[T, R]:
            nonlocal completed
            if self.cancel_token.cancelled:
                outcome: TaskOutcome[T, R] = TaskOutcome(item, error=Cancelled("cancelled"))
            else:
                try:
                    outcome = TaskOutcome(item, value=fn(item))
                except Exception as e:
                    log.debug(f"Worker item failed: {e}")
                    outcome = TaskOutcome(item, error=e)
            if progress_callback:
                with progress_lock:
                    completed += 1
                    progress_callback(completed, total)
            return outcome

        workers = min(self.max_workers, total)
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="tome") as executor:
            return list(executor.map(run_one, items))


def _is_ignored(path: Path) -> bool:
    return path.name in IGNORED_NAMES or path.name.startswith(IGNORED_PREFIXES)


def collect_audio_files(
    paths: Iterable[Path],
    extensions: Iterable[str] = SUPPORTED_EXTENSIONS,
    recursive: bool = True,
) -> tuple[list[Path], list[tuple[Path, str]]]:
    """
    Collect audio files from files and directories.

    Args:
        paths: Files or directories
        extensions: Audio suffixes to include (lower-case, with dot)
        recursive: Whether to descend into subdirectories

    Returns:
        Tuple of (sorted absolute audio paths, [(path, reason)] for unusable paths)
    """
    extensions = frozenset(e.lower() for e in extensions)
    audio_files: set[Path] = set()
    problems: list[tuple[Path, str]] = []

    for path in paths:
        path = Path(path).expanduser()
        if path.is_file():
            if path.suffix.lower() in extensions and not _is_ignored(path):
                audio_files.add(path.resolve())
        elif path.is_dir():
            for dirpath, filenames in _list_dir(path, recursive, problems):
                for name in filenames:
                    candidate = Path(dirpath) / name
                    if candidate.suffix.lower() in extensions and not _is_ignored(candidate):
                        audio_files.add(candidate.resolve())
        else:
            problems.append((path, "Path does not exist"))

    return sorted(audio_files), problems


def _list_dir(
    path: Path, recursive: bool, problems: list[tuple[Path, str]]
) -> Iterator[tuple[str, list[str]]]:
    """(directory, file names) pairs under ``path``. Unreadable directories go to ``problems``."""

    def record(error: OSError) -> None:
        log.warning(f"Cannot read directory {error.filename}: {error.strerror or error}")
        problems.append((Path(error.filename or path), f"Cannot read directory: {error}"))

    if not recursive:
        try:
            names = sorted(os.listdir(path))
        except OSError as e:
            record(e)
            return
        yield str(path), [n for n in names if (path / n).is_file()]
        return

    for dirpath, dirnames, filenames in os.walk(path, onerror=record):
        dirnames.sort()
        yield dirpath, filenames


## Tests


def test_worker_pool_preserves_input_order():
    import time

    def slow_for_small(x: int) -> int:
        time.sleep(0.01 * (5 - x))
        return x * 2

    outcomes = WorkerPool(max_workers=5).run(range(5), slow_for_small)
    assert [o.value for o in outcomes] == [0, 2, 4, 6, 8]


def test_worker_pool_captures_errors():
    def processor(x: int) -> int:
        if x == 3:
            raise ValueError("Error on 3")
        return x

    outcomes = WorkerPool(max_workers=2).run([1, 2, 3, 4], processor)
    assert [o.ok for o in outcomes] == [True, True, False, True]
    assert isinstance(outcomes[2].error, ValueError)


def test_worker_pool_cancelled_before_start():
    token = CancelToken()
    token.cancel()
    outcomes = WorkerPool(max_workers=2, cancel_token=token).run([1, 2], lambda x: x)
    assert all(o.cancelled for o in outcomes)


def test_collect_audio_files(tmp_path):
    (tmp_path / "BookA.m4b").touch()
    (tmp_path / "._BookA.m4b").touch()
    (tmp_path / ".DS_Store").touch()
    (tmp_path / "cover.jpg").touch()
    subdir = tmp_path / "Series"
    subdir.mkdir()
    (subdir / "Book1.MP3").touch()

    files, problems = collect_audio_files([tmp_path, tmp_path / "missing"])
    assert [f.name for f in files] == ["BookA.m4b", "Book1.MP3"]
    assert problems[0][1] == "Path does not exist"

    files, _ = collect_audio_files([tmp_path], recursive=False)
    assert [f.name for f in files] == ["BookA.m4b"]


def _deny(real: Callable, locked: Path) -> Callable:
    def guarded(target, *args, **kwargs):
        if Path(target) == locked:
            raise PermissionError(13, "Permission denied", str(target))
        return real(target, *args, **kwargs)

    return guarded


def test_collect_audio_files_reports_unreadable_subdirectory(tmp_path, monkeypatch):
    (tmp_path / "BookA.m4b").touch()
    locked = tmp_path / "Locked"
    locked.mkdir()
    (locked / "BookB.m4b").touch()
    monkeypatch.setattr(os, "scandir", _deny(os.scandir, locked))

    files, problems = collect_audio_files([tmp_path])

    assert [f.name for f in files] == ["BookA.m4b"]
    assert [p for p, _ in problems] == [locked]
    assert "Permission denied" in problems[0][1]


def test_collect_audio_files_reports_unreadable_root_without_recursion(tmp_path, monkeypatch):
    monkeypatch.setattr(os, "listdir", _deny(os.listdir, tmp_path))

    files, problems = collect_audio_files([tmp_path], recursive=False)

    assert files == []
    assert [p for p, _ in problems] == [tmp_path]
