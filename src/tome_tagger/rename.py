"""
Template-based renaming and Author/Series reorganization.

Template placeholders are ``{title} {author} {series} {sequence} {year}``.
Square-bracketed sections are optional: a section is dropped when any
placeholder inside it is empty. Placeholders outside optional sections are
required.
"""

from __future__ import annotations

import logging
import os
import re
import shutil
from collections import Counter
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path

from tome_tagger.errors import RenameCollisionError, RenameError
from tome_tagger.models import Metadata, RenameResult, WriteResult

log = logging.getLogger(__name__)

DEFAULT_TEMPLATE = "{author} - [{series} #{sequence} - ]{title}[ ({year})]"
MAX_NAME_LENGTH = 200

PLACEHOLDERS = ("title", "author", "series", "sequence", "year")

_OPTIONAL_RE = re.compile(r"\[([^\[\]]*)\]")
_PLACEHOLDER_RE = re.compile(r"\{(\w+)\}")
_ILLEGAL_RE = re.compile(r'[<>:"/\\|?*\x00-\x1f]')


def sanitize_component(name: str, max_length: int = MAX_NAME_LENGTH) -> str:
    """Make a string safe as a single path component."""
    name = _ILLEGAL_RE.sub("_", name)
    name = re.sub(r"\s+", " ", name).strip()
    name = name[:max_length].rstrip()
    # Windows rejects trailing dots and spaces
    return name.rstrip(". ")


def _values(metadata: Metadata) -> dict[str, str]:
    return {name: getattr(metadata, name) or "" for name in PLACEHOLDERS}


def render_template(template: str, metadata: Metadata) -> str:
    """
    Render a filename template.

    Raises:
        RenameError: Unknown placeholder, or a required placeholder is empty
    """
    values = _values(metadata)

    def substitute(text: str) -> str:
        def replace(match: re.Match[str]) -> str:
            name = match.group(1)
            if name not in values:
                raise RenameError(f"Unknown template placeholder: {{{name}}}")
            return values[name]

        return _PLACEHOLDER_RE.sub(replace, text)

    def optional(match: re.Match[str]) -> str:
        section = match.group(1)
        names = _PLACEHOLDER_RE.findall(section)
        if any(not values.get(name) for name in names):
            return ""
        return substitute(section)

    required = _PLACEHOLDER_RE.findall(_OPTIONAL_RE.sub("", template))
    missing = [name for name in required if name in values and not values[name]]
    if missing:
        raise RenameError(f"Missing metadata for template: {', '.join(missing)}")

    return substitute(_OPTIONAL_RE.sub(optional, template))


@dataclass(frozen=True)
class RenameRequest:
    """One file to rename, with the metadata that names it."""

    path: Path
    metadata: Metadata
    part: int | None = None


class RenamePlanner:
    """Computes target paths and moves files."""

    def __init__(self, template: str = DEFAULT_TEMPLATE, library_root: Path | None = None):
        self.template = template
        self.library_root = library_root

    def target_name(self, metadata: Metadata, suffix: str, part: int | None = None) -> str:
        stem = render_template(self.template, metadata)
        if part is not None:
            stem = f"{stem} - Part {part}"
        stem = sanitize_component(stem, MAX_NAME_LENGTH - len(suffix))
        if not stem:
            raise RenameError("Template rendered an empty filename")
        return stem + suffix

    def target_dir(
        self,
        path: Path,
        metadata: Metadata,
        reorganize: bool = False,
        library_root: Path | None = None,
    ) -> Path:
        if not reorganize:
            return path.parent
        root = library_root or self.library_root
        if root is None:
            raise RenameError("Reorganize requires a library root")
        if not metadata.author:
            raise RenameError("Reorganize requires an author")
        target = Path(root) / sanitize_component(metadata.author)
        if metadata.series:
            target = target / sanitize_component(metadata.series)
        return target

    def preview(
        self,
        path: Path,
        metadata: Metadata,
        reorganize: bool = False,
        library_root: Path | None = None,
        part: int | None = None,
    ) -> Path:
        """
        Compute the target path for a file without touching the filesystem.

        Raises:
            RenameError: Template or reorganize preconditions fail
            RenameCollisionError: Target exists and is a different file
        """
        directory = self.target_dir(path, metadata, reorganize, library_root)
        target = directory / self.target_name(metadata, path.suffix, part)
        if target.exists() and not (path.exists() and os.path.samefile(path, target)):
            raise RenameCollisionError(path, target)
        return target

    def apply(
        self,
        path: Path,
        metadata: Metadata,
        reorganize: bool = False,
        library_root: Path | None = None,
        part: int | None = None,
    ) -> RenameResult:
        """Rename one file. Errors are reported in the result, not raised."""
        try:
            target = self.preview(path, metadata, reorganize, library_root, part)
        except RenameError as e:
            log.warning(f"Rename of {path} rejected: {e}")
            return RenameResult(path, success=False, error=str(e))
        return self._move(path, target)

    def _move(self, path: Path, target: Path) -> RenameResult:
        if target == path:
            return RenameResult(path, success=True, new_path=target)
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            shutil.move(path, target)
        except OSError as e:
            log.error(f"Failed to move {path} to {target}: {e}")
            return RenameResult(path, success=False, error=str(e))
        log.info(f"Renamed {path} -> {target}")
        return RenameResult(path, success=True, new_path=target)

    def apply_batch(
        self,
        requests: Sequence[RenameRequest],
        reorganize: bool = False,
        library_root: Path | None = None,
        write_results: Mapping[Path, WriteResult] | None = None,
    ) -> list[RenameResult]:
        """
        Rename a batch of files.

        Files whose write in the same batch did not succeed are skipped. Two
        files resolving to the same target are both rejected.

        Returns:
            One RenameResult per request, in input order
        """
        planned: list[tuple[RenameRequest, Path | None, str | None]] = []
        for request in requests:
            if write_results is not None:
                write_result = write_results.get(request.path)
                if write_result is None or not write_result.ok:
                    planned.append((request, None, "skipped: tag write did not succeed"))
                    continue
            try:
                target = self.preview(
                    request.path, request.metadata, reorganize, library_root, request.part
                )
                planned.append((request, target, None))
            except RenameError as e:
                planned.append((request, None, str(e)))

        counts = Counter(target for _, target, _ in planned if target is not None)

        results: list[RenameResult] = []
        for request, target, error in planned:
            if target is None:
                results.append(RenameResult(request.path, success=False, error=error))
            elif counts[target] > 1:
                error = f"Another file in this batch renames to {target}"
                log.warning(f"Rename collision within batch: {error}")
                results.append(RenameResult(request.path, success=False, error=error))
            else:
                results.append(self._move(request.path, target))
        return results


## Tests


def test_render_template_drops_empty_optional_sections():
    meta = Metadata(title="BookA", author="Jane Doe", year="2021")
    assert render_template(DEFAULT_TEMPLATE, meta) == "Jane Doe - BookA (2021)"

    meta = Metadata(title="BookB", author="Jane Doe", series="Mysteries of A", sequence="2")
    assert render_template(DEFAULT_TEMPLATE, meta) == "Jane Doe - Mysteries of A #2 - BookB"


def test_render_template_requires_required_fields():
    try:
        render_template(DEFAULT_TEMPLATE, Metadata(title="BookA"))
        raise AssertionError("Should have raised RenameError")
    except RenameError as e:
        assert "author" in str(e)


def test_sanitize_component():
    assert sanitize_component('What? A "Tale": Part/1 ') == "What_ A _Tale__ Part_1"
    assert len(sanitize_component("x" * 300)) == MAX_NAME_LENGTH
