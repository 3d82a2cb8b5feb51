"""Metadata reconciliation.

Queries each enabled provider through the cache, picks the best-matching
candidate per provider and merges the candidates with an ordered table of
per-field rules:

- FIRST_NON_EMPTY: the first source (in priority order) with a value wins
- UNION_WITH_CAP: order-preserving union across sources, optionally capped
- SANITIZE_THEN_SET: first non-empty value after stripping diagnostic noise

Source order is the configured provider priority, then provider declaration
order for providers sharing a rank. The file's own tags are always the last
source, so a run with no provider results returns the embedded metadata.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, replace
from enum import StrEnum
from typing import Any

from rapidfuzz import fuzz

from tome_tagger.cache import MetadataCache
from tome_tagger.config import Config
from tome_tagger.errors import ProviderError
from tome_tagger.genres import GenrePolicy
from tome_tagger.models import AudioFile, Candidate, Group, GroupKind, Metadata
from tome_tagger.normalize import (
    BRACKETED_JUNK_RE,
    normalize_author,
    normalize_title,
    query_fingerprint,
    reliable_year,
)
from tome_tagger.providers.base import BookQuery, MetadataProvider
from tome_tagger.scanner import FileHints, extract_hints

log = logging.getLogger(__name__)


class MergeStrategy(StrEnum):
    """How a field is combined across sources."""

    FIRST_NON_EMPTY = "first_non_empty"
    UNION_WITH_CAP = "union_with_cap"
    SANITIZE_THEN_SET = "sanitize_then_set"


@dataclass(frozen=True)
class FieldRule:
    field: str
    strategy: MergeStrategy


DEFAULT_RULES: tuple[FieldRule, ...] = (
    FieldRule("title", MergeStrategy.FIRST_NON_EMPTY),
    FieldRule("subtitle", MergeStrategy.FIRST_NON_EMPTY),
    FieldRule("author", MergeStrategy.FIRST_NON_EMPTY),
    FieldRule("narrator", MergeStrategy.FIRST_NON_EMPTY),
    FieldRule("series", MergeStrategy.FIRST_NON_EMPTY),
    FieldRule("sequence", MergeStrategy.FIRST_NON_EMPTY),
    FieldRule("year", MergeStrategy.FIRST_NON_EMPTY),
    FieldRule("genres", MergeStrategy.UNION_WITH_CAP),
    FieldRule("description", MergeStrategy.SANITIZE_THEN_SET),
    FieldRule("publisher", MergeStrategy.FIRST_NON_EMPTY),
    FieldRule("isbn", MergeStrategy.FIRST_NON_EMPTY),
)

# Lines a generative provider may leak into free text
_DIAGNOSTIC_LINE_RE = re.compile(r"^\s*(?:DEBUG:|\[debug\]|Confidence:|Note:)", re.IGNORECASE)
_DEBUG_BLOCK_RE = re.compile(r"<debug>.*?</debug>", re.IGNORECASE | re.DOTALL)
_FENCE_RE = re.compile(r"^\s*```[\w-]*\s*$")


def sanitize_description(text: str | None) -> str | None:
    """Drop debug blocks, diagnostic lines and markdown fences from free text."""
    if not text:
        return None
    text = _DEBUG_BLOCK_RE.sub("", text)
    lines = [
        line.rstrip()
        for line in text.splitlines()
        if not _DIAGNOSTIC_LINE_RE.match(line) and not _FENCE_RE.match(line)
    ]
    cleaned = re.sub(r"\n{3,}", "\n\n", "\n".join(lines)).strip()
    return cleaned or None


def _first_non_empty(values: Iterable[Any]) -> Any:
    for value in values:
        if value:
            return value
    return None


def _union(values: Iterable[tuple[str, ...]], cap: int | None) -> tuple[str, ...]:
    result: list[str] = []
    for genres in values:
        for genre in genres:
            if genre not in result:
                result.append(genre)
    return tuple(result if cap is None else result[:cap])


def merge_metadata(
    sources: Sequence[Metadata],
    rules: Sequence[FieldRule] = DEFAULT_RULES,
    genre_cap: int | None = None,
) -> Metadata:
    """
    Merge records field by field.

    Args:
        sources: Records in precedence order (first wins)
        rules: One rule per field; fields without a rule are left absent
        genre_cap: Cap for UNION_WITH_CAP fields (None = no cap)

    Returns:
        The merged record
    """
    merged: dict[str, Any] = {}
    for rule in rules:
        values = [getattr(source, rule.field) for source in sources]
        if rule.strategy is MergeStrategy.FIRST_NON_EMPTY:
            merged[rule.field] = _first_non_empty(values)
        elif rule.strategy is MergeStrategy.UNION_WITH_CAP:
            merged[rule.field] = _union(values, genre_cap)
        elif rule.strategy is MergeStrategy.SANITIZE_THEN_SET:
            merged[rule.field] = _first_non_empty(sanitize_description(v) for v in values)
    return Metadata(**merged)


def seed_metadata(audio_file: AudioFile, hints: FileHints | None = None) -> Metadata:
    """Metadata already embedded in a file, used as the lowest-precedence source."""
    hints = hints or extract_hints(audio_file)
    tags = audio_file.tags
    return Metadata(
        title=hints.title,
        subtitle=tags.subtitle,
        author=hints.author,
        narrator=tags.narrator,
        series=hints.series,
        sequence=hints.sequence,
        year=reliable_year(tags.year),
        genres=tags.genres,
        description=tags.comment,
        publisher=tags.publisher,
        isbn=tags.isbn,
    )


def match_score(candidate: Metadata, query: BookQuery) -> float:
    """Token-set similarity of a candidate to the query, 0-100."""
    title_score = fuzz.token_set_ratio(
        normalize_title(query.title), normalize_title(candidate.title)
    )
    if not query.author or not candidate.author:
        return title_score
    author_score = fuzz.token_set_ratio(
        normalize_author(query.author), normalize_author(candidate.author)
    )
    return 0.7 * title_score + 0.3 * author_score


class Reconciler:
    """Builds the canonical Metadata for groups."""

    def __init__(
        self,
        providers: Sequence[MetadataProvider],
        cache: MetadataCache | None = None,
        config: Config | None = None,
        genre_policy: GenrePolicy | None = None,
        rules: Sequence[FieldRule] = DEFAULT_RULES,
    ):
        self.config = config or Config()
        self.cache = cache
        self.rules = tuple(rules)
        self.genre_policy = genre_policy or GenrePolicy(
            approved=self.config.genres.approved,
            aliases=self.config.genres.aliases,
            max_genres=self.config.genres.max_genres,
            enforce=self.config.genre_enforcement,
        )
        self.providers = self._order_providers(providers)

    def _order_providers(self, providers: Sequence[MetadataProvider]) -> list[MetadataProvider]:
        priority = self.config.providers.priority
        rank = {name: i for i, name in enumerate(priority)}
        indexed = list(enumerate(providers))
        indexed.sort(key=lambda item: (rank.get(item[1].name, len(priority)), item[0]))
        return [p for _, p in indexed if p.is_available()]

    def best_candidate(self, candidates: Sequence[Candidate], query: BookQuery) -> Candidate | None:
        """Highest-scoring candidate at or above the match threshold; first wins ties."""
        threshold = self.config.providers.min_match_score
        best: Candidate | None = None
        for candidate in candidates:
            score = match_score(candidate.metadata, query) if query.title else 100.0
            if score < threshold:
                log.debug(
                    f"Discarding {candidate.source} candidate "
                    f"{candidate.metadata.title!r} ({score:.0f})"
                )
                continue
            if best is None or score > best.score:
                best = Candidate(candidate.source, candidate.metadata, score)
        return best

    def query_provider(self, provider: MetadataProvider, query: BookQuery) -> Candidate | None:
        """
        Ask one provider through the cache.

        Provider failures are logged and yield None; reconciliation continues
        with the remaining sources.
        """
        fingerprint = query_fingerprint(provider.name, query.title, query.author)

        def fetch() -> list[dict[str, Any]]:
            return provider.to_payload(provider.lookup(query))

        try:
            if self.cache is not None:
                lookup = self.cache.lookup(fingerprint, fetch)
                if lookup.degraded:
                    log.warning(f"{provider.name}: using stale cached response")
                elif lookup.shared:
                    log.debug(f"{provider.name}: shared an in-flight lookup for {query.title!r}")
                elif lookup.hit:
                    log.debug(f"{provider.name}: cache hit for {query.title!r}")
                payload = lookup.payload
            else:
                payload = fetch()
        except ProviderError as e:
            log.warning(f"{provider.name} lookup failed for {query.title!r}: {e}")
            return None

        try:
            candidates = provider.from_payload(payload)
        except (AttributeError, KeyError, TypeError, ValueError) as e:
            log.warning(f"{provider.name}: unusable payload for {query.title!r}: {e!r}")
            return None
        return self.best_candidate(candidates, query)

    def _is_complete(self, audio_file: AudioFile) -> bool:
        tags = audio_file.tags
        return bool(tags.narrator) and self.genre_policy.all_approved(tags.genres)

    def _finalize(self, metadata: Metadata) -> Metadata:
        title = metadata.title
        if title:
            title = BRACKETED_JUNK_RE.sub("", title).strip() or title
        if self.config.genre_enforcement:
            genres = self.genre_policy.normalize(metadata.genres)
        else:
            genres = self.genre_policy.cap(metadata.genres)
        return metadata.merged_with(title=title, year=reliable_year(metadata.year), genres=genres)

    def reconcile_book(
        self, audio_file: AudioFile, hints: FileHints | None = None, context: str | None = None
    ) -> Metadata:
        """Canonical record for the book a file (or the first file of a group) belongs to."""
        hints = hints or extract_hints(audio_file)
        seed = seed_metadata(audio_file, hints)

        if self.config.skip_unchanged and self._is_complete(audio_file):
            log.info(f"Skipping provider lookups for {hints.title!r}: tags already complete")
            return self._finalize(seed)

        query = BookQuery(
            title=hints.title,
            author=hints.author,
            series=hints.series,
            sequence=hints.sequence,
            context=context,
        )
        sources: list[Metadata] = []
        for provider in self.providers:
            candidate = self.query_provider(provider, query)
            if candidate is not None:
                log.debug(
                    f"{provider.name} matched {candidate.metadata.title!r} ({candidate.score:.0f})"
                )
                sources.append(self._fold_genres(candidate.metadata))
        sources.append(self._fold_genres(seed))

        if len(sources) == 1:
            log.info(f"No provider results for {hints.title!r}; keeping embedded metadata")

        merged = merge_metadata(sources, self.rules, self.config.genres.max_genres)
        return self._finalize(merged)

    def _fold_genres(self, metadata: Metadata) -> Metadata:
        # Unapproved genres are dropped per source so they never occupy the cap
        if not self.config.genre_enforcement:
            return metadata
        return metadata.merged_with(genres=self.genre_policy.fold(metadata.genres))

    def reconcile(self, group: Group) -> Metadata | None:
        """
        Fill ``group.metadata`` (and ``member_metadata`` for series groups).

        Returns:
            The group-level record, or None for an empty group
        """
        if not group.files:
            return None

        if group.kind is GroupKind.SERIES:
            members: list[Metadata] = []
            for audio_file in group.files:
                metadata = self.reconcile_book(audio_file, context=self._context([audio_file]))
                group.member_metadata[audio_file.path] = metadata
                members.append(metadata)
            group.metadata = self._series_metadata(members)
        else:
            first = group.files[0]
            hints = extract_hints(first)
            if group.kind is GroupKind.MULTI_FILE:
                # Chapter files may be titled after their folder
                hints = replace(hints, title=group.name)
            group.metadata = self.reconcile_book(first, hints, context=self._context(group.files))

        return group.metadata

    @staticmethod
    def _context(files: Sequence[AudioFile]) -> str:
        folder = files[0].path.parent.name
        names = ", ".join(f.path.stem for f in files[:5])
        return f"{folder}/ {names}" if folder else names

    def _series_metadata(self, members: Sequence[Metadata]) -> Metadata:
        """Series-level record: the fields members have in common."""
        shared = ("author", "narrator", "series", "genres", "publisher")
        series_rules = [r for r in self.rules if r.field in shared]
        return merge_metadata(members, series_rules, self.config.genres.max_genres)


## Tests


def test_sanitize_description():
    text = "```\nDEBUG: raw\nA gripping tale.\nConfidence: 0.9\n<debug>trace</debug>\n```"
    assert sanitize_description(text) == "A gripping tale."
    assert sanitize_description("Note: nothing else") is None


def test_merge_first_non_empty_and_union():
    audible = Metadata(title="BookA", narrator="Sam Reader", genres=("Mystery",))
    google = Metadata(title="Book A", author="Jane Doe", genres=("Thriller", "Mystery"))
    seed = Metadata(title="booka", author="J. Doe", year="2020")

    merged = merge_metadata([audible, google, seed])
    assert merged.title == "BookA"
    assert merged.author == "Jane Doe"
    assert merged.year == "2020"
    assert merged.genres == ("Mystery", "Thriller")

    assert merge_metadata([audible, google], genre_cap=1).genres == ("Mystery",)


def test_match_score_prefers_same_book():
    query = BookQuery(title="BookA", author="Jane Doe")
    assert match_score(Metadata(title="BookA", author="Jane Doe"), query) == 100
    assert match_score(Metadata(title="Completely Different"), query) < 60
