"""Audiobookshelf sync: push canonical metadata to a remote library.

Local files are matched to remote library items by normalized path, then by
walking up ancestor directories (a remote item is usually the book folder),
then by fuzzy title/author lookup. Each remote item is updated at most once
per push.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Sequence
from dataclasses import dataclass
from typing import Any

import httpx
from rapidfuzz import fuzz

from tome_tagger.config import AudiobookshelfConfig
from tome_tagger.errors import SyncError
from tome_tagger.models import Metadata, PushResult, SyncItem, SyncOutcome
from tome_tagger.normalize import normalize_author, normalize_title
from tome_tagger.providers.base import USER_AGENT
from tome_tagger.rate_limiter import TokenBucket

log = logging.getLogger(__name__)

NOT_CONFIGURED = "Audiobookshelf not configured: set base URL, API token and library ID"

_AUTHOR_SPLIT_RE = re.compile(r"\s+&\s+|\s+and\s+|\s*[;/|]\s*")


def split_authors(author: str | None) -> list[str]:
    """Split ``"A & B"``, ``"A and B"``, ``"A; B"``, ``"A / B"`` into names."""
    if not author or not author.strip():
        return []
    return [name.strip() for name in _AUTHOR_SPLIT_RE.split(author.strip()) if name.strip()]


def normalize_path(path: str) -> str:
    """Backslashes to slashes, trailing slashes stripped (root stays ``/``)."""
    normalized = path.strip().replace("\\", "/")
    while len(normalized) > 1 and normalized.endswith("/"):
        normalized = normalized[:-1]
    return normalized


def build_update_payload(metadata: Metadata) -> dict[str, Any]:
    """PATCH body for ``/api/items/{id}/media``."""
    fields: dict[str, Any] = {}
    if metadata.title:
        fields["title"] = metadata.title
    if metadata.subtitle:
        fields["subtitle"] = metadata.subtitle
    if metadata.description:
        fields["description"] = metadata.description
    if metadata.publisher:
        fields["publisher"] = metadata.publisher
    if metadata.year:
        fields["publishedYear"] = metadata.year
    if metadata.isbn:
        fields["isbn"] = metadata.isbn
    if metadata.narrator:
        fields["narrators"] = split_authors(metadata.narrator)
    if metadata.genres:
        fields["genres"] = list(metadata.genres)

    authors = split_authors(metadata.author)
    if authors:
        fields["authors"] = [{"id": f"new-{i}", "name": name} for i, name in enumerate(authors, 1)]

    if metadata.series:
        series: dict[str, Any] = {"id": "new-1", "name": metadata.series}
        if metadata.sequence:
            series["sequence"] = metadata.sequence
        fields["series"] = [series]

    return {"metadata": fields}


@dataclass(frozen=True)
class LibraryItem:
    """A remote library item, reduced to what matching needs."""

    id: str
    path: str
    title: str | None = None
    author: str | None = None

    @classmethod
    def from_api(cls, data: dict[str, Any]) -> LibraryItem:
        metadata = (data.get("media") or {}).get("metadata") or {}
        return cls(
            id=str(data["id"]),
            path=data.get("path") or "",
            title=metadata.get("title"),
            author=metadata.get("authorName"),
        )


class AudiobookshelfClient:
    """Minimal Audiobookshelf REST client (bearer token auth)."""

    def __init__(
        self,
        base_url: str,
        api_token: str,
        library_id: str,
        timeout: float = 30.0,
        page_size: int = 200,
        rate_limiter: TokenBucket | None = None,
        client: httpx.Client | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.library_id = library_id
        self.page_size = page_size
        self.rate_limiter = rate_limiter
        self.configured = bool(base_url.strip() and api_token.strip() and library_id.strip())
        self._headers = {"Authorization": f"Bearer {api_token}"}
        self._client = client or httpx.Client(timeout=timeout, headers={"User-Agent": USER_AGENT})

    @classmethod
    def from_config(cls, config: AudiobookshelfConfig, **kwargs: Any) -> AudiobookshelfClient:
        return cls(
            base_url=config.base_url,
            api_token=config.api_token,
            library_id=config.library_id,
            timeout=config.timeout_s,
            page_size=config.page_size,
            **kwargs,
        )

    def close(self) -> None:
        self._client.close()

    def _request(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        if self.rate_limiter:
            self.rate_limiter.acquire()
        try:
            response = self._client.request(
                method, f"{self.base_url}{path}", headers=self._headers, **kwargs
            )
        except httpx.HTTPError as e:
            raise SyncError(f"Failed to reach Audiobookshelf: {e}") from e
        if response.is_error:
            raise SyncError(
                f"Audiobookshelf responded with {response.status_code}",
                status_code=response.status_code,
            )
        return response

    def list_items(self) -> list[LibraryItem]:
        """All items of the configured library, fetched page by page."""
        items: list[LibraryItem] = []
        page = 0
        while True:
            response = self._request(
                "GET",
                f"/api/libraries/{self.library_id}/items",
                params={"limit": self.page_size, "page": page},
            )
            try:
                results = response.json().get("results", [])
            except ValueError as e:
                raise SyncError(f"Failed to parse Audiobookshelf library items: {e}") from e
            items.extend(LibraryItem.from_api(r) for r in results if r.get("id"))
            if len(results) < self.page_size:
                break
            page += 1
        log.debug(f"Fetched {len(items)} Audiobookshelf items in {page + 1} pages")
        return items

    def update_media(self, item_id: str, metadata: Metadata) -> bool:
        """PATCH an item's media metadata. Returns the server's ``updated`` flag."""
        response = self._request(
            "PATCH", f"/api/items/{item_id}/media", json=build_update_payload(metadata)
        )
        try:
            return bool(response.json().get("updated", False))
        except ValueError as e:
            raise SyncError(
                f"Failed to parse Audiobookshelf response: {e}", status_code=response.status_code
            ) from e

    def trigger_scan(self) -> None:
        """Ask the server to rescan the library."""
        self._request("POST", f"/api/libraries/{self.library_id}/scan")
        log.info("Audiobookshelf library rescan triggered")

    def test_connection(self) -> tuple[bool, str]:
        if not self.configured:
            return False, NOT_CONFIGURED
        try:
            self._request("GET", f"/api/libraries/{self.library_id}")
        except SyncError as e:
            return False, str(e)
        return True, f"Connected to {self.base_url}"


class ItemMatcher:
    """Resolves local file paths to remote library items."""

    def __init__(self, items: Sequence[LibraryItem], min_score: float = 90.0):
        self.by_path = {normalize_path(item.path): item for item in items if item.path}
        self.items = list(items)
        self.min_score = min_score

    def by_ancestor(self, path: str) -> LibraryItem | None:
        normalized = normalize_path(path)
        if not normalized:
            return None
        if normalized in self.by_path:
            return self.by_path[normalized]
        current = normalized
        while "/" in current:
            current = current.rsplit("/", 1)[0]
            if not current:
                return self.by_path.get("/")
            if current in self.by_path:
                return self.by_path[current]
        return None

    def by_metadata(self, metadata: Metadata) -> LibraryItem | None:
        if not metadata.title:
            return None
        title = normalize_title(metadata.title)
        author = normalize_author(metadata.author)
        best: tuple[float, LibraryItem] | None = None
        for item in self.items:
            score = fuzz.token_set_ratio(title, normalize_title(item.title))
            if author and item.author:
                score = min(score, fuzz.token_set_ratio(author, normalize_author(item.author)))
            if score >= self.min_score and (best is None or score > best[0]):
                best = (score, item)
        return best[1] if best else None

    def match(self, item: SyncItem) -> LibraryItem | None:
        return self.by_ancestor(str(item.path)) or self.by_metadata(item.metadata)


class SyncClient:
    """Pushes canonical metadata to Audiobookshelf with per-item outcomes."""

    def __init__(self, client: AudiobookshelfClient):
        self.client = client

    def push_updates(self, items: Sequence[SyncItem]) -> PushResult:
        """
        Push metadata for local files.

        Never raises for per-item problems: configuration and listing
        failures fail every item with the same reason.
        """
        result = PushResult(list(items))
        if not items:
            return result

        if not self.client.configured:
            self._fail_all(result.items, NOT_CONFIGURED)
            return result

        try:
            library_items = self.client.list_items()
        except SyncError as e:
            log.error(f"Listing Audiobookshelf items failed: {e}")
            self._fail_all(result.items, str(e), e.status_code)
            return result

        matcher = ItemMatcher(library_items)
        pushed: dict[str, SyncItem] = {}
        for item in result.items:
            remote = matcher.match(item)
            if remote is None:
                item.outcome = SyncOutcome.UNMATCHED
                log.info(f"No Audiobookshelf item matches {item.path}")
                continue
            item.item_id = remote.id
            first = pushed.get(remote.id)
            if first is not None:
                # Another file of the same book already pushed this item
                item.outcome, item.reason, item.status_code = (
                    first.outcome,
                    first.reason,
                    first.status_code,
                )
                continue
            pushed[remote.id] = item
            self._push_one(item, remote)

        log.info(
            f"Push finished: {result.updated} updated, {len(result.unmatched)} unmatched, "
            f"{len(result.failed)} failed"
        )
        return result

    def _push_one(self, item: SyncItem, remote: LibraryItem) -> None:
        try:
            updated = self.client.update_media(remote.id, item.metadata)
        except SyncError as e:
            log.warning(f"Audiobookshelf update failed for {item.path}: {e}")
            item.outcome = SyncOutcome.FAILED
            item.reason = str(e)
            item.status_code = e.status_code
            return
        if updated:
            item.outcome = SyncOutcome.UPDATED
        else:
            item.outcome = SyncOutcome.FAILED
            item.reason = f"Audiobookshelf reported no updates for {remote.path}"

    @staticmethod
    def _fail_all(items: Sequence[SyncItem], reason: str, status_code: int | None = None) -> None:
        for item in items:
            item.outcome = SyncOutcome.FAILED
            item.reason = reason
            item.status_code = status_code


## Tests


def test_split_authors():
    assert split_authors("Jane Doe & John Roe") == ["Jane Doe", "John Roe"]
    assert split_authors("Jane Doe and John Roe; Max Poe") == ["Jane Doe", "John Roe", "Max Poe"]
    assert split_authors("Jane Doe") == ["Jane Doe"]
    assert split_authors("  ") == []


def test_normalize_path():
    assert normalize_path("C:\\Books\\BookA\\") == "C:/Books/BookA"
    assert normalize_path("/") == "/"


def test_build_update_payload():
    payload = build_update_payload(
        Metadata(
            title="BookA",
            author="Jane Doe & John Roe",
            narrator="Sam Reader",
            year="2021",
            series="Mysteries of A",
            sequence="2",
            genres=("Mystery",),
        )
    )["metadata"]
    assert payload["authors"] == [
        {"id": "new-1", "name": "Jane Doe"},
        {"id": "new-2", "name": "John Roe"},
    ]
    assert payload["narrators"] == ["Sam Reader"]
    assert payload["publishedYear"] == "2021"
    assert payload["series"] == [{"id": "new-1", "name": "Mysteries of A", "sequence": "2"}]
    assert "subtitle" not in payload


def test_matcher_walks_ancestors():
    matcher = ItemMatcher([LibraryItem("li_1", "/audiobooks/Jane Doe/BookA")])
    assert matcher.by_ancestor("/audiobooks/Jane Doe/BookA/BookA - Part1.m4b").id == "li_1"
    assert matcher.by_ancestor("/elsewhere/BookA.m4b") is None
