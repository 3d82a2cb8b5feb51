"""
Google Books volumes API provider.

Strong on ISBN, publisher, publication date and description; has no
narrator data. An API key is optional but raises the quota.
"""

from __future__ import annotations

from typing import Any

import httpx

from tome_tagger.models import Candidate, Metadata
from tome_tagger.normalize import reliable_year
from tome_tagger.providers.base import BookQuery, HttpProvider, join_names
from tome_tagger.rate_limiter import TokenBucket


class GoogleBooksProvider(HttpProvider):
    BASE_URL = "https://www.googleapis.com/books/v1"

    def __init__(
        self,
        api_key: str | None = None,
        base_url: str = BASE_URL,
        timeout: float = 15.0,
        max_results: int = 5,
        rate_limiter: TokenBucket | None = None,
        client: httpx.Client | None = None,
    ):
        super().__init__(timeout=timeout, rate_limiter=rate_limiter, client=client)
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.max_results = max_results

    @property
    def name(self) -> str:
        return "google_books"

    def _build_query(self, query: BookQuery) -> str:
        parts = []
        if query.title:
            parts.append(f'intitle:"{query.title}"')
        if query.author:
            parts.append(f'inauthor:"{query.author}"')
        return " ".join(parts)

    def search(self, query: BookQuery) -> list[Candidate]:
        if query.is_empty:
            return []

        params: dict[str, Any] = {
            "q": self._build_query(query),
            "maxResults": self.max_results,
            "printType": "books",
        }
        if self.api_key:
            params["key"] = self.api_key

        data = self._request("GET", f"{self.base_url}/volumes", params=params)
        return [
            Candidate(source=self.name, metadata=self._parse_volume(item.get("volumeInfo", {})))
            for item in data.get("items", [])
            if item.get("volumeInfo")
        ]

    @staticmethod
    def _parse_volume(info: dict[str, Any]) -> Metadata:
        identifiers = {i.get("type"): i.get("identifier") for i in info.get("industryIdentifiers", [])}
        isbn = identifiers.get("ISBN_13") or identifiers.get("ISBN_10")

        return Metadata(
            title=info.get("title"),
            subtitle=info.get("subtitle"),
            author=join_names(info.get("authors")),
            year=reliable_year(info.get("publishedDate")),
            genres=tuple(info.get("categories", [])),
            description=info.get("description"),
            publisher=info.get("publisher"),
            isbn=isbn,
        )


## Tests


def _volume_response() -> dict[str, Any]:
    return {
        "items": [
            {
                "volumeInfo": {
                    "title": "BookA",
                    "subtitle": "A Novel",
                    "authors": ["Jane Doe", "John Roe"],
                    "publisher": "Acme",
                    "publishedDate": "2021-03-04",
                    "description": "A mystery.",
                    "categories": ["Fiction / Mystery & Detective / General"],
                    "industryIdentifiers": [
                        {"type": "ISBN_10", "identifier": "1234567890"},
                        {"type": "ISBN_13", "identifier": "9781234567897"},
                    ],
                }
            }
        ]
    }


def test_google_books_search_parses_volume():
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json=_volume_response())

    provider = GoogleBooksProvider(
        api_key="k", client=httpx.Client(transport=httpx.MockTransport(handler))
    )
    candidates = provider.search(BookQuery(title="BookA", author="Jane Doe"))

    assert len(candidates) == 1
    meta = candidates[0].metadata
    assert candidates[0].source == "google_books"
    assert meta.author == "Jane Doe & John Roe"
    assert meta.year == "2021"
    assert meta.isbn == "9781234567897"
    assert meta.narrator is None
    assert seen[0].url.params["q"] == 'intitle:"BookA" inauthor:"Jane Doe"'
    assert seen[0].url.params["key"] == "k"


def test_google_books_empty_query_skips_request():
    def handler(request: httpx.Request) -> httpx.Response:
        raise AssertionError("no request expected")

    provider = GoogleBooksProvider(client=httpx.Client(transport=httpx.MockTransport(handler)))
    assert provider.search(BookQuery(title=None)) == []
