"""
Audible catalog API provider.

The public catalog endpoint needs no account. It is the best source for
narrators, series position and audiobook-specific categories.
"""

from __future__ import annotations

import html
import re
from typing import Any

import httpx

from tome_tagger.models import Candidate, Metadata
from tome_tagger.normalize import reliable_year
from tome_tagger.providers.base import BookQuery, HttpProvider, join_names
from tome_tagger.rate_limiter import TokenBucket

_TAG_RE = re.compile(r"<[^>]+>")

RESPONSE_GROUPS = ",".join(
    [
        "contributors",
        "product_desc",
        "product_attrs",
        "product_extended_attrs",
        "series",
        "category_ladders",
    ]
)


def strip_html(text: str | None) -> str | None:
    if not text:
        return None
    text = re.sub(r"<br\s*/?>|</p>", "\n", text, flags=re.IGNORECASE)
    text = html.unescape(_TAG_RE.sub("", text))
    return re.sub(r"\n{3,}", "\n\n", text).strip() or None


class AudibleProvider(HttpProvider):
    def __init__(
        self,
        marketplace: str = "com",
        timeout: float = 15.0,
        max_results: int = 10,
        rate_limiter: TokenBucket | None = None,
        client: httpx.Client | None = None,
    ):
        super().__init__(timeout=timeout, rate_limiter=rate_limiter, client=client)
        self.base_url = f"https://api.audible.{marketplace}/1.0"
        self.max_results = max_results

    @property
    def name(self) -> str:
        return "audible"

    def search(self, query: BookQuery) -> list[Candidate]:
        if query.is_empty:
            return []

        params: dict[str, Any] = {
            "num_results": self.max_results,
            "products_sort_by": "Relevance",
            "response_groups": RESPONSE_GROUPS,
        }
        if query.title:
            params["title"] = query.title
        if query.author:
            params["author"] = query.author

        data = self._request("GET", f"{self.base_url}/catalog/products", params=params)
        return [
            Candidate(source=self.name, metadata=self._parse_product(product))
            for product in data.get("products", [])
            if product.get("title")
        ]

    @staticmethod
    def _parse_product(product: dict[str, Any]) -> Metadata:
        series = product.get("series") or []
        first_series = series[0] if series else {}

        genres: list[str] = []
        for ladder in product.get("category_ladders", []):
            for rung in ladder.get("ladder", []):
                if rung.get("name") and rung["name"] not in genres:
                    genres.append(rung["name"])

        return Metadata(
            title=product.get("title"),
            subtitle=product.get("subtitle"),
            author=join_names([a.get("name") for a in product.get("authors", [])]),
            narrator=join_names([n.get("name") for n in product.get("narrators", [])]),
            series=first_series.get("title"),
            sequence=first_series.get("sequence"),
            year=reliable_year(product.get("release_date") or product.get("issue_date")),
            genres=tuple(genres),
            description=strip_html(
                product.get("publisher_summary") or product.get("merchandising_summary")
            ),
            publisher=product.get("publisher_name"),
        )


## Tests


def test_strip_html():
    assert strip_html("<p>A <b>bold</b> tale &amp; more</p>") == "A bold tale & more"
    assert strip_html("") is None


def test_audible_search_parses_products():
    payload = {
        "products": [
            {
                "asin": "B000000001",
                "title": "BookA",
                "authors": [{"name": "Jane Doe"}],
                "narrators": [{"name": "Sam Reader"}, {"name": "Alex Voice"}],
                "series": [{"title": "Mysteries of A", "sequence": "2"}],
                "release_date": "2019-06-01",
                "publisher_name": "Acme Audio",
                "publisher_summary": "<p>Who did it?</p>",
                "category_ladders": [
                    {"ladder": [{"name": "Mystery, Thriller & Suspense"}, {"name": "Mystery"}]}
                ],
            }
        ]
    }

    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.params["title"] == "BookA"
        return httpx.Response(200, json=payload)

    provider = AudibleProvider(client=httpx.Client(transport=httpx.MockTransport(handler)))
    [candidate] = provider.search(BookQuery(title="BookA", author="Jane Doe"))

    meta = candidate.metadata
    assert meta.narrator == "Sam Reader & Alex Voice"
    assert meta.series == "Mysteries of A"
    assert meta.sequence == "2"
    assert meta.year == "2019"
    assert meta.genres == ("Mystery, Thriller & Suspense", "Mystery")
    assert meta.description == "Who did it?"
