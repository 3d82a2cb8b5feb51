"""
OpenAI-compatible chat-completions provider.

Asks a language model to identify a book from its folder/file names and
whatever tags exist. Useful for messy libraries; its free-text fields may
carry diagnostic noise, which the reconciler sanitizes.
"""

from __future__ import annotations

import json
import logging
from typing import Any

import httpx

from tome_tagger.errors import ProviderError
from tome_tagger.models import Candidate, Metadata
from tome_tagger.normalize import reliable_year
from tome_tagger.providers.base import BookQuery, HttpProvider
from tome_tagger.rate_limiter import TokenBucket

log = logging.getLogger(__name__)

SYSTEM_PROMPT = (
    "You are an audiobook librarian. Identify the book described by the user and "
    "answer with a single JSON object with the keys: title, subtitle, author, "
    "narrator, series, sequence, year, genres (array), description, publisher, isbn. "
    "Use null for anything you are not sure about. The title is the book title, "
    "never a chapter or part name, without format noise such as 'Unabridged' or bitrates."
)


def extract_json(content: str) -> dict[str, Any]:
    """Parse a JSON object from a model reply, tolerating markdown code fences."""
    content = content.strip()
    if "```json" in content:
        start = content.index("```json") + 7
        content = content[start : content.index("```", start)].strip()
    elif "```" in content:
        start = content.index("```") + 3
        content = content[start : content.index("```", start)].strip()

    data = json.loads(content)
    if not isinstance(data, dict):
        raise ValueError("expected a JSON object")
    return data


class GenerativeProvider(HttpProvider):
    def __init__(
        self,
        api_key: str | None = None,
        base_url: str = "https://api.openai.com/v1",
        model_id: str = "gpt-4o-mini",
        max_tokens: int = 1500,
        timeout: float = 60.0,
        rate_limiter: TokenBucket | None = None,
        client: httpx.Client | None = None,
    ):
        super().__init__(timeout=timeout, rate_limiter=rate_limiter, client=client)
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.model_id = model_id
        self.max_tokens = max_tokens

    @property
    def name(self) -> str:
        return "generative"

    def is_available(self) -> bool:
        return bool(self.api_key)

    def _build_prompt(self, query: BookQuery) -> str:
        lines = ["Identify this audiobook."]
        if query.title:
            lines.append(f"Title hint: {query.title}")
        if query.author:
            lines.append(f"Author hint: {query.author}")
        if query.series:
            sequence = f" #{query.sequence}" if query.sequence else ""
            lines.append(f"Series hint: {query.series}{sequence}")
        if query.context:
            lines.append(f"Folder and file names: {query.context}")
        return "\n".join(lines)

    def search(self, query: BookQuery) -> list[Candidate]:
        if not self.api_key:
            raise ProviderError(self.name, "API key not configured", retryable=False)
        if query.is_empty and not query.context:
            return []

        payload = {
            "model": self.model_id,
            "messages": [
                {"role": "system", "content": SYSTEM_PROMPT},
                {"role": "user", "content": self._build_prompt(query)},
            ],
            "max_tokens": self.max_tokens,
            "temperature": 0.0,
        }
        data = self._request(
            "POST",
            f"{self.base_url}/chat/completions",
            json=payload,
            headers={"Authorization": f"Bearer {self.api_key}"},
        )

        try:
            content = data["choices"][0]["message"]["content"] or ""
            record = extract_json(content)
        except (KeyError, IndexError, TypeError, ValueError) as e:
            log.warning(f"Failed to parse model response as JSON: {e}")
            raise ProviderError(self.name, f"unparseable response: {e}", retryable=False) from e

        genres = record.get("genres") or ()
        if isinstance(genres, str):
            genres = [g.strip() for g in genres.split(",")]

        metadata = Metadata(
            title=record.get("title"),
            subtitle=record.get("subtitle"),
            author=record.get("author"),
            narrator=record.get("narrator"),
            series=record.get("series"),
            sequence=record.get("sequence"),
            year=reliable_year(record.get("year")),
            genres=tuple(genres),
            description=record.get("description"),
            publisher=record.get("publisher"),
            isbn=record.get("isbn"),
        )
        return [] if metadata.is_empty() else [Candidate(source=self.name, metadata=metadata)]


## Tests


def test_extract_json_fenced():
    assert extract_json('```json\n{"title": "BookA"}\n```') == {"title": "BookA"}
    assert extract_json('{"title": "BookA"}') == {"title": "BookA"}


def test_generative_search_without_key_fails():
    provider = GenerativeProvider(api_key=None)
    try:
        provider.search(BookQuery(title="BookA"))
        raise AssertionError("Should have raised ProviderError")
    except ProviderError as e:
        assert e.retryable is False


def test_generative_search_parses_reply():
    reply = {
        "choices": [
            {
                "message": {
                    "content": '```json\n{"title": "BookA", "author": "Jane Doe", '
                    '"narrator": "Sam Reader", "year": 2021, "genres": "Mystery, Thriller"}\n```'
                }
            }
        ]
    }

    def handler(request: httpx.Request) -> httpx.Response:
        assert request.headers["Authorization"] == "Bearer sk-test"
        return httpx.Response(200, json=reply)

    provider = GenerativeProvider(
        api_key="sk-test", client=httpx.Client(transport=httpx.MockTransport(handler))
    )
    [candidate] = provider.search(BookQuery(title="BookA"))
    assert candidate.metadata.narrator == "Sam Reader"
    assert candidate.metadata.year == "2021"
    assert candidate.metadata.genres == ("Mystery", "Thriller")
