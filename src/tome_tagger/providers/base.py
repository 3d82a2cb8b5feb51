"""Metadata provider interface and shared HTTP plumbing."""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any

import httpx

from tome_tagger.errors import ProviderError
from tome_tagger.models import Candidate, Metadata
from tome_tagger.rate_limiter import TokenBucket

log = logging.getLogger(__name__)

USER_AGENT = "tome-tagger/0.1.0"


@dataclass(frozen=True)
class BookQuery:
    """What we know about a book before asking providers."""

    title: str | None
    author: str | None = None
    series: str | None = None
    sequence: str | None = None
    # Folder/file names, for providers that can interpret free text
    context: str | None = None

    @property
    def is_empty(self) -> bool:
        return not self.title and not self.author


class MetadataProvider(ABC):
    """
    Abstract base class for metadata sources.

    Implementations return zero or more candidates for a query and raise
    ProviderError on failure (network, auth, quota, unparseable payload).
    """

    @property
    @abstractmethod
    def name(self) -> str:
        """Provider name used in configuration, priority and cache fingerprints."""
        ...

    @abstractmethod
    def search(self, query: BookQuery) -> list[Candidate]:
        """Find candidate records for a book."""
        ...

    def lookup(self, query: BookQuery) -> list[Candidate]:
        """`search`, with malformed responses raised as a non-retryable ProviderError."""
        try:
            return self.search(query)
        except (AttributeError, IndexError, KeyError, TypeError, ValueError) as e:
            log.warning(f"{self.name} returned a malformed response: {e!r}")
            raise ProviderError(self.name, f"malformed response: {e}", retryable=False) from e

    def is_available(self) -> bool:
        """Whether the provider is configured well enough to be queried."""
        return True

    def close(self) -> None:
        pass

    def to_payload(self, candidates: list[Candidate]) -> list[dict[str, Any]]:
        """JSON-serializable form of candidates, for the cache."""
        return [c.metadata.to_dict() for c in candidates]

    def from_payload(self, payload: list[dict[str, Any]]) -> list[Candidate]:
        return [Candidate(source=self.name, metadata=Metadata.from_dict(d)) for d in payload or []]


class HttpProvider(MetadataProvider):
    """Provider backed by an httpx client with an optional shared rate limiter."""

    def __init__(
        self,
        timeout: float = 30.0,
        rate_limiter: TokenBucket | None = None,
        client: httpx.Client | None = None,
        headers: dict[str, str] | None = None,
    ):
        self.rate_limiter = rate_limiter
        self._client = client or httpx.Client(
            timeout=timeout, headers={"User-Agent": USER_AGENT, **(headers or {})}
        )

    def close(self) -> None:
        self._client.close()

    def _request(self, method: str, url: str, **kwargs: Any) -> Any:
        """
        Make a rate-limited request and decode the JSON body.

        Raises:
            ProviderError: On transport errors, HTTP errors or invalid JSON.
                4xx errors other than 408/429 are marked non-retryable.
        """
        if self.rate_limiter:
            self.rate_limiter.acquire()

        try:
            response = self._client.request(method, url, **kwargs)
            response.raise_for_status()
            return response.json()
        except httpx.HTTPStatusError as e:
            status = e.response.status_code
            retryable = status >= 500 or status in (408, 429)
            log.warning(f"{self.name} request failed with status {status}")
            raise ProviderError(self.name, f"HTTP {status}", retryable=retryable) from e
        except httpx.HTTPError as e:
            log.warning(f"{self.name} request failed: {e}")
            raise ProviderError(self.name, f"request failed: {e}") from e
        except ValueError as e:
            raise ProviderError(self.name, f"invalid JSON response: {e}", retryable=False) from e


def join_names(names: list[str] | None) -> str | None:
    """Join contributor names the way multi-author tags are written (``A & B``)."""
    cleaned = [n.strip() for n in names or [] if n and n.strip()]
    return " & ".join(cleaned) if cleaned else None
