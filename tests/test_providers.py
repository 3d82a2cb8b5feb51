"""Tests for provider construction and HTTP error mapping."""

from __future__ import annotations

import httpx
import pytest

from tome_tagger.config import Config
from tome_tagger.errors import ProviderError
from tome_tagger.providers import (
    AudibleProvider,
    BookQuery,
    GenerativeProvider,
    GoogleBooksProvider,
    create_providers,
)
from tome_tagger.rate_limiter import RateLimiterRegistry


def _names(providers) -> list[str]:
    return [p.name for p in providers]


def test_default_providers():
    providers = create_providers(Config())
    try:
        assert _names(providers) == ["audible", "google_books"]
        assert isinstance(providers[0], AudibleProvider)
        assert isinstance(providers[1], GoogleBooksProvider)
    finally:
        for provider in providers:
            provider.close()


def test_generative_requires_api_key():
    config = Config()
    config.providers.generative.enabled = True
    assert "generative" not in _names(create_providers(config))

    config.providers.generative.api_key = "sk-test"
    registry = RateLimiterRegistry()
    providers = create_providers(config, registry)
    assert isinstance(providers[-1], GenerativeProvider)
    assert registry.status()["generative"]["refill_rate"] == 0.5


def test_disabled_providers_are_not_built():
    config = Config()
    config.providers.audible.enabled = False
    config.providers.google_books.enabled = False
    assert create_providers(config) == []


def _google(handler) -> GoogleBooksProvider:
    return GoogleBooksProvider(client=httpx.Client(transport=httpx.MockTransport(handler)))


@pytest.mark.parametrize(
    "status,retryable",
    [(429, True), (503, True), (408, True), (403, False), (404, False)],
)
def test_http_errors_map_to_provider_errors(status, retryable):
    provider = _google(lambda request: httpx.Response(status))

    with pytest.raises(ProviderError) as exc_info:
        provider.search(BookQuery(title="BookA"))

    assert exc_info.value.provider == "google_books"
    assert exc_info.value.retryable is retryable


def test_invalid_json_is_not_retryable():
    provider = _google(lambda request: httpx.Response(200, content=b"<html>"))

    with pytest.raises(ProviderError) as exc_info:
        provider.search(BookQuery(title="BookA"))

    assert exc_info.value.retryable is False


def test_transport_errors_are_retryable():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    with pytest.raises(ProviderError) as exc_info:
        _google(handler).search(BookQuery(title="BookA"))

    assert exc_info.value.retryable is True
