"""Metadata providers."""

from __future__ import annotations

import logging

from tome_tagger.config import Config
from tome_tagger.providers.audible import AudibleProvider
from tome_tagger.providers.base import BookQuery, HttpProvider, MetadataProvider
from tome_tagger.providers.generative import GenerativeProvider
from tome_tagger.providers.google_books import GoogleBooksProvider
from tome_tagger.rate_limiter import RateLimiterRegistry

log = logging.getLogger(__name__)

__all__ = [
    "AudibleProvider",
    "BookQuery",
    "GenerativeProvider",
    "GoogleBooksProvider",
    "HttpProvider",
    "MetadataProvider",
    "create_providers",
]


def create_providers(
    config: Config, registry: RateLimiterRegistry | None = None
) -> list[MetadataProvider]:
    """
    Build the enabled providers, in declaration order.

    Priority ordering is applied by the reconciler; this only decides which
    providers exist and wires each to its rate limiter.
    """
    registry = registry or RateLimiterRegistry()
    settings = config.providers
    providers: list[MetadataProvider] = []

    if settings.audible.enabled:
        registry.configure("audible", settings.audible.rate_limit)
        providers.append(
            AudibleProvider(
                marketplace=settings.audible.marketplace,
                timeout=settings.audible.timeout_s,
                rate_limiter=registry.get_limiter("audible"),
            )
        )

    if settings.google_books.enabled:
        registry.configure("google_books", settings.google_books.rate_limit)
        providers.append(
            GoogleBooksProvider(
                api_key=settings.google_books.api_key,
                base_url=settings.google_books.base_url,
                timeout=settings.google_books.timeout_s,
                rate_limiter=registry.get_limiter("google_books"),
            )
        )

    if settings.generative.enabled:
        registry.configure("generative", settings.generative.rate_limit)
        provider = GenerativeProvider(
            api_key=settings.generative.api_key,
            base_url=settings.generative.base_url,
            model_id=settings.generative.model_id,
            max_tokens=settings.generative.max_tokens,
            timeout=settings.generative.timeout_s,
            rate_limiter=registry.get_limiter("generative"),
        )
        if provider.is_available():
            providers.append(provider)
        else:
            log.warning("Generative provider enabled but no API key configured; skipping")
            provider.close()

    return providers
