"""Tests for multi-provider reconciliation."""

from __future__ import annotations

from pathlib import Path

import httpx
import pytest
from conftest import StubProvider

from tome_tagger.config import Config
from tome_tagger.errors import ProviderError
from tome_tagger.models import AudioFile, FileTags, Group, GroupKind, Metadata
from tome_tagger.normalize import query_fingerprint
from tome_tagger.providers import AudibleProvider, BookQuery
from tome_tagger.reconcile import FieldRule, MergeStrategy, Reconciler, merge_metadata


def _book(title: str = "BookA", author: str | None = "Jane Doe", **tags: object) -> AudioFile:
    return AudioFile(
        Path(f"/lib/{title}.m4b"), FileTags(album=title, artist=author, **tags), "m4b", 0
    )


def test_priority_order_wins_conflicts():
    audible = StubProvider("audible", [Metadata(title="BookA", author="Jane Doe", year="2020")])
    google = StubProvider(
        "google_books",
        [Metadata(title="BookA", author="Jane Doe", year="2021", isbn="9781234567897")],
    )
    config = Config()
    config.providers.priority = ["google_books", "audible"]

    metadata = Reconciler([audible, google], config=config).reconcile_book(_book())

    assert metadata.year == "2021"
    assert metadata.isbn == "9781234567897"


def test_unlisted_providers_fall_back_to_declaration_order():
    first = StubProvider("first", [Metadata(title="BookA", publisher="First House")])
    second = StubProvider("second", [Metadata(title="BookA", publisher="Second House")])
    config = Config()
    config.providers.priority = []

    assert Reconciler([first, second], config=config).reconcile_book(_book()).publisher == (
        "First House"
    )
    assert Reconciler([second, first], config=config).reconcile_book(_book()).publisher == (
        "Second House"
    )


def test_provider_failure_degrades_to_remaining_sources():
    broken = StubProvider("audible", error=ProviderError("audible", "HTTP 503"))
    google = StubProvider("google_books", [Metadata(title="BookA", narrator=None, year="2019")])

    metadata = Reconciler([broken, google]).reconcile_book(_book(narrator="Sam Reader"))

    assert len(broken.calls) == 1
    assert metadata.year == "2019"
    assert metadata.narrator == "Sam Reader"


def test_all_providers_failing_keeps_embedded_metadata():
    broken = StubProvider("audible", error=ProviderError("audible", "timeout"))

    metadata = Reconciler([broken]).reconcile_book(_book(genres=("Mystery",)))

    assert metadata.title == "BookA"
    assert metadata.author == "Jane Doe"
    assert metadata.genres == ("Mystery",)


def _audible_returning(payload: object) -> AudibleProvider:
    transport = httpx.MockTransport(lambda request: httpx.Response(200, json=payload))
    return AudibleProvider(client=httpx.Client(transport=transport))


@pytest.mark.parametrize("payload", [{"products": None}, {"products": "oops"}, ["not", "a", "dict"]])
def test_malformed_provider_payload_is_skipped(payload):
    audible = _audible_returning(payload)
    google = StubProvider("google_books", [Metadata(title="BookA", year="2019")])

    metadata = Reconciler([audible, google]).reconcile_book(_book(narrator="Sam Reader"))

    assert metadata.year == "2019"
    assert metadata.narrator == "Sam Reader"


def test_malformed_payload_raises_non_retryable_provider_error():
    with pytest.raises(ProviderError) as exc_info:
        _audible_returning({"products": None}).lookup(BookQuery(title="BookA"))

    assert exc_info.value.retryable is False
    assert "malformed" in str(exc_info.value)


def test_unusable_cached_payload_is_skipped(cache):
    audible = StubProvider("audible", [Metadata(title="BookA", year="2020")])
    cache.put(query_fingerprint("audible", "BookA", "Jane Doe"), ["not a record"])
    google = StubProvider("google_books", [Metadata(title="BookA", year="2019")])

    metadata = Reconciler([audible, google], cache=cache).reconcile_book(_book())

    assert metadata.year == "2019"

def test_poor_matches_are_discarded():
    provider = StubProvider("audible", [Metadata(title="Completely Different Story", year="1999")])

    metadata = Reconciler([provider]).reconcile_book(_book())

    assert metadata.title == "BookA"
    assert metadata.year is None


def test_genre_union_uncapped_by_default():
    audible = StubProvider("audible", [Metadata(title="BookA", genres=("Mystery", "Thriller"))])
    google = StubProvider("google_books", [Metadata(title="BookA", genres=("Crime", "Mystery"))])

    metadata = Reconciler([audible, google]).reconcile_book(_book())

    assert metadata.genres == ("Mystery", "Thriller", "Crime")


def test_genre_union_respects_configured_cap():
    audible = StubProvider("audible", [Metadata(title="BookA", genres=("Mystery", "Thriller"))])
    google = StubProvider("google_books", [Metadata(title="BookA", genres=("Crime",))])
    config = Config()
    config.genres.max_genres = 2

    metadata = Reconciler([audible, google], config=config).reconcile_book(_book())

    assert metadata.genres == ("Mystery", "Thriller")


def test_unapproved_genres_dropped_when_enforced():
    provider = StubProvider("audible", [Metadata(title="BookA", genres=("Mysteries", "Zzz"))])

    enforced = Reconciler([provider]).reconcile_book(_book())
    assert enforced.genres == ("Mystery",)

    config = Config(genre_enforcement=False)
    relaxed = Reconciler([provider], config=config).reconcile_book(_book())
    assert relaxed.genres == ("Mysteries", "Zzz")


def test_description_sanitized():
    provider = StubProvider(
        "generative",
        [Metadata(title="BookA", description="DEBUG: prompt\nA quiet village mystery.")],
    )

    metadata = Reconciler([provider]).reconcile_book(_book())

    assert metadata.description == "A quiet village mystery."


def test_skip_unchanged_avoids_lookups():
    provider = StubProvider("audible", [Metadata(title="BookA", year="2020")])
    config = Config(skip_unchanged=True)

    complete = _book(narrator="Sam Reader", genres=("Mystery",))
    Reconciler([provider], config=config).reconcile_book(complete)
    assert provider.calls == []

    Reconciler([provider], config=config).reconcile_book(_book())
    assert len(provider.calls) == 1


def test_cache_shared_between_reconciliations(cache):
    provider = StubProvider("audible", [Metadata(title="BookA", author="Jane Doe")])
    reconciler = Reconciler([provider], cache=cache)

    reconciler.reconcile_book(_book())
    reconciler.reconcile_book(_book())

    assert len(provider.calls) == 1


def test_empty_group_has_no_metadata():
    group = Group(key="x", kind=GroupKind.SINGLE, name="x")
    assert Reconciler([]).reconcile(group) is None


def test_custom_rules_compose():
    rules = [
        FieldRule("title", MergeStrategy.FIRST_NON_EMPTY),
        FieldRule("genres", MergeStrategy.UNION_WITH_CAP),
    ]
    merged = merge_metadata(
        [Metadata(title="A", year="2020", genres=("X",)), Metadata(genres=("Y",))], rules, 1
    )
    assert merged == Metadata(title="A", genres=("X",))
