"""Tests for the metadata cache: expiry, in-flight sharing and stale fallback."""

from __future__ import annotations

import threading
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path

import pytest
from conftest import StubProvider
from freezegun import freeze_time

from tome_tagger.cache import MetadataCache
from tome_tagger.errors import ProviderError
from tome_tagger.models import AudioFile, FileTags, Metadata
from tome_tagger.reconcile import Reconciler


def test_entries_expire_after_ttl(tmp_path):
    with freeze_time("2024-01-01 12:00:00") as frozen:
        cache = MetadataCache(tmp_path / "cache", ttl_seconds=60)
        cache.put("fp", {"title": "BookA"})

        frozen.tick(59)
        assert cache.get("fp") is not None

        frozen.tick(2)
        assert cache.get("fp") is None
        assert cache.get_stale("fp") is not None
        assert cache.stats()["expired"] == 1
        assert cache.purge_expired() == 1
        assert cache.get_stale("fp") is None


def test_concurrent_lookups_share_one_fetch(cache):
    calls = []
    release = threading.Event()

    def fetch():
        calls.append(1)
        release.wait(2)
        return [{"title": "BookA"}]

    with ThreadPoolExecutor(max_workers=6) as executor:
        futures = [executor.submit(cache.lookup, "fp", fetch) for _ in range(6)]
        # Give every worker time to find the in-flight fetch
        threading.Event().wait(0.2)
        release.set()
        results = [f.result() for f in futures]

    assert calls == [1]
    assert all(r.payload == [{"title": "BookA"}] for r in results)
    leaders = [r for r in results if not r.hit and not r.shared]
    assert len(leaders) == 1
    # Waiters report the leader's fetch, never a cache hit
    assert not any(r.hit for r in results if r.shared)
    assert any(r.shared for r in results)


def test_concurrent_waiters_share_errors(cache):
    release = threading.Event()
    calls = []

    def fetch():
        calls.append(1)
        release.wait(2)
        raise ProviderError("audible", "HTTP 503")

    with ThreadPoolExecutor(max_workers=3) as executor:
        futures = [executor.submit(cache.lookup, "fp", fetch) for _ in range(3)]
        threading.Event().wait(0.2)
        release.set()
        for future in futures:
            with pytest.raises(ProviderError):
                future.result()

    assert calls == [1]


def test_stale_entry_served_when_provider_fails(tmp_path):
    with freeze_time("2024-01-01") as frozen:
        cache = MetadataCache(tmp_path / "cache", ttl_seconds=60)
        cache.put("fp", [{"title": "BookA"}])
        frozen.tick(3600)

        def failing():
            raise ProviderError("audible", "timeout")

        result = cache.lookup("fp", failing)

    assert result.degraded
    assert result.payload == [{"title": "BookA"}]


def test_non_provider_errors_propagate(cache):
    def broken():
        raise RuntimeError("bug")

    with pytest.raises(RuntimeError):
        cache.lookup("fp", broken)


def test_parallel_reconciliations_query_provider_once(cache):
    provider = StubProvider(
        "audible", [Metadata(title="BookA", author="Jane Doe")], delay=0.2
    )
    reconciler = Reconciler([provider], cache=cache)
    book = AudioFile(Path("/lib/BookA.m4b"), FileTags(album="BookA", artist="Jane Doe"), "m4b", 0)

    with ThreadPoolExecutor(max_workers=4) as executor:
        results = list(executor.map(lambda _: reconciler.reconcile_book(book), range(4)))

    assert len(provider.calls) == 1
    assert {r.author for r in results} == {"Jane Doe"}


def test_corrupt_payload_is_a_miss(cache):
    cache.put("fp", {"title": "BookA"})
    (cache.cache_dir / "fp.json").write_text("{not json")

    assert cache.get("fp") is None
    assert cache.stats()["entries"] == 0
