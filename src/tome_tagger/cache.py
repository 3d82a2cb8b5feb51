from __future__ import annotations

import json
import logging
import sqlite3
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from tome_tagger.errors import ProviderError
from tome_tagger.models import CacheEntry

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class CacheLookup:
    """Result of a cache-through lookup."""

    payload: Any
    hit: bool
    degraded: bool = False
    # Waited on another caller's in-flight fetch instead of fetching
    shared: bool = False


class _InFlight:
    def __init__(self) -> None:
        self.done = threading.Event()
        self.result: CacheLookup | None = None
        self.error: BaseException | None = None


class MetadataCache:
    """
    File-backed provider response cache with a SQLite index tracking TTL.

    Payloads are stored as JSON files and their timestamps in SQLite. Expired
    entries are misses for `get` but stay on disk, so a failing provider can
    still be answered from stale data via `lookup`.
    """

    def __init__(self, cache_dir: Path, ttl_seconds: int = 604800, enabled: bool = True):
        self.cache_dir = cache_dir
        self.ttl_seconds = ttl_seconds
        self.enabled = enabled
        self.cache_dir.mkdir(parents=True, exist_ok=True)
        self.db_path = self.cache_dir / "cache_index.sqlite"
        self._lock = threading.Lock()
        self._write_lock = threading.Lock()
        self._inflight: dict[str, _InFlight] = {}
        self._init_db()

    def _init_db(self) -> None:
        """Initialize SQLite database schema."""
        conn = sqlite3.connect(self.db_path)
        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS cache_entries (
                fingerprint TEXT PRIMARY KEY,
                cached_at REAL NOT NULL,
                expires_at REAL NOT NULL
            )
            """
        )
        conn.execute("CREATE INDEX IF NOT EXISTS idx_expires_at ON cache_entries(expires_at)")
        conn.commit()
        conn.close()

    def _get_cache_path(self, fingerprint: str) -> Path:
        return self.cache_dir / f"{fingerprint}.json"

    def _read_entry(self, fingerprint: str) -> CacheEntry | None:
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        row = conn.execute(
            "SELECT * FROM cache_entries WHERE fingerprint = ?", (fingerprint,)
        ).fetchone()
        conn.close()

        if not row:
            return None

        cache_path = self._get_cache_path(fingerprint)
        try:
            payload = json.loads(cache_path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as e:
            log.warning(f"Dropping unreadable cache entry {fingerprint[:12]}: {e}")
            self.invalidate(fingerprint)
            return None

        return CacheEntry(
            fingerprint=fingerprint,
            payload=payload,
            cached_at=row["cached_at"],
            expires_at=row["expires_at"],
        )

    def get(self, fingerprint: str) -> CacheEntry | None:
        """Fresh entry, or None when missing or expired. Expired entries are kept."""
        if not self.enabled:
            return None
        entry = self._read_entry(fingerprint)
        if entry is None or entry.is_expired(time.time()):
            return None
        return entry

    def get_stale(self, fingerprint: str) -> CacheEntry | None:
        """Entry regardless of expiry."""
        if not self.enabled:
            return None
        return self._read_entry(fingerprint)

    def put(self, fingerprint: str, payload: Any) -> CacheEntry:
        """Store a JSON-serializable payload, replacing any previous entry."""
        cached_at = time.time()
        entry = CacheEntry(fingerprint, payload, cached_at, cached_at + self.ttl_seconds)
        if not self.enabled:
            return entry

        cache_path = self._get_cache_path(fingerprint)
        with self._write_lock:
            tmp_path = cache_path.with_suffix(".tmp")
            tmp_path.write_text(json.dumps(payload, ensure_ascii=False), encoding="utf-8")
            tmp_path.replace(cache_path)

            conn = sqlite3.connect(self.db_path)
            conn.execute(
                """
                INSERT OR REPLACE INTO cache_entries (fingerprint, cached_at, expires_at)
                VALUES (?, ?, ?)
                """,
                (fingerprint, entry.cached_at, entry.expires_at),
            )
            conn.commit()
            conn.close()
        return entry

    def invalidate(self, fingerprint: str) -> None:
        """Remove cache entry for one fingerprint."""
        with self._write_lock:
            self._get_cache_path(fingerprint).unlink(missing_ok=True)
            conn = sqlite3.connect(self.db_path)
            conn.execute("DELETE FROM cache_entries WHERE fingerprint = ?", (fingerprint,))
            conn.commit()
            conn.close()

    def purge_expired(self) -> int:
        """Remove expired cache entries and return count of removed entries."""
        now = time.time()
        with self._write_lock:
            conn = sqlite3.connect(self.db_path)
            cursor = conn.cursor()
            cursor.execute("SELECT fingerprint FROM cache_entries WHERE expires_at <= ?", (now,))
            for (fingerprint,) in cursor.fetchall():
                self._get_cache_path(fingerprint).unlink(missing_ok=True)
            cursor.execute("DELETE FROM cache_entries WHERE expires_at <= ?", (now,))
            removed_count = cursor.rowcount
            conn.commit()
            conn.close()
        return removed_count

    def clear(self) -> int:
        """Clear all cache entries. Returns count of removed entries."""
        with self._write_lock:
            conn = sqlite3.connect(self.db_path)
            cursor = conn.cursor()
            cursor.execute("SELECT fingerprint FROM cache_entries")
            all_keys = [row[0] for row in cursor.fetchall()]
            for fingerprint in all_keys:
                self._get_cache_path(fingerprint).unlink(missing_ok=True)
            conn.execute("DELETE FROM cache_entries")
            conn.commit()
            conn.close()
        return len(all_keys)

    def stats(self) -> dict[str, Any]:
        conn = sqlite3.connect(self.db_path)
        total = conn.execute("SELECT COUNT(*) FROM cache_entries").fetchone()[0]
        expired = conn.execute(
            "SELECT COUNT(*) FROM cache_entries WHERE expires_at <= ?", (time.time(),)
        ).fetchone()[0]
        conn.close()
        size = sum(p.stat().st_size for p in self.cache_dir.glob("*.json"))
        return {
            "directory": str(self.cache_dir),
            "entries": total,
            "expired": expired,
            "size_bytes": size,
            "ttl_seconds": self.ttl_seconds,
        }

    def lookup(self, fingerprint: str, fetch: Callable[[], Any]) -> CacheLookup:
        """
        Cache-through lookup with one in-flight fetch per fingerprint.

        Concurrent callers for the same fingerprint wait for the first caller's
        fetch and share its result or error. When the fetch fails with a
        ProviderError and a stale entry exists, the stale payload is returned
        with ``degraded=True``.

        Args:
            fingerprint: Query fingerprint
            fetch: Zero-argument callable returning a JSON-serializable payload

        Returns:
            CacheLookup with the payload and how it was obtained
        """
        entry = self.get(fingerprint)
        if entry is not None:
            return CacheLookup(entry.payload, hit=True)

        with self._lock:
            flight = self._inflight.get(fingerprint)
            leader = flight is None
            if flight is None:
                flight = _InFlight()
                self._inflight[fingerprint] = flight

        if not leader:
            flight.done.wait()
            if flight.error is not None:
                raise flight.error
            assert flight.result is not None
            return CacheLookup(
                flight.result.payload,
                hit=flight.result.hit,
                degraded=flight.result.degraded,
                shared=True,
            )

        try:
            flight.result = self._fetch_through(fingerprint, fetch)
            return flight.result
        except BaseException as e:
            flight.error = e
            raise
        finally:
            with self._lock:
                self._inflight.pop(fingerprint, None)
            flight.done.set()

    def _fetch_through(self, fingerprint: str, fetch: Callable[[], Any]) -> CacheLookup:
        # A previous leader may have filled the entry between our miss and now
        entry = self.get(fingerprint)
        if entry is not None:
            return CacheLookup(entry.payload, hit=True)

        try:
            payload = fetch()
        except ProviderError as e:
            stale = self.get_stale(fingerprint)
            if stale is None:
                raise
            log.warning(f"Serving stale cache entry {fingerprint[:12]} after fetch failure: {e}")
            return CacheLookup(stale.payload, hit=True, degraded=True)

        self.put(fingerprint, payload)
        return CacheLookup(payload, hit=False)


## Tests


def test_cache_put_get(tmp_path):
    cache = MetadataCache(tmp_path / "cache", ttl_seconds=3600)
    cache.put("fp1", [{"title": "BookA"}])

    entry = cache.get("fp1")
    assert entry is not None
    assert entry.payload == [{"title": "BookA"}]
    assert entry.expires_at - entry.cached_at == 3600


def test_cache_invalidate_and_clear(tmp_path):
    cache = MetadataCache(tmp_path / "cache")
    for i in range(3):
        cache.put(f"fp{i}", {"i": i})

    cache.invalidate("fp0")
    assert cache.get("fp0") is None
    assert cache.clear() == 2
    assert cache.get("fp1") is None
    assert cache.stats()["entries"] == 0


def test_cache_disabled_never_hits(tmp_path):
    cache = MetadataCache(tmp_path / "cache", enabled=False)
    cache.put("fp", {"title": "BookA"})
    assert cache.get("fp") is None

    calls = []
    result = cache.lookup("fp", lambda: calls.append(1) or {"title": "BookA"})
    assert result.hit is False
    assert calls == [1]
