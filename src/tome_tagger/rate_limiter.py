"""Per-provider token-bucket rate limiting.

Reconciliation runs provider queries from several worker threads. Each
provider (and the Audiobookshelf client) owns one shared bucket, so the
worker pool as a whole stays inside that service's quota.
"""

from __future__ import annotations

import logging
import threading
import time
from typing import Any

log = logging.getLogger(__name__)

# Throttle waits at or above this many seconds are logged
SLOW_WAIT_S = 2.0


class TokenBucket:
    """
    Token bucket: ``refill_rate`` tokens per second, at most ``capacity`` banked.

    A refill rate of 0 means unlimited.
    """

    def __init__(self, capacity: float, refill_rate: float, name: str = ""):
        self.capacity = capacity
        self.refill_rate = refill_rate
        self.name = name
        self._tokens = capacity
        self._stamp = time.monotonic()
        self._lock = threading.Lock()

    def __repr__(self) -> str:
        return f"TokenBucket({self.name!r}, capacity={self.capacity}, rate={self.refill_rate})"

    def _take(self, tokens: float) -> float:
        """Consume tokens if banked. Returns 0, or the seconds until they will be."""
        with self._lock:
            now = time.monotonic()
            self._tokens = min(self.capacity, self._tokens + (now - self._stamp) * self.refill_rate)
            self._stamp = now
            if self._tokens >= tokens:
                self._tokens -= tokens
                return 0.0
            return (tokens - self._tokens) / self.refill_rate

    def acquire(self, tokens: float = 1.0, blocking: bool = True) -> bool:
        """
        Take tokens, sleeping until they are available when ``blocking``.

        Returns:
            False only when non-blocking and the bucket is short
        """
        if self.refill_rate <= 0:
            return True

        waited = 0.0
        while (wait := self._take(tokens)) > 0:
            if not blocking:
                return False
            time.sleep(wait)
            waited += wait

        if waited >= SLOW_WAIT_S:
            log.debug(f"Throttled {self.name or 'request'} for {waited:.1f}s")
        return True

    def try_acquire(self, tokens: float = 1.0) -> bool:
        return self.acquire(tokens, blocking=False)

    @property
    def available_tokens(self) -> float:
        with self._lock:
            elapsed = time.monotonic() - self._stamp
            return min(self.capacity, self._tokens + elapsed * self.refill_rate)


class RateLimiterRegistry:
    """Named buckets for the metadata providers and the sync server. Thread-safe."""

    # name: (capacity, refill_rate per second)
    DEFAULT_LIMITS: dict[str, tuple[float, float]] = {
        "audible": (2.0, 2.0),
        "google_books": (1.0, 1.0),
        "generative": (1.0, 0.5),
        "audiobookshelf": (10.0, 10.0),
    }

    def __init__(self) -> None:
        self._buckets: dict[str, TokenBucket] = {}
        self._lock = threading.Lock()

    def get_limiter(self, name: str) -> TokenBucket:
        with self._lock:
            bucket = self._buckets.get(name)
            if bucket is None:
                capacity, rate = self.DEFAULT_LIMITS.get(name, (1.0, 1.0))
                bucket = self._buckets[name] = TokenBucket(capacity, rate, name)
            return bucket

    def configure(self, name: str, requests_per_second: float, burst: float | None = None) -> None:
        """Replace a bucket. Burst defaults to one second's worth of requests (at least 1)."""
        capacity = burst if burst is not None else max(1.0, requests_per_second)
        with self._lock:
            self._buckets[name] = TokenBucket(capacity, requests_per_second, name)

    def status(self) -> dict[str, dict[str, Any]]:
        with self._lock:
            buckets = dict(self._buckets)
        return {
            name: {
                "capacity": bucket.capacity,
                "refill_rate": bucket.refill_rate,
                "available_tokens": round(bucket.available_tokens, 2),
            }
            for name, bucket in buckets.items()
        }


## Tests


def test_bucket_spends_banked_tokens_then_refuses():
    bucket = TokenBucket(capacity=2.0, refill_rate=0.1)
    assert bucket.try_acquire()
    assert bucket.try_acquire()
    assert not bucket.try_acquire()


def test_bucket_blocks_until_refilled():
    bucket = TokenBucket(capacity=1.0, refill_rate=50.0)
    bucket.acquire()
    start = time.monotonic()
    assert bucket.acquire()
    assert time.monotonic() - start >= 0.01


def test_zero_rate_is_unlimited():
    bucket = TokenBucket(capacity=1.0, refill_rate=0.0)
    assert all(bucket.try_acquire() for _ in range(10))


def test_registry_defaults_and_overrides():
    registry = RateLimiterRegistry()
    registry.configure("google_books", requests_per_second=4.0)
    assert registry.get_limiter("audible") is registry.get_limiter("audible")

    status = registry.status()
    assert status["google_books"] == {"capacity": 4.0, "refill_rate": 4.0, "available_tokens": 4.0}
    assert status["audible"]["capacity"] == 2.0
