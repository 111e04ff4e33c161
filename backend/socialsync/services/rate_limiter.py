"""
In-process sliding-window rate limiter.

Best-effort and single-process: it keeps bursts from one worker pool
under the vendors' documented limits. It does not enforce a global cap
across instances.
"""
from __future__ import annotations

import threading
import time
from dataclasses import dataclass
from typing import Callable

from socialsync.models import Platform

MAX_BUCKETS = 10_000
STALE_BUCKET_MS = 60 * 60 * 1000


@dataclass(frozen=True)
class RateLimitOptions:
    max: int
    window_ms: int
    block_ms: int | None = None


@dataclass(frozen=True)
class RateLimitResult:
    allowed: bool
    remaining: int
    retry_after_ms: int


@dataclass
class _Bucket:
    count: int
    window_start: float
    blocked_until: float = 0.0


PLATFORM_LIMITS: dict[str, RateLimitOptions] = {
    Platform.facebook.value: RateLimitOptions(max=200, window_ms=60 * 60 * 1000),
    Platform.instagram.value: RateLimitOptions(max=200, window_ms=60 * 60 * 1000),
    Platform.tiktok.value: RateLimitOptions(max=100, window_ms=60 * 1000),
    Platform.youtube.value: RateLimitOptions(max=10_000, window_ms=24 * 60 * 60 * 1000),
    Platform.twitter.value: RateLimitOptions(max=300, window_ms=15 * 60 * 1000),
    Platform.linkedin.value: RateLimitOptions(max=100, window_ms=24 * 60 * 60 * 1000),
}


def _monotonic_ms() -> float:
    return time.monotonic() * 1000


class RateLimiter:
    """Bucket map guarded by a lock; the clock is injectable for tests."""

    def __init__(self, max_buckets: int = MAX_BUCKETS, clock: Callable[[], float] | None = None):
        self._buckets: dict[str, _Bucket] = {}
        self._lock = threading.Lock()
        self._max_buckets = max_buckets
        self._clock = clock or _monotonic_ms

    def __len__(self) -> int:
        return len(self._buckets)

    def check(self, key: str, options: RateLimitOptions) -> RateLimitResult:
        now = self._clock()
        with self._lock:
            if len(self._buckets) >= self._max_buckets:
                self._prune(now)

            bucket = self._buckets.get(key)
            if bucket is None:
                self._buckets[key] = _Bucket(count=1, window_start=now)
                return RateLimitResult(True, max(options.max - 1, 0), 0)

            if bucket.blocked_until > now:
                return RateLimitResult(False, 0, int(bucket.blocked_until - now))

            elapsed = now - bucket.window_start
            if elapsed >= options.window_ms:
                bucket.count = 1
                bucket.window_start = now
                bucket.blocked_until = 0.0
                return RateLimitResult(True, max(options.max - 1, 0), 0)

            bucket.count += 1
            if bucket.count > options.max:
                retry_after = options.block_ms if options.block_ms is not None else options.window_ms - elapsed
                bucket.blocked_until = now + retry_after
                return RateLimitResult(False, 0, max(int(retry_after), 1))

            return RateLimitResult(True, options.max - bucket.count, 0)

    def reset(self, key: str | None = None) -> None:
        with self._lock:
            if key is None:
                self._buckets.clear()
            else:
                self._buckets.pop(key, None)

    def _prune(self, now: float) -> None:
        # caller holds the lock
        stale = [
            key
            for key, bucket in self._buckets.items()
            if now - bucket.window_start > STALE_BUCKET_MS and bucket.blocked_until <= now
        ]
        for key in stale:
            del self._buckets[key]
