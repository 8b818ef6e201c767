"""Request pacing for the external HTTP feeds.

DexScreener, GoPlus and DefiLlama throttle (and eventually ban) clients
that burst. Each feed gets one limiter, shared process-wide.

The limiter tracks the instant at which the next request would be on
schedule (``_due``) rather than a token count. A request may run up to
``max_burst - 1`` intervals ahead of schedule; past that it is told how
long to wait. ``acquire`` books its slot before sleeping, so concurrent
callers on the event loop queue in arrival order.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, replace
from threading import Lock


@dataclass(frozen=True)
class BucketConfig:
    tokens_per_second: float
    max_burst: int
    name: str = ""

    @property
    def interval(self) -> float:
        return 1.0 / self.tokens_per_second

    @property
    def slack(self) -> float:
        """How far ahead of schedule a caller may get."""
        return max(self.max_burst - 1, 0) * self.interval


# Published free-tier limits, rounded down
DEFAULT_LIMITS: dict[str, BucketConfig] = {
    "dexscreener": BucketConfig(tokens_per_second=4.0, max_burst=8, name="DexScreener"),
    "goplus": BucketConfig(tokens_per_second=0.5, max_burst=3, name="GoPlus Security"),
    "defillama": BucketConfig(tokens_per_second=5.0, max_burst=10, name="DefiLlama Coins"),
}

_UNLISTED = BucketConfig(tokens_per_second=2.0, max_burst=4)


class TokenBucket:
    def __init__(self, config: BucketConfig):
        self.config = config
        self._due = time.monotonic()
        self._requests = 0
        self._delayed = 0

    def _delay(self, now: float) -> tuple[float, float]:
        """(seconds to wait, schedule instant) for a request arriving at ``now``."""
        due = max(self._due, now)
        return max(0.0, due - self.config.slack - now), due

    def _book(self, due: float) -> None:
        self._due = due + self.config.interval
        self._requests += 1

    def try_acquire(self) -> bool:
        delay, due = self._delay(time.monotonic())
        if delay > 0:
            return False
        self._book(due)
        return True

    def wait_time(self) -> float:
        return self._delay(time.monotonic())[0]

    async def acquire(self) -> None:
        delay, due = self._delay(time.monotonic())
        self._book(due)
        if delay > 0:
            self._delayed += 1
            await asyncio.sleep(delay)

    @property
    def stats(self) -> dict[str, int]:
        return {"requests": self._requests, "delayed": self._delayed}


class RateLimiterRegistry:
    """Limiters keyed by feed name, created on first use."""

    def __init__(self) -> None:
        self._buckets: dict[str, TokenBucket] = {}
        # the monitoring thread reads stats while the engine adds feeds
        self._lock = Lock()

    def get(self, feed: str) -> TokenBucket:
        with self._lock:
            bucket = self._buckets.get(feed)
            if bucket is None:
                config = DEFAULT_LIMITS.get(feed) or replace(_UNLISTED, name=feed)
                bucket = self._buckets[feed] = TokenBucket(config)
            return bucket

    def stats(self) -> dict[str, dict[str, int]]:
        with self._lock:
            return {feed: bucket.stats for feed, bucket in self._buckets.items()}


rate_limiter = RateLimiterRegistry()
