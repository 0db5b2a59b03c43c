"""Per-instance fixed-window rate limiting keyed by identity or origin."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable

from kidstel_agent.domain.ports import RateBucketStore

WINDOW_SECONDS = 60.0

logger = logging.getLogger(__name__)


class InMemoryBucketStore:
    """Process-local bucket map; resets on restart.

    Expired windows are swept on write, at most once per `sweep_seconds`, so
    one-off keys (anonymous identities) do not accumulate.
    """

    def __init__(
        self,
        *,
        clock: Callable[[], float] = time.monotonic,
        sweep_seconds: float = WINDOW_SECONDS,
    ) -> None:
        self._buckets: dict[str, tuple[float, int]] = {}
        self._clock = clock
        self._sweep_seconds = sweep_seconds
        self._next_sweep = clock() + sweep_seconds

    def get(self, key: str) -> tuple[float, int] | None:
        return self._buckets.get(key)

    def set(self, key: str, reset_at: float, count: int) -> None:
        now = self._clock()
        if now >= self._next_sweep:
            expired = [name for name, (until, _) in self._buckets.items() if until <= now]
            for name in expired:
                del self._buckets[name]
            self._next_sweep = now + self._sweep_seconds
        self._buckets[key] = (reset_at, count)

    def __len__(self) -> int:
        return len(self._buckets)


class FixedWindowRateLimiter:
    """Best-effort counter; the durable daily cap is the hard limit."""

    def __init__(
        self,
        *,
        name: str,
        store: RateBucketStore | None = None,
        clock: Callable[[], float] = time.monotonic,
        window_seconds: float = WINDOW_SECONDS,
    ) -> None:
        self._name = name
        self._store: RateBucketStore = (
            store if store is not None else InMemoryBucketStore(clock=clock)
        )
        self._clock = clock
        self._window_seconds = window_seconds

    def take(self, key: str, limit_per_window: int) -> bool:
        """Count one hit for `key`; False when the window is already full."""
        try:
            now = self._clock()
            bucket = self._store.get(key)
            if bucket is None or bucket[0] <= now:
                self._store.set(key, now + self._window_seconds, 1)
                return True
            reset_at, count = bucket
            if count >= limit_per_window:
                return False
            self._store.set(key, reset_at, count + 1)
            return True
        except Exception:
            # A broken bucket store must not take requests down with it.
            logger.exception("rate_limit.store_failed limiter=%s", self._name)
            return True
