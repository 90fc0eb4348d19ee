"""
In-process TTL cache for the limit-check hot path.

Provides short-lived caching for:
- Active block rules per tenant/agent (60s TTL)
- Consumption totals per tenant/agent/metric/period (60s TTL)

Entries live in a plain dict of key -> (value, expires_at). An entry observed
past its expiry is treated as absent; expired entries are purged on every
access rather than by a background timer.
"""

import time
from collections.abc import Awaitable, Callable
from threading import Lock
from typing import Generic, Optional, TypeVar

import structlog

from usage_guard.shared.core.ops_metrics import LIMIT_CHECK_CACHE_EVENTS

logger = structlog.get_logger()

T = TypeVar("T")

# Cache TTLs
LIMIT_CHECK_TTL_SECONDS = 60.0

# Key Prefixes
KEY_SEPARATOR = ":"


def make_cache_key(*parts: object) -> str:
    """Compose a cache key by joining its parts with ':'."""
    return KEY_SEPARATOR.join(str(part) for part in parts)


class TTLCache(Generic[T]):
    """
    Thread-safe in-memory key/value cache with a fixed per-entry TTL.

    Duplicate concurrent misses for the same key may both load; the last
    writer wins, which is acceptable for idempotent reads.
    """

    def __init__(
        self,
        name: str,
        ttl_seconds: float = LIMIT_CHECK_TTL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.name = name
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: dict[str, tuple[T, float]] = {}
        self._lock = Lock()
        # Bumped by every removal so loads that raced one are not written back
        self._generation = 0

    def __len__(self) -> int:
        with self._lock:
            self._evict_expired(self._clock())
            return len(self._entries)

    def __contains__(self, key: object) -> bool:
        return isinstance(key, str) and self._lookup(key)[0]

    def get(self, key: str) -> Optional[T]:
        """Return the live value for key, or None when absent or expired."""
        found, value = self._lookup(key)
        return value if found else None

    def set(self, key: str, value: T) -> None:
        now = self._clock()
        with self._lock:
            self._evict_expired(now)
            self._entries[key] = (value, now + self.ttl_seconds)
        logger.debug("cache_set", cache=self.name, key=key, ttl_seconds=self.ttl_seconds)

    def delete(self, key: str) -> bool:
        with self._lock:
            self._generation += 1
            return self._entries.pop(key, None) is not None

    def delete_prefix(self, prefix: str) -> int:
        """Delete every entry whose key starts with prefix. Returns the count."""
        with self._lock:
            self._generation += 1
            doomed = [k for k in self._entries if k.startswith(prefix)]
            for k in doomed:
                del self._entries[k]
        if doomed:
            logger.debug(
                "cache_prefix_deleted", cache=self.name, prefix=prefix, count=len(doomed)
            )
        return len(doomed)

    def clear(self) -> int:
        with self._lock:
            self._generation += 1
            count = len(self._entries)
            self._entries.clear()
        return count

    async def get_or_load(self, key: str, loader: Callable[[], Awaitable[T]]) -> T:
        """
        Return the cached value for key or await loader() and cache its result.

        The lock is never held across the await so a slow load does not stall
        unrelated keys. When a delete, prefix delete or clear lands while the
        load is running, the result is returned but not cached.
        """
        found, value = self._lookup(key)
        if found:
            LIMIT_CHECK_CACHE_EVENTS.labels(cache=self.name, result="hit").inc()
            logger.debug("cache_hit", cache=self.name, key=key)
            return value  # type: ignore[return-value]

        LIMIT_CHECK_CACHE_EVENTS.labels(cache=self.name, result="miss").inc()
        logger.debug("cache_miss", cache=self.name, key=key)
        with self._lock:
            generation = self._generation
        loaded = await loader()
        if not self._store_if_unchanged(key, loaded, generation):
            logger.debug("cache_stale_load_discarded", cache=self.name, key=key)
        return loaded

    def _store_if_unchanged(self, key: str, value: T, generation: int) -> bool:
        now = self._clock()
        with self._lock:
            if self._generation != generation:
                return False
            self._evict_expired(now)
            self._entries[key] = (value, now + self.ttl_seconds)
        return True

    def _lookup(self, key: str) -> tuple[bool, Optional[T]]:
        now = self._clock()
        with self._lock:
            self._evict_expired(now)
            entry = self._entries.get(key)
        if entry is None:
            return False, None
        return True, entry[0]

    def _evict_expired(self, now: float) -> None:
        # Caller holds the lock.
        expired = [k for k, (_, expires_at) in self._entries.items() if expires_at <= now]
        for k in expired:
            del self._entries[k]
