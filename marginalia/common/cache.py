"""
Result Cache

LRU cache with TTL expiry used to memoize single-shot LLM outputs.
Also provides single-flight deduplication so concurrent requests for the
same uncached key share one upstream call.
"""

import asyncio
import hashlib
import json
import logging
import time
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

logger = logging.getLogger("marginalia.common.cache")


@dataclass
class CacheEntry:
    """A single cached value"""
    key: str
    value: Any
    inserted_at: float
    expires_at: float
    hit_count: int = 0


@dataclass
class CacheStats:
    """Counters reported by LRUCache.stats()"""
    hits: int = 0
    misses: int = 0
    size: int = 0

    @property
    def hit_rate(self) -> float:
        total = self.hits + self.misses
        return self.hits / total if total else 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "hits": self.hits,
            "misses": self.misses,
            "size": self.size,
            "hit_rate": round(self.hit_rate, 4),
        }


def generate_cache_key(obj: Dict[str, Any]) -> str:
    """Build a deterministic key from a normalized mapping.

    The mapping is encoded as canonical JSON (sorted keys, compact separators)
    and hashed with SHA-256. Callers must leave out fields that vary between
    equivalent requests (timestamps, handles).
    """
    canonical = json.dumps(
        obj,
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=False,
        default=str,
    )
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


class LRUCache:
    """
    Key/value cache with TTL expiry and least-recently-accessed eviction.

    An entry is a miss once ``now - inserted_at >= ttl``. Expired entries
    are purged when they are touched, or in bulk by ``cleanup()``.

    Usage:
        cache = LRUCache(max_size=100, ttl=1800)
        cache.set(key, "value")
        cache.get(key)  # "value" until the TTL elapses
    """

    def __init__(
        self,
        max_size: int = 100,
        ttl: float = 1800.0,
        clock: Optional[Callable[[], float]] = None,
        name: str = "cache",
    ):
        """
        Args:
            max_size: Maximum number of live entries (must be > 0)
            ttl: Time to live in seconds
            clock: Monotonic time source, injectable for tests
            name: Label used in log messages
        """
        if max_size <= 0:
            raise ValueError("max_size must be greater than 0")
        if ttl <= 0:
            raise ValueError("ttl must be greater than 0")

        self.max_size = max_size
        self.ttl = ttl
        self.name = name
        self._clock = clock or time.monotonic
        self._entries: "OrderedDict[str, CacheEntry]" = OrderedDict()
        self._inflight: Dict[str, "asyncio.Future[Any]"] = {}
        self._hits = 0
        self._misses = 0

    def _is_expired(self, entry: CacheEntry, now: float) -> bool:
        return now - entry.inserted_at >= self.ttl

    def get(self, key: str) -> Optional[Any]:
        """Return the cached value, or None on a miss."""
        entry = self._entries.get(key)
        if entry is None:
            self._misses += 1
            return None

        if self._is_expired(entry, self._clock()):
            del self._entries[key]
            self._misses += 1
            return None

        self._entries.move_to_end(key)
        entry.hit_count += 1
        self._hits += 1
        return entry.value

    def set(self, key: str, value: Any) -> None:
        """Store a value, evicting the least recently accessed entry if full."""
        if value is None:
            raise ValueError("None cannot be cached; it is reserved for misses")

        now = self._clock()
        if key in self._entries:
            del self._entries[key]
        elif len(self._entries) >= self.max_size:
            self._purge_expired(now)
            while len(self._entries) >= self.max_size:
                evicted, _ = self._entries.popitem(last=False)
                logger.debug("[%s] Evicted %s", self.name, evicted[:12])

        self._entries[key] = CacheEntry(
            key=key,
            value=value,
            inserted_at=now,
            expires_at=now + self.ttl,
        )

    def has(self, key: str) -> bool:
        """Check for a live entry without touching recency or stats."""
        entry = self._entries.get(key)
        if entry is None:
            return False
        if self._is_expired(entry, self._clock()):
            del self._entries[key]
            return False
        return True

    def delete(self, key: str) -> bool:
        return self._entries.pop(key, None) is not None

    def clear(self) -> None:
        self._entries.clear()
        self._hits = 0
        self._misses = 0

    @property
    def size(self) -> int:
        return len(self._entries)

    def __len__(self) -> int:
        return len(self._entries)

    def stats(self) -> CacheStats:
        return CacheStats(hits=self._hits, misses=self._misses, size=len(self._entries))

    def cleanup(self) -> int:
        """Remove every expired entry. Returns the number removed."""
        return self._purge_expired(self._clock())

    def _purge_expired(self, now: float) -> int:
        expired = [k for k, e in self._entries.items() if self._is_expired(e, now)]
        for key in expired:
            del self._entries[key]
        return len(expired)

    def entries(self) -> List[Tuple[str, CacheEntry]]:
        """Snapshot of entries, least recently accessed first."""
        return list(self._entries.items())

    # ------------------------------------------------------------------ #
    # Single-flight
    # ------------------------------------------------------------------ #

    def in_flight(self, key: str) -> bool:
        return key in self._inflight

    async def get_or_compute(
        self,
        key: str,
        factory: Callable[[], Awaitable[Any]],
    ) -> Any:
        """Return the cached value or compute it exactly once.

        Concurrent callers for the same uncached key await one shared task.
        The in-flight entry is dropped when that task finishes, fails or is
        cancelled. Failures are never cached; each waiter sees the exception.
        """
        cached = self.get(key)
        if cached is not None:
            return cached

        task = self._inflight.get(key)
        if task is None:
            task = asyncio.ensure_future(self._compute(key, factory))
            self._inflight[key] = task
            task.add_done_callback(lambda t, k=key: self._release(k, t))
        else:
            logger.debug("[%s] Joining in-flight request %s", self.name, key[:12])

        return await asyncio.shield(task)

    async def _compute(self, key: str, factory: Callable[[], Awaitable[Any]]) -> Any:
        value = await factory()
        if value is not None:
            self.set(key, value)
        return value

    def _release(self, key: str, task: "asyncio.Future[Any]") -> None:
        if self._inflight.get(key) is task:
            del self._inflight[key]
        # Mark the exception as retrieved when every waiter went away
        if not task.cancelled():
            task.exception()
