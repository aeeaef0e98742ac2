"""
Bounded caches with time-based expiry.

TTLCache is an LRU (OrderedDict, oldest first) whose entries also expire
after `ttl` seconds. Two thin wrappers sit on top:

- EmbeddingCache: (owner, semantic hash) -> vector
- RetrievalCache: (owner, context fingerprint) -> ranked results,
  dropped for an owner whenever that owner's memories change

Both are plain objects handed to the components that use them. Nothing
here is module-global.
"""

import time
from collections import OrderedDict
from typing import Any, Callable, Hashable, Optional


class TTLCache:
    """LRU cache with per-entry expiry.

    Usage:
        cache = TTLCache(max_size=100, ttl=60)
        cache.set("k", value)
        cache.get("k")  # value, or None once 60s have passed
    """

    def __init__(
        self,
        max_size: int,
        ttl: float,
        clock: Callable[[], float] = time.monotonic,
    ):
        if max_size <= 0:
            raise ValueError("max_size must be positive")
        self.max_size = max_size
        self.ttl = ttl
        self._clock = clock
        self._data: OrderedDict[Hashable, tuple[float, Any]] = OrderedDict()
        self._metrics = {
            "hits": 0,
            "misses": 0,
            "evictions": 0,
            "expirations": 0,
        }

    def __len__(self) -> int:
        return len(self._data)

    def __contains__(self, key: Hashable) -> bool:
        entry = self._data.get(key)
        return entry is not None and not self._expired(entry[0])

    def _expired(self, stored_at: float) -> bool:
        return (self._clock() - stored_at) > self.ttl

    def get(self, key: Hashable) -> Optional[Any]:
        entry = self._data.get(key)
        if entry is None:
            self._metrics["misses"] += 1
            return None

        stored_at, value = entry
        if self._expired(stored_at):
            del self._data[key]
            self._metrics["expirations"] += 1
            self._metrics["misses"] += 1
            return None

        # Mark as recently used
        self._data.move_to_end(key)
        self._metrics["hits"] += 1
        return value

    def set(self, key: Hashable, value: Any) -> None:
        self._data[key] = (self._clock(), value)
        self._data.move_to_end(key)

        # Evict oldest if cache is full
        while len(self._data) > self.max_size:
            self._data.popitem(last=False)
            self._metrics["evictions"] += 1

    def delete(self, key: Hashable) -> bool:
        return self._data.pop(key, None) is not None

    def delete_where(self, predicate: Callable[[Hashable], bool]) -> int:
        """Remove every key matching predicate. Returns count removed."""
        doomed = [k for k in self._data if predicate(k)]
        for key in doomed:
            del self._data[key]
        return len(doomed)

    def cleanup(self) -> int:
        """Drop expired entries. Returns count removed."""
        now = self._clock()
        doomed = [k for k, (stored_at, _) in self._data.items() if now - stored_at > self.ttl]
        for key in doomed:
            del self._data[key]
        self._metrics["expirations"] += len(doomed)
        return len(doomed)

    def clear(self) -> None:
        self._data.clear()

    def get_metrics(self) -> dict:
        total = self._metrics["hits"] + self._metrics["misses"]
        hit_rate = self._metrics["hits"] / total * 100 if total else 0.0
        return {
            **self._metrics,
            "size": len(self._data),
            "max_size": self.max_size,
            "ttl_seconds": self.ttl,
            "hit_rate_percent": round(hit_rate, 2),
        }


class EmbeddingCache:
    """Vectors keyed per owner so one user's entries never serve another."""

    def __init__(self, max_size: int, ttl: float, clock: Callable[[], float] = time.monotonic):
        self._cache = TTLCache(max_size, ttl, clock)

    def get(self, owner_id: str, semantic_hash: str) -> Optional[list[float]]:
        return self._cache.get((owner_id, semantic_hash))

    def set(self, owner_id: str, semantic_hash: str, vector: list[float]) -> None:
        self._cache.set((owner_id, semantic_hash), vector)

    def cleanup(self) -> int:
        return self._cache.cleanup()

    def __len__(self) -> int:
        return len(self._cache)

    def get_metrics(self) -> dict:
        return self._cache.get_metrics()


class RetrievalCache:
    """Ranked results keyed by (owner, context fingerprint)."""

    def __init__(self, max_size: int, ttl: float, clock: Callable[[], float] = time.monotonic):
        self._cache = TTLCache(max_size, ttl, clock)
        self._invalidations = 0

    def get(self, owner_id: str, fingerprint: str) -> Optional[Any]:
        return self._cache.get((owner_id, fingerprint))

    def set(self, owner_id: str, fingerprint: str, result: Any) -> None:
        self._cache.set((owner_id, fingerprint), result)

    def invalidate_owner(self, owner_id: str) -> int:
        """Forget every cached result for this owner."""
        removed = self._cache.delete_where(lambda key: key[0] == owner_id)
        self._invalidations += 1
        return removed

    def cleanup(self) -> int:
        return self._cache.cleanup()

    def __len__(self) -> int:
        return len(self._cache)

    def get_metrics(self) -> dict:
        return {**self._cache.get_metrics(), "invalidations": self._invalidations}
