"""TTL and LRU based caching for read-only RPC responses."""

import hashlib
import json
import threading
import time
from collections import OrderedDict
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any


@dataclass(frozen=True)
class CacheEntry:
    """
    Immutable cache entry.

    Parameters
    ----------
    key : str
        Cache key
    value : Any
        Cached value
    expires_at : float
        Clock time after which the entry is stale
    inserted_at : float
        Clock time of insertion

    """

    key: str
    value: Any
    expires_at: float
    inserted_at: float

    def is_expired(self, now: float) -> bool:
        """Check if the entry is stale at ``now``."""
        return now >= self.expires_at


class ResponseCache:
    """
    In-memory LRU cache for RPC responses with per-entry TTL.

    Safe to share between tasks and threads. On concurrent fills of the same
    key the last write wins.

    Parameters
    ----------
    max_entries : int
        Maximum number of live entries before LRU eviction
    clock : Callable[[], float]
        Monotonic time source, injectable for tests

    """

    def __init__(self, max_entries: int = 10_000, clock: Callable[[], float] = time.monotonic) -> None:
        if max_entries < 1:
            msg = "max_entries must be positive"
            raise ValueError(msg)
        self.max_entries = max_entries
        self._clock = clock
        self._entries: OrderedDict[str, CacheEntry] = OrderedDict()
        self._lock = threading.Lock()
        self.hits = 0
        self.misses = 0
        self.evictions = 0

    @staticmethod
    def make_key(chain: str, method: str, params: Any) -> str:
        """
        Generate cache key from chain, method and parameters.

        Parameters
        ----------
        chain : str
            Chain name
        method : str
            RPC method name
        params : Any
            JSON-serializable method parameters

        Returns
        -------
        str
            SHA-256 hex digest of the canonical JSON form

        """
        key_data = {"chain": chain, "method": method, "params": params}
        key_str = json.dumps(key_data, sort_keys=True, separators=(",", ":"), default=str)
        return hashlib.sha256(key_str.encode()).hexdigest()

    def get(self, key: str) -> CacheEntry | None:
        """
        Get the live entry for a key.

        Returns
        -------
        CacheEntry | None
            Entry if present and fresh, None otherwise (stale entries are dropped)

        """
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                self.misses += 1
                return None
            if entry.is_expired(self._clock()):
                del self._entries[key]
                self.misses += 1
                return None
            self._entries.move_to_end(key)
            self.hits += 1
            return entry

    def set(self, key: str, value: Any, ttl: float) -> CacheEntry:
        """
        Store a value with a TTL in seconds.

        Returns
        -------
        CacheEntry
            The stored entry

        """
        now = self._clock()
        entry = CacheEntry(key=key, value=value, expires_at=now + ttl, inserted_at=now)
        with self._lock:
            self._entries[key] = entry
            self._entries.move_to_end(key)
            while len(self._entries) > self.max_entries:
                self._entries.popitem(last=False)
                self.evictions += 1
        return entry

    async def get_or_fetch(self, key: str, ttl: float, fetch: Callable[[], Any]) -> Any:
        """
        Return the cached value or await ``fetch()`` and cache its result.

        Parameters
        ----------
        key : str
            Cache key
        ttl : float
            Time-to-live for a fresh fill
        fetch : Callable[[], Awaitable]
            Coroutine factory producing the value on a miss

        Returns
        -------
        Any
            Cached or freshly fetched value

        """
        entry = self.get(key)
        if entry is not None:
            return entry.value
        value = await fetch()
        self.set(key, value, ttl)
        return value

    def invalidate(self, key: str) -> None:
        with self._lock:
            self._entries.pop(key, None)

    def clear(self) -> None:
        """Clear all cached entries."""
        with self._lock:
            self._entries.clear()

    def cleanup_expired(self) -> int:
        """
        Remove all expired entries from cache.

        Returns
        -------
        int
            Number of entries removed

        """
        now = self._clock()
        with self._lock:
            expired_keys = [key for key, entry in self._entries.items() if entry.is_expired(now)]
            for key in expired_keys:
                del self._entries[key]
        return len(expired_keys)

    def __len__(self) -> int:
        return len(self._entries)

    @property
    def hit_rate(self) -> float:
        total = self.hits + self.misses
        return self.hits / total if total else 0.0

    def stats(self) -> dict[str, float]:
        """Return hit, miss and eviction counters."""
        return {
            "entries": len(self._entries),
            "hits": self.hits,
            "misses": self.misses,
            "evictions": self.evictions,
            "hit_rate": self.hit_rate,
        }
