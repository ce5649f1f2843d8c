"""
Process-local eviction caches.

Provides:
- LRUCache: fixed capacity, evicts the least recently used entry
- TTLCache: per-entry expiry with lazy eviction and a periodic sweep
- RevokedTokenStore: LRU-bounded registry of revoked token ids

None of these are shared between processes. Services take an instance in
their constructor so a shared backend can be swapped in later.

Usage:
    from creditledger.cache import LRUCache, TTLCache

    recent = LRUCache(capacity=1000)
    recent.set("fingerprint", time.time())

    holdings = TTLCache(default_ttl=300, sweep_interval=60)
    holdings.start()
    ...
    await holdings.stop()
"""

import asyncio
import logging
import threading
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Callable, Dict, Generic, Hashable, Iterator, List, Optional, TypeVar

logger = logging.getLogger("creditledger.cache")

K = TypeVar("K", bound=Hashable)
V = TypeVar("V")


class LRUCache(Generic[K, V]):
    """
    Least Recently Used (LRU) cache.

    When the cache is full, the least recently accessed entry is evicted.
    Uses OrderedDict for O(1) LRU operations.

    Args:
        capacity: Maximum number of entries
    """

    def __init__(self, capacity: int = 1000):
        if capacity <= 0:
            raise ValueError("capacity must be positive")
        self.capacity = capacity
        self._cache: "OrderedDict[K, V]" = OrderedDict()
        self._lock = threading.RLock()

    def get(self, key: K) -> Optional[V]:
        """Get a value and mark it as recently used."""
        with self._lock:
            if key not in self._cache:
                return None
            self._cache.move_to_end(key)
            return self._cache[key]

    def set(self, key: K, value: V) -> None:
        """Set a value, evicting the LRU entry on overflow."""
        with self._lock:
            if key in self._cache:
                self._cache.move_to_end(key)
                self._cache[key] = value
                return

            self._cache[key] = value
            if len(self._cache) > self.capacity:
                evicted, _ = self._cache.popitem(last=False)
                logger.debug(f"LRU evicted {evicted!r}")

    def delete(self, key: K) -> bool:
        """Delete a key from the cache."""
        with self._lock:
            if key in self._cache:
                del self._cache[key]
                return True
            return False

    def clear(self) -> None:
        with self._lock:
            self._cache.clear()

    def keys(self) -> List[K]:
        """Keys from least to most recently used."""
        with self._lock:
            return list(self._cache.keys())

    def __len__(self) -> int:
        return len(self._cache)

    def __contains__(self, key: K) -> bool:
        # Membership does not count as a use.
        return key in self._cache

    def __iter__(self) -> Iterator[K]:
        return iter(self.keys())


@dataclass
class TTLEntry(Generic[V]):
    value: V
    expires_at: float


class TTLCache(Generic[K, V]):
    """
    Cache with time-based expiration.

    Expired entries are removed lazily on `get` and eagerly by `sweep`.
    `start()` schedules `sweep` on the running event loop every
    `sweep_interval` seconds; `stop()` cancels it.

    Args:
        default_ttl: Default TTL in seconds
        sweep_interval: Seconds between background sweeps
        clock: Time source, `time.monotonic` by default
    """

    def __init__(
        self,
        default_ttl: float = 300,
        sweep_interval: float = 60,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.default_ttl = default_ttl
        self.sweep_interval = sweep_interval
        self._clock = clock
        self._cache: Dict[K, TTLEntry[V]] = {}
        self._lock = threading.RLock()
        self._sweeper: Optional[asyncio.Task] = None

    def get(self, key: K) -> Optional[V]:
        """Get a value, removing it if it has expired."""
        with self._lock:
            entry = self._cache.get(key)
            if entry is None:
                return None
            if self._clock() > entry.expires_at:
                del self._cache[key]
                return None
            return entry.value

    def set(self, key: K, value: V, ttl: Optional[float] = None) -> None:
        effective_ttl = self.default_ttl if ttl is None else ttl
        with self._lock:
            self._cache[key] = TTLEntry(value=value, expires_at=self._clock() + effective_ttl)

    def delete(self, key: K) -> bool:
        with self._lock:
            return self._cache.pop(key, None) is not None

    def clear(self) -> None:
        with self._lock:
            self._cache.clear()

    def sweep(self) -> int:
        """Remove all expired entries. Returns the number removed."""
        now = self._clock()
        with self._lock:
            expired = [key for key, entry in self._cache.items() if now > entry.expires_at]
            for key in expired:
                del self._cache[key]
        if expired:
            logger.debug(f"TTL sweep removed {len(expired)} entries")
        return len(expired)

    def __len__(self) -> int:
        return len(self._cache)

    def __contains__(self, key: K) -> bool:
        return self.get(key) is not None

    # =========================================================================
    # Lifecycle
    # =========================================================================

    @property
    def running(self) -> bool:
        return self._sweeper is not None and not self._sweeper.done()

    def start(self) -> None:
        """Start the periodic sweep on the running event loop."""
        if self.running:
            return
        self._sweeper = asyncio.get_running_loop().create_task(self._sweep_loop())

    async def stop(self) -> None:
        """Cancel the periodic sweep."""
        if self._sweeper is None:
            return
        self._sweeper.cancel()
        try:
            await self._sweeper
        except asyncio.CancelledError:
            pass
        self._sweeper = None

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self.sweep_interval)
            self.sweep()


class RevokedTokenStore:
    """
    Revoked session/API token ids, bounded by an LRU.

    A token stays revoked until its own expiry passes or newer revocations
    evict it. Size capacity above the number of live revoked tokens.
    """

    def __init__(self, capacity: int = 10000, clock: Callable[[], float] = time.time):
        self._entries: LRUCache[str, float] = LRUCache(capacity=capacity)
        self._clock = clock

    def revoke(self, token_id: str, expires_at: Optional[float] = None) -> None:
        self._entries.set(token_id, expires_at if expires_at is not None else float("inf"))

    def is_revoked(self, token_id: str) -> bool:
        expires_at = self._entries.get(token_id)
        if expires_at is None:
            return False
        if self._clock() > expires_at:
            self._entries.delete(token_id)
            return False
        return True

    def __len__(self) -> int:
        return len(self._entries)

