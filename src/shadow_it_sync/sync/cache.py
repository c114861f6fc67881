"""
Caller-owned TTL cache.

Each fetch run creates its own cache; nothing here is module-level state.
"""

import time
from typing import Any, Awaitable, Callable, Dict, Generic, Hashable, Optional, Tuple, TypeVar

V = TypeVar("V")


class TTLCache(Generic[V]):
    """Mapping of key -> (value, expiry) with lazy eviction on read."""

    def __init__(self, ttl_seconds: float, clock: Callable[[], float] = time.monotonic):
        if ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be positive")
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: Dict[Hashable, Tuple[V, float]] = {}
        self.hits = 0
        self.misses = 0

    def get(self, key: Hashable) -> Optional[V]:
        entry = self._entries.get(key)
        if entry is None:
            self.misses += 1
            return None
        value, expires_at = entry
        if self._clock() >= expires_at:
            del self._entries[key]
            self.misses += 1
            return None
        self.hits += 1
        return value

    def set(self, key: Hashable, value: V, ttl_seconds: Optional[float] = None) -> None:
        self._entries[key] = (value, self._clock() + (ttl_seconds or self.ttl_seconds))

    async def get_or_load(self, key: Hashable, loader: Callable[[], Awaitable[V]]) -> V:
        """Return the cached value or await loader() and cache its result."""
        cached = self.get(key)
        if cached is not None:
            return cached
        value = await loader()
        self.set(key, value)
        return value

    def invalidate(self, key: Hashable) -> None:
        self._entries.pop(key, None)

    def purge_expired(self) -> int:
        now = self._clock()
        expired = [k for k, (_, expires_at) in self._entries.items() if now >= expires_at]
        for key in expired:
            del self._entries[key]
        return len(expired)

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: Any) -> bool:
        return self.get(key) is not None
