"""Small in-process TTL cache used for risk and performance results."""

from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Generic, Hashable, Optional, TypeVar

T = TypeVar("T")


@dataclass
class _CacheItem(Generic[T]):
    value: T
    stored_at: float


class TTLCache(Generic[T]):
    """Entries expire ``ttl_seconds`` after insertion; the oldest entry is evicted when full."""

    def __init__(
        self,
        ttl_seconds: float,
        *,
        max_items: int = 256,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.ttl = float(ttl_seconds)
        self.max_items = max_items
        self._clock = clock
        self._store: Dict[Hashable, _CacheItem[T]] = {}

    def get(self, key: Hashable) -> Optional[T]:
        item = self._store.get(key)
        if item is None:
            return None
        if self._clock() - item.stored_at >= self.ttl:
            self._store.pop(key, None)
            return None
        return item.value

    def set(self, key: Hashable, value: T) -> None:
        if key not in self._store and len(self._store) >= self.max_items:
            oldest = min(self._store.items(), key=lambda kv: kv[1].stored_at)[0]
            self._store.pop(oldest, None)
        self._store[key] = _CacheItem(value=value, stored_at=self._clock())

    def clear(self) -> None:
        self._store.clear()

    def __len__(self) -> int:
        return len(self._store)

    def stats(self) -> Dict[str, Any]:
        now = self._clock()
        alive = sum(1 for item in self._store.values() if now - item.stored_at < self.ttl)
        return {
            "size": len(self._store),
            "alive": alive,
            "expired": len(self._store) - alive,
            "ttl_seconds": self.ttl,
            "max_items": self.max_items,
        }
