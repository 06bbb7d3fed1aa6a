"""
Per-instance TTL cache keyed by (provider, symbol).

Entries expire purely by age. Expired entries are kept (never evicted on a
failed refresh) so a caller can explicitly ask for the last known value.
"""

from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterator, Optional, Tuple

CacheKey = Tuple[str, str]


def wall_clock_ms() -> float:
    return time.time() * 1000.0


@dataclass
class CacheEntry:
    value: Any
    stored_at_ms: float
    ttl_ms: float

    def age_ms(self, now_ms: float) -> float:
        return now_ms - self.stored_at_ms

    def is_fresh(self, now_ms: float) -> bool:
        return self.age_ms(now_ms) < self.ttl_ms


class PriceCache:
    __slots__ = ("_entries", "_clock_ms", "hits", "misses")

    def __init__(self, clock_ms: Callable[[], float] = wall_clock_ms) -> None:
        self._entries: Dict[CacheKey, CacheEntry] = {}
        self._clock_ms = clock_ms
        self.hits = 0
        self.misses = 0

    def now_ms(self) -> float:
        return self._clock_ms()

    def get(self, provider: str, symbol: str) -> Optional[Any]:
        """Return the cached value if within TTL, else None."""
        entry = self._entries.get((provider, symbol))
        if entry is not None and entry.is_fresh(self._clock_ms()):
            self.hits += 1
            return entry.value
        self.misses += 1
        return None

    def get_unchecked(self, provider: str, symbol: str) -> Optional[CacheEntry]:
        """Return the last stored entry regardless of TTL."""
        return self._entries.get((provider, symbol))

    def set(self, provider: str, symbol: str, value: Any, ttl_ms: float) -> None:
        self._entries[(provider, symbol)] = CacheEntry(value, self._clock_ms(), ttl_ms)

    def age_ms(self, provider: str, symbol: str) -> Optional[float]:
        entry = self._entries.get((provider, symbol))
        if entry is None:
            return None
        return entry.age_ms(self._clock_ms())

    def clear(self, symbol: Optional[str] = None) -> None:
        if symbol is None:
            self._entries.clear()
            return
        for key in [k for k in self._entries if k[1] == symbol]:
            del self._entries[key]

    def __len__(self) -> int:
        return len(self._entries)

    def __iter__(self) -> Iterator[CacheKey]:
        return iter(list(self._entries))
