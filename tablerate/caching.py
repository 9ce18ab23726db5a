"""TTL cache with LRU eviction, used for per-restaurant aggregates.

Everything touching it runs on the event loop, so no lock is taken.
"""

import time
from collections import OrderedDict
from typing import Any, Callable, Hashable, Optional, Tuple


class TimedCache:
    """In-memory cache with per-item TTL and LRU eviction.

    Parameters
    ----------
    max_items:
        Maximum number of entries to keep.
    ttl:
        Time-to-live in seconds for each entry.
    clock:
        Returns the current time in seconds; ``time.monotonic`` by default.
    """

    def __init__(
        self,
        max_items: int = 1024,
        ttl: float = 30.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.max_items: int = max(1, int(max_items))
        self.ttl: float = float(ttl)
        self._clock = clock
        self._store: OrderedDict[Hashable, Tuple[float, float, Any]] = OrderedDict()

    def _prune(self) -> None:
        now = self._clock()
        dead = [key for key, (expires, _at, _val) in self._store.items() if expires <= now]
        for key in dead:
            self._store.pop(key, None)
        while len(self._store) > self.max_items:
            self._store.popitem(last=False)

    def get(self, key: Hashable) -> Optional[Any]:
        """Return cached value or ``None`` if missing/expired."""
        item = self._store.get(key)
        if not item:
            return None
        expires, _at, value = item
        if expires <= self._clock():
            self._store.pop(key, None)
            return None
        self._store.move_to_end(key)
        return value

    def set(self, key: Hashable, value: Any) -> None:
        now = self._clock()
        self._store[key] = (now + self.ttl, now, value)
        self._store.move_to_end(key)
        self._prune()

    def pop(self, key: Hashable) -> None:
        self._store.pop(key, None)

    def clear(self) -> None:
        self._store.clear()

    def __len__(self) -> int:
        return len(self._store)

    def entries(self) -> list[dict[str, Any]]:
        """Age and remaining lifetime of every live entry."""
        self._prune()
        now = self._clock()
        return [
            {"key": key, "age": round(now - at, 3), "expires_in": round(expires - now, 3)}
            for key, (expires, at, _val) in self._store.items()
        ]
