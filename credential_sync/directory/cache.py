"""
Process-local read cache owned by a DirectoryStore instance.

Entries expire ``ttl`` seconds after they were written. Writers must call
``invalidate`` (or ``set``) so a read after a write in the same process never
observes stale data. There is no cross-process coherence.
"""
import time
import copy
from typing import Any, Callable, Optional


class TTLCache:
    """Small key/value cache with a fixed time-to-live.

    Values are deep-copied on the way in and out so callers can mutate what
    they receive without corrupting the cached document.
    """

    def __init__(self, ttl: float = 30.0, clock: Optional[Callable[[], float]] = None):
        self._ttl = ttl
        self._clock = clock or time.monotonic
        self._entries: dict[str, tuple[float, Any]] = {}

    @property
    def ttl(self) -> float:
        return self._ttl

    def get(self, key: str) -> Optional[Any]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        stored_at, value = entry
        if self._ttl <= 0 or self._clock() - stored_at >= self._ttl:
            del self._entries[key]
            return None
        return copy.deepcopy(value)

    def set(self, key: str, value: Any) -> None:
        self._entries[key] = (self._clock(), copy.deepcopy(value))

    def invalidate(self, key: Optional[str] = None) -> None:
        """Drop one key, or every key when ``key`` is None."""
        if key is None:
            self._entries.clear()
        else:
            self._entries.pop(key, None)

    def __contains__(self, key: str) -> bool:
        return self.get(key) is not None

    def __len__(self) -> int:
        return len(self._entries)
