"""Process-local TTL cache for site stats and chart data."""
from __future__ import annotations
import fnmatch
import logging
import threading
import time
from typing import Any, Callable, Dict, List, Optional, Tuple

logger = logging.getLogger(__name__)


class StatsCache:
    """Key/value cache with per-entry TTL and glob-pattern eviction."""

    def __init__(self, enabled: bool = True, clock: Callable[[], float] = time.monotonic):
        self.enabled = enabled
        self._clock = clock
        self._entries: Dict[str, Tuple[float, Any]] = {}
        self._lock = threading.Lock()

    def get(self, key: str, default: Any = None) -> Any:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return default
            expires, value = entry
            if expires <= self._clock():
                del self._entries[key]
                return default
            return value

    def set(self, key: str, value: Any, ttl: float) -> None:
        if not self.enabled:
            return
        with self._lock:
            self._entries[key] = (self._clock() + ttl, value)

    def remember(self, key: str, ttl: float, producer: Callable[[], Any]) -> Any:
        """Cached value for ``key``, computing and storing it on a miss."""
        missing = object()
        value = self.get(key, missing)
        if value is missing:
            value = producer()
            self.set(key, value, ttl)
        return value

    def evict(self, pattern: str) -> int:
        with self._lock:
            doomed = [k for k in self._entries if fnmatch.fnmatchcase(k, pattern)]
            for k in doomed:
                del self._entries[k]
        return len(doomed)

    def keys(self) -> List[str]:
        with self._lock:
            return list(self._entries)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()


# Shared by the HTTP service and the scheduled sweeps in one process
_default_cache: Optional[StatsCache] = None


def get_cache() -> StatsCache:
    global _default_cache
    if _default_cache is None:
        _default_cache = StatsCache()
    return _default_cache
