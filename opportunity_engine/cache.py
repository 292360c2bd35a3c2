"""
Explicit TTL cache for remote lookups.

Constructed once per process and handed to the collaborators that need
it (fingerprint snapshots, best-sale anchors, DMS taxonomy tables).
"""

import logging
import threading
import time
from typing import Any, Callable, Hashable, Optional

logger = logging.getLogger(__name__)

_MISSING = object()


class TTLCache:
    """
    Small thread-safe key/value cache with a fixed time-to-live.

    Usage:
        cache = TTLCache(ttl_seconds=300)
        fps = cache.get_or_load(("fingerprints", account_id), load_fn)
    """

    def __init__(self, ttl_seconds: float, clock: Optional[Callable[[], float]] = None):
        if ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be positive")
        self.ttl_seconds = ttl_seconds
        self._clock = clock or time.monotonic
        self._entries: dict[Hashable, tuple[float, Any]] = {}
        self._lock = threading.Lock()

    def get(self, key: Hashable, default: Any = None) -> Any:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return default
            expires_at, value = entry
            if self._clock() >= expires_at:
                del self._entries[key]
                return default
            return value

    def set(self, key: Hashable, value: Any) -> None:
        with self._lock:
            self._entries[key] = (self._clock() + self.ttl_seconds, value)

    def get_or_load(self, key: Hashable, loader: Callable[[], Any]) -> Any:
        """Return the cached value for key, calling loader on a miss."""
        value = self.get(key, _MISSING)
        if value is not _MISSING:
            return value
        logger.debug(f"Cache miss: {key}")
        value = loader()
        self.set(key, value)
        return value

    def invalidate(self, key: Optional[Hashable] = None) -> None:
        """Drop one key, or everything when key is None."""
        with self._lock:
            if key is None:
                self._entries.clear()
            else:
                self._entries.pop(key, None)

    def __len__(self) -> int:
        with self._lock:
            now = self._clock()
            return sum(1 for expires_at, _ in self._entries.values() if now < expires_at)
