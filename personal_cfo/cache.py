"""In-memory TTL cache for derived analytics results.

Process local and never persisted. One instance is created at startup and
passed to the code that needs it.
"""
import time
from typing import Any, Callable, Dict, Mapping, Optional, Tuple, TypeVar

T = TypeVar("T")

_MISSING = object()


class TTLCache:
    """Map with per-entry expiry, evicted lazily on read."""

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        """Initialize the cache.

        Args:
            clock: Returns the current time in seconds (injected for testing)
        """
        self._clock = clock
        self._store: Dict[str, Tuple[Any, float]] = {}

    def _now_ms(self) -> float:
        return self._clock() * 1000

    def get(self, key: str, default: Any = None) -> Any:
        entry = self._store.get(key)
        if entry is None:
            return default
        value, expires_at = entry
        if self._now_ms() > expires_at:
            self._store.pop(key, None)
            return default
        return value

    def set(self, key: str, value: Any, ttl_ms: float) -> None:
        self._store[key] = (value, self._now_ms() + ttl_ms)

    def has(self, key: str) -> bool:
        return self.get(key, _MISSING) is not _MISSING

    def delete(self, key: str) -> None:
        self._store.pop(key, None)

    def delete_prefix(self, prefix: str) -> int:
        """Drop every entry whose key starts with `prefix`, returns count dropped."""
        keys = [k for k in self.keys() if k.startswith(prefix)]
        for key in keys:
            self._store.pop(key, None)
        return len(keys)

    def keys(self):
        """Snapshot of stored keys, expired ones included."""
        return list(self._store)

    def clear(self) -> None:
        self._store.clear()

    def __len__(self) -> int:
        return len(self._store)


def with_cache(cache: TTLCache, key: str, ttl_ms: float, compute: Callable[[], T]) -> T:
    """Return the cached value for `key`, computing and storing it on a miss.

    Not atomic: concurrent misses may both compute, the last write wins.
    """
    cached = cache.get(key, _MISSING)
    if cached is not _MISSING:
        return cached
    result = compute()
    cache.set(key, result, ttl_ms)
    return result


def analytics_cache_key(user_id: str, endpoint: str, params: Mapping[str, Optional[Any]]) -> str:
    """Build a stable cache key; parameter order does not matter."""
    entries = sorted((k, str(v)) for k, v in params.items() if v is not None)
    param_str = "&".join(f"{k}={v}" for k, v in entries)
    return f"analytics:{endpoint}:u={user_id}:{param_str}"


def invalidate_user_analytics(cache: TTLCache, user_id: str) -> int:
    """Drop all cached analytics of one user."""
    dropped = 0
    for key in [k for k in cache.keys() if k.startswith("analytics:") and f":u={user_id}:" in k]:
        cache.delete(key)
        dropped += 1
    return dropped
