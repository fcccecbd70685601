"""
Small in-memory TTL cache.

Instances are owned by the component that needs them (source listings,
record lookups) and passed in explicitly, so a warm Lambda container can
reuse them across messages without hidden module state.
"""

import logging
import time
from collections import OrderedDict
from typing import Any, Callable, Dict, Optional

logger = logging.getLogger(__name__)


class TTLCache:
    """Key/value cache with per-entry expiry and oldest-first eviction."""

    def __init__(
        self,
        ttl_seconds: float = 300,
        max_entries: int = 10000,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.ttl_seconds = ttl_seconds
        self.max_entries = max_entries
        self._clock = clock
        self._entries: "OrderedDict[str, Dict[str, Any]]" = OrderedDict()
        self.hits = 0
        self.misses = 0

    def set(self, key: str, value: Any, ttl: Optional[float] = None) -> None:
        """
        Cache a value with TTL.

        Args:
            key: Cache key
            value: Value to cache
            ttl: Time to live in seconds (defaults to the cache TTL)
        """
        expiry = self._clock() + (self.ttl_seconds if ttl is None else ttl)
        if key in self._entries:
            del self._entries[key]
        self._entries[key] = {"value": value, "expiry": expiry}
        while len(self._entries) > self.max_entries:
            evicted, _ = self._entries.popitem(last=False)
            logger.debug(f"Evicted {evicted} from cache")

    def get(self, key: str) -> Optional[Any]:
        """
        Get value from cache if not expired.

        Returns:
            Cached value or None if not found/expired
        """
        entry = self._entries.get(key)
        if entry is None:
            self.misses += 1
            return None

        if self._clock() > entry["expiry"]:
            del self._entries[key]
            self.misses += 1
            return None

        self.hits += 1
        return entry["value"]

    def __contains__(self, key: str) -> bool:
        entry = self._entries.get(key)
        return entry is not None and self._clock() <= entry["expiry"]

    def __len__(self) -> int:
        return len(self._entries)

    def invalidate(self, pattern: Optional[str] = None) -> int:
        """
        Invalidate cache entries.

        Args:
            pattern: Optional substring to match keys. If None, clears all.

        Returns:
            Number of entries invalidated
        """
        if pattern is None:
            count = len(self._entries)
            self._entries.clear()
            return count

        keys_to_delete = [k for k in self._entries if pattern in k]
        for key in keys_to_delete:
            del self._entries[key]
        return len(keys_to_delete)

    def cleanup_expired(self) -> int:
        now = self._clock()
        keys_to_delete = [k for k, v in self._entries.items() if now > v["expiry"]]
        for key in keys_to_delete:
            del self._entries[key]
        if keys_to_delete:
            logger.debug(f"Cleaned up {len(keys_to_delete)} expired cache entries")
        return len(keys_to_delete)

    def stats(self) -> Dict[str, Any]:
        now = self._clock()
        active = sum(1 for v in self._entries.values() if now <= v["expiry"])
        return {
            "total_entries": len(self._entries),
            "active_entries": active,
            "expired_entries": len(self._entries) - active,
            "hits": self.hits,
            "misses": self.misses,
        }
