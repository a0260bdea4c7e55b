from __future__ import annotations

import os
import threading
from typing import Any

from cachetools import TTLCache


# Entries are keyed "<KIND>:<venueId>:<userId>" so one member (or a whole venue) can be dropped by prefix.
MEMBER = "MEMBER"
OVERRIDES = "OVERRIDES"

# Stored for actors that do not exist, so repeated unknown headers do not hit the database.
MISSING = False


def access_key(kind: str, venue_id: str, user_id: str) -> str:
    return f"{str(kind).upper()}:{venue_id}:{user_id}"


class _AccessCache:
    """Resolved venue roles and permission overrides, per process."""

    def __init__(self):
        ttl = int(os.getenv("ROLE_CACHE_TTL_SECONDS", "60") or "60")
        max_items = int(os.getenv("ROLE_CACHE_MAX_ITEMS", "10000") or "10000")
        ttl = max(1, min(3600, ttl))
        max_items = max(100, min(500_000, max_items))
        self._cache = TTLCache(maxsize=max_items, ttl=ttl)
        self._lock = threading.RLock()
        self._hits = 0
        self._misses = 0

    def lookup(self, kind: str, venue_id: str, user_id: str) -> Any:
        """None means "not cached"; MISSING means "cached as absent"."""
        with self._lock:
            val = self._cache.get(access_key(kind, venue_id, user_id))
            if val is not None:
                self._hits += 1
            else:
                self._misses += 1
            return val

    def store(self, kind: str, venue_id: str, user_id: str, value: Any) -> None:
        with self._lock:
            self._cache[access_key(kind, venue_id, user_id)] = value

    def forget(self, venue_id: str, user_id: str = "") -> int:
        """Drop cached access for one member, or for every member of the venue when user_id is empty."""
        suffix = f":{venue_id}:{user_id}" if user_id else f":{venue_id}:"
        with self._lock:
            keys = [k for k in list(self._cache.keys()) if any(str(k).startswith(kind + suffix) for kind in (MEMBER, OVERRIDES))]
            for k in keys:
                self._cache.pop(k, None)
        return len(keys)

    def clear(self) -> None:
        with self._lock:
            self._cache.clear()
            self._hits = 0
            self._misses = 0

    def stats(self) -> dict[str, Any]:
        with self._lock:
            total = self._hits + self._misses
            return {
                "size": len(self._cache),
                "maxsize": self._cache.maxsize,
                "hits": self._hits,
                "misses": self._misses,
                "hit_rate": round(self._hits / total * 100, 2) if total else 0.0,
            }


_access = _AccessCache()


def lookup_access(kind: str, venue_id: str, user_id: str) -> Any:
    return _access.lookup(kind, venue_id, user_id)


def store_access(kind: str, venue_id: str, user_id: str, value: Any) -> None:
    _access.store(kind, venue_id, user_id, value)


def forget_access(venue_id: str, user_id: str = "") -> int:
    return _access.forget(venue_id, user_id)


def cache_clear() -> None:
    _access.clear()


def cache_stats() -> dict[str, Any]:
    return _access.stats()
