"""
Thread-safe in-memory cache with per-entry TTL, LRU eviction and a
staleness grace window.

Holds per-user API payloads (repos, history, usage, categorization) across
requests within one server process. Each process has its own store; the
cache is a latency optimization and nothing relies on it being coherent
across instances.
"""
import time
import threading
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Callable, Dict, Generic, Optional, Tuple, TypeVar

T = TypeVar("T")

_DEFAULT_MAX_ENTRIES = 500


@dataclass
class CacheEntry(Generic[T]):
    value: T
    expires_at: float
    last_accessed: float


class CacheStore:
    def __init__(self, max_entries: int = _DEFAULT_MAX_ENTRIES, clock: Callable[[], float] = time.time):
        if max_entries < 1:
            raise ValueError("max_entries must be at least 1")
        # ordered by last access, least recent first
        self._store: "OrderedDict[str, CacheEntry[Any]]" = OrderedDict()
        self._max_entries = max_entries
        self._clock = clock
        self._lock = threading.Lock()

    def _touch(self, key: str, entry: CacheEntry, now: float):
        entry.last_accessed = now
        self._store.move_to_end(key)

    def get(self, key: str) -> Optional[Any]:
        """Return the value if present and not past its TTL. Expired entries are dropped."""
        with self._lock:
            entry = self._store.get(key)
            if entry is None:
                return None
            now = self._clock()
            if now > entry.expires_at:
                del self._store[key]
                return None
            self._touch(key, entry, now)
            return entry.value

    def get_with_staleness(self, key: str, grace_seconds: float) -> Optional[Tuple[Any, bool]]:
        """
        Return (value, is_stale) while the entry is within TTL + grace.
        Past the grace window the entry is purged and None is returned.
        """
        with self._lock:
            entry = self._store.get(key)
            if entry is None:
                return None
            now = self._clock()
            if now > entry.expires_at + grace_seconds:
                del self._store[key]
                return None
            self._touch(key, entry, now)
            return entry.value, now > entry.expires_at

    def set(self, key: str, value: Any, ttl_seconds: float):
        with self._lock:
            now = self._clock()
            if key in self._store:
                entry = self._store[key]
                entry.value = value
                entry.expires_at = now + ttl_seconds
                self._touch(key, entry, now)
                return
            if len(self._store) >= self._max_entries:
                self._store.popitem(last=False)
            self._store[key] = CacheEntry(value=value, expires_at=now + ttl_seconds, last_accessed=now)

    def delete(self, key: str):
        with self._lock:
            self._store.pop(key, None)

    def invalidate_by_prefix(self, prefix: str) -> int:
        """Delete all keys starting with prefix (e.g. "repos:user123")."""
        with self._lock:
            doomed = [k for k in self._store if k.startswith(prefix)]
            for k in doomed:
                del self._store[k]
            return len(doomed)

    def invalidate_user(self, user_id: str) -> int:
        """Delete every entry owned by user_id, across all resource namespaces."""
        with self._lock:
            doomed = [k for k in self._store if _owner_of(k) == user_id]
            for k in doomed:
                del self._store[k]
            return len(doomed)

    def purge_expired(self, grace_seconds: float = 0) -> int:
        with self._lock:
            now = self._clock()
            doomed = [k for k, e in self._store.items() if now > e.expires_at + grace_seconds]
            for k in doomed:
                del self._store[k]
            return len(doomed)

    def stats(self) -> Dict[str, int]:
        with self._lock:
            return {"size": len(self._store), "max_entries": self._max_entries}


def _owner_of(key: str) -> Optional[str]:
    # keys are resource:ownerId[:qualifier]
    parts = key.split(":", 2)
    return parts[1] if len(parts) > 1 else None


class CacheKeys:
    """Key builders, centralized so every endpoint agrees on the namespace."""

    @staticmethod
    def repos(user_id: str) -> str:
        return f"repos:{user_id}"

    @staticmethod
    def history(user_id: str) -> str:
        return f"history:{user_id}"

    @staticmethod
    def usage(user_id: str) -> str:
        return f"usage:{user_id}"

    @staticmethod
    def categorization(user_id: str) -> str:
        return f"categorization:{user_id}"
