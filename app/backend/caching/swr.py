"""
Stale-while-revalidate reads on top of CacheStore.

fresh hit  -> cached value, no loader call
stale hit  -> cached value now, one background refresh per key
miss       -> loader runs inline and its result is cached
"""
import logging
from enum import Enum
from typing import Any, Awaitable, Callable, Optional, Tuple

from background.detached_tasks import DetachedTasks
from caching.cache_store import CacheStore
from caching.single_flight import SingleFlightGuard
from settings import CachePolicy

logger = logging.getLogger(__name__)

# loaders return None when there is nothing to cache (e.g. no record yet)
Loader = Callable[[], Awaitable[Optional[Any]]]


class CacheStatus(str, Enum):
    HIT = "HIT"
    MISS = "MISS"
    STALE = "STALE"


class StaleWhileRevalidate:
    def __init__(self, cache: CacheStore, guard: SingleFlightGuard, tasks: DetachedTasks):
        self.cache = cache
        self.guard = guard
        self.tasks = tasks

    async def fetch(
        self,
        key: str,
        loader: Loader,
        policy: CachePolicy,
        force_refresh: bool = False,
    ) -> Tuple[Optional[Any], CacheStatus]:
        if not force_refresh:
            found = self.cache.get_with_staleness(key, policy.grace_seconds)
            if found is not None:
                value, is_stale = found
                if not is_stale:
                    return value, CacheStatus.HIT
                self.refresh_in_background(key, loader, policy)
                return value, CacheStatus.STALE

        value = await loader()
        if value is not None:
            self.cache.set(key, value, policy.ttl_seconds)
        return value, CacheStatus.MISS

    def refresh_in_background(self, key: str, loader: Loader, policy: CachePolicy) -> bool:
        """Start a refresh for key unless one is already running. Returns True if one was started."""
        if not self.guard.try_acquire(key):
            logger.debug("Refresh already in flight for %s", key)
            return False
        self.tasks.spawn(
            self._refresh(key, loader, policy),
            name=f"refresh:{key}",
            on_done=lambda: self.guard.release(key),
        )
        return True

    async def _refresh(self, key: str, loader: Loader, policy: CachePolicy):
        try:
            value = await loader()
        except Exception as e:
            # keep serving the stale copy; the next reader retries
            logger.warning("Background refresh of %s failed: %s", key, e)
            return
        if value is None:
            self.cache.delete(key)
            return
        self.cache.set(key, value, policy.ttl_seconds)
        logger.debug("Background refresh of %s committed", key)
