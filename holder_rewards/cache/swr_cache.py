"""
In-process cache with freshness TTL, hard expiry, stale-while-revalidate
and in-flight deduplication.

One instance is shared by every caller of an adapter (the scheduler and the
status API), so concurrent misses for the same key share a single upstream
fetch.
"""

import asyncio
import time
from dataclasses import dataclass, asdict
from typing import Any, Awaitable, Callable, Dict, Generic, Optional, TypeVar

import structlog


logger = structlog.get_logger(__name__)

T = TypeVar("T")


@dataclass
class CacheEntry(Generic[T]):
    value: T
    stored_at: float


@dataclass
class CacheStats:
    """Counters for cache operations."""
    hits: int = 0
    stale_hits: int = 0
    misses: int = 0
    fetches: int = 0
    deduplicated: int = 0
    background_refreshes: int = 0
    fetch_errors: int = 0


class SWRCache(Generic[T]):
    """
    Keyed cache of fetched values.

    An entry younger than ``ttl`` is fresh. Between ``ttl`` and
    ``hard_ttl`` it is stale: reads return it immediately and schedule a
    background refresh. Past ``hard_ttl`` it is gone and the next read
    waits for a fetch.
    """

    def __init__(
        self,
        name: str,
        ttl: float,
        hard_ttl: float,
        clock: Callable[[], float] = time.monotonic
    ):
        if hard_ttl < ttl:
            raise ValueError("hard_ttl must be >= ttl")
        self.name = name
        self.ttl = ttl
        self.hard_ttl = hard_ttl
        self._clock = clock
        self._entries: Dict[str, CacheEntry[T]] = {}
        self._inflight: Dict[str, asyncio.Task] = {}
        self.stats = CacheStats()
        self.logger = logger.bind(service="swr_cache", cache=name)

    def get(self, key: str) -> Optional[T]:
        """Fresh value or None."""
        entry = self._entries.get(key)
        if entry is None or self._age(entry) >= self.ttl:
            return None
        return entry.value

    def get_stale(self, key: str) -> Optional[T]:
        """Value that has not reached hard expiry, fresh or stale."""
        entry = self._entries.get(key)
        if entry is None:
            return None
        if self._age(entry) >= self.hard_ttl:
            del self._entries[key]
            return None
        return entry.value

    def set(self, key: str, value: T) -> None:
        self._entries[key] = CacheEntry(value=value, stored_at=self._clock())

    def is_stale(self, key: str) -> bool:
        """True when the key is missing or past its freshness TTL."""
        entry = self._entries.get(key)
        return entry is None or self._age(entry) >= self.ttl

    def invalidate(self, key: str) -> None:
        self._entries.pop(key, None)

    def clear(self) -> None:
        self._entries.clear()

    def is_fetching(self, key: str) -> bool:
        return key in self._inflight

    async def get_or_fetch(self, key: str, fetcher: Callable[[], Awaitable[T]]) -> T:
        """
        Return the cached value, fetching it when needed.

        Fresh hit: returned as is. Stale hit: returned immediately with a
        background refresh scheduled. Miss: waits on the (shared) fetch and
        propagates its error.
        """
        fresh = self.get(key)
        if fresh is not None:
            self.stats.hits += 1
            return fresh

        stale = self.get_stale(key)
        if stale is not None:
            self.stats.stale_hits += 1
            self.revalidate(key, fetcher)
            return stale

        self.stats.misses += 1
        return await self.fetch(key, fetcher)

    async def fetch(self, key: str, fetcher: Callable[[], Awaitable[T]]) -> T:
        """Fetch and store, joining a fetch already in flight for the key."""
        task = self._inflight.get(key)
        if task is None:
            task = self._start_fetch(key, fetcher)
        else:
            self.stats.deduplicated += 1
        # Shield so one cancelled waiter does not cancel the shared fetch
        return await asyncio.shield(task)

    def revalidate(self, key: str, fetcher: Callable[[], Awaitable[T]]) -> None:
        """Schedule a background refresh unless one is already running."""
        if key in self._inflight:
            return
        self.stats.background_refreshes += 1
        task = self._start_fetch(key, fetcher)
        task.add_done_callback(self._log_background_result)

    def _start_fetch(self, key: str, fetcher: Callable[[], Awaitable[T]]) -> asyncio.Task:
        task = asyncio.ensure_future(self._run_fetch(key, fetcher))
        self._inflight[key] = task
        return task

    async def _run_fetch(self, key: str, fetcher: Callable[[], Awaitable[T]]) -> T:
        self.stats.fetches += 1
        try:
            value = await fetcher()
            self.set(key, value)
            return value
        except Exception as e:
            self.stats.fetch_errors += 1
            self.logger.debug("Cache fetch failed", key=key, error=str(e))
            raise
        finally:
            self._inflight.pop(key, None)

    def _log_background_result(self, task: asyncio.Task) -> None:
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            self.logger.warning(
                "Background refresh failed, serving stale value",
                error=str(error)
            )

    def _age(self, entry: CacheEntry[T]) -> float:
        return self._clock() - entry.stored_at

    def get_stats(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "entries": len(self._entries),
            "inflight": len(self._inflight),
            **asdict(self.stats),
        }
