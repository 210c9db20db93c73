"""
In-process stale-while-revalidate cache for the read routes.

An entry is fresh for ``policy.freshness`` seconds, then stale but servable
for a further ``policy.stale_window`` seconds. A stale hit returns the old
value at once and starts a single background refresh for that key. Past the
stale window the entry is treated as a miss and loaded synchronously.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Hashable, Optional, Tuple

logger = logging.getLogger(__name__)

Loader = Callable[[], Awaitable[Any]]


@dataclass(frozen=True)
class CachePolicy:
    name: str
    freshness: int
    stale_window: int

    @property
    def cache_control(self) -> str:
        return (
            f"public, s-maxage={self.freshness}, "
            f"stale-while-revalidate={self.stale_window}"
        )


NOW_PLAYING = CachePolicy("now_playing", freshness=30, stale_window=30)
RECENT = CachePolicy("recent", freshness=120, stale_window=300)
COMMITS = CachePolicy("commits", freshness=300, stale_window=600)
AGGREGATE = CachePolicy("aggregate", freshness=300, stale_window=3600)


class EntryState(str, Enum):
    FRESH = "fresh"
    STALE = "stale"
    REFRESHING = "refreshing"


@dataclass
class _Entry:
    value: Any
    stored_at: float


class SWRCache:
    """Keyed values with per-key single-flight loading."""

    def __init__(self, *, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._entries: Dict[Hashable, _Entry] = {}
        self._inflight: Dict[Hashable, asyncio.Task] = {}
        # Bumped by invalidate(); a load that started under an older generation
        # returns its value to its callers but does not populate the cache.
        self._epoch = 0
        self._generations: Dict[Hashable, int] = {}

    def state(self, key: Hashable, policy: CachePolicy) -> Optional[EntryState]:
        """Current state of ``key``; None when absent or past the stale window."""
        entry = self._entries.get(key)
        if entry is None:
            return None
        age = self._clock() - entry.stored_at
        if age < policy.freshness:
            return EntryState.FRESH
        if age >= policy.freshness + policy.stale_window:
            return None
        task = self._inflight.get(key)
        if task is not None and not task.done():
            return EntryState.REFRESHING
        return EntryState.STALE

    async def get(self, key: Hashable, policy: CachePolicy, loader: Loader) -> Any:
        state = self.state(key, policy)
        if state is None:
            return await asyncio.shield(self._load(key, loader))
        if state == EntryState.STALE:
            task = self._load(key, loader)
            task.add_done_callback(lambda t, k=key: self._log_refresh_failure(k, t))
        return self._entries[key].value

    def invalidate(self, key: Optional[Hashable] = None) -> None:
        """Drop cached values and detach loads already in flight."""
        if key is None:
            self._epoch += 1
            self._entries.clear()
            self._inflight.clear()
        else:
            self._generations[key] = self._generations.get(key, 0) + 1
            self._entries.pop(key, None)
            self._inflight.pop(key, None)

    async def drain(self) -> None:
        """Wait for outstanding background refreshes."""
        pending = [t for t in self._inflight.values() if not t.done()]
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

    def _load(self, key: Hashable, loader: Loader) -> asyncio.Task:
        task = self._inflight.get(key)
        if task is None or task.done():
            task = asyncio.ensure_future(self._store(key, loader, self._generation(key)))
            self._inflight[key] = task

            def _clear(done: asyncio.Task, k: Hashable = key) -> None:
                if self._inflight.get(k) is done:
                    del self._inflight[k]

            task.add_done_callback(_clear)
        return task

    def _generation(self, key: Hashable) -> Tuple[int, int]:
        return self._epoch, self._generations.get(key, 0)

    async def _store(
        self, key: Hashable, loader: Loader, generation: Tuple[int, int]
    ) -> Any:
        value = await loader()
        if self._generation(key) != generation:
            logger.debug("Discarding load of %r that raced an invalidation", key)
            return value
        self._entries[key] = _Entry(value=value, stored_at=self._clock())
        return value

    @staticmethod
    def _log_refresh_failure(key: Hashable, task: asyncio.Task) -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.warning("Background refresh of %r failed; serving stale value: %s", key, exc)


__all__ = [
    "AGGREGATE",
    "COMMITS",
    "CachePolicy",
    "EntryState",
    "NOW_PLAYING",
    "RECENT",
    "SWRCache",
]
