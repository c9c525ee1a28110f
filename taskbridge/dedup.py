"""Webhook event deduplication.

The chat platform re-delivers an event until it sees a 200, so the same
event id can arrive several times within a few seconds. Ids are remembered
for a TTL window; after eviction a late re-delivery is no longer caught.
"""

from __future__ import annotations

import asyncio
import logging
import time
from abc import ABC, abstractmethod
from collections import OrderedDict
from typing import Callable

LOGGER = logging.getLogger(__name__)

DEFAULT_TTL_SECONDS = 300.0
DEFAULT_MAX_ENTRIES = 5000


class TTLCache(ABC):
    """Key set with time-based expiry. Swap in a shared store for multi-instance deployments."""

    @abstractmethod
    def add_if_absent(self, key: str) -> bool:
        """Record `key`. Returns False when it was already present and unexpired."""

    @abstractmethod
    def sweep(self) -> int:
        """Drop expired keys and return how many were removed."""

    @abstractmethod
    def __len__(self) -> int: ...


class InMemoryTTLCache(TTLCache):
    """Process-local cache bounded by TTL and a hard entry cap."""

    def __init__(
        self,
        ttl_seconds: float = DEFAULT_TTL_SECONDS,
        max_entries: int = DEFAULT_MAX_ENTRIES,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if max_entries < 1:
            raise ValueError("max_entries must be positive")
        self._ttl = ttl_seconds
        self._max_entries = max_entries
        self._clock = clock
        # Insertion order == age order, so the oldest entry is always first.
        self._entries: OrderedDict[str, float] = OrderedDict()

    def add_if_absent(self, key: str) -> bool:
        now = self._clock()
        seen_at = self._entries.get(key)
        if seen_at is not None and now - seen_at < self._ttl:
            return False
        if seen_at is not None:
            del self._entries[key]
        if len(self._entries) >= self._max_entries:
            self.sweep()
            while len(self._entries) >= self._max_entries:
                self._entries.popitem(last=False)
        self._entries[key] = now
        return True

    def sweep(self) -> int:
        cutoff = self._clock() - self._ttl
        removed = 0
        while self._entries:
            key, seen_at = next(iter(self._entries.items()))
            if seen_at > cutoff:
                break
            del self._entries[key]
            removed += 1
        return removed

    def __len__(self) -> int:
        return len(self._entries)


class EventDeduplicator:
    """Rejects re-delivered webhook events by id."""

    def __init__(self, cache: TTLCache | None = None) -> None:
        self._cache = cache or InMemoryTTLCache()
        self._stop_event = asyncio.Event()

    def seen(self, event_id: str | None) -> bool:
        """Return True for a duplicate. Records the id on first sight."""

        if not event_id:
            return False
        duplicate = not self._cache.add_if_absent(event_id)
        if duplicate:
            LOGGER.info("Duplicate event dropped: %s", event_id)
        return duplicate

    async def run_sweeper(self, interval_seconds: float = 60.0) -> None:
        """Periodically evict expired ids until stop() is called."""

        while not self._stop_event.is_set():
            removed = self._cache.sweep()
            if removed:
                LOGGER.debug("Dedup sweep removed %d ids (%d cached)", removed, len(self._cache))
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=interval_seconds)
            except asyncio.TimeoutError:
                continue

    def stop(self) -> None:
        self._stop_event.set()
