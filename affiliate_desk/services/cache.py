"""In-process TTL cache for per-profile sales aggregates.

Every mutating operation calls :meth:`ProfileAggregateCache.invalidate` once
with the profile ids it touched. Readers go through :meth:`get_or_compute`.
"""
from __future__ import annotations

import logging
import threading
import time
from typing import Any, Callable, Dict, Iterable, Optional

from affiliate_desk import config

logger = logging.getLogger(__name__)


class ProfileAggregateCache:
    def __init__(self, ttl_seconds: int = config.CACHE_TTL_SECONDS, clock: Callable[[], float] = time.monotonic):
        self._ttl = ttl_seconds
        self._clock = clock
        self._entries: Dict[int, tuple[Any, float]] = {}
        self._lock = threading.Lock()

    def get(self, profile_id: int) -> Optional[Any]:
        with self._lock:
            entry = self._entries.get(profile_id)
            if entry is None:
                return None
            value, expires_at = entry
            if expires_at <= self._clock():
                del self._entries[profile_id]
                return None
            return value

    def set(self, profile_id: int, value: Any) -> None:
        with self._lock:
            self._entries[profile_id] = (value, self._clock() + self._ttl)

    def get_or_compute(self, profile_id: int, loader: Callable[[], Any]) -> Any:
        cached = self.get(profile_id)
        if cached is not None:
            return cached
        value = loader()
        self.set(profile_id, value)
        return value

    def invalidate(self, profile_ids: Iterable[int | None]) -> int:
        """Drop cached aggregates for the given profiles. ``None`` ids are ignored."""

        ids = {pid for pid in profile_ids if pid is not None}
        removed = 0
        with self._lock:
            for pid in ids:
                if self._entries.pop(pid, None) is not None:
                    removed += 1
        if ids:
            logger.debug("Invalidated profile aggregates for %s (%d cached)", sorted(ids), removed)
        return removed

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


profile_cache = ProfileAggregateCache()
