"""
boost.engine.cache — Short-lived rule lookup cache
===================================================

The streak processor asks "are there rules for this event?" twice per
event: once in ``should_handle`` and again in ``handle``.  This cache
collapses the two lookups into one query.  It is owned by the processor
instance (per process, never shared across instances) and is only ever an
optimization: entries go stale after ``ttl_seconds`` and writes never
consult it.
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable, Hashable
from typing import Generic, TypeVar

logger = logging.getLogger(__name__)

V = TypeVar("V")

DEFAULT_TTL_SECONDS = 5.0


class RuleLookupCache(Generic[V]):
    """Thread-safe TTL map keyed by e.g. ``(project_id, event_name)``.

    Usage::

        cache = RuleLookupCache(ttl_seconds=5.0)
        rules = cache.get(key)
        if rules is None:
            rules = load_rules()
            cache.put(key, rules)
    """

    def __init__(
        self,
        ttl_seconds: float = DEFAULT_TTL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._lock = threading.Lock()
        # key → (expires_at, value)
        self._entries: dict[Hashable, tuple[float, V]] = {}

    def get(self, key: Hashable) -> V | None:
        """Return the cached value, or None if missing or expired."""
        now = self._clock()
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            expires_at, value = entry
            if now >= expires_at:
                del self._entries[key]
                return None
            return value

    def put(self, key: Hashable, value: V) -> None:
        with self._lock:
            self._entries[key] = (self._clock() + self.ttl_seconds, value)

    def invalidate(self, key: Hashable | None = None) -> None:
        """Drop one key, or everything when *key* is None."""
        with self._lock:
            if key is None:
                self._entries.clear()
            else:
                self._entries.pop(key, None)

    def purge_expired(self) -> int:
        """Remove expired entries; returns how many were dropped."""
        now = self._clock()
        with self._lock:
            stale = [k for k, (exp, _) in self._entries.items() if now >= exp]
            for k in stale:
                del self._entries[k]
        if stale:
            logger.debug("Rule cache purged %d expired entries", len(stale))
        return len(stale)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
