"""Thread-safe in-memory cache with per-entry TTL and an injected clock.

Design decisions
────────────────
• **OrderedDict** keeps entries in write order, so eviction by entry
  count always drops the least recently written key.
• **Injected clock** (``time.monotonic`` by default) so tests can move time
  forward deterministically and assert exactly when entries expire.
• **Sliding expiry** on write: ``put`` re-stamps the entry, so an active
  session never expires while it is in use.
• **threading.Lock** because the same cache is shared by every request of
  the process (FastAPI may run sync helpers on worker threads).
• One instance per concern, built once at start-up and passed by reference
  (sessions, directory listings, access tokens).

Usage
─────
>>> cache = TTLCache(ttl_seconds=300)
>>> cache.put("directory", [{"name": "Jordan Smith"}])
>>> cache.get("directory")
[{'name': 'Jordan Smith'}]
>>> cache.prune(now=cache.now() + 301)
1
"""

from __future__ import annotations

import logging
import threading
import time
from collections import OrderedDict
from collections.abc import Callable
from typing import Any

logger = logging.getLogger(__name__)

DEFAULT_MAX_ENTRIES = 10_000

Clock = Callable[[], float]


class TTLCache:
    """Key/value cache whose entries expire ``ttl_seconds`` after their last write."""

    def __init__(
        self,
        ttl_seconds: float,
        *,
        max_entries: int = DEFAULT_MAX_ENTRIES,
        clock: Clock = time.monotonic,
    ) -> None:
        self._ttl = ttl_seconds
        self._max_entries = max_entries
        self._clock = clock
        # key → (value, expires_at)
        self._store: OrderedDict[str, tuple[Any, float]] = OrderedDict()
        self._lock = threading.Lock()

    def now(self) -> float:
        """Current reading of the injected clock."""
        return self._clock()

    # ── Core operations ──────────────────────────────────────────────

    def get(self, key: str) -> Any | None:
        """Return the cached value, or ``None`` if absent or expired."""
        now = self._clock()
        with self._lock:
            entry = self._store.get(key)
            if entry is None:
                return None
            value, expires_at = entry
            if expires_at <= now:
                del self._store[key]
                logger.debug("Cache: %s expired", key)
                return None
            return value

    def put(self, key: str, value: Any, *, ttl_seconds: float | None = None) -> None:
        """Insert or overwrite *key*, restarting its TTL.

        *ttl_seconds* overrides the cache default for this entry only
        (used for access tokens, which carry their own lifetime).
        """
        now = self._clock()
        expires_at = now + (self._ttl if ttl_seconds is None else ttl_seconds)
        with self._lock:
            self._store.pop(key, None)
            self._store[key] = (value, expires_at)
            self._prune_locked(now)
            while len(self._store) > self._max_entries:
                evicted_key, _ = self._store.popitem(last=False)
                logger.debug("Cache: evicted %s (max %d entries)", evicted_key, self._max_entries)

    def delete(self, key: str) -> bool:
        """Remove a single key.  Returns ``True`` if the key existed."""
        with self._lock:
            return self._store.pop(key, None) is not None

    def prune(self, now: float | None = None) -> int:
        """Drop every entry expired at *now* (default: the clock).  Returns count removed."""
        with self._lock:
            return self._prune_locked(self._clock() if now is None else now)

    def clear(self) -> None:
        """Drop all entries."""
        with self._lock:
            self._store.clear()

    # ── Introspection ────────────────────────────────────────────────

    def keys(self) -> list[str]:
        """Keys of entries that have not expired yet."""
        now = self._clock()
        with self._lock:
            return [k for k, (_, expires_at) in self._store.items() if expires_at > now]

    def __len__(self) -> int:
        return len(self.keys())

    def __contains__(self, key: str) -> bool:
        return self.get(key) is not None

    # ── Internal ─────────────────────────────────────────────────────

    def _prune_locked(self, now: float) -> int:
        # Entries with a per-entry TTL may sit out of order, so scan them all
        expired = [k for k, (_, expires_at) in self._store.items() if expires_at <= now]
        for key in expired:
            del self._store[key]
        if expired:
            logger.debug("Cache: pruned %d expired entries", len(expired))
        return len(expired)
