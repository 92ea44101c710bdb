"""
cache.py — Response cache keyed by request fingerprint.

Stores completed response text with a per-entry TTL.

Backends
  memory  cachetools.LRUCache bounded by entry count (default 200); the
          least-recently-accessed entry is evicted when the bound is hit.
  disk    diskcache.Cache with LRU eviction, bounded by size on disk;
          survives restarts.

Expired entries are treated as absent and dropped on access.

Dependencies:
  cachetools  — pip install cachetools
  diskcache   — pip install diskcache
"""

from __future__ import annotations

import logging
import os
import time
from typing import Any, Callable, Dict, Optional

import diskcache
from cachetools import LRUCache

from .models import CacheEntry

logger = logging.getLogger(__name__)


class ResponseCache:
    """
    Usage::

        cache = ResponseCache(max_entries=200, ttl=300)
        text = cache.get(fp)
        if text is None:
            text = await run_request(...)
            cache.put(fp, text)
    """

    def __init__(
        self,
        *,
        max_entries: int = 200,
        ttl: float = 300.0,
        backend: str = "memory",
        directory: str | None = None,
        max_size_mb: int = 64,
        enabled: bool = True,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.ttl = float(ttl)
        self.enabled = enabled
        self.backend = backend
        self._clock = clock
        self._hits = 0
        self._misses = 0

        if backend == "disk":
            if not directory:
                raise ValueError("disk cache backend needs a directory")
            os.makedirs(directory, exist_ok=True)
            self._store: Any = diskcache.Cache(
                directory,
                size_limit=max_size_mb * 1024 * 1024,
                eviction_policy="least-recently-used",
            )
            # diskcache expiry is wall-clock based
            self._clock = time.time
            logger.info("Response cache: diskcache at %s (%d MB)", directory, max_size_mb)
        elif backend == "memory":
            self._store = LRUCache(maxsize=max_entries)
            logger.info("Response cache: in-memory LRU (%d entries, ttl %.0fs)", max_entries, self.ttl)
        else:
            raise ValueError(f"Unknown cache backend {backend!r} (expected 'memory' or 'disk')")

    # ── Read ───────────────────────────────────────────────────────────────────

    def get(self, fingerprint: str) -> Optional[str]:
        """Return the cached text or None.  Counts a hit or a miss."""
        if not self.enabled:
            return None
        entry: CacheEntry | None = self._store.get(fingerprint)
        if entry is not None and entry.is_expired(self._clock()):
            self.invalidate(fingerprint)
            entry = None
        if entry is None:
            self._misses += 1
            return None
        self._hits += 1
        return entry.value

    def __contains__(self, fingerprint: str) -> bool:
        entry = self._store.get(fingerprint)
        return entry is not None and not entry.is_expired(self._clock())

    # ── Write ──────────────────────────────────────────────────────────────────

    def put(self, fingerprint: str, value: str, ttl: float | None = None) -> None:
        if not self.enabled:
            return
        ttl = self.ttl if ttl is None else float(ttl)
        entry = CacheEntry(value=value, inserted_at=self._clock(), ttl=ttl)
        if isinstance(self._store, diskcache.Cache):
            self._store.set(fingerprint, entry, expire=ttl)
        else:
            self._store[fingerprint] = entry

    def invalidate(self, fingerprint: str) -> None:
        if isinstance(self._store, diskcache.Cache):
            self._store.delete(fingerprint)
        else:
            self._store.pop(fingerprint, None)

    def clear(self) -> None:
        self._store.clear()
        logger.info("Response cache cleared")

    def close(self) -> None:
        if isinstance(self._store, diskcache.Cache):
            self._store.close()

    def __len__(self) -> int:
        return len(self._store)

    # ── Stats ──────────────────────────────────────────────────────────────────

    @property
    def stats(self) -> Dict[str, Any]:
        total = self._hits + self._misses
        hit_rate = self._hits / total if total else 0.0
        return {
            "hits":     self._hits,
            "misses":   self._misses,
            "hit_rate": round(hit_rate, 4),
            "entries":  len(self._store),
            "backend":  self.backend,
        }
