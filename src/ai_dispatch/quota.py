"""
quota.py — Per-backend request quotas.

Responsibilities:
  • Fixed-window request counter per backend (default 60 s window)
  • Backend-specific quotas from BACKEND_CATALOGUE (local Ollama gets more)
  • Window snapshots for stats / diagnostics

A request is admitted only while ``count < quota`` in the current window; the
count resets when the window expires.  Refused requests are not dropped here,
the dispatcher parks them in the RequestQueue (see scheduler.py).

Dependencies:
  limits  — pip install limits     (fixed-window strategy, in-memory storage)
"""

from __future__ import annotations

import logging
import time
from typing import Any, Mapping

from limits import RateLimitItemPerSecond
from limits.storage import MemoryStorage
from limits.strategies import FixedWindowRateLimiter

from .config import backend_quota
from .events import EventBus, RateLimitReached
from .models import Backend, RateLimitWindow

logger = logging.getLogger(__name__)


class RateLimiter:
    """
    Usage::

        limiter = RateLimiter(window_seconds=60)
        if limiter.acquire(Backend.OPENAI):     # counts the request
            ... call the backend ...
        else:
            ... queue it ...

        limiter.record(Backend.OPENAI)          # extra attempt (retry), always counted
    """

    def __init__(
        self,
        *,
        window_seconds: int = 60,
        quotas: Mapping[Backend, int] | None = None,
        events: EventBus | None = None,
    ) -> None:
        self.window_seconds = window_seconds
        self._events = events
        self._storage = MemoryStorage()
        self._limiter = FixedWindowRateLimiter(self._storage)
        overrides = dict(quotas or {})
        self._quotas: dict[Backend, int] = {
            b: int(overrides.get(b, backend_quota(b))) for b in Backend
        }
        self._items = {
            b: RateLimitItemPerSecond(q, window_seconds) for b, q in self._quotas.items()
        }
        logger.info(
            "RateLimiter initialised: %s per %ds",
            ", ".join(f"{b.value}={q}" for b, q in self._quotas.items()),
            window_seconds,
        )

    def quota(self, backend: Backend) -> int:
        return self._quotas[backend]

    # ── Per-request API ─────────────────────────────────────────────────────

    def allow(self, backend: Backend) -> bool:
        """True while the backend's current window has headroom (does not count)."""
        return self._limiter.test(self._items[backend], backend.value)

    def acquire(self, backend: Backend) -> bool:
        """Count one request if there is headroom; False (nothing counted) otherwise."""
        if not self.allow(backend):
            logger.debug("Rate limit reached for %s (%d per %ds)",
                         backend.value, self._quotas[backend], self.window_seconds)
            if self._events:
                self._events.publish(RateLimitReached(backend, self._quotas[backend]))
            return False
        self._limiter.hit(self._items[backend], backend.value)
        return True

    def record(self, backend: Backend) -> None:
        """Count an attempt that was already admitted (e.g. a retry)."""
        self._limiter.hit(self._items[backend], backend.value)

    # ── Introspection ───────────────────────────────────────────────────────

    def window(self, backend: Backend) -> RateLimitWindow:
        item = self._items[backend]
        reset_time, remaining = self._limiter.get_window_stats(item, backend.value)
        quota = self._quotas[backend]
        count = min(quota, quota - remaining)
        now = time.time()
        window_start = reset_time - self.window_seconds if count else now
        return RateLimitWindow(
            backend=backend,
            count=count,
            quota=quota,
            window_start=window_start,
            window_seconds=self.window_seconds,
        )

    def reset(self, backend: Backend | None = None) -> None:
        targets = [backend] if backend is not None else list(Backend)
        for b in targets:
            self._limiter.clear(self._items[b], b.value)

    def get_stats(self) -> dict[str, Any]:
        stats: dict[str, Any] = {}
        for b in Backend:
            w = self.window(b)
            stats[b.value] = {
                "count": w.count,
                "quota": w.quota,
                "remaining": w.remaining,
                "window_seconds": w.window_seconds,
            }
        return stats
