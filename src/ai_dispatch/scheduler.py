"""
scheduler.py — Priority queue and periodic drain for rate-limited requests.

Responsibilities:
  • Bounded priority queue (higher priority first, FIFO within a priority)
  • Fail fast with QueueFullError on overflow
  • Background tick (default 1 s) that re-admits parked requests once their
    backend has quota and a closed (or trial-ready) circuit
  • Ticks never overlap; a tick that finds another in progress is a no-op
  • dispose() rejects every parked request, nothing is dropped silently

Drain policies (DISPATCH_QUEUE_POLICY):
  skip_blocked  a blocked item keeps its place; the tick moves on to items of
                other backends.  Once a backend is blocked in a tick, its later
                items are skipped too, so per-backend order is preserved.
  strict        the tick stops at the first blocked item (pure priority order;
                ready lower-priority work may wait behind it).
"""

from __future__ import annotations

import asyncio
import heapq
import itertools
import logging
import time
from typing import Any, Awaitable, Callable

from .errors import DispatcherClosedError, QueueFullError
from .events import EventBus, RequestQueued
from .models import Backend, QueuedRequest

logger = logging.getLogger(__name__)

POLICIES = ("skip_blocked", "strict")


# ══════════════════════════════════════════════════════════════════════════════
# RequestQueue
# ══════════════════════════════════════════════════════════════════════════════


class RequestQueue:
    def __init__(self, max_size: int = 100, events: EventBus | None = None) -> None:
        self.max_size = max_size
        self._heap: list[QueuedRequest] = []
        self._sequence = itertools.count()
        self._events = events
        self._closed = False
        self._total_enqueued = 0

    def submit(
        self,
        backend: Backend,
        priority: int,
        run: Callable[[], Awaitable[Any]],
        label: str = "",
    ) -> QueuedRequest:
        """Park a request.  Await ``item.future`` for its outcome."""
        if self._closed:
            raise DispatcherClosedError("request queue has been disposed")
        if len(self._heap) >= self.max_size:
            raise QueueFullError(backend, self.max_size)
        item = QueuedRequest(
            sort_key=(-priority, next(self._sequence)),
            backend=backend,
            priority=priority,
            run=run,
            future=asyncio.get_running_loop().create_future(),
            enqueued_at=time.monotonic(),
            label=label,
        )
        heapq.heappush(self._heap, item)
        self._total_enqueued += 1
        logger.info("Queued request for %s (priority %d, queue size %d)",
                    backend.value, priority, len(self._heap))
        if self._events:
            self._events.publish(RequestQueued(backend, priority, len(self._heap)))
        return item

    def peek(self) -> QueuedRequest | None:
        return self._heap[0] if self._heap else None

    def pop(self) -> QueuedRequest | None:
        return heapq.heappop(self._heap) if self._heap else None

    def push_front(self, item: QueuedRequest) -> None:
        """Re-insert a popped item; its original sort key puts it back in place."""
        heapq.heappush(self._heap, item)

    def ordered(self) -> list[QueuedRequest]:
        """Snapshot in drain order."""
        return sorted(self._heap)

    def remove(self, item: QueuedRequest) -> None:
        self._heap.remove(item)
        heapq.heapify(self._heap)

    def dispose(self) -> int:
        """Reject all parked requests and refuse new ones.  Returns how many were rejected."""
        self._closed = True
        rejected = 0
        while self._heap:
            item = heapq.heappop(self._heap)
            if not item.future.done():
                item.future.set_exception(DispatcherClosedError("request queue was disposed"))
                item.future.exception()
                rejected += 1
        if rejected:
            logger.warning("Request queue disposed, rejected %d pending request(s)", rejected)
        return rejected

    @property
    def closed(self) -> bool:
        return self._closed

    def __len__(self) -> int:
        return len(self._heap)

    def get_stats(self) -> dict[str, Any]:
        by_backend: dict[str, int] = {}
        for item in self._heap:
            by_backend[item.backend.value] = by_backend.get(item.backend.value, 0) + 1
        return {
            "size": len(self._heap),
            "max_size": self.max_size,
            "total_enqueued": self._total_enqueued,
            "by_backend": by_backend,
        }


# ══════════════════════════════════════════════════════════════════════════════
# QueueScheduler
# ══════════════════════════════════════════════════════════════════════════════


class QueueScheduler:
    """
    Drains a RequestQueue on a fixed interval.

    ``admit(backend)`` must check *and claim* whatever the backend needs
    (circuit trial slot, rate-limit slot) and return True only if the request
    may start now.  ``release(backend)`` gives back the circuit trial slot
    when a launched request turns out to have been abandoned already.
    """

    def __init__(
        self,
        queue: RequestQueue,
        admit: Callable[[Backend], bool],
        *,
        release: Callable[[Backend], None] | None = None,
        tick_seconds: float = 1.0,
        policy: str = "skip_blocked",
    ) -> None:
        if policy not in POLICIES:
            raise ValueError(f"Unknown queue policy {policy!r} (expected one of {POLICIES})")
        self.queue = queue
        self.tick_seconds = tick_seconds
        self.policy = policy
        self._admit = admit
        self._release = release
        self._tick_lock = asyncio.Lock()
        self._task: asyncio.Task | None = None
        self._running: set[asyncio.Task] = set()

    async def start(self) -> None:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self._loop(), name="queue_scheduler")

    async def stop(self) -> None:
        if self._task and not self._task.done():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        self._task = None

    async def tick(self) -> int:
        """Run one drain pass.  Returns the number of requests started."""
        if self._tick_lock.locked():
            return 0
        async with self._tick_lock:
            return self._drain()

    def _drain(self) -> int:
        started = 0
        blocked: set[Backend] = set()
        for item in self.queue.ordered():
            if item.future.done():
                # caller stopped waiting
                self.queue.remove(item)
                continue
            if item.backend in blocked:
                continue
            if not self._admit(item.backend):
                blocked.add(item.backend)
                if self.policy == "strict":
                    break
                continue
            self.queue.remove(item)
            self._launch(item)
            started += 1
        if started:
            logger.debug("Queue tick started %d request(s), %d still queued", started, len(self.queue))
        return started

    def _launch(self, item: QueuedRequest) -> None:
        waited = time.monotonic() - item.enqueued_at
        logger.info("Dequeued request for %s after %.1fs", item.backend.value, waited)
        task = asyncio.create_task(self._run(item), name=f"queued:{item.label or item.sequence}")
        self._running.add(task)
        task.add_done_callback(self._running.discard)

    async def _run(self, item: QueuedRequest) -> None:
        if item.future.done():
            # aborted between launch and start; hand back what admit claimed
            if self._release is not None:
                self._release(item.backend)
            return
        try:
            result = await item.run()
        except BaseException as exc:
            if not item.future.done():
                if isinstance(exc, asyncio.CancelledError):
                    item.future.cancel()
                else:
                    item.future.set_exception(exc)
            if isinstance(exc, asyncio.CancelledError):
                raise
        else:
            if not item.future.done():
                item.future.set_result(result)

    async def _loop(self) -> None:
        while True:
            try:
                await asyncio.sleep(self.tick_seconds)
                await self.tick()
            except asyncio.CancelledError:
                break
            except Exception as exc:
                logger.error("Queue tick error: %s", exc)

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()
