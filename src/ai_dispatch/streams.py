"""
streams.py — Cancellation tokens and the registry of active streams.

Every execution that reaches a backend owns a StreamHandle: a cancellation
token shared with the adapter plus the asyncio tasks working on it.
Aborting a handle sets the token (cooperative stop) and cancels the tasks
(forced stop at the next await), so a backend that ignores the token cannot
keep delivering chunks.
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from dataclasses import dataclass, field
from typing import Any

from .errors import RequestCancelledError
from .events import EventBus, StreamAborted
from .models import Backend

logger = logging.getLogger(__name__)


class CancellationToken:
    def __init__(self) -> None:
        self._event = asyncio.Event()
        self.reason: str | None = None

    def cancel(self, reason: str = "aborted") -> bool:
        """Returns False if the token was already cancelled."""
        if self._event.is_set():
            return False
        self.reason = reason
        self._event.set()
        return True

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self, stream_id: str | None = None) -> None:
        if self.cancelled:
            raise RequestCancelledError(stream_id, self.reason or "aborted")

    async def wait(self) -> None:
        await self._event.wait()


@dataclass
class StreamHandle:
    stream_id: str
    backend: Backend
    token: CancellationToken = field(default_factory=CancellationToken)
    started_at: float = field(default_factory=time.monotonic)
    _tasks: set[asyncio.Task] = field(default_factory=set, repr=False)

    def attach(self, task: asyncio.Task | None = None) -> None:
        """Tie a task's lifetime to this stream (defaults to the current task)."""
        task = task or asyncio.current_task()
        if task is None:
            return
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    def abort(self, reason: str = "aborted") -> bool:
        if not self.token.cancel(reason):
            return False
        for task in list(self._tasks):
            if not task.done():
                task.cancel()
        return True

    @property
    def aborted(self) -> bool:
        return self.token.cancelled


class StreamRegistry:
    def __init__(self, events: EventBus | None = None) -> None:
        self._streams: dict[str, StreamHandle] = {}
        self._events = events

    def open(self, backend: Backend, stream_id: str | None = None) -> StreamHandle:
        sid = stream_id or uuid.uuid4().hex
        if sid in self._streams:
            raise ValueError(f"stream id {sid!r} is already active")
        handle = StreamHandle(stream_id=sid, backend=backend)
        self._streams[sid] = handle
        logger.debug("Stream %s opened (%s)", sid, backend.value)
        return handle

    def close(self, stream_id: str) -> None:
        self._streams.pop(stream_id, None)

    def get(self, stream_id: str) -> StreamHandle | None:
        return self._streams.get(stream_id)

    def abort(self, stream_id: str, reason: str = "aborted by caller") -> bool:
        handle = self._streams.get(stream_id)
        if handle is None or not handle.abort(reason):
            return False
        logger.info("Stream %s aborted: %s", stream_id, reason)
        if self._events:
            self._events.publish(StreamAborted(stream_id, reason))
        return True

    def abort_all(self, reason: str = "all streams aborted") -> int:
        aborted = sum(1 for sid in list(self._streams) if self.abort(sid, reason))
        if aborted:
            logger.info("Aborted %d active stream(s)", aborted)
        return aborted

    def has_active(self) -> bool:
        return bool(self._streams)

    def active_ids(self) -> list[str]:
        return list(self._streams)

    def __contains__(self, stream_id: str) -> bool:
        return stream_id in self._streams

    def __len__(self) -> int:
        return len(self._streams)

    def get_stats(self) -> dict[str, Any]:
        now = time.monotonic()
        return {
            sid: {"backend": h.backend.value, "age_s": round(now - h.started_at, 1), "aborted": h.aborted}
            for sid, h in self._streams.items()
        }
