"""
events.py — Typed publish/subscribe bus for dispatcher lifecycle events.

The event set is closed: every variant below is a frozen dataclass and
``DispatchEvent`` is their union.  Handlers register for a concrete variant
(or ``DispatchEvent`` itself to receive everything)::

    bus = EventBus()
    unsubscribe = bus.subscribe(CircuitOpened, lambda ev: alert(ev.backend))
    ...
    unsubscribe()

Handlers run synchronously inside ``publish``.  A handler that raises is
logged and skipped; it never breaks the dispatcher or other handlers.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass
from typing import Callable, Dict, List, Type, TypeVar, Union

from .models import Backend

logger = logging.getLogger(__name__)


# ── Stream lifecycle ─────────────────────────────────────────────────────────


@dataclass(frozen=True)
class StreamStarted:
    stream_id: str
    backend: Backend
    model: str


@dataclass(frozen=True)
class StreamChunk:
    stream_id: str
    chunk: str


@dataclass(frozen=True)
class StreamCompleted:
    stream_id: str
    backend: Backend
    chars: int
    latency_ms: float


@dataclass(frozen=True)
class StreamFailed:
    stream_id: str
    backend: Backend
    error: str


@dataclass(frozen=True)
class StreamAborted:
    stream_id: str
    reason: str


# ── Cache / dedup ────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class CacheHit:
    fingerprint: str


@dataclass(frozen=True)
class CacheMiss:
    fingerprint: str


@dataclass(frozen=True)
class RequestDeduplicated:
    fingerprint: str


# ── Quota / resilience ───────────────────────────────────────────────────────


@dataclass(frozen=True)
class RateLimitReached:
    backend: Backend
    quota: int


@dataclass(frozen=True)
class RequestQueued:
    backend: Backend
    priority: int
    queue_size: int


@dataclass(frozen=True)
class RetryScheduled:
    backend: Backend
    attempt: int
    delay: float
    error: str


@dataclass(frozen=True)
class CircuitOpened:
    backend: Backend
    consecutive_failures: int


@dataclass(frozen=True)
class CircuitClosed:
    backend: Backend


DispatchEvent = Union[
    StreamStarted,
    StreamChunk,
    StreamCompleted,
    StreamFailed,
    StreamAborted,
    CacheHit,
    CacheMiss,
    RequestDeduplicated,
    RateLimitReached,
    RequestQueued,
    RetryScheduled,
    CircuitOpened,
    CircuitClosed,
]

EVENT_TYPES: tuple[type, ...] = DispatchEvent.__args__  # type: ignore[attr-defined]

E = TypeVar("E")


class EventBus:
    def __init__(self) -> None:
        self._handlers: Dict[type, List[Callable[[object], None]]] = defaultdict(list)
        self._wildcard: List[Callable[[object], None]] = []

    def subscribe(self, event_type: Type[E], handler: Callable[[E], None]) -> Callable[[], None]:
        """Register ``handler`` for ``event_type``; returns an unsubscribe callable."""
        if event_type is DispatchEvent:
            bucket = self._wildcard
        elif event_type in EVENT_TYPES:
            bucket = self._handlers[event_type]
        else:
            raise TypeError(f"{event_type!r} is not a dispatcher event type")
        bucket.append(handler)  # type: ignore[arg-type]

        def _unsubscribe() -> None:
            if handler in bucket:
                bucket.remove(handler)  # type: ignore[arg-type]

        return _unsubscribe

    def publish(self, event: DispatchEvent) -> None:
        if not isinstance(event, EVENT_TYPES):
            raise TypeError(f"{type(event).__name__} is not a dispatcher event")
        for handler in [*self._handlers.get(type(event), ()), *self._wildcard]:
            try:
                handler(event)
            except Exception as exc:
                logger.error("Event handler %r failed on %s: %s", handler, type(event).__name__, exc)

    def clear(self) -> None:
        self._handlers.clear()
        self._wildcard.clear()
