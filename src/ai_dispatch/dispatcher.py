"""
dispatcher.py — The AI request dispatcher (composition root + request pipeline).

Pipeline for every ``complete()`` call:

  1.  Validate + sanitize                 → ValidationError, no I/O
  2.  Resolve backend, fingerprint
  3.  Join an identical in-flight request  → shared outcome, no backend call
  4.  Response cache                       → cached text, no backend call
  5.  Register as the in-flight leader for the fingerprint
  6.  Circuit breaker                      → CircuitOpenError
  7.  Rate limiter                         → over quota: park in the priority
                                             queue (QueueFullError if full)
  8.  RetryExecutor → ProviderAdapter      → stream chunks to the caller
  9.  Cache the text, settle the in-flight entry, return

Breaker / metrics / audit bookkeeping for backend attempts happens inside the
RetryExecutor.  All state lives on the Dispatcher instance; build one per
process with ``build_dispatcher()`` and pass it where it is needed.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import time
from collections.abc import AsyncIterator, Mapping
from typing import Any, Callable, Dict, List

from .cache import ResponseCache
from .circuit import CircuitBreakerRegistry
from .config import Settings
from .dedup import Deduplicator, PendingExecution
from .discovery import ModelDiscovery
from .errors import CircuitOpenError, DispatcherClosedError, RequestCancelledError, ValidationError
from .events import CacheHit, CacheMiss, EventBus, RequestDeduplicated
from .fingerprint import fingerprint, resolve_backend
from .metrics import Metrics, MetricsCollector
from .models import Backend, CompletionResult, ConnectionTestResult
from .persistence import AuditWriter, FolderAuditSink, NullSink, PersistenceSink
from .providers import ProviderAdapter, build_adapters, configure_litellm
from .quota import RateLimiter
from .retry import ChunkCallback, ExecutionJob, RetryExecutor
from .scheduler import QueueScheduler, RequestQueue
from .streams import StreamHandle, StreamRegistry
from .validation import Validator

logger = logging.getLogger(__name__)

_DONE = object()


class Dispatcher:
    """
    Multi-backend request dispatcher.

    Usage::

        dispatcher = build_dispatcher()
        await dispatcher.start()

        result = await dispatcher.complete(
            [{"role": "user", "content": "hi"}],
            temperature=0,
            on_chunk=print,
        )

        async for chunk in dispatcher.stream(messages, backend="ollama"):
            ...

        await dispatcher.stop()
    """

    def __init__(
        self,
        settings: Settings | None = None,
        *,
        adapters: Mapping[Backend, ProviderAdapter] | None = None,
        sink: PersistenceSink | None = None,
        events: EventBus | None = None,
        quotas: Mapping[Backend, int] | None = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Any] = asyncio.sleep,
    ) -> None:
        s = self.settings = settings or Settings()
        self.events = events or EventBus()
        self.adapters: Dict[Backend, ProviderAdapter] = (
            dict(adapters) if adapters is not None else build_adapters(s)
        )
        self.validator = Validator(s.max_message_chars, s.max_total_chars)
        self.cache = ResponseCache(
            max_entries=s.cache_max_entries,
            ttl=s.cache_ttl,
            backend=s.cache_backend,
            directory=s.cache_dir,
            max_size_mb=s.cache_max_size_mb,
            enabled=s.cache_enabled,
            clock=clock,
        )
        self.dedup = Deduplicator()
        self.breakers = CircuitBreakerRegistry(
            threshold=s.circuit_threshold, cooldown=s.circuit_cooldown, clock=clock, events=self.events
        )
        self.limiter = RateLimiter(window_seconds=s.rate_window_seconds, quotas=quotas, events=self.events)
        self.queue = RequestQueue(s.queue_max_size, events=self.events)
        self.scheduler = QueueScheduler(
            self.queue,
            self._admit_backend,
            release=self._release_backend,
            tick_seconds=s.queue_tick_seconds,
            policy=s.queue_policy,
        )
        self.streams = StreamRegistry(self.events)
        self.metrics = MetricsCollector()
        self.audit = AuditWriter(sink if sink is not None else NullSink())
        self.discovery = ModelDiscovery(
            self.adapters,
            default_backend=s.default_backend,
            selected_model=s.selected_model,
            model_ttl=s.model_cache_ttl,
            unified_ttl=s.unified_model_cache_ttl,
        )
        self.executor = RetryExecutor(
            breakers=self.breakers,
            limiter=self.limiter,
            metrics=self.metrics,
            audit=self.audit,
            events=self.events,
            max_retries=s.max_retries,
            base_delay=s.retry_base_delay,
            timeout=s.request_timeout,
            sleep=sleep,
        )
        self._closed = False

    # ── Lifecycle ───────────────────────────────────────────────────────────

    async def start(self) -> None:
        """Start the queue scheduler.  Safe to call more than once."""
        if self._closed:
            raise DispatcherClosedError()
        await self.scheduler.start()
        logger.info("Dispatcher ready: %d backends (%s)", len(self.adapters),
                    ", ".join(b.value for b in self.adapters))

    async def stop(self) -> None:
        """Reject queued requests, abort active streams, flush the audit log."""
        self._closed = True
        await self.scheduler.stop()
        self.queue.dispose()
        # let rejected waiters settle before their streams are aborted
        await asyncio.sleep(0)
        self.streams.abort_all("dispatcher stopped")
        await self.audit.drain()
        self.cache.close()
        logger.info("Dispatcher stopped")

    async def __aenter__(self) -> "Dispatcher":
        await self.start()
        return self

    async def __aexit__(self, *_exc: Any) -> None:
        await self.stop()

    # ══════════════════════════════════════════════════════════════════════════
    # Primary entry point
    # ══════════════════════════════════════════════════════════════════════════

    async def complete(
        self,
        messages: Any,
        *,
        temperature: float | None = None,
        max_tokens: int | None = None,
        backend: Backend | str | None = None,
        priority: int = 0,
        on_chunk: ChunkCallback | None = None,
        stream_id: str | None = None,
    ) -> CompletionResult:
        if self._closed:
            raise DispatcherClosedError()
        request = self.validator.validate(
            messages,
            temperature=temperature,
            max_tokens=max_tokens,
            priority=priority,
            backend=backend,
            on_chunk=on_chunk,
        )
        if stream_id is not None and stream_id in self.streams:
            raise ValidationError("stream_id", f"stream {stream_id!r} is already active")
        self.metrics.record_request()

        resolved = resolve_backend(request, self.discovery.selected_model, self.settings.default_backend)
        adapter = self.adapters.get(resolved)
        if adapter is None:
            raise ValidationError("backend", f"no adapter configured for {resolved.value}")
        model = self.discovery.model_for(resolved)
        fp = fingerprint(request, resolved)
        started = time.monotonic()

        def _result(text: str, **flags: bool) -> CompletionResult:
            latency = (time.monotonic() - started) * 1000.0
            return CompletionResult(text, resolved, model, fp, latency_ms=latency, **flags)

        # Identical request already running: share its outcome
        pending = self.dedup.lookup(fp)
        if pending is not None:
            self.metrics.record_deduplicated()
            self.events.publish(RequestDeduplicated(fp))
            logger.debug("Joining in-flight request %s", fp)
            text = await self._follow(pending, resolved, stream_id)
            await _deliver_whole(on_chunk, text)
            return _result(text, deduplicated=True)

        cached = self.cache.get(fp)
        if cached is not None:
            self.metrics.record_cache_hit()
            self.events.publish(CacheHit(fp))
            logger.debug("Cache hit %s", fp)
            await _deliver_whole(on_chunk, cached)
            return _result(cached, cached=True)
        self.metrics.record_cache_miss()
        self.events.publish(CacheMiss(fp))

        pending, _ = self.dedup.admit(fp)
        try:
            handle = self.streams.open(resolved, stream_id)
            job = ExecutionJob(request, resolved, model, adapter, handle, fp, on_chunk)
            text = await self._run_leader(job)
        except BaseException as exc:
            self.dedup.settle(pending, error=exc)
            raise
        if text:
            self.cache.put(fp, text)
        self.dedup.settle(pending, result=text)
        return _result(text)

    async def stream(self, messages: Any, **options: Any) -> AsyncIterator[str]:
        """
        Yield chunks as they arrive.  Same options as ``complete`` (minus
        ``on_chunk``).  Errors surface from the iterator once the chunks
        delivered so far have been consumed; closing the iterator early
        cancels the request.
        """
        channel: asyncio.Queue = asyncio.Queue()

        async def _produce() -> CompletionResult:
            try:
                return await self.complete(messages, on_chunk=channel.put_nowait, **options)
            finally:
                channel.put_nowait(_DONE)

        producer = asyncio.create_task(_produce(), name="dispatch_stream")
        try:
            while True:
                item = await channel.get()
                if item is _DONE:
                    break
                yield item
            await producer
        finally:
            if not producer.done():
                producer.cancel()
                await asyncio.wait([producer])

    # ── Pipeline internals ──────────────────────────────────────────────────

    async def _run_leader(self, job: ExecutionJob) -> str:
        handle: StreamHandle = job.handle
        task = asyncio.ensure_future(self._admit_and_execute(job))
        handle.attach(task)
        try:
            return await task
        except RequestCancelledError:
            self.metrics.record_cancelled()
            raise
        except asyncio.CancelledError:
            if handle.token.cancelled and task.cancelled():
                self.metrics.record_cancelled()
                raise RequestCancelledError(handle.stream_id, handle.token.reason or "aborted") from None
            raise
        finally:
            self.streams.close(handle.stream_id)

    async def _follow(self, pending: PendingExecution, backend: Backend, stream_id: str | None) -> str:
        """Wait on an in-flight duplicate; a caller-supplied stream id makes the wait abortable."""
        if stream_id is None:
            return await pending.wait()
        handle = self.streams.open(backend, stream_id)
        task = asyncio.ensure_future(pending.wait())
        handle.attach(task)
        try:
            return await task
        except asyncio.CancelledError:
            if handle.token.cancelled and task.cancelled():
                self.metrics.record_cancelled()
                raise RequestCancelledError(stream_id, handle.token.reason or "aborted") from None
            raise
        finally:
            if not task.done():
                task.cancel()
            self.streams.close(stream_id)

    async def _admit_and_execute(self, job: ExecutionJob) -> str:
        breaker = self.breakers[job.backend]
        if not breaker.allow_request():
            self.metrics.record_circuit_rejection()
            logger.info("Circuit open for %s, rejecting request", job.backend.value)
            raise CircuitOpenError(job.backend, breaker.retry_in())
        if not self.limiter.acquire(job.backend):
            breaker.release_trial()
            item = self.queue.submit(
                job.backend, job.request.priority, lambda: self.executor.execute(job),
                label=job.handle.stream_id,
            )
            self.metrics.record_queued()
            if not self.scheduler.running:
                await self.scheduler.start()
            return await item.future
        return await self.executor.execute(job)

    def _admit_backend(self, backend: Backend) -> bool:
        """Scheduler hook: claim breaker + quota for a queued request."""
        breaker = self.breakers[backend]
        if not breaker.would_allow():
            return False
        if not self.limiter.acquire(backend):
            return False
        return breaker.allow_request()

    def _release_backend(self, backend: Backend) -> None:
        self.breakers[backend].release_trial()

    # ══════════════════════════════════════════════════════════════════════════
    # Backends and models
    # ══════════════════════════════════════════════════════════════════════════

    def _adapter(self, backend: Backend | str) -> tuple[Backend, ProviderAdapter]:
        b = Backend.parse(backend)
        adapter = self.adapters.get(b)
        if adapter is None:
            raise ValidationError("backend", f"no adapter configured for {b.value}")
        return b, adapter

    async def test_connection(self, backend: Backend | str) -> ConnectionTestResult:
        b, adapter = self._adapter(backend)
        result = await adapter.test_connection()
        logger.info("Connection test %s: %s", b.value, "ok" if result.ok else result.message)
        return result

    async def refresh_models(self, backend: Backend | str) -> List[str]:
        b, _ = self._adapter(backend)
        return await self.discovery.refresh_models(b)

    async def refresh_all_models(self) -> Dict[Backend, List[str]]:
        return await self.discovery.refresh_all_models()

    async def get_available_models(self) -> List[str]:
        return await self.discovery.get_unified_models()

    def set_selected_model(self, unified_id: str | None) -> None:
        self.discovery.set_selected_model(unified_id)

    def get_current_model(self) -> str:
        return self.discovery.get_current_model()

    def is_backend_configured(self, backend: Backend | str) -> bool:
        return self.discovery.is_backend_configured(Backend.parse(backend))

    def configured_backends(self) -> List[Backend]:
        return self.discovery.configured_backends()

    # ══════════════════════════════════════════════════════════════════════════
    # Streams, cache, metrics
    # ══════════════════════════════════════════════════════════════════════════

    def abort_stream(self, stream_id: str) -> bool:
        return self.streams.abort(stream_id, "aborted by caller")

    def abort_all(self) -> int:
        return self.streams.abort_all("all streams aborted by caller")

    def has_active_streams(self) -> bool:
        return self.streams.has_active()

    def active_stream_count(self) -> int:
        return len(self.streams)

    def clear_cache(self) -> None:
        self.cache.clear()

    def get_metrics(self) -> Metrics:
        return self.metrics.snapshot()

    def reset_metrics(self) -> None:
        self.metrics.reset()
        logger.info("Metrics reset")

    def get_stats(self) -> Dict[str, Any]:
        return {
            "metrics": self.metrics.snapshot().as_dict(),
            "cache": self.cache.stats,
            "circuits": self.breakers.get_stats(),
            "rate_limits": self.limiter.get_stats(),
            "queue": self.queue.get_stats(),
            "streams": self.streams.get_stats(),
            "in_flight": len(self.dedup),
            "current_model": self.get_current_model(),
        }


async def _deliver_whole(on_chunk: ChunkCallback | None, text: str) -> None:
    """Hand a complete response to a chunk callback as one synthetic chunk."""
    if on_chunk is None:
        return
    try:
        result = on_chunk(text)
        if inspect.isawaitable(result):
            await result
    except Exception as exc:
        logger.error("Chunk callback failed on a shared response, ignoring it: %s", exc)


def build_dispatcher(
    settings: Settings | None = None,
    *,
    adapters: Mapping[Backend, ProviderAdapter] | None = None,
    sink: PersistenceSink | None = None,
) -> Dispatcher:
    """Composition root: wire a Dispatcher from settings."""
    settings = settings or Settings()
    configure_litellm(settings)
    if sink is None:
        sink = FolderAuditSink(settings.audit_dir) if settings.audit_enabled else NullSink()
    return Dispatcher(settings, adapters=adapters, sink=sink)
