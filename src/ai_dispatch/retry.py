"""
retry.py — Runs one admitted request against its backend adapter.

Per attempt:
  1. stream chunks from the adapter, forwarding each to the caller and
     buffering it for the cache / audit log
  2. success → breaker success, metrics, audit write, return the text
  3. failure → classify; breaker failure + backend error count;
     retry transient errors after ``base_delay * 2**attempt`` (1 s, 2 s, 4 s)
     up to ``max_retries`` times, surface anything else immediately

Around all attempts:
  • a wall-clock deadline; exceeding it force-fails the request with
    DispatchTimeoutError (counted as a backend failure)
  • cancellation through the StreamHandle; surfaces as RequestCancelledError
    and is never counted as a failure
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict

from .circuit import CircuitBreakerRegistry
from .errors import BackendError, DispatchTimeoutError, RequestCancelledError
from .events import EventBus, RetryScheduled, StreamChunk, StreamCompleted, StreamFailed, StreamStarted
from .metrics import MetricsCollector
from .models import Backend, CompletionRequest
from .persistence import AuditWriter
from .providers import ProviderAdapter, StreamOptions, classify_error
from .quota import RateLimiter
from .streams import StreamHandle

logger = logging.getLogger(__name__)

ChunkCallback = Callable[[str], Any]


@dataclass
class ExecutionJob:
    request: CompletionRequest
    backend: Backend
    model: str
    adapter: ProviderAdapter
    handle: StreamHandle
    fingerprint: str
    on_chunk: ChunkCallback | None = None


class RetryExecutor:
    def __init__(
        self,
        *,
        breakers: CircuitBreakerRegistry,
        limiter: RateLimiter,
        metrics: MetricsCollector,
        audit: AuditWriter,
        events: EventBus | None = None,
        max_retries: int = 3,
        base_delay: float = 1.0,
        timeout: float = 120.0,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.breakers = breakers
        self.limiter = limiter
        self.metrics = metrics
        self.audit = audit
        self.events = events
        self.max_retries = max_retries
        self.base_delay = base_delay
        self.timeout = timeout
        self._sleep = sleep

    def backoff(self, attempt: int) -> float:
        return self.base_delay * (2 ** attempt)

    async def execute(self, job: ExecutionJob) -> str:
        """Run ``job`` to completion.  The caller must already hold the breaker/quota admission."""
        handle = job.handle
        handle.attach()
        breaker = self.breakers[job.backend]
        if handle.token.cancelled:
            breaker.release_trial()
            raise self._cancelled(job)
        started = time.monotonic()
        self.metrics.record_execution(job.backend)
        self._publish(StreamStarted(handle.stream_id, job.backend, job.model))
        try:
            async with asyncio.timeout(self.timeout):
                return await self._attempts(job, started)
        except TimeoutError:
            if handle.token.cancelled:
                raise self._cancelled(job) from None
            error = DispatchTimeoutError(job.backend, self.timeout)
            breaker.record_failure()
            self.metrics.record_backend_error(job.backend)
            self.metrics.record_failure(job.backend, (time.monotonic() - started) * 1000.0)
            logger.warning("%s: request %s timed out after %gs",
                           job.backend.value, handle.stream_id, self.timeout)
            self._persist(job, error=error)
            self._publish(StreamFailed(handle.stream_id, job.backend, str(error)))
            raise error from None
        except (asyncio.CancelledError, RequestCancelledError):
            breaker.release_trial()
            if handle.token.cancelled:
                raise self._cancelled(job) from None
            raise

    async def _attempts(self, job: ExecutionJob, started: float) -> str:
        """Latencies run from ``started``, so they include earlier attempts and backoff."""
        breaker = self.breakers[job.backend]
        options = StreamOptions(
            model=job.model,
            temperature=job.request.temperature,
            max_tokens=job.request.max_tokens,
        )
        for attempt in range(self.max_retries + 1):
            if attempt:
                self.limiter.record(job.backend)
            try:
                text = await self._stream_once(job, options)
            except (asyncio.CancelledError, RequestCancelledError):
                raise
            except Exception as exc:
                error = classify_error(exc, job.backend)
                latency = (time.monotonic() - started) * 1000.0
                breaker.record_failure()
                self.metrics.record_backend_error(job.backend)
                can_retry = error.retryable and attempt < self.max_retries and not breaker.is_open
                if not can_retry:
                    self.metrics.record_failure(job.backend, latency)
                    logger.warning("%s: request failed after %d attempt(s): %s",
                                   job.backend.value, attempt + 1, error)
                    self._persist(job, error=error)
                    self._publish(StreamFailed(job.handle.stream_id, job.backend, str(error)))
                    raise error from exc
                delay = self.backoff(attempt)
                self.metrics.record_retry()
                logger.info("%s: transient error (%s), retry %d/%d in %.1fs",
                            job.backend.value, error, attempt + 1, self.max_retries, delay)
                self._publish(RetryScheduled(job.backend, attempt + 1, delay, str(error)))
                await self._sleep(delay)
                continue

            latency = (time.monotonic() - started) * 1000.0
            breaker.record_success()
            self.metrics.record_success(job.backend, latency, text)
            self._persist(job, text=text, latency_ms=latency)
            self._publish(StreamCompleted(job.handle.stream_id, job.backend, len(text), latency))
            return text
        raise AssertionError("unreachable")

    async def _stream_once(self, job: ExecutionJob, options: StreamOptions) -> str:
        token = job.handle.token
        buffer: list[str] = []
        chunks = job.adapter.stream(job.request.message_dicts(), options, token)
        try:
            async for chunk in chunks:
                token.raise_if_cancelled(job.handle.stream_id)
                buffer.append(chunk)
                await self._deliver(job, chunk)
        finally:
            aclose = getattr(chunks, "aclose", None)
            if aclose is not None:
                await aclose()
        token.raise_if_cancelled(job.handle.stream_id)
        return "".join(buffer)

    async def _deliver(self, job: ExecutionJob, chunk: str) -> None:
        self._publish(StreamChunk(job.handle.stream_id, chunk))
        if job.on_chunk is None:
            return
        try:
            result = job.on_chunk(chunk)
            if inspect.isawaitable(result):
                await result
        except Exception as exc:
            logger.error("Chunk callback for stream %s failed, detaching it: %s",
                         job.handle.stream_id, exc)
            job.on_chunk = None

    # ── Bookkeeping ───────────────────────────────────────────────────────────

    def _cancelled(self, job: ExecutionJob) -> RequestCancelledError:
        logger.info("%s: stream %s cancelled (%s)",
                    job.backend.value, job.handle.stream_id, job.handle.token.reason)
        return RequestCancelledError(job.handle.stream_id, job.handle.token.reason or "aborted")

    def _persist(
        self,
        job: ExecutionJob,
        *,
        text: str | None = None,
        error: BackendError | None = None,
        latency_ms: float | None = None,
    ) -> None:
        request_record: Dict[str, Any] = {
            "backend": job.backend.value,
            "model": job.model,
            "messages": job.request.message_dicts(),
            "temperature": job.request.temperature,
            "max_tokens": job.request.max_tokens,
            "stream_id": job.handle.stream_id,
            "fingerprint": job.fingerprint,
        }
        if error is None:
            outcome: Dict[str, Any] = {"content": text, "latency_ms": round(latency_ms or 0.0, 1)}
        else:
            outcome = {"error": error.to_dict()}
        self.audit.submit(request_record, outcome)

    def _publish(self, event: Any) -> None:
        if self.events is not None:
            self.events.publish(event)
