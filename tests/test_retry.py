"""RetryExecutor: backoff, terminal errors, deadlines and bookkeeping."""

from __future__ import annotations

import asyncio

import pytest

from ai_dispatch.circuit import CircuitBreakerRegistry
from ai_dispatch.errors import BackendError, DispatchTimeoutError, RequestCancelledError
from ai_dispatch.events import DispatchEvent, EventBus, RetryScheduled, StreamCompleted, StreamStarted
from ai_dispatch.metrics import MetricsCollector
from ai_dispatch.models import Backend
from ai_dispatch.persistence import AuditWriter, PersistenceSink
from ai_dispatch.quota import RateLimiter
from ai_dispatch.retry import ExecutionJob, RetryExecutor
from ai_dispatch.streams import StreamRegistry
from ai_dispatch.validation import Validator
from conftest import FakeAdapter, RecordingSleep, StatusError


class ListSink(PersistenceSink):
    def __init__(self):
        self.records = []

    def append(self, request_record, outcome_record):
        self.records.append((request_record, outcome_record))


class Harness:
    def __init__(self, adapter, *, threshold=5, timeout=5.0, max_retries=3, sleep=None):
        self.adapter = adapter
        self.sleep = sleep or RecordingSleep()
        self.events = EventBus()
        self.seen = []
        self.events.subscribe(DispatchEvent, self.seen.append)
        self.breakers = CircuitBreakerRegistry(threshold=threshold, cooldown=30)
        self.limiter = RateLimiter()
        self.metrics = MetricsCollector()
        self.sink = ListSink()
        self.audit = AuditWriter(self.sink)
        self.streams = StreamRegistry(self.events)
        self.executor = RetryExecutor(
            breakers=self.breakers,
            limiter=self.limiter,
            metrics=self.metrics,
            audit=self.audit,
            events=self.events,
            max_retries=max_retries,
            base_delay=1.0,
            timeout=timeout,
            sleep=self.sleep,
        )

    def job(self, on_chunk=None, stream_id=None):
        request = Validator().validate([{"role": "user", "content": "hi"}], temperature=0)
        handle = self.streams.open(Backend.OPENAI, stream_id)
        return ExecutionJob(request, Backend.OPENAI, "gpt-4o-mini", self.adapter, handle, "req:x", on_chunk)

    @property
    def failures(self):
        return self.breakers[Backend.OPENAI].state.consecutive_failures


@pytest.mark.asyncio
async def test_success_streams_chunks_and_persists():
    h = Harness(FakeAdapter(chunks=("Hel", "lo")))
    received = []
    text = await h.executor.execute(h.job(on_chunk=received.append))
    await h.audit.drain()

    assert text == "Hello"
    assert received == ["Hel", "lo"]
    assert h.adapter.options[0].model == "gpt-4o-mini"
    assert h.adapter.options[0].temperature == 0
    m = h.metrics.snapshot()
    assert m.successful_requests == 1
    assert m.requests_by_backend == {"openai": 1}
    assert m.total_tokens == 2
    assert len(h.sink.records) == 1
    request_record, outcome = h.sink.records[0]
    assert request_record["messages"] == [{"role": "user", "content": "hi"}]
    assert outcome["content"] == "Hello"
    assert any(isinstance(e, StreamCompleted) for e in h.seen)


@pytest.mark.asyncio
async def test_transient_errors_back_off_exponentially():
    failures = [ConnectionError("ECONNRESET")] * 3
    h = Harness(FakeAdapter(failures=failures))
    text = await h.executor.execute(h.job())
    await h.audit.drain()

    assert text == "Hello"
    assert h.sleep.delays == [1.0, 2.0, 4.0]
    assert len(h.adapter.calls) == 4
    assert h.metrics.snapshot().retries == 3
    assert h.metrics.snapshot().errors_by_backend == {"openai": 3}
    assert [e.attempt for e in h.seen if isinstance(e, RetryScheduled)] == [1, 2, 3]
    # three failures, then one success walks the counter back by one
    assert h.failures == 2
    # only the final outcome is persisted
    assert len(h.sink.records) == 1
    # every retry consumed quota
    assert h.limiter.window(Backend.OPENAI).count == 3


@pytest.mark.asyncio
async def test_retries_exhausted():
    h = Harness(FakeAdapter(failures=[StatusError("overloaded", 503)] * 10))
    with pytest.raises(BackendError) as exc_info:
        await h.executor.execute(h.job())
    await h.audit.drain()

    assert exc_info.value.retryable
    assert len(h.adapter.calls) == 4
    assert h.sleep.delays == [1.0, 2.0, 4.0]
    assert h.metrics.snapshot().failed_requests == 1
    assert "error" in h.sink.records[0][1]


@pytest.mark.asyncio
async def test_terminal_error_is_not_retried():
    h = Harness(FakeAdapter(failures=[StatusError("invalid api key", 401)]))
    with pytest.raises(BackendError) as exc_info:
        await h.executor.execute(h.job())

    assert exc_info.value.retryable is False
    assert exc_info.value.kind == "invalid_api_key"
    assert h.sleep.delays == []
    assert len(h.adapter.calls) == 1
    assert h.failures == 1


@pytest.mark.asyncio
async def test_retries_stop_once_circuit_opens():
    h = Harness(FakeAdapter(failures=[ConnectionError("ECONNRESET")] * 10), threshold=2)
    with pytest.raises(BackendError):
        await h.executor.execute(h.job())
    assert len(h.adapter.calls) == 2
    assert h.sleep.delays == [1.0]
    assert h.breakers[Backend.OPENAI].is_open


@pytest.mark.asyncio
async def test_deadline_forces_timeout_failure():
    h = Harness(FakeAdapter(delay=10), timeout=0.05)
    with pytest.raises(DispatchTimeoutError) as exc_info:
        await h.executor.execute(h.job())
    assert exc_info.value.status_code == 504
    assert h.failures == 1
    assert h.metrics.snapshot().failed_requests == 1


@pytest.mark.asyncio
async def test_cancellation_is_not_a_failure():
    gate = asyncio.Event()
    h = Harness(FakeAdapter(chunks=("a", "b"), gate=gate))
    job = h.job(stream_id="s1")
    task = asyncio.create_task(h.executor.execute(job))
    while not h.adapter.calls:
        await asyncio.sleep(0)
    await asyncio.sleep(0)
    assert h.streams.abort("s1", "user stop")

    with pytest.raises(RequestCancelledError) as exc_info:
        await task
    assert exc_info.value.reason == "user stop"
    assert h.failures == 0
    m = h.metrics.snapshot()
    assert m.failed_requests == 0
    assert m.successful_requests == 0


@pytest.mark.asyncio
async def test_failing_callback_is_detached():
    h = Harness(FakeAdapter(chunks=("a", "b", "c")))
    calls = []

    def callback(chunk):
        calls.append(chunk)
        raise RuntimeError("ui went away")

    assert await h.executor.execute(h.job(on_chunk=callback)) == "abc"
    assert calls == ["a"]


@pytest.mark.asyncio
async def test_async_callback_is_awaited():
    h = Harness(FakeAdapter(chunks=("a", "b")))
    received = []

    async def callback(chunk):
        await asyncio.sleep(0)
        received.append(chunk)

    await h.executor.execute(h.job(on_chunk=callback))
    assert received == ["a", "b"]


@pytest.mark.asyncio
async def test_job_aborted_before_first_attempt_never_calls_backend():
    h = Harness(FakeAdapter())
    job = h.job(stream_id="s0")
    assert h.streams.abort("s0", "changed my mind")
    with pytest.raises(RequestCancelledError) as exc_info:
        await h.executor.execute(job)
    assert exc_info.value.reason == "changed my mind"
    assert h.adapter.calls == []
    assert h.metrics.snapshot().requests_by_backend == {}
    assert not any(isinstance(e, StreamStarted) for e in h.seen)


@pytest.mark.asyncio
async def test_latency_covers_retries_and_backoff():
    async def short_sleep(delay):
        await asyncio.sleep(0.05)

    h = Harness(FakeAdapter(failures=[ConnectionError("ECONNRESET")]), sleep=short_sleep)
    assert await h.executor.execute(h.job()) == "Hello"
    await h.audit.drain()
    assert h.metrics.snapshot().average_response_time >= 40
    assert h.sink.records[0][1]["latency_ms"] >= 40
