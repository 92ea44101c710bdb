"""
metrics.py — Dispatcher counters.

Counters only ever grow until ``reset()``.  ``average_response_time`` is a
running mean (ms) over completed backend executions.  Token counts are an
estimate (characters / 4); adapters stream text, not usage blocks.
"""

from __future__ import annotations

import copy
from dataclasses import asdict, dataclass, field
from typing import Any, Dict

from .models import Backend


def estimate_tokens(text: str) -> int:
    return (len(text) + 3) // 4


@dataclass
class Metrics:
    total_requests: int = 0
    successful_requests: int = 0
    failed_requests: int = 0
    cancelled_requests: int = 0
    total_tokens: int = 0
    average_response_time: float = 0.0
    cache_hits: int = 0
    cache_misses: int = 0
    deduplicated_requests: int = 0
    queued_requests: int = 0
    circuit_rejections: int = 0
    retries: int = 0
    requests_by_backend: Dict[str, int] = field(default_factory=dict)
    errors_by_backend: Dict[str, int] = field(default_factory=dict)

    def as_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["average_response_time"] = round(self.average_response_time, 1)
        return data


class MetricsCollector:
    def __init__(self) -> None:
        self._m = Metrics()
        self._timed = 0

    def snapshot(self) -> Metrics:
        return copy.deepcopy(self._m)

    def reset(self) -> None:
        self._m = Metrics()
        self._timed = 0

    # ── Request lifecycle ───────────────────────────────────────────────────

    def record_request(self) -> None:
        self._m.total_requests += 1

    def record_execution(self, backend: Backend) -> None:
        key = backend.value
        self._m.requests_by_backend[key] = self._m.requests_by_backend.get(key, 0) + 1

    def record_success(self, backend: Backend, latency_ms: float, text: str) -> None:
        self._m.successful_requests += 1
        self._m.total_tokens += estimate_tokens(text)
        self._observe_latency(latency_ms)

    def record_failure(self, backend: Backend, latency_ms: float | None = None) -> None:
        self._m.failed_requests += 1
        if latency_ms is not None:
            self._observe_latency(latency_ms)

    def record_backend_error(self, backend: Backend) -> None:
        key = backend.value
        self._m.errors_by_backend[key] = self._m.errors_by_backend.get(key, 0) + 1

    def record_retry(self) -> None:
        self._m.retries += 1

    def record_cancelled(self) -> None:
        self._m.cancelled_requests += 1

    # ── Short circuits ──────────────────────────────────────────────────────

    def record_cache_hit(self) -> None:
        self._m.cache_hits += 1

    def record_cache_miss(self) -> None:
        self._m.cache_misses += 1

    def record_deduplicated(self) -> None:
        self._m.deduplicated_requests += 1

    def record_queued(self) -> None:
        self._m.queued_requests += 1

    def record_circuit_rejection(self) -> None:
        self._m.circuit_rejections += 1

    def _observe_latency(self, latency_ms: float) -> None:
        self._timed += 1
        avg = self._m.average_response_time
        self._m.average_response_time = avg + (latency_ms - avg) / self._timed
