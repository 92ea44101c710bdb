"""Shared helpers for the ai_dispatch test-suite."""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator
from typing import Any, Callable

from ai_dispatch.config import Settings
from ai_dispatch.models import Backend
from ai_dispatch.providers import ProviderAdapter, StreamOptions
from ai_dispatch.streams import CancellationToken


class FakeAdapter(ProviderAdapter):
    """
    Scripted backend.

    ``failures`` is consumed one entry per stream() call: an exception is
    raised before any chunk, ``None`` lets the call succeed.  ``gate`` (an
    asyncio.Event) holds every call after its first chunk until set.
    """

    def __init__(
        self,
        backend: Backend = Backend.OPENAI,
        chunks: tuple[str, ...] = ("Hel", "lo"),
        *,
        failures: list[BaseException | None] | None = None,
        gate: asyncio.Event | None = None,
        delay: float = 0.0,
        models: list[str] | None = None,
    ) -> None:
        self.backend = backend
        self.chunks = chunks
        self.failures = list(failures or [])
        self.gate = gate
        self.delay = delay
        self.models = models if models is not None else ["model-a", "model-b"]
        self.calls: list[list[dict[str, str]]] = []
        self.options: list[StreamOptions] = []

    async def stream(
        self,
        messages: list[dict[str, str]],
        options: StreamOptions,
        token: CancellationToken | None = None,
    ) -> AsyncIterator[str]:
        self.calls.append(messages)
        self.options.append(options)
        if self.failures:
            exc = self.failures.pop(0)
            if exc is not None:
                raise exc
        if self.delay:
            await asyncio.sleep(self.delay)
        for i, chunk in enumerate(self.chunks):
            if token is not None and token.cancelled:
                return
            yield chunk
            if i == 0 and self.gate is not None:
                await self.gate.wait()

    async def list_models(self) -> list[str]:
        if isinstance(self.models, BaseException):
            raise self.models
        return list(self.models)


class StatusError(Exception):
    """Exception carrying an HTTP status, like provider SDK errors do."""

    def __init__(self, message: str, status_code: int) -> None:
        super().__init__(message)
        self.status_code = status_code


class RecordingSleep:
    """Stand-in for asyncio.sleep that records requested delays."""

    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


class FakeClock:
    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def make_settings(**overrides: Any) -> Settings:
    """Settings tuned for fast, deterministic tests."""
    settings = Settings()
    settings.default_backend = Backend.OPENAI
    settings.selected_model = None
    settings.cache_enabled = True
    settings.cache_backend = "memory"
    settings.queue_tick_seconds = 3600.0      # tests drive ticks by hand
    settings.rate_window_seconds = 60
    settings.retry_base_delay = 1.0
    settings.request_timeout = 5.0
    settings.audit_enabled = False
    settings.admin_token = None
    settings.http_rate_limit_enabled = False
    for key, value in overrides.items():
        if not hasattr(settings, key):
            raise AttributeError(f"Settings has no attribute {key!r}")
        setattr(settings, key, value)
    return settings


async def wait_until(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    """Yield to the loop until ``predicate()`` holds."""
    async with asyncio.timeout(timeout):
        while not predicate():
            await asyncio.sleep(0)


def user(content: str) -> list[dict[str, str]]:
    return [{"role": "user", "content": content}]
