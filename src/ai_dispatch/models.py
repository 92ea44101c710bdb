"""
models.py — Pydantic schemas and runtime dataclasses for the dispatcher.

Three layers:
  1. Enumerations (Backend, Role, CircuitState)
  2. Request / response schemas (validated messages, HTTP i/o)
  3. Runtime state objects (CacheEntry, CircuitBreakerState, RateLimitWindow,
     QueuedRequest, CompletionResult)
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


# ══════════════════════════════════════════════════════════════════════════════
# Enumerations
# ══════════════════════════════════════════════════════════════════════════════


class Backend(str, Enum):
    OPENAI    = "openai"
    ANTHROPIC = "anthropic"
    GEMINI    = "gemini"
    OLLAMA    = "ollama"

    @classmethod
    def parse(cls, value: "Backend | str") -> "Backend":
        """Accept a variant or its (case-insensitive) name; ValueError otherwise."""
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            known = ", ".join(b.value for b in cls)
            raise ValueError(f"Unknown backend '{value}' (expected one of: {known})") from None


class Role(str, Enum):
    SYSTEM    = "system"
    USER      = "user"
    ASSISTANT = "assistant"


class CircuitState(str, Enum):
    CLOSED    = "closed"
    OPEN      = "open"
    HALF_OPEN = "half_open"   # cooldown elapsed, trial call allowed / in flight


# ══════════════════════════════════════════════════════════════════════════════
# Request / response schemas
# ══════════════════════════════════════════════════════════════════════════════


class Message(BaseModel):
    model_config = ConfigDict(frozen=True)

    role: Role
    content: str

    def as_dict(self) -> Dict[str, str]:
        return {"role": self.role.value, "content": self.content}


@dataclass(frozen=True)
class CompletionRequest:
    """A validated, sanitized request.  Immutable once built by the Validator."""

    messages: tuple[Message, ...]
    temperature: float | None = None
    max_tokens: int | None = None
    priority: int = 0
    backend: Backend | None = None      # explicit override

    def message_dicts(self) -> list[dict[str, str]]:
        return [m.as_dict() for m in self.messages]


class ChatRequest(BaseModel):
    """HTTP body for POST /v1/complete."""

    messages: List[Dict[str, Any]]
    temperature: Optional[float] = None
    max_tokens: Optional[int] = Field(None, gt=0)
    backend: Optional[str] = None
    priority: int = 0
    stream: bool = False
    stream_id: Optional[str] = None


class SelectModelRequest(BaseModel):
    model: str


class ConnectionTestResult(BaseModel):
    ok: bool
    message: str
    models: Optional[List[str]] = None


# ══════════════════════════════════════════════════════════════════════════════
# Runtime state objects
# ══════════════════════════════════════════════════════════════════════════════


@dataclass
class CacheEntry:
    value: str
    inserted_at: float
    ttl: float

    def is_expired(self, now: float) -> bool:
        return now >= self.inserted_at + self.ttl


@dataclass
class CircuitBreakerState:
    """Per-backend breaker bookkeeping (mutated only by CircuitBreaker)."""

    backend: Backend
    is_open: bool = False
    consecutive_failures: int = 0
    opened_at: float | None = None
    trial_in_flight: bool = False

    def as_dict(self) -> Dict[str, Any]:
        return {
            "backend": self.backend.value,
            "is_open": self.is_open,
            "consecutive_failures": self.consecutive_failures,
            "opened_at": self.opened_at,
            "trial_in_flight": self.trial_in_flight,
        }


@dataclass(frozen=True)
class RateLimitWindow:
    """Snapshot of one backend's fixed window."""

    backend: Backend
    count: int
    quota: int
    window_start: float
    window_seconds: int

    @property
    def remaining(self) -> int:
        return max(0, self.quota - self.count)


@dataclass(order=True)
class QueuedRequest:
    """
    A request parked because its backend had no quota left.

    Ordering is (-priority, sequence): higher priority first, then FIFO.
    ``future`` is the resolve/reject handle awaited by the admitting caller.
    """

    sort_key: tuple[int, int]
    backend: Backend = field(compare=False)
    priority: int = field(compare=False)
    run: Callable[[], Awaitable[Any]] = field(compare=False, repr=False)
    future: asyncio.Future = field(compare=False, repr=False)
    enqueued_at: float = field(default_factory=time.monotonic, compare=False)
    label: str = field(default="", compare=False)

    @property
    def sequence(self) -> int:
        return self.sort_key[1]


@dataclass
class CompletionResult:
    text: str
    backend: Backend
    model: str
    fingerprint: str
    cached: bool = False
    deduplicated: bool = False
    latency_ms: float = 0.0

    def as_dict(self) -> Dict[str, Any]:
        return {
            "text": self.text,
            "backend": self.backend.value,
            "model": self.model,
            "fingerprint": self.fingerprint,
            "cached": self.cached,
            "deduplicated": self.deduplicated,
            "latency_ms": round(self.latency_ms, 1),
        }
