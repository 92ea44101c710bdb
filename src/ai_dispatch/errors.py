"""
errors.py — Exception taxonomy for the dispatcher.

Every failure a caller can observe is one of these types:

  ValidationError         bad input; raised before any I/O, never retried
  CircuitOpenError        backend short-circuited; fail fast
  QueueFullError          rate-limit queue at capacity; fail fast
  BackendError            adapter failure, retryable or terminal
  DispatchTimeoutError    wall-clock deadline exceeded (counts as a failure)
  RequestCancelledError   user abort (never counted as a failure)
  DispatcherClosedError   queued request rejected because the dispatcher stopped
"""

from __future__ import annotations

from typing import Any

from .models import Backend


class DispatchError(Exception):
    """Base class for all dispatcher errors."""

    #: HTTP status used by the server's exception handlers
    status_code: int = 500

    def to_dict(self) -> dict[str, Any]:
        return {"message": str(self), "type": type(self).__name__}


class ValidationError(DispatchError):
    status_code = 400

    def __init__(self, field: str, message: str) -> None:
        super().__init__(f"{field}: {message}")
        self.field = field

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        data["field"] = self.field
        return data


class CircuitOpenError(DispatchError):
    status_code = 503

    def __init__(self, backend: Backend, retry_in: float) -> None:
        super().__init__(
            f"Circuit breaker open for {backend.value}; retry in {max(retry_in, 0.0):.0f}s"
        )
        self.backend = backend
        self.retry_in = retry_in


class QueueFullError(DispatchError):
    status_code = 429

    def __init__(self, backend: Backend, max_size: int) -> None:
        super().__init__(
            f"Rate limit exceeded for {backend.value} and request queue is full ({max_size})"
        )
        self.backend = backend
        self.max_size = max_size


RateLimitQueueFullError = QueueFullError


class BackendError(DispatchError):
    status_code = 502

    def __init__(
        self,
        backend: Backend,
        message: str,
        *,
        retryable: bool = False,
        status: int | None = None,
        kind: str = "unknown",
    ) -> None:
        super().__init__(f"{backend.value}: {message}")
        self.backend = backend
        self.retryable = retryable
        self.status = status
        self.kind = kind

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        data.update({"backend": self.backend.value, "kind": self.kind, "retryable": self.retryable})
        if self.status is not None:
            data["status"] = self.status
        return data


class DispatchTimeoutError(BackendError):
    status_code = 504

    def __init__(self, backend: Backend, timeout: float) -> None:
        super().__init__(
            backend, f"request exceeded {timeout:g}s wall-clock limit", retryable=False, kind="timeout"
        )
        self.timeout = timeout


class RequestCancelledError(DispatchError):
    status_code = 499

    def __init__(self, stream_id: str | None = None, reason: str = "aborted") -> None:
        label = f"stream {stream_id}" if stream_id else "request"
        super().__init__(f"{label} cancelled: {reason}")
        self.stream_id = stream_id
        self.reason = reason


class DispatcherClosedError(DispatchError):
    status_code = 503

    def __init__(self, message: str = "dispatcher is shutting down") -> None:
        super().__init__(message)
