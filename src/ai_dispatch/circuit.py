"""
circuit.py — Per-backend circuit breakers.

State machine:

  CLOSED     normal operation.  A failure increments consecutive_failures;
             reaching the threshold opens the breaker.  A success decrements
             the counter by one (gradual recovery, not an abrupt reset).
  OPEN       every request is refused with CircuitOpenError until
             ``opened_at + cooldown``.
  HALF_OPEN  (implicit) cooldown elapsed: exactly one trial request is let
             through.  Success closes the breaker and zeroes the counter;
             failure keeps it open and restarts the cooldown.

Cancellation is neither a success nor a failure: ``release_trial`` hands the
trial slot back so the next request can take it.
"""

from __future__ import annotations

import logging
import time
from typing import Any, Callable

from .events import CircuitClosed, CircuitOpened, EventBus
from .models import Backend, CircuitBreakerState, CircuitState

logger = logging.getLogger(__name__)


class CircuitBreaker:
    def __init__(
        self,
        backend: Backend,
        *,
        threshold: int = 5,
        cooldown: float = 30.0,
        clock: Callable[[], float] = time.monotonic,
        events: EventBus | None = None,
    ) -> None:
        self.backend = backend
        self.threshold = threshold
        self.cooldown = cooldown
        self._clock = clock
        self._events = events
        self.state = CircuitBreakerState(backend=backend)

    # ── Queries ─────────────────────────────────────────────────────────────

    @property
    def circuit_state(self) -> CircuitState:
        s = self.state
        if not s.is_open:
            return CircuitState.CLOSED
        if s.trial_in_flight or self._cooldown_elapsed():
            return CircuitState.HALF_OPEN
        return CircuitState.OPEN

    @property
    def is_open(self) -> bool:
        return self.state.is_open

    def retry_in(self) -> float:
        """Seconds until a trial request would be allowed (0 when closed)."""
        s = self.state
        if not s.is_open or s.opened_at is None:
            return 0.0
        return max(0.0, s.opened_at + self.cooldown - self._clock())

    def would_allow(self) -> bool:
        """Non-mutating version of ``allow_request``."""
        s = self.state
        if not s.is_open:
            return True
        return not s.trial_in_flight and self._cooldown_elapsed()

    # ── Transitions ─────────────────────────────────────────────────────────

    def allow_request(self) -> bool:
        """Admit a request, claiming the trial slot when the cooldown has elapsed."""
        s = self.state
        if not s.is_open:
            return True
        if s.trial_in_flight or not self._cooldown_elapsed():
            return False
        s.trial_in_flight = True
        logger.info("Circuit half-open for %s, allowing one trial request", self.backend.value)
        return True

    def record_success(self) -> None:
        s = self.state
        if s.is_open:
            s.is_open = False
            s.opened_at = None
            s.trial_in_flight = False
            s.consecutive_failures = 0
            logger.info("Circuit closed for %s", self.backend.value)
            if self._events:
                self._events.publish(CircuitClosed(self.backend))
            return
        if s.consecutive_failures > 0:
            s.consecutive_failures -= 1

    def record_failure(self) -> None:
        s = self.state
        s.consecutive_failures += 1
        if s.is_open:
            # failed trial (or a straggler that started before the trip)
            s.opened_at = self._clock()
            s.trial_in_flight = False
            logger.warning("Circuit trial failed for %s, open for another %.0fs",
                           self.backend.value, self.cooldown)
            return
        if s.consecutive_failures >= self.threshold:
            s.is_open = True
            s.opened_at = self._clock()
            logger.warning(
                "Circuit opened for %s after %d consecutive failures (cooldown %.0fs)",
                self.backend.value, s.consecutive_failures, self.cooldown,
            )
            if self._events:
                self._events.publish(CircuitOpened(self.backend, s.consecutive_failures))

    def release_trial(self) -> None:
        """Give back a claimed trial slot without judging the backend."""
        self.state.trial_in_flight = False

    def reset(self) -> None:
        self.state = CircuitBreakerState(backend=self.backend)

    def _cooldown_elapsed(self) -> bool:
        opened = self.state.opened_at
        return opened is not None and self._clock() >= opened + self.cooldown


class CircuitBreakerRegistry:
    """One breaker per Backend variant, created up front."""

    def __init__(
        self,
        *,
        threshold: int = 5,
        cooldown: float = 30.0,
        clock: Callable[[], float] = time.monotonic,
        events: EventBus | None = None,
    ) -> None:
        self._breakers: dict[Backend, CircuitBreaker] = {
            b: CircuitBreaker(b, threshold=threshold, cooldown=cooldown, clock=clock, events=events)
            for b in Backend
        }

    def __getitem__(self, backend: Backend) -> CircuitBreaker:
        return self._breakers[backend]

    def reset(self) -> None:
        for breaker in self._breakers.values():
            breaker.reset()

    def get_stats(self) -> dict[str, Any]:
        return {
            b.value: {**br.state.as_dict(), "state": br.circuit_state.value, "retry_in": round(br.retry_in(), 1)}
            for b, br in self._breakers.items()
        }
