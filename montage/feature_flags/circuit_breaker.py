"""
Circuit breaker guarding calls to the remote decision authority.

STATES:
    closed     All calls go through. Each failure bumps the counter; reaching
               failure_threshold opens the breaker. A success resets the counter.
    open       No calls. Once reset_timeout has passed since the last failure,
               the next availability check moves the breaker to half_open.
    half_open  Exactly one trial call is admitted. Success closes the breaker,
               failure re-opens it and restarts the reset timer.

The breaker lives in memory only; a process restart forgets fault history.
"""

from __future__ import annotations

import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum
from typing import Any

from montage.logger import logger

from .config import DEFAULT_FAILURE_THRESHOLD, DEFAULT_RESET_TIMEOUT_SECONDS


class CircuitState(str, Enum):
    """Circuit breaker states."""

    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


@dataclass(frozen=True)
class BreakerSnapshot:
    """Point-in-time view of a breaker, for diagnostics."""

    name: str
    state: CircuitState
    failures: int
    last_failure_at: float | None
    trial_in_flight: bool

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "state": self.state.value,
            "failures": self.failures,
            "last_failure_at": self.last_failure_at,
            "trial_in_flight": self.trial_in_flight,
        }


class CircuitBreaker:
    """
    Consecutive-failure circuit breaker.

    All counters sit behind a single lock, so concurrent callers (threads or
    asyncio tasks) never lose an increment. No method blocks beyond that lock.

    USAGE:
        breaker = CircuitBreaker("flags", failure_threshold=5, reset_timeout=30.0)

        if not breaker.try_acquire():
            return fallback()
        try:
            result = await call_remote()
        except asyncio.CancelledError:
            breaker.release()
            raise
        except Exception:
            breaker.record_failure()
            return fallback()
        breaker.record_success()
    """

    def __init__(
        self,
        name: str = "default",
        failure_threshold: int = DEFAULT_FAILURE_THRESHOLD,
        reset_timeout: float = DEFAULT_RESET_TIMEOUT_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.name = name
        self._failure_threshold = failure_threshold
        self._reset_timeout = reset_timeout
        self._clock = clock

        self._state = CircuitState.CLOSED
        self._failures = 0
        self._last_failure_at: float | None = None
        self._trial_in_flight = False
        self._lock = threading.Lock()

    # -------------------------------------------------------------------------
    # Availability
    # -------------------------------------------------------------------------

    def _advance(self) -> bool:
        """Move open -> half_open once the reset timeout has elapsed. Lock must be held."""
        if self._state != CircuitState.OPEN or self._last_failure_at is None:
            return False
        if self._clock() - self._last_failure_at > self._reset_timeout:
            self._state = CircuitState.HALF_OPEN
            self._trial_in_flight = False
            return True
        return False

    @property
    def state(self) -> CircuitState:
        """Current state; reading it may move an expired open breaker to half_open."""
        with self._lock:
            moved = self._advance()
            state = self._state
        if moved:
            self._log_transition(CircuitState.OPEN, state)
        return state

    @property
    def failures(self) -> int:
        with self._lock:
            return self._failures

    @property
    def is_open(self) -> bool:
        return self.state == CircuitState.OPEN

    def is_available(self) -> bool:
        """True when a call could currently be admitted (closed, or half_open with no trial running)."""
        with self._lock:
            moved = self._advance()
            available = self._state == CircuitState.CLOSED or (
                self._state == CircuitState.HALF_OPEN and not self._trial_in_flight
            )
        if moved:
            self._log_transition(CircuitState.OPEN, CircuitState.HALF_OPEN)
        return available

    def try_acquire(self) -> bool:
        """
        Ask permission to call the remote authority.

        In half_open this hands out the single trial slot; callers that get
        True must finish with record_success(), record_failure() or release().
        """
        with self._lock:
            moved = self._advance()
            if self._state == CircuitState.CLOSED:
                granted = True
            elif self._state == CircuitState.HALF_OPEN and not self._trial_in_flight:
                self._trial_in_flight = True
                granted = True
            else:
                granted = False
        if moved:
            self._log_transition(CircuitState.OPEN, CircuitState.HALF_OPEN)
        return granted

    # -------------------------------------------------------------------------
    # Outcomes
    # -------------------------------------------------------------------------

    def record_success(self) -> None:
        with self._lock:
            previous = self._state
            self._failures = 0
            self._state = CircuitState.CLOSED
            self._trial_in_flight = False
        if previous != CircuitState.CLOSED:
            self._log_transition(previous, CircuitState.CLOSED)

    def record_failure(self) -> None:
        with self._lock:
            previous = self._state
            self._failures += 1
            self._last_failure_at = self._clock()
            if previous == CircuitState.HALF_OPEN:
                self._state = CircuitState.OPEN
                self._trial_in_flight = False
            elif previous == CircuitState.CLOSED and self._failures >= self._failure_threshold:
                self._state = CircuitState.OPEN
            failures = self._failures
            current = self._state
        if current != previous:
            self._log_transition(previous, current, failures=failures)

    def release(self) -> None:
        """Give back an unused trial slot without recording an outcome (e.g. on cancellation)."""
        with self._lock:
            self._trial_in_flight = False

    def reset(self) -> None:
        with self._lock:
            self._state = CircuitState.CLOSED
            self._failures = 0
            self._last_failure_at = None
            self._trial_in_flight = False

    # -------------------------------------------------------------------------
    # Diagnostics
    # -------------------------------------------------------------------------

    def snapshot(self) -> BreakerSnapshot:
        """Read-only view; unlike ``state`` this never triggers a transition."""
        with self._lock:
            return BreakerSnapshot(
                name=self.name,
                state=self._state,
                failures=self._failures,
                last_failure_at=self._last_failure_at,
                trial_in_flight=self._trial_in_flight,
            )

    def _log_transition(self, previous: CircuitState, current: CircuitState, **kwargs: Any) -> None:
        level = "warning" if current == CircuitState.OPEN else "info"
        getattr(logger, level)(
            f"circuit_breaker_{current.value}",
            breaker=self.name,
            previous_state=previous.value,
            **kwargs,
        )
