"""
Rate-limit circuit breaker.

Counts rate-limit failures in a rolling window. After ``threshold`` of them
it opens and rejects calls for ``cooldown_seconds``, then half-opens and
lets a single trial call through: success closes it, failure re-opens it.
"""

import time
from collections import deque
from enum import Enum
from typing import Any, Callable, Deque, Dict, Optional

import structlog


logger = structlog.get_logger(__name__)


class CircuitState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreaker:
    """Rolling-window breaker shared by every caller of one upstream."""

    def __init__(
        self,
        name: str,
        threshold: int = 5,
        window_seconds: float = 60.0,
        cooldown_seconds: float = 300.0,
        clock: Callable[[], float] = time.monotonic
    ):
        self.name = name
        self.threshold = threshold
        self.window_seconds = window_seconds
        self.cooldown_seconds = cooldown_seconds
        self._clock = clock
        self._failures: Deque[float] = deque()
        self._opened_at: Optional[float] = None
        self._trial_in_flight = False
        self.times_opened = 0
        self.logger = logger.bind(service="circuit_breaker", breaker=name)

    @property
    def state(self) -> CircuitState:
        if self._opened_at is None:
            return CircuitState.CLOSED
        if self._clock() - self._opened_at >= self.cooldown_seconds:
            return CircuitState.HALF_OPEN
        return CircuitState.OPEN

    def allow_request(self) -> bool:
        """Whether a call may go upstream now. Claims the trial slot when half-open."""
        state = self.state
        if state == CircuitState.CLOSED:
            return True
        if state == CircuitState.OPEN:
            return False
        if self._trial_in_flight:
            return False
        self._trial_in_flight = True
        self.logger.info("Circuit half-open, letting a trial call through")
        return True

    def retry_in(self) -> float:
        if self._opened_at is None:
            return 0.0
        return max(0.0, self.cooldown_seconds - (self._clock() - self._opened_at))

    def record_success(self) -> None:
        if self._opened_at is not None:
            self.logger.info("Trial call succeeded, circuit closed")
        self._opened_at = None
        self._trial_in_flight = False
        self._failures.clear()

    def record_rate_limit(self) -> None:
        """Count one rate-limit failure; may open the circuit."""
        now = self._clock()

        if self._trial_in_flight or self.state == CircuitState.HALF_OPEN:
            self._open(now, reason="trial call rate limited")
            return

        self._failures.append(now)
        self._prune(now)

        if self._opened_at is None and len(self._failures) >= self.threshold:
            self._open(now, reason="rate limit threshold reached")

    def record_failure(self) -> None:
        """Non rate-limit failure. Only matters for a half-open trial call."""
        if self._trial_in_flight:
            self._open(self._clock(), reason="trial call failed")

    def release_trial(self) -> None:
        """Give the half-open trial slot back without a verdict, e.g. when the trial call was cancelled."""
        if self._trial_in_flight:
            self._trial_in_flight = False
            self.logger.info("Trial call abandoned, circuit stays half-open")

    def reset(self) -> None:
        self._failures.clear()
        self._opened_at = None
        self._trial_in_flight = False

    def _open(self, now: float, reason: str) -> None:
        self._opened_at = now
        self._trial_in_flight = False
        self._failures.clear()
        self.times_opened += 1
        self.logger.warning(
            "Circuit opened",
            reason=reason,
            cooldown_seconds=self.cooldown_seconds,
            times_opened=self.times_opened
        )

    def _prune(self, now: float) -> None:
        while self._failures and now - self._failures[0] > self.window_seconds:
            self._failures.popleft()

    def get_status(self) -> Dict[str, Any]:
        self._prune(self._clock())
        return {
            "name": self.name,
            "state": self.state.value,
            "recent_rate_limits": len(self._failures),
            "threshold": self.threshold,
            "retry_in_seconds": round(self.retry_in(), 1),
            "times_opened": self.times_opened,
        }
