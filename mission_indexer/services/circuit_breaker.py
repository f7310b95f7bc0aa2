"""
Cycle-level circuit breaker.

Counts consecutive failed scheduler cycles. Enough of them open a suspend
window; too many trips in a row end the process so the supervisor can
restart it from a clean state.
"""

import os
import time
from enum import Enum
from typing import Callable

import structlog


logger = structlog.get_logger(__name__)


class BreakerState(Enum):
    CLOSED = "closed"
    OPEN = "open"


class CycleCircuitBreaker:
    """Suspend-then-crash breaker for the scheduler cycle."""

    def __init__(
        self,
        threshold: int = 5,
        suspend_seconds: float = 60.0,
        max_trips: int = 12,
        terminate: Callable[[int], None] = os._exit,
        clock: Callable[[], float] = time.monotonic
    ):
        self.logger = logger.bind(service="circuit_breaker")
        self.threshold = threshold
        self.suspend_seconds = suspend_seconds
        self.max_trips = max_trips
        self._terminate = terminate
        self._clock = clock

        self.state = BreakerState.CLOSED
        self.consecutive_failures = 0
        self.trips = 0
        self.opened_at = 0.0

    def is_open(self) -> bool:
        """True while the suspend window is running."""
        if self.state is BreakerState.OPEN:
            elapsed = self._clock() - self.opened_at
            if elapsed >= self.suspend_seconds:
                self.logger.info("Circuit breaker suspend window over, resuming", trips=self.trips)
                self.state = BreakerState.CLOSED
                return False
            return True
        return False

    def record_success(self) -> None:
        if self.consecutive_failures or self.trips:
            self.logger.info(
                "Circuit breaker reset after successful cycle",
                failures=self.consecutive_failures,
                trips=self.trips
            )
        self.consecutive_failures = 0
        self.trips = 0
        self.state = BreakerState.CLOSED

    def record_failure(self, reason: str = "") -> None:
        self.consecutive_failures += 1

        if self.state is BreakerState.OPEN or self.consecutive_failures < self.threshold:
            return

        self.state = BreakerState.OPEN
        self.opened_at = self._clock()
        self.consecutive_failures = 0
        self.trips += 1

        self.logger.warning(
            "🔌 Circuit breaker opened",
            trips=self.trips,
            max_trips=self.max_trips,
            suspend_seconds=self.suspend_seconds,
            reason=reason
        )

        if self.trips >= self.max_trips:
            self.logger.critical(
                "💀 Circuit breaker tripped too many times, terminating process",
                trips=self.trips
            )
            self._terminate(1)

    def get_stats(self) -> dict:
        return {
            "state": self.state.value,
            "consecutive_failures": self.consecutive_failures,
            "trips": self.trips,
        }
