"""
Request pacer - spreads a burst of RPC calls evenly over a time budget.
"""

import time
import asyncio
from typing import Awaitable, Callable

import structlog


logger = structlog.get_logger(__name__)


class RequestPacer:
    """
    Burst shaper for a bounded work cycle.

    While engaged, successive ``wait_turn()`` calls are released
    ``budget / planned`` seconds apart. A disengaged pacer never waits.
    """

    def __init__(
        self,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep
    ):
        self.logger = logger.bind(service="request_pacer")
        self._clock = clock
        self._sleep = sleep
        self._lock = asyncio.Lock()
        self._reset()

    def _reset(self) -> None:
        self._engaged = False
        self._planned = 0
        self._budget = 0.0
        self._interval = 0.0
        self._next_slot = 0.0
        self.issued = 0

    @property
    def engaged(self) -> bool:
        return self._engaged

    @property
    def interval(self) -> float:
        return self._interval

    def engage(self, planned_calls: int, budget_seconds: float) -> None:
        """Start pacing a cycle of ``planned_calls`` calls within ``budget_seconds``."""
        if planned_calls <= 0 or budget_seconds <= 0:
            self._reset()
            return

        self._engaged = True
        self._planned = planned_calls
        self._budget = budget_seconds
        self._interval = budget_seconds / planned_calls
        self._next_slot = self._clock()
        self.issued = 0

        self.logger.debug(
            "Pacer engaged",
            planned_calls=planned_calls,
            budget_seconds=budget_seconds,
            interval=round(self._interval, 4)
        )

    def reserve(self, extra_calls: int) -> None:
        """Add calls to the plan mid-cycle and recompute spacing."""
        if not self._engaged or extra_calls <= 0:
            return
        self._planned += extra_calls
        self._interval = self._budget / self._planned

    async def wait_turn(self) -> None:
        """Wait until the next call slot is due."""
        if not self._engaged:
            return

        async with self._lock:
            now = self._clock()
            if now < self._next_slot:
                await self._sleep(self._next_slot - now)
                now = self._next_slot
            self._next_slot = now + self._interval
            self.issued += 1

    def disengage(self) -> None:
        if self._engaged:
            self.logger.debug("Pacer disengaged", issued=self.issued, planned=self._planned)
        self._reset()
