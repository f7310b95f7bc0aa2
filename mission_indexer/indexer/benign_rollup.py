"""
Benign error rollup writer.

The RPC layer reports every benign provider hiccup as a key; this worker
aggregates them per UTC day and adds the counts to ``indexer_benign_errors``.
"""

import asyncio
from collections import Counter
from datetime import date, datetime, timezone
from typing import Callable, Tuple

import structlog

from mission_indexer.services.mission_repository import MissionRepository


logger = structlog.get_logger(__name__)


def utc_today() -> date:
    return datetime.now(timezone.utc).date()


class BenignErrorRollupWriter:
    """Queue-fed worker flushing benign error counts to the store."""

    def __init__(
        self,
        repository: MissionRepository,
        flush_interval: float = 60.0,
        today: Callable[[], date] = utc_today
    ):
        self.logger = logger.bind(service="benign_rollup")
        self.repository = repository
        self.flush_interval = flush_interval
        self._today = today
        self._queue: "asyncio.Queue[Tuple[date, str]]" = asyncio.Queue()
        self.flushed_total = 0

    def record(self, error_key: str) -> None:
        """Non-blocking; safe to call from the RPC hot path."""
        self._queue.put_nowait((self._today(), error_key))

    async def flush(self) -> int:
        """Write everything queued so far; returns the number of events written."""
        per_day = {}
        while not self._queue.empty():
            day, key = self._queue.get_nowait()
            per_day.setdefault(day, Counter())[key] += 1

        written = 0
        for day, counts in per_day.items():
            await self.repository.add_benign_counts(day, dict(counts))
            written += sum(counts.values())

        if written:
            self.flushed_total += written
            self.logger.debug("Benign errors flushed", events=written)
        return written

    async def run(self, stop_event: asyncio.Event) -> None:
        self.logger.info("Benign rollup writer started")
        while not stop_event.is_set():
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=self.flush_interval)
            except asyncio.TimeoutError:
                pass

            try:
                await self.flush()
            except Exception as e:
                self.logger.error("Benign rollup flush failed", error=str(e))

        self.logger.info("Benign rollup writer stopped")
