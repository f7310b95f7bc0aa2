"""
Mission refresher and notifier.

The refresher is the one path from chain to store: read a snapshot, merge
it, and turn the resulting deltas into status / round notifications. The
notifier runs push callbacks as tracked background tasks.
"""

import asyncio
import weakref
from typing import Optional, Set

import structlog

from mission_indexer.contracts import normalize_address
from mission_indexer.services.mission_reader import MissionReader
from mission_indexer.services.push_client import PushClient
from mission_indexer.services.snapshot_reconciler import Changes, SnapshotReconciler


logger = structlog.get_logger(__name__)


class Notifier:
    """Fire-and-forget push callbacks that never block the caller."""

    def __init__(self, push: PushClient):
        self.push = push
        self._tasks: Set[asyncio.Task] = set()
        self.sent_count = 0

    def _spawn(self, coro) -> None:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        self.sent_count += 1

    def mission_updated(self, address: str, reason: str, tx_hash: Optional[str] = None) -> None:
        logger.debug("Notify mission updated", mission=address, reason=reason)
        self._spawn(self.push.notify_mission(address, reason, tx_hash))

    def status_changed(self, address: str, new_status: int) -> None:
        self._spawn(self.push.notify_status(address, new_status))

    def round_completed(self, address: str, round_number: int, winner: str, amount_wei: int) -> None:
        self._spawn(self.push.notify_round(address, round_number, winner, amount_wei))

    @property
    def pending(self) -> int:
        return len(self._tasks)

    async def flush(self) -> None:
        """Wait for every notification still in flight."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)


class MissionRefresher:
    """Reader + reconciler, serialized per mission."""

    def __init__(self, reader: MissionReader, reconciler: SnapshotReconciler, notifier: Notifier):
        self.logger = logger.bind(service="mission_refresher")
        self.reader = reader
        self.reconciler = reconciler
        self.notifier = notifier
        # Entries vanish once no caller holds or waits on the lock
        self._locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = weakref.WeakValueDictionary()

    def _lock_for(self, address: str) -> asyncio.Lock:
        lock = self._locks.get(address)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[address] = lock
        return lock

    async def refresh(self, address: str) -> Changes:
        """Read and merge a fresh snapshot; errors propagate to the caller."""
        address = normalize_address(address)

        async with self._lock_for(address):
            snapshot = await self.reader.read_snapshot(address)
            changes = await self.reconciler.apply_snapshot(address, snapshot)

        if changes.status_transition:
            self.notifier.status_changed(address, changes.status_transition[1])

        if changes.new_round_number and changes.new_round_winner:
            self.notifier.round_completed(
                address,
                changes.new_round_number,
                changes.new_round_winner,
                changes.new_round_payout_wei or 0
            )

        return changes
