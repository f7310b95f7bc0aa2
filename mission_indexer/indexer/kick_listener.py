"""
Kick ingestion.

External collaborators insert rows into ``indexer_kicks``; a trigger issues
NOTIFY on the kick channel. The listener wakes on the notification (or every
poll interval when notifications are missed or unavailable), drains the
table and feeds deduplicated KickRequests to the scheduler's queue.
"""

import asyncio
from typing import Optional

import asyncpg
import structlog

from mission_indexer.services.mission_repository import KickRequest, MissionRepository


logger = structlog.get_logger(__name__)

RECONNECT_DELAY = 5.0


class KickListener:
    """Supervised worker draining the kick inbox into an asyncio.Queue."""

    def __init__(
        self,
        repository: MissionRepository,
        queue: "asyncio.Queue[KickRequest]",
        listen_dsn: Optional[str] = None,
        channel: str = "indexer_kick",
        poll_interval: float = 5.0,
        batch_size: int = 100
    ):
        self.logger = logger.bind(service="kick_listener")
        self.repository = repository
        self.queue = queue
        self.listen_dsn = listen_dsn
        self.channel = channel
        self.poll_interval = poll_interval
        self.batch_size = batch_size

        self._wakeup = asyncio.Event()
        self._connection: Optional[asyncpg.Connection] = None
        self.notifications_received = 0
        self.kicks_enqueued = 0

    def _on_notify(self, connection, pid, channel, payload) -> None:
        self.notifications_received += 1
        self._wakeup.set()

    async def _connect(self) -> None:
        if not self.listen_dsn or self._connection is not None:
            return
        try:
            self._connection = await asyncpg.connect(self.listen_dsn)
            await self._connection.add_listener(self.channel, self._on_notify)
            self.logger.info("👂 Listening for kicks", channel=self.channel)
        except (OSError, asyncpg.PostgresError) as e:
            self.logger.warning("LISTEN unavailable, polling only", error=str(e))
            await self._disconnect()

    async def _disconnect(self) -> None:
        if self._connection is None:
            return
        connection, self._connection = self._connection, None
        try:
            await connection.close()
        except (OSError, asyncpg.PostgresError) as e:
            self.logger.debug("Error closing LISTEN connection", error=str(e))

    async def drain_once(self) -> int:
        """Drain the table until empty; returns the number of kicks enqueued."""
        total = 0
        while True:
            kicks = await self.repository.drain_kicks(self.batch_size)
            for kick in kicks:
                self.queue.put_nowait(kick)
            total += len(kicks)
            if len(kicks) < self.batch_size:
                break

        if total:
            self.kicks_enqueued += total
            self.logger.debug("Kicks enqueued", count=total)
        return total

    async def run(self, stop_event: asyncio.Event) -> None:
        """Worker loop; returns once ``stop_event`` is set."""
        self.logger.info("Kick listener started", listen=bool(self.listen_dsn))

        try:
            while not stop_event.is_set():
                await self._connect()

                try:
                    await self.drain_once()
                except Exception as e:
                    self.logger.error("Kick drain failed", error=str(e))
                    await self._disconnect()

                if self._connection is not None and self._connection.is_closed():
                    self._connection = None

                try:
                    await asyncio.wait_for(self._wakeup.wait(), timeout=self.poll_interval)
                except asyncio.TimeoutError:
                    pass
                self._wakeup.clear()
        finally:
            await self._disconnect()
            self.logger.info("Kick listener stopped")

    def wake(self) -> None:
        self._wakeup.set()
