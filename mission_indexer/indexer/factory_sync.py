"""
Factory cursor sync - discovers new and changed missions through the
factory's monotonic change log.
"""

import asyncio
from typing import Dict, List, Optional, Tuple

import structlog

from mission_indexer.contracts import FactoryChange
from mission_indexer.core.exceptions import IndexerError
from mission_indexer.services.mission_reader import MissionReader
from mission_indexer.services.mission_repository import MissionRepository
from mission_indexer.services.request_pacer import RequestPacer
from mission_indexer.services.rpc_errors import ErrorKind, classify_error
from .refresher import MissionRefresher


logger = structlog.get_logger(__name__)

# Pacer slots per refresh (block number, data and status come back from one call)
CALLS_PER_REFRESH = 1


class FactoryCursorSync:
    """Reads factory changes after the stored cursor and refreshes each mission."""

    def __init__(
        self,
        reader: MissionReader,
        refresher: MissionRefresher,
        repository: MissionRepository,
        pacer: Optional[RequestPacer] = None,
        batch_size: int = 200,
        max_pages: int = 5,
        cursor_floor: int = 0,
        pacer_budget_seconds: float = 20.0
    ):
        self.logger = logger.bind(service="factory_cursor_sync")
        self.reader = reader
        self.refresher = refresher
        self.repository = repository
        self.pacer = pacer or RequestPacer()
        self.batch_size = batch_size
        self.max_pages = max(1, max_pages)
        self.cursor_floor = cursor_floor
        self.pacer_budget_seconds = pacer_budget_seconds

        self.sync_count = 0
        self.missions_refreshed = 0
        self.skipped_missions = 0

    async def refresh_changes(self) -> int:
        """
        Apply factory changes after the stored cursor, page by page.

        Every page's own status field is ignored; each address gets a full
        snapshot refresh, paced over ``pacer_budget_seconds`` for the whole
        cycle. Missions failing with a permanent error are logged and skipped.
        A transient failure holds the cursor just below its change and raises,
        so that part of the log replays next time.

        Returns:
            Number of distinct missions refreshed

        Raises:
            IndexerError: when at least one refresh failed transiently
        """
        cursor = await self.repository.get_cursor(self.cursor_floor)
        refreshed = 0

        try:
            for page in range(self.max_pages):
                changes = await self.reader.read_factory_changes(cursor, self.batch_size)
                if not changes:
                    break

                addresses: List[str] = list(dict.fromkeys(c.mission_address for c in changes))
                if page == 0:
                    self.pacer.engage(len(addresses) * CALLS_PER_REFRESH, self.pacer_budget_seconds)
                else:
                    self.pacer.reserve(len(addresses) * CALLS_PER_REFRESH)

                self.logger.info(
                    "🏭 Factory changes found",
                    cursor=cursor,
                    page=page + 1,
                    changes=len(changes),
                    missions=len(addresses),
                    max_seq=max(c.seq for c in changes)
                )

                cursor, page_refreshed = await self._apply_page(cursor, changes, addresses)
                refreshed += page_refreshed

                if len(changes) < self.batch_size:
                    break
        finally:
            self.pacer.disengage()

        if refreshed:
            self.sync_count += 1
            self.missions_refreshed += refreshed
        return refreshed

    async def _apply_page(
        self, cursor: int, changes: List[FactoryChange], addresses: List[str]
    ) -> Tuple[int, int]:
        """Refresh one page and advance the cursor as far as it safely can."""
        results = await asyncio.gather(
            *(self._paced_refresh(address) for address in addresses),
            return_exceptions=True
        )

        first_seq: Dict[str, int] = {}
        for change in changes:
            first_seq[change.mission_address] = min(change.seq, first_seq.get(change.mission_address, change.seq))

        held: List[Tuple[str, Exception]] = []
        skipped = 0
        for address, result in zip(addresses, results):
            if not isinstance(result, Exception):
                continue
            if classify_error(result).kind is ErrorKind.PERMANENT:
                skipped += 1
                self.logger.warning(
                    "Skipping mission with permanent refresh error",
                    mission=address,
                    error=str(result),
                    error_type=type(result).__name__
                )
            else:
                self.logger.error("Factory refresh failed", mission=address, error=str(result))
                held.append((address, result))

        new_cursor = max(c.seq for c in changes)
        if held:
            new_cursor = min(first_seq[address] for address, _ in held) - 1

        self.skipped_missions += skipped
        if new_cursor > cursor:
            await self.repository.advance_cursor(new_cursor)
            cursor = new_cursor

        if held:
            raise IndexerError(
                f"{len(held)} of {len(addresses)} factory refreshes failed, cursor held at {cursor}",
                {"cursor": cursor, "failed": [address for address, _ in held]}
            ) from held[0][1]

        return cursor, len(addresses) - skipped

    async def _paced_refresh(self, address: str):
        await self.pacer.wait_turn()
        return await self.refresher.refresh(address)
