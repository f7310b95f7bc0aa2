"""
Store access for the scheduler: mission loading, factory cursor, kick inbox
and the benign error rollup.
"""

from dataclasses import dataclass
from datetime import date
from typing import Dict, Iterable, List, Optional

import structlog
from sqlalchemy import and_, case, delete, or_, select, update

from mission_indexer.contracts import MissionStatus, normalize_address
from mission_indexer.core.database import get_async_session, upsert
from mission_indexer.models import (
    Mission, FactoryCursor, IndexerKick, BenignErrorRollup, FACTORY_CURSOR_ID
)


logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class KickRequest:
    """One deduplicated kick, ready for the scheduler."""
    mission_address: str
    tx_hash: Optional[str] = None
    event_type: Optional[str] = None


def dedupe_kicks(kicks: Iterable[KickRequest]) -> List[KickRequest]:
    """
    Collapse kicks by mission address.

    The latest tx hash / event type per mission wins; first-seen order of
    missions is kept.
    """
    latest: Dict[str, KickRequest] = {}
    for kick in kicks:
        address = normalize_address(kick.mission_address)
        previous = latest.get(address)
        latest[address] = KickRequest(
            mission_address=address,
            tx_hash=kick.tx_hash or (previous.tx_hash if previous else None),
            event_type=kick.event_type or (previous.event_type if previous else None),
        )
    return list(latest.values())


class MissionRepository:
    """Thin async data access layer over the indexer tables."""

    def __init__(self, session_factory=get_async_session):
        self.logger = logger.bind(service="mission_repository")
        self._session_factory = session_factory

    # Missions

    async def get_mission(self, address: str) -> Optional[Mission]:
        async with self._session_factory() as session:
            return await session.get(Mission, normalize_address(address))

    async def load_active_missions(self, extra_addresses: Iterable[str] = ()) -> List[Mission]:
        """
        Missions below Success, failed missions not yet finalized, plus any
        explicitly requested addresses.
        """
        extra = [normalize_address(a) for a in extra_addresses]

        condition = or_(
            Mission.status < int(MissionStatus.SUCCESS),
            and_(Mission.status == int(MissionStatus.FAILED), Mission.finalized.is_(False))
        )
        if extra:
            condition = or_(condition, Mission.mission_address.in_(extra))

        async with self._session_factory() as session:
            result = await session.execute(
                select(Mission).where(condition).order_by(Mission.mission_address)
            )
            return list(result.scalars().all())

    async def mark_finalized(self, address: str) -> None:
        """Persist finalized = true without touching anything else."""
        async with self._session_factory() as session:
            await session.execute(
                update(Mission)
                .where(Mission.mission_address == normalize_address(address))
                .values(finalized=True)
            )

        self.logger.info("Mission marked finalized", mission=address)

    # Factory cursor

    async def get_cursor(self, floor: int = 0) -> int:
        async with self._session_factory() as session:
            cursor = await session.get(FactoryCursor, FACTORY_CURSOR_ID)
            if cursor is None:
                return floor
            return max(cursor.last_seq, floor)

    async def advance_cursor(self, seq: int) -> None:
        """Store ``max(existing, seq)``; never moves the cursor backwards."""
        table = FactoryCursor.__table__

        async with self._session_factory() as session:
            stmt = upsert(table).values(id=FACTORY_CURSOR_ID, last_seq=seq)
            stmt = stmt.on_conflict_do_update(
                index_elements=[table.c.id],
                set_={
                    "last_seq": case(
                        (table.c.last_seq < stmt.excluded.last_seq, stmt.excluded.last_seq),
                        else_=table.c.last_seq
                    )
                }
            )
            await session.execute(stmt)

    # Kicks

    async def enqueue_kick(
        self,
        address: str,
        tx_hash: Optional[str] = None,
        event_type: Optional[str] = None
    ) -> None:
        async with self._session_factory() as session:
            session.add(IndexerKick(
                mission_address=normalize_address(address),
                tx_hash=tx_hash,
                event_type=event_type
            ))

    async def drain_kicks(self, limit: int = 100) -> List[KickRequest]:
        """
        Delete and return up to ``limit`` pending kicks in one transaction,
        deduplicated by mission address.
        """
        async with self._session_factory() as session:
            result = await session.execute(
                select(IndexerKick)
                .order_by(IndexerKick.id)
                .limit(limit)
                .with_for_update(skip_locked=True)
            )
            rows = list(result.scalars().all())
            if not rows:
                return []

            await session.execute(
                delete(IndexerKick).where(IndexerKick.id.in_([row.id for row in rows]))
            )

            kicks = [
                KickRequest(row.mission_address, row.tx_hash, row.event_type)
                for row in rows
            ]

        deduped = dedupe_kicks(kicks)
        self.logger.debug("Drained kicks", rows=len(rows), missions=len(deduped))
        return deduped

    # Benign error rollup

    async def add_benign_counts(self, day: date, counts: Dict[str, int]) -> None:
        """Add to the per-day counters, creating rows as needed."""
        if not counts:
            return

        table = BenignErrorRollup.__table__
        async with self._session_factory() as session:
            for error_key, count in counts.items():
                stmt = upsert(table).values(day=day, error_key=error_key, count=count)
                stmt = stmt.on_conflict_do_update(
                    index_elements=[table.c.day, table.c.error_key],
                    set_={"count": table.c.count + stmt.excluded.count}
                )
                await session.execute(stmt)

    async def get_benign_counts(self, day: date) -> Dict[str, int]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(BenignErrorRollup).where(BenignErrorRollup.day == day)
            )
            return {row.error_key: row.count for row in result.scalars().all()}
