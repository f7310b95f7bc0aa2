"""
Snapshot reconciler - merges one full on-chain mission snapshot into the
mission, players, rounds and status history tables.

The merge runs in a single transaction and writes only rows whose content
differs, so replaying the same snapshot is a no-op.
"""

import time
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Tuple

import structlog
from sqlalchemy import select

from mission_indexer.contracts import (
    MissionSnapshot, MissionStatus, PlayerSnapshot, REGRESSION_GUARD_THRESHOLD,
    normalize_address
)
from mission_indexer.core.database import get_async_session, upsert
from mission_indexer.models import Mission, Player, MissionRound, MissionStatusHistory


logger = structlog.get_logger(__name__)


@dataclass
class Changes:
    """What a snapshot merge changed."""
    has_meaningful_change: bool = False
    status_transition: Optional[Tuple[int, int]] = None
    new_round_number: Optional[int] = None
    new_round_winner: Optional[str] = None
    new_round_payout_wei: Optional[int] = None
    finalized_now: bool = False
    membership_changed: bool = False
    rows_written: int = 0
    discovered: bool = False
    status: Optional[int] = None


def derive_rounds(players: List[PlayerSnapshot], round_count: int) -> List[Tuple[int, PlayerSnapshot]]:
    """
    Number winners 1..N by ascending win timestamp, ties broken by address.

    Only rounds up to ``round_count`` are returned.
    """
    winners = sorted(
        (p for p in players if p.has_won),
        key=lambda p: (p.won_ts, p.address)
    )
    return [(number, player) for number, player in enumerate(winners[:round_count], start=1)]


def guard_status(
    persisted: Optional[int],
    candidate: MissionStatus,
    mission_end: int,
    now: int
) -> int:
    """Apply the anti-regression guard to a snapshot status."""
    if persisted is None:
        return int(candidate)

    if persisted > REGRESSION_GUARD_THRESHOLD and candidate < persisted:
        return persisted

    if mission_end and now > mission_end and candidate < REGRESSION_GUARD_THRESHOLD:
        return persisted

    return int(candidate)


def is_settled(status: int, pool_wei: int, all_refunded: bool) -> bool:
    if status <= REGRESSION_GUARD_THRESHOLD:
        return False
    if status == MissionStatus.SUCCESS and pool_wei == 0:
        return True
    return status == MissionStatus.FAILED and all_refunded


class SnapshotReconciler:
    """Applies mission snapshots to the store."""

    def __init__(
        self,
        session_factory=get_async_session,
        clock: Callable[[], float] = time.time
    ):
        self.logger = logger.bind(service="snapshot_reconciler")
        self._session_factory = session_factory
        self._clock = clock

    async def apply_snapshot(self, address: str, snapshot: MissionSnapshot) -> Changes:
        """
        Merge ``snapshot`` into the store.

        Any database error propagates and the transaction rolls back; no
        Changes object is returned in that case.
        """
        address = normalize_address(address)
        changes = Changes()
        now = int(self._clock())

        async with self._session_factory() as session:
            mission = await session.get(Mission, address)
            changes.discovered = mission is None

            old_status = mission.status if mission else None
            old_rounds = mission.round_count if mission else 0
            old_pool_text = str(mission.cro_current_wei) if mission else None
            old_pause = mission.pause_timestamp if mission else 0
            old_finalized = mission.finalized if mission else False

            mission_end = snapshot.mission_end or (mission.mission_end if mission else 0)
            new_status = guard_status(old_status, snapshot.status, mission_end, now)
            changes.status = new_status

            if old_status is not None and new_status != int(snapshot.status):
                self.logger.info(
                    "Stale status ignored",
                    mission=address,
                    persisted=old_status,
                    reported=int(snapshot.status)
                )

            # Players
            changes.rows_written += await self._mirror_players(session, address, snapshot, changes)

            # Rounds and pool
            pool = snapshot.cro_current_wei
            if snapshot.round_count != old_rounds:
                rounds = derive_rounds(snapshot.players, snapshot.round_count)
                changes.rows_written += await self._upsert_rounds(session, address, rounds)

                paid = sum(player.won_amount_wei for _, player in rounds)
                pool = max(snapshot.cro_start_wei - paid, 0)

                changes.new_round_number = snapshot.round_count
                if rounds and rounds[-1][0] == snapshot.round_count:
                    changes.new_round_winner = rounds[-1][1].address
                    changes.new_round_payout_wei = rounds[-1][1].won_amount_wei

            # Finalization
            finalized = old_finalized
            if old_finalized:
                pool = 0
            elif is_settled(new_status, pool, snapshot.all_refunded):
                finalized = True
                changes.finalized_now = True
                pool = 0

            # Mission row
            values = self._mission_values(snapshot, new_status, pool, finalized, old_pause)
            if mission is None:
                session.add(Mission(
                    mission_address=address,
                    last_seen_block=snapshot.block_number,
                    **values
                ))
                changes.rows_written += 1
            else:
                differing = {k: v for k, v in values.items() if getattr(mission, k) != v}
                if differing:
                    for key, value in differing.items():
                        setattr(mission, key, value)
                    # block number alone never triggers a write
                    if snapshot.block_number is not None:
                        mission.last_seen_block = snapshot.block_number
                    changes.rows_written += 1

            # Status history
            if old_status is not None and old_status != new_status:
                changes.status_transition = (old_status, new_status)
                changes.rows_written += await self._record_transition(
                    session, address, old_status, new_status, snapshot.block_number
                )

        if old_pool_text is not None and old_pool_text != str(pool):
            self.logger.debug("Pool changed", mission=address, old=old_pool_text, new=str(pool))
        if old_pause != values["pause_timestamp"]:
            self.logger.debug("Pause timestamp changed", mission=address, pause=values["pause_timestamp"])

        changes.has_meaningful_change = changes.rows_written > 0

        if changes.has_meaningful_change:
            self.logger.info(
                "Snapshot applied",
                mission=address,
                status=new_status,
                transition=changes.status_transition,
                new_round=changes.new_round_number,
                membership_changed=changes.membership_changed,
                finalized_now=changes.finalized_now,
                rows_written=changes.rows_written
            )

        return changes

    @staticmethod
    def _mission_values(
        snapshot: MissionSnapshot,
        status: int,
        pool: int,
        finalized: bool,
        old_pause: int
    ) -> Dict[str, object]:
        return {
            "name": snapshot.name,
            "mission_type": snapshot.mission_type,
            "status": status,
            "mission_created": snapshot.mission_created,
            "enrollment_start": snapshot.enrollment_start,
            "enrollment_end": snapshot.enrollment_end,
            "enrollment_amount_wei": snapshot.enrollment_amount_wei,
            "enrollment_min_players": snapshot.enrollment_min_players,
            "enrollment_max_players": snapshot.enrollment_max_players,
            "round_pause_secs": snapshot.round_pause_secs,
            "last_round_pause_secs": snapshot.last_round_pause_secs,
            "mission_start": snapshot.mission_start,
            "mission_end": snapshot.mission_end,
            "mission_rounds_total": snapshot.mission_rounds_total,
            "round_count": snapshot.round_count,
            "cro_initial_wei": snapshot.cro_initial_wei,
            "cro_start_wei": snapshot.cro_start_wei,
            "cro_current_wei": pool,
            "pause_timestamp": snapshot.pause_timestamp or old_pause,
            "creator_address": snapshot.creator_address,
            "all_refunded": snapshot.all_refunded,
            "finalized": finalized,
        }

    async def _mirror_players(self, session, address: str, snapshot: MissionSnapshot, changes: Changes) -> int:
        """Make the players table an exact copy of the snapshot's player list."""
        result = await session.execute(select(Player).where(Player.mission_address == address))
        existing = {p.player_address: p for p in result.scalars().all()}

        wanted: Dict[str, PlayerSnapshot] = {p.address: p for p in snapshot.players}
        written = 0

        for player_address, player in wanted.items():
            values = {
                "enrolled_ts": player.enrolled_ts,
                "won_amount_wei": player.won_amount_wei,
                "won_ts": player.won_ts,
                "refunded": player.refunded,
                "refund_failed": player.refund_failed,
                "refund_ts": player.refund_ts,
            }
            row = existing.get(player_address)
            if row is None:
                session.add(Player(mission_address=address, player_address=player_address, **values))
                changes.membership_changed = True
                written += 1
                continue

            differing = {k: v for k, v in values.items() if getattr(row, k) != v}
            if differing:
                for key, value in differing.items():
                    setattr(row, key, value)
                written += 1

        for player_address, row in existing.items():
            if player_address not in wanted:
                await session.delete(row)
                changes.membership_changed = True
                written += 1

        return written

    async def _upsert_rounds(self, session, address: str, rounds: List[Tuple[int, PlayerSnapshot]]) -> int:
        """Backfill every derived round; existing rows are corrected, never renumbered."""
        result = await session.execute(select(MissionRound).where(MissionRound.mission_address == address))
        existing = {r.round_number: r for r in result.scalars().all()}
        written = 0

        for number, player in rounds:
            values = {
                "winner_address": player.address,
                "payout_wei": player.won_amount_wei,
                "created_ts": player.won_ts,
            }
            row = existing.get(number)
            if row is None:
                session.add(MissionRound(mission_address=address, round_number=number, **values))
                written += 1
                continue

            differing = {k: v for k, v in values.items() if getattr(row, k) != v}
            if differing:
                for key, value in differing.items():
                    setattr(row, key, value)
                written += 1

        return written

    async def _record_transition(
        self, session, address: str, from_status: int, to_status: int, block_number: Optional[int]
    ) -> int:
        """One row per observed transition; the same read replayed at the same block is dropped."""
        table = MissionStatusHistory.__table__
        stmt = upsert(table).values(
            mission_address=address,
            from_status=from_status,
            to_status=to_status,
            block_number=block_number
        ).on_conflict_do_nothing(
            index_elements=[table.c.mission_address, table.c.from_status, table.c.to_status, table.c.block_number]
        )
        result = await session.execute(stmt)
        return max(result.rowcount or 0, 0)
