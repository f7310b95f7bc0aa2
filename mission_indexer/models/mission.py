"""
Mission models - mirror of the on-chain mission contracts.

A mission row is created on first discovery and afterwards only mutated by
the snapshot reconciler. Players, rounds and status history hang off the
mission address.
"""

from datetime import datetime
from typing import Optional

from sqlalchemy import (
    String, Integer, BigInteger, Boolean, Index, DateTime, UniqueConstraint, func
)
from sqlalchemy.orm import Mapped, mapped_column

from mission_indexer.contracts.status import MissionStatus
from .base import BaseModel, TimestampMixin, WeiAmount


class Mission(BaseModel, TimestampMixin):
    """One row per mission contract."""

    __tablename__ = "missions"

    mission_address: Mapped[str] = mapped_column(
        String(42),
        primary_key=True,
        comment="Mission contract address (lower-case hex)"
    )

    name: Mapped[str] = mapped_column(
        String(128),
        default="",
        comment="Mission display name"
    )

    mission_type: Mapped[int] = mapped_column(
        Integer,
        default=0,
        comment="On-chain mission type ordinal"
    )

    status: Mapped[int] = mapped_column(
        Integer,
        default=int(MissionStatus.PENDING),
        comment="Mission status ordinal (0=Pending .. 7=Failed)"
    )

    # Schedule (epoch seconds)
    mission_created: Mapped[int] = mapped_column(BigInteger, default=0)
    enrollment_start: Mapped[int] = mapped_column(BigInteger, default=0)
    enrollment_end: Mapped[int] = mapped_column(BigInteger, default=0)
    mission_start: Mapped[int] = mapped_column(BigInteger, default=0)
    mission_end: Mapped[int] = mapped_column(BigInteger, default=0)

    # Enrollment terms
    enrollment_amount_wei: Mapped[int] = mapped_column(
        WeiAmount,
        default=0,
        comment="Entry fee in wei"
    )
    enrollment_min_players: Mapped[int] = mapped_column(Integer, default=0)
    enrollment_max_players: Mapped[int] = mapped_column(Integer, default=0)

    # Rounds and cooldowns
    round_pause_secs: Mapped[int] = mapped_column(
        Integer,
        default=0,
        comment="Cooldown between rounds in seconds"
    )
    last_round_pause_secs: Mapped[int] = mapped_column(
        Integer,
        default=0,
        comment="Cooldown before the final round in seconds (0 = same as round_pause_secs)"
    )
    mission_rounds_total: Mapped[int] = mapped_column(Integer, default=0)
    round_count: Mapped[int] = mapped_column(
        Integer,
        default=0,
        comment="Rounds completed so far"
    )

    # Pool
    cro_initial_wei: Mapped[int] = mapped_column(WeiAmount, default=0)
    cro_start_wei: Mapped[int] = mapped_column(WeiAmount, default=0)
    cro_current_wei: Mapped[int] = mapped_column(
        WeiAmount,
        default=0,
        comment="Current prize pool in wei"
    )

    pause_timestamp: Mapped[int] = mapped_column(
        BigInteger,
        default=0,
        comment="Last non-zero cooldown start (epoch seconds)"
    )

    creator_address: Mapped[str] = mapped_column(String(42), default="")

    all_refunded: Mapped[bool] = mapped_column(Boolean, default=False)
    finalized: Mapped[bool] = mapped_column(
        Boolean,
        default=False,
        comment="Settlement observed; set at most once"
    )

    last_seen_block: Mapped[Optional[int]] = mapped_column(
        BigInteger,
        nullable=True,
        comment="Block number of the last snapshot merge"
    )

    __table_args__ = (
        Index("ix_missions_status", "status"),
        Index("ix_missions_mission_end", "mission_end"),
    )

    @property
    def status_enum(self) -> MissionStatus:
        return MissionStatus(self.status)

    def __repr__(self) -> str:
        return f"<Mission(address={self.mission_address}, status={self.status}, rounds={self.round_count})>"


class Player(BaseModel):
    """Enrollment of one player in one mission."""

    __tablename__ = "players"

    mission_address: Mapped[str] = mapped_column(String(42), primary_key=True)
    player_address: Mapped[str] = mapped_column(String(42), primary_key=True)

    enrolled_ts: Mapped[int] = mapped_column(BigInteger, default=0)
    won_amount_wei: Mapped[int] = mapped_column(WeiAmount, default=0)
    won_ts: Mapped[int] = mapped_column(
        BigInteger,
        default=0,
        comment="Win timestamp, 0 when the player has not won a round"
    )

    refunded: Mapped[bool] = mapped_column(Boolean, default=False)
    refund_failed: Mapped[bool] = mapped_column(Boolean, default=False)
    refund_ts: Mapped[int] = mapped_column(BigInteger, default=0)

    def __repr__(self) -> str:
        return f"<Player(mission={self.mission_address}, player={self.player_address})>"


class MissionRound(BaseModel):
    """Completed round, numbered 1..N by ascending win timestamp."""

    __tablename__ = "mission_rounds"

    mission_address: Mapped[str] = mapped_column(String(42), primary_key=True)
    round_number: Mapped[int] = mapped_column(Integer, primary_key=True)

    winner_address: Mapped[str] = mapped_column(String(42))
    payout_wei: Mapped[int] = mapped_column(WeiAmount, default=0)
    created_ts: Mapped[int] = mapped_column(
        BigInteger,
        default=0,
        comment="Win timestamp of the round (epoch seconds)"
    )

    block_number: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)
    tx_hash: Mapped[Optional[str]] = mapped_column(String(66), nullable=True)

    def __repr__(self) -> str:
        return f"<MissionRound(mission={self.mission_address}, round={self.round_number}, winner={self.winner_address})>"


class MissionStatusHistory(BaseModel):
    """Append-only log of observed status transitions."""

    __tablename__ = "mission_status_history"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    mission_address: Mapped[str] = mapped_column(String(42))
    from_status: Mapped[int] = mapped_column(Integer)
    to_status: Mapped[int] = mapped_column(Integer)
    block_number: Mapped[Optional[int]] = mapped_column(
        BigInteger, nullable=True, comment="Block the transition was read at"
    )
    changed_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now()
    )

    __table_args__ = (
        UniqueConstraint(
            "mission_address", "from_status", "to_status", "block_number",
            name="uq_mission_status_history_observation"
        ),
    )

    def __repr__(self) -> str:
        return f"<MissionStatusHistory(mission={self.mission_address}, {self.from_status}->{self.to_status})>"
