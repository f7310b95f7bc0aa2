"""
Typed views of the raw tuples returned by the mission and factory contracts.
"""

from dataclasses import dataclass, field
from typing import Any, List, Optional, Sequence

from mission_indexer.core.exceptions import SnapshotDecodeError
from .status import MissionStatus


MISSION_TUPLE_WIDTH = 21
PLAYER_TUPLE_WIDTH = 7
CHANGE_TUPLE_WIDTH = 4


def normalize_address(address: str) -> str:
    """Lower-case hex address, the key format used in every table."""
    address = (address or "").strip().lower()
    if not address.startswith("0x"):
        address = "0x" + address
    return address


@dataclass(frozen=True)
class PlayerSnapshot:
    """One entry of the mission's player list."""

    address: str
    enrolled_ts: int = 0
    won_amount_wei: int = 0
    won_ts: int = 0
    refunded: bool = False
    refund_failed: bool = False
    refund_ts: int = 0

    @property
    def has_won(self) -> bool:
        return self.won_ts > 0


@dataclass(frozen=True)
class MissionSnapshot:
    """A single full read of on-chain mission state."""

    status: MissionStatus
    players: List[PlayerSnapshot] = field(default_factory=list)
    name: str = ""
    mission_type: int = 0
    mission_created: int = 0
    enrollment_start: int = 0
    enrollment_end: int = 0
    enrollment_amount_wei: int = 0
    enrollment_min_players: int = 0
    enrollment_max_players: int = 0
    round_pause_secs: int = 0
    last_round_pause_secs: int = 0
    mission_start: int = 0
    mission_end: int = 0
    mission_rounds_total: int = 0
    round_count: int = 0
    cro_initial_wei: int = 0
    cro_start_wei: int = 0
    cro_current_wei: int = 0
    pause_timestamp: int = 0
    creator_address: str = ""
    all_refunded: bool = False
    block_number: Optional[int] = None


@dataclass(frozen=True)
class FactoryChange:
    """Change signal from the factory's change log."""

    mission_address: str
    timestamp: int
    seq: int
    status: int


def _expect_width(mission: str, raw: Any, width: int, what: str) -> Sequence[Any]:
    if not isinstance(raw, (list, tuple)):
        raise SnapshotDecodeError(mission, f"{what} is {type(raw).__name__}, expected a tuple")
    if len(raw) != width:
        raise SnapshotDecodeError(mission, f"{what} has {len(raw)} fields, expected {width}")
    return raw


def decode_player(mission: str, raw: Any) -> PlayerSnapshot:
    fields = _expect_width(mission, raw, PLAYER_TUPLE_WIDTH, "player tuple")
    return PlayerSnapshot(
        address=normalize_address(fields[0]),
        enrolled_ts=int(fields[1]),
        won_amount_wei=int(fields[2]),
        won_ts=int(fields[3]),
        refunded=bool(fields[4]),
        refund_failed=bool(fields[5]),
        refund_ts=int(fields[6]),
    )


def decode_mission_data(
    mission: str,
    raw: Any,
    status: int,
    block_number: Optional[int] = None
) -> MissionSnapshot:
    """
    Build a MissionSnapshot from ``getMissionData()`` plus ``getRealtimeStatus()``.

    Raises:
        SnapshotDecodeError: when the tuple shape or status ordinal is wrong
    """
    fields = _expect_width(mission, raw, MISSION_TUPLE_WIDTH, "mission tuple")

    try:
        parsed_status = MissionStatus.parse(status)
    except ValueError as e:
        raise SnapshotDecodeError(mission, str(e)) from e

    players_raw = fields[0]
    if not isinstance(players_raw, (list, tuple)):
        raise SnapshotDecodeError(mission, "player list is not a sequence")

    try:
        return MissionSnapshot(
            status=parsed_status,
            players=[decode_player(mission, p) for p in players_raw],
            mission_type=int(fields[1]),
            mission_created=int(fields[2]),
            enrollment_start=int(fields[3]),
            enrollment_end=int(fields[4]),
            enrollment_amount_wei=int(fields[5]),
            enrollment_min_players=int(fields[6]),
            enrollment_max_players=int(fields[7]),
            round_pause_secs=int(fields[8]),
            last_round_pause_secs=int(fields[9]),
            mission_start=int(fields[10]),
            mission_end=int(fields[11]),
            mission_rounds_total=int(fields[12]),
            round_count=int(fields[13]),
            cro_initial_wei=int(fields[14]),
            cro_start_wei=int(fields[15]),
            cro_current_wei=int(fields[16]),
            pause_timestamp=int(fields[17]),
            creator_address=normalize_address(fields[18]),
            all_refunded=bool(fields[19]),
            name=str(fields[20]),
            block_number=block_number,
        )
    except (TypeError, ValueError) as e:
        raise SnapshotDecodeError(mission, f"bad field value: {e}") from e


def decode_factory_changes(raw: Any) -> List[FactoryChange]:
    """Decode ``getMissionChangesAfter`` output."""
    if not isinstance(raw, (list, tuple)):
        raise SnapshotDecodeError("factory", "change list is not a sequence")

    changes = []
    for item in raw:
        fields = _expect_width("factory", item, CHANGE_TUPLE_WIDTH, "change tuple")
        changes.append(FactoryChange(
            mission_address=normalize_address(fields[0]),
            timestamp=int(fields[1]),
            seq=int(fields[2]),
            status=int(fields[3]),
        ))
    return changes
