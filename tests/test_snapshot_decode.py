"""
Tests for contract tuple decoding.
"""

import pytest

from mission_indexer.contracts import (
    MissionStatus, decode_mission_data, decode_factory_changes, normalize_address
)
from mission_indexer.core.exceptions import SnapshotDecodeError, ValidationError


MISSION = "0x" + "a1" * 20
WINNER = "0x" + "AB" * 20
CREATOR = "0x" + "CC" * 20


def raw_mission(players=None, **overrides):
    fields = [
        players if players is not None else [(WINNER, 100, 25, 400, False, False, 0)],
        1,          # missionType
        900,        # missionCreated
        1_000,      # enrollmentStart
        2_000,      # enrollmentEnd
        10**18,     # enrollmentAmount
        2,          # enrollmentMinPlayers
        10,         # enrollmentMaxPlayers
        60,         # roundPauseDuration
        120,        # lastRoundPauseDuration
        3_000,      # missionStart
        10_000,     # missionEnd
        5,          # missionRounds
        1,          # roundCount
        100,        # ethInitial
        100,        # ethStart
        75,         # ethCurrent
        3_500,      # pauseTimestamp
        CREATOR,    # creator
        False,      # allRefunded
        "Heist",    # name
    ]
    for index, value in overrides.items():
        fields[int(index)] = value
    return tuple(fields)


def test_decodes_full_tuple():
    snap = decode_mission_data(MISSION, raw_mission(), 3, block_number=77)

    assert snap.status is MissionStatus.ACTIVE
    assert snap.name == "Heist"
    assert snap.round_count == 1
    assert snap.last_round_pause_secs == 120
    assert snap.cro_current_wei == 75
    assert snap.creator_address == CREATOR.lower()
    assert snap.block_number == 77
    assert len(snap.players) == 1
    assert snap.players[0].address == WINNER.lower()
    assert snap.players[0].has_won


def test_wrong_width_rejected():
    with pytest.raises(SnapshotDecodeError) as exc_info:
        decode_mission_data(MISSION, raw_mission()[:20], 3)

    assert exc_info.value.details["mission"] == MISSION
    assert isinstance(exc_info.value, ValidationError)


def test_malformed_player_tuple_rejected():
    with pytest.raises(SnapshotDecodeError):
        decode_mission_data(MISSION, raw_mission(players=[(WINNER, 100)]), 3)


def test_unknown_status_rejected():
    with pytest.raises(SnapshotDecodeError):
        decode_mission_data(MISSION, raw_mission(), 9)


def test_non_numeric_field_rejected():
    with pytest.raises(SnapshotDecodeError):
        decode_mission_data(MISSION, raw_mission(**{"13": "many"}), 3)


def test_not_a_tuple_rejected():
    with pytest.raises(SnapshotDecodeError):
        decode_mission_data(MISSION, None, 3)


def test_factory_changes():
    changes = decode_factory_changes([
        (WINNER, 1_700_000_000, 5, 1),
        (MISSION, 1_700_000_100, 6, 3),
    ])

    assert [c.seq for c in changes] == [5, 6]
    assert changes[0].mission_address == WINNER.lower()


def test_normalize_address():
    assert normalize_address("ABCDEF") == "0xabcdef"
    assert normalize_address(" 0xAbC ") == "0xabc"
