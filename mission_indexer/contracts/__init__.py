"""
Contract ABIs, status ordinals and snapshot decoding.
"""

from .abi import MISSION_ABI, FACTORY_ABI
from .status import MissionStatus, REGRESSION_GUARD_THRESHOLD
from .snapshot import (
    MissionSnapshot, PlayerSnapshot, FactoryChange,
    decode_mission_data, decode_factory_changes, normalize_address
)

__all__ = [
    "MISSION_ABI",
    "FACTORY_ABI",
    "MissionStatus",
    "REGRESSION_GUARD_THRESHOLD",
    "MissionSnapshot",
    "PlayerSnapshot",
    "FactoryChange",
    "decode_mission_data",
    "decode_factory_changes",
    "normalize_address",
]
