"""
Mission status ordinals as reported by the contract.
"""

from enum import IntEnum


class MissionStatus(IntEnum):
    """On-chain mission status. Ordinal order matters for the regression guard."""

    PENDING = 0
    ENROLLING = 1
    ARMING = 2
    ACTIVE = 3
    PAUSED = 4
    PARTLY_SUCCESS = 5
    SUCCESS = 6
    FAILED = 7

    @classmethod
    def parse(cls, value: int) -> "MissionStatus":
        try:
            return cls(int(value))
        except ValueError:
            raise ValueError(f"Unknown mission status ordinal: {value}")

    @property
    def label(self) -> str:
        return {
            MissionStatus.PENDING: "Pending",
            MissionStatus.ENROLLING: "Enrolling",
            MissionStatus.ARMING: "Arming",
            MissionStatus.ACTIVE: "Active",
            MissionStatus.PAUSED: "Paused",
            MissionStatus.PARTLY_SUCCESS: "PartlySuccess",
            MissionStatus.SUCCESS: "Success",
            MissionStatus.FAILED: "Failed",
        }[self]


# Statuses above this one are settled and never regress.
REGRESSION_GUARD_THRESHOLD = MissionStatus.PARTLY_SUCCESS
