"""
In-memory scheduler state, rebuilt from the missions table on restart.

Holds per-mission phase boundaries, finalize / refund retry bookkeeping and
the markers that keep cooldown notifications to one per pause timestamp.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional, Set, Tuple

import structlog

from mission_indexer.models import Mission


logger = structlog.get_logger(__name__)

FINALIZE_BACKOFF = (5, 10, 30)
REFUND_BACKOFF = (5, 10)


class ActionKind(Enum):
    FINALIZE = "finalize"
    REFUND = "refund"

    @property
    def backoff(self) -> Tuple[int, ...]:
        return FINALIZE_BACKOFF if self is ActionKind.FINALIZE else REFUND_BACKOFF


@dataclass
class ActionRetry:
    """Retry bookkeeping for one action on one mission."""
    failures: int = 0
    next_at: Optional[float] = None
    abandoned: bool = False
    done: bool = False

    @property
    def pending(self) -> bool:
        return self.next_at is not None and not self.abandoned and not self.done

    @property
    def untouched(self) -> bool:
        return self.failures == 0 and self.next_at is None and not self.abandoned and not self.done


@dataclass
class MissionWatch:
    """Everything the scheduler remembers about one mission between ticks."""
    address: str
    status: int = 0
    enrollment_start: int = 0
    enrollment_end: int = 0
    mission_start: int = 0
    mission_end: int = 0
    pause_timestamp: int = 0
    cooldown_end: int = 0
    finalize: ActionRetry = field(default_factory=ActionRetry)
    refund: ActionRetry = field(default_factory=ActionRetry)
    cooldown_started_for: Optional[int] = None
    cooldown_ended_for: Optional[int] = None
    notified: Set[str] = field(default_factory=set)

    def retry(self, kind: ActionKind) -> ActionRetry:
        return self.finalize if kind is ActionKind.FINALIZE else self.refund


def cooldown_end_for(mission: Mission) -> int:
    """
    End of the running cooldown: pause timestamp plus the last-round cooldown
    when the next round is the final one and such a cooldown is configured,
    the regular per-round cooldown otherwise.
    """
    if not mission.pause_timestamp:
        return 0

    next_round_is_final = (
        mission.mission_rounds_total > 0
        and mission.round_count + 1 == mission.mission_rounds_total
    )
    if next_round_is_final and mission.last_round_pause_secs > 0:
        return mission.pause_timestamp + mission.last_round_pause_secs
    return mission.pause_timestamp + mission.round_pause_secs


@dataclass
class FailureDecision:
    failures: int
    next_at: Optional[float]
    abandoned: bool


class RuntimeState:
    """Per-mission watch entries keyed by lower-case address."""

    def __init__(self):
        self.watches: Dict[str, MissionWatch] = {}

    def watch(self, address: str) -> MissionWatch:
        if address not in self.watches:
            self.watches[address] = MissionWatch(address=address)
        return self.watches[address]

    def update_from_mission(self, mission: Mission) -> MissionWatch:
        """Refresh phase boundaries from the persisted row."""
        watch = self.watch(mission.mission_address)
        watch.status = mission.status
        watch.enrollment_start = mission.enrollment_start
        watch.enrollment_end = mission.enrollment_end
        watch.mission_start = mission.mission_start
        watch.mission_end = mission.mission_end
        watch.pause_timestamp = mission.pause_timestamp
        watch.cooldown_end = cooldown_end_for(mission)
        return watch

    # Action bookkeeping

    def can_start_action(self, address: str, kind: ActionKind) -> bool:
        """True when the phase handler may make the first attempt."""
        return self.watch(address).retry(kind).untouched

    def action_failed(self, address: str, kind: ActionKind, now: float) -> FailureDecision:
        """
        Record a failed attempt and schedule the next one.

        Once the backoff list is used up the action is abandoned.
        """
        retry = self.watch(address).retry(kind)
        retry.failures += 1

        backoff = kind.backoff
        if retry.failures > len(backoff):
            retry.abandoned = True
            retry.next_at = None
            logger.warning(
                "🛑 Action abandoned after bounded retries",
                mission=address,
                action=kind.value,
                failures=retry.failures
            )
        else:
            retry.next_at = now + backoff[retry.failures - 1]
            logger.info(
                "Action retry scheduled",
                mission=address,
                action=kind.value,
                failures=retry.failures,
                next_in=backoff[retry.failures - 1]
            )

        return FailureDecision(retry.failures, retry.next_at, retry.abandoned)

    def action_succeeded(self, address: str, kind: ActionKind) -> None:
        retry = self.watch(address).retry(kind)
        retry.done = True
        retry.next_at = None

    def action_not_needed(self, address: str, kind: ActionKind) -> None:
        retry = self.watch(address).retry(kind)
        retry.next_at = None
        retry.done = True

    def due_retries(self, address: str, now: float) -> List[ActionKind]:
        watch = self.watches.get(address)
        if watch is None:
            return []
        return [
            kind for kind in ActionKind
            if watch.retry(kind).pending and now >= watch.retry(kind).next_at
        ]

    def pending_retry_addresses(self) -> List[str]:
        return [
            address for address, watch in self.watches.items()
            if watch.finalize.pending or watch.refund.pending
        ]

    # Notification markers

    def mark_notified(self, address: str, reason: str) -> bool:
        """Return True the first time ``reason`` is marked for this mission."""
        watch = self.watch(address)
        if reason in watch.notified:
            return False
        watch.notified.add(reason)
        return True

    def forget(self, address: str) -> None:
        self.watches.pop(address, None)

    def get_stats(self) -> Dict[str, int]:
        return {
            "watched": len(self.watches),
            "pending_retries": len(self.pending_retry_addresses()),
        }
