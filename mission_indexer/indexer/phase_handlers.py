"""
Phase handlers - decide, from wall-clock time versus persisted mission
timestamps, which lifecycle phases of a mission are open right now, and run
them.

Every handler is safe to re-enter on consecutive ticks.
"""

from enum import Enum
from typing import List, Optional

import structlog

from mission_indexer.contracts import MissionStatus
from mission_indexer.models import Mission
from mission_indexer.services.mission_repository import MissionRepository
from mission_indexer.services.transaction_service import (
    ActionResponse, ActionResult, TransactionActions
)
from .refresher import MissionRefresher, Notifier
from .runtime_state import ActionKind, MissionWatch, RuntimeState


logger = structlog.get_logger(__name__)


class Phase(Enum):
    ENROLLMENT_START = "EnrollmentStart"
    END_ENROLLMENT = "EndEnrollment"
    MISSION_START = "MissionStart"
    COOLDOWN_START = "CooldownStart"
    COOLDOWN_END = "CooldownEnd"
    MISSION_END = "MissionEnd"
    ACTION_RETRY = "ActionRetry"


# Notification reasons
REASON_END_ENROLLMENT_REFUND = "EndEnrollment.Failed.RefundTriggered"
REASON_COOLDOWN_STARTED = "CooldownStarted"
REASON_COOLDOWN_ENDED = "CooldownEnded"
REASON_MISSION_END_REFUND = "MissionEnd.Failed.RefundTriggered"
REASON_MISSION_END_FINALIZE = "MissionEnd.PartlySuccess.FinalizeTriggered"
REASON_MISSION_END_SUCCESS = "MissionEnd.Success"


def in_window(start: int, now: float, window: int) -> bool:
    """``start <= now <= start + window``; a zero start never opens."""
    return start > 0 and start <= now <= start + window


def open_phases(watch: MissionWatch, now: float, window: int, state: RuntimeState) -> List[Phase]:
    """Phases whose time window is open for this mission at ``now``."""
    phases = []

    if in_window(watch.enrollment_start, now, window):
        phases.append(Phase.ENROLLMENT_START)

    if in_window(watch.enrollment_end, now, window):
        phases.append(Phase.END_ENROLLMENT)

    if in_window(watch.mission_start, now, window):
        phases.append(Phase.MISSION_START)

    pause = watch.pause_timestamp
    if pause > 0 and pause <= now < watch.cooldown_end and watch.cooldown_started_for != pause:
        phases.append(Phase.COOLDOWN_START)

    if pause > 0 and in_window(watch.cooldown_end, now, window):
        phases.append(Phase.COOLDOWN_END)

    if in_window(watch.mission_end, now, window):
        phases.append(Phase.MISSION_END)

    if state.due_retries(watch.address, now):
        phases.append(Phase.ACTION_RETRY)

    return phases


class PhaseHandlers:
    """Runs the open phases of one mission in order."""

    def __init__(
        self,
        refresher: MissionRefresher,
        actions: TransactionActions,
        notifier: Notifier,
        repository: MissionRepository,
        state: RuntimeState
    ):
        self.logger = logger.bind(service="phase_handlers")
        self.refresher = refresher
        self.actions = actions
        self.notifier = notifier
        self.repository = repository
        self.state = state

    async def run(self, mission: Mission, phases: List[Phase], now: float) -> None:
        address = mission.mission_address
        for phase in phases:
            handler = getattr(self, f"_on_{phase.name.lower()}")
            await handler(address, now)

    # Reserved hooks

    async def _on_enrollment_start(self, address: str, now: float) -> None:
        pass

    async def _on_mission_start(self, address: str, now: float) -> None:
        pass

    # Load-bearing phases

    async def _on_end_enrollment(self, address: str, now: float) -> None:
        changes = await self.refresher.refresh(address)

        if changes.status == MissionStatus.FAILED:
            if await self._start_action(address, ActionKind.REFUND, now):
                self._notify_once(address, REASON_END_ENROLLMENT_REFUND)

    async def _on_cooldown_start(self, address: str, now: float) -> None:
        watch = self.state.watch(address)
        pause = watch.pause_timestamp
        if watch.cooldown_started_for == pause:
            return

        watch.cooldown_started_for = pause
        self.logger.info("⏸️ Cooldown started", mission=address, pause_timestamp=pause)
        self.notifier.mission_updated(address, REASON_COOLDOWN_STARTED)

    async def _on_cooldown_end(self, address: str, now: float) -> None:
        watch = self.state.watch(address)
        pause = watch.pause_timestamp

        changes = await self.refresher.refresh(address)

        if changes.status == MissionStatus.ACTIVE and watch.cooldown_ended_for != pause:
            watch.cooldown_ended_for = pause
            self.logger.info("▶️ Cooldown ended", mission=address, pause_timestamp=pause)
            self.notifier.mission_updated(address, REASON_COOLDOWN_ENDED)

    async def _on_mission_end(self, address: str, now: float) -> None:
        changes = await self.refresher.refresh(address)
        status = changes.status

        if status == MissionStatus.FAILED:
            if await self._start_action(address, ActionKind.REFUND, now):
                self._notify_once(address, REASON_MISSION_END_REFUND)

        elif status == MissionStatus.PARTLY_SUCCESS:
            if await self._start_action(address, ActionKind.FINALIZE, now):
                self._notify_once(address, REASON_MISSION_END_FINALIZE)

        elif status == MissionStatus.SUCCESS:
            self._notify_once(address, REASON_MISSION_END_SUCCESS)

    async def _on_action_retry(self, address: str, now: float) -> None:
        for kind in self.state.due_retries(address, now):
            self.logger.info("🔁 Retrying action", mission=address, action=kind.value)
            await self._run_action(address, kind, now)

    # Actions

    async def _start_action(self, address: str, kind: ActionKind, now: float) -> bool:
        """First attempt of an action; later attempts come from the retry schedule."""
        if not self.state.can_start_action(address, kind):
            return False
        await self._run_action(address, kind, now)
        return True

    async def _run_action(self, address: str, kind: ActionKind, now: float) -> Optional[ActionResponse]:
        if kind is ActionKind.FINALIZE:
            response = await self.actions.attempt_finalize(address)
        else:
            response = await self.actions.attempt_refund(address)

        if response.result is ActionResult.SUCCESS:
            self.state.action_succeeded(address, kind)
        elif response.result is ActionResult.NOT_ELIGIBLE:
            self.state.action_not_needed(address, kind)
        else:
            decision = self.state.action_failed(address, kind, now)
            if decision.abandoned and kind is ActionKind.REFUND:
                await self.repository.mark_finalized(address)

        await self.refresher.refresh(address)
        return response

    def _notify_once(self, address: str, reason: str) -> None:
        if self.state.mark_notified(address, reason):
            self.notifier.mission_updated(address, reason)
