"""
End-to-end tests for the lifecycle scheduler against a SQLite store, a fake
chain reader, scripted transaction actions and a recorded push API.
"""

import asyncio

import pytest

from mission_indexer.contracts import MissionStatus
from mission_indexer.indexer.factory_sync import FactoryCursorSync
from mission_indexer.indexer.phase_handlers import (
    PhaseHandlers, REASON_COOLDOWN_ENDED, REASON_COOLDOWN_STARTED, REASON_END_ENROLLMENT_REFUND,
    REASON_MISSION_END_FINALIZE, REASON_MISSION_END_REFUND, REASON_MISSION_END_SUCCESS
)
from mission_indexer.indexer.refresher import MissionRefresher, Notifier
from mission_indexer.indexer.runtime_state import RuntimeState
from mission_indexer.indexer.scheduler import LifecycleScheduler, kick_reason
from mission_indexer.services.circuit_breaker import CycleCircuitBreaker
from mission_indexer.services.mission_repository import KickRequest, MissionRepository
from mission_indexer.services.snapshot_reconciler import SnapshotReconciler
from mission_indexer.services.transaction_service import ActionResult
from tests.factories import (
    FakeActions, FakeClock, FakeReader, RecordingPush, MISSION_A, MISSION_B, snapshot
)


class Harness:
    """A scheduler wired to fakes, sharing one clock."""

    def __init__(self, actions=None, reader=None, now=9_999):
        self.clock = FakeClock(now)
        self.reader = reader or FakeReader()
        self.push = RecordingPush()
        self.actions = actions or FakeActions()
        self.repository = MissionRepository()
        self.reconciler = SnapshotReconciler(clock=self.clock)
        self.notifier = Notifier(self.push.client)
        self.refresher = MissionRefresher(self.reader, self.reconciler, self.notifier)
        self.state = RuntimeState()
        self.breaker = CycleCircuitBreaker(threshold=1, terminate=lambda code: None, clock=self.clock)
        self.handlers = PhaseHandlers(
            self.refresher, self.actions, self.notifier, self.repository, self.state
        )
        self.scheduler = LifecycleScheduler(
            self.repository,
            self.refresher,
            self.handlers,
            self.notifier,
            self.state,
            self.breaker,
            clock=self.clock,
            tick_budget_seconds=0.5,
            status_sweep_every_ticks=0,
            kick_refresh_delay=0
        )

    async def seed(self, snap, address=MISSION_A):
        """Persist a mission directly, bypassing the reader."""
        await self.reconciler.apply_snapshot(address, snap)

    async def tick_at(self, now):
        self.clock.now = now
        await self.scheduler.tick()
        await self.scheduler.wait_idle()


@pytest.mark.asyncio
async def test_mission_end_failed_triggers_refund_and_notifies(database):
    h = Harness()
    await h.seed(snapshot(MissionStatus.ACTIVE))
    h.reader.snapshots[MISSION_A] = snapshot(MissionStatus.FAILED)

    await h.tick_at(10_000)

    assert h.actions.refund_calls == [MISSION_A]
    assert h.reader.reads == [MISSION_A, MISSION_A]
    assert REASON_MISSION_END_REFUND in h.push.reasons()
    assert {"mission": MISSION_A, "newStatus": int(MissionStatus.FAILED)} in h.push.bodies("/push/status")
    assert all(r["headers"]["x-push-key"] == "secret" for r in h.push.requests)


@pytest.mark.asyncio
async def test_mission_end_handled_once_per_mission(database):
    h = Harness()
    await h.seed(snapshot(MissionStatus.ACTIVE))
    h.reader.snapshots[MISSION_A] = snapshot(MissionStatus.FAILED)

    await h.tick_at(10_000)
    await h.tick_at(10_001)

    assert h.actions.refund_calls == [MISSION_A]
    assert h.push.reasons().count(REASON_MISSION_END_REFUND) == 1


@pytest.mark.asyncio
async def test_partly_success_finalize_retries_are_bounded(database):
    h = Harness(actions=FakeActions(finalize=ActionResult.FAILED))
    await h.seed(snapshot(MissionStatus.PARTLY_SUCCESS, cro_current_wei=40))
    h.reader.snapshots[MISSION_A] = snapshot(MissionStatus.PARTLY_SUCCESS, cro_current_wei=40)

    for now in (10_000, 10_005, 10_015, 10_045, 10_100, 10_200):
        await h.tick_at(now)

    assert h.actions.finalize_calls == [MISSION_A] * 4
    assert h.state.watch(MISSION_A).finalize.abandoned
    assert h.state.pending_retry_addresses() == []
    assert h.push.reasons().count(REASON_MISSION_END_FINALIZE) == 1


@pytest.mark.asyncio
async def test_refund_abandonment_marks_mission_finalized(database):
    h = Harness(actions=FakeActions(refund=ActionResult.FAILED))
    await h.seed(snapshot(MissionStatus.FAILED))
    h.reader.snapshots[MISSION_A] = snapshot(MissionStatus.FAILED)

    for now in (10_000, 10_005, 10_015):
        await h.tick_at(now)

    assert h.actions.refund_calls == [MISSION_A] * 3
    mission = await h.repository.get_mission(MISSION_A)
    assert mission.finalized is True


@pytest.mark.asyncio
async def test_success_at_mission_end_notifies_without_action(database):
    h = Harness()
    await h.seed(snapshot(MissionStatus.ACTIVE))
    h.reader.snapshots[MISSION_A] = snapshot(MissionStatus.SUCCESS)

    await h.tick_at(10_000)

    assert h.actions.finalize_calls == []
    assert h.actions.refund_calls == []
    assert REASON_MISSION_END_SUCCESS in h.push.reasons()


@pytest.mark.asyncio
async def test_settled_mission_watch_is_dropped(database):
    h = Harness()
    await h.seed(snapshot(MissionStatus.ACTIVE))
    h.reader.snapshots[MISSION_A] = snapshot(MissionStatus.SUCCESS)

    await h.tick_at(10_000)
    assert MISSION_A in h.state.watches

    await h.tick_at(10_010)

    assert MISSION_A not in h.state.watches
    assert h.push.reasons().count(REASON_MISSION_END_SUCCESS) == 1


@pytest.mark.asyncio
async def test_cooldown_start_notified_once_per_pause(database):
    h = Harness()
    await h.seed(snapshot(MissionStatus.PAUSED, pause_timestamp=9_990))

    await h.tick_at(10_000 - 5)
    await h.tick_at(10_000 - 4)

    assert h.push.reasons().count(REASON_COOLDOWN_STARTED) == 1
    assert h.reader.reads == []


@pytest.mark.asyncio
async def test_kick_refreshes_and_notifies_with_tx_hash(database):
    h = Harness()
    await h.seed(snapshot(MissionStatus.ACTIVE))
    h.reader.snapshots[MISSION_A] = snapshot(MissionStatus.ACTIVE)
    await h.repository.enqueue_kick(MISSION_A, "0xabc", "Enrolled")

    await h.tick_at(5_000)

    assert h.reader.reads == [MISSION_A] * 3
    assert {"mission": MISSION_A, "reason": "Kick.Enrolled", "txHash": "0xabc"} in h.push.bodies("/push/mission")
    assert h.scheduler.kicks_processed == 1


@pytest.mark.asyncio
async def test_queued_and_stored_kicks_are_merged(database):
    h = Harness()
    await h.seed(snapshot(MissionStatus.ACTIVE))
    h.reader.snapshots[MISSION_A] = snapshot(MissionStatus.ACTIVE)
    await h.repository.enqueue_kick(MISSION_A, "0x01", "Enrolled")
    h.scheduler.kick_queue.put_nowait(KickRequest(MISSION_A, "0x02", None))

    await h.tick_at(5_000)

    assert h.scheduler.kicks_processed == 1
    assert h.push.bodies("/push/mission") == [
        {"mission": MISSION_A, "reason": "Kick.Enrolled", "txHash": "0x01"}
    ]


@pytest.mark.asyncio
async def test_open_breaker_skips_tick(database):
    h = Harness()
    await h.seed(snapshot(MissionStatus.ACTIVE))
    h.reader.snapshots[MISSION_A] = snapshot(MissionStatus.FAILED)
    h.breaker.record_failure("test")

    await h.tick_at(10_000)

    assert h.scheduler.skipped_ticks == 1
    assert h.reader.reads == []


@pytest.mark.asyncio
async def test_handler_error_is_isolated(database):
    h = Harness()
    await h.seed(snapshot(MissionStatus.ACTIVE))
    await h.seed(snapshot(MissionStatus.ACTIVE), address=MISSION_B)
    h.reader.snapshots[MISSION_B] = snapshot(MissionStatus.ACTIVE)
    h.reader.failing.add(MISSION_A)

    await h.tick_at(10_000)

    assert h.scheduler.mission_errors == 1
    assert MISSION_B in h.reader.reads
    assert h.actions.refund_calls == []
    assert not h.breaker.is_open()


@pytest.mark.asyncio
async def test_rpc_outage_opens_breaker(database):
    h = Harness()
    h.breaker.threshold = 3
    await h.seed(snapshot(MissionStatus.ACTIVE))
    h.reader.failing.add(MISSION_A)

    for now in range(10_000, 10_005):
        await h.tick_at(now)

    assert h.scheduler.mission_errors == 3
    assert h.scheduler.skipped_ticks == 2
    assert h.breaker.trips == 1
    assert h.breaker.is_open()


@pytest.mark.asyncio
async def test_partial_rpc_failure_trips_at_configured_ratio(database):
    h = Harness()
    h.scheduler.rpc_failure_ratio = 0.5
    await h.seed(snapshot(MissionStatus.ACTIVE))
    await h.seed(snapshot(MissionStatus.ACTIVE), address=MISSION_B)
    h.reader.snapshots[MISSION_B] = snapshot(MissionStatus.ACTIVE)
    h.reader.failing.add(MISSION_A)

    await h.tick_at(10_000)

    assert h.breaker.is_open()


@pytest.mark.asyncio
async def test_permanent_handler_error_does_not_open_breaker(database):
    h = Harness()
    await h.seed(snapshot(MissionStatus.ACTIVE))
    h.reader.errors[MISSION_A] = ValueError("unexpected tuple width")

    await h.tick_at(10_000)

    assert h.scheduler.mission_errors == 1
    assert not h.breaker.is_open()


class GatedReader(FakeReader):
    """Factory reads wait until the gate opens."""

    def __init__(self):
        super().__init__()
        self.gate = asyncio.Event()

    async def read_factory_changes(self, after_seq, max_items):
        await self.gate.wait()
        return await super().read_factory_changes(after_seq, max_items)


@pytest.mark.asyncio
async def test_factory_sync_does_not_hold_up_phase_dispatch(database):
    reader = GatedReader()
    h = Harness(reader=reader)
    h.scheduler.factory_sync = FactoryCursorSync(reader, h.refresher, h.repository, pacer_budget_seconds=0)
    h.scheduler.factory_poll_every_ticks = 1
    await h.seed(snapshot(MissionStatus.ACTIVE))
    reader.snapshots[MISSION_A] = snapshot(MissionStatus.FAILED)

    h.clock.now = 10_000
    await h.scheduler.tick()
    await h.scheduler.tick()

    assert h.actions.refund_calls == [MISSION_A]
    assert h.scheduler.get_status()["factory_sync_running"]

    reader.gate.set()
    await h.scheduler.wait_idle()

    assert reader.change_requests == [0]
    assert not h.scheduler.get_status()["factory_sync_running"]


@pytest.mark.asyncio
async def test_end_enrollment_failed_triggers_refund(database):
    h = Harness()
    await h.seed(snapshot(MissionStatus.ENROLLING))
    h.reader.snapshots[MISSION_A] = snapshot(MissionStatus.FAILED)

    await h.tick_at(2_000)

    assert h.actions.refund_calls == [MISSION_A]
    assert h.reader.reads == [MISSION_A, MISSION_A]
    assert h.push.reasons() == [REASON_END_ENROLLMENT_REFUND]


@pytest.mark.asyncio
async def test_end_enrollment_arming_takes_no_action(database):
    h = Harness()
    await h.seed(snapshot(MissionStatus.ENROLLING))
    h.reader.snapshots[MISSION_A] = snapshot(MissionStatus.ARMING)

    await h.tick_at(2_010)

    assert h.reader.reads == [MISSION_A]
    assert h.actions.refund_calls == []
    assert h.push.reasons() == []


@pytest.mark.asyncio
async def test_cooldown_end_notified_once_when_active_again(database):
    h = Harness()
    await h.seed(snapshot(MissionStatus.PAUSED, pause_timestamp=5_000))
    h.reader.snapshots[MISSION_A] = snapshot(MissionStatus.ACTIVE, pause_timestamp=5_000)

    await h.tick_at(5_060)
    await h.tick_at(5_070)

    assert h.reader.reads == [MISSION_A, MISSION_A]
    assert h.push.reasons().count(REASON_COOLDOWN_ENDED) == 1


@pytest.mark.asyncio
async def test_cooldown_end_waits_for_active_status(database):
    h = Harness()
    await h.seed(snapshot(MissionStatus.PAUSED, pause_timestamp=5_000))
    h.reader.snapshots[MISSION_A] = snapshot(MissionStatus.PAUSED, pause_timestamp=5_000)

    await h.tick_at(5_060)

    assert h.reader.reads == [MISSION_A]
    assert REASON_COOLDOWN_ENDED not in h.push.reasons()


@pytest.mark.asyncio
async def test_last_round_cooldown_sets_the_end_window(database):
    h = Harness()
    paused = dict(pause_timestamp=5_000, round_count=4, mission_rounds_total=5, last_round_pause_secs=300)
    await h.seed(snapshot(MissionStatus.PAUSED, **paused))
    h.reader.snapshots[MISSION_A] = snapshot(MissionStatus.ACTIVE, **paused)

    await h.tick_at(5_060)
    assert h.reader.reads == []

    await h.tick_at(5_300)

    assert h.reader.reads == [MISSION_A]
    assert REASON_COOLDOWN_ENDED in h.push.reasons()


@pytest.mark.asyncio
async def test_status_sweep_refreshes_missions_between_windows(database):
    h = Harness()
    h.scheduler.status_sweep_every_ticks = 2
    await h.seed(snapshot(MissionStatus.ACTIVE))
    await h.seed(snapshot(MissionStatus.PARTLY_SUCCESS), address=MISSION_B)
    h.reader.snapshots[MISSION_A] = snapshot(MissionStatus.PAUSED, pause_timestamp=5_000)

    await h.tick_at(4_000)
    assert h.reader.reads == []

    await h.tick_at(4_001)

    assert h.reader.reads == [MISSION_A]
    assert (await h.repository.get_mission(MISSION_A)).status == MissionStatus.PAUSED
    assert h.scheduler.sweeps_started == 1


@pytest.mark.asyncio
async def test_start_and_stop(database):
    h = Harness()
    h.scheduler.tick_seconds = 0.01

    runner = asyncio.create_task(h.scheduler.start())
    await asyncio.sleep(0.05)
    await h.scheduler.stop()
    await asyncio.wait_for(runner, timeout=2)

    assert h.scheduler.tick_count >= 1
    assert not h.scheduler.running


def test_kick_reason():
    assert kick_reason("BankAttempt") == "Kick.BankAttempt"
    assert kick_reason(None) == "Kick.Unknown"
