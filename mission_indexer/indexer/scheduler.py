"""
Lifecycle scheduler - one cooperative tick per second.

Each tick drains kicks, starts the factory poll every N ticks, loads the
missions that still need attention and dispatches their open phases as
isolated per-mission tasks. A slower status sweep re-reads missions between
their phase windows.
"""

import asyncio
import time
from typing import Callable, Dict, List, Optional, Set

import structlog

from mission_indexer.contracts import MissionStatus, normalize_address
from mission_indexer.models import Mission
from mission_indexer.services.circuit_breaker import CycleCircuitBreaker
from mission_indexer.services.mission_repository import (
    KickRequest, MissionRepository, dedupe_kicks
)
from mission_indexer.services.rpc_errors import classify_error
from .factory_sync import FactoryCursorSync
from .phase_handlers import PhaseHandlers, open_phases
from .refresher import MissionRefresher, Notifier
from .runtime_state import RuntimeState


logger = structlog.get_logger(__name__)


def kick_reason(event_type: Optional[str]) -> str:
    return f"Kick.{event_type or 'Unknown'}"


class LifecycleScheduler:
    """Poll-and-dispatch loop over non-terminal missions."""

    def __init__(
        self,
        repository: MissionRepository,
        refresher: MissionRefresher,
        handlers: PhaseHandlers,
        notifier: Notifier,
        state: RuntimeState,
        breaker: CycleCircuitBreaker,
        factory_sync: Optional[FactoryCursorSync] = None,
        kick_queue: Optional["asyncio.Queue[KickRequest]"] = None,
        clock: Callable[[], float] = time.time,
        tick_seconds: float = 1.0,
        tick_budget_seconds: float = 0.9,
        phase_window_seconds: int = 30,
        factory_poll_every_ticks: int = 60,
        status_sweep_every_ticks: int = 60,
        rpc_failure_ratio: float = 1.0,
        kick_batch_size: int = 100,
        kick_refresh_attempts: int = 3,
        kick_refresh_delay: float = 1.5
    ):
        self.logger = logger.bind(service="lifecycle_scheduler")
        self.repository = repository
        self.refresher = refresher
        self.handlers = handlers
        self.notifier = notifier
        self.state = state
        self.breaker = breaker
        self.factory_sync = factory_sync
        self.kick_queue = kick_queue if kick_queue is not None else asyncio.Queue()
        self._clock = clock

        self.tick_seconds = tick_seconds
        self.tick_budget_seconds = tick_budget_seconds
        self.phase_window_seconds = phase_window_seconds
        self.factory_poll_every_ticks = max(1, factory_poll_every_ticks)
        self.status_sweep_every_ticks = max(0, status_sweep_every_ticks)
        self.rpc_failure_ratio = rpc_failure_ratio
        self.kick_batch_size = kick_batch_size
        self.kick_refresh_attempts = max(1, kick_refresh_attempts)
        self.kick_refresh_delay = kick_refresh_delay

        self.running = False
        self._stop_event = asyncio.Event()
        self._in_flight: Dict[str, asyncio.Task] = {}
        self._kick_tasks: Set[asyncio.Task] = set()
        self._factory_task: Optional[asyncio.Task] = None
        self._sweep_task: Optional[asyncio.Task] = None

        # Outcomes reported by finished tasks since the last breaker decision;
        # True marks a transient RPC failure
        self._outcomes: List[bool] = []
        self._background_failed = False

        # Statistics
        self.tick_count = 0
        self.skipped_ticks = 0
        self.missions_dispatched = 0
        self.mission_errors = 0
        self.kicks_processed = 0
        self.sweeps_started = 0

    async def start(self) -> None:
        """Run ticks until stop() is called."""
        self.logger.info("🚀 Lifecycle scheduler started", tick_seconds=self.tick_seconds)
        self.running = True
        loop = asyncio.get_running_loop()

        while not self._stop_event.is_set():
            started = loop.time()
            try:
                await self.tick()
            except Exception as e:
                self.logger.error("❌ Scheduler tick failed", error=str(e), tick=self.tick_count)

            remaining = self.tick_seconds - (loop.time() - started)
            if remaining > 0:
                try:
                    await asyncio.wait_for(self._stop_event.wait(), timeout=remaining)
                except asyncio.TimeoutError:
                    pass

        await self.wait_idle()
        self.running = False
        self.logger.info("Lifecycle scheduler stopped", ticks=self.tick_count)

    async def stop(self) -> None:
        self.logger.info("⏹️ Stopping lifecycle scheduler")
        self._stop_event.set()

    async def tick(self) -> None:
        """One scheduler cycle."""
        if self.breaker.is_open():
            self.skipped_ticks += 1
            self._outcomes.clear()
            self._background_failed = False
            return

        self.tick_count += 1
        now = self._clock()
        cycle_ok = True
        started: List[asyncio.Task] = []

        # 1. Kicks
        try:
            kicks = await self._collect_kicks()
            for kick in kicks:
                started.append(self._dispatch_kick(kick))
        except Exception as e:
            cycle_ok = False
            self.logger.error("Kick drain failed", error=str(e))

        # 2. Factory cursor, in the background
        if self.factory_sync and (self.tick_count - 1) % self.factory_poll_every_ticks == 0:
            if self._busy(self._factory_task):
                self.logger.debug("Factory sync still running, poll skipped")
            else:
                self._factory_task = asyncio.create_task(self._run_factory_sync())

        # 3. Missions needing attention
        try:
            missions = await self.repository.load_active_missions(self.state.pending_retry_addresses())
        except Exception as e:
            self.breaker.record_failure("mission load failed")
            self.logger.error("Mission load failed", error=str(e))
            return

        loaded = {mission.mission_address for mission in missions}
        for address in [a for a in self.state.watches if a not in loaded and a not in self._in_flight]:
            self.state.forget(address)

        # 4. Dispatch open phases
        idle: List[Mission] = []
        for mission in missions:
            watch = self.state.update_from_mission(mission)
            phases = open_phases(watch, now, self.phase_window_seconds, self.state)
            if not phases:
                idle.append(mission)
                continue

            address = mission.mission_address
            if self._busy(self._in_flight.get(address)):
                self.logger.debug("Mission still in flight, skipping", mission=address)
                continue

            task = asyncio.create_task(self._run_isolated(address, self.handlers.run(mission, phases, now)))
            self._in_flight[address] = task
            task.add_done_callback(lambda t, a=address: self._forget_in_flight(a, t))
            started.append(task)
            self.missions_dispatched += 1

        # 5. Status sweep between phase windows
        if self.status_sweep_every_ticks and self.tick_count % self.status_sweep_every_ticks == 0:
            self._start_sweep(idle)

        if started:
            await asyncio.wait(started, timeout=self.tick_budget_seconds)

        self._report_cycle(cycle_ok)

    def _report_cycle(self, cycle_ok: bool) -> None:
        """
        Feed the breaker.

        A tick fails when store work failed, when a background job failed, or
        when enough finished tasks failed on transient RPC errors. A tick with
        no finished tasks while chain work is still running decides nothing.
        """
        outcomes, self._outcomes = self._outcomes, []
        background_failed, self._background_failed = self._background_failed, False

        if not cycle_ok or background_failed:
            self.breaker.record_failure("tick cycle failed")
            return

        if outcomes:
            failures = sum(1 for failed in outcomes if failed)
            if failures and failures >= self.rpc_failure_ratio * len(outcomes):
                self.logger.warning("RPC failures across the tick", failed=failures, finished=len(outcomes))
                self.breaker.record_failure("rpc unavailable")
            else:
                self.breaker.record_success()
            return

        if not self._chain_work_pending():
            self.breaker.record_success()

    def _chain_work_pending(self) -> bool:
        return (
            any(not task.done() for task in self._in_flight.values())
            or bool(self._kick_tasks)
            or self._busy(self._factory_task)
            or self._busy(self._sweep_task)
        )

    @staticmethod
    def _busy(task: Optional[asyncio.Task]) -> bool:
        return task is not None and not task.done()

    def _forget_in_flight(self, address: str, task: asyncio.Task) -> None:
        if self._in_flight.get(address) is task:
            del self._in_flight[address]

    async def _run_isolated(self, address: str, coro) -> None:
        try:
            await coro
        except Exception as e:
            self.mission_errors += 1
            self._outcomes.append(classify_error(e).is_retryable)
            self.logger.error(
                "Mission handler failed",
                mission=address,
                error=str(e),
                error_type=type(e).__name__
            )
        else:
            self._outcomes.append(False)

    async def _run_factory_sync(self) -> None:
        try:
            await self.factory_sync.refresh_changes()
        except Exception as e:
            self._background_failed = True
            self.logger.error("Factory sync failed", error=str(e))

    # Status sweep

    def _start_sweep(self, missions: List[Mission]) -> None:
        if self._busy(self._sweep_task):
            self.logger.debug("Status sweep still running, skipped")
            return

        addresses = [m.mission_address for m in missions if m.status < MissionStatus.PARTLY_SUCCESS]
        if addresses:
            self.sweeps_started += 1
            self._sweep_task = asyncio.create_task(self._sweep_statuses(addresses))

    async def _sweep_statuses(self, addresses: List[str]) -> None:
        """Refresh missions one at a time so a missed kick still converges."""
        for address in addresses:
            if self._stop_event.is_set():
                break
            if self._busy(self._in_flight.get(address)):
                continue
            await self._run_isolated(address, self.refresher.refresh(address))

        self.logger.debug("Status sweep finished", missions=len(addresses))

    # Kicks

    async def _collect_kicks(self) -> List[KickRequest]:
        """Queue contents plus an opportunistic table drain, deduplicated."""
        drained = await self.repository.drain_kicks(self.kick_batch_size)

        kicks: List[KickRequest] = []
        while not self.kick_queue.empty():
            kicks.append(self.kick_queue.get_nowait())
        return dedupe_kicks(kicks + drained)

    def _dispatch_kick(self, kick: KickRequest) -> asyncio.Task:
        task = asyncio.create_task(self._run_isolated(kick.mission_address, self._process_kick(kick)))
        self._kick_tasks.add(task)
        task.add_done_callback(self._kick_tasks.discard)
        return task

    async def _process_kick(self, kick: KickRequest) -> None:
        """Refresh a few times to let the originating tx propagate, then notify once."""
        address = normalize_address(kick.mission_address)

        for attempt in range(self.kick_refresh_attempts):
            if attempt:
                await asyncio.sleep(self.kick_refresh_delay)
            await self.refresher.refresh(address)

        self.kicks_processed += 1
        self.notifier.mission_updated(address, kick_reason(kick.event_type), kick.tx_hash)

    # Introspection

    async def wait_idle(self) -> None:
        """Wait for every mission, kick and background task, then pending notifications."""
        while True:
            tasks = list(self._in_flight.values()) + list(self._kick_tasks)
            tasks += [t for t in (self._factory_task, self._sweep_task) if self._busy(t)]
            if not tasks:
                break
            await asyncio.gather(*tasks, return_exceptions=True)
            for address in [a for a, t in self._in_flight.items() if t.done()]:
                del self._in_flight[address]
        await self.notifier.flush()

    def get_status(self) -> Dict[str, object]:
        return {
            "running": self.running,
            "tick_count": self.tick_count,
            "skipped_ticks": self.skipped_ticks,
            "missions_dispatched": self.missions_dispatched,
            "mission_errors": self.mission_errors,
            "kicks_processed": self.kicks_processed,
            "sweeps_started": self.sweeps_started,
            "in_flight": len(self._in_flight),
            "factory_sync_running": self._busy(self._factory_task),
            "breaker": self.breaker.get_stats(),
            "runtime": self.state.get_stats(),
        }
