"""
Main entry point for the mission indexer service.

Wires the RPC access layer, reconciler, transaction actions and push client
into the lifecycle scheduler and runs it next to the kick listener and the
benign error rollup writer until SIGINT / SIGTERM.
"""

import asyncio
import signal
from typing import List, Optional

import structlog

from mission_indexer.core.config import settings, DatabaseConfig
from mission_indexer.core.database import init_database, close_database
from mission_indexer.core.logging import setup_logging
from mission_indexer.services.circuit_breaker import CycleCircuitBreaker
from mission_indexer.services.mission_reader import MissionReader
from mission_indexer.services.mission_repository import MissionRepository
from mission_indexer.services.push_client import get_push_client, close_push_client
from mission_indexer.services.rpc_client import get_rpc_access_layer, close_rpc_access_layer
from mission_indexer.services.snapshot_reconciler import SnapshotReconciler
from mission_indexer.services.transaction_service import TransactionActions
from .benign_rollup import BenignErrorRollupWriter
from .factory_sync import FactoryCursorSync
from .kick_listener import KickListener
from .phase_handlers import PhaseHandlers
from .refresher import MissionRefresher, Notifier
from .runtime_state import RuntimeState
from .scheduler import LifecycleScheduler


logger = structlog.get_logger(__name__)

HEALTH_CHECK_INTERVAL = 300


class IndexerMain:
    """Mission indexer service coordinator."""

    def __init__(self):
        self.scheduler: Optional[LifecycleScheduler] = None
        self.kick_listener: Optional[KickListener] = None
        self.benign_writer: Optional[BenignErrorRollupWriter] = None
        self.rpc = None
        self.running = False
        self.stop_event = asyncio.Event()
        self.tasks: List[asyncio.Task] = []
        self._stopped = False

    async def initialize(self):
        """Initialize database, chain access and scheduler components."""
        try:
            logger.info(
                "🚀 Initializing mission indexer",
                app=settings.app_name,
                version=settings.app_version,
                environment=settings.environment
            )

            await init_database()

            repository = MissionRepository()
            self.benign_writer = BenignErrorRollupWriter(repository)

            self.rpc = get_rpc_access_layer()
            self.rpc.set_benign_sink(self.benign_writer.record)

            reader = MissionReader(self.rpc, settings.factory_address)
            notifier = Notifier(get_push_client())
            refresher = MissionRefresher(reader, SnapshotReconciler(), notifier)
            actions = TransactionActions(
                self.rpc,
                reader,
                repository,
                private_key=settings.signer_private_key or None,
                receipt_poll_attempts=settings.receipt_poll_attempts,
                gas_safety_multiplier=settings.gas_safety_multiplier
            )
            state = RuntimeState()

            breaker = CycleCircuitBreaker(
                threshold=settings.circuit_breaker_threshold,
                suspend_seconds=settings.circuit_breaker_suspend_seconds,
                max_trips=settings.circuit_breaker_max_trips
            )

            factory_sync = FactoryCursorSync(
                reader,
                refresher,
                repository,
                batch_size=settings.factory_batch_size,
                max_pages=settings.factory_max_pages,
                cursor_floor=settings.factory_cursor_floor,
                pacer_budget_seconds=settings.pacer_budget_seconds
            )

            kick_queue: asyncio.Queue = asyncio.Queue()
            self.kick_listener = KickListener(
                repository,
                kick_queue,
                listen_dsn=DatabaseConfig.get_listen_dsn(),
                channel=settings.kick_channel,
                poll_interval=settings.kick_poll_interval,
                batch_size=settings.kick_batch_size
            )

            self.scheduler = LifecycleScheduler(
                repository,
                refresher,
                PhaseHandlers(refresher, actions, notifier, repository, state),
                notifier,
                state,
                breaker,
                factory_sync=factory_sync,
                kick_queue=kick_queue,
                tick_seconds=settings.scheduler_tick_seconds,
                tick_budget_seconds=settings.tick_budget_seconds,
                phase_window_seconds=settings.phase_window_seconds,
                factory_poll_every_ticks=settings.factory_poll_every_ticks,
                status_sweep_every_ticks=settings.status_sweep_every_ticks,
                rpc_failure_ratio=settings.circuit_breaker_rpc_failure_ratio,
                kick_batch_size=settings.kick_batch_size,
                kick_refresh_attempts=settings.kick_refresh_attempts,
                kick_refresh_delay=settings.kick_refresh_delay
            )

            logger.info("✅ Mission indexer initialized")

        except Exception as e:
            logger.error("❌ Failed to initialize mission indexer", error=str(e))
            raise

    async def start(self):
        """Start the scheduler and its workers; returns after shutdown."""
        logger.info("🚀 Starting mission indexer")
        self.running = True

        self.tasks = [
            asyncio.create_task(self.scheduler.start(), name="scheduler"),
            asyncio.create_task(self.kick_listener.run(self.stop_event), name="kick_listener"),
            asyncio.create_task(self.benign_writer.run(self.stop_event), name="benign_rollup"),
            asyncio.create_task(self._periodic_health_check(), name="health_check"),
        ]

        results = await asyncio.gather(*self.tasks, return_exceptions=True)
        for task, result in zip(self.tasks, results):
            if isinstance(result, Exception):
                logger.error("Worker exited with error", worker=task.get_name(), error=str(result))

    def request_stop(self):
        """Signal-safe shutdown trigger."""
        if self.stop_event.is_set():
            return
        logger.info("Shutdown requested")
        self.stop_event.set()
        if self.scheduler:
            asyncio.ensure_future(self.scheduler.stop())

    async def stop(self):
        """Stop workers, then close connections."""
        if self._stopped:
            return
        self._stopped = True

        logger.info("⏹️ Stopping mission indexer")
        self.running = False
        self.stop_event.set()

        if self.scheduler:
            await self.scheduler.stop()

        if self.tasks:
            await asyncio.gather(*self.tasks, return_exceptions=True)

        if self.benign_writer:
            try:
                await self.benign_writer.flush()
            except Exception as e:
                logger.warning("Final benign rollup flush failed", error=str(e))

        await close_rpc_access_layer()
        await close_push_client()
        await close_database()

        logger.info("✅ Mission indexer stopped")

    async def _periodic_health_check(self):
        """Log scheduler, breaker and RPC state every few minutes."""
        while not self.stop_event.is_set():
            try:
                await asyncio.wait_for(self.stop_event.wait(), timeout=HEALTH_CHECK_INTERVAL)
                break
            except asyncio.TimeoutError:
                pass

            logger.info(
                "📊 Mission indexer health check",
                scheduler=self.scheduler.get_status() if self.scheduler else None,
                rpc=self.rpc.get_stats() if self.rpc else None,
                kick_notifications=self.kick_listener.notifications_received if self.kick_listener else 0
            )


async def main():
    """Main function to run the indexer service."""
    setup_logging()

    indexer = IndexerMain()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, indexer.request_stop)

    try:
        await indexer.initialize()
        await indexer.start()
    except Exception as e:
        logger.error("Indexer service failed", error=str(e))
        raise
    finally:
        await indexer.stop()


def run():
    asyncio.run(main())


if __name__ == "__main__":
    run()
