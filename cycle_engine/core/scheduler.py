"""Trading cycle scheduler and portfolio sync job.

The scheduler fires a trading cycle every ``interval_minutes``. A cycle
walks all auto-trading users one after another with a fixed pause between
them; one user's failure never stops the others. Ticks that arrive while a
cycle is still running are dropped.
"""
import asyncio
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, Optional, Set

import structlog

from cycle_engine.core.config import SchedulerConfig, scheduler_config
from cycle_engine.core.engine import TradingEngine
from cycle_engine.core.exceptions import AccountNotConnected
from cycle_engine.core.execution import OrderExecutor
from cycle_engine.core.models import CycleReport, UserCycleOutcome, UserCycleResult
from cycle_engine.core.monitoring import ActivityLogger
from cycle_engine.core.reconciliation import PortfolioReconciler

logger = structlog.get_logger(__name__)

Sleeper = Callable[[float], Awaitable[None]]


class TradingCycleScheduler:
    """
    Owns the cycle timer, the running flag and the cycle lock.

    Usage:
        scheduler = TradingCycleScheduler(database, engine)
        await scheduler.start()
        ...
        await scheduler.stop()
    """

    def __init__(
        self,
        database,
        engine: TradingEngine,
        activity: Optional[ActivityLogger] = None,
        config: Optional[SchedulerConfig] = None,
        sleep: Optional[Sleeper] = None,
    ):
        self.database = database
        self.engine = engine
        self.activity = activity or ActivityLogger(database)
        self.config = config or scheduler_config
        self._sleep = sleep or asyncio.sleep

        self.interval_minutes = self.config.cycle_interval_minutes

        # Control
        self._running = False
        self._timer_task: Optional[asyncio.Task] = None
        self._cycle_tasks: Set[asyncio.Task] = set()
        self._cycle_lock = asyncio.Lock()

        # Status
        self.last_cycle_at: Optional[datetime] = None
        self.last_report: Optional[CycleReport] = None
        self.cycles_completed = 0
        self.cycles_skipped = 0
        self.cycles_failed = 0

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def cycle_in_progress(self) -> bool:
        return self._cycle_lock.locked()

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def start(self):
        """Run a cycle now and every ``interval_minutes`` after. Idempotent."""
        if self._running:
            logger.debug("scheduler.already_running")
            return
        self._running = True
        self._arm(run_immediately=True)
        logger.info("scheduler.started", interval_minutes=self.interval_minutes)

    async def stop(self):
        """Cancel the timer. A cycle already running finishes on its own."""
        if not self._running:
            return
        self._running = False
        await self._disarm()
        logger.info("scheduler.stopped", cycles_completed=self.cycles_completed)

    async def set_interval(self, minutes: int):
        """
        Change the cycle interval.

        When running, the timer is re-armed and the next cycle fires one
        full interval from now.

        Raises:
            ValueError: minutes is below 1
        """
        if minutes < 1:
            raise ValueError("Interval must be at least 1 minute")
        previous = self.interval_minutes
        self.interval_minutes = int(minutes)
        if self._running:
            await self._disarm()
            self._arm(run_immediately=False)
        logger.info("scheduler.interval_changed", previous=previous, interval_minutes=minutes)

    def get_status(self) -> Dict[str, Any]:
        return {
            "is_running": self._running,
            "interval_minutes": self.interval_minutes,
            "cycle_in_progress": self.cycle_in_progress,
            "last_cycle_at": self.last_cycle_at.isoformat() if self.last_cycle_at else None,
            "cycles_completed": self.cycles_completed,
            "cycles_skipped": self.cycles_skipped,
            "cycles_failed": self.cycles_failed,
        }

    async def execute_now(self) -> CycleReport:
        """Force a cycle outside the timer (skipped if one is running)."""
        logger.info("scheduler.manual_cycle_requested")
        return await self._tick()

    # =========================================================================
    # Timer
    # =========================================================================

    def _arm(self, run_immediately: bool):
        self._timer_task = asyncio.create_task(self._timer_loop(run_immediately))

    async def _disarm(self):
        if self._timer_task:
            self._timer_task.cancel()
            try:
                await self._timer_task
            except asyncio.CancelledError:
                pass
            self._timer_task = None

    async def _timer_loop(self, run_immediately: bool):
        if not run_immediately:
            await asyncio.sleep(self.interval_minutes * 60)
        while self._running:
            # Each tick is its own task; a tick that finds the lock held is dropped
            task = asyncio.create_task(self._tick())
            self._cycle_tasks.add(task)
            task.add_done_callback(self._cycle_tasks.discard)
            await asyncio.sleep(self.interval_minutes * 60)

    async def _tick(self) -> CycleReport:
        if self._cycle_lock.locked():
            self.cycles_skipped += 1
            logger.warning("cycle_skipped_overlap", cycles_skipped=self.cycles_skipped)
            return CycleReport(skipped_overlap=True, finished_at=datetime.utcnow())
        async with self._cycle_lock:
            try:
                return await self._run_cycle()
            except Exception as e:
                self.cycles_failed += 1
                logger.error(
                    "scheduler.cycle_failed",
                    error=str(e),
                    error_type=type(e).__name__,
                    exc_info=True,
                )
                return CycleReport(failed=True, error=str(e), finished_at=datetime.utcnow())

    # =========================================================================
    # Cycle
    # =========================================================================

    async def _run_cycle(self) -> CycleReport:
        report = CycleReport()
        users = await self.database.get_auto_trading_users()
        logger.info("scheduler.cycle_started", users=len(users))

        for index, user_id in enumerate(users):
            if index > 0 and self.config.user_delay_seconds > 0:
                await self._sleep(self.config.user_delay_seconds)
            report.results.append(await self._process_user(user_id))

        report.finished_at = datetime.utcnow()
        self.last_cycle_at = report.finished_at
        self.last_report = report
        self.cycles_completed += 1
        logger.info(
            "scheduler.cycle_completed",
            users=report.users_processed,
            failed=report.failed_users,
            duration_seconds=(report.finished_at - report.started_at).total_seconds(),
        )
        return report

    async def _process_user(self, user_id: str) -> UserCycleResult:
        try:
            return await self.engine.process_user_trading(user_id)
        except Exception as e:
            logger.error(
                "scheduler.user_failed",
                user_id=user_id,
                error=str(e),
                error_type=type(e).__name__,
                exc_info=True,
            )
            await self.activity.log_error_safely(
                user_id, f"Trading engine error: {e}", e
            )
            return UserCycleResult(
                user_id=user_id,
                outcome=UserCycleOutcome.FAILED,
                reason=type(e).__name__,
                errors=[str(e)],
            )


class PortfolioSyncJob:
    """
    Periodically syncs orders and positions from the broker.

    For every auto-trading user: refresh non-terminal orders (applying
    fills to positions), then reconcile positions. Users are isolated from
    each other the same way as in the trading cycle.
    """

    def __init__(
        self,
        database,
        executor: OrderExecutor,
        reconciler: PortfolioReconciler,
        config: Optional[SchedulerConfig] = None,
    ):
        self.database = database
        self.executor = executor
        self.reconciler = reconciler
        self.config = config or scheduler_config
        self.interval_seconds = self.config.portfolio_sync_interval_seconds

        self._running = False
        self._task: Optional[asyncio.Task] = None
        self._lock = asyncio.Lock()
        self.last_sync_at: Optional[datetime] = None

    @property
    def is_running(self) -> bool:
        return self._running

    async def start(self):
        if self._running:
            return
        self._running = True
        self._task = asyncio.create_task(self._loop())
        logger.info("portfolio_sync.started", interval_seconds=self.interval_seconds)

    async def stop(self):
        if not self._running:
            return
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("portfolio_sync.stopped")

    async def _loop(self):
        while self._running:
            try:
                await self.run_once()
            except Exception as e:
                logger.error(
                    "portfolio_sync.cycle_failed",
                    error=str(e),
                    error_type=type(e).__name__,
                    exc_info=True,
                )
            await asyncio.sleep(self.interval_seconds)

    async def run_once(self) -> Dict[str, str]:
        """Sync every auto-trading user; returns user -> outcome."""
        if self._lock.locked():
            logger.warning("portfolio_sync_skipped_overlap")
            return {}
        async with self._lock:
            outcomes: Dict[str, str] = {}
            for user_id in await self.database.get_auto_trading_users():
                outcomes[user_id] = await self._sync_user(user_id)
            self.last_sync_at = datetime.utcnow()
            return outcomes

    async def _sync_user(self, user_id: str) -> str:
        factory = self.executor.gateway_factory
        try:
            async with factory.session(user_id) as gateway:
                await self.executor.sync_open_orders(user_id, gateway)
                await self.reconciler.sync_positions_to_database(user_id, gateway)
            return "synced"
        except AccountNotConnected:
            logger.debug("portfolio_sync.account_not_connected", user_id=user_id)
            return "skipped"
        except Exception as e:
            logger.error("portfolio_sync.user_failed", user_id=user_id, error=str(e))
            return "failed"
