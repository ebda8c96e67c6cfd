"""Integration tests for the trading cycle.

These tests wire the real components against an in-memory database:
- TradingCycleScheduler pacing, overlap and lifecycle
- TradingEngine with both strategy variants
- RiskGate halts, recovery and emergency stop
- PortfolioSyncJob applying fills and reconciling positions
"""
import asyncio
from decimal import Decimal
from types import SimpleNamespace
from unittest.mock import AsyncMock

import pytest
import pytest_asyncio
from structlog.testing import capture_logs

from cycle_engine.core.config import RiskDefaultsConfig, SchedulerConfig
from cycle_engine.core.engine import TradingEngine
from cycle_engine.core.exceptions import GatewayError
from cycle_engine.core.execution import OrderExecutor
from cycle_engine.core.models import (
    OrderClass,
    OrderSide,
    Position,
    PositionStatus,
    StrategyConfig,
    StrategyVariant,
    TradingPreferences,
    TradingStatus,
    UserCycleOutcome,
    UserCycleResult,
)
from cycle_engine.core.monitoring import ActivityLogger
from cycle_engine.core.reconciliation import PortfolioReconciler
from cycle_engine.core.scheduler import PortfolioSyncJob, TradingCycleScheduler
from cycle_engine.exchange.gateway import GatewayFactory
from cycle_engine.risk.risk_gate import RiskGate
from cycle_engine.storage.database import StrategyConfigModel
from cycle_engine.strategies.analysis import StrategyEngine
from tests.conftest import (
    FakeGateway,
    connect_user,
    crossover_bars,
    inverted_v_closes,
    make_account,
    make_bars,
    make_broker_position,
    v_shape_closes,
)

pytestmark = pytest.mark.integration


async def wait_until(predicate, timeout=2.0):
    """Poll ``predicate`` until it holds or fail after ``timeout`` seconds."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.01)


# =============================================================================
# Wiring
# =============================================================================

@pytest.fixture
def gateways():
    """Per-user fake brokers; missing users get a fresh default gateway."""
    return {}


@pytest.fixture
def stack(database, gateways, scheduler_config):
    def build(account):
        return gateways.setdefault(account.user_id, FakeGateway())

    factory = GatewayFactory(database, builder=build)
    activity = ActivityLogger(database)
    risk_gate = RiskGate(database, factory, activity, RiskDefaultsConfig())
    strategy_engine = StrategyEngine(database, factory, activity)
    executor = OrderExecutor(database, factory, activity)
    reconciler = PortfolioReconciler(database, factory, activity)
    engine = TradingEngine(
        database, factory, risk_gate, strategy_engine, executor, activity, scheduler_config
    )
    scheduler = TradingCycleScheduler(database, engine, activity, scheduler_config)
    sync_job = PortfolioSyncJob(database, executor, reconciler, scheduler_config)
    return SimpleNamespace(
        activity=activity,
        risk_gate=risk_gate,
        executor=executor,
        engine=engine,
        scheduler=scheduler,
        sync_job=sync_job,
    )


class RecordingEngine:
    """Engine stand-in that records users and can be held mid-cycle."""

    def __init__(self, block: bool = False):
        self.calls = []
        self.entered = asyncio.Event()
        self.release = asyncio.Event()
        if not block:
            self.release.set()

    async def process_user_trading(self, user_id):
        self.calls.append(user_id)
        self.entered.set()
        await self.release.wait()
        return UserCycleResult(user_id=user_id, outcome=UserCycleOutcome.COMPLETED)


class FlakyDatabase:
    """Database whose first ``failures`` user listings raise."""

    def __init__(self, database, failures: int = 1):
        self._database = database
        self.failures = failures
        self.calls = 0

    async def get_auto_trading_users(self):
        self.calls += 1
        if self.calls <= self.failures:
            raise RuntimeError("db hiccup")
        return await self._database.get_auto_trading_users()

    def __getattr__(self, name):
        return getattr(self._database, name)


@pytest_asyncio.fixture
async def three_users(database):
    for user_id in ("u1", "u2", "u3"):
        await connect_user(database, user_id)
    return ["u1", "u2", "u3"]


# =============================================================================
# User Isolation
# =============================================================================

class TestUserIsolation:
    """One user's failure never stops the others."""

    @pytest.mark.asyncio
    async def test_broker_failure_isolated(self, database, gateways, stack):
        await connect_user(database, "alice")
        await connect_user(database, "bob")
        gateways["alice"] = FakeGateway()
        gateways["alice"].account_error = GatewayError("down", status_code=500)

        report = await stack.scheduler.execute_now()

        assert report.users_processed == 2
        assert report.failed_users == ["alice"]
        alice = report.result_for("alice")
        assert alice.reason == "GatewayError"
        assert alice.errors
        assert report.result_for("bob").outcome == UserCycleOutcome.COMPLETED

        logs = await stack.activity.get_activity_logs("alice")
        assert any(log.action.startswith("Trading engine error") for log in logs)

    @pytest.mark.asyncio
    async def test_signal_generation_failure_isolated(self, database, gateways, stack):
        await connect_user(database, "alice", strategy_config=StrategyConfig(user_id="alice"))
        await connect_user(
            database,
            "bob",
            strategy_config=StrategyConfig(user_id="bob", trading_universe=["AAPL"]),
        )
        async with database.session_maker() as session:
            row = await session.get(StrategyConfigModel, "alice")
            row.config_json = {**row.config_json, "max_concurrent_positions": "99"}
            await session.commit()
        gateways["bob"] = FakeGateway(bars={"AAPL": crossover_bars()})

        report = await stack.scheduler.execute_now()

        assert report.failed_users == ["alice"]
        assert report.result_for("alice").reason == "StrategyConfigError"
        bob = report.result_for("bob")
        assert bob.outcome == UserCycleOutcome.COMPLETED
        assert bob.orders_submitted == 1

    @pytest.mark.asyncio
    async def test_unconnected_user_skipped(self, database, stack):
        await database.save_trading_preferences(
            TradingPreferences(user_id="carol", auto_trading_enabled=True)
        )

        report = await stack.scheduler.execute_now()

        result = report.result_for("carol")
        assert result.outcome == UserCycleOutcome.SKIPPED
        assert result.reason == "account_not_connected"

    @pytest.mark.asyncio
    async def test_disabled_user_not_processed(self, database, stack):
        await connect_user(database, "dave", auto_trading=False)

        report = await stack.scheduler.execute_now()

        assert report.users_processed == 0


# =============================================================================
# Scheduler
# =============================================================================

class TestScheduler:
    """Test lifecycle, pacing and overlap handling."""

    @pytest.mark.asyncio
    async def test_users_paced_sequentially(self, database, three_users):
        engine = RecordingEngine()
        sleep = AsyncMock()
        scheduler = TradingCycleScheduler(
            database,
            engine,
            config=SchedulerConfig(user_delay_seconds=2, order_delay_seconds=0),
            sleep=sleep,
        )

        report = await scheduler.execute_now()

        assert engine.calls == three_users
        assert report.users_processed == 3
        assert sleep.await_count == 2
        sleep.assert_awaited_with(2)

    @pytest.mark.asyncio
    async def test_overlapping_cycle_skipped(self, database, three_users, scheduler_config):
        engine = RecordingEngine(block=True)
        scheduler = TradingCycleScheduler(database, engine, config=scheduler_config)

        first = asyncio.create_task(scheduler.execute_now())
        await asyncio.wait_for(engine.entered.wait(), timeout=2)
        assert scheduler.get_status()["cycle_in_progress"]

        with capture_logs() as logs:
            skipped = await scheduler.execute_now()

        assert skipped.skipped_overlap
        assert skipped.users_processed == 0
        assert any(
            entry["event"] == "cycle_skipped_overlap" and entry["log_level"] == "warning"
            for entry in logs
        )

        engine.release.set()
        completed = await first

        assert completed.users_processed == 3
        # The skipped tick did not start a second pass over the users
        assert engine.calls == three_users
        status = scheduler.get_status()
        assert status["cycles_skipped"] == 1
        assert status["cycles_completed"] == 1
        assert not status["cycle_in_progress"]

    @pytest.mark.asyncio
    async def test_start_runs_cycle_and_stop(self, database, three_users, scheduler_config):
        engine = RecordingEngine()
        scheduler = TradingCycleScheduler(database, engine, config=scheduler_config)

        await scheduler.start()
        await scheduler.start()
        try:
            await wait_until(lambda: scheduler.cycles_completed == 1)
            status = scheduler.get_status()
            assert status["is_running"]
            assert status["interval_minutes"] == 5
            assert status["last_cycle_at"] is not None
        finally:
            await scheduler.stop()

        assert not scheduler.get_status()["is_running"]
        assert engine.calls == three_users
        await scheduler.stop()

    @pytest.mark.asyncio
    async def test_set_interval(self, database, three_users, scheduler_config):
        engine = RecordingEngine()
        scheduler = TradingCycleScheduler(database, engine, config=scheduler_config)

        with pytest.raises(ValueError):
            await scheduler.set_interval(0)

        await scheduler.start()
        try:
            await wait_until(lambda: scheduler.cycles_completed == 1)
            await scheduler.set_interval(10)
            await asyncio.sleep(0.05)

            assert scheduler.get_status()["interval_minutes"] == 10
            assert scheduler.is_running
            # Re-arming waits a full interval before the next cycle
            assert scheduler.cycles_completed == 1
        finally:
            await scheduler.stop()

    @pytest.mark.asyncio
    async def test_cycle_failure_reported(self, database, three_users, scheduler_config):
        engine = RecordingEngine()
        scheduler = TradingCycleScheduler(
            FlakyDatabase(database), engine, config=scheduler_config
        )

        with capture_logs() as logs:
            report = await scheduler.execute_now()

        assert report.failed
        assert report.error == "db hiccup"
        assert report.users_processed == 0
        assert any(entry["event"] == "scheduler.cycle_failed" for entry in logs)
        status = scheduler.get_status()
        assert status["cycles_failed"] == 1
        assert not status["cycle_in_progress"]

        report = await scheduler.execute_now()
        assert not report.failed
        assert engine.calls == three_users

    @pytest.mark.asyncio
    async def test_sync_job_survives_failure(self, database, executor, reconciler, scheduler_config):
        flaky = FlakyDatabase(database)
        job = PortfolioSyncJob(flaky, executor, reconciler, scheduler_config)
        job.interval_seconds = 0.01

        with capture_logs() as logs:
            await job.start()
            try:
                await wait_until(lambda: flaky.calls >= 3)
                assert job.is_running
            finally:
                await job.stop()

        assert job.last_sync_at is not None
        assert any(entry["event"] == "portfolio_sync.cycle_failed" for entry in logs)

    @pytest.mark.asyncio
    async def test_set_interval_while_stopped(self, database, scheduler_config):
        scheduler = TradingCycleScheduler(database, RecordingEngine(), config=scheduler_config)

        await scheduler.set_interval(15)

        assert scheduler.interval_minutes == 15
        assert not scheduler.is_running


# =============================================================================
# Risk Halts and Emergency Stop
# =============================================================================

class TestRiskControl:
    """Test halting, recovery and emergency liquidation."""

    @pytest.mark.asyncio
    async def test_daily_loss_halts_then_recovers(self, database, gateways, stack):
        await connect_user(database, "erin")
        gateway = gateways["erin"] = FakeGateway(
            account=make_account(equity="9000", last_equity="10000")
        )

        report = await stack.scheduler.execute_now()

        halted = report.result_for("erin")
        assert halted.outcome == UserCycleOutcome.HALTED
        assert halted.reason
        prefs = await database.get_trading_preferences("erin")
        assert prefs.trading_status == TradingStatus.PAUSED
        assert prefs.auto_trading_enabled
        assert gateway.submitted == []

        gateway.account = make_account(equity="10000", last_equity="10000")
        report = await stack.scheduler.execute_now()

        assert report.result_for("erin").outcome == UserCycleOutcome.COMPLETED
        prefs = await database.get_trading_preferences("erin")
        assert prefs.trading_status == TradingStatus.ACTIVE

    @pytest.mark.asyncio
    async def test_emergency_stop_excludes_user(self, database, gateways, stack):
        await connect_user(database, "frank")
        symbols = ("AAPL", "MSFT", "NVDA")
        gateways["frank"] = FakeGateway(positions=[
            make_broker_position(symbol, qty="10", avg_entry_price="100", current_price="110")
            for symbol in symbols
        ])
        for symbol in symbols:
            await database.save_position(Position(
                user_id="frank", symbol=symbol, quantity=Decimal("10"), entry_price=Decimal("100")
            ))

        result = await stack.risk_gate.emergency_stop_all_positions("frank")

        assert result.success
        assert result.closed_positions == 3
        assert result.message == "Emergency stop completed. 3 positions closed successfully."
        assert await database.get_open_positions("frank") == []
        assert "frank" not in await database.get_auto_trading_users()

        report = await stack.scheduler.execute_now()
        assert report.result_for("frank") is None

        await stack.risk_gate.set_auto_trading("frank", True, actor="ops")
        report = await stack.scheduler.execute_now()
        assert report.result_for("frank").outcome == UserCycleOutcome.COMPLETED


# =============================================================================
# EMA / ATR Bracket Cycle
# =============================================================================

class TestEmaAtrCycle:
    """Test signal to bracket order to position."""

    async def connect(self, database, gateways):
        await connect_user(
            database,
            "gina",
            strategy_config=StrategyConfig(user_id="gina", trading_universe=["AAPL"]),
        )
        gateway = gateways["gina"] = FakeGateway(bars={"AAPL": crossover_bars()})
        return gateway

    @pytest.mark.asyncio
    async def test_crossover_submits_one_bracket(self, database, gateways, stack):
        gateway = await self.connect(database, gateways)

        report = await stack.scheduler.execute_now()

        result = report.result_for("gina")
        assert result.outcome == UserCycleOutcome.COMPLETED
        assert result.signals_generated == 1
        assert result.orders_submitted == 1
        assert len(gateway.submitted) == 1
        assert gateway.submitted[0].order_class == OrderClass.BRACKET
        assert gateway.submitted[0].side == OrderSide.BUY

        signals = await database.get_recent_signals("gina")
        assert signals[0].executed
        assert await database.get_unexecuted_signals("gina") == []

    @pytest.mark.asyncio
    async def test_working_order_blocks_duplicate(self, database, gateways, stack):
        gateway = await self.connect(database, gateways)

        await stack.scheduler.execute_now()
        report = await stack.scheduler.execute_now()

        assert report.result_for("gina").orders_submitted == 0
        assert len(gateway.submitted) == 1

    @pytest.mark.asyncio
    async def test_position_cap_holds_across_cycles(self, database, gateways, stack):
        """Working entries from the first cycle use up the slots of the second."""
        universe = ["AAPL", "AMD", "MSFT", "NVDA", "TSLA"]
        await connect_user(
            database,
            "gina",
            strategy_config=StrategyConfig(
                user_id="gina", trading_universe=universe, max_concurrent_positions=3
            ),
        )
        gateway = gateways["gina"] = FakeGateway(
            bars={symbol: crossover_bars() for symbol in universe}
        )

        await stack.scheduler.execute_now()
        assert len(gateway.submitted) == 3

        report = await stack.scheduler.execute_now()

        assert report.result_for("gina").orders_submitted == 0
        assert len(gateway.submitted) == 3

    @pytest.mark.asyncio
    async def test_fill_synced_into_position(self, database, gateways, stack):
        gateway = await self.connect(database, gateways)
        await stack.scheduler.execute_now()

        order = gateway.submitted[0]
        price = (await database.get_recent_signals("gina"))[0].price
        gateway.fill(order.id, price=price)
        gateway.positions["AAPL"] = make_broker_position(
            "AAPL", qty=order.quantity, avg_entry_price=price
        )

        outcomes = await stack.sync_job.run_once()

        assert outcomes == {"gina": "synced"}
        position = await database.get_open_position("gina", "AAPL")
        assert position.quantity == order.quantity
        assert position.entry_price == price
        assert position.stop_loss is not None
        assert position.stop_loss < position.entry_price < position.take_profit
        assert stack.sync_job.last_sync_at is not None

        # Broker-side exit closes the local position on the next sync
        gateway.positions.clear()
        await stack.sync_job.run_once()

        closed = await database.get_positions("gina", status=PositionStatus.CLOSED)
        assert [p.closed_by for p in closed] == ["reconciliation"]


# =============================================================================
# Technical Scoring Cycle
# =============================================================================

class TestTechnicalCycle:
    """Test the market-order variant with exits, buys and alerts."""

    async def connect(self, database, gateways, **gateway_kwargs):
        await connect_user(
            database,
            "hank",
            strategy_config=StrategyConfig(
                user_id="hank", strategy_variant=StrategyVariant.TECHNICAL_PERCENT
            ),
        )
        gateway = gateways["hank"] = FakeGateway(**gateway_kwargs)
        return gateway

    @pytest.mark.asyncio
    async def test_market_closed(self, database, gateways, stack):
        gateway = await self.connect(database, gateways, market_open=False)
        gateway.bars["AAPL"] = make_bars(v_shape_closes())

        report = await stack.scheduler.execute_now()

        result = report.result_for("hank")
        assert result.outcome == UserCycleOutcome.COMPLETED
        assert result.reason == "market_closed"
        assert gateway.submitted == []

    @pytest.mark.asyncio
    async def test_exits_and_buys(self, database, gateways, stack):
        gateway = await self.connect(database, gateways)
        # Entry at 200 against a last close of 101 trips the stop loss
        await database.save_position(Position(
            user_id="hank", symbol="AAPL", quantity=Decimal("10"), entry_price=Decimal("200")
        ))
        # Rolling over from the top: a technical exit
        await database.save_position(Position(
            user_id="hank", symbol="MSFT", quantity=Decimal("5"), entry_price=Decimal("62")
        ))
        gateway.bars["AAPL"] = make_bars(v_shape_closes())
        gateway.bars["MSFT"] = make_bars(inverted_v_closes())
        for symbol in ("GOOGL", "META", "NVDA"):
            gateway.bars[symbol] = make_bars(v_shape_closes())

        report = await stack.scheduler.execute_now()

        result = report.result_for("hank")
        assert result.outcome == UserCycleOutcome.COMPLETED
        assert result.errors == []
        assert result.orders_submitted == 4

        sells = [o for o in gateway.submitted if o.side == OrderSide.SELL]
        buys = [o for o in gateway.submitted if o.side == OrderSide.BUY]
        assert sorted(o.symbol for o in sells) == ["AAPL", "MSFT"]
        assert len(buys) == 2
        # 15% of 10000 buying power at a price of 101
        assert all(o.quantity == Decimal("14") for o in buys)

        titles = [a.title for a in await stack.activity.get_alerts("hank")]
        assert "Stop Loss Triggered" in titles
        assert "Sell Order Submitted" in titles
        assert titles.count("Buy Order Submitted") == 2

    @pytest.mark.asyncio
    async def test_insufficient_buying_power(self, database, gateways, stack):
        gateway = await self.connect(
            database, gateways, account=make_account(equity="10000", buying_power="50")
        )
        gateway.bars["AAPL"] = make_bars(v_shape_closes())

        report = await stack.scheduler.execute_now()

        assert report.result_for("hank").orders_submitted == 0
        assert gateway.submitted == []
        titles = [a.title for a in await stack.activity.get_alerts("hank")]
        assert "Insufficient Buying Power" in titles
