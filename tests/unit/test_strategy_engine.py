"""Unit tests for the strategy analysis service."""
import pytest
from decimal import Decimal

from structlog.testing import capture_logs

from cycle_engine.core.exceptions import StrategyConfigError
from cycle_engine.core.models import (
    ActivityType,
    ExitReason,
    Order,
    OrderSide,
    OrderStatus,
    Position,
    Signal,
    SignalType,
    StrategyConfig,
    StrategyVariant,
)
from cycle_engine.storage.database import StrategyConfigModel
from tests.conftest import (
    connect_user,
    crossover_bars,
    inverted_v_closes,
    make_account,
    make_bars,
    v_shape_closes,
)

USER = "user-1"


# =============================================================================
# Configuration
# =============================================================================

class TestStrategyConfig:
    """Test config defaults, validation and updates."""

    @pytest.mark.asyncio
    async def test_defaults_created(self, strategy_engine, database):
        config = await strategy_engine.get_strategy_config(USER)

        assert config.strategy_variant == StrategyVariant.EMA_ATR_BRACKET
        assert config.max_position_size_percent == Decimal("15")
        assert "AAPL" in config.trading_universe
        assert await database.get_strategy_config(USER) is not None

    @pytest.mark.asyncio
    async def test_invalid_stored_config(self, strategy_engine, database):
        await database.save_strategy_config(StrategyConfig(user_id=USER))
        async with database.session_maker() as session:
            row = await session.get(StrategyConfigModel, USER)
            row.config_json = {**row.config_json, "max_position_size_percent": "99"}
            await session.commit()

        with pytest.raises(StrategyConfigError):
            await strategy_engine.get_strategy_config(USER)

    @pytest.mark.asyncio
    async def test_update(self, strategy_engine):
        config = await strategy_engine.update_strategy_config(
            USER, {"max_concurrent_positions": 10, "trading_universe": ["nvda"]}
        )
        assert config.max_concurrent_positions == 10
        assert config.trading_universe == {"NVDA"}

        stored = await strategy_engine.get_strategy_config(USER)
        assert stored.max_concurrent_positions == 10

    @pytest.mark.asyncio
    async def test_update_unknown_setting(self, strategy_engine):
        with pytest.raises(StrategyConfigError):
            await strategy_engine.update_strategy_config(USER, {"leverage": 2})

    @pytest.mark.asyncio
    async def test_update_out_of_range(self, strategy_engine):
        with pytest.raises(StrategyConfigError):
            await strategy_engine.update_strategy_config(USER, {"max_position_size_percent": 50})

    @pytest.mark.asyncio
    async def test_update_inverted_ema_periods(self, strategy_engine):
        with pytest.raises(StrategyConfigError):
            await strategy_engine.update_strategy_config(USER, {"ema_fast_period": 30})


# =============================================================================
# EMA / ATR Analysis
# =============================================================================

class TestRunStrategyAnalysis:
    """Test universe analysis and risk sizing."""

    async def connect(self, database, universe):
        await connect_user(
            database, USER, strategy_config=StrategyConfig(user_id=USER, trading_universe=universe)
        )

    @pytest.mark.asyncio
    async def test_buy_signal_sized_and_stored(self, strategy_engine, database, fake_gateway):
        await self.connect(database, ["AAPL", "MSFT"])
        fake_gateway.bars["AAPL"] = crossover_bars()
        fake_gateway.bars["MSFT"] = make_bars([50] * 10)

        signals = await strategy_engine.run_strategy_analysis(USER)

        assert [s.symbol for s in signals] == ["AAPL"]
        buy = signals[0]
        assert buy.signal_type == SignalType.BUY
        assert buy.user_id == USER
        assert buy.position_size > 0
        assert buy.risk_amount > 0
        assert buy.metadata["sizing"]["rejected_reason"] is None

        stored = await database.get_unexecuted_signals(USER)
        assert [s.id for s in stored] == [buy.id]
        logs = await database.get_activity_logs(USER, activity_type=ActivityType.SIGNAL)
        assert logs[0].action == "Buy signal generated for AAPL"
        assert fake_gateway.close_calls == 1

    @pytest.mark.asyncio
    async def test_holds_not_stored(self, strategy_engine, database, fake_gateway):
        await self.connect(database, ["AAPL"])
        fake_gateway.bars["AAPL"] = make_bars(v_shape_closes())

        signals = await strategy_engine.run_strategy_analysis(USER)

        assert signals[0].signal_type == SignalType.HOLD
        assert await database.get_recent_signals(USER) == []

    @pytest.mark.asyncio
    async def test_bar_failure_skips_symbol(self, strategy_engine, database, fake_gateway):
        await self.connect(database, ["AAPL", "MSFT"])
        fake_gateway.bars["AAPL"] = crossover_bars()
        fake_gateway.bars["MSFT"] = crossover_bars()
        fake_gateway.fail_bars.add("AAPL")

        signals = await strategy_engine.run_strategy_analysis(USER)

        assert [s.symbol for s in signals] == ["MSFT"]

    @pytest.mark.asyncio
    async def test_exhausted_risk_budget(self, strategy_engine, database, fake_gateway):
        await self.connect(database, ["AAPL"])
        fake_gateway.bars["AAPL"] = crossover_bars()
        fake_gateway.account = make_account(equity="10000")
        # 100 shares with 6 dollars of risk each uses the whole 600 budget
        await database.save_position(Position(
            user_id=USER,
            symbol="XOM",
            quantity=Decimal("100"),
            entry_price=Decimal("100"),
            stop_loss=Decimal("94"),
        ))

        signals = await strategy_engine.run_strategy_analysis(USER)

        assert signals[0].signal_type == SignalType.BUY
        assert signals[0].position_size == 0
        assert signals[0].metadata["sizing"]["rejected_reason"] == "portfolio_risk_budget_exhausted"

    @pytest.mark.asyncio
    async def test_budget_shared_within_cycle(self, strategy_engine, database, fake_gateway):
        """Buys sized earlier in the pass use up the budget for later ones."""
        await connect_user(database, USER, strategy_config=StrategyConfig(
            user_id=USER,
            trading_universe=["AAPL", "AMD", "MSFT"],
            risk_per_trade_percent=Decimal("1"),
            max_portfolio_risk_percent=Decimal("2"),
        ))
        for symbol in ("AAPL", "AMD", "MSFT"):
            fake_gateway.bars[symbol] = crossover_bars()

        signals = await strategy_engine.run_strategy_analysis(USER)

        assert [s.symbol for s in signals] == ["AAPL", "AMD", "MSFT"]
        assert [s.position_size > 0 for s in signals] == [True, True, False]
        assert signals[2].metadata["sizing"]["rejected_reason"] == "portfolio_risk_budget_exhausted"
        assert sum(s.risk_amount for s in signals) <= Decimal("200")

    @pytest.mark.asyncio
    async def test_working_order_risk_counted(self, strategy_engine, database, fake_gateway):
        await connect_user(database, USER, strategy_config=StrategyConfig(
            user_id=USER,
            trading_universe=["AAPL"],
            risk_per_trade_percent=Decimal("1"),
            max_portfolio_risk_percent=Decimal("2"),
        ))
        fake_gateway.bars["AAPL"] = crossover_bars()
        earlier = Signal(
            user_id=USER,
            symbol="NVDA",
            signal_type=SignalType.BUY,
            price=Decimal("150"),
            reason="crossover",
            stop_loss=Decimal("140"),
            take_profit=Decimal("165"),
            position_size=20,
            risk_amount=Decimal("200"),
        )
        await database.save_signal(earlier)
        await database.save_order(Order(
            user_id=USER,
            broker_order_id="b-1",
            symbol="NVDA",
            side=OrderSide.BUY,
            quantity=Decimal("20"),
            status=OrderStatus.ACCEPTED,
            signal_id=earlier.id,
        ))

        assert await strategy_engine.pending_entry_risk(USER) == Decimal("200")
        signals = await strategy_engine.run_strategy_analysis(USER)

        assert signals[0].position_size == 0
        assert signals[0].metadata["sizing"]["rejected_reason"] == "portfolio_risk_budget_exhausted"

    @pytest.mark.asyncio
    async def test_symbol_failure_isolated(
        self, strategy_engine, database, fake_gateway, monkeypatch
    ):
        await self.connect(database, ["AAPL", "MSFT"])
        fake_gateway.bars["AAPL"] = crossover_bars()
        fake_gateway.bars["MSFT"] = crossover_bars()
        save_signal = database.save_signal

        async def failing_save(signal):
            if signal.symbol == "AAPL":
                raise RuntimeError("disk full")
            await save_signal(signal)

        monkeypatch.setattr(database, "save_signal", failing_save)

        with capture_logs() as logs:
            signals = await strategy_engine.run_strategy_analysis(USER)

        assert [s.symbol for s in signals] == ["MSFT"]
        assert [s.symbol for s in await database.get_unexecuted_signals(USER)] == ["MSFT"]
        assert any(
            entry["event"] == "strategy_engine.symbol_failed" and entry["symbol"] == "AAPL"
            for entry in logs
        )


# =============================================================================
# Technical Scoring Candidates
# =============================================================================

class TestTechnicalCandidates:
    """Test buy and exit candidate selection."""

    @pytest.mark.asyncio
    async def test_buy_candidates_skip_held_symbols(self, strategy_engine, database, fake_gateway):
        config = StrategyConfig(user_id=USER)
        fake_gateway.bars["AAPL"] = make_bars(v_shape_closes())
        fake_gateway.bars["MSFT"] = make_bars(v_shape_closes())
        fake_gateway.bars["GOOGL"] = make_bars(inverted_v_closes())

        buys = await strategy_engine.find_buy_candidates(
            USER,
            fake_gateway,
            config,
            make_account(buying_power="10000"),
            held_symbols=["msft"],
            candidates_per_cycle=5,
            max_new_positions=2,
        )

        assert [s.symbol for s in buys] == ["AAPL"]
        # 15% of 10000 at 101
        assert buys[0].position_size == 14
        assert [s.id for s in await database.get_recent_signals(USER)] == [buys[0].id]

    @pytest.mark.asyncio
    async def test_buy_candidates_capped(self, strategy_engine, fake_gateway):
        for symbol in ("AAPL", "MSFT", "GOOGL"):
            fake_gateway.bars[symbol] = make_bars(v_shape_closes())

        buys = await strategy_engine.find_buy_candidates(
            USER,
            fake_gateway,
            StrategyConfig(user_id=USER),
            make_account(),
            held_symbols=[],
            candidates_per_cycle=5,
            max_new_positions=2,
        )

        assert len(buys) == 2

    @pytest.mark.asyncio
    async def test_buy_candidates_limited_to_window(self, strategy_engine, fake_gateway):
        """Only the first candidates_per_cycle symbols are scored."""
        fake_gateway.bars["NVDA"] = make_bars(v_shape_closes())

        buys = await strategy_engine.find_buy_candidates(
            USER,
            fake_gateway,
            StrategyConfig(user_id=USER),
            make_account(),
            held_symbols=[],
            candidates_per_cycle=2,
            max_new_positions=2,
        )

        assert buys == []

    @pytest.mark.asyncio
    async def test_exit_candidates(self, strategy_engine, database, fake_gateway):
        for symbol, entry in (("AAPL", "200"), ("MSFT", "100"), ("GOOGL", "100")):
            await database.save_position(Position(
                user_id=USER, symbol=symbol, quantity=Decimal("10"), entry_price=Decimal(entry)
            ))
        fake_gateway.bars["AAPL"] = make_bars(v_shape_closes())
        fake_gateway.bars["MSFT"] = make_bars(v_shape_closes())

        exits = await strategy_engine.find_exit_candidates(
            USER, fake_gateway, StrategyConfig(user_id=USER)
        )

        assert [c.position.symbol for c in exits] == ["AAPL"]
        assert exits[0].decision.reason == ExitReason.STOP_LOSS
        assert exits[0].price == Decimal("101")
