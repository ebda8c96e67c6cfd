"""Unit tests for order execution and fill handling."""
import pytest
import pytest_asyncio
from decimal import Decimal

from cycle_engine.core.exceptions import GatewayError
from cycle_engine.core.models import (
    ActivityType,
    BracketOrderParams,
    Order,
    OrderClass,
    OrderSide,
    OrderStatus,
    Position,
    PositionStatus,
    Severity,
    Signal,
    SignalType,
)
from tests.conftest import connect_user, make_broker_position

USER = "user-1"


def bracket(symbol="AAPL", quantity=10):
    return BracketOrderParams(
        symbol=symbol,
        quantity=quantity,
        take_profit=Decimal("170"),
        stop_loss=Decimal("140"),
    )


async def seed_position(database, symbol="AAPL", quantity="10", entry="100"):
    position = Position(
        user_id=USER, symbol=symbol, quantity=Decimal(quantity), entry_price=Decimal(entry)
    )
    await database.save_position(position)
    return position


@pytest_asyncio.fixture
async def connected(database):
    await connect_user(database, USER)


# =============================================================================
# Submission
# =============================================================================

class TestSubmission:
    """Test bracket and market submissions."""

    @pytest.mark.asyncio
    async def test_bracket_order_recorded(self, executor, database, fake_gateway, connected):
        signal = Signal(
            user_id=USER,
            symbol="AAPL",
            signal_type=SignalType.BUY,
            price=Decimal("150"),
            reason="crossover",
        )
        await database.save_signal(signal)

        order = await executor.submit_bracket_order(USER, bracket("aapl"), signal_id=signal.id)

        assert order.symbol == "AAPL"
        assert order.order_class == OrderClass.BRACKET
        assert order.status == OrderStatus.ACCEPTED
        assert order.take_profit_price == Decimal("170")
        assert order.stop_loss_price == Decimal("140")
        assert order.signal_id == signal.id

        stored = await database.get_order(order.id)
        assert stored.broker_order_id == "broker-order-1"

        executed = await database.get_signal(signal.id)
        assert executed.executed
        assert executed.order_id == "broker-order-1"
        assert fake_gateway.close_calls == 1

    @pytest.mark.asyncio
    async def test_failed_submission_is_logged_and_raised(
        self, executor, database, fake_gateway, connected
    ):
        signal = Signal(
            user_id=USER,
            symbol="AAPL",
            signal_type=SignalType.BUY,
            price=Decimal("150"),
            reason="crossover",
        )
        await database.save_signal(signal)
        fake_gateway.fail_submit = True

        with pytest.raises(GatewayError):
            await executor.submit_bracket_order(USER, bracket(), signal_id=signal.id)

        errors = await database.get_activity_logs(USER, activity_type=ActivityType.ERROR)
        assert errors[0].action == "order_failed"
        assert errors[0].severity == Severity.CRITICAL
        assert errors[0].details["error_type"] == "GatewayError"
        assert await database.get_orders(USER) == []
        assert not (await database.get_signal(signal.id)).executed

    @pytest.mark.asyncio
    async def test_market_order_keeps_reason(self, executor, connected):
        order = await executor.submit_market_order(
            USER, "MSFT", Decimal("5"), OrderSide.SELL, reason="take_profit"
        )
        assert order.side == OrderSide.SELL
        assert order.quantity == Decimal("5")
        assert order.metadata["reason"] == "take_profit"

    @pytest.mark.asyncio
    async def test_trade_activity_logged(self, executor, database, connected):
        await executor.submit_bracket_order(USER, bracket())
        trades = await database.get_activity_logs(USER, activity_type=ActivityType.TRADE)
        assert trades[0].action == "order_submitted"
        assert trades[0].symbol == "AAPL"


# =============================================================================
# Fills
# =============================================================================

class TestFills:
    """Test folding fills into positions."""

    @pytest.mark.asyncio
    async def test_fill_opens_position_once(self, executor, database, fake_gateway, connected):
        order = await executor.submit_bracket_order(USER, bracket())
        fake_gateway.fill(order.broker_order_id, "151")

        first = await executor.sync_order_status(USER, order.id)
        second = await executor.sync_order_status(USER, order.id)

        assert first.status == OrderStatus.FILLED
        assert first.position_applied
        assert second.position_applied

        positions = await database.get_open_positions(USER)
        assert len(positions) == 1
        assert positions[0].quantity == Decimal("10")
        assert positions[0].entry_price == Decimal("151")
        assert positions[0].stop_loss == Decimal("140")
        assert positions[0].take_profit == Decimal("170")

    @pytest.mark.asyncio
    async def test_partial_fill_waits_for_terminal_status(
        self, executor, database, fake_gateway, connected
    ):
        order = await executor.submit_bracket_order(USER, bracket())
        fake_gateway.fill(order.broker_order_id, "151", qty="4")

        synced = await executor.sync_order_status(USER, order.id)

        assert synced.status == OrderStatus.PARTIALLY_FILLED
        assert synced.filled_qty == Decimal("4")
        assert not synced.position_applied
        assert await database.get_open_positions(USER) == []

    @pytest.mark.asyncio
    async def test_buy_averages_into_position(self, executor, database, fake_gateway, connected):
        await seed_position(database, quantity="10", entry="100")
        order = await executor.submit_market_order(USER, "AAPL", Decimal("10"), OrderSide.BUY)
        fake_gateway.fill(order.broker_order_id, "120")

        await executor.sync_order_status(USER, order.id)

        position = await database.get_open_position(USER, "AAPL")
        assert position.quantity == Decimal("20")
        assert position.entry_price == Decimal("110")

    @pytest.mark.asyncio
    async def test_sell_closes_with_reason(self, executor, database, fake_gateway, connected):
        await seed_position(database, quantity="10", entry="100")
        order = await executor.submit_market_order(
            USER, "AAPL", Decimal("10"), OrderSide.SELL, reason="stop_loss"
        )
        fake_gateway.fill(order.broker_order_id, "95")

        await executor.sync_order_status(USER, order.id)

        assert await database.get_open_position(USER, "AAPL") is None
        closed = (await database.get_positions(USER, status=PositionStatus.CLOSED))[0]
        assert closed.closed_by == "stop_loss"
        assert closed.close_price == Decimal("95")
        assert closed.realized_pl == Decimal("-50")

    @pytest.mark.asyncio
    async def test_sell_without_reason(self, executor, database, fake_gateway, connected):
        await seed_position(database, quantity="10", entry="100")
        order = await executor.submit_market_order(USER, "AAPL", Decimal("10"), OrderSide.SELL)
        fake_gateway.fill(order.broker_order_id, "105")

        await executor.sync_order_status(USER, order.id)

        closed = (await database.get_positions(USER, status=PositionStatus.CLOSED))[0]
        assert closed.closed_by == "order_fill"

    @pytest.mark.asyncio
    async def test_partial_sell_reduces_quantity(self, executor, database, fake_gateway, connected):
        await seed_position(database, quantity="10", entry="100")
        order = await executor.submit_market_order(USER, "AAPL", Decimal("4"), OrderSide.SELL)
        fake_gateway.fill(order.broker_order_id, "110")

        await executor.sync_order_status(USER, order.id)

        position = await database.get_open_position(USER, "AAPL")
        assert position.quantity == Decimal("6")
        assert position.current_price == Decimal("110")

    @pytest.mark.asyncio
    async def test_close_position_uses_reason(self, executor, database, fake_gateway, connected):
        await seed_position(database, quantity="10", entry="100")
        fake_gateway.positions["AAPL"] = make_broker_position(
            "AAPL", avg_entry_price="100", current_price="112"
        )

        order = await executor.close_position(USER, "aapl", "take_profit")
        await executor.sync_order_status(USER, order.id)

        assert order.status == OrderStatus.FILLED
        closed = (await database.get_positions(USER, status=PositionStatus.CLOSED))[0]
        assert closed.closed_by == "take_profit"
        assert closed.realized_pl == Decimal("120")


# =============================================================================
# Cancel and Sync
# =============================================================================

class TestCancelAndSync:
    """Test cancellation and bulk synchronisation."""

    @pytest.mark.asyncio
    async def test_cancel_records_broker_status(self, executor, database, connected):
        order = await executor.submit_bracket_order(USER, bracket())

        cancelled = await executor.cancel_order(USER, order.id)

        assert cancelled.status == OrderStatus.CANCELLED
        assert (await database.get_order(order.id)).status == OrderStatus.CANCELLED

    @pytest.mark.asyncio
    async def test_cancel_by_broker_id(self, executor, connected):
        order = await executor.submit_bracket_order(USER, bracket())
        cancelled = await executor.cancel_order(USER, order.broker_order_id)
        assert cancelled.id == order.id

    @pytest.mark.asyncio
    async def test_cancel_unknown_order(self, executor, connected):
        with pytest.raises(ValueError):
            await executor.cancel_order(USER, "nope")

    @pytest.mark.asyncio
    async def test_cancel_other_users_order(self, executor, database, connected):
        await connect_user(database, "user-2")
        order = await executor.submit_bracket_order("user-2", bracket())
        with pytest.raises(ValueError):
            await executor.cancel_order(USER, order.id)

    @pytest.mark.asyncio
    async def test_sync_open_orders(self, executor, database, fake_gateway, connected):
        filled = await executor.submit_bracket_order(USER, bracket("AAPL"))
        await executor.submit_bracket_order(USER, bracket("MSFT"))
        # Unknown to the broker; the sync must carry on past it
        await database.save_order(Order(
            user_id=USER,
            broker_order_id="missing",
            symbol="XOM",
            side=OrderSide.BUY,
            quantity=Decimal("1"),
            status=OrderStatus.ACCEPTED,
        ))
        fake_gateway.fill(filled.broker_order_id, "150")

        synced = await executor.sync_open_orders(USER)

        assert {o.symbol for o in synced} == {"AAPL", "MSFT"}
        remaining = await database.get_active_orders(USER)
        assert {o.symbol for o in remaining} == {"MSFT", "XOM"}
        assert [p.symbol for p in await database.get_open_positions(USER)] == ["AAPL"]

    @pytest.mark.asyncio
    async def test_sync_without_orders(self, executor, fake_gateway, connected):
        assert await executor.sync_open_orders(USER) == []
        assert fake_gateway.close_calls == 0
