"""Pytest fixtures and utilities for the trading cycle engine test suite."""
import pytest
import pytest_asyncio
from datetime import datetime, timedelta
from decimal import Decimal
from itertools import count
from typing import Dict, Iterable, List, Optional, Sequence, Set

from cycle_engine.core.config import RiskDefaultsConfig, SchedulerConfig
from cycle_engine.core.engine import TradingEngine
from cycle_engine.core.exceptions import GatewayError
from cycle_engine.core.execution import OrderExecutor
from cycle_engine.core.models import (
    AccountSnapshot,
    Bar,
    BarSeries,
    BracketOrderParams,
    BrokerAccount,
    BrokerOrder,
    BrokerPosition,
    MarketClock,
    OrderClass,
    OrderSide,
    OrderStatus,
    OrderType,
    PositionSide,
    StrategyConfig,
    TimeInForce,
    TradingPreferences,
    TradingStatus,
)
from cycle_engine.core.monitoring import ActivityLogger
from cycle_engine.core.reconciliation import PortfolioReconciler
from cycle_engine.exchange.gateway import BrokerGateway, GatewayFactory
from cycle_engine.indicators import ema
from cycle_engine.risk.risk_gate import RiskGate
from cycle_engine.storage.database import Database
from cycle_engine.strategies.analysis import StrategyEngine


# =============================================================================
# Bar Builders
# =============================================================================

def make_bars(
    closes: Sequence,
    volume: int = 2_000_000,
    start: datetime = datetime(2024, 1, 2),
) -> List[Bar]:
    """Daily bars with a one dollar range around each close."""
    bars = []
    for i, close in enumerate(closes):
        close = Decimal(str(close))
        bars.append(Bar(
            timestamp=start + timedelta(days=i),
            open=close,
            high=close + 1,
            low=close - 1,
            close=close,
            volume=Decimal(volume),
        ))
    return bars


def v_shape_closes() -> List[int]:
    """60 closes: 40 days falling a dollar a day, then 20 days rising two."""
    falling = [100 - i for i in range(40)]
    rising = [falling[-1] + 2 * (i + 1) for i in range(20)]
    return falling + rising


def inverted_v_closes() -> List[int]:
    """60 closes: 40 days rising a dollar a day, then 20 days falling two."""
    rising = [61 + i for i in range(40)]
    falling = [rising[-1] - 2 * (i + 1) for i in range(20)]
    return rising + falling


def crossover_index(closes: Sequence, fast: int = 12, slow: int = 26) -> int:
    """Index of the first bar where the fast EMA closes above the slow EMA."""
    values = [Decimal(str(c)) for c in closes]
    fast_ema = ema(values, fast)
    slow_ema = ema(values, slow)
    for i in range(slow, len(values)):
        prev_fast, cur_fast = fast_ema[i - fast], fast_ema[i - fast + 1]
        prev_slow, cur_slow = slow_ema[i - slow], slow_ema[i - slow + 1]
        if prev_fast <= prev_slow and cur_fast > cur_slow:
            return i
    raise AssertionError("series has no bullish crossover")


def crossover_bars(volume: int = 2_000_000) -> List[Bar]:
    """V-shaped history cut so its last bar is the bullish crossover."""
    closes = v_shape_closes()
    return make_bars(closes[:crossover_index(closes) + 1], volume=volume)


# =============================================================================
# Broker Value Builders
# =============================================================================

def make_account(
    equity="10000",
    last_equity=None,
    buying_power=None,
    cash=None,
) -> AccountSnapshot:
    equity = Decimal(str(equity))
    return AccountSnapshot(
        account_number="PA0000001",
        status="ACTIVE",
        equity=equity,
        cash=Decimal(str(cash)) if cash is not None else equity,
        buying_power=Decimal(str(buying_power)) if buying_power is not None else equity,
        portfolio_value=equity,
        last_equity=Decimal(str(last_equity)) if last_equity is not None else equity,
    )


def make_broker_position(
    symbol: str,
    qty="10",
    avg_entry_price="150",
    current_price=None,
    side: PositionSide = PositionSide.LONG,
) -> BrokerPosition:
    qty = Decimal(str(qty))
    entry = Decimal(str(avg_entry_price))
    current = Decimal(str(current_price)) if current_price is not None else entry
    return BrokerPosition(
        symbol=symbol,
        qty=qty,
        avg_entry_price=entry,
        current_price=current,
        market_value=abs(qty) * current,
        cost_basis=abs(qty) * entry,
        unrealized_pl=(current - entry) * qty,
        unrealized_plpc=(current - entry) / entry,
        side=side,
    )


# =============================================================================
# Fake Gateway
# =============================================================================

class FakeGateway(BrokerGateway):
    """In-memory broker with just enough behaviour for the engine."""

    def __init__(
        self,
        account: Optional[AccountSnapshot] = None,
        positions: Optional[Iterable[BrokerPosition]] = None,
        bars: Optional[Dict[str, List[Bar]]] = None,
        market_open: bool = True,
    ):
        self.account = account or make_account()
        self.positions: Dict[str, BrokerPosition] = {p.symbol: p for p in positions or []}
        self.bars: Dict[str, List[Bar]] = dict(bars or {})
        self.market_open = market_open
        self.orders: Dict[str, BrokerOrder] = {}
        self.submitted: List[BrokerOrder] = []

        # Failure injection
        self.account_error: Optional[Exception] = None
        self.fail_bars: Set[str] = set()
        self.fail_close: Set[str] = set()
        self.fail_submit = False

        self.close_calls = 0
        self._ids = count(1)

    def _next_id(self) -> str:
        return f"broker-order-{next(self._ids)}"

    def _store(self, order: BrokerOrder) -> BrokerOrder:
        self.orders[order.id] = order
        self.submitted.append(order)
        return order

    async def get_account(self) -> AccountSnapshot:
        if self.account_error is not None:
            raise self.account_error
        return self.account

    async def get_positions(self) -> List[BrokerPosition]:
        return list(self.positions.values())

    async def get_bars(self, symbol, start, end, timeframe="1Day") -> BarSeries:
        if symbol in self.fail_bars:
            raise GatewayError(f"bars unavailable for {symbol}", status_code=503)
        return BarSeries(symbol=symbol, bars=self.bars.get(symbol, []))

    async def submit_bracket_order(self, params: BracketOrderParams) -> BrokerOrder:
        if self.fail_submit:
            raise GatewayError("insufficient buying power", status_code=403)
        return self._store(BrokerOrder(
            id=self._next_id(),
            symbol=params.symbol,
            side=params.side,
            order_type=OrderType.MARKET,
            order_class=OrderClass.BRACKET,
            quantity=Decimal(params.quantity),
            status=OrderStatus.ACCEPTED,
            raw_status="accepted",
            submitted_at=datetime.utcnow(),
        ))

    async def submit_order(
        self,
        symbol,
        quantity,
        side,
        order_type=OrderType.MARKET,
        time_in_force=TimeInForce.DAY,
        limit_price=None,
        stop_price=None,
    ) -> BrokerOrder:
        if self.fail_submit:
            raise GatewayError("order rejected", status_code=422)
        return self._store(BrokerOrder(
            id=self._next_id(),
            symbol=symbol,
            side=side,
            order_type=order_type,
            quantity=Decimal(str(quantity)),
            time_in_force=time_in_force,
            status=OrderStatus.ACCEPTED,
            raw_status="accepted",
            submitted_at=datetime.utcnow(),
        ))

    async def get_order_status(self, order_id: str) -> BrokerOrder:
        if order_id not in self.orders:
            raise GatewayError("order not found", status_code=404)
        return self.orders[order_id]

    async def cancel_order(self, order_id: str) -> None:
        order = await self.get_order_status(order_id)
        self.orders[order_id] = order.model_copy(update={
            "status": OrderStatus.CANCELLED,
            "raw_status": "canceled",
            "cancelled_at": datetime.utcnow(),
        })

    async def close_position(self, symbol: str) -> BrokerOrder:
        if symbol in self.fail_close:
            raise GatewayError(f"cannot close {symbol}", status_code=500)
        position = self.positions.pop(symbol)
        return self._store(BrokerOrder(
            id=self._next_id(),
            symbol=symbol,
            side=OrderSide.SELL,
            order_type=OrderType.MARKET,
            quantity=abs(position.qty),
            filled_qty=abs(position.qty),
            filled_avg_price=position.current_price,
            status=OrderStatus.FILLED,
            raw_status="filled",
            submitted_at=datetime.utcnow(),
            filled_at=datetime.utcnow(),
        ))

    async def get_clock(self) -> MarketClock:
        return MarketClock(is_open=self.market_open)

    async def close(self):
        self.close_calls += 1

    def fill(self, order_id: str, price, qty=None):
        """Mark an order filled at ``price`` (fully, unless ``qty`` is given)."""
        order = self.orders[order_id]
        filled = Decimal(str(qty)) if qty is not None else order.quantity
        status = OrderStatus.FILLED if filled >= order.quantity else OrderStatus.PARTIALLY_FILLED
        self.orders[order_id] = order.model_copy(update={
            "status": status,
            "raw_status": status.value,
            "filled_qty": filled,
            "filled_avg_price": Decimal(str(price)),
            "filled_at": datetime.utcnow(),
        })


# =============================================================================
# Storage Fixtures
# =============================================================================

@pytest_asyncio.fixture
async def database():
    """In-memory database, initialized and disposed per test."""
    db = Database("sqlite+aiosqlite:///:memory:")
    await db.initialize()
    yield db
    await db.close()


async def connect_user(
    database: Database,
    user_id: str,
    auto_trading: bool = True,
    strategy_config: Optional[StrategyConfig] = None,
):
    """Store broker credentials and preferences for a test user."""
    await database.save_broker_account(BrokerAccount(
        user_id=user_id,
        api_key=f"key-{user_id}",
        secret_key=f"secret-{user_id}",
        is_paper=True,
    ))
    await database.save_trading_preferences(TradingPreferences(
        user_id=user_id,
        auto_trading_enabled=auto_trading,
        trading_status=TradingStatus.ACTIVE if auto_trading else TradingStatus.STOPPED,
    ))
    if strategy_config is not None:
        await database.save_strategy_config(strategy_config)


# =============================================================================
# Component Fixtures
# =============================================================================

@pytest.fixture
def fake_gateway():
    return FakeGateway()


@pytest.fixture
def gateway_factory(database, fake_gateway):
    """Factory handing out the shared fake gateway for every user."""
    return GatewayFactory(database, builder=lambda account: fake_gateway)


@pytest.fixture
def activity(database):
    return ActivityLogger(database)


@pytest.fixture
def scheduler_config():
    """No pacing delays in tests."""
    return SchedulerConfig(user_delay_seconds=0, order_delay_seconds=0)


@pytest.fixture
def risk_config():
    return RiskDefaultsConfig()


@pytest.fixture
def risk_gate(database, gateway_factory, activity, risk_config):
    return RiskGate(database, gateway_factory, activity, risk_config)


@pytest.fixture
def strategy_engine(database, gateway_factory, activity):
    return StrategyEngine(database, gateway_factory, activity)


@pytest.fixture
def executor(database, gateway_factory, activity):
    return OrderExecutor(database, gateway_factory, activity)


@pytest.fixture
def reconciler(database, gateway_factory, activity):
    return PortfolioReconciler(database, gateway_factory, activity)


@pytest.fixture
def trading_engine(
    database, gateway_factory, risk_gate, strategy_engine, executor, activity, scheduler_config
):
    return TradingEngine(
        database,
        gateway_factory,
        risk_gate,
        strategy_engine,
        executor,
        activity,
        scheduler_config,
    )
