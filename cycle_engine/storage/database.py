"""Database storage for engine state.

Tables mirror the per-user records the engine reads and upserts: broker
accounts, trading preferences, strategy configs, risk limits and metric
history, strategy signals, orders, positions, activity logs and alerts.
"""
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

import structlog
from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    func,
    select,
    text,
)
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import declarative_base
from sqlalchemy.pool import StaticPool

from cycle_engine.core.config import database_config
from cycle_engine.core.models import (
    ActivityLog,
    ActivityType,
    Alert,
    AlertType,
    BrokerAccount,
    Order,
    OrderClass,
    OrderSide,
    OrderStatus,
    OrderType,
    Position,
    PositionConcentration,
    PositionSide,
    PositionStatus,
    RiskLimits,
    RiskMetrics,
    SectorConcentration,
    Severity,
    Signal,
    SignalType,
    StrategyConfig,
    TimeInForce,
    TradingPreferences,
    TradingStatus,
)

logger = structlog.get_logger(__name__)

Base = declarative_base()

# Eight decimal places keeps SQLite's float storage round-tripping cleanly
Money = Numeric(28, 8)

ACTIVE_ORDER_STATUSES = (
    OrderStatus.PENDING.value,
    OrderStatus.ACCEPTED.value,
    OrderStatus.PARTIALLY_FILLED.value,
)


# =============================================================================
# Table Models
# =============================================================================

class BrokerAccountModel(Base):
    """SQLAlchemy model for broker credentials."""
    __tablename__ = 'broker_accounts'

    user_id = Column(String, primary_key=True)
    api_key = Column(String, nullable=False)
    secret_key = Column(String, nullable=False)
    is_paper = Column(Boolean, default=True)
    is_connected = Column(Boolean, default=True)
    account_number = Column(String, nullable=True)
    last_synced_at = Column(DateTime, nullable=True)


class TradingPreferencesModel(Base):
    """SQLAlchemy model for trading preferences."""
    __tablename__ = 'trading_preferences'

    user_id = Column(String, primary_key=True)
    auto_trading_enabled = Column(Boolean, default=False, nullable=False)
    trading_status = Column(String, default=TradingStatus.STOPPED.value, nullable=False)
    last_toggle_time = Column(DateTime, default=datetime.utcnow)
    last_toggled_by = Column(String, nullable=True)


class StrategyConfigModel(Base):
    """SQLAlchemy model for strategy configuration (stored as a document)."""
    __tablename__ = 'strategy_configs'

    user_id = Column(String, primary_key=True)
    strategy_variant = Column(String, nullable=False)
    config_json = Column(JSON, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow)


class RiskLimitsModel(Base):
    """SQLAlchemy model for risk limits (stored as a document)."""
    __tablename__ = 'risk_limits'

    user_id = Column(String, primary_key=True)
    limits_json = Column(JSON, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow)


class RiskMetricsModel(Base):
    """SQLAlchemy model for the append-only risk metric history."""
    __tablename__ = 'risk_metrics'

    id = Column(String, primary_key=True)
    user_id = Column(String, nullable=False, index=True)
    current_risk_exposure = Column(Money, default=0)
    portfolio_value = Column(Money, default=0)
    cash_available = Column(Money, default=0)
    daily_pnl = Column(Money, default=0)
    daily_pnl_percent = Column(Money, default=0)
    peak_portfolio_value = Column(Money, default=0)
    current_drawdown = Column(Money, default=0)
    max_drawdown = Column(Money, default=0)
    sector_concentration_json = Column(JSON, default=list)
    position_concentration_json = Column(JSON, default=list)
    correlation_matrix_json = Column(JSON, default=dict)
    volatility_index = Column(Money, default=0)
    calculated_at = Column(DateTime, default=datetime.utcnow, index=True)


class SignalModel(Base):
    """SQLAlchemy model for strategy signals."""
    __tablename__ = 'strategy_signals'

    id = Column(String, primary_key=True)
    user_id = Column(String, nullable=False, index=True)
    symbol = Column(String, nullable=False)
    signal_type = Column(String, nullable=False)
    strategy = Column(String, nullable=False)
    price = Column(Money, nullable=False)
    stop_loss = Column(Money, nullable=True)
    take_profit = Column(Money, nullable=True)
    atr = Column(Money, nullable=True)
    ema_fast = Column(Money, nullable=True)
    ema_slow = Column(Money, nullable=True)
    position_size = Column(Integer, nullable=True)
    risk_amount = Column(Money, nullable=True)
    strength = Column(Money, nullable=True)
    reason = Column(Text, nullable=False)
    executed = Column(Boolean, default=False, nullable=False)
    executed_at = Column(DateTime, nullable=True)
    order_id = Column(String, nullable=True)
    metadata_json = Column(JSON, default=dict)
    created_at = Column(DateTime, default=datetime.utcnow, index=True)


class OrderModel(Base):
    """SQLAlchemy model for orders."""
    __tablename__ = 'orders'

    id = Column(String, primary_key=True)
    user_id = Column(String, nullable=False, index=True)
    broker_order_id = Column(String, nullable=False, unique=True)
    symbol = Column(String, nullable=False)
    side = Column(String, nullable=False)
    order_type = Column(String, nullable=False)
    order_class = Column(String, nullable=False)
    quantity = Column(Money, nullable=False)
    limit_price = Column(Money, nullable=True)
    stop_price = Column(Money, nullable=True)
    take_profit_price = Column(Money, nullable=True)
    stop_loss_price = Column(Money, nullable=True)
    time_in_force = Column(String, nullable=False)
    status = Column(String, nullable=False)
    filled_qty = Column(Money, default=0)
    filled_avg_price = Column(Money, nullable=True)
    submitted_at = Column(DateTime, default=datetime.utcnow)
    filled_at = Column(DateTime, nullable=True)
    cancelled_at = Column(DateTime, nullable=True)
    updated_at = Column(DateTime, nullable=True)
    position_applied = Column(Boolean, default=False, nullable=False)
    signal_id = Column(String, nullable=True)
    metadata_json = Column(JSON, default=dict)


class PositionModel(Base):
    """SQLAlchemy model for positions.

    At most one open row per (user_id, symbol).
    """
    __tablename__ = 'positions'
    __table_args__ = (
        Index(
            'uq_positions_open_user_symbol',
            'user_id',
            'symbol',
            unique=True,
            sqlite_where=text("status = 'open'"),
            postgresql_where=text("status = 'open'"),
        ),
    )

    id = Column(String, primary_key=True)
    user_id = Column(String, nullable=False, index=True)
    symbol = Column(String, nullable=False)
    quantity = Column(Money, nullable=False)
    entry_price = Column(Money, nullable=False)
    current_price = Column(Money, default=0)
    market_value = Column(Money, default=0)
    cost_basis = Column(Money, default=0)
    unrealized_pl = Column(Money, default=0)
    unrealized_pl_percent = Column(Money, default=0)
    side = Column(String, nullable=False)
    status = Column(String, nullable=False)
    stop_loss = Column(Money, nullable=True)
    take_profit = Column(Money, nullable=True)
    opened_at = Column(DateTime, default=datetime.utcnow)
    closed_at = Column(DateTime, nullable=True)
    close_price = Column(Money, nullable=True)
    realized_pl = Column(Money, nullable=True)
    closed_by = Column(String, nullable=True)
    last_updated = Column(DateTime, default=datetime.utcnow)


class ActivityLogModel(Base):
    """SQLAlchemy model for the activity log."""
    __tablename__ = 'activity_logs'

    id = Column(String, primary_key=True)
    user_id = Column(String, nullable=False, index=True)
    type = Column(String, nullable=False)
    action = Column(Text, nullable=False)
    severity = Column(String, nullable=False)
    symbol = Column(String, nullable=True)
    details_json = Column(JSON, default=dict)
    timestamp = Column(DateTime, default=datetime.utcnow, index=True)


class AlertModel(Base):
    """SQLAlchemy model for alerts."""
    __tablename__ = 'alerts'

    id = Column(String, primary_key=True)
    user_id = Column(String, nullable=False, index=True)
    type = Column(String, nullable=False)
    title = Column(String, nullable=False)
    message = Column(Text, nullable=False)
    symbol = Column(String, nullable=True)
    related_data_json = Column(JSON, default=dict)
    is_read = Column(Boolean, default=False)
    is_acknowledged = Column(Boolean, default=False)
    created_at = Column(DateTime, default=datetime.utcnow, index=True)


# =============================================================================
# Database Interface
# =============================================================================

def _to_async_url(db_url: str) -> str:
    if db_url.startswith('sqlite:///') and not db_url.startswith('sqlite+aiosqlite:///'):
        db_url = db_url.replace('sqlite:///', 'sqlite+aiosqlite:///')
    return db_url


def _dec(value: Any) -> Optional[Decimal]:
    """Normalize a stored numeric to Decimal (None stays None)."""
    if value is None:
        return None
    return value if isinstance(value, Decimal) else Decimal(str(value))


class Database:
    """Async database interface."""

    def __init__(self, database_url: Optional[str] = None, echo: Optional[bool] = None):
        db_url = _to_async_url(database_url or database_config.database_url)
        engine_kwargs: Dict[str, Any] = {
            "echo": database_config.echo if echo is None else echo,
        }
        if ":memory:" in db_url:
            # One shared connection, otherwise every session sees an empty database
            engine_kwargs["poolclass"] = StaticPool
            engine_kwargs["connect_args"] = {"check_same_thread": False}

        self.url = db_url
        self.engine: AsyncEngine = create_async_engine(db_url, **engine_kwargs)
        self.session_maker = async_sessionmaker(
            self.engine, class_=AsyncSession, expire_on_commit=False
        )

    async def initialize(self):
        """Create tables."""
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info("database.initialized", url=self.url.split("@")[-1])

    async def close(self):
        """Close database connection."""
        await self.engine.dispose()

    # =========================================================================
    # Broker accounts
    # =========================================================================

    async def save_broker_account(self, account: BrokerAccount):
        async with self.session_maker() as session:
            row = await session.get(BrokerAccountModel, account.user_id)
            if row is None:
                row = BrokerAccountModel(user_id=account.user_id)
                session.add(row)
            row.api_key = account.api_key
            row.secret_key = account.secret_key
            row.is_paper = account.is_paper
            row.is_connected = account.is_connected
            row.account_number = account.account_number
            row.last_synced_at = account.last_synced_at
            await session.commit()

    async def get_broker_account(self, user_id: str) -> Optional[BrokerAccount]:
        async with self.session_maker() as session:
            row = await session.get(BrokerAccountModel, user_id)
            if row is None:
                return None
            return BrokerAccount(
                user_id=row.user_id,
                api_key=row.api_key,
                secret_key=row.secret_key,
                is_paper=row.is_paper,
                is_connected=row.is_connected,
                account_number=row.account_number,
                last_synced_at=row.last_synced_at,
            )

    # =========================================================================
    # Trading preferences
    # =========================================================================

    async def save_trading_preferences(self, prefs: TradingPreferences):
        async with self.session_maker() as session:
            row = await session.get(TradingPreferencesModel, prefs.user_id)
            if row is None:
                row = TradingPreferencesModel(user_id=prefs.user_id)
                session.add(row)
            row.auto_trading_enabled = prefs.auto_trading_enabled
            row.trading_status = prefs.trading_status.value
            row.last_toggle_time = prefs.last_toggle_time
            row.last_toggled_by = prefs.last_toggled_by
            await session.commit()

    async def get_trading_preferences(self, user_id: str) -> Optional[TradingPreferences]:
        async with self.session_maker() as session:
            row = await session.get(TradingPreferencesModel, user_id)
            if row is None:
                return None
            return TradingPreferences(
                user_id=row.user_id,
                auto_trading_enabled=row.auto_trading_enabled,
                trading_status=TradingStatus(row.trading_status),
                last_toggle_time=row.last_toggle_time,
                last_toggled_by=row.last_toggled_by,
            )

    async def get_auto_trading_users(self) -> List[str]:
        """User IDs with auto trading enabled, in stable order."""
        async with self.session_maker() as session:
            result = await session.execute(
                select(TradingPreferencesModel.user_id)
                .where(TradingPreferencesModel.auto_trading_enabled.is_(True))
                .order_by(TradingPreferencesModel.user_id)
            )
            return list(result.scalars().all())

    # =========================================================================
    # Strategy config
    # =========================================================================

    async def save_strategy_config(self, config: StrategyConfig):
        config.updated_at = datetime.utcnow()
        async with self.session_maker() as session:
            row = await session.get(StrategyConfigModel, config.user_id)
            if row is None:
                row = StrategyConfigModel(user_id=config.user_id)
                session.add(row)
            row.strategy_variant = config.strategy_variant.value
            row.config_json = config.model_dump(mode="json")
            row.updated_at = config.updated_at
            await session.commit()

    async def get_strategy_config(self, user_id: str) -> Optional[StrategyConfig]:
        async with self.session_maker() as session:
            row = await session.get(StrategyConfigModel, user_id)
            if row is None:
                return None
            return StrategyConfig.model_validate(row.config_json)

    # =========================================================================
    # Risk limits & metrics
    # =========================================================================

    async def save_risk_limits(self, limits: RiskLimits):
        async with self.session_maker() as session:
            row = await session.get(RiskLimitsModel, limits.user_id)
            if row is None:
                row = RiskLimitsModel(user_id=limits.user_id)
                session.add(row)
            row.limits_json = limits.model_dump(mode="json")
            row.updated_at = limits.updated_at
            await session.commit()

    async def get_risk_limits(self, user_id: str) -> Optional[RiskLimits]:
        async with self.session_maker() as session:
            row = await session.get(RiskLimitsModel, user_id)
            if row is None:
                return None
            return RiskLimits.model_validate(row.limits_json)

    async def save_risk_metrics(self, metrics: RiskMetrics):
        """Append a metrics snapshot (history is never updated in place)."""
        async with self.session_maker() as session:
            session.add(RiskMetricsModel(
                id=metrics.id,
                user_id=metrics.user_id,
                current_risk_exposure=metrics.current_risk_exposure,
                portfolio_value=metrics.portfolio_value,
                cash_available=metrics.cash_available,
                daily_pnl=metrics.daily_pnl,
                daily_pnl_percent=metrics.daily_pnl_percent,
                peak_portfolio_value=metrics.peak_portfolio_value,
                current_drawdown=metrics.current_drawdown,
                max_drawdown=metrics.max_drawdown,
                sector_concentration_json=[
                    s.model_dump(mode="json") for s in metrics.sector_concentration
                ],
                position_concentration_json=[
                    p.model_dump(mode="json") for p in metrics.position_concentration
                ],
                correlation_matrix_json=metrics.correlation_matrix,
                volatility_index=metrics.volatility_index,
                calculated_at=metrics.calculated_at,
            ))
            await session.commit()

    async def get_latest_risk_metrics(self, user_id: str) -> Optional[RiskMetrics]:
        async with self.session_maker() as session:
            result = await session.execute(
                select(RiskMetricsModel)
                .where(RiskMetricsModel.user_id == user_id)
                .order_by(RiskMetricsModel.calculated_at.desc())
                .limit(1)
            )
            row = result.scalar_one_or_none()
            return self._metrics_from_model(row) if row is not None else None

    async def get_risk_metrics_history(self, user_id: str, limit: int = 30) -> List[RiskMetrics]:
        """Most recent snapshots, newest first."""
        async with self.session_maker() as session:
            result = await session.execute(
                select(RiskMetricsModel)
                .where(RiskMetricsModel.user_id == user_id)
                .order_by(RiskMetricsModel.calculated_at.desc())
                .limit(limit)
            )
            return [self._metrics_from_model(r) for r in result.scalars().all()]

    async def get_metric_extremes(self, user_id: str) -> Dict[str, Decimal]:
        """Historical peak portfolio value and max drawdown."""
        async with self.session_maker() as session:
            result = await session.execute(
                select(
                    func.max(RiskMetricsModel.peak_portfolio_value),
                    func.max(RiskMetricsModel.max_drawdown),
                ).where(RiskMetricsModel.user_id == user_id)
            )
            peak, max_dd = result.one()
            return {
                "peak_portfolio_value": _dec(peak) or Decimal("0"),
                "max_drawdown": _dec(max_dd) or Decimal("0"),
            }

    # =========================================================================
    # Signals
    # =========================================================================

    async def save_signal(self, signal: Signal):
        async with self.session_maker() as session:
            row = await session.get(SignalModel, signal.id)
            if row is None:
                row = SignalModel(id=signal.id, created_at=signal.created_at)
                session.add(row)
            row.user_id = signal.user_id
            row.symbol = signal.symbol
            row.signal_type = signal.signal_type.value
            row.strategy = signal.strategy
            row.price = signal.price
            row.stop_loss = signal.stop_loss
            row.take_profit = signal.take_profit
            row.atr = signal.atr
            row.ema_fast = signal.ema_fast
            row.ema_slow = signal.ema_slow
            row.position_size = signal.position_size
            row.risk_amount = signal.risk_amount
            row.strength = signal.strength
            row.reason = signal.reason
            row.executed = signal.executed
            row.executed_at = signal.executed_at
            row.order_id = signal.order_id
            row.metadata_json = signal.metadata
            await session.commit()

    async def get_signal(self, signal_id: str) -> Optional[Signal]:
        async with self.session_maker() as session:
            row = await session.get(SignalModel, signal_id)
            return self._signal_from_model(row) if row is not None else None

    async def get_unexecuted_signals(self, user_id: str, limit: int = 50) -> List[Signal]:
        """Buy signals not yet submitted, newest first."""
        async with self.session_maker() as session:
            result = await session.execute(
                select(SignalModel)
                .where(SignalModel.user_id == user_id)
                .where(SignalModel.executed.is_(False))
                .where(SignalModel.signal_type == SignalType.BUY.value)
                .order_by(SignalModel.created_at.desc())
                .limit(limit)
            )
            return [self._signal_from_model(r) for r in result.scalars().all()]

    async def get_recent_signals(self, user_id: str, limit: int = 50) -> List[Signal]:
        async with self.session_maker() as session:
            result = await session.execute(
                select(SignalModel)
                .where(SignalModel.user_id == user_id)
                .order_by(SignalModel.created_at.desc())
                .limit(limit)
            )
            return [self._signal_from_model(r) for r in result.scalars().all()]

    async def mark_signal_executed(self, signal_id: str, order_id: str) -> Optional[Signal]:
        """
        Flag a signal as executed.

        A signal already executed keeps its original order link.

        Returns:
            The stored signal, or None if it does not exist
        """
        async with self.session_maker() as session:
            row = await session.get(SignalModel, signal_id)
            if row is None:
                return None
            if not row.executed:
                row.executed = True
                row.executed_at = datetime.utcnow()
                row.order_id = order_id
                await session.commit()
            return self._signal_from_model(row)

    # =========================================================================
    # Orders
    # =========================================================================

    async def save_order(self, order: Order):
        """Save or update an order."""
        async with self.session_maker() as session:
            row = await session.get(OrderModel, order.id)
            if row is None:
                row = OrderModel(
                    id=order.id,
                    user_id=order.user_id,
                    broker_order_id=order.broker_order_id,
                    symbol=order.symbol,
                    side=order.side.value,
                    order_type=order.order_type.value,
                    order_class=order.order_class.value,
                    quantity=order.quantity,
                    limit_price=order.limit_price,
                    stop_price=order.stop_price,
                    time_in_force=order.time_in_force.value,
                    submitted_at=order.submitted_at,
                    signal_id=order.signal_id,
                )
                session.add(row)
            row.status = order.status.value
            row.filled_qty = order.filled_qty
            row.filled_avg_price = order.filled_avg_price
            row.take_profit_price = order.take_profit_price
            row.stop_loss_price = order.stop_loss_price
            row.filled_at = order.filled_at
            row.cancelled_at = order.cancelled_at
            row.updated_at = order.updated_at
            row.position_applied = order.position_applied
            row.metadata_json = order.metadata
            await session.commit()

    async def get_order(self, order_id: str) -> Optional[Order]:
        """Get an order by local ID."""
        async with self.session_maker() as session:
            row = await session.get(OrderModel, order_id)
            return self._order_from_model(row) if row is not None else None

    async def get_order_by_broker_id(self, user_id: str, broker_order_id: str) -> Optional[Order]:
        async with self.session_maker() as session:
            result = await session.execute(
                select(OrderModel)
                .where(OrderModel.user_id == user_id)
                .where(OrderModel.broker_order_id == broker_order_id)
            )
            row = result.scalar_one_or_none()
            return self._order_from_model(row) if row is not None else None

    async def get_orders(
        self,
        user_id: str,
        symbol: Optional[str] = None,
        status: Optional[str] = None,
        limit: int = 100,
    ) -> List[Order]:
        """Get orders with optional filters."""
        async with self.session_maker() as session:
            query = (
                select(OrderModel)
                .where(OrderModel.user_id == user_id)
                .order_by(OrderModel.submitted_at.desc())
                .limit(limit)
            )
            if symbol:
                query = query.where(OrderModel.symbol == symbol)
            if status:
                query = query.where(OrderModel.status == status)
            result = await session.execute(query)
            return [self._order_from_model(o) for o in result.scalars().all()]

    async def get_active_orders(self, user_id: str) -> List[Order]:
        """Orders the broker may still fill, plus fills not yet applied."""
        async with self.session_maker() as session:
            result = await session.execute(
                select(OrderModel)
                .where(OrderModel.user_id == user_id)
                .where(
                    OrderModel.status.in_(ACTIVE_ORDER_STATUSES)
                    | (
                        (OrderModel.status == OrderStatus.FILLED.value)
                        & OrderModel.position_applied.is_(False)
                    )
                )
                .order_by(OrderModel.submitted_at)
            )
            return [self._order_from_model(o) for o in result.scalars().all()]

    # =========================================================================
    # Positions
    # =========================================================================

    async def save_position(self, position: Position):
        """
        Save or update a position.

        An open position with an unknown id converges onto the existing open
        row for (user, symbol); the caller's object takes that row's id.
        """
        async with self.session_maker() as session:
            row = await session.get(PositionModel, position.id)
            if row is None and position.is_open:
                result = await session.execute(
                    select(PositionModel)
                    .where(PositionModel.user_id == position.user_id)
                    .where(PositionModel.symbol == position.symbol)
                    .where(PositionModel.status == PositionStatus.OPEN.value)
                )
                row = result.scalar_one_or_none()
                if row is not None:
                    position.id = row.id
            if row is None:
                row = PositionModel(
                    id=position.id,
                    user_id=position.user_id,
                    symbol=position.symbol,
                    opened_at=position.opened_at,
                )
                session.add(row)
            row.quantity = position.quantity
            row.entry_price = position.entry_price
            row.current_price = position.current_price
            row.market_value = position.market_value
            row.cost_basis = position.cost_basis
            row.unrealized_pl = position.unrealized_pl
            row.unrealized_pl_percent = position.unrealized_pl_percent
            row.side = position.side.value
            row.status = position.status.value
            row.stop_loss = position.stop_loss
            row.take_profit = position.take_profit
            row.closed_at = position.closed_at
            row.close_price = position.close_price
            row.realized_pl = position.realized_pl
            row.closed_by = position.closed_by
            row.last_updated = position.last_updated
            await session.commit()

    async def get_open_position(self, user_id: str, symbol: str) -> Optional[Position]:
        """The single open position for (user, symbol), if any."""
        async with self.session_maker() as session:
            result = await session.execute(
                select(PositionModel)
                .where(PositionModel.user_id == user_id)
                .where(PositionModel.symbol == symbol.upper())
                .where(PositionModel.status == PositionStatus.OPEN.value)
            )
            row = result.scalar_one_or_none()
            return self._position_from_model(row) if row is not None else None

    async def get_open_positions(self, user_id: str) -> List[Position]:
        """Get all open positions."""
        async with self.session_maker() as session:
            result = await session.execute(
                select(PositionModel)
                .where(PositionModel.user_id == user_id)
                .where(PositionModel.status == PositionStatus.OPEN.value)
                .order_by(PositionModel.symbol)
            )
            return [self._position_from_model(p) for p in result.scalars().all()]

    async def get_positions(
        self, user_id: str, status: Optional[PositionStatus] = None, limit: int = 200
    ) -> List[Position]:
        async with self.session_maker() as session:
            query = (
                select(PositionModel)
                .where(PositionModel.user_id == user_id)
                .order_by(PositionModel.opened_at.desc())
                .limit(limit)
            )
            if status is not None:
                query = query.where(PositionModel.status == status.value)
            result = await session.execute(query)
            return [self._position_from_model(p) for p in result.scalars().all()]

    # =========================================================================
    # Activity logs & alerts
    # =========================================================================

    async def save_activity_log(self, log: ActivityLog):
        async with self.session_maker() as session:
            session.add(ActivityLogModel(
                id=log.id,
                user_id=log.user_id,
                type=log.type.value,
                action=log.action,
                severity=log.severity.value,
                symbol=log.symbol,
                details_json=log.details,
                timestamp=log.timestamp,
            ))
            await session.commit()

    async def get_activity_logs(
        self,
        user_id: str,
        activity_type: Optional[ActivityType] = None,
        limit: int = 100,
    ) -> List[ActivityLog]:
        async with self.session_maker() as session:
            query = (
                select(ActivityLogModel)
                .where(ActivityLogModel.user_id == user_id)
                .order_by(ActivityLogModel.timestamp.desc())
                .limit(limit)
            )
            if activity_type is not None:
                query = query.where(ActivityLogModel.type == activity_type.value)
            result = await session.execute(query)
            return [
                ActivityLog(
                    id=r.id,
                    user_id=r.user_id,
                    type=ActivityType(r.type),
                    action=r.action,
                    severity=Severity(r.severity),
                    symbol=r.symbol,
                    details=r.details_json or {},
                    timestamp=r.timestamp,
                )
                for r in result.scalars().all()
            ]

    async def save_alert(self, alert: Alert):
        async with self.session_maker() as session:
            row = await session.get(AlertModel, alert.id)
            if row is None:
                row = AlertModel(id=alert.id, user_id=alert.user_id, created_at=alert.created_at)
                session.add(row)
            row.type = alert.type.value
            row.title = alert.title
            row.message = alert.message
            row.symbol = alert.symbol
            row.related_data_json = alert.related_data
            row.is_read = alert.is_read
            row.is_acknowledged = alert.is_acknowledged
            await session.commit()

    async def get_alerts(
        self, user_id: str, unread_only: bool = False, limit: int = 100
    ) -> List[Alert]:
        async with self.session_maker() as session:
            query = (
                select(AlertModel)
                .where(AlertModel.user_id == user_id)
                .order_by(AlertModel.created_at.desc())
                .limit(limit)
            )
            if unread_only:
                query = query.where(AlertModel.is_read.is_(False))
            result = await session.execute(query)
            return [
                Alert(
                    id=r.id,
                    user_id=r.user_id,
                    type=AlertType(r.type),
                    title=r.title,
                    message=r.message,
                    symbol=r.symbol,
                    related_data=r.related_data_json or {},
                    is_read=r.is_read,
                    is_acknowledged=r.is_acknowledged,
                    created_at=r.created_at,
                )
                for r in result.scalars().all()
            ]

    # =========================================================================
    # Helpers
    # =========================================================================

    def _metrics_from_model(self, model: RiskMetricsModel) -> RiskMetrics:
        return RiskMetrics(
            id=model.id,
            user_id=model.user_id,
            current_risk_exposure=_dec(model.current_risk_exposure),
            portfolio_value=_dec(model.portfolio_value),
            cash_available=_dec(model.cash_available),
            daily_pnl=_dec(model.daily_pnl),
            daily_pnl_percent=_dec(model.daily_pnl_percent),
            peak_portfolio_value=_dec(model.peak_portfolio_value),
            current_drawdown=_dec(model.current_drawdown),
            max_drawdown=_dec(model.max_drawdown),
            sector_concentration=[
                SectorConcentration.model_validate(s)
                for s in (model.sector_concentration_json or [])
            ],
            position_concentration=[
                PositionConcentration.model_validate(p)
                for p in (model.position_concentration_json or [])
            ],
            correlation_matrix=model.correlation_matrix_json or {},
            volatility_index=_dec(model.volatility_index),
            calculated_at=model.calculated_at,
        )

    def _signal_from_model(self, model: SignalModel) -> Signal:
        return Signal(
            id=model.id,
            user_id=model.user_id,
            symbol=model.symbol,
            signal_type=SignalType(model.signal_type),
            strategy=model.strategy,
            price=_dec(model.price),
            stop_loss=_dec(model.stop_loss),
            take_profit=_dec(model.take_profit),
            atr=_dec(model.atr),
            ema_fast=_dec(model.ema_fast),
            ema_slow=_dec(model.ema_slow),
            position_size=model.position_size,
            risk_amount=_dec(model.risk_amount),
            strength=_dec(model.strength),
            reason=model.reason,
            executed=model.executed,
            executed_at=model.executed_at,
            order_id=model.order_id,
            metadata=model.metadata_json or {},
            created_at=model.created_at,
        )

    def _order_from_model(self, model: OrderModel) -> Order:
        """Convert DB model to Order object."""
        return Order(
            id=model.id,
            user_id=model.user_id,
            broker_order_id=model.broker_order_id,
            symbol=model.symbol,
            side=OrderSide(model.side),
            order_type=OrderType(model.order_type),
            order_class=OrderClass(model.order_class),
            quantity=_dec(model.quantity),
            limit_price=_dec(model.limit_price),
            stop_price=_dec(model.stop_price),
            take_profit_price=_dec(model.take_profit_price),
            stop_loss_price=_dec(model.stop_loss_price),
            time_in_force=TimeInForce(model.time_in_force),
            status=OrderStatus(model.status),
            filled_qty=_dec(model.filled_qty) or Decimal("0"),
            filled_avg_price=_dec(model.filled_avg_price),
            submitted_at=model.submitted_at,
            filled_at=model.filled_at,
            cancelled_at=model.cancelled_at,
            updated_at=model.updated_at,
            position_applied=model.position_applied,
            signal_id=model.signal_id,
            metadata=model.metadata_json or {},
        )

    def _position_from_model(self, model: PositionModel) -> Position:
        """Convert DB model to Position object."""
        return Position(
            id=model.id,
            user_id=model.user_id,
            symbol=model.symbol,
            quantity=_dec(model.quantity),
            entry_price=_dec(model.entry_price),
            current_price=_dec(model.current_price) or Decimal("0"),
            market_value=_dec(model.market_value) or Decimal("0"),
            cost_basis=_dec(model.cost_basis) or Decimal("0"),
            unrealized_pl=_dec(model.unrealized_pl) or Decimal("0"),
            unrealized_pl_percent=_dec(model.unrealized_pl_percent) or Decimal("0"),
            side=PositionSide(model.side),
            status=PositionStatus(model.status),
            stop_loss=_dec(model.stop_loss),
            take_profit=_dec(model.take_profit),
            opened_at=model.opened_at,
            closed_at=model.closed_at,
            close_price=_dec(model.close_price),
            realized_pl=_dec(model.realized_pl),
            closed_by=model.closed_by,
            last_updated=model.last_updated,
        )
