"""Strategy analysis service.

Fetches bars for a user's universe, runs the configured strategy, sizes
buy signals and stores them. Order submission is left to the trading engine.
"""
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Optional

import structlog
from pydantic import ValidationError

from cycle_engine.core.config import (
    AlpacaAPIConfig,
    StrategyDefaultsConfig,
    alpaca_config,
    strategy_defaults,
)
from cycle_engine.core.exceptions import GatewayError, InsufficientData, StrategyConfigError
from cycle_engine.core.models import (
    AccountSnapshot,
    ActivityType,
    BarSeries,
    ExitDecision,
    OrderSide,
    Position,
    Signal,
    SizingResult,
    StrategyConfig,
    StrategyVariant,
)
from cycle_engine.core.monitoring import ActivityLogger
from cycle_engine.core.universe import tradeable_stocks
from cycle_engine.exchange.gateway import BrokerGateway, GatewayFactory
from cycle_engine.risk.position_sizer import size_by_buying_power, size_by_risk
from cycle_engine.strategies.ema_atr import EmaAtrStrategy
from cycle_engine.strategies.technical import MIN_HISTORY_BARS, TechnicalStrategy

logger = structlog.get_logger(__name__)

# Bars requested for the technical variant (calendar days)
TECHNICAL_LOOKBACK_DAYS = 60


@dataclass
class ExitCandidate:
    """An open position the technical variant wants to sell."""
    position: Position
    decision: ExitDecision
    price: Decimal


class StrategyEngine:
    """
    Runs strategy analysis for one user at a time.

    Args:
        database: Storage for configs, signals and positions
        gateway_factory: Builds a broker gateway for a user
        activity: Activity log writer
    """

    def __init__(
        self,
        database,
        gateway_factory: GatewayFactory,
        activity: Optional[ActivityLogger] = None,
        defaults: Optional[StrategyDefaultsConfig] = None,
        api_config: Optional[AlpacaAPIConfig] = None,
    ):
        self.database = database
        self.gateway_factory = gateway_factory
        self.activity = activity or ActivityLogger(database)
        self.defaults = defaults or strategy_defaults
        self.api_config = api_config or alpaca_config

        self.ema_atr = EmaAtrStrategy()
        self.technical = TechnicalStrategy()

    # =========================================================================
    # Configuration
    # =========================================================================

    def default_config(self, user_id: str) -> StrategyConfig:
        d = self.defaults
        return StrategyConfig(
            user_id=user_id,
            strategy_variant=StrategyVariant(d.strategy_variant),
            max_position_size_percent=Decimal(str(d.max_position_size_percent)),
            max_concurrent_positions=d.max_concurrent_positions,
            stop_loss_percent=Decimal(str(d.stop_loss_percent)),
            take_profit_percent=Decimal(str(d.take_profit_percent)),
            min_stock_price=Decimal(str(d.min_stock_price)),
            min_daily_volume=d.min_daily_volume,
            trading_universe=d.trading_universe,
            ema_fast_period=d.ema_fast_period,
            ema_slow_period=d.ema_slow_period,
            atr_period=d.atr_period,
            atr_stop_multiplier=Decimal(str(d.atr_stop_multiplier)),
            atr_take_profit_multiplier=Decimal(str(d.atr_take_profit_multiplier)),
            risk_per_trade_percent=Decimal(str(d.risk_per_trade_percent)),
            max_portfolio_risk_percent=Decimal(str(d.max_portfolio_risk_percent)),
        )

    async def get_strategy_config(self, user_id: str) -> StrategyConfig:
        """
        Stored configuration, created from defaults when missing.

        Raises:
            StrategyConfigError: The stored configuration no longer validates
        """
        try:
            config = await self.database.get_strategy_config(user_id)
        except ValidationError as e:
            raise StrategyConfigError(f"Invalid strategy config for {user_id}: {e}") from e
        if config is None:
            config = self.default_config(user_id)
            await self.database.save_strategy_config(config)
            logger.info("strategy_engine.default_config_created", user_id=user_id)
        return config

    async def update_strategy_config(self, user_id: str, updates: Dict[str, Any]) -> StrategyConfig:
        """
        Apply a partial update and store the result.

        Raises:
            StrategyConfigError: Unknown field or invalid value
        """
        current = await self.get_strategy_config(user_id)
        merged = current.model_dump()
        for key in updates:
            if key in ("user_id", "created_at", "updated_at") or key not in merged:
                raise StrategyConfigError(f"Unknown strategy setting: {key}")
        merged.update(updates)
        try:
            config = StrategyConfig.model_validate(merged)
        except ValidationError as e:
            raise StrategyConfigError(str(e)) from e
        await self.database.save_strategy_config(config)
        logger.info("strategy_engine.config_updated", user_id=user_id, fields=sorted(updates))
        return config

    # =========================================================================
    # Market data
    # =========================================================================

    async def _fetch_series(
        self,
        gateway: BrokerGateway,
        user_id: str,
        symbol: str,
        lookback_days: int,
    ) -> Optional[BarSeries]:
        """Bars for one symbol; None when the fetch failed."""
        end = datetime.utcnow()
        start = end - timedelta(days=lookback_days)
        try:
            return await gateway.get_bars(symbol, start, end)
        except GatewayError as e:
            logger.warning(
                "strategy_engine.bars_fetch_failed",
                user_id=user_id,
                symbol=symbol,
                error=str(e),
            )
            return None

    # =========================================================================
    # EMA / ATR analysis
    # =========================================================================

    async def run_strategy_analysis(
        self,
        user_id: str,
        gateway: Optional[BrokerGateway] = None,
        config: Optional[StrategyConfig] = None,
    ) -> List[Signal]:
        """
        Evaluate every symbol in the user's trading universe.

        Buy signals are sized against the portfolio risk budget and stored;
        holds are returned but not stored.

        Args:
            user_id: User to analyse
            gateway: Gateway to reuse; one is built (and closed) otherwise
            config: Configuration snapshot for this cycle

        Returns:
            One signal per analysed symbol

        Raises:
            AccountNotConnected: The user has no connected broker account
        """
        async with self.gateway_factory.session(user_id, gateway) as gw:
            config = (config or await self.get_strategy_config(user_id)).snapshot()
            account = await gw.get_account()
            return await self._analyse_universe(user_id, gw, config, account)

    async def _analyse_universe(
        self,
        user_id: str,
        gateway: BrokerGateway,
        config: StrategyConfig,
        account: AccountSnapshot,
    ) -> List[Signal]:
        universe = sorted(config.trading_universe or self.defaults.trading_universe)
        open_positions = await self.database.get_open_positions(user_id)
        pending_risk = await self.pending_entry_risk(user_id)
        signals: List[Signal] = []

        for symbol in universe:
            try:
                signal = await self._analyse_symbol(user_id, gateway, symbol, config)
                if signal is None:
                    continue
                if signal.is_buy:
                    sizing = self._apply_risk_sizing(
                        signal, account, open_positions, config, pending_risk
                    )
                    await self.database.save_signal(signal)
                    await self.activity.create_activity_log(
                        user_id,
                        ActivityType.SIGNAL,
                        f"Buy signal generated for {symbol}",
                        details={
                            "price": signal.price,
                            "stop_loss": signal.stop_loss,
                            "take_profit": signal.take_profit,
                            "position_size": signal.position_size,
                            "risk_amount": signal.risk_amount,
                        },
                        symbol=symbol,
                    )
                    if sizing.approved:
                        pending_risk += sizing.risk_amount
            except Exception as e:
                logger.error(
                    "strategy_engine.symbol_failed",
                    user_id=user_id,
                    symbol=symbol,
                    error=str(e),
                    error_type=type(e).__name__,
                )
                continue
            signals.append(signal)

        logger.info(
            "strategy_engine.analysis_completed",
            user_id=user_id,
            symbols=len(universe),
            signals=len(signals),
            buys=sum(1 for s in signals if s.is_buy),
        )
        return signals

    async def _analyse_symbol(
        self,
        user_id: str,
        gateway: BrokerGateway,
        symbol: str,
        config: StrategyConfig,
    ) -> Optional[Signal]:
        series = await self._fetch_series(
            gateway, user_id, symbol, self.api_config.bars_lookback_days
        )
        if series is None:
            return None
        if len(series) < config.min_bars_required:
            logger.debug(
                "strategy_engine.insufficient_bars",
                user_id=user_id,
                symbol=symbol,
                bars=len(series),
                required=config.min_bars_required,
            )
            return None

        signal = self.ema_atr.generate_signal(series, config)
        signal.user_id = user_id
        return signal

    async def pending_entry_risk(self, user_id: str) -> Decimal:
        """
        Risk committed to buy orders whose fill is not yet a position.

        Each working (or filled but unapplied) buy contributes the risk
        amount of the signal it executed.
        """
        total = Decimal("0")
        for order in await self.database.get_active_orders(user_id):
            if order.side != OrderSide.BUY or not order.signal_id:
                continue
            signal = await self.database.get_signal(order.signal_id)
            if signal is not None and signal.risk_amount:
                total += signal.risk_amount
        return total

    def _apply_risk_sizing(
        self,
        signal: Signal,
        account: AccountSnapshot,
        open_positions: Iterable[Position],
        config: StrategyConfig,
        pending_risk: Decimal = Decimal("0"),
    ) -> SizingResult:
        sizing = size_by_risk(
            equity=account.equity,
            entry_price=signal.price,
            stop_loss=signal.stop_loss,
            risk_per_trade_percent=config.risk_per_trade_percent,
            open_positions=open_positions,
            max_portfolio_risk_percent=config.max_portfolio_risk_percent,
            pending_risk=pending_risk,
        )
        signal.position_size = sizing.quantity
        signal.risk_amount = sizing.risk_amount
        signal.metadata["sizing"] = {
            "per_share_risk": str(sizing.per_share_risk),
            "current_portfolio_risk": str(sizing.current_portfolio_risk),
            "available_risk": str(sizing.available_risk),
            "rejected_reason": sizing.rejected_reason,
        }
        return sizing

    # =========================================================================
    # Technical scoring analysis
    # =========================================================================

    async def find_exit_candidates(
        self,
        user_id: str,
        gateway: BrokerGateway,
        config: StrategyConfig,
    ) -> List[ExitCandidate]:
        """Open positions whose exit check or bearish score says sell."""
        candidates: List[ExitCandidate] = []
        for position in await self.database.get_open_positions(user_id):
            series = await self._fetch_series(
                gateway, user_id, position.symbol, TECHNICAL_LOOKBACK_DAYS
            )
            if series is None or len(series) < MIN_HISTORY_BARS:
                continue
            try:
                decision = self.technical.evaluate_exit(series, position.entry_price, config)
            except InsufficientData:
                continue
            except Exception as e:
                logger.error(
                    "strategy_engine.symbol_failed",
                    user_id=user_id,
                    symbol=position.symbol,
                    error=str(e),
                    error_type=type(e).__name__,
                )
                continue
            if decision.should_sell:
                candidates.append(ExitCandidate(position, decision, series.last_close))
        return candidates

    async def find_buy_candidates(
        self,
        user_id: str,
        gateway: BrokerGateway,
        config: StrategyConfig,
        account: AccountSnapshot,
        held_symbols: Iterable[str],
        candidates_per_cycle: int,
        max_new_positions: int,
    ) -> List[Signal]:
        """
        Score the sector universe and size the strongest buys.

        Returns:
            Up to ``max_new_positions`` buy signals with position_size set
            from buying power (0 when buying power is insufficient)
        """
        held = {s.upper() for s in held_symbols}
        symbols = [s for s in tradeable_stocks(config.sector_preferences) if s not in held]

        buys: List[Signal] = []
        for symbol in symbols[:candidates_per_cycle]:
            series = await self._fetch_series(gateway, user_id, symbol, TECHNICAL_LOOKBACK_DAYS)
            if series is None or len(series) < MIN_HISTORY_BARS:
                continue
            try:
                signal = self.technical.generate_signal(series, config)
            except Exception as e:
                logger.error(
                    "strategy_engine.symbol_failed",
                    user_id=user_id,
                    symbol=symbol,
                    error=str(e),
                    error_type=type(e).__name__,
                )
                continue
            signal.user_id = user_id
            if signal.is_buy:
                buys.append(signal)

        buys.sort(key=lambda s: s.strength or Decimal("0"), reverse=True)
        selected = buys[:max_new_positions]
        for signal in selected:
            signal.position_size = size_by_buying_power(
                account.buying_power, signal.price, config.max_position_size_percent
            )
            await self.database.save_signal(signal)
        return selected

    # =========================================================================
    # Signal queries
    # =========================================================================

    async def get_unexecuted_signals(self, user_id: str, limit: int = 50) -> List[Signal]:
        return await self.database.get_unexecuted_signals(user_id, limit=limit)

    async def get_recent_signals(self, user_id: str, limit: int = 50) -> List[Signal]:
        return await self.database.get_recent_signals(user_id, limit=limit)

    async def mark_signal_executed(self, signal_id: str, order_id: str) -> Optional[Signal]:
        """Link a signal to its order; an executed signal keeps its first link."""
        signal = await self.database.mark_signal_executed(signal_id, order_id)
        if signal is not None and signal.order_id != order_id:
            logger.warning(
                "strategy_engine.signal_already_executed",
                signal_id=signal_id,
                order_id=signal.order_id,
            )
        return signal
