"""Base class for all trading strategies."""
from abc import ABC, abstractmethod
from decimal import Decimal
from typing import Any, Dict, Optional

import structlog

from cycle_engine.core.models import (
    BarSeries,
    ExitDecision,
    ExitReason,
    Signal,
    SignalType,
    StrategyConfig,
)

logger = structlog.get_logger(__name__)

REASON_INSUFFICIENT_DATA = "insufficient_data"
REASON_BELOW_MIN_PRICE = "below_min_price"
REASON_BELOW_MIN_VOLUME = "below_min_volume"


def check_exit(
    entry_price: Decimal,
    current_price: Decimal,
    stop_loss_percent: Decimal,
    take_profit_percent: Decimal,
) -> ExitDecision:
    """
    Position-level exit check.

    Sell when the price fell to ``entry * (1 - stop%)`` or rose to
    ``entry * (1 + take%)``.

    Args:
        entry_price: Average entry price of the position
        current_price: Latest price
        stop_loss_percent: Stop distance in percent (5 = 5%)
        take_profit_percent: Target distance in percent

    Returns:
        ExitDecision with reason stop_loss, take_profit or none
    """
    entry_price = Decimal(str(entry_price))
    current_price = Decimal(str(current_price))
    if entry_price <= 0:
        raise ValueError("entry_price must be positive")

    change_percent = (current_price - entry_price) / entry_price * 100
    stop_level = entry_price * (1 - Decimal(str(stop_loss_percent)) / 100)
    target_level = entry_price * (1 + Decimal(str(take_profit_percent)) / 100)

    if current_price <= stop_level:
        return ExitDecision(
            should_sell=True, reason=ExitReason.STOP_LOSS, change_percent=change_percent
        )
    if current_price >= target_level:
        return ExitDecision(
            should_sell=True, reason=ExitReason.TAKE_PROFIT, change_percent=change_percent
        )
    return ExitDecision(should_sell=False, reason=ExitReason.NONE, change_percent=change_percent)


class BaseStrategy(ABC):
    """Abstract base class for trading strategies.

    A strategy turns one symbol's bar series plus the user's configuration
    into exactly one Signal. It never raises past that boundary for data
    problems; insufficient history becomes a hold signal.
    """

    def __init__(self, name: str):
        self.name = name
        self.logger = logger.bind(strategy=name)

    @abstractmethod
    def generate_signal(self, series: BarSeries, config: StrategyConfig) -> Signal:
        """
        Evaluate one symbol.

        Args:
            series: Daily bars, oldest first
            config: Strategy configuration snapshot for this cycle

        Returns:
            One buy or hold Signal
        """

    def check_exit(
        self,
        entry_price: Decimal,
        current_price: Decimal,
        config: StrategyConfig,
    ) -> ExitDecision:
        """Exit check using the configured stop and target percentages."""
        return check_exit(
            entry_price,
            current_price,
            config.stop_loss_percent,
            config.take_profit_percent,
        )

    def filter_universe(self, series: BarSeries, config: StrategyConfig) -> Optional[Signal]:
        """Hold signal when the symbol fails the price or volume filter."""
        price = series.last_close
        if price is None:
            return self._hold(series, Decimal("0"), REASON_INSUFFICIENT_DATA)

        if price < config.min_stock_price:
            return self._hold(
                series, price, REASON_BELOW_MIN_PRICE,
                metadata={"min_stock_price": str(config.min_stock_price)},
            )

        avg_volume = series.average_volume(20)
        if avg_volume < config.min_daily_volume:
            return self._hold(
                series, price, REASON_BELOW_MIN_VOLUME,
                metadata={
                    "average_volume": str(avg_volume),
                    "min_daily_volume": config.min_daily_volume,
                },
            )
        return None

    def _create_signal(
        self,
        series: BarSeries,
        signal_type: SignalType,
        price: Decimal,
        reason: str,
        **fields,
    ) -> Signal:
        """Helper to create a trading signal."""
        return Signal(
            symbol=series.symbol,
            signal_type=signal_type,
            strategy=self.name,
            price=price,
            reason=reason,
            **fields,
        )

    def _hold(
        self,
        series: BarSeries,
        price: Decimal,
        reason: str,
        metadata: Optional[Dict[str, Any]] = None,
        **fields,
    ) -> Signal:
        return self._create_signal(
            series, SignalType.HOLD, price, reason, metadata=metadata or {}, **fields
        )
