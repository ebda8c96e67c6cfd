"""
Technical scoring strategy (percent-of-buying-power variant).

Scores RSI, MACD histogram, SMA20/SMA50 trend and a combined strength
value. A buy needs three of four bullish conditions; an exit fires on the
stop/target check or on three of four bearish conditions.
"""
from decimal import Decimal

from cycle_engine.core.exceptions import InsufficientData
from cycle_engine.core.models import (
    BarSeries,
    ExitDecision,
    ExitReason,
    Signal,
    SignalType,
    StrategyConfig,
    StrategyVariant,
)
from cycle_engine.indicators import TREND_BEARISH, TechnicalSnapshot, analyze_technicals
from cycle_engine.strategies.base import REASON_INSUFFICIENT_DATA, BaseStrategy, check_exit

MIN_HISTORY_BARS = 50
REQUIRED_CONDITIONS = 3

BUY_RSI_BELOW = Decimal("40")
BUY_MIN_STRENGTH = Decimal("60")
SELL_RSI_ABOVE = Decimal("70")
SELL_MAX_STRENGTH = Decimal("40")


def buy_conditions(snapshot: TechnicalSnapshot) -> int:
    """Number of bullish conditions met (out of 4)."""
    return sum([
        snapshot.rsi < BUY_RSI_BELOW,
        snapshot.macd.histogram > 0,
        snapshot.trend != TREND_BEARISH,
        snapshot.strength >= BUY_MIN_STRENGTH,
    ])


def sell_conditions(snapshot: TechnicalSnapshot) -> int:
    """Number of bearish conditions met (out of 4)."""
    return sum([
        snapshot.rsi > SELL_RSI_ABOVE,
        snapshot.macd.histogram < 0,
        snapshot.trend == TREND_BEARISH,
        snapshot.strength < SELL_MAX_STRENGTH,
    ])


class TechnicalStrategy(BaseStrategy):
    """RSI / MACD / moving average scoring with market orders."""

    def __init__(self, name: str = StrategyVariant.TECHNICAL_PERCENT.value):
        super().__init__(name)

    def generate_signal(self, series: BarSeries, config: StrategyConfig) -> Signal:
        filtered = self.filter_universe(series, config)
        if filtered is not None:
            return filtered

        price = series.last_close
        try:
            snapshot = analyze_technicals(series.bars)
        except InsufficientData as e:
            return self._hold(
                series, price, REASON_INSUFFICIENT_DATA,
                metadata={"indicator": e.indicator, "required": e.required, "available": e.available},
            )

        passed = buy_conditions(snapshot)
        metadata = {"technicals": snapshot.to_dict(), "conditions_met": passed}

        if passed >= REQUIRED_CONDITIONS:
            self.logger.info(
                "strategy.buy_signal",
                symbol=series.symbol,
                price=str(price),
                strength=str(snapshot.strength),
                conditions_met=passed,
            )
            return self._create_signal(
                series,
                SignalType.BUY,
                price,
                "technical_signal",
                strength=snapshot.strength,
                metadata=metadata,
            )

        return self._hold(
            series, price, "conditions_not_met", metadata=metadata, strength=snapshot.strength
        )

    def evaluate_exit(
        self,
        series: BarSeries,
        entry_price: Decimal,
        config: StrategyConfig,
    ) -> ExitDecision:
        """
        Exit decision for an open position.

        The stop/target check comes first; otherwise three bearish
        conditions trigger a technical exit.

        Raises:
            InsufficientData: Not enough history to score the symbol
        """
        price = series.last_close
        if price is None:
            raise InsufficientData("TECHNICALS", MIN_HISTORY_BARS, 0)

        decision = check_exit(
            entry_price, price, config.stop_loss_percent, config.take_profit_percent
        )
        if decision.should_sell:
            return decision

        snapshot = analyze_technicals(series.bars)
        if sell_conditions(snapshot) >= REQUIRED_CONDITIONS:
            return ExitDecision(
                should_sell=True,
                reason=ExitReason.TECHNICAL,
                change_percent=decision.change_percent,
            )
        return decision
