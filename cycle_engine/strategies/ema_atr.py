"""
EMA crossover strategy with ATR bracket levels.

Entry:
- Fast EMA crosses above the slow EMA on the latest bar
- Fast EMA is still rising

Bracket:
- Stop loss = price - stop_multiplier * ATR (floored at 0.01)
- Take profit = price + take_profit_multiplier * ATR

No sell signals come from this path. Open positions are exited by their
bracket legs at the broker or by the position-level exit check.
"""
from decimal import Decimal

from cycle_engine.core.exceptions import InsufficientData
from cycle_engine.core.models import BarSeries, Signal, SignalType, StrategyConfig, StrategyVariant
from cycle_engine.indicators import atr, ema
from cycle_engine.strategies.base import REASON_INSUFFICIENT_DATA, BaseStrategy

MIN_STOP_PRICE = Decimal("0.01")
REASON_NO_CROSSOVER = "no_crossover"


class EmaAtrStrategy(BaseStrategy):
    """EMA crossover entries with ATR-derived bracket orders."""

    def __init__(self, name: str = StrategyVariant.EMA_ATR_BRACKET.value):
        super().__init__(name)

    def generate_signal(self, series: BarSeries, config: StrategyConfig) -> Signal:
        """
        Evaluate the latest bar for a bullish EMA crossover.

        Args:
            series: Daily bars, oldest first
            config: Strategy configuration snapshot

        Returns:
            Buy signal with stop/take-profit levels, or hold with the
            indicator values attached
        """
        filtered = self.filter_universe(series, config)
        if filtered is not None:
            return filtered

        price = series.last_close
        closes = series.closes
        try:
            fast = ema(closes, config.ema_fast_period)
            slow = ema(closes, config.ema_slow_period)
            atr_values = atr(series.bars, config.atr_period)
        except InsufficientData as e:
            self.logger.debug(
                "strategy.insufficient_data",
                symbol=series.symbol,
                indicator=e.indicator,
                required=e.required,
                available=e.available,
            )
            return self._hold(
                series, price, REASON_INSUFFICIENT_DATA,
                metadata={"indicator": e.indicator, "required": e.required, "available": e.available},
            )

        if len(fast) < 2 or len(slow) < 2:
            return self._hold(series, price, REASON_INSUFFICIENT_DATA)

        cur_fast, prev_fast = fast[-1], fast[-2]
        cur_slow, prev_slow = slow[-1], slow[-2]
        current_atr = atr_values[-1]

        crossed_up = prev_fast <= prev_slow and cur_fast > cur_slow
        fast_rising = cur_fast > prev_fast

        if crossed_up and fast_rising:
            stop_loss = max(MIN_STOP_PRICE, price - config.atr_stop_multiplier * current_atr)
            take_profit = price + config.atr_take_profit_multiplier * current_atr

            self.logger.info(
                "strategy.buy_signal",
                symbol=series.symbol,
                price=str(price),
                stop_loss=str(stop_loss),
                take_profit=str(take_profit),
                atr=str(current_atr),
            )
            return self._create_signal(
                series,
                SignalType.BUY,
                price,
                f"EMA({config.ema_fast_period}) crossed above "
                f"EMA({config.ema_slow_period}) with rising trend",
                stop_loss=stop_loss,
                take_profit=take_profit,
                atr=current_atr,
                ema_fast=cur_fast,
                ema_slow=cur_slow,
            )

        return self._hold(
            series,
            price,
            REASON_NO_CROSSOVER,
            atr=current_atr,
            ema_fast=cur_fast,
            ema_slow=cur_slow,
        )
