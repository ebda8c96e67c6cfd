"""Technical indicators over Decimal price sequences.

All functions are pure and raise ``InsufficientData`` when the input is
shorter than the indicator window. Callers treat that as "cannot evaluate",
never as a neutral reading.
"""
from dataclasses import dataclass
from decimal import Decimal
from typing import List, Sequence

from cycle_engine.core.exceptions import InsufficientData
from cycle_engine.core.models import Bar

TREND_BULLISH = "bullish"
TREND_BEARISH = "bearish"
TREND_NEUTRAL = "neutral"


@dataclass(frozen=True)
class MACDResult:
    """Last MACD reading plus the full MACD line."""

    macd: Decimal
    signal: Decimal
    histogram: Decimal
    macd_series: List[Decimal]


@dataclass(frozen=True)
class TechnicalSnapshot:
    """Indicator readings used by the technical scoring strategy."""

    price: Decimal
    rsi: Decimal
    macd: MACDResult
    sma20: Decimal
    sma50: Decimal
    ema12: Decimal
    ema26: Decimal
    trend: str
    strength: Decimal

    def to_dict(self) -> dict:
        return {
            "price": str(self.price),
            "rsi": str(self.rsi),
            "macd": str(self.macd.macd),
            "macd_signal": str(self.macd.signal),
            "macd_histogram": str(self.macd.histogram),
            "sma20": str(self.sma20),
            "sma50": str(self.sma50),
            "ema12": str(self.ema12),
            "ema26": str(self.ema26),
            "trend": self.trend,
            "strength": str(self.strength),
        }


def _require(indicator: str, required: int, available: int) -> None:
    if available < required:
        raise InsufficientData(indicator, required, available)


def _check_period(period: int) -> None:
    if period < 1:
        raise ValueError(f"period must be positive, got {period}")


def sma(values: Sequence[Decimal], period: int) -> Decimal:
    """Arithmetic mean of the last ``period`` values."""
    _check_period(period)
    _require("SMA", period, len(values))
    return sum(values[-period:], Decimal("0")) / period


def ema(values: Sequence[Decimal], period: int) -> List[Decimal]:
    """Exponential moving average.

    Seeded with the SMA of the first ``period`` values, then smoothed with
    multiplier ``2 / (period + 1)``. The result is aligned to input indices
    ``period - 1`` through the end, so it has ``len(values) - period + 1``
    points.
    """
    _check_period(period)
    _require("EMA", period, len(values))

    multiplier = Decimal("2") / (Decimal(period) + Decimal("1"))
    current = sum(values[:period], Decimal("0")) / period
    result = [current]
    for price in values[period:]:
        current = (price - current) * multiplier + current
        result.append(current)
    return result


def true_ranges(bars: Sequence[Bar]) -> List[Decimal]:
    """True range of each bar from index 1."""
    ranges = []
    for prev, bar in zip(bars, bars[1:]):
        ranges.append(max(
            bar.high - bar.low,
            abs(bar.high - prev.close),
            abs(bar.low - prev.close),
        ))
    return ranges


def atr(bars: Sequence[Bar], period: int) -> List[Decimal]:
    """Average true range: SMA of each trailing ``period`` window of true ranges.

    Requires ``len(bars) >= period + 1``.
    """
    _check_period(period)
    _require("ATR", period + 1, len(bars))

    ranges = true_ranges(bars)
    result = []
    window = sum(ranges[:period], Decimal("0"))
    result.append(window / period)
    for i in range(period, len(ranges)):
        window += ranges[i] - ranges[i - period]
        result.append(window / period)
    return result


def rsi(values: Sequence[Decimal], period: int = 14) -> Decimal:
    """Relative Strength Index with Wilder smoothing.

    Returns 100 when there were no losses over the window.
    """
    _check_period(period)
    _require("RSI", period + 1, len(values))

    changes = [cur - prev for prev, cur in zip(values, values[1:])]
    avg_gain = sum((c for c in changes[:period] if c > 0), Decimal("0")) / period
    avg_loss = sum((-c for c in changes[:period] if c < 0), Decimal("0")) / period

    for change in changes[period:]:
        gain = change if change > 0 else Decimal("0")
        loss = -change if change < 0 else Decimal("0")
        avg_gain = (avg_gain * (period - 1) + gain) / period
        avg_loss = (avg_loss * (period - 1) + loss) / period

    if avg_loss == 0:
        return Decimal("100")
    rs = avg_gain / avg_loss
    return Decimal("100") - Decimal("100") / (Decimal("1") + rs)


def macd(
    values: Sequence[Decimal],
    fast: int = 12,
    slow: int = 26,
    signal: int = 9,
) -> MACDResult:
    """MACD line, signal line and histogram.

    Needs ``slow + signal - 1`` values so the signal EMA has a full window.
    """
    if fast >= slow:
        raise ValueError("fast period must be smaller than slow period")
    _check_period(signal)
    _require("MACD", slow + signal - 1, len(values))

    fast_ema = ema(values, fast)
    slow_ema = ema(values, slow)
    # Align both EMAs to index slow-1 .. end
    offset = slow - fast
    macd_series = [f - s for f, s in zip(fast_ema[offset:], slow_ema)]
    signal_series = ema(macd_series, signal)
    macd_value = macd_series[-1]
    signal_value = signal_series[-1]
    return MACDResult(
        macd=macd_value,
        signal=signal_value,
        histogram=macd_value - signal_value,
        macd_series=macd_series,
    )


def determine_trend(price: Decimal, sma20: Decimal, sma50: Decimal) -> str:
    """Trend from price and the 20/50 SMAs."""
    if price > sma20 and sma20 > sma50:
        return TREND_BULLISH
    if price < sma20 and sma20 < sma50:
        return TREND_BEARISH
    return TREND_NEUTRAL


def signal_strength(
    rsi_value: Decimal,
    macd_histogram: Decimal,
    trend: str,
    price_above_sma20: bool,
) -> Decimal:
    """Score the technical picture from 0 (bearish) to 100 (bullish).

    RSI adds 30 when oversold, removes 30 when overbought and adds 10 in the
    40-60 band. MACD momentum and price against SMA20 move the score by 30
    and 20; the trend by 20. The sum is shifted by 50 and clamped.
    """
    score = Decimal("0")

    if rsi_value < 30:
        score += 30
    elif rsi_value > 70:
        score -= 30
    elif 40 <= rsi_value <= 60:
        score += 10

    if macd_histogram > 0:
        score += 30
    elif macd_histogram < 0:
        score -= 30

    if trend == TREND_BULLISH:
        score += 20
    elif trend == TREND_BEARISH:
        score -= 20

    score += 20 if price_above_sma20 else -20

    return max(Decimal("0"), min(Decimal("100"), score + 50))


def analyze_technicals(bars: Sequence[Bar]) -> TechnicalSnapshot:
    """Compute the full technical snapshot for a bar series.

    Raises:
        InsufficientData: Fewer than 50 bars (SMA50 window).
    """
    prices = [b.close for b in bars]
    _require("TECHNICALS", 50, len(prices))

    price = prices[-1]
    rsi_value = rsi(prices, 14)
    macd_value = macd(prices)
    sma20 = sma(prices, 20)
    sma50 = sma(prices, 50)
    trend = determine_trend(price, sma20, sma50)
    strength = signal_strength(rsi_value, macd_value.histogram, trend, price > sma20)

    return TechnicalSnapshot(
        price=price,
        rsi=rsi_value,
        macd=macd_value,
        sma20=sma20,
        sma50=sma50,
        ema12=ema(prices, 12)[-1],
        ema26=ema(prices, 26)[-1],
        trend=trend,
        strength=strength,
    )
