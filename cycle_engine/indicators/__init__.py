"""
Technical indicator library.

Pure functions over Decimal sequences:
- sma, ema, atr: trend and volatility averages
- rsi, macd: momentum oscillators
- analyze_technicals: combined snapshot for the technical scoring strategy
"""

from cycle_engine.indicators.technical import (
    TREND_BEARISH,
    TREND_BULLISH,
    TREND_NEUTRAL,
    MACDResult,
    TechnicalSnapshot,
    analyze_technicals,
    atr,
    determine_trend,
    ema,
    macd,
    rsi,
    signal_strength,
    sma,
    true_ranges,
)

__all__ = [
    "TREND_BEARISH",
    "TREND_BULLISH",
    "TREND_NEUTRAL",
    "MACDResult",
    "TechnicalSnapshot",
    "analyze_technicals",
    "atr",
    "determine_trend",
    "ema",
    "macd",
    "rsi",
    "signal_strength",
    "sma",
    "true_ranges",
]
