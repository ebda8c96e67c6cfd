"""
Trading strategies for the trading cycle engine.

- EmaAtrStrategy: EMA crossover entries with ATR bracket levels (default)
- TechnicalStrategy: RSI/MACD/SMA scoring sized from buying power
- StrategyEngine: runs a user's strategy over their universe and stores signals
"""

from cycle_engine.strategies.base import BaseStrategy, check_exit
from cycle_engine.strategies.ema_atr import EmaAtrStrategy
from cycle_engine.strategies.technical import TechnicalStrategy
from cycle_engine.strategies.analysis import ExitCandidate, StrategyEngine

__all__ = [
    "BaseStrategy",
    "check_exit",
    "EmaAtrStrategy",
    "TechnicalStrategy",
    "ExitCandidate",
    "StrategyEngine",
]
