"""Risk management for the trading cycle engine.

This module provides:
- Risk-based and buying-power position sizing
- Per-user risk metrics, limit breach checks and alert thresholds
- The active/paused/stopped trading state machine
- Emergency stop
"""

from cycle_engine.risk.position_sizer import (
    can_open_new_position,
    open_position_risk,
    remaining_slots,
    size_by_buying_power,
    size_by_risk,
)
from cycle_engine.risk.risk_gate import (
    BreachCheck,
    BreachRule,
    RiskGate,
)

__all__ = [
    'can_open_new_position',
    'open_position_risk',
    'remaining_slots',
    'size_by_buying_power',
    'size_by_risk',
    'BreachCheck',
    'BreachRule',
    'RiskGate',
]
