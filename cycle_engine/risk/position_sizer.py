"""Position sizing.

Two sizing paths:
- Risk-based: a fixed fraction of equity is risked per trade, bounded by the
  remaining portfolio risk budget (EMA/ATR bracket variant).
- Percent of buying power: a fixed notional cap per position (technical
  scoring variant).
"""
from decimal import ROUND_DOWN, Decimal
from typing import Iterable

import structlog

from cycle_engine.core.models import Position, SizingResult

logger = structlog.get_logger(__name__)

MIN_PER_SHARE_RISK = Decimal("0.01")


def open_position_risk(positions: Iterable[Position]) -> Decimal:
    """
    Aggregate risk of open positions.

    Each position contributes ``quantity * |current_price - stop|`` where the
    stop defaults to 5% below entry when none is set.
    """
    total = Decimal("0")
    for position in positions:
        if not position.is_open:
            continue
        total += position.quantity * abs(position.current_price - position.risk_stop)
    return total


def size_by_risk(
    equity: Decimal,
    entry_price: Decimal,
    stop_loss: Decimal,
    risk_per_trade_percent: Decimal,
    open_positions: Iterable[Position],
    max_portfolio_risk_percent: Decimal,
    pending_risk: Decimal = Decimal("0"),
) -> SizingResult:
    """
    Risk-based position size.

    Args:
        equity: Account equity
        entry_price: Expected entry price
        stop_loss: Bracket stop price
        risk_per_trade_percent: Equity risked on this trade (1.0 = 1%)
        open_positions: Currently open positions
        max_portfolio_risk_percent: Equity that may be at risk in total
        pending_risk: Risk already committed to entries that are not yet
            positions (working orders, earlier sizes in the same cycle)

    Returns:
        SizingResult; quantity 0 when the portfolio risk budget is exhausted
    """
    equity = Decimal(str(equity))
    entry_price = Decimal(str(entry_price))
    stop_loss = Decimal(str(stop_loss))

    if equity <= 0 or entry_price <= 0:
        return SizingResult.rejected("invalid_equity_or_price")

    risk_amount = equity * Decimal(str(risk_per_trade_percent)) / 100
    per_share_risk = max(MIN_PER_SHARE_RISK, entry_price - stop_loss)
    quantity = int((risk_amount / per_share_risk).to_integral_value(rounding=ROUND_DOWN))

    current_risk = open_position_risk(open_positions) + Decimal(str(pending_risk))
    max_risk = equity * Decimal(str(max_portfolio_risk_percent)) / 100
    available_risk = max_risk - current_risk

    if risk_amount > available_risk:
        logger.info(
            "position_sizer.risk_budget_exhausted",
            risk_amount=str(risk_amount),
            available_risk=str(available_risk),
            current_portfolio_risk=str(current_risk),
        )
        return SizingResult.rejected(
            "portfolio_risk_budget_exhausted",
            per_share_risk=per_share_risk,
            current_portfolio_risk=current_risk,
            available_risk=available_risk,
        )

    quantity = max(1, quantity)
    logger.debug(
        "position_sizer.size_calculated",
        quantity=quantity,
        risk_amount=str(risk_amount),
        per_share_risk=str(per_share_risk),
    )
    return SizingResult(
        quantity=quantity,
        risk_amount=risk_amount,
        per_share_risk=per_share_risk,
        current_portfolio_risk=current_risk,
        available_risk=available_risk,
    )


def size_by_buying_power(
    buying_power: Decimal,
    price: Decimal,
    max_position_size_percent: Decimal,
) -> int:
    """Whole shares worth ``max_position_size_percent`` of buying power."""
    buying_power = Decimal(str(buying_power))
    price = Decimal(str(price))
    if buying_power <= 0 or price <= 0:
        return 0
    max_value = buying_power * Decimal(str(max_position_size_percent)) / 100
    return int((max_value / price).to_integral_value(rounding=ROUND_DOWN))


def remaining_slots(open_count: int, max_concurrent_positions: int) -> int:
    """New positions allowed before the concurrency cap is hit."""
    return max(0, max_concurrent_positions - open_count)


def can_open_new_position(open_count: int, max_concurrent_positions: int) -> bool:
    return remaining_slots(open_count, max_concurrent_positions) > 0
