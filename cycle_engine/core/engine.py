"""Per-user trading pass - orchestrates risk, strategy and execution."""
import asyncio
from typing import Awaitable, Callable, List, Optional, Set

import structlog

from cycle_engine.core.config import SchedulerConfig, scheduler_config
from cycle_engine.core.exceptions import AccountNotConnected
from cycle_engine.core.execution import OrderExecutor
from cycle_engine.core.models import (
    ActivityType,
    AlertType,
    BracketOrderParams,
    ExitReason,
    OrderSide,
    Severity,
    Signal,
    StrategyConfig,
    StrategyVariant,
    TradingStatus,
    UserCycleOutcome,
    UserCycleResult,
)
from cycle_engine.core.monitoring import ActivityLogger
from cycle_engine.exchange.gateway import BrokerGateway, GatewayFactory
from cycle_engine.risk.position_sizer import remaining_slots
from cycle_engine.risk.risk_gate import RiskGate
from cycle_engine.strategies.analysis import StrategyEngine

logger = structlog.get_logger(__name__)

Sleeper = Callable[[float], Awaitable[None]]

# Alert raised for each exit reason of the technical variant
EXIT_ALERTS = {
    ExitReason.STOP_LOSS: (AlertType.CRITICAL, "Stop Loss Triggered"),
    ExitReason.TAKE_PROFIT: (AlertType.INFO, "Take Profit Target Hit"),
}


class TradingEngine:
    """
    Runs one user's pass through a trading cycle.

    Order of work:
    - Preferences gate (auto trading must be enabled)
    - Fresh risk check; a halting breach pauses the user and stops here
    - Alert thresholds
    - Strategy variant dispatch, sizing and order submission

    Failures of a single order are isolated; anything else propagates to
    the scheduler, which isolates users from each other.
    """

    def __init__(
        self,
        database,
        gateway_factory: GatewayFactory,
        risk_gate: RiskGate,
        strategy_engine: StrategyEngine,
        executor: OrderExecutor,
        activity: Optional[ActivityLogger] = None,
        config: Optional[SchedulerConfig] = None,
        sleep: Optional[Sleeper] = None,
    ):
        self.database = database
        self.gateway_factory = gateway_factory
        self.risk_gate = risk_gate
        self.strategy_engine = strategy_engine
        self.executor = executor
        self.activity = activity or ActivityLogger(database)
        self.config = config or scheduler_config
        self._sleep = sleep or asyncio.sleep

    async def _pause_between_orders(self):
        if self.config.order_delay_seconds > 0:
            await self._sleep(self.config.order_delay_seconds)

    async def _committed_symbols(self, user_id: str) -> Set[str]:
        """Symbols with an open position or a working buy order."""
        held = {p.symbol for p in await self.database.get_open_positions(user_id)}
        held.update(
            o.symbol
            for o in await self.database.get_active_orders(user_id)
            if o.side == OrderSide.BUY
        )
        return held

    async def process_user_trading(self, user_id: str) -> UserCycleResult:
        """
        Process one user.

        Returns:
            UserCycleResult with outcome completed, skipped or halted
        """
        prefs = await self.database.get_trading_preferences(user_id)
        if prefs is None or not prefs.auto_trading_enabled:
            return UserCycleResult(
                user_id=user_id,
                outcome=UserCycleOutcome.SKIPPED,
                reason="auto_trading_disabled",
            )

        try:
            gateway = await self.gateway_factory.for_user(user_id)
        except AccountNotConnected as e:
            logger.warning("engine.account_not_connected", user_id=user_id, detail=str(e))
            return UserCycleResult(
                user_id=user_id,
                outcome=UserCycleOutcome.SKIPPED,
                reason="account_not_connected",
            )

        try:
            return await self._process_with_gateway(user_id, gateway)
        finally:
            await gateway.close()

    async def _process_with_gateway(self, user_id: str, gateway: BrokerGateway) -> UserCycleResult:
        report = await self.risk_gate.check_risk_limit_breaches(user_id, fresh=True)
        status = await self.risk_gate.evaluate_trading_state(user_id, report)

        if report.should_halt_trading:
            logger.warning("engine.trading_halted", user_id=user_id, breaches=report.breaches)
            await self.activity.create_activity_log(
                user_id,
                ActivityType.RISK,
                "Trading halted due to risk limit breaches",
                Severity.WARNING,
                {"breaches": report.breaches},
            )
            return UserCycleResult(
                user_id=user_id,
                outcome=UserCycleOutcome.HALTED,
                reason="; ".join(report.breaches),
            )
        if status == TradingStatus.STOPPED:
            return UserCycleResult(
                user_id=user_id, outcome=UserCycleOutcome.SKIPPED, reason="trading_stopped"
            )

        await self.risk_gate.check_alert_thresholds(user_id)

        config = (await self.strategy_engine.get_strategy_config(user_id)).snapshot()
        result = UserCycleResult(user_id=user_id, outcome=UserCycleOutcome.COMPLETED)

        if config.strategy_variant == StrategyVariant.TECHNICAL_PERCENT:
            await self._run_technical(user_id, gateway, config, result)
        else:
            await self._run_ema_atr(user_id, gateway, config, result)

        logger.info(
            "engine.user_processed",
            user_id=user_id,
            variant=config.strategy_variant.value,
            signals=result.signals_generated,
            orders=result.orders_submitted,
            errors=len(result.errors),
        )
        return result

    # =========================================================================
    # EMA / ATR bracket variant
    # =========================================================================

    async def _run_ema_atr(
        self,
        user_id: str,
        gateway: BrokerGateway,
        config: StrategyConfig,
        result: UserCycleResult,
    ):
        signals = await self.strategy_engine.run_strategy_analysis(user_id, gateway, config)
        result.signals_generated = len(signals)

        held = await self._committed_symbols(user_id)
        slots = remaining_slots(len(held), config.max_concurrent_positions)

        actionable: List[Signal] = [
            s for s in signals if s.is_actionable and s.symbol not in held
        ][:slots]

        for signal in actionable:
            stored = await self.database.get_signal(signal.id)
            if stored is not None and stored.executed:
                continue
            try:
                params = BracketOrderParams(
                    symbol=signal.symbol,
                    quantity=signal.position_size,
                    take_profit=signal.take_profit,
                    stop_loss=signal.stop_loss,
                )
                await self.executor.submit_bracket_order(
                    user_id, params, signal_id=signal.id, gateway=gateway
                )
                result.orders_submitted += 1
            except Exception as e:
                logger.error(
                    "engine.signal_execution_failed",
                    user_id=user_id,
                    symbol=signal.symbol,
                    error=str(e),
                )
                result.errors.append(f"{signal.symbol}: {e}")
            await self._pause_between_orders()

    # =========================================================================
    # Technical scoring variant
    # =========================================================================

    async def _run_technical(
        self,
        user_id: str,
        gateway: BrokerGateway,
        config: StrategyConfig,
        result: UserCycleResult,
    ):
        clock = await gateway.get_clock()
        if not clock.is_open:
            logger.info("engine.market_closed", user_id=user_id)
            result.reason = "market_closed"
            return

        exits = await self.strategy_engine.find_exit_candidates(user_id, gateway, config)
        for candidate in exits:
            position = candidate.position
            try:
                await self.executor.submit_market_order(
                    user_id,
                    position.symbol,
                    position.quantity,
                    OrderSide.SELL,
                    reason=candidate.decision.reason.value,
                    gateway=gateway,
                )
                result.orders_submitted += 1
                alert_type, title = EXIT_ALERTS.get(
                    candidate.decision.reason, (AlertType.INFO, "Sell Order Submitted")
                )
                await self.activity.create_alert(
                    user_id,
                    alert_type,
                    title,
                    f"Sell {position.quantity} {position.symbol} at ~${candidate.price:.2f} "
                    f"({candidate.decision.change_percent:.2f}%)",
                    {"reason": candidate.decision.reason, "price": candidate.price},
                    symbol=position.symbol,
                )
            except Exception as e:
                logger.error(
                    "engine.exit_failed", user_id=user_id, symbol=position.symbol, error=str(e)
                )
                result.errors.append(f"{position.symbol}: {e}")
            await self._pause_between_orders()

        held = await self._committed_symbols(user_id)
        slots = min(
            remaining_slots(len(held), config.max_concurrent_positions),
            self.config.max_new_positions_per_cycle,
        )
        result.signals_generated = len(exits)
        if slots <= 0:
            return

        account = await gateway.get_account()
        buys = await self.strategy_engine.find_buy_candidates(
            user_id,
            gateway,
            config,
            account,
            held_symbols=held,
            candidates_per_cycle=self.config.candidates_per_cycle,
            max_new_positions=slots,
        )
        result.signals_generated += len(buys)

        for signal in buys:
            if not signal.position_size:
                await self.activity.create_alert(
                    user_id,
                    AlertType.WARNING,
                    "Insufficient Buying Power",
                    f"Not enough buying power to buy {signal.symbol} at ${signal.price:.2f}",
                    {"buying_power": account.buying_power, "price": signal.price},
                    symbol=signal.symbol,
                )
                continue
            try:
                await self.executor.submit_market_order(
                    user_id,
                    signal.symbol,
                    signal.position_size,
                    OrderSide.BUY,
                    signal_id=signal.id,
                    gateway=gateway,
                )
                result.orders_submitted += 1
                await self.activity.create_alert(
                    user_id,
                    AlertType.INFO,
                    "Buy Order Submitted",
                    f"Buy {signal.position_size} {signal.symbol} at ~${signal.price:.2f}",
                    {"strength": signal.strength, "price": signal.price},
                    symbol=signal.symbol,
                )
            except Exception as e:
                logger.error(
                    "engine.buy_failed", user_id=user_id, symbol=signal.symbol, error=str(e)
                )
                result.errors.append(f"{signal.symbol}: {e}")
            await self._pause_between_orders()
