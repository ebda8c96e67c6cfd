"""Per-user risk gate.

Computes portfolio risk metrics from the broker account, compares them with
the user's limits, drives the active/paused/stopped trading state and owns
the emergency stop.

Breach checks return a structured BreachReport instead of raising; the
scheduler decides what to do with it.
"""
import asyncio
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional

import numpy as np
import structlog

from cycle_engine.core.config import RiskDefaultsConfig, risk_defaults
from cycle_engine.core.exceptions import AccountNotConnected
from cycle_engine.core.models import (
    AccountSnapshot,
    ActivityType,
    AlertType,
    BreachReport,
    BrokerPosition,
    EmergencyStopResult,
    LimitType,
    LossLimit,
    PositionConcentration,
    RiskLimits,
    RiskMetrics,
    SectorConcentration,
    Severity,
    ThresholdSetting,
    TradingPreferences,
    TradingStatus,
)
from cycle_engine.core.monitoring import ActivityLogger
from cycle_engine.core.universe import sector_for
from cycle_engine.exchange.gateway import BrokerGateway, GatewayFactory

logger = structlog.get_logger(__name__)

EMERGENCY_STOP_ACTOR = "emergency_stop"

# Correlation estimates by sector relationship
SAME_SECTOR_CORRELATION = 0.6
CROSS_SECTOR_CORRELATION = 0.2

TOP_POSITIONS = 10
VOLATILITY_WINDOW = 30

# Settings whose value is a percentage and must stay within 0..100
PERCENT_SETTINGS = (
    "portfolio_drawdown_limit",
    "position_loss_threshold",
    "daily_loss_threshold",
    "drawdown_threshold",
    "volatility_threshold",
)


@dataclass
class BreachCheck:
    """Result of one breach rule.

    Attributes:
        breached: Whether the limit was crossed
        message: Human-readable breach description
        halts: Whether this breach should stop new trading
    """
    breached: bool
    message: str = ""
    halts: bool = False


@dataclass
class BreachRule:
    """A limit evaluated against a metrics snapshot.

    Attributes:
        name: Unique identifier for the rule
        check_fn: Function (metrics, limits) -> BreachCheck
        priority: Lower numbers are evaluated first
    """
    name: str
    check_fn: Callable[[RiskMetrics, RiskLimits], BreachCheck]
    priority: int = 100


class RiskGate:
    """
    Risk limits, metrics and trading state for every user.

    Args:
        database: Storage for limits, metrics, positions and preferences
        gateway_factory: Builds a broker gateway for a user
        activity: Activity log and alert writer
        config: Defaults for new limits and the metrics cache window
    """

    def __init__(
        self,
        database,
        gateway_factory: GatewayFactory,
        activity: Optional[ActivityLogger] = None,
        config: Optional[RiskDefaultsConfig] = None,
    ):
        self.database = database
        self.gateway_factory = gateway_factory
        self.activity = activity or ActivityLogger(database)
        self.config = config or risk_defaults

        self._breach_rules: List[BreachRule] = []
        self._register_default_rules()

    def _register_default_rules(self):
        """Register the breach rules in priority order."""
        self._breach_rules = [
            BreachRule(
                name="daily_loss_limit",
                check_fn=self._check_daily_loss_limit,
                priority=1,
            ),
            BreachRule(
                name="portfolio_drawdown_limit",
                check_fn=self._check_drawdown_limit,
                priority=2,
            ),
        ]
        self._breach_rules.sort(key=lambda r: r.priority)

    # =========================================================================
    # Limits
    # =========================================================================

    def default_limits(self, user_id: str) -> RiskLimits:
        return RiskLimits(
            user_id=user_id,
            daily_loss_limit=LossLimit(
                value=Decimal(str(self.config.daily_loss_limit_percent)),
                type=LimitType.PERCENTAGE,
            ),
            portfolio_drawdown_limit=ThresholdSetting(
                value=Decimal(str(self.config.portfolio_drawdown_limit_percent)),
            ),
            halt_trading_on_daily_limit=self.config.halt_trading_on_daily_limit,
            halt_trading_on_drawdown=self.config.halt_trading_on_drawdown,
        )

    async def get_risk_limits(self, user_id: str) -> RiskLimits:
        """Stored limits for the user, created from defaults when missing."""
        limits = await self.database.get_risk_limits(user_id)
        if limits is None:
            limits = self.default_limits(user_id)
            await self.database.save_risk_limits(limits)
            logger.info("risk_gate.default_limits_created", user_id=user_id)
        return limits

    async def update_risk_limits(self, user_id: str, updates: Dict[str, Any]) -> RiskLimits:
        """
        Apply a partial update to the user's limits and upsert them.

        Nested settings accept either a dict (``{"value": 4, "enabled": True}``)
        or a bare number meaning the value.

        Raises:
            ValueError: Unknown field, or a percentage outside 0..100
        """
        current = await self.get_risk_limits(user_id)
        merged = current.model_dump()

        for key, value in updates.items():
            if key in ("user_id", "created_at", "updated_at") or key not in merged:
                raise ValueError(f"Unknown risk limit: {key}")
            if isinstance(merged[key], dict):
                if isinstance(value, dict):
                    merged[key].update(value)
                else:
                    merged[key]["value"] = value
            else:
                merged[key] = value

        merged["updated_at"] = datetime.utcnow()
        limits = RiskLimits.model_validate(merged)
        self._validate_ranges(limits)

        await self.database.save_risk_limits(limits)
        logger.info("risk_gate.limits_updated", user_id=user_id, fields=sorted(updates))
        return limits

    @staticmethod
    def _validate_ranges(limits: RiskLimits):
        hundred = Decimal("100")
        for name in PERCENT_SETTINGS:
            value = getattr(limits, name).value
            if value < 0 or value > hundred:
                raise ValueError(f"{name} must be between 0 and 100, got {value}")
        daily = limits.daily_loss_limit
        if daily.type == LimitType.PERCENTAGE and daily.value > hundred:
            raise ValueError(f"daily_loss_limit must be between 0 and 100, got {daily.value}")

    # =========================================================================
    # Metrics
    # =========================================================================

    async def calculate_risk_metrics(
        self,
        user_id: str,
        gateway: Optional[BrokerGateway] = None,
    ) -> RiskMetrics:
        """
        Compute a fresh metrics snapshot from the broker and persist it.

        An unconnected account yields zero metrics that are not persisted.

        Args:
            user_id: User to evaluate
            gateway: Gateway to reuse; one is built (and closed) otherwise
        """
        owned = gateway is None
        if owned:
            try:
                gateway = await self.gateway_factory.for_user(user_id)
            except AccountNotConnected:
                logger.info("risk_gate.metrics_skipped_unconnected", user_id=user_id)
                return RiskMetrics(user_id=user_id)

        try:
            account = await gateway.get_account()
            positions = await gateway.get_positions()
        finally:
            if owned:
                await gateway.close()

        metrics = await self._build_metrics(user_id, account, positions)
        await self.database.save_risk_metrics(metrics)
        logger.debug(
            "risk_gate.metrics_calculated",
            user_id=user_id,
            portfolio_value=str(metrics.portfolio_value),
            daily_pnl_percent=f"{metrics.daily_pnl_percent:.2f}",
            current_drawdown=f"{metrics.current_drawdown:.2f}",
        )
        return metrics

    async def _build_metrics(
        self,
        user_id: str,
        account: AccountSnapshot,
        positions: List[BrokerPosition],
    ) -> RiskMetrics:
        portfolio_value = account.portfolio_value
        extremes = await self.database.get_metric_extremes(user_id)
        history = await self.database.get_risk_metrics_history(user_id, limit=VOLATILITY_WINDOW)

        peak = max(extremes["peak_portfolio_value"], portfolio_value)
        current_drawdown = (
            (peak - portfolio_value) / peak * 100 if peak > 0 else Decimal("0")
        )
        max_drawdown = max(extremes["max_drawdown"], current_drawdown)

        position_values = {p.symbol: abs(p.market_value) for p in positions}
        total_position_value = sum(position_values.values(), Decimal("0"))
        exposure = (
            total_position_value / portfolio_value * 100 if portfolio_value > 0 else Decimal("0")
        )

        return RiskMetrics(
            user_id=user_id,
            current_risk_exposure=exposure,
            portfolio_value=portfolio_value,
            cash_available=account.cash,
            daily_pnl=account.daily_pnl,
            daily_pnl_percent=account.daily_pnl_percent,
            peak_portfolio_value=peak,
            current_drawdown=current_drawdown,
            max_drawdown=max_drawdown,
            sector_concentration=self._sector_concentration(position_values, portfolio_value),
            position_concentration=self._position_concentration(position_values, portfolio_value),
            correlation_matrix=self._correlation_matrix(list(position_values)),
            volatility_index=self._volatility_index([m.portfolio_value for m in history]),
        )

    @staticmethod
    def _percent_of(value: Decimal, total: Decimal) -> Decimal:
        return value / total * 100 if total > 0 else Decimal("0")

    def _sector_concentration(
        self, position_values: Dict[str, Decimal], portfolio_value: Decimal
    ) -> List[SectorConcentration]:
        by_sector: Dict[str, Decimal] = {}
        for symbol, value in position_values.items():
            sector = sector_for(symbol)
            by_sector[sector] = by_sector.get(sector, Decimal("0")) + value
        return [
            SectorConcentration(
                sector=sector,
                value=value,
                percentage=self._percent_of(value, portfolio_value),
            )
            for sector, value in sorted(by_sector.items(), key=lambda kv: kv[1], reverse=True)
        ]

    def _position_concentration(
        self, position_values: Dict[str, Decimal], portfolio_value: Decimal
    ) -> List[PositionConcentration]:
        ranked = sorted(position_values.items(), key=lambda kv: kv[1], reverse=True)
        return [
            PositionConcentration(
                symbol=symbol,
                value=value,
                percentage=self._percent_of(value, portfolio_value),
            )
            for symbol, value in ranked[:TOP_POSITIONS]
        ]

    @staticmethod
    def _correlation_matrix(symbols: List[str]) -> Dict[str, Dict[str, float]]:
        """Sector-based correlation estimate between held symbols."""
        matrix: Dict[str, Dict[str, float]] = {}
        for a in symbols:
            row: Dict[str, float] = {}
            for b in symbols:
                if a == b:
                    row[b] = 1.0
                elif sector_for(a) == sector_for(b):
                    row[b] = SAME_SECTOR_CORRELATION
                else:
                    row[b] = CROSS_SECTOR_CORRELATION
            matrix[a] = row
        return matrix

    @staticmethod
    def _volatility_index(values: List[Decimal]) -> Decimal:
        """Coefficient of variation (percent) of recent portfolio values."""
        if len(values) < 2:
            return Decimal("0")
        series = np.array([float(v) for v in values], dtype=float)
        mean = series.mean()
        if mean <= 0:
            return Decimal("0")
        return Decimal(str(round(float(series.std() / mean * 100), 6)))

    async def get_risk_metrics(self, user_id: str) -> RiskMetrics:
        """Latest metrics, reused when younger than the cache window."""
        latest = await self.database.get_latest_risk_metrics(user_id)
        window = timedelta(minutes=self.config.metrics_cache_minutes)
        if latest is not None and datetime.utcnow() - latest.calculated_at < window:
            return latest
        return await self.calculate_risk_metrics(user_id)

    # =========================================================================
    # Breaches
    # =========================================================================

    def _check_daily_loss_limit(self, metrics: RiskMetrics, limits: RiskLimits) -> BreachCheck:
        limit = limits.daily_loss_limit
        if not limit.enabled:
            return BreachCheck(breached=False)
        if limit.type == LimitType.DOLLAR:
            if metrics.daily_pnl < -limit.value:
                return BreachCheck(
                    breached=True,
                    message=f"Daily loss limit breached: ${-metrics.daily_pnl:.2f}",
                    halts=limits.halt_trading_on_daily_limit,
                )
            return BreachCheck(breached=False)
        if metrics.daily_pnl_percent < -limit.value:
            return BreachCheck(
                breached=True,
                message=f"Daily loss limit breached: {metrics.daily_pnl_percent:.2f}%",
                halts=limits.halt_trading_on_daily_limit,
            )
        return BreachCheck(breached=False)

    def _check_drawdown_limit(self, metrics: RiskMetrics, limits: RiskLimits) -> BreachCheck:
        limit = limits.portfolio_drawdown_limit
        if limit.enabled and metrics.current_drawdown > limit.value:
            return BreachCheck(
                breached=True,
                message=f"Drawdown limit breached: {metrics.current_drawdown:.2f}%",
                halts=limits.halt_trading_on_drawdown,
            )
        return BreachCheck(breached=False)

    def evaluate_breaches(self, metrics: RiskMetrics, limits: RiskLimits) -> BreachReport:
        """Run every breach rule against one snapshot."""
        breaches: List[str] = []
        should_halt = False
        for rule in self._breach_rules:
            result = rule.check_fn(metrics, limits)
            if not result.breached:
                continue
            breaches.append(result.message)
            should_halt = should_halt or result.halts
            logger.warning(
                "risk_gate.breach_detected",
                user_id=metrics.user_id,
                rule=rule.name,
                message=result.message,
                halts=result.halts,
            )
        return BreachReport(
            breached=bool(breaches),
            breaches=breaches,
            should_halt_trading=should_halt,
        )

    async def check_risk_limit_breaches(
        self,
        user_id: str,
        fresh: bool = False,
        metrics: Optional[RiskMetrics] = None,
    ) -> BreachReport:
        """
        Compare current metrics with the user's limits.

        Args:
            user_id: User to check
            fresh: Recalculate instead of using cached metrics
            metrics: Snapshot to check (skips fetching entirely)
        """
        limits = await self.get_risk_limits(user_id)
        if metrics is None:
            metrics = (
                await self.calculate_risk_metrics(user_id)
                if fresh
                else await self.get_risk_metrics(user_id)
            )
        report = self.evaluate_breaches(metrics, limits)

        if report.breached:
            await self.activity.create_activity_log(
                user_id,
                ActivityType.RISK,
                "Risk limit breached",
                Severity.CRITICAL if report.should_halt_trading else Severity.WARNING,
                {"breaches": report.breaches, "should_halt_trading": report.should_halt_trading},
            )
        return report

    async def check_alert_thresholds(
        self,
        user_id: str,
        metrics: Optional[RiskMetrics] = None,
    ) -> List[str]:
        """Raise warning alerts for crossed alert thresholds.

        Thresholds never halt trading. Returns the alert titles created.
        """
        limits = await self.get_risk_limits(user_id)
        if metrics is None:
            metrics = await self.get_risk_metrics(user_id)

        created: List[str] = []

        threshold = limits.daily_loss_threshold
        if threshold.enabled and metrics.daily_pnl_percent < -threshold.value:
            await self.activity.create_alert(
                user_id,
                AlertType.WARNING,
                "Daily Loss Warning",
                f"Daily loss of {metrics.daily_pnl_percent:.2f}% exceeds the "
                f"{threshold.value}% alert threshold",
                {"daily_pnl_percent": metrics.daily_pnl_percent},
            )
            created.append("Daily Loss Warning")

        threshold = limits.drawdown_threshold
        if threshold.enabled and metrics.current_drawdown > threshold.value:
            await self.activity.create_alert(
                user_id,
                AlertType.WARNING,
                "Drawdown Warning",
                f"Drawdown of {metrics.current_drawdown:.2f}% exceeds the "
                f"{threshold.value}% alert threshold",
                {"current_drawdown": metrics.current_drawdown},
            )
            created.append("Drawdown Warning")

        threshold = limits.volatility_threshold
        if threshold.enabled and metrics.volatility_index > threshold.value:
            await self.activity.create_alert(
                user_id,
                AlertType.WARNING,
                "Volatility Warning",
                f"Portfolio volatility of {metrics.volatility_index:.2f}% exceeds the "
                f"{threshold.value}% alert threshold",
                {"volatility_index": metrics.volatility_index},
            )
            created.append("Volatility Warning")

        threshold = limits.position_loss_threshold
        if threshold.enabled:
            for position in await self.database.get_open_positions(user_id):
                if position.unrealized_pl_percent < -threshold.value:
                    await self.activity.create_alert(
                        user_id,
                        AlertType.WARNING,
                        "Position Loss Warning",
                        f"{position.symbol} is down {position.unrealized_pl_percent:.2f}%",
                        {"unrealized_pl_percent": position.unrealized_pl_percent},
                        symbol=position.symbol,
                    )
                    created.append("Position Loss Warning")

        return created

    # =========================================================================
    # Trading state
    # =========================================================================

    async def evaluate_trading_state(self, user_id: str, report: BreachReport) -> TradingStatus:
        """
        Move the user between active, paused and stopped.

        Stopped (auto trading disabled) is never left automatically. A
        halting breach pauses; a clean check resumes a paused user.
        """
        prefs = await self.database.get_trading_preferences(user_id)
        if prefs is None:
            prefs = TradingPreferences(user_id=user_id)

        if not prefs.auto_trading_enabled:
            target = TradingStatus.STOPPED
        elif report.should_halt_trading:
            target = TradingStatus.PAUSED
        else:
            target = TradingStatus.ACTIVE

        if target != prefs.trading_status:
            previous = prefs.trading_status
            prefs.trading_status = target
            await self.database.save_trading_preferences(prefs)
            logger.warning(
                "risk_gate.trading_state_changed",
                user_id=user_id,
                previous=previous.value,
                current=target.value,
                breaches=report.breaches,
            )
            await self.activity.create_activity_log(
                user_id,
                ActivityType.RISK,
                f"Trading {target.value}",
                Severity.WARNING if target != TradingStatus.ACTIVE else Severity.INFO,
                {"previous": previous.value, "breaches": report.breaches},
            )
        return target

    async def set_auto_trading(self, user_id: str, enabled: bool, actor: str) -> TradingPreferences:
        """Human toggle; the only way out of the stopped state."""
        prefs = await self.database.get_trading_preferences(user_id)
        if prefs is None:
            prefs = TradingPreferences(user_id=user_id)
        prefs.auto_trading_enabled = enabled
        prefs.trading_status = TradingStatus.ACTIVE if enabled else TradingStatus.STOPPED
        prefs.last_toggle_time = datetime.utcnow()
        prefs.last_toggled_by = actor
        await self.database.save_trading_preferences(prefs)

        logger.info("risk_gate.auto_trading_toggled", user_id=user_id, enabled=enabled, actor=actor)
        await self.activity.create_activity_log(
            user_id,
            ActivityType.SYSTEM,
            f"Auto trading {'enabled' if enabled else 'disabled'}",
            details={"actor": actor},
        )
        return prefs

    # =========================================================================
    # Emergency stop
    # =========================================================================

    async def emergency_stop_all_positions(self, user_id: str) -> EmergencyStopResult:
        """
        Liquidate every broker position and disable auto trading.

        Broker closes run concurrently; failures are counted, not raised.

        Raises:
            AccountNotConnected: The user has no connected broker account
        """
        gateway = await self.gateway_factory.for_user(user_id)
        logger.critical("risk_gate.emergency_stop_triggered", user_id=user_id)

        try:
            broker_positions = await gateway.get_positions()
            results = await asyncio.gather(
                *(gateway.close_position(p.symbol) for p in broker_positions),
                return_exceptions=True,
            )
        finally:
            await gateway.close()

        closed: List[BrokerPosition] = []
        failed: List[str] = []
        for position, outcome in zip(broker_positions, results):
            if isinstance(outcome, Exception):
                failed.append(position.symbol)
                logger.error(
                    "risk_gate.emergency_close_failed",
                    user_id=user_id,
                    symbol=position.symbol,
                    error=str(outcome),
                )
            else:
                closed.append(position)

        for position in closed:
            local = await self.database.get_open_position(user_id, position.symbol)
            if local is not None:
                local.close(position.current_price, EMERGENCY_STOP_ACTOR)
                await self.database.save_position(local)

        await self._disable_auto_trading(user_id)

        if not broker_positions:
            message = "No open positions to close"
        else:
            message = f"Emergency stop completed. {len(closed)} positions closed successfully."
            if failed:
                message += f" Failed to close: {', '.join(failed)}."

        await self.activity.create_alert(
            user_id,
            AlertType.CRITICAL,
            "Emergency Stop Executed",
            message,
            {"closed_positions": len(closed), "failed_symbols": failed},
        )
        await self.activity.create_activity_log(
            user_id,
            ActivityType.RISK,
            "Emergency stop",
            Severity.CRITICAL,
            {"closed_positions": len(closed), "failed_symbols": failed},
        )
        logger.critical(
            "risk_gate.emergency_stop_completed",
            user_id=user_id,
            closed_positions=len(closed),
            failed_symbols=failed,
        )
        return EmergencyStopResult(
            success=not failed,
            message=message,
            closed_positions=len(closed),
            failed_symbols=failed,
        )

    async def _disable_auto_trading(self, user_id: str):
        prefs = await self.database.get_trading_preferences(user_id)
        if prefs is None:
            prefs = TradingPreferences(user_id=user_id)
        prefs.auto_trading_enabled = False
        prefs.trading_status = TradingStatus.STOPPED
        prefs.last_toggle_time = datetime.utcnow()
        prefs.last_toggled_by = EMERGENCY_STOP_ACTOR
        await self.database.save_trading_preferences(prefs)
