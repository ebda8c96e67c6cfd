"""Configuration management for the trading cycle engine."""

from typing import List, Literal

from pydantic import Field, computed_field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# =============================================================================
# System Configuration
# =============================================================================


class SystemConfig(BaseSettings):
    """System-level configuration settings."""

    model_config = SettingsConfigDict(
        env_file=".env", case_sensitive=False, extra="ignore", populate_by_name=True
    )

    environment: Literal["development", "staging", "production"] = Field(
        default="development", validation_alias="ENVIRONMENT"
    )
    app_name: str = Field(default="Trading Cycle Engine", validation_alias="APP_NAME")
    app_version: str = Field(default="1.0.0", validation_alias="APP_VERSION")
    timezone: str = Field(default="America/New_York", validation_alias="TIMEZONE")


# =============================================================================
# Alpaca API Configuration
# =============================================================================


class AlpacaAPIConfig(BaseSettings):
    """Alpaca REST endpoints and client behaviour.

    Credentials are stored per user (see ``BrokerAccount``); only the
    endpoints and transport settings are global.
    """

    model_config = SettingsConfigDict(
        env_file=".env", case_sensitive=False, extra="ignore", populate_by_name=True
    )

    paper_base_url: str = Field(
        default="https://paper-api.alpaca.markets",
        validation_alias="ALPACA_PAPER_BASE_URL",
    )
    live_base_url: str = Field(
        default="https://api.alpaca.markets", validation_alias="ALPACA_LIVE_BASE_URL"
    )
    data_base_url: str = Field(
        default="https://data.alpaca.markets", validation_alias="ALPACA_DATA_BASE_URL"
    )
    data_feed: Literal["iex", "sip"] = Field(
        default="iex", validation_alias="ALPACA_DATA_FEED"
    )
    timeout: float = Field(default=30.0, validation_alias="ALPACA_TIMEOUT")
    retry_attempts: int = Field(default=3, validation_alias="ALPACA_RETRY_ATTEMPTS")
    bars_lookback_days: int = Field(
        default=250, validation_alias="ALPACA_BARS_LOOKBACK_DAYS"
    )

    def trading_base_url(self, is_paper: bool) -> str:
        """Trading endpoint for a paper or live account."""
        return self.paper_base_url if is_paper else self.live_base_url

    @field_validator("retry_attempts")
    @classmethod
    def validate_retry_attempts(cls, v):
        if v < 0 or v > 10:
            raise ValueError("retry_attempts must be between 0 and 10")
        return v


# =============================================================================
# Scheduler Configuration
# =============================================================================


class SchedulerConfig(BaseSettings):
    """Cadence and pacing of the trading cycle and portfolio sync jobs."""

    model_config = SettingsConfigDict(
        env_file=".env", case_sensitive=False, extra="ignore", populate_by_name=True
    )

    # Trading cycle: every 5 minutes
    cycle_interval_minutes: int = Field(
        default=5, validation_alias="CYCLE_INTERVAL_MINUTES"
    )

    # Pacing between users and between orders (broker rate limits)
    user_delay_seconds: float = Field(default=2.0, validation_alias="USER_DELAY_SECONDS")
    order_delay_seconds: float = Field(
        default=2.0, validation_alias="ORDER_DELAY_SECONDS"
    )

    # Portfolio sync job: every 30 seconds
    portfolio_sync_interval_seconds: int = Field(
        default=30, validation_alias="PORTFOLIO_SYNC_INTERVAL_SECONDS"
    )
    portfolio_sync_enabled: bool = Field(
        default=True, validation_alias="PORTFOLIO_SYNC_ENABLED"
    )

    # Technical variant limits per cycle
    max_new_positions_per_cycle: int = Field(
        default=2, validation_alias="MAX_NEW_POSITIONS_PER_CYCLE"
    )
    candidates_per_cycle: int = Field(default=5, validation_alias="CANDIDATES_PER_CYCLE")

    @field_validator("cycle_interval_minutes")
    @classmethod
    def validate_interval(cls, v):
        if v < 1:
            raise ValueError("Interval must be at least 1 minute")
        return v

    @field_validator("user_delay_seconds", "order_delay_seconds")
    @classmethod
    def validate_delay(cls, v):
        if v < 0:
            raise ValueError("Delays cannot be negative")
        return v


# =============================================================================
# Strategy Defaults
# =============================================================================


class StrategyDefaultsConfig(BaseSettings):
    """Defaults applied when a user has no stored strategy configuration."""

    model_config = SettingsConfigDict(
        env_file=".env", case_sensitive=False, extra="ignore", populate_by_name=True
    )

    strategy_variant: Literal["ema_atr_bracket", "technical_percent"] = Field(
        default="ema_atr_bracket", validation_alias="DEFAULT_STRATEGY_VARIANT"
    )
    trading_universe_str: str = Field(
        default="AAPL,MSFT,GOOGL,AMZN,META,NVDA,JPM,V,UNH,XOM",
        validation_alias="DEFAULT_TRADING_UNIVERSE",
    )

    # EMA / ATR parameters
    ema_fast_period: int = Field(default=12, validation_alias="EMA_FAST_PERIOD")
    ema_slow_period: int = Field(default=26, validation_alias="EMA_SLOW_PERIOD")
    atr_period: int = Field(default=14, validation_alias="ATR_PERIOD")
    atr_stop_multiplier: float = Field(default=2.0, validation_alias="ATR_STOP_MULTIPLIER")
    atr_take_profit_multiplier: float = Field(
        default=3.0, validation_alias="ATR_TAKE_PROFIT_MULTIPLIER"
    )

    # Risk budget (percent values: 1.0 = 1%)
    risk_per_trade_percent: float = Field(
        default=1.0, validation_alias="RISK_PER_TRADE_PERCENT"
    )
    max_portfolio_risk_percent: float = Field(
        default=6.0, validation_alias="MAX_PORTFOLIO_RISK_PERCENT"
    )

    # Legacy percent sizing and exits
    max_position_size_percent: float = Field(
        default=15.0, validation_alias="MAX_POSITION_SIZE_PERCENT"
    )
    max_concurrent_positions: int = Field(
        default=8, validation_alias="MAX_CONCURRENT_POSITIONS"
    )
    stop_loss_percent: float = Field(default=5.0, validation_alias="STOP_LOSS_PERCENT")
    take_profit_percent: float = Field(
        default=12.0, validation_alias="TAKE_PROFIT_PERCENT"
    )

    # Universe filters
    min_stock_price: float = Field(default=5.0, validation_alias="MIN_STOCK_PRICE")
    min_daily_volume: int = Field(default=1_000_000, validation_alias="MIN_DAILY_VOLUME")

    @property
    def trading_universe(self) -> List[str]:
        """Parse trading_universe string into list."""
        return [
            s.strip().upper() for s in self.trading_universe_str.split(",") if s.strip()
        ]

    @model_validator(mode="after")
    def validate_ema_periods(self):
        if self.ema_fast_period >= self.ema_slow_period:
            raise ValueError("ema_fast_period must be smaller than ema_slow_period")
        return self


# =============================================================================
# Risk Defaults
# =============================================================================


class RiskDefaultsConfig(BaseSettings):
    """Defaults for newly created per-user risk limits."""

    model_config = SettingsConfigDict(
        env_file=".env", case_sensitive=False, extra="ignore", populate_by_name=True
    )

    daily_loss_limit_percent: float = Field(
        default=5.0, validation_alias="DAILY_LOSS_LIMIT_PERCENT"
    )
    portfolio_drawdown_limit_percent: float = Field(
        default=15.0, validation_alias="PORTFOLIO_DRAWDOWN_LIMIT_PERCENT"
    )
    halt_trading_on_daily_limit: bool = Field(
        default=True, validation_alias="HALT_TRADING_ON_DAILY_LIMIT"
    )
    halt_trading_on_drawdown: bool = Field(
        default=True, validation_alias="HALT_TRADING_ON_DRAWDOWN"
    )

    # How long on-demand callers may reuse stored metrics
    metrics_cache_minutes: int = Field(default=5, validation_alias="RISK_METRICS_CACHE_MINUTES")

    @field_validator("daily_loss_limit_percent", "portfolio_drawdown_limit_percent")
    @classmethod
    def validate_percentages(cls, v):
        if v < 0 or v > 100:
            raise ValueError("Percentage values must be between 0 and 100")
        return v


# =============================================================================
# Database Configuration
# =============================================================================


class DatabaseConfig(BaseSettings):
    """Database configuration."""

    model_config = SettingsConfigDict(
        env_file=".env", case_sensitive=False, extra="ignore", populate_by_name=True
    )

    database_url: str = Field(
        default="sqlite:///./data/cycle_engine.db", validation_alias="DATABASE_URL"
    )
    echo: bool = Field(default=False, validation_alias="DATABASE_ECHO")

    @computed_field
    @property
    def async_database_url(self) -> str:
        """SQLite URLs rewritten for the aiosqlite driver."""
        url = self.database_url
        if url.startswith("sqlite:///") and not url.startswith("sqlite+aiosqlite:///"):
            url = url.replace("sqlite:///", "sqlite+aiosqlite:///")
        return url


# =============================================================================
# Logging Configuration
# =============================================================================


class LoggingConfig(BaseSettings):
    """Logging configuration."""

    model_config = SettingsConfigDict(
        env_file=".env", case_sensitive=False, extra="ignore", populate_by_name=True
    )

    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO", validation_alias="LOG_LEVEL"
    )
    log_file: str = Field(default="logs/cycle_engine.log", validation_alias="LOG_FILE")
    log_to_file: bool = Field(default=True, validation_alias="LOG_TO_FILE")


# =============================================================================
# Global Configuration Container
# =============================================================================


class CycleEngineConfig:
    """
    Container for all engine configuration groups.

    Usage:
        from cycle_engine.core.config import engine_config

        interval = engine_config.scheduler.cycle_interval_minutes
        base_url = engine_config.alpaca.trading_base_url(is_paper=True)
    """

    def __init__(self):
        self.system = SystemConfig()
        self.alpaca = AlpacaAPIConfig()
        self.scheduler = SchedulerConfig()
        self.strategy = StrategyDefaultsConfig()
        self.risk = RiskDefaultsConfig()
        self.database = DatabaseConfig()
        self.logging = LoggingConfig()

    @property
    def is_production(self) -> bool:
        return self.system.environment == "production"

    def validate_configuration(self) -> dict:
        """
        Validate the complete configuration and return any issues.

        Returns:
            Dictionary with 'valid' boolean and 'issues' list
        """
        issues = []

        if not self.strategy.trading_universe:
            issues.append("Default trading universe is empty")

        if self.strategy.risk_per_trade_percent > self.strategy.max_portfolio_risk_percent:
            issues.append(
                "risk_per_trade_percent exceeds max_portfolio_risk_percent; "
                "every risk-based order would be rejected"
            )

        if self.scheduler.user_delay_seconds > self.scheduler.cycle_interval_minutes * 60:
            issues.append("User pacing delay is longer than the cycle interval")

        if self.is_production and self.database.database_url.startswith("sqlite"):
            issues.append("SQLite database configured in production")

        return {"valid": len(issues) == 0, "issues": issues}


# =============================================================================
# Global Configuration Instances
# =============================================================================

alpaca_config = AlpacaAPIConfig()
scheduler_config = SchedulerConfig()
strategy_defaults = StrategyDefaultsConfig()
risk_defaults = RiskDefaultsConfig()
database_config = DatabaseConfig()
logging_config = LoggingConfig()

engine_config = CycleEngineConfig()


__all__ = [
    "CycleEngineConfig",
    "engine_config",
    "alpaca_config",
    "scheduler_config",
    "strategy_defaults",
    "risk_defaults",
    "database_config",
    "logging_config",
    "SystemConfig",
    "AlpacaAPIConfig",
    "SchedulerConfig",
    "StrategyDefaultsConfig",
    "RiskDefaultsConfig",
    "DatabaseConfig",
    "LoggingConfig",
]
