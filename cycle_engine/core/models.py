"""Data models for the trading cycle engine.

This module defines the data structures shared by every component:
- Market data: daily bars and bar series
- Strategy: per-user configuration and the signals it produces
- Execution: orders and positions mirrored from the broker
- Risk: per-user limits, point-in-time metrics and breach reports
- Gateway value types: parsed broker responses

All monetary values use Decimal for precision.
All timestamps are naive UTC datetime objects.
"""

from datetime import datetime
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, Dict, List, Optional, Set
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from cycle_engine.core.exceptions import MalformedGatewayResponse


# =============================================================================
# Enums
# =============================================================================

class OrderSide(str, Enum):
    """Order side - buy or sell."""
    BUY = "buy"
    SELL = "sell"


class OrderType(str, Enum):
    """Order type enumeration."""
    MARKET = "market"
    LIMIT = "limit"
    STOP = "stop"
    STOP_LIMIT = "stop_limit"
    TRAILING_STOP = "trailing_stop"


class OrderClass(str, Enum):
    """Alpaca order class."""
    SIMPLE = "simple"
    BRACKET = "bracket"
    OCO = "oco"
    OTO = "oto"


class TimeInForce(str, Enum):
    DAY = "day"
    GTC = "gtc"
    IOC = "ioc"
    FOK = "fok"


class OrderStatus(str, Enum):
    """Order lifecycle status as reported by the broker."""
    PENDING = "pending"           # Received, not yet routed
    ACCEPTED = "accepted"         # Working at the broker
    PARTIALLY_FILLED = "partially_filled"
    FILLED = "filled"
    CANCELLED = "cancelled"
    REJECTED = "rejected"
    EXPIRED = "expired"


class PositionSide(str, Enum):
    LONG = "long"
    SHORT = "short"


class PositionStatus(str, Enum):
    OPEN = "open"
    CLOSED = "closed"


class SignalType(str, Enum):
    """Trading signal types from strategies."""
    BUY = "buy"
    SELL = "sell"
    HOLD = "hold"


class StrategyVariant(str, Enum):
    """Which trading strategy a user runs.

    EMA_ATR_BRACKET sizes by risk and submits bracket orders.
    TECHNICAL_PERCENT scores RSI/MACD/SMA, sizes as a percent of buying
    power and submits market orders.
    """
    EMA_ATR_BRACKET = "ema_atr_bracket"
    TECHNICAL_PERCENT = "technical_percent"


class ExitReason(str, Enum):
    STOP_LOSS = "stop_loss"
    TAKE_PROFIT = "take_profit"
    TECHNICAL = "technical"
    NONE = "none"


class TradingStatus(str, Enum):
    """Per-user trading state.

    ACTIVE: trading normally.
    PAUSED: a halting risk breach was found; recovers when it clears.
    STOPPED: emergency stop or auto-trading disabled; needs a human.
    """
    ACTIVE = "active"
    PAUSED = "paused"
    STOPPED = "stopped"


class LimitType(str, Enum):
    PERCENTAGE = "percentage"
    DOLLAR = "dollar"


class ActivityType(str, Enum):
    ANALYSIS = "analysis"
    TRADE = "trade"
    SIGNAL = "signal"
    RISK = "risk"
    SYSTEM = "system"
    ERROR = "error"


class Severity(str, Enum):
    INFO = "info"
    SUCCESS = "success"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


class AlertType(str, Enum):
    CRITICAL = "critical"
    WARNING = "warning"
    INFO = "info"


class UserCycleOutcome(str, Enum):
    """What happened to one user during a trading cycle."""
    COMPLETED = "completed"
    SKIPPED = "skipped"
    HALTED = "halted"
    FAILED = "failed"


# =============================================================================
# Parsing Helpers
# =============================================================================

def parse_decimal(payload: Dict[str, Any], key: str, required: bool = True) -> Optional[Decimal]:
    """Read a numeric broker field (usually a string) as Decimal.

    Raises:
        MalformedGatewayResponse: If a required field is missing or any
            present field is not numeric.
    """
    value = payload.get(key)
    if value is None or value == "":
        if required:
            raise MalformedGatewayResponse(f"Missing numeric field '{key}'", payload)
        return None
    try:
        result = Decimal(str(value))
    except (InvalidOperation, ValueError, TypeError):
        raise MalformedGatewayResponse(f"Field '{key}' is not numeric: {value!r}", payload)
    if not result.is_finite():
        raise MalformedGatewayResponse(f"Field '{key}' is not finite: {value!r}", payload)
    return result


def parse_timestamp(payload: Dict[str, Any], key: str, required: bool = False) -> Optional[datetime]:
    """Read an RFC 3339 broker timestamp as naive UTC datetime."""
    value = payload.get(key)
    if not value:
        if required:
            raise MalformedGatewayResponse(f"Missing timestamp field '{key}'", payload)
        return None
    if isinstance(value, datetime):
        return value.replace(tzinfo=None)
    text = str(value)
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    # Alpaca sends nanosecond precision; fromisoformat accepts microseconds
    if "." in text:
        head, _, tail = text.partition(".")
        digits = ""
        rest = ""
        for i, ch in enumerate(tail):
            if not ch.isdigit():
                rest = tail[i:]
                break
            digits += ch
        text = f"{head}.{digits[:6].ljust(6, '0')}{rest}"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        raise MalformedGatewayResponse(f"Field '{key}' is not a timestamp: {value!r}", payload)
    if parsed.tzinfo is not None:
        parsed = (parsed - parsed.utcoffset()).replace(tzinfo=None)
    return parsed


def parse_str(payload: Dict[str, Any], key: str) -> str:
    value = payload.get(key)
    if value is None or value == "":
        raise MalformedGatewayResponse(f"Missing field '{key}'", payload)
    return str(value)


# =============================================================================
# Market Data Models
# =============================================================================

class Bar(BaseModel):
    """One daily OHLCV observation."""
    model_config = ConfigDict(frozen=True, json_encoders={Decimal: str})

    timestamp: datetime = Field(..., description="Bar open time (UTC)")
    open: Decimal = Field(..., description="Opening price")
    high: Decimal = Field(..., description="Highest price")
    low: Decimal = Field(..., description="Lowest price")
    close: Decimal = Field(..., description="Closing price")
    volume: Decimal = Field(default=Decimal("0"), ge=0, description="Traded volume")

    @field_validator("low")
    @classmethod
    def low_lte_high(cls, v: Decimal, info) -> Decimal:
        """Validate low is <= high."""
        if info.data.get("high") is not None and v > info.data["high"]:
            raise ValueError("Low must be <= high")
        return v

    @classmethod
    def from_api(cls, payload: Dict[str, Any]) -> "Bar":
        """Parse an Alpaca bar ``{t, o, h, l, c, v}``."""
        try:
            return cls(
                timestamp=parse_timestamp(payload, "t", required=True),
                open=parse_decimal(payload, "o"),
                high=parse_decimal(payload, "h"),
                low=parse_decimal(payload, "l"),
                close=parse_decimal(payload, "c"),
                volume=parse_decimal(payload, "v", required=False) or Decimal("0"),
            )
        except ValueError as e:
            # pydantic ValidationError subclasses ValueError
            raise MalformedGatewayResponse(f"Invalid bar: {e}", payload)


class BarSeries(BaseModel):
    """Daily bars for one symbol, ascending by timestamp.

    Immutable once fetched; a cycle evaluates exactly this snapshot.
    """
    model_config = ConfigDict(frozen=True)

    symbol: str = Field(..., description="Ticker symbol")
    bars: List[Bar] = Field(default_factory=list, description="Bars, oldest first")

    @field_validator("symbol")
    @classmethod
    def upper_symbol(cls, v: str) -> str:
        return v.strip().upper()

    @field_validator("bars")
    @classmethod
    def ascending_unique(cls, v: List[Bar]) -> List[Bar]:
        """Validate bars are strictly ascending (no duplicate timestamps)."""
        for prev, cur in zip(v, v[1:]):
            if cur.timestamp <= prev.timestamp:
                raise ValueError(
                    f"Bars must be strictly ascending: {prev.timestamp} then {cur.timestamp}"
                )
        return v

    def __len__(self) -> int:
        return len(self.bars)

    @property
    def closes(self) -> List[Decimal]:
        return [b.close for b in self.bars]

    @property
    def last_close(self) -> Optional[Decimal]:
        return self.bars[-1].close if self.bars else None

    def average_volume(self, window: int = 20) -> Decimal:
        """Mean volume of the last ``window`` bars (all bars if fewer)."""
        if not self.bars:
            return Decimal("0")
        recent = self.bars[-window:]
        return sum((b.volume for b in recent), Decimal("0")) / len(recent)


# =============================================================================
# Strategy Models
# =============================================================================

class StrategyConfig(BaseModel):
    """Per-user strategy configuration.

    Owned by the user; the engine works on a deep copy for the whole cycle.

    Attributes:
        user_id: Owner
        strategy_variant: Which strategy the scheduler runs for this user
        max_position_size_percent: Position notional cap, % of buying power
        max_concurrent_positions: Open position cap
        stop_loss_percent: Exit check stop distance, % of entry
        take_profit_percent: Exit check target distance, % of entry
        min_stock_price: Universe filter on last close
        min_daily_volume: Universe filter on 20-day average volume
        sector_preferences: Sectors narrowing the default universe
        trading_universe: Symbols analysed by the EMA/ATR strategy
        ema_fast_period / ema_slow_period: Crossover EMAs
        atr_period: ATR window
        atr_stop_multiplier / atr_take_profit_multiplier: Bracket distances in ATRs
        risk_per_trade_percent: Equity risked per trade
        max_portfolio_risk_percent: Equity risked across all open positions
    """
    model_config = ConfigDict(json_encoders={Decimal: str})

    user_id: str = Field(..., description="Owner user ID")
    strategy_variant: StrategyVariant = Field(default=StrategyVariant.EMA_ATR_BRACKET)

    max_position_size_percent: Decimal = Field(default=Decimal("15"), ge=5, le=25)
    max_concurrent_positions: int = Field(default=8, ge=3, le=15)
    stop_loss_percent: Decimal = Field(default=Decimal("5"), ge=1, le=10)
    take_profit_percent: Decimal = Field(default=Decimal("12"), ge=5, le=20)

    min_stock_price: Decimal = Field(default=Decimal("5"), ge=0)
    min_daily_volume: int = Field(default=1_000_000, ge=0)
    sector_preferences: List[str] = Field(
        default_factory=lambda: ["technology", "healthcare", "finance"]
    )

    trading_universe: Set[str] = Field(default_factory=set)
    ema_fast_period: int = Field(default=12, ge=2)
    ema_slow_period: int = Field(default=26, ge=3)
    atr_period: int = Field(default=14, ge=1)
    atr_stop_multiplier: Decimal = Field(default=Decimal("2.0"), gt=0)
    atr_take_profit_multiplier: Decimal = Field(default=Decimal("3.0"), gt=0)
    risk_per_trade_percent: Decimal = Field(default=Decimal("1.0"), gt=0, le=100)
    max_portfolio_risk_percent: Decimal = Field(default=Decimal("6.0"), gt=0, le=100)

    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)

    @field_validator("trading_universe", mode="before")
    @classmethod
    def normalize_universe(cls, v):
        if v is None:
            return set()
        if isinstance(v, str):
            v = v.split(",")
        return {str(s).strip().upper() for s in v if str(s).strip()}

    @field_validator("sector_preferences", mode="before")
    @classmethod
    def normalize_sectors(cls, v):
        if v is None:
            return []
        return [str(s).strip().lower() for s in v if str(s).strip()]

    @model_validator(mode="after")
    def fast_below_slow(self) -> "StrategyConfig":
        if self.ema_fast_period >= self.ema_slow_period:
            raise ValueError("ema_fast_period must be smaller than ema_slow_period")
        return self

    @property
    def min_bars_required(self) -> int:
        """Bars needed before the EMA/ATR strategy will evaluate a symbol."""
        return max(self.ema_slow_period, self.atr_period) + 10

    def snapshot(self) -> "StrategyConfig":
        """Consistent copy used for one whole cycle."""
        return self.model_copy(deep=True)


class Signal(BaseModel):
    """A strategy decision for one symbol.

    Immutable in meaning once created; the execution bookkeeping fields
    (executed, executed_at, order_id) are set once, after submission.
    """
    model_config = ConfigDict(json_encoders={Decimal: str})

    symbol: str = Field(..., description="Ticker symbol")
    signal_type: SignalType = Field(..., description="buy, sell or hold")
    price: Decimal = Field(..., description="Reference price (last close)")
    reason: str = Field(..., description="Human readable rationale")

    id: str = Field(default_factory=lambda: str(uuid4()))
    user_id: Optional[str] = Field(default=None)
    strategy: str = Field(default=StrategyVariant.EMA_ATR_BRACKET.value)

    stop_loss: Optional[Decimal] = Field(default=None)
    take_profit: Optional[Decimal] = Field(default=None)
    atr: Optional[Decimal] = Field(default=None)
    ema_fast: Optional[Decimal] = Field(default=None)
    ema_slow: Optional[Decimal] = Field(default=None)
    position_size: Optional[int] = Field(default=None, ge=0)
    risk_amount: Optional[Decimal] = Field(default=None)
    strength: Optional[Decimal] = Field(default=None)

    executed: bool = Field(default=False)
    executed_at: Optional[datetime] = Field(default=None)
    order_id: Optional[str] = Field(default=None)

    metadata: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=datetime.utcnow)

    @field_validator("symbol")
    @classmethod
    def upper_symbol(cls, v: str) -> str:
        return v.strip().upper()

    @property
    def is_buy(self) -> bool:
        return self.signal_type == SignalType.BUY

    @property
    def is_actionable(self) -> bool:
        """Buy with a bracket and a positive size."""
        return (
            self.is_buy
            and self.stop_loss is not None
            and self.take_profit is not None
            and bool(self.position_size)
        )


class ExitDecision(BaseModel):
    """Result of the position-level exit check."""

    should_sell: bool
    reason: ExitReason = ExitReason.NONE
    change_percent: Decimal = Decimal("0")


class SizingResult(BaseModel):
    """Position sizer output; quantity 0 means rejected."""
    model_config = ConfigDict(json_encoders={Decimal: str})

    quantity: int = Field(..., ge=0)
    risk_amount: Decimal = Field(default=Decimal("0"))
    per_share_risk: Decimal = Field(default=Decimal("0"))
    current_portfolio_risk: Decimal = Field(default=Decimal("0"))
    available_risk: Decimal = Field(default=Decimal("0"))
    rejected_reason: Optional[str] = Field(default=None)

    @property
    def approved(self) -> bool:
        return self.quantity > 0

    @classmethod
    def rejected(cls, reason: str, **kwargs) -> "SizingResult":
        return cls(quantity=0, risk_amount=Decimal("0"), rejected_reason=reason, **kwargs)


# =============================================================================
# Order Models
# =============================================================================

class BracketOrderParams(BaseModel):
    """Parameters of a bracket (entry + take profit + stop loss) order."""
    model_config = ConfigDict(json_encoders={Decimal: str})

    symbol: str
    quantity: int = Field(..., gt=0)
    take_profit: Decimal = Field(..., gt=0)
    stop_loss: Decimal = Field(..., gt=0)
    side: OrderSide = OrderSide.BUY
    time_in_force: TimeInForce = TimeInForce.DAY

    @field_validator("symbol")
    @classmethod
    def upper_symbol(cls, v: str) -> str:
        return v.strip().upper()

    @model_validator(mode="after")
    def bracket_ordering(self) -> "BracketOrderParams":
        """For a long entry the stop must sit below the target."""
        if self.side == OrderSide.BUY and self.stop_loss >= self.take_profit:
            raise ValueError("stop_loss must be below take_profit for a buy bracket")
        if self.side == OrderSide.SELL and self.stop_loss <= self.take_profit:
            raise ValueError("stop_loss must be above take_profit for a sell bracket")
        return self

    def to_api(self) -> Dict[str, Any]:
        """Alpaca order request body."""
        return {
            "symbol": self.symbol,
            "qty": str(self.quantity),
            "side": self.side.value,
            "type": OrderType.MARKET.value,
            "time_in_force": self.time_in_force.value,
            "order_class": OrderClass.BRACKET.value,
            "take_profit": {"limit_price": f"{self.take_profit:.2f}"},
            "stop_loss": {"stop_price": f"{self.stop_loss:.2f}"},
        }


_BROKER_STATUS_MAP = {
    "new": OrderStatus.ACCEPTED,
    "accepted": OrderStatus.ACCEPTED,
    "done_for_day": OrderStatus.ACCEPTED,
    "stopped": OrderStatus.ACCEPTED,
    "pending_new": OrderStatus.PENDING,
    "accepted_for_bidding": OrderStatus.PENDING,
    "pending_cancel": OrderStatus.PENDING,
    "pending_replace": OrderStatus.PENDING,
    "held": OrderStatus.PENDING,
    "calculated": OrderStatus.PENDING,
    "suspended": OrderStatus.PENDING,
    "partially_filled": OrderStatus.PARTIALLY_FILLED,
    "filled": OrderStatus.FILLED,
    "canceled": OrderStatus.CANCELLED,
    "cancelled": OrderStatus.CANCELLED,
    "replaced": OrderStatus.CANCELLED,
    "rejected": OrderStatus.REJECTED,
    "expired": OrderStatus.EXPIRED,
}


def map_order_status(raw: str) -> OrderStatus:
    """Map a broker status string onto the local lifecycle."""
    try:
        return _BROKER_STATUS_MAP[str(raw).lower()]
    except KeyError:
        raise MalformedGatewayResponse(f"Unknown order status: {raw!r}")


class BrokerOrder(BaseModel):
    """Parsed broker order response (including bracket legs)."""
    model_config = ConfigDict(json_encoders={Decimal: str})

    id: str
    client_order_id: Optional[str] = None
    symbol: str
    side: OrderSide
    order_type: OrderType
    order_class: OrderClass = OrderClass.SIMPLE
    quantity: Decimal
    filled_qty: Decimal = Decimal("0")
    filled_avg_price: Optional[Decimal] = None
    limit_price: Optional[Decimal] = None
    stop_price: Optional[Decimal] = None
    time_in_force: TimeInForce = TimeInForce.DAY
    status: OrderStatus
    raw_status: str
    submitted_at: Optional[datetime] = None
    filled_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    legs: List["BrokerOrder"] = Field(default_factory=list)

    @classmethod
    def from_api(cls, payload: Dict[str, Any]) -> "BrokerOrder":
        if not isinstance(payload, dict):
            raise MalformedGatewayResponse("Order response is not an object", payload)
        raw_status = parse_str(payload, "status")
        try:
            side = OrderSide(parse_str(payload, "side").lower())
            order_type = OrderType(
                str(payload.get("order_type") or payload.get("type") or "market").lower()
            )
            order_class = OrderClass(str(payload.get("order_class") or "simple").lower())
            tif = TimeInForce(str(payload.get("time_in_force") or "day").lower())
        except ValueError as e:
            raise MalformedGatewayResponse(f"Invalid order enum: {e}", payload)
        legs = [cls.from_api(leg) for leg in (payload.get("legs") or [])]
        return cls(
            id=parse_str(payload, "id"),
            client_order_id=payload.get("client_order_id"),
            symbol=parse_str(payload, "symbol").upper(),
            side=side,
            order_type=order_type,
            order_class=order_class,
            quantity=parse_decimal(payload, "qty"),
            filled_qty=parse_decimal(payload, "filled_qty", required=False) or Decimal("0"),
            filled_avg_price=parse_decimal(payload, "filled_avg_price", required=False),
            limit_price=parse_decimal(payload, "limit_price", required=False),
            stop_price=parse_decimal(payload, "stop_price", required=False),
            time_in_force=tif,
            status=map_order_status(raw_status),
            raw_status=raw_status,
            submitted_at=parse_timestamp(payload, "submitted_at"),
            filled_at=parse_timestamp(payload, "filled_at"),
            cancelled_at=parse_timestamp(payload, "canceled_at"),
            legs=legs,
        )

    @property
    def stop_loss_leg_price(self) -> Optional[Decimal]:
        for leg in self.legs:
            if leg.order_type in (OrderType.STOP, OrderType.STOP_LIMIT) and leg.stop_price:
                return leg.stop_price
        return None

    @property
    def take_profit_leg_price(self) -> Optional[Decimal]:
        for leg in self.legs:
            if leg.order_type == OrderType.LIMIT and leg.limit_price:
                return leg.limit_price
        return None


class Order(BaseModel):
    """Local cache of a broker order.

    Status is authoritative from the broker; the local copy is refreshed by
    reconciliation and never advanced speculatively.

    Attributes:
        user_id: Owner
        broker_order_id: Broker-assigned order ID
        symbol: Ticker symbol
        side: Buy or sell
        order_type: Entry order type
        order_class: simple or bracket
        quantity: Ordered shares
        status: Last status reported by the broker
        filled_qty: Shares filled so far
        filled_avg_price: Average fill price
        take_profit_price / stop_loss_price: Bracket leg prices
        position_applied: True once the fill was folded into a position
        signal_id: Signal this order executed, if any
    """
    model_config = ConfigDict(json_encoders={Decimal: str})

    user_id: str
    broker_order_id: str
    symbol: str
    side: OrderSide
    order_type: OrderType = OrderType.MARKET
    order_class: OrderClass = OrderClass.SIMPLE
    quantity: Decimal = Field(..., gt=0)

    id: str = Field(default_factory=lambda: str(uuid4()))
    limit_price: Optional[Decimal] = None
    stop_price: Optional[Decimal] = None
    take_profit_price: Optional[Decimal] = None
    stop_loss_price: Optional[Decimal] = None
    time_in_force: TimeInForce = TimeInForce.DAY

    status: OrderStatus = OrderStatus.PENDING
    filled_qty: Decimal = Field(default=Decimal("0"), ge=0)
    filled_avg_price: Optional[Decimal] = None

    submitted_at: datetime = Field(default_factory=datetime.utcnow)
    filled_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    position_applied: bool = False
    signal_id: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @property
    def is_active(self) -> bool:
        """True while the broker may still fill the order."""
        return self.status in (
            OrderStatus.PENDING, OrderStatus.ACCEPTED, OrderStatus.PARTIALLY_FILLED
        )

    @classmethod
    def from_broker(cls, user_id: str, broker_order: BrokerOrder, **kwargs) -> "Order":
        return cls(
            user_id=user_id,
            broker_order_id=broker_order.id,
            symbol=broker_order.symbol,
            side=broker_order.side,
            order_type=broker_order.order_type,
            order_class=broker_order.order_class,
            quantity=broker_order.quantity,
            limit_price=broker_order.limit_price,
            stop_price=broker_order.stop_price,
            take_profit_price=broker_order.take_profit_leg_price,
            stop_loss_price=broker_order.stop_loss_leg_price,
            time_in_force=broker_order.time_in_force,
            status=broker_order.status,
            filled_qty=broker_order.filled_qty,
            filled_avg_price=broker_order.filled_avg_price,
            submitted_at=broker_order.submitted_at or datetime.utcnow(),
            filled_at=broker_order.filled_at,
            cancelled_at=broker_order.cancelled_at,
            **kwargs,
        )

    def apply_broker_update(self, broker_order: BrokerOrder) -> bool:
        """Copy broker state onto the local cache. Returns True on change."""
        changed = (
            self.status != broker_order.status
            or self.filled_qty != broker_order.filled_qty
            or self.filled_avg_price != broker_order.filled_avg_price
        )
        self.status = broker_order.status
        self.filled_qty = broker_order.filled_qty
        self.filled_avg_price = broker_order.filled_avg_price
        self.filled_at = broker_order.filled_at or self.filled_at
        self.cancelled_at = broker_order.cancelled_at or self.cancelled_at
        if broker_order.take_profit_leg_price:
            self.take_profit_price = broker_order.take_profit_leg_price
        if broker_order.stop_loss_leg_price:
            self.stop_loss_price = broker_order.stop_loss_leg_price
        self.updated_at = datetime.utcnow()
        return changed


# =============================================================================
# Position Models
# =============================================================================

class BrokerPosition(BaseModel):
    """Parsed broker position."""
    model_config = ConfigDict(json_encoders={Decimal: str})

    symbol: str
    qty: Decimal
    avg_entry_price: Decimal
    current_price: Decimal
    market_value: Decimal
    cost_basis: Decimal
    unrealized_pl: Decimal
    unrealized_plpc: Decimal
    side: PositionSide = PositionSide.LONG
    exchange: Optional[str] = None

    @classmethod
    def from_api(cls, payload: Dict[str, Any]) -> "BrokerPosition":
        if not isinstance(payload, dict):
            raise MalformedGatewayResponse("Position entry is not an object", payload)
        qty = parse_decimal(payload, "qty")
        avg_entry = parse_decimal(payload, "avg_entry_price")
        current = parse_decimal(payload, "current_price")
        market_value = parse_decimal(payload, "market_value", required=False)
        cost_basis = parse_decimal(payload, "cost_basis", required=False)
        try:
            side = PositionSide(str(payload.get("side") or "long").lower())
        except ValueError as e:
            raise MalformedGatewayResponse(f"Invalid position side: {e}", payload)
        return cls(
            symbol=parse_str(payload, "symbol").upper(),
            qty=qty,
            avg_entry_price=avg_entry,
            current_price=current,
            market_value=market_value if market_value is not None else qty * current,
            cost_basis=cost_basis if cost_basis is not None else qty * avg_entry,
            unrealized_pl=parse_decimal(payload, "unrealized_pl", required=False)
            or (current - avg_entry) * qty,
            unrealized_plpc=parse_decimal(payload, "unrealized_plpc", required=False)
            or Decimal("0"),
            side=side,
            exchange=payload.get("exchange"),
        )

    @property
    def unrealized_pl_percent(self) -> Decimal:
        """Broker ratio (0.05) as percent (5.0)."""
        return self.unrealized_plpc * 100


class Position(BaseModel):
    """Locally persisted position.

    Exactly one open position exists per (user_id, symbol).

    Attributes:
        user_id: Owner
        symbol: Ticker symbol
        quantity: Shares held
        entry_price: Average entry price
        current_price: Last known price
        market_value / cost_basis: quantity * current / quantity * entry
        unrealized_pl / unrealized_pl_percent: Open profit and loss
        side: Long or short
        status: Open or closed
        stop_loss / take_profit: Bracket levels, if known
        closed_at / close_price / realized_pl / closed_by: Set on close
    """
    model_config = ConfigDict(json_encoders={Decimal: str})

    user_id: str
    symbol: str
    quantity: Decimal = Field(..., ge=0)
    entry_price: Decimal = Field(..., gt=0)

    id: str = Field(default_factory=lambda: str(uuid4()))
    current_price: Decimal = Decimal("0")
    market_value: Decimal = Decimal("0")
    cost_basis: Decimal = Decimal("0")
    unrealized_pl: Decimal = Decimal("0")
    unrealized_pl_percent: Decimal = Decimal("0")
    side: PositionSide = PositionSide.LONG
    status: PositionStatus = PositionStatus.OPEN

    stop_loss: Optional[Decimal] = None
    take_profit: Optional[Decimal] = None

    opened_at: datetime = Field(default_factory=datetime.utcnow)
    closed_at: Optional[datetime] = None
    close_price: Optional[Decimal] = None
    realized_pl: Optional[Decimal] = None
    closed_by: Optional[str] = None
    last_updated: datetime = Field(default_factory=datetime.utcnow)

    @model_validator(mode="after")
    def fill_derived(self) -> "Position":
        if self.current_price == 0:
            self.current_price = self.entry_price
        if self.market_value == 0:
            self.market_value = self.quantity * self.current_price
        if self.cost_basis == 0:
            self.cost_basis = self.quantity * self.entry_price
        return self

    @property
    def is_open(self) -> bool:
        return self.status == PositionStatus.OPEN

    @property
    def risk_stop(self) -> Decimal:
        """Stop used for portfolio risk; 5% below entry when none is set."""
        return self.stop_loss if self.stop_loss is not None else self.entry_price * Decimal("0.95")

    def mark_price(self, price: Decimal) -> None:
        """Revalue the position at ``price``."""
        self.current_price = price
        self.market_value = self.quantity * price
        self.cost_basis = self.quantity * self.entry_price
        direction = 1 if self.side == PositionSide.LONG else -1
        self.unrealized_pl = (price - self.entry_price) * self.quantity * direction
        self.unrealized_pl_percent = (
            (self.unrealized_pl / self.cost_basis) * 100 if self.cost_basis > 0 else Decimal("0")
        )
        self.last_updated = datetime.utcnow()

    def apply_broker_position(self, broker: BrokerPosition) -> None:
        """Overwrite local state with the broker's view."""
        self.quantity = abs(broker.qty)
        self.entry_price = broker.avg_entry_price
        self.current_price = broker.current_price
        self.market_value = broker.market_value
        self.cost_basis = broker.cost_basis
        self.unrealized_pl = broker.unrealized_pl
        self.unrealized_pl_percent = broker.unrealized_pl_percent
        self.side = broker.side
        self.last_updated = datetime.utcnow()

    def close(self, price: Decimal, closed_by: str) -> None:
        """Mark the position closed at ``price``."""
        direction = 1 if self.side == PositionSide.LONG else -1
        self.realized_pl = (price - self.entry_price) * self.quantity * direction
        self.close_price = price
        self.current_price = price
        self.status = PositionStatus.CLOSED
        self.closed_at = datetime.utcnow()
        self.closed_by = closed_by
        self.unrealized_pl = Decimal("0")
        self.unrealized_pl_percent = Decimal("0")
        self.last_updated = self.closed_at

    @classmethod
    def from_broker(cls, user_id: str, broker: BrokerPosition) -> "Position":
        return cls(
            user_id=user_id,
            symbol=broker.symbol,
            quantity=abs(broker.qty),
            entry_price=broker.avg_entry_price,
            current_price=broker.current_price,
            market_value=broker.market_value,
            cost_basis=broker.cost_basis,
            unrealized_pl=broker.unrealized_pl,
            unrealized_pl_percent=broker.unrealized_pl_percent,
            side=broker.side,
        )


# =============================================================================
# Account Models
# =============================================================================

class AccountSnapshot(BaseModel):
    """Parsed broker account."""
    model_config = ConfigDict(json_encoders={Decimal: str})

    account_number: Optional[str] = None
    status: Optional[str] = None
    equity: Decimal
    cash: Decimal
    buying_power: Decimal
    portfolio_value: Decimal
    last_equity: Decimal
    trading_blocked: bool = False

    @classmethod
    def from_api(cls, payload: Dict[str, Any]) -> "AccountSnapshot":
        if not isinstance(payload, dict):
            raise MalformedGatewayResponse("Account response is not an object", payload)
        return cls(
            account_number=payload.get("account_number"),
            status=payload.get("status"),
            equity=parse_decimal(payload, "equity"),
            cash=parse_decimal(payload, "cash"),
            buying_power=parse_decimal(payload, "buying_power"),
            portfolio_value=parse_decimal(payload, "portfolio_value", required=False)
            or parse_decimal(payload, "equity"),
            last_equity=parse_decimal(payload, "last_equity"),
            trading_blocked=bool(payload.get("trading_blocked", False)),
        )

    @property
    def daily_pnl(self) -> Decimal:
        return self.equity - self.last_equity

    @property
    def daily_pnl_percent(self) -> Decimal:
        if self.last_equity <= 0:
            return Decimal("0")
        return (self.daily_pnl / self.last_equity) * 100


class MarketClock(BaseModel):
    is_open: bool
    next_open: Optional[datetime] = None
    next_close: Optional[datetime] = None

    @classmethod
    def from_api(cls, payload: Dict[str, Any]) -> "MarketClock":
        if not isinstance(payload, dict) or "is_open" not in payload:
            raise MalformedGatewayResponse("Clock response missing 'is_open'", payload)
        return cls(
            is_open=bool(payload["is_open"]),
            next_open=parse_timestamp(payload, "next_open"),
            next_close=parse_timestamp(payload, "next_close"),
        )


class BrokerAccount(BaseModel):
    """Stored brokerage credentials for one user."""

    user_id: str
    api_key: str
    secret_key: str
    is_paper: bool = True
    is_connected: bool = True
    account_number: Optional[str] = None
    last_synced_at: Optional[datetime] = None


class TradingPreferences(BaseModel):
    """The gate the scheduler consults before processing a user."""

    user_id: str
    auto_trading_enabled: bool = False
    trading_status: TradingStatus = TradingStatus.STOPPED
    last_toggle_time: datetime = Field(default_factory=datetime.utcnow)
    last_toggled_by: Optional[str] = None


# =============================================================================
# Risk Models
# =============================================================================

class LossLimit(BaseModel):
    enabled: bool = True
    value: Decimal = Field(default=Decimal("5"), ge=0)
    type: LimitType = LimitType.PERCENTAGE


class ThresholdSetting(BaseModel):
    enabled: bool = True
    value: Decimal = Field(default=Decimal("0"), ge=0)


class RiskLimits(BaseModel):
    """Per-user risk limits. Upserted, never deleted while the user exists.

    daily_loss_limit and portfolio_drawdown_limit can halt trading; the
    *_threshold settings only raise alerts.
    """
    model_config = ConfigDict(json_encoders={Decimal: str})

    user_id: str
    daily_loss_limit: LossLimit = Field(default_factory=LossLimit)
    portfolio_drawdown_limit: ThresholdSetting = Field(
        default_factory=lambda: ThresholdSetting(value=Decimal("15"))
    )
    position_loss_threshold: ThresholdSetting = Field(
        default_factory=lambda: ThresholdSetting(value=Decimal("10"))
    )
    daily_loss_threshold: ThresholdSetting = Field(
        default_factory=lambda: ThresholdSetting(value=Decimal("3"))
    )
    drawdown_threshold: ThresholdSetting = Field(
        default_factory=lambda: ThresholdSetting(value=Decimal("10"))
    )
    volatility_threshold: ThresholdSetting = Field(
        default_factory=lambda: ThresholdSetting(value=Decimal("50"))
    )
    halt_trading_on_daily_limit: bool = True
    halt_trading_on_drawdown: bool = True
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)


class SectorConcentration(BaseModel):
    sector: str
    value: Decimal
    percentage: Decimal


class PositionConcentration(BaseModel):
    symbol: str
    value: Decimal
    percentage: Decimal


class RiskMetrics(BaseModel):
    """Point-in-time risk snapshot. Append-only history.

    peak_portfolio_value and max_drawdown are monotonic over the history.
    Percent fields use percent units (5.0 = 5%).
    """
    model_config = ConfigDict(json_encoders={Decimal: str})

    user_id: str
    id: str = Field(default_factory=lambda: str(uuid4()))
    current_risk_exposure: Decimal = Decimal("0")
    portfolio_value: Decimal = Decimal("0")
    cash_available: Decimal = Decimal("0")
    daily_pnl: Decimal = Decimal("0")
    daily_pnl_percent: Decimal = Decimal("0")
    peak_portfolio_value: Decimal = Decimal("0")
    current_drawdown: Decimal = Decimal("0")
    max_drawdown: Decimal = Decimal("0")
    sector_concentration: List[SectorConcentration] = Field(default_factory=list)
    position_concentration: List[PositionConcentration] = Field(default_factory=list)
    correlation_matrix: Dict[str, Dict[str, float]] = Field(default_factory=dict)
    volatility_index: Decimal = Decimal("0")
    calculated_at: datetime = Field(default_factory=datetime.utcnow)


class BreachReport(BaseModel):
    """Structured risk-limit breach result (not an exception)."""

    breached: bool = False
    breaches: List[str] = Field(default_factory=list)
    should_halt_trading: bool = False
    checked_at: datetime = Field(default_factory=datetime.utcnow)


class EmergencyStopResult(BaseModel):
    success: bool
    message: str
    closed_positions: int = 0
    failed_symbols: List[str] = Field(default_factory=list)


# =============================================================================
# Monitoring Models
# =============================================================================

class ActivityLog(BaseModel):
    user_id: str
    type: ActivityType
    action: str
    severity: Severity = Severity.INFO
    symbol: Optional[str] = None
    details: Dict[str, Any] = Field(default_factory=dict)
    id: str = Field(default_factory=lambda: str(uuid4()))
    timestamp: datetime = Field(default_factory=datetime.utcnow)


class Alert(BaseModel):
    user_id: str
    type: AlertType
    title: str
    message: str
    symbol: Optional[str] = None
    related_data: Dict[str, Any] = Field(default_factory=dict)
    is_read: bool = False
    is_acknowledged: bool = False
    id: str = Field(default_factory=lambda: str(uuid4()))
    created_at: datetime = Field(default_factory=datetime.utcnow)


# =============================================================================
# Cycle Reporting
# =============================================================================

class UserCycleResult(BaseModel):
    """Outcome of one user's pass through a trading cycle."""

    user_id: str
    outcome: UserCycleOutcome
    reason: Optional[str] = None
    signals_generated: int = 0
    orders_submitted: int = 0
    errors: List[str] = Field(default_factory=list)


class CycleReport(BaseModel):
    """Summary of one scheduler cycle."""

    started_at: datetime = Field(default_factory=datetime.utcnow)
    finished_at: Optional[datetime] = None
    skipped_overlap: bool = False
    failed: bool = False
    error: Optional[str] = None
    results: List[UserCycleResult] = Field(default_factory=list)

    @property
    def users_processed(self) -> int:
        return len(self.results)

    @property
    def failed_users(self) -> List[str]:
        return [r.user_id for r in self.results if r.outcome == UserCycleOutcome.FAILED]

    def result_for(self, user_id: str) -> Optional[UserCycleResult]:
        for result in self.results:
            if result.user_id == user_id:
                return result
        return None


BrokerOrder.model_rebuild()
