"""Error taxonomy for the trading cycle engine.

Per-symbol and per-user failures are raised as these types and caught at the
cycle boundaries (symbol loop, user loop). Risk limit breaches are not
exceptions: the risk gate returns a ``BreachReport``.
"""
from typing import Any, Optional


class CycleEngineError(Exception):
    """Base class for all engine errors."""


class InsufficientData(CycleEngineError):
    """An indicator was asked to evaluate a series shorter than its window."""

    def __init__(self, indicator: str, required: int, available: int):
        self.indicator = indicator
        self.required = required
        self.available = available
        super().__init__(
            f"{indicator} requires at least {required} data points, got {available}"
        )


class AccountNotConnected(CycleEngineError):
    """The user has no active brokerage credentials."""

    def __init__(self, user_id: str, detail: str = "Broker account not connected"):
        self.user_id = user_id
        super().__init__(f"{detail} (user={user_id})")


class GatewayError(CycleEngineError):
    """The broker gateway rejected a request or was unreachable."""

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        payload: Optional[Any] = None,
    ):
        self.message = message
        self.status_code = status_code
        self.payload = payload
        prefix = f"[{status_code}] " if status_code is not None else ""
        super().__init__(f"{prefix}{message}")

    @property
    def is_transient(self) -> bool:
        """True for transport failures, rate limits and broker 5xx."""
        return self.status_code is None or self.status_code == 429 or self.status_code >= 500


class MalformedGatewayResponse(GatewayError):
    """A broker response could not be parsed into its value type."""

    def __init__(self, message: str, payload: Optional[Any] = None):
        super().__init__(message, status_code=None, payload=payload)

    @property
    def is_transient(self) -> bool:
        return False


class ReconciliationConflict(CycleEngineError):
    """Local position state disagrees with the broker.

    Raised inside reconciliation and resolved there by overwriting local
    state with the broker's view.
    """

    def __init__(self, user_id: str, symbol: str, local: Any, broker: Any):
        self.user_id = user_id
        self.symbol = symbol
        self.local = local
        self.broker = broker
        super().__init__(
            f"Position mismatch for {symbol} (user={user_id}): "
            f"local={local} broker={broker}"
        )


class StrategyConfigError(CycleEngineError):
    """A strategy configuration is missing or inconsistent."""


__all__ = [
    "CycleEngineError",
    "InsufficientData",
    "AccountNotConnected",
    "GatewayError",
    "MalformedGatewayResponse",
    "ReconciliationConflict",
    "StrategyConfigError",
]
