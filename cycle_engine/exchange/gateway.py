"""Broker gateway interface and per-user factory."""
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from datetime import datetime
from decimal import Decimal
from typing import AsyncIterator, Callable, List, Optional

import structlog

from cycle_engine.core.exceptions import AccountNotConnected
from cycle_engine.core.models import (
    AccountSnapshot,
    BarSeries,
    BracketOrderParams,
    BrokerAccount,
    BrokerOrder,
    BrokerPosition,
    MarketClock,
    OrderSide,
    OrderType,
    TimeInForce,
)

logger = structlog.get_logger(__name__)


class BrokerGateway(ABC):
    """
    Async brokerage interface consumed by the engine.

    Implementations parse every response into the value types in
    ``cycle_engine.core.models`` and raise ``MalformedGatewayResponse`` when
    a field is missing or not numeric. HTTP failures raise ``GatewayError``.
    """

    @abstractmethod
    async def get_account(self) -> AccountSnapshot:
        """Equity, cash, buying power and last equity."""

    @abstractmethod
    async def get_positions(self) -> List[BrokerPosition]:
        """All open broker positions."""

    @abstractmethod
    async def get_bars(
        self,
        symbol: str,
        start: datetime,
        end: datetime,
        timeframe: str = "1Day",
    ) -> BarSeries:
        """Historical bars, oldest first."""

    @abstractmethod
    async def submit_bracket_order(self, params: BracketOrderParams) -> BrokerOrder:
        """Submit an entry order with take-profit and stop-loss legs."""

    @abstractmethod
    async def submit_order(
        self,
        symbol: str,
        quantity: Decimal,
        side: OrderSide,
        order_type: OrderType = OrderType.MARKET,
        time_in_force: TimeInForce = TimeInForce.DAY,
        limit_price: Optional[Decimal] = None,
        stop_price: Optional[Decimal] = None,
    ) -> BrokerOrder:
        """Submit a simple order."""

    @abstractmethod
    async def get_order_status(self, order_id: str) -> BrokerOrder:
        """Current broker view of an order (with legs)."""

    @abstractmethod
    async def cancel_order(self, order_id: str) -> None:
        """Request cancellation of an order."""

    @abstractmethod
    async def close_position(self, symbol: str) -> BrokerOrder:
        """Liquidate a position at market."""

    @abstractmethod
    async def get_clock(self) -> MarketClock:
        """Market open/closed state."""

    async def close(self):
        """Release transport resources."""


GatewayBuilder = Callable[[BrokerAccount], BrokerGateway]


def alpaca_gateway_builder(account: BrokerAccount) -> BrokerGateway:
    from cycle_engine.exchange.alpaca_client import AlpacaClient

    return AlpacaClient(
        api_key=account.api_key,
        secret_key=account.secret_key,
        is_paper=account.is_paper,
    )


class GatewayFactory:
    """
    Builds a gateway from a user's stored broker credentials.

    Args:
        database: Database holding BrokerAccount records
        builder: Turns credentials into a gateway (Alpaca by default)
    """

    def __init__(self, database, builder: Optional[GatewayBuilder] = None):
        self.database = database
        self.builder = builder or alpaca_gateway_builder

    async def get_account(self, user_id: str) -> BrokerAccount:
        """Connected account for the user.

        Raises:
            AccountNotConnected: No account stored or it was disconnected
        """
        account = await self.database.get_broker_account(user_id)
        if account is None:
            raise AccountNotConnected(user_id, "No broker account found")
        if not account.is_connected:
            raise AccountNotConnected(user_id)
        return account

    async def for_user(self, user_id: str) -> BrokerGateway:
        account = await self.get_account(user_id)
        logger.debug("gateway_factory.gateway_created", user_id=user_id, is_paper=account.is_paper)
        return self.builder(account)

    @asynccontextmanager
    async def session(
        self, user_id: str, gateway: Optional[BrokerGateway] = None
    ) -> AsyncIterator[BrokerGateway]:
        """Yield ``gateway`` if given, else a new one closed on exit."""
        if gateway is not None:
            yield gateway
            return
        gateway = await self.for_user(user_id)
        try:
            yield gateway
        finally:
            await gateway.close()
