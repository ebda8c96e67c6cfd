"""Alpaca brokerage client.

Implements the broker gateway over Alpaca's REST API with an async httpx
client. Each client is bound to one user's credentials:
- Trading API (paper or live): account, positions, orders, clock
- Market data API: daily bars (IEX feed, split/dividend adjusted)

Read-only calls are retried with exponential backoff. Order submission,
cancellation and position closing are never retried.
"""
import asyncio
import functools
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

import httpx
import structlog

from cycle_engine.core.config import AlpacaAPIConfig, alpaca_config
from cycle_engine.core.exceptions import GatewayError, MalformedGatewayResponse
from cycle_engine.core.models import (
    AccountSnapshot,
    Bar,
    BarSeries,
    BracketOrderParams,
    BrokerOrder,
    BrokerPosition,
    MarketClock,
    OrderSide,
    OrderType,
    TimeInForce,
)
from cycle_engine.exchange.gateway import BrokerGateway

logger = structlog.get_logger(__name__)


class RetryConfig:
    """Configuration for retry logic."""
    DEFAULT_MAX_RETRIES = 3
    DEFAULT_BASE_DELAY = 1.0  # seconds
    DEFAULT_MAX_DELAY = 30.0  # seconds
    DEFAULT_EXPONENTIAL_BASE = 2.0


def with_retry(
    max_retries: int = RetryConfig.DEFAULT_MAX_RETRIES,
    base_delay: float = RetryConfig.DEFAULT_BASE_DELAY,
    max_delay: float = RetryConfig.DEFAULT_MAX_DELAY,
    exponential_base: float = RetryConfig.DEFAULT_EXPONENTIAL_BASE,
    retryable_exceptions: tuple = (GatewayError,),
):
    """Decorator for adding retry logic with exponential backoff.

    Gateway errors are retried only when transient (transport failure,
    HTTP 429 or 5xx); client errors and malformed responses raise at once.

    Args:
        max_retries: Maximum number of retry attempts
        base_delay: Initial delay between retries in seconds
        max_delay: Maximum delay between retries in seconds
        exponential_base: Base for exponential backoff calculation
        retryable_exceptions: Tuple of exceptions that may trigger a retry
    """
    def decorator(func):
        @functools.wraps(func)
        async def wrapper(*args, **kwargs):
            last_exception = None

            for attempt in range(max_retries + 1):
                try:
                    return await func(*args, **kwargs)
                except retryable_exceptions as e:
                    if not getattr(e, "is_transient", True):
                        raise
                    last_exception = e
                    if attempt < max_retries:
                        delay = min(
                            base_delay * (exponential_base ** attempt),
                            max_delay
                        )
                        logger.warning(
                            f"{func.__name__}.retry_attempt",
                            attempt=attempt + 1,
                            max_retries=max_retries,
                            delay=delay,
                            error=str(e)
                        )
                        await asyncio.sleep(delay)

            logger.error(
                f"{func.__name__}.max_retries_exceeded",
                max_retries=max_retries,
                last_error=str(last_exception)
            )
            raise last_exception

        return wrapper
    return decorator


def _isoformat(value: datetime) -> str:
    if value.tzinfo is None:
        return value.strftime("%Y-%m-%dT%H:%M:%SZ")
    return value.isoformat()


class AlpacaClient(BrokerGateway):
    """
    Broker gateway for one Alpaca account.

    Usage:
        async with AlpacaClient(api_key, secret_key, is_paper=True) as client:
            account = await client.get_account()
    """

    def __init__(
        self,
        api_key: str,
        secret_key: str,
        is_paper: bool = True,
        config: Optional[AlpacaAPIConfig] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.config = config or alpaca_config
        self.is_paper = is_paper
        headers = {
            "APCA-API-KEY-ID": api_key,
            "APCA-API-SECRET-KEY": secret_key,
            "Accept": "application/json",
        }
        self._trading = httpx.AsyncClient(
            base_url=self.config.trading_base_url(is_paper),
            headers=headers,
            timeout=self.config.timeout,
            transport=transport,
        )
        self._data = httpx.AsyncClient(
            base_url=self.config.data_base_url,
            headers=headers,
            timeout=self.config.timeout,
            transport=transport,
        )

    async def __aenter__(self) -> "AlpacaClient":
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.close()

    async def close(self):
        """Close the HTTP clients."""
        await self._trading.aclose()
        await self._data.aclose()

    # =========================================================================
    # Transport
    # =========================================================================

    async def _request(
        self,
        client: httpx.AsyncClient,
        method: str,
        path: str,
        params: Optional[Dict[str, Any]] = None,
        json: Optional[Dict[str, Any]] = None,
    ) -> Any:
        """Send a request and decode the JSON body.

        Raises:
            GatewayError: Transport failure or HTTP error status
            MalformedGatewayResponse: Body is not valid JSON
        """
        try:
            response = await client.request(method, path, params=params, json=json)
        except httpx.TransportError as e:
            raise GatewayError(f"{method} {path} failed: {e}") from e

        if response.status_code >= 400:
            message = response.text
            payload = None
            try:
                payload = response.json()
                message = payload.get("message", message) if isinstance(payload, dict) else message
            except ValueError:
                pass
            logger.warning(
                "alpaca_client.http_error",
                method=method,
                path=path,
                status_code=response.status_code,
                message=message,
            )
            raise GatewayError(message, status_code=response.status_code, payload=payload)

        if response.status_code == 204 or not response.content:
            return None
        try:
            return response.json()
        except ValueError as e:
            raise MalformedGatewayResponse(f"Invalid JSON from {path}: {e}", response.text)

    # =========================================================================
    # Account & Positions
    # =========================================================================

    @with_retry(max_retries=alpaca_config.retry_attempts)
    async def get_account(self) -> AccountSnapshot:
        payload = await self._request(self._trading, "GET", "/v2/account")
        return AccountSnapshot.from_api(payload)

    @with_retry(max_retries=alpaca_config.retry_attempts)
    async def get_positions(self) -> List[BrokerPosition]:
        payload = await self._request(self._trading, "GET", "/v2/positions")
        if not isinstance(payload, list):
            raise MalformedGatewayResponse("Positions response is not a list", payload)
        return [BrokerPosition.from_api(item) for item in payload]

    @with_retry(max_retries=alpaca_config.retry_attempts)
    async def get_clock(self) -> MarketClock:
        payload = await self._request(self._trading, "GET", "/v2/clock")
        return MarketClock.from_api(payload)

    # =========================================================================
    # Market Data
    # =========================================================================

    @with_retry(max_retries=alpaca_config.retry_attempts)
    async def get_bars(
        self,
        symbol: str,
        start: datetime,
        end: datetime,
        timeframe: str = "1Day",
    ) -> BarSeries:
        """
        Fetch bars for one symbol, following pagination.

        Args:
            symbol: Ticker symbol
            start: Range start (UTC)
            end: Range end (UTC)
            timeframe: Alpaca timeframe, e.g. "1Day"

        Returns:
            BarSeries, oldest first (empty when the broker has no data)
        """
        symbol = symbol.upper()
        params: Dict[str, Any] = {
            "timeframe": timeframe,
            "start": _isoformat(start),
            "end": _isoformat(end),
            "limit": 10000,
            "adjustment": "all",
            "feed": self.config.data_feed,
        }
        bars: List[Bar] = []
        while True:
            payload = await self._request(
                self._data, "GET", f"/v2/stocks/{symbol}/bars", params=params
            )
            if not isinstance(payload, dict):
                raise MalformedGatewayResponse("Bars response is not an object", payload)
            bars.extend(Bar.from_api(item) for item in (payload.get("bars") or []))
            token = payload.get("next_page_token")
            if not token:
                break
            params = {**params, "page_token": token}

        try:
            return BarSeries(symbol=symbol, bars=bars)
        except ValueError as e:
            raise MalformedGatewayResponse(f"Invalid bar series for {symbol}: {e}")

    # =========================================================================
    # Orders
    # =========================================================================

    async def submit_bracket_order(self, params: BracketOrderParams) -> BrokerOrder:
        body = params.to_api()
        logger.info(
            "alpaca_client.submit_bracket_order",
            symbol=params.symbol,
            qty=params.quantity,
            side=params.side.value,
            take_profit=body["take_profit"]["limit_price"],
            stop_loss=body["stop_loss"]["stop_price"],
        )
        payload = await self._request(self._trading, "POST", "/v2/orders", json=body)
        return BrokerOrder.from_api(payload)

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
        if order_type in (OrderType.LIMIT, OrderType.STOP_LIMIT) and limit_price is None:
            raise ValueError("Limit price is required for limit orders")
        if order_type in (OrderType.STOP, OrderType.STOP_LIMIT) and stop_price is None:
            raise ValueError("Stop price is required for stop orders")

        body: Dict[str, Any] = {
            "symbol": symbol.upper(),
            "qty": str(quantity),
            "side": OrderSide(side).value,
            "type": OrderType(order_type).value,
            "time_in_force": TimeInForce(time_in_force).value,
        }
        if limit_price is not None:
            body["limit_price"] = f"{limit_price:.2f}"
        if stop_price is not None:
            body["stop_price"] = f"{stop_price:.2f}"

        logger.info("alpaca_client.submit_order", **body)
        payload = await self._request(self._trading, "POST", "/v2/orders", json=body)
        return BrokerOrder.from_api(payload)

    @with_retry(max_retries=alpaca_config.retry_attempts)
    async def get_order_status(self, order_id: str) -> BrokerOrder:
        payload = await self._request(
            self._trading, "GET", f"/v2/orders/{order_id}", params={"nested": "true"}
        )
        return BrokerOrder.from_api(payload)

    async def cancel_order(self, order_id: str) -> None:
        logger.info("alpaca_client.cancel_order", order_id=order_id)
        await self._request(self._trading, "DELETE", f"/v2/orders/{order_id}")

    async def close_position(self, symbol: str) -> BrokerOrder:
        symbol = symbol.upper()
        logger.info("alpaca_client.close_position", symbol=symbol)
        payload = await self._request(self._trading, "DELETE", f"/v2/positions/{symbol}")
        return BrokerOrder.from_api(payload)
