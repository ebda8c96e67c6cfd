"""Brokerage integration for the trading cycle engine."""

from cycle_engine.exchange.gateway import (
    BrokerGateway,
    GatewayFactory,
    alpaca_gateway_builder,
)
from cycle_engine.exchange.alpaca_client import (
    AlpacaClient,
    RetryConfig,
    with_retry,
)

__all__ = [
    "BrokerGateway",
    "GatewayFactory",
    "alpaca_gateway_builder",
    "AlpacaClient",
    "RetryConfig",
    "with_retry",
]
