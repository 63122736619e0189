"""
Exchange gateways.
"""

from polycopy.platforms.base import (
    ExchangeGateway,
    MarketInfo,
    MarketNotFoundError,
    OrderBookNotFoundError,
    PlatformError,
    RateLimitError,
)
from polycopy.platforms.polymarket import PolymarketGateway

__all__ = [
    "ExchangeGateway",
    "MarketInfo",
    "MarketNotFoundError",
    "OrderBookNotFoundError",
    "PlatformError",
    "PolymarketGateway",
    "RateLimitError",
]
