"""
Exchange abstraction layer.
The order pipeline talks to the exchange only through this interface.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Optional

from polycopy.db.models import OrderSide


@dataclass
class MarketToken:
    """One outcome token of a market."""
    token_id: str
    outcome: str
    price: Optional[Decimal] = None


@dataclass
class MarketInfo:
    """Market metadata needed to place an order."""
    market_id: str
    question: Optional[str]

    # Outcome tokens, indexed by outcome index
    tokens: list[MarketToken]

    # Status
    active: bool = True
    closed: bool = False
    neg_risk: bool = False

    # Trading constraints
    min_tick_size: Optional[Decimal] = None
    min_order_size: Optional[Decimal] = None

    # Platform-specific data
    raw_data: Optional[dict] = None

    def token_at(self, outcome_index: int) -> Optional[MarketToken]:
        if 0 <= outcome_index < len(self.tokens):
            return self.tokens[outcome_index]
        return None


@dataclass
class OrderBook:
    """Order book snapshot."""
    token_id: str

    # Bids: list of (price, size) tuples, best first
    bids: list[tuple[Decimal, Decimal]]

    # Asks: list of (price, size) tuples, best first
    asks: list[tuple[Decimal, Decimal]]

    @property
    def best_bid(self) -> Optional[Decimal]:
        return self.bids[0][0] if self.bids else None

    @property
    def best_ask(self) -> Optional[Decimal]:
        return self.asks[0][0] if self.asks else None

    @property
    def spread(self) -> Optional[Decimal]:
        if self.best_bid and self.best_ask:
            return self.best_ask - self.best_bid
        return None


@dataclass
class OrderStatusSnapshot:
    """Exchange-reported order state."""
    order_id: str
    status: str  # raw upstream status, e.g. "SETTLED"
    tx_hash: Optional[str] = None
    filled_size: Optional[Decimal] = None
    raw_data: Optional[dict] = None


@dataclass
class PostedOrder:
    """Exchange response to an order post."""
    order_id: str
    status: Optional[str] = None
    tx_hashes: list[str] = field(default_factory=list)
    raw_data: Optional[dict] = None


class PlatformError(Exception):
    """Base exception for exchange and explorer errors."""
    def __init__(
        self,
        message: str,
        platform: str = "polymarket",
        code: Optional[str] = None,
        status_code: Optional[int] = None,
    ):
        self.message = message
        self.platform = platform
        self.code = code
        self.status_code = status_code
        super().__init__(f"[{platform}] {message}")


class MarketNotFoundError(PlatformError):
    """Raised when market metadata cannot be resolved."""
    pass


class OrderBookNotFoundError(PlatformError):
    """Raised when no order book exists for a token."""
    pass


class RateLimitError(PlatformError):
    """Raised when the upstream answers 429."""
    pass


class ExchangeGateway(ABC):
    """Abstract exchange used by the execution engine and settlement monitor."""

    name: str

    @abstractmethod
    async def initialize(self) -> None:
        """Open HTTP clients."""
        pass

    @abstractmethod
    async def close(self) -> None:
        """Close connections and cleanup."""
        pass

    # ===================
    # Market Data
    # ===================

    @abstractmethod
    async def get_market(self, market_id: str) -> MarketInfo:
        """Get market metadata. Raises MarketNotFoundError."""
        pass

    @abstractmethod
    async def get_order_book(self, token_id: str) -> OrderBook:
        """Get the order book for a token. Raises OrderBookNotFoundError."""
        pass

    # ===================
    # Orders
    # ===================

    @abstractmethod
    async def post_order(
        self,
        client: Any,
        token_id: str,
        side: OrderSide,
        price: Decimal,
        size: Decimal,
        order_type: str,
        neg_risk: bool = False,
        tick_size: Optional[Decimal] = None,
    ) -> PostedOrder:
        """
        Sign and post a limit order.

        Args:
            client: Authenticated signing client for the user
            token_id: Outcome token to trade
            side: BUY or SELL
            price: Limit price
            size: Number of outcome tokens
            order_type: Time in force, e.g. "FOK"

        Returns:
            PostedOrder with the exchange order id
        """
        pass

    @abstractmethod
    async def cancel_order(self, client: Any, order_id: str) -> dict:
        """Cancel an open order."""
        pass

    @abstractmethod
    async def get_order_status(self, order_id: str) -> OrderStatusSnapshot:
        """Get the exchange-side status of an order."""
        pass
