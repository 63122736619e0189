"""
Polymarket exchange gateway using the CLOB API.
Market data and order status go over plain REST; signed order
operations go through py-clob-client.
"""

import asyncio
from decimal import Decimal
from typing import Any, Optional

import httpx
from py_clob_client.clob_types import OrderArgs, OrderType, PartialCreateOrderOptions
from py_clob_client.order_builder.constants import BUY, SELL

from polycopy.db.models import OrderSide
from polycopy.platforms.base import (
    ExchangeGateway,
    MarketInfo,
    MarketNotFoundError,
    MarketToken,
    OrderBook,
    OrderBookNotFoundError,
    OrderStatusSnapshot,
    PlatformError,
    PostedOrder,
    RateLimitError,
)
from polycopy.utils.logging import get_logger

logger = get_logger(__name__)

PLATFORM = "polymarket"

# Tick sizes accepted by the order builder
SUPPORTED_TICK_SIZES = ("0.1", "0.01", "0.001", "0.0001")


def _to_decimal(value: Any) -> Optional[Decimal]:
    if value is None or value == "":
        return None
    return Decimal(str(value))


class PolymarketGateway(ExchangeGateway):
    """Polymarket CLOB on Polygon."""

    name = "Polymarket"

    def __init__(self, clob_url: str, timeout: float = 30.0):
        self.clob_url = clob_url
        self.timeout = timeout
        self._http_client: Optional[httpx.AsyncClient] = None

    async def initialize(self) -> None:
        """Initialize the CLOB HTTP client."""
        self._http_client = httpx.AsyncClient(
            base_url=self.clob_url,
            timeout=self.timeout,
            headers={"Content-Type": "application/json"},
        )
        logger.info("Polymarket gateway initialized", clob_url=self.clob_url)

    async def close(self) -> None:
        """Close connections."""
        if self._http_client:
            await self._http_client.aclose()
            self._http_client = None

    async def _clob_request(
        self,
        method: str,
        endpoint: str,
        not_found: type[PlatformError] = PlatformError,
        **kwargs,
    ) -> Any:
        """Make request to CLOB API."""
        if not self._http_client:
            raise RuntimeError("Client not initialized")

        try:
            response = await self._http_client.request(method, endpoint, **kwargs)

            if response.status_code == 429:
                raise RateLimitError("Rate limit exceeded", PLATFORM, status_code=429)

            if response.status_code == 404:
                raise not_found(
                    f"Not found: {endpoint} ({self._error_text(response)})",
                    PLATFORM,
                    status_code=404,
                )

            response.raise_for_status()
            return response.json()

        except httpx.HTTPStatusError as e:
            raise PlatformError(
                f"CLOB API error: {e.response.status_code} {self._error_text(e.response)}",
                PLATFORM,
                str(e.response.status_code),
                status_code=e.response.status_code,
            )

    @staticmethod
    def _error_text(response: httpx.Response) -> str:
        try:
            body = response.json()
        except ValueError:
            return response.text[:200]
        if isinstance(body, dict):
            return str(body.get("error") or body.get("errorMsg") or body)
        return str(body)[:200]

    # ===================
    # Market Data
    # ===================

    async def get_market(self, market_id: str) -> MarketInfo:
        """Get market metadata by condition id."""
        data = await self._clob_request(
            "GET", f"/markets/{market_id}", not_found=MarketNotFoundError
        )
        if not data or not isinstance(data, dict):
            raise MarketNotFoundError(f"Market {market_id} not found", PLATFORM, status_code=404)

        tokens = [
            MarketToken(
                token_id=str(t.get("token_id", "")),
                outcome=str(t.get("outcome", "")),
                price=_to_decimal(t.get("price")),
            )
            for t in data.get("tokens") or []
            if t.get("token_id")
        ]

        return MarketInfo(
            market_id=data.get("condition_id") or market_id,
            question=data.get("question"),
            tokens=tokens,
            active=bool(data.get("active", True)),
            closed=bool(data.get("closed", False)),
            neg_risk=bool(data.get("neg_risk", False)),
            min_tick_size=_to_decimal(data.get("minimum_tick_size")),
            min_order_size=_to_decimal(data.get("minimum_order_size")),
            raw_data=data,
        )

    async def get_order_book(self, token_id: str) -> OrderBook:
        """Get order book from CLOB API."""
        data = await self._clob_request(
            "GET", "/book", not_found=OrderBookNotFoundError, params={"token_id": token_id}
        )
        if not isinstance(data, dict) or data.get("error"):
            raise OrderBookNotFoundError(
                f"No orderbook exists for token {token_id}", PLATFORM, status_code=404
            )

        bids = [
            (Decimal(str(b.get("price", 0))), Decimal(str(b.get("size", 0))))
            for b in data.get("bids", [])
        ]
        asks = [
            (Decimal(str(a.get("price", 0))), Decimal(str(a.get("size", 0))))
            for a in data.get("asks", [])
        ]

        # The CLOB lists bids ascending and asks descending
        bids.sort(key=lambda level: level[0], reverse=True)
        asks.sort(key=lambda level: level[0])

        return OrderBook(token_id=token_id, bids=bids, asks=asks)

    # ===================
    # Orders
    # ===================

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
        """Sign and post a limit order through the user's ClobClient."""
        order_args = OrderArgs(
            token_id=token_id,
            price=float(price),
            size=float(size),
            side=BUY if side == OrderSide.BUY else SELL,
        )

        options = None
        tick = format(tick_size.normalize(), "f") if tick_size else None
        if tick in SUPPORTED_TICK_SIZES:
            options = PartialCreateOrderOptions(tick_size=tick, neg_risk=neg_risk)
        elif neg_risk:
            options = PartialCreateOrderOptions(neg_risk=True)

        # py-clob-client is synchronous; keep the event loop free while it signs and posts
        signed_order = await asyncio.to_thread(client.create_order, order_args, options)
        response = await asyncio.to_thread(
            client.post_order, signed_order, getattr(OrderType, order_type.upper())
        )

        if not isinstance(response, dict):
            raise PlatformError(f"Unexpected order response: {response!r}", PLATFORM)

        order_id = response.get("orderID") or response.get("orderId")
        if not order_id:
            message = response.get("errorMsg") or response.get("error") or "Order was not accepted"
            raise PlatformError(str(message), PLATFORM, code=response.get("errorCode"))

        logger.info(
            "Order posted",
            order_id=order_id,
            token_id=token_id,
            side=side.value,
            price=str(price),
            size=str(size),
            order_type=order_type,
        )

        return PostedOrder(
            order_id=order_id,
            status=response.get("status"),
            tx_hashes=list(response.get("transactionsHashes") or []),
            raw_data=response,
        )

    async def cancel_order(self, client: Any, order_id: str) -> dict:
        """Cancel an order through the user's ClobClient."""
        response = await asyncio.to_thread(client.cancel, order_id)
        logger.info("Order cancelled", order_id=order_id)
        return response if isinstance(response, dict) else {"result": response}

    async def get_order_status(self, order_id: str) -> OrderStatusSnapshot:
        """Get order status from CLOB API."""
        data = await self._clob_request("GET", f"/order/{order_id}")
        if not isinstance(data, dict):
            raise PlatformError(f"Unexpected order status response for {order_id}", PLATFORM)

        tx_hash = data.get("tx_hash") or data.get("transactionHash")
        if not tx_hash and data.get("transactionsHashes"):
            tx_hash = data["transactionsHashes"][0]

        return OrderStatusSnapshot(
            order_id=order_id,
            status=str(data.get("status") or "").upper(),
            tx_hash=tx_hash,
            filled_size=_to_decimal(data.get("filled_size") or data.get("size_matched")),
            raw_data=data,
        )
