"""
Pytest configuration and fixtures.
"""

import asyncio
from decimal import Decimal
from typing import Any, AsyncGenerator, Optional

import pytest

from polycopy.db.database import Database
from polycopy.db.models import OrderSide
from polycopy.platforms.base import (
    ExchangeGateway,
    MarketInfo,
    MarketToken,
    OrderBook,
    OrderStatusSnapshot,
    PostedOrder,
)
from polycopy.services.channel import RateLimitedChannel
from polycopy.services.client_cache import SigningClientCache
from polycopy.services.execution import OrderExecutionEngine
from polycopy.services.rate_limiter import WindowRateLimiter

USER_ADDRESS = "0x1111111111111111111111111111111111111111"
PROXY_WALLET = "0x2222222222222222222222222222222222222222"
MARKET_ID = "0xmarket"
YES_TOKEN = "1001"
NO_TOKEN = "1002"


class FakeClock:
    """Manually advanced monotonic clock. sleep() advances it."""

    def __init__(self, start: float = 1000.0):
        self.now = start
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds
        await asyncio.sleep(0)


class CoarseClock(FakeClock):
    """Wakes a hair before the requested deadline, like a low-resolution timer."""

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += max(seconds - 1e-9, 0.0)
        await asyncio.sleep(0)


class FakeGateway(ExchangeGateway):
    """In-memory exchange recording every call."""

    name = "Fake"

    def __init__(self):
        self.market = MarketInfo(
            market_id=MARKET_ID,
            question="Will it rain?",
            tokens=[MarketToken(YES_TOKEN, "Yes"), MarketToken(NO_TOKEN, "No")],
            min_tick_size=Decimal("0.001"),
        )
        self.book = OrderBook(
            token_id=YES_TOKEN,
            bids=[(Decimal("0.50"), Decimal("100"))],
            asks=[(Decimal("0.52"), Decimal("100"))],
        )
        self.market_error: Optional[Exception] = None
        self.book_error: Optional[Exception] = None
        self.post_errors: list[Exception] = []
        self.statuses: list[Any] = []

        self.market_calls = 0
        self.book_calls = 0
        self.posted: list[dict] = []
        self.cancelled: list[str] = []
        self.status_calls = 0

    async def initialize(self) -> None:
        pass

    async def close(self) -> None:
        pass

    async def get_market(self, market_id: str) -> MarketInfo:
        self.market_calls += 1
        if self.market_error:
            raise self.market_error
        return self.market

    async def get_order_book(self, token_id: str) -> OrderBook:
        self.book_calls += 1
        if self.book_error:
            raise self.book_error
        return self.book

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
        self.posted.append(
            dict(client=client, token_id=token_id, side=side, price=price, size=size, order_type=order_type)
        )
        if self.post_errors:
            raise self.post_errors.pop(0)
        return PostedOrder(order_id=f"order-{len(self.posted)}", status="live")

    async def cancel_order(self, client: Any, order_id: str) -> dict:
        self.cancelled.append(order_id)
        return {"canceled": [order_id]}

    async def get_order_status(self, order_id: str) -> OrderStatusSnapshot:
        self.status_calls += 1
        status = self.statuses.pop(0) if len(self.statuses) > 1 else self.statuses[0]
        if isinstance(status, Exception):
            raise status
        return status


class FakeBalances:
    """Fixed outcome token balances."""

    def __init__(self, balance: Decimal = Decimal("0")):
        self.balance = balance
        self.calls: list[tuple[str, str]] = []

    async def get_balance(self, wallet_address: str, token_id: str) -> Decimal:
        self.calls.append((wallet_address, token_id))
        return self.balance


class FakeClientFactory:
    """Counts constructions; optionally blocks until released or fails."""

    def __init__(self):
        self.calls: list[str] = []
        self.release: Optional[asyncio.Event] = None
        self.errors: list[Exception] = []

    async def __call__(self, user_key: str) -> Any:
        self.calls.append(user_key)
        if self.release is not None:
            await self.release.wait()
        if self.errors:
            raise self.errors.pop(0)
        return {"user": user_key, "n": len(self.calls)}


@pytest.fixture
async def db() -> AsyncGenerator[Database, None]:
    """In-memory database with all tables."""
    database = Database("sqlite+aiosqlite:///:memory:")
    await database.init()
    await database.create_tables()
    yield database
    await database.close()


@pytest.fixture
async def user(db: Database):
    return await db.create_user(USER_ADDRESS, proxy_wallet=PROXY_WALLET)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def balances() -> FakeBalances:
    return FakeBalances()


@pytest.fixture
def client_factory() -> FakeClientFactory:
    return FakeClientFactory()


@pytest.fixture
async def channel(clock: FakeClock) -> AsyncGenerator[RateLimitedChannel, None]:
    ch = RateLimitedChannel("clob", calls_per_second=20, calls_per_day=1000, clock=clock, sleep_fn=clock.sleep)
    yield ch
    await ch.close()


@pytest.fixture
def engine(gateway, channel, clock, client_factory, balances) -> OrderExecutionEngine:
    """Engine wired to fakes, with zero retry backoff."""
    return OrderExecutionEngine(
        gateway=gateway,
        channel=channel,
        rate_limiter=WindowRateLimiter(clock=clock, sleep_fn=clock.sleep),
        client_cache=SigningClientCache(client_factory, clock=clock),
        balances=balances,
        retry_base_delay=0,
        retry_max_delay=0,
    )
