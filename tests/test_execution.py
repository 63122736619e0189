"""
Tests for the order execution engine.
"""

from decimal import Decimal

import pytest

from polycopy.db.models import OrderSide, OrderStatus
from polycopy.platforms.base import MarketNotFoundError, OrderBookNotFoundError, PlatformError
from polycopy.services.channel import RateLimitedChannel
from polycopy.services.client_cache import SigningClientCache
from polycopy.services.errors import ExecutionError, FailureCategory
from polycopy.services.execution import OrderExecutionEngine, OrderRequest, adjust_price
from polycopy.services.rate_limiter import WindowRateLimiter

from tests.conftest import MARKET_ID, NO_TOKEN, PROXY_WALLET, USER_ADDRESS, YES_TOKEN


def make_order(**kwargs) -> OrderRequest:
    options = dict(
        user_address=USER_ADDRESS,
        market_id=MARKET_ID,
        outcome_index=0,
        side=OrderSide.BUY,
        price=Decimal("0.50"),
        size=Decimal("10"),
        proxy_wallet=PROXY_WALLET,
    )
    options.update(kwargs)
    return OrderRequest(**options)


class TestAdjustPrice:
    """Test slippage adjustment and clamping."""

    def test_buy_clamped_to_max(self):
        price = adjust_price(
            Decimal("0.96"), OrderSide.BUY, Decimal("0.05"),
            Decimal("0.001"), Decimal("0.999"), Decimal("0.001"),
        )
        assert price == Decimal("0.999")

    def test_sell_lowers_price(self):
        price = adjust_price(
            Decimal("0.50"), OrderSide.SELL, Decimal("0.05"),
            Decimal("0.001"), Decimal("0.999"), Decimal("0.001"),
        )
        assert price == Decimal("0.475")

    def test_sell_clamped_to_min(self):
        price = adjust_price(
            Decimal("0.001"), OrderSide.SELL, Decimal("0.5"),
            Decimal("0.001"), Decimal("0.999"), Decimal("0.001"),
        )
        assert price == Decimal("0.001")

    def test_rounds_to_tick(self):
        price = adjust_price(
            Decimal("0.333"), OrderSide.BUY, Decimal("0.05"),
            Decimal("0.01"), Decimal("0.99"), Decimal("0.01"),
        )
        assert price == Decimal("0.35")


class TestSubmit:
    """Test successful submissions."""

    async def test_buy_submitted_with_adjusted_price(self, engine, gateway, client_factory):
        """A 0.96 buy at 5% slippage goes out at 0.999."""
        submitted = await engine.submit(make_order(price=Decimal("0.96")))

        assert submitted.status == OrderStatus.SUBMITTED
        assert submitted.order_id == "order-1"
        assert submitted.token_id == YES_TOKEN
        assert submitted.adjusted_price == Decimal("0.999")
        assert submitted.notional == Decimal("9.990")
        assert gateway.posted[0]["price"] == Decimal("0.999")
        assert gateway.posted[0]["order_type"] == "FOK"
        assert client_factory.calls == [USER_ADDRESS]

    async def test_sell_checks_inventory(self, engine, gateway, balances):
        """Sells read the proxy wallet's token balance first."""
        balances.balance = Decimal("100")

        submitted = await engine.submit(
            make_order(side=OrderSide.SELL, outcome_index=1)
        )

        assert submitted.adjusted_price == Decimal("0.475")
        assert submitted.token_id == NO_TOKEN
        assert balances.calls == [(PROXY_WALLET, NO_TOKEN)]

    async def test_explicit_slippage(self, engine):
        submitted = await engine.submit(make_order(slippage_tolerance=Decimal("0")))

        assert submitted.adjusted_price == Decimal("0.500")

    async def test_market_tick_size_applied(self, engine, gateway):
        """A coarser market tick narrows the price range."""
        gateway.market.min_tick_size = Decimal("0.01")

        submitted = await engine.submit(make_order(price=Decimal("0.96")))

        assert submitted.adjusted_price == Decimal("0.99")

    async def test_market_metadata_cached(self, engine, gateway):
        await engine.submit(make_order())
        await engine.submit(make_order())

        assert gateway.market_calls == 1

    async def test_order_book_not_found(self, engine, gateway):
        """A missing order book is permanent and never posted or retried."""
        gateway.book_error = OrderBookNotFoundError("No orderbook exists for the requested token id")

        with pytest.raises(ExecutionError) as exc_info:
            await engine.submit(make_order())

        assert exc_info.value.category == FailureCategory.NOT_FOUND
        assert gateway.book_calls == 1
        assert gateway.posted == []
        assert gateway.book_calls == 2
        assert len(gateway.posted) == 2


class TestValidation:
    """Test failures detected before posting."""

    async def test_below_minimum_value_makes_no_calls(self, engine, gateway, client_factory):
        """Orders under $1 are rejected before any network call."""
        with pytest.raises(ExecutionError) as exc_info:
            await engine.submit(make_order(price=Decimal("0.10"), size=Decimal("5")))

        assert exc_info.value.category == FailureCategory.BELOW_MINIMUM_SIZE
        assert gateway.market_calls == 0
        assert gateway.posted == []
        assert client_factory.calls == []

    async def test_non_positive_size(self, engine):
        with pytest.raises(ExecutionError) as exc_info:
            await engine.submit(make_order(size=Decimal("0")))

        assert exc_info.value.category == FailureCategory.BELOW_MINIMUM_SIZE

    async def test_market_not_found(self, engine, gateway):
        """A missing market is permanent and not retried."""
        gateway.market_error = MarketNotFoundError("Market not found")

        with pytest.raises(ExecutionError) as exc_info:
            await engine.submit(make_order())

        assert exc_info.value.category == FailureCategory.NOT_FOUND
        assert gateway.market_calls == 1

    async def test_closed_market(self, engine, gateway):
        gateway.market.closed = True

        with pytest.raises(ExecutionError) as exc_info:
            await engine.submit(make_order())

        assert exc_info.value.category == FailureCategory.NOT_FOUND
        assert gateway.posted == []

    async def test_unknown_outcome_index(self, engine):
        with pytest.raises(ExecutionError) as exc_info:
            await engine.submit(make_order(outcome_index=5))

        assert exc_info.value.category == FailureCategory.NOT_FOUND

    async def test_sell_without_inventory(self, engine, gateway, balances):
        balances.balance = Decimal("1")

        with pytest.raises(ExecutionError) as exc_info:
            await engine.submit(make_order(side=OrderSide.SELL))

        assert exc_info.value.category == FailureCategory.INSUFFICIENT_BALANCE
        assert gateway.posted == []

    async def test_sell_without_proxy_wallet(self, engine, balances):
        with pytest.raises(ExecutionError) as exc_info:
            await engine.submit(make_order(side=OrderSide.SELL, proxy_wallet=None))

        assert exc_info.value.category == FailureCategory.INSUFFICIENT_BALANCE
        assert balances.calls == []


class TestRetries:
    """Test classification and retry of post failures."""

    async def test_permanent_failure_not_retried(self, engine, gateway):
        gateway.post_errors = [
            PlatformError("not enough balance / allowance", code="INVALID_ORDER_NOT_ENOUGH_BALANCE")
        ]

        with pytest.raises(ExecutionError) as exc_info:
            await engine.submit(make_order())

        assert exc_info.value.category == FailureCategory.INSUFFICIENT_BALANCE_OR_ALLOWANCE
        assert exc_info.value.hint
        assert len(gateway.posted) == 1

    async def test_unknown_failure_retried_once(self, engine, gateway):
        gateway.post_errors = [PlatformError("internal error")]

        submitted = await engine.submit(make_order())

        assert submitted.order_id == "order-2"
        assert len(gateway.posted) == 2

    async def test_unknown_failure_gives_up(self, engine, gateway):
        gateway.post_errors = [PlatformError("internal error"), PlatformError("internal error")]

        with pytest.raises(ExecutionError) as exc_info:
            await engine.submit(make_order())

        assert exc_info.value.category == FailureCategory.UNKNOWN
        assert len(gateway.posted) == 2

    async def test_quota_exhaustion(self, gateway, clock, client_factory, balances):
        """An exhausted channel fails the order as quota exceeded."""
        channel = RateLimitedChannel("clob", calls_per_second=20, calls_per_day=1, clock=clock, sleep_fn=clock.sleep)
        engine = OrderExecutionEngine(
            gateway=gateway,
            channel=channel,
            rate_limiter=WindowRateLimiter(clock=clock, sleep_fn=clock.sleep),
            client_cache=SigningClientCache(client_factory, clock=clock),
            balances=balances,
        )

        with pytest.raises(ExecutionError) as exc_info:
            await engine.submit(make_order())

        assert exc_info.value.category == FailureCategory.QUOTA_EXCEEDED
        assert exc_info.value.retry_after > 0
        assert gateway.posted == []
        await channel.close()


class TestOrderManagement:
    """Test cancel and status lookups."""

    async def test_cancel(self, engine, gateway):
        result = await engine.cancel(USER_ADDRESS, "order-9")

        assert gateway.cancelled == ["order-9"]
        assert result == {"canceled": ["order-9"]}
