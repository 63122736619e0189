"""
Order execution engine.

Validates and prices an order, resolves market and order-book state
through the CLOB channel, and submits it with the user's cached signing
client. Every failure leaves here as a classified ExecutionError; only
UNKNOWN failures are retried.
"""

from dataclasses import dataclass
from decimal import Decimal, ROUND_HALF_UP
from typing import Optional

from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from polycopy.db.models import OrderSide, OrderStatus
from polycopy.platforms.base import (
    ExchangeGateway,
    MarketInfo,
    OrderBook,
    OrderStatusSnapshot,
    PostedOrder,
)
from polycopy.services.channel import RateLimitedChannel
from polycopy.services.client_cache import SigningClientCache
from polycopy.services.errors import ExecutionError, FailureCategory, classify_failure
from polycopy.services.rate_limiter import (
    CLOB_BOOK,
    CLOB_DELETE_ORDER,
    CLOB_DELETE_ORDER_SUSTAINED,
    CLOB_MARKETS,
    CLOB_POST_ORDER,
    CLOB_POST_ORDER_SUSTAINED,
    WindowRateLimiter,
)
from polycopy.services.token_balance import TokenBalanceService
from polycopy.utils.logging import LoggerMixin


@dataclass
class OrderRequest:
    """An order to place on behalf of a user."""
    user_address: str
    market_id: str
    outcome_index: int
    side: OrderSide
    price: Decimal  # requested limit price (0-1)
    size: Decimal  # outcome tokens
    slippage_tolerance: Optional[Decimal] = None
    proxy_wallet: Optional[str] = None  # holder of the outcome tokens, needed for sells


@dataclass
class SubmittedOrder:
    """An order accepted by the exchange. Settlement is tracked separately."""
    order_id: str
    status: OrderStatus
    token_id: str
    side: OrderSide
    requested_price: Decimal
    adjusted_price: Decimal
    size: Decimal
    notional: Decimal
    posted: Optional[PostedOrder] = None


def adjust_price(
    price: Decimal,
    side: OrderSide,
    tolerance: Decimal,
    min_price: Decimal,
    max_price: Decimal,
    tick: Decimal,
) -> Decimal:
    """
    Apply slippage and clamp to the protocol price range.

    Buys pay up to price * (1 + tolerance), sells accept down to
    price * (1 - tolerance). The result is rounded to the tick and is
    always within [min_price, max_price].
    """
    if side == OrderSide.BUY:
        raw = price * (Decimal("1") + tolerance)
    else:
        raw = price * (Decimal("1") - tolerance)

    quantized = raw.quantize(tick, rounding=ROUND_HALF_UP)
    return min(max(quantized, min_price), max_price)


def _decimal(value) -> Decimal:
    return value if isinstance(value, Decimal) else Decimal(str(value))


class OrderExecutionEngine(LoggerMixin):
    """Submits orders to the exchange within its quotas."""

    def __init__(
        self,
        gateway: ExchangeGateway,
        channel: RateLimitedChannel,
        rate_limiter: WindowRateLimiter,
        client_cache: SigningClientCache,
        balances: TokenBalanceService,
        *,
        default_slippage: float = 0.05,
        min_price: float = 0.001,
        max_price: float = 0.999,
        price_tick: float = 0.001,
        min_order_value: float = 1.0,
        order_type: str = "FOK",
        max_retries: int = 1,
        retry_base_delay: float = 1.0,
        retry_max_delay: float = 10.0,
    ):
        self.gateway = gateway
        self.channel = channel
        self.rate_limiter = rate_limiter
        self.client_cache = client_cache
        self.balances = balances

        self.default_slippage = _decimal(default_slippage)
        self.min_price = _decimal(min_price)
        self.max_price = _decimal(max_price)
        self.price_tick = _decimal(price_tick)
        self.min_order_value = _decimal(min_order_value)
        self.order_type = order_type
        self.max_retries = max_retries
        self.retry_base_delay = retry_base_delay
        self.retry_max_delay = retry_max_delay

    @classmethod
    def from_settings(cls, settings, **components) -> "OrderExecutionEngine":
        return cls(
            **components,
            default_slippage=settings.default_slippage_tolerance,
            min_price=settings.min_order_price,
            max_price=settings.max_order_price,
            price_tick=settings.price_tick,
            min_order_value=settings.min_order_value,
            order_type=settings.order_type,
            max_retries=settings.execution_max_retries,
            retry_base_delay=settings.retry_base_delay_seconds,
            retry_max_delay=settings.retry_max_delay_seconds,
        )

    # ===================
    # Submission
    # ===================

    async def submit(self, order: OrderRequest) -> SubmittedOrder:
        """
        Submit an order and return as soon as the exchange accepts it.

        Raises:
            ExecutionError: Classified failure with a remediation hint
        """
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.max_retries + 1),
            wait=wait_exponential(multiplier=self.retry_base_delay, max=self.retry_max_delay),
            retry=retry_if_exception(lambda e: isinstance(e, ExecutionError) and e.retryable),
            before_sleep=self._log_retry,
            reraise=True,
        )

        async for attempt in retrying:
            with attempt:
                submitted = await self._submit_once(order)
        return submitted

    def _log_retry(self, retry_state: RetryCallState) -> None:
        error = retry_state.outcome.exception() if retry_state.outcome else None
        self.log.warning(
            "Retrying order after transient failure",
            attempt=retry_state.attempt_number,
            delay=retry_state.next_action.sleep if retry_state.next_action else None,
            error=str(error),
        )

    def price_for(self, order: OrderRequest, tick: Optional[Decimal] = None) -> Decimal:
        """Slippage-adjusted limit price for an order."""
        tick = max(tick or self.price_tick, self.price_tick)
        tolerance = (
            _decimal(order.slippage_tolerance)
            if order.slippage_tolerance is not None
            else self.default_slippage
        )
        return adjust_price(
            _decimal(order.price),
            order.side,
            tolerance,
            min_price=max(self.min_price, tick),
            max_price=min(self.max_price, Decimal("1") - tick),
            tick=tick,
        )

    def _check_notional(self, order: OrderRequest, price: Decimal) -> Decimal:
        notional = price * _decimal(order.size)
        if notional < self.min_order_value:
            raise ExecutionError(
                f"Order value ${notional:.4f} is below the ${self.min_order_value} minimum "
                f"(price {price} x size {order.size})",
                FailureCategory.BELOW_MINIMUM_SIZE,
            )
        return notional

    async def _submit_once(self, order: OrderRequest) -> SubmittedOrder:
        try:
            if _decimal(order.size) <= 0:
                raise ExecutionError(
                    f"Order size must be positive, got {order.size}",
                    FailureCategory.BELOW_MINIMUM_SIZE,
                )

            # Price and value checks need no network
            adjusted_price = self.price_for(order)
            notional = self._check_notional(order, adjusted_price)

            market = await self.resolve_market(order.market_id)
            token = market.token_at(order.outcome_index)
            if token is None:
                raise ExecutionError(
                    f"Market {order.market_id} has no token at outcome index {order.outcome_index}",
                    FailureCategory.NOT_FOUND,
                )
            if market.closed or not market.active:
                raise ExecutionError(
                    f"Market {order.market_id} is closed", FailureCategory.NOT_FOUND
                )

            await self.resolve_order_book(token.token_id)

            if market.min_tick_size and market.min_tick_size > self.price_tick:
                adjusted_price = self.price_for(order, market.min_tick_size)
                notional = self._check_notional(order, adjusted_price)

            if order.side == OrderSide.SELL:
                await self._check_inventory(order, token.token_id)

            client = await self.client_cache.get(order.user_address)

            posted = await self.channel.execute(
                lambda: self._post_order(
                    client,
                    token.token_id,
                    order.side,
                    adjusted_price,
                    _decimal(order.size),
                    market,
                )
            )

        except ExecutionError as e:
            self._log_failure(order, e)
            raise
        except Exception as e:
            error = classify_failure(e)
            self._log_failure(order, error)
            raise error from e

        self.log.info(
            "Order submitted",
            user=order.user_address,
            order_id=posted.order_id,
            market_id=order.market_id,
            side=order.side.value,
            requested_price=str(order.price),
            adjusted_price=str(adjusted_price),
            size=str(order.size),
        )

        return SubmittedOrder(
            order_id=posted.order_id,
            status=OrderStatus.SUBMITTED,
            token_id=token.token_id,
            side=order.side,
            requested_price=_decimal(order.price),
            adjusted_price=adjusted_price,
            size=_decimal(order.size),
            notional=notional,
            posted=posted,
        )

    def _log_failure(self, order: OrderRequest, error: ExecutionError) -> None:
        self.log.warning(
            "Order execution failed",
            user=order.user_address,
            market_id=order.market_id,
            side=order.side.value,
            category=error.category.value,
            retryable=error.retryable,
            error=error.message,
        )

    # ===================
    # Market State
    # ===================

    async def resolve_market(self, market_id: str) -> MarketInfo:
        """Market metadata through the channel, cached by market id."""
        return await self.channel.execute(
            lambda: self._limited(CLOB_MARKETS, self.gateway.get_market(market_id)),
            cache_key=f"market:{market_id}",
        )

    async def resolve_order_book(self, token_id: str) -> OrderBook:
        return await self.channel.execute(
            lambda: self._limited(CLOB_BOOK, self.gateway.get_order_book(token_id))
        )

    async def _limited(self, limit_name: str, call):
        await self.rate_limiter.wait_if_needed(limit_name)
        return await call

    async def _check_inventory(self, order: OrderRequest, token_id: str) -> None:
        if not order.proxy_wallet:
            raise ExecutionError(
                f"No proxy wallet known for {order.user_address}; cannot verify holdings",
                FailureCategory.INSUFFICIENT_BALANCE,
            )

        balance = await self.balances.get_balance(order.proxy_wallet, token_id)
        if balance < _decimal(order.size):
            raise ExecutionError(
                f"Insufficient token balance: have {balance}, need {order.size}",
                FailureCategory.INSUFFICIENT_BALANCE,
            )

    async def _post_order(
        self,
        client,
        token_id: str,
        side: OrderSide,
        price: Decimal,
        size: Decimal,
        market: MarketInfo,
    ) -> PostedOrder:
        # Both the burst and the sustained window must have room
        await self.rate_limiter.wait_if_needed(CLOB_POST_ORDER)
        await self.rate_limiter.wait_if_needed(CLOB_POST_ORDER_SUSTAINED)
        return await self.gateway.post_order(
            client,
            token_id=token_id,
            side=side,
            price=price,
            size=size,
            order_type=self.order_type,
            neg_risk=market.neg_risk,
            tick_size=market.min_tick_size,
        )

    # ===================
    # Order Management
    # ===================

    async def cancel(self, user_address: str, order_id: str) -> dict:
        """Cancel an open order for a user."""
        client = await self.client_cache.get(user_address)

        async def _cancel():
            await self.rate_limiter.wait_if_needed(CLOB_DELETE_ORDER)
            await self.rate_limiter.wait_if_needed(CLOB_DELETE_ORDER_SUSTAINED)
            return await self.gateway.cancel_order(client, order_id)

        try:
            return await self.channel.execute(_cancel)
        except Exception as e:
            raise classify_failure(e) from e

    async def get_order_status(self, order_id: str) -> OrderStatusSnapshot:
        return await self.channel.execute(lambda: self.gateway.get_order_status(order_id))
