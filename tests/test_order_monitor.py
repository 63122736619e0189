"""
Tests for settlement monitoring and the trade executor.
"""

import asyncio
from decimal import Decimal

import pytest

from polycopy.db.models import OrderSide, OrderStatus, TradeStatus
from polycopy.platforms.base import OrderStatusSnapshot
from polycopy.services.errors import ExecutionError, SettlementTimeoutError
from polycopy.services.order_monitor import SettlementMonitor, normalize_status
from polycopy.services.trade_executor import TradeExecutor

from tests.conftest import MARKET_ID

TX_HASH = "0x" + "ab" * 32


def snapshot(status: str, tx_hash=None) -> OrderStatusSnapshot:
    return OrderStatusSnapshot(order_id="order-1", status=status, tx_hash=tx_hash)


async def submitted_trade(db, user, order_id: str = "order-1"):
    trade = await db.create_trade(
        user_id=user.id,
        market_id=MARKET_ID,
        side=OrderSide.BUY,
        original_price=Decimal("0.50"),
        original_size=Decimal("10"),
    )
    await db.mark_trade_submitted(
        trade.id, order_id=order_id, copied_price=Decimal("0.525"), copied_size=Decimal("10")
    )
    return trade


class TestNormalizeStatus:
    """Test upstream status mapping."""

    def test_settled_needs_tx_hash(self):
        assert normalize_status(snapshot("MATCHED", TX_HASH)) == OrderStatus.SETTLED
        assert normalize_status(snapshot("MATCHED")) == OrderStatus.SUBMITTED

    def test_terminal_failures(self):
        assert normalize_status(snapshot("CANCELED")) == OrderStatus.CANCELLED
        assert normalize_status(snapshot("rejected")) == OrderStatus.REJECTED

    def test_open_order(self):
        status = normalize_status(snapshot("LIVE"))
        assert status == OrderStatus.SUBMITTED
        assert not status.is_terminal


class TestSettlementMonitor:
    """Test one-shot checks and blocking waits."""

    async def test_settlement_persisted(self, db, user, gateway):
        """A settled order stores its transaction hash."""
        trade = await submitted_trade(db, user)
        gateway.statuses = [snapshot("MATCHED", TX_HASH)]
        monitor = SettlementMonitor(db, gateway.get_order_status)

        status = await monitor.check_settlement("order-1", trade.id)

        stored = await db.get_trade(trade.id)
        assert status == OrderStatus.SETTLED
        assert stored.status == TradeStatus.SETTLED
        assert stored.order_status == OrderStatus.SETTLED
        assert stored.tx_hash == TX_HASH
        assert stored.settled_at is not None

    async def test_trade_found_by_order_id(self, db, user, gateway):
        trade = await submitted_trade(db, user, order_id="order-7")
        gateway.statuses = [snapshot("MATCHED", TX_HASH)]
        monitor = SettlementMonitor(db, gateway.get_order_status)

        await monitor.track("order-7")

        stored = await db.get_trade(trade.id)
        assert stored.tx_hash == TX_HASH

    async def test_cancelled_marks_failed(self, db, user, gateway):
        trade = await submitted_trade(db, user)
        gateway.statuses = [snapshot("CANCELLED")]
        monitor = SettlementMonitor(db, gateway.get_order_status)

        await monitor.check_settlement("order-1", trade.id)

        stored = await db.get_trade(trade.id)
        assert stored.status == TradeStatus.FAILED
        assert stored.order_status == OrderStatus.CANCELLED
        assert stored.failure_reason == "order_cancelled"

    async def test_open_order_left_submitted(self, db, user, gateway):
        trade = await submitted_trade(db, user)
        gateway.statuses = [snapshot("LIVE")]
        monitor = SettlementMonitor(db, gateway.get_order_status)

        status = await monitor.check_settlement("order-1", trade.id)

        stored = await db.get_trade(trade.id)
        assert status == OrderStatus.SUBMITTED
        assert stored.status == TradeStatus.SUBMITTED
        assert stored.tx_hash is None

    async def test_check_errors_swallowed(self, db, gateway):
        gateway.statuses = [RuntimeError("upstream down")]
        monitor = SettlementMonitor(db, gateway.get_order_status)

        assert await monitor.check_settlement("order-1") is None

    async def test_wait_until_terminal(self, db, gateway):
        """Polling continues through open states and errors."""
        gateway.statuses = [snapshot("LIVE"), RuntimeError("blip"), snapshot("MATCHED", TX_HASH)]
        monitor = SettlementMonitor(db, gateway.get_order_status, poll_interval=0.01)

        result = await monitor.wait_for_settlement("order-1", timeout=5)

        assert result.tx_hash == TX_HASH
        assert gateway.status_calls == 3

    async def test_wait_times_out(self, db, gateway):
        gateway.statuses = [snapshot("LIVE")]
        monitor = SettlementMonitor(db, gateway.get_order_status)

        with pytest.raises(SettlementTimeoutError) as exc_info:
            await monitor.wait_for_settlement("order-1", timeout=0.05, poll_interval=0.01)

        assert exc_info.value.order_id == "order-1"
        assert exc_info.value.timeout == 0.05


class TestTradeExecutor:
    """Test copying a detected trade end to end."""

    async def make_trade(self, db, user, price="0.50", size="10"):
        return await db.create_trade(
            user_id=user.id,
            market_id=MARKET_ID,
            side=OrderSide.BUY,
            original_price=Decimal(price),
            original_size=Decimal(size),
        )

    async def test_submitted_and_tracked(self, db, user, engine, gateway):
        trade = await self.make_trade(db, user)
        gateway.statuses = [snapshot("MATCHED", TX_HASH)]
        monitor = SettlementMonitor(db, engine.get_order_status)
        executor = TradeExecutor(db, engine, monitor)

        submitted = await executor.execute(trade.id)
        await asyncio.gather(*monitor._tasks)

        stored = await db.get_trade(trade.id)
        assert stored.order_id == submitted.order_id
        assert stored.copied_price == Decimal("0.525")
        assert stored.status == TradeStatus.SETTLED

    async def test_failure_persisted(self, db, user, engine):
        """The classified reason and hint land on the record."""
        trade = await self.make_trade(db, user, price="0.10", size="5")
        executor = TradeExecutor(db, engine, SettlementMonitor(db, engine.get_order_status))

        with pytest.raises(ExecutionError):
            await executor.execute(trade.id)

        stored = await db.get_trade(trade.id)
        assert stored.status == TradeStatus.FAILED
        assert stored.failure_reason == "below_minimum_size"
        assert stored.failure_category == "validation"
        assert stored.remediation
        assert stored.order_id is None

    async def test_non_pending_skipped(self, db, user, engine, gateway):
        trade = await submitted_trade(db, user)
        executor = TradeExecutor(db, engine, SettlementMonitor(db, engine.get_order_status))

        assert await executor.execute(trade.id) is None
        assert gateway.posted == []

    async def test_missing_trade(self, db, engine):
        executor = TradeExecutor(db, engine, SettlementMonitor(db, engine.get_order_status))

        with pytest.raises(LookupError):
            await executor.execute("nope")
