"""
Settlement monitoring for submitted orders.

An order starts as SUBMITTED and ends SETTLED, CANCELLED or REJECTED.
track() does a single background check after submission; the blocking
wait_for_settlement() polls until a terminal state or a timeout.
"""

import asyncio
from datetime import datetime, timezone
from typing import Awaitable, Callable, Optional

from polycopy.db.database import Database
from polycopy.db.models import OrderStatus
from polycopy.platforms.base import OrderStatusSnapshot
from polycopy.services.errors import SettlementTimeoutError
from polycopy.utils.logging import get_logger

logger = get_logger(__name__)

SETTLED_STATUSES = {"SETTLED", "MATCHED", "CONFIRMED", "MINED"}
CANCELLED_STATUSES = {"CANCELLED", "CANCELED"}
REJECTED_STATUSES = {"REJECTED", "FAILED"}


def normalize_status(snapshot: OrderStatusSnapshot) -> OrderStatus:
    """Map an upstream status onto the order state machine."""
    status = (snapshot.status or "").upper()
    if status in SETTLED_STATUSES and snapshot.tx_hash:
        return OrderStatus.SETTLED
    if status in CANCELLED_STATUSES:
        return OrderStatus.CANCELLED
    if status in REJECTED_STATUSES:
        return OrderStatus.REJECTED
    return OrderStatus.SUBMITTED


class SettlementMonitor:
    """Observes submitted orders until they reach a terminal state."""

    def __init__(
        self,
        db: Database,
        fetch_status: Callable[[str], Awaitable[OrderStatusSnapshot]],
        poll_interval: float = 5.0,
        timeout: float = 300.0,
    ):
        self.db = db
        self._fetch_status = fetch_status
        self.poll_interval = poll_interval
        self.timeout = timeout

        # Strong references so background checks are not garbage collected
        self._tasks: set[asyncio.Task] = set()

    def track(self, order_id: str, trade_id: Optional[str] = None) -> asyncio.Task:
        """Fire-and-forget settlement check."""
        task = asyncio.create_task(
            self.check_settlement(order_id, trade_id),
            name=f"settlement-{order_id}",
        )
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def check_settlement(
        self,
        order_id: str,
        trade_id: Optional[str] = None,
    ) -> Optional[OrderStatus]:
        """
        Check an order once and persist what was learned.

        Errors are logged and swallowed; returns None in that case.
        """
        try:
            snapshot = await self._fetch_status(order_id)
            status = normalize_status(snapshot)

            logger.info(
                "Order status check",
                order_id=order_id,
                trade_id=trade_id,
                upstream_status=snapshot.status,
                status=status.value,
                filled_size=str(snapshot.filled_size) if snapshot.filled_size is not None else None,
                tx_hash=snapshot.tx_hash,
            )

            await self._persist(order_id, trade_id, status, snapshot)
            return status

        except Exception as e:
            logger.error(
                "Error monitoring order settlement",
                order_id=order_id,
                trade_id=trade_id,
                error=str(e),
            )
            return None

    async def wait_for_settlement(
        self,
        order_id: str,
        timeout: Optional[float] = None,
        poll_interval: Optional[float] = None,
    ) -> OrderStatusSnapshot:
        """
        Poll until the order is terminal.

        Returns the terminal snapshot. Raises SettlementTimeoutError when the
        timeout elapses; only the wait ends, the order is left alone.
        """
        timeout = self.timeout if timeout is None else timeout
        poll_interval = self.poll_interval if poll_interval is None else poll_interval

        try:
            return await asyncio.wait_for(self._poll(order_id, poll_interval), timeout)
        except asyncio.TimeoutError:
            logger.warning("Settlement wait timed out", order_id=order_id, timeout=timeout)
            raise SettlementTimeoutError(order_id, timeout) from None

    async def _poll(self, order_id: str, poll_interval: float) -> OrderStatusSnapshot:
        while True:
            try:
                snapshot = await self._fetch_status(order_id)
                if normalize_status(snapshot).is_terminal:
                    return snapshot
            except Exception as e:
                # Keep polling through transient upstream errors
                logger.debug("Settlement poll failed", order_id=order_id, error=str(e))

            await asyncio.sleep(poll_interval)

    async def _persist(
        self,
        order_id: str,
        trade_id: Optional[str],
        status: OrderStatus,
        snapshot: OrderStatusSnapshot,
    ) -> None:
        if trade_id is None:
            trade = await self.db.get_trade_by_order_id(order_id)
            if trade is None:
                logger.debug("No trade record for order", order_id=order_id)
                return
            trade_id = trade.id

        if status == OrderStatus.SETTLED:
            await self.db.mark_trade_settled(
                trade_id,
                tx_hash=snapshot.tx_hash,
                settled_at=datetime.now(timezone.utc),
            )
            logger.info("Order settled", order_id=order_id, trade_id=trade_id, tx_hash=snapshot.tx_hash)

        elif status in (OrderStatus.CANCELLED, OrderStatus.REJECTED):
            await self.db.mark_trade_failed(
                trade_id,
                error_message=f"Order {status.value}",
                failure_reason=f"order_{status.value}",
                failure_category="execution",
                order_status=status,
            )
            logger.warning("Order cancelled or rejected", order_id=order_id, trade_id=trade_id, status=status.value)

        else:
            await self.db.update_trade(trade_id, order_status=status)
