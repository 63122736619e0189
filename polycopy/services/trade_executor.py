"""
Copies a detected trade for a user.

Turns a pending TradeRecord into an order, records the classified outcome
on the record and hands accepted orders to the settlement monitor.
"""

from decimal import Decimal
from typing import Optional

from polycopy.db.database import Database
from polycopy.db.models import TradeStatus
from polycopy.services.errors import ExecutionError
from polycopy.services.execution import OrderExecutionEngine, OrderRequest, SubmittedOrder
from polycopy.services.order_monitor import SettlementMonitor
from polycopy.utils.logging import LoggerMixin, log_context


class TradeExecutor(LoggerMixin):
    """Executes copy trades and records what happened."""

    def __init__(
        self,
        db: Database,
        engine: OrderExecutionEngine,
        monitor: SettlementMonitor,
    ):
        self.db = db
        self.engine = engine
        self.monitor = monitor

    async def execute(self, trade_id: str) -> Optional[SubmittedOrder]:
        """
        Execute a pending trade.

        Returns the submitted order, or None if the trade is not pending.

        Raises:
            LookupError: Trade or user not found
            ExecutionError: The order failed; the reason is already persisted
        """
        trade = await self.db.get_trade(trade_id)
        if trade is None:
            raise LookupError(f"Trade not found: {trade_id}")

        if trade.status != TradeStatus.PENDING:
            self.log.info("Trade is not pending, skipping", trade_id=trade_id, status=trade.status.value)
            return None

        user = await self.db.get_user_by_id(trade.user_id)
        if user is None:
            raise LookupError(f"User not found for trade {trade_id}")

        order = OrderRequest(
            user_address=user.address,
            market_id=trade.market_id,
            outcome_index=trade.outcome_index,
            side=trade.side,
            price=Decimal(trade.original_price),
            size=Decimal(trade.original_size),
            slippage_tolerance=(
                Decimal(trade.slippage_tolerance) if trade.slippage_tolerance is not None else None
            ),
            proxy_wallet=user.proxy_wallet,
        )

        with log_context(trade_id=trade_id, user=user.address):
            try:
                submitted = await self.engine.submit(order)
            except ExecutionError as e:
                # Permanent failures are recorded once and never re-attempted here
                await self.db.mark_trade_failed(
                    trade_id,
                    error_message=e.message,
                    failure_reason=e.category.value,
                    failure_category=e.category.group,
                    remediation=e.hint,
                )
                raise

            await self.db.mark_trade_submitted(
                trade_id,
                order_id=submitted.order_id,
                copied_price=submitted.adjusted_price,
                copied_size=submitted.size,
                token_id=submitted.token_id,
            )
            self.log.info(
                "Trade submitted",
                order_id=submitted.order_id,
                adjusted_price=str(submitted.adjusted_price),
                notional=str(submitted.notional),
            )

        self.monitor.track(submitted.order_id, trade_id)
        return submitted
