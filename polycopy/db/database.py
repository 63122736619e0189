"""
Database connection and session management.

A single Database object is created at startup and handed to every service
that needs persistence.
"""

import uuid
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from decimal import Decimal
from typing import AsyncGenerator, Optional

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import StaticPool

from polycopy.db.models import (
    Base,
    Deposit,
    DepositCheckpoint,
    DepositStatus,
    OrderSide,
    OrderStatus,
    TradeRecord,
    TradeStage,
    TradeStatus,
    User,
)
from polycopy.utils.logging import get_logger

logger = get_logger(__name__)


def generate_id() -> str:
    """Generate a unique ID."""
    return str(uuid.uuid4())


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def normalize_database_url(database_url: str) -> str:
    """Convert postgres:// URLs to the asyncpg driver form."""
    if database_url.startswith("postgres://"):
        return database_url.replace("postgres://", "postgresql+asyncpg://", 1)
    if database_url.startswith("postgresql://"):
        return database_url.replace("postgresql://", "postgresql+asyncpg://", 1)
    return database_url


class Database:
    """Async engine, session factory and the queries the pipeline needs."""

    def __init__(self, database_url: str):
        self.database_url = normalize_database_url(database_url)
        self._engine: Optional[AsyncEngine] = None
        self._session_factory: Optional[async_sessionmaker[AsyncSession]] = None

    async def init(self) -> None:
        """Initialize database connection."""
        if self.database_url.startswith("sqlite"):
            # One shared connection so in-memory databases survive across sessions
            self._engine = create_async_engine(
                self.database_url,
                echo=False,
                connect_args={"check_same_thread": False},
                poolclass=StaticPool,
            )
        else:
            self._engine = create_async_engine(
                self.database_url,
                echo=False,
                pool_size=5,
                max_overflow=10,
                pool_pre_ping=True,
            )

        self._session_factory = async_sessionmaker(
            self._engine,
            class_=AsyncSession,
            expire_on_commit=False,
        )

        logger.info("Database connection initialized")

    async def create_tables(self) -> None:
        """Create all database tables."""
        if self._engine is None:
            raise RuntimeError("Database not initialized")

        async with self._engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

        logger.info("Database tables created")

    async def close(self) -> None:
        """Close database connection."""
        if self._engine:
            await self._engine.dispose()
            self._engine = None
            self._session_factory = None
            logger.info("Database connection closed")

    @asynccontextmanager
    async def session(self) -> AsyncGenerator[AsyncSession, None]:
        """Get an async database session that commits on success."""
        if self._session_factory is None:
            raise RuntimeError("Database not initialized")

        async with self._session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    # ===================
    # User Operations
    # ===================

    async def create_user(self, address: str, proxy_wallet: Optional[str] = None) -> User:
        """Create a user keyed by lowercase wallet address."""
        async with self.session() as session:
            user = User(
                id=generate_id(),
                address=address.lower(),
                proxy_wallet=proxy_wallet.lower() if proxy_wallet else None,
            )
            session.add(user)
            await session.flush()

            logger.info("Created user", user_id=user.id, address=user.address)
            return user

    async def get_user_by_address(self, address: str) -> Optional[User]:
        async with self.session() as session:
            result = await session.execute(
                select(User).where(User.address == address.lower())
            )
            return result.scalar_one_or_none()

    async def get_user_by_id(self, user_id: str) -> Optional[User]:
        async with self.session() as session:
            result = await session.execute(
                select(User).where(User.id == user_id)
            )
            return result.scalar_one_or_none()

    async def list_users_with_proxy_wallet(self) -> list[User]:
        async with self.session() as session:
            result = await session.execute(
                select(User).where(User.proxy_wallet.is_not(None))
            )
            return list(result.scalars().all())

    # ===================
    # Trade Operations
    # ===================

    async def create_trade(
        self,
        user_id: str,
        market_id: str,
        side: OrderSide,
        original_price: Decimal,
        original_size: Decimal,
        outcome_index: int = 0,
        token_id: Optional[str] = None,
        slippage_tolerance: Optional[Decimal] = None,
        original_trader: Optional[str] = None,
        original_tx_hash: Optional[str] = None,
    ) -> TradeRecord:
        """Record a detected trade to copy."""
        async with self.session() as session:
            trade = TradeRecord(
                id=generate_id(),
                user_id=user_id,
                market_id=market_id,
                outcome_index=outcome_index,
                token_id=token_id,
                side=side,
                slippage_tolerance=slippage_tolerance,
                original_trader=original_trader.lower() if original_trader else None,
                original_tx_hash=original_tx_hash,
                original_price=original_price,
                original_size=original_size,
                detected_at=utcnow(),
                status=TradeStatus.PENDING,
            )
            session.add(trade)
            await session.flush()

            logger.info("Created trade record", user_id=user_id, trade_id=trade.id)
            return trade

    async def get_trade(self, trade_id: str) -> Optional[TradeRecord]:
        async with self.session() as session:
            result = await session.execute(
                select(TradeRecord).where(TradeRecord.id == trade_id)
            )
            return result.scalar_one_or_none()

    async def get_trade_by_order_id(self, order_id: str) -> Optional[TradeRecord]:
        async with self.session() as session:
            result = await session.execute(
                select(TradeRecord).where(TradeRecord.order_id == order_id)
            )
            return result.scalar_one_or_none()

    async def _advance_trade(self, trade_id: str, stage: TradeStage, **values) -> TradeRecord:
        """Fill a lifecycle stage after checking its predecessors exist."""
        async with self.session() as session:
            result = await session.execute(
                select(TradeRecord).where(TradeRecord.id == trade_id)
            )
            trade = result.scalar_one_or_none()
            if trade is None:
                raise LookupError(f"Trade not found: {trade_id}")

            trade.ensure_can_enter(stage)
            for key, value in values.items():
                setattr(trade, key, value)
            await session.flush()
            return trade

    async def mark_trade_submitted(
        self,
        trade_id: str,
        order_id: str,
        copied_price: Decimal,
        copied_size: Decimal,
        token_id: Optional[str] = None,
    ) -> TradeRecord:
        values = dict(
            order_id=order_id,
            order_status=OrderStatus.SUBMITTED,
            copied_price=copied_price,
            copied_size=copied_size,
            submitted_at=utcnow(),
            status=TradeStatus.SUBMITTED,
        )
        if token_id:
            values["token_id"] = token_id
        return await self._advance_trade(trade_id, TradeStage.SUBMITTED, **values)

    async def mark_trade_settled(
        self,
        trade_id: str,
        tx_hash: str,
        settled_at: Optional[datetime] = None,
    ) -> TradeRecord:
        return await self._advance_trade(
            trade_id,
            TradeStage.SETTLED,
            tx_hash=tx_hash,
            settled_at=settled_at or utcnow(),
            order_status=OrderStatus.SETTLED,
            status=TradeStatus.SETTLED,
        )

    async def mark_trade_resolved(
        self,
        trade_id: str,
        outcome: str,
        realized_pnl: Decimal,
    ) -> TradeRecord:
        return await self._advance_trade(
            trade_id,
            TradeStage.RESOLVED,
            outcome=outcome,
            realized_pnl=realized_pnl,
            resolved_at=utcnow(),
        )

    async def mark_trade_redeemed(self, trade_id: str, redemption_status: str) -> TradeRecord:
        return await self._advance_trade(
            trade_id,
            TradeStage.REDEEMED,
            redemption_status=redemption_status,
            redeemed_at=utcnow(),
        )

    async def mark_trade_failed(
        self,
        trade_id: str,
        error_message: str,
        failure_reason: str,
        failure_category: str,
        remediation: Optional[str] = None,
        order_status: Optional[OrderStatus] = None,
    ) -> None:
        """Record a classified failure against a trade."""
        values = dict(
            status=TradeStatus.FAILED,
            error_message=error_message,
            failure_reason=failure_reason,
            failure_category=failure_category,
            remediation=remediation,
        )
        if order_status is not None:
            values["order_status"] = order_status

        async with self.session() as session:
            await session.execute(
                update(TradeRecord)
                .where(TradeRecord.id == trade_id)
                .values(**values)
            )

        logger.info(
            "Trade marked failed",
            trade_id=trade_id,
            failure_reason=failure_reason,
            failure_category=failure_category,
        )

    async def update_trade(self, trade_id: str, **kwargs) -> None:
        """Update arbitrary trade columns."""
        async with self.session() as session:
            await session.execute(
                update(TradeRecord)
                .where(TradeRecord.id == trade_id)
                .values(**kwargs)
            )

    # ===================
    # Deposit Operations
    # ===================

    async def get_deposit_by_hash(self, user_id: str, transaction_hash: str) -> Optional[Deposit]:
        async with self.session() as session:
            result = await session.execute(
                select(Deposit).where(
                    Deposit.user_id == user_id,
                    Deposit.transaction_hash == transaction_hash.lower(),
                )
            )
            return result.scalar_one_or_none()

    async def create_deposit(
        self,
        user_id: str,
        transaction_hash: str,
        block_number: int,
        timestamp: datetime,
        amount: Decimal,
        amount_raw: str,
        token_symbol: str,
        token_address: str,
        from_address: str,
        to_address: str,
        status: DepositStatus = DepositStatus.COMPLETED,
        is_historical: bool = True,
    ) -> Deposit:
        """Insert a deposit. The (user, hash) pair is unique."""
        async with self.session() as session:
            deposit = Deposit(
                id=generate_id(),
                user_id=user_id,
                transaction_hash=transaction_hash.lower(),
                block_number=block_number,
                timestamp=timestamp,
                amount=amount,
                amount_raw=amount_raw,
                token_symbol=token_symbol,
                token_address=token_address.lower(),
                from_address=from_address.lower(),
                to_address=to_address.lower(),
                status=status,
                is_historical=is_historical,
            )
            session.add(deposit)
            await session.flush()
            return deposit

    async def list_deposits(self, user_id: str) -> list[Deposit]:
        """All of a user's deposits, newest first."""
        async with self.session() as session:
            result = await session.execute(
                select(Deposit)
                .where(Deposit.user_id == user_id)
                .order_by(Deposit.block_number.desc(), Deposit.timestamp.desc())
            )
            return list(result.scalars().all())

    async def count_deposits(self, user_id: str) -> int:
        async with self.session() as session:
            result = await session.execute(
                select(func.count()).select_from(Deposit).where(Deposit.user_id == user_id)
            )
            return result.scalar_one()

    async def get_max_deposit_block(self, user_id: str) -> int:
        """Highest block among stored deposits, or 0."""
        async with self.session() as session:
            result = await session.execute(
                select(func.max(Deposit.block_number)).where(Deposit.user_id == user_id)
            )
            return result.scalar_one_or_none() or 0

    async def get_deposit_checkpoint(self, user_id: str) -> Optional[DepositCheckpoint]:
        async with self.session() as session:
            result = await session.execute(
                select(DepositCheckpoint).where(DepositCheckpoint.user_id == user_id)
            )
            return result.scalar_one_or_none()

    async def advance_deposit_checkpoint(self, user_id: str, block_number: int) -> int:
        """Move the checkpoint forward and clear any recorded sync error.

        Returns the stored block, which never decreases.
        """
        async with self.session() as session:
            result = await session.execute(
                select(DepositCheckpoint).where(DepositCheckpoint.user_id == user_id)
            )
            checkpoint = result.scalar_one_or_none()
            if checkpoint is None:
                checkpoint = DepositCheckpoint(user_id=user_id, last_block=0)
                session.add(checkpoint)

            checkpoint.last_block = max(checkpoint.last_block or 0, block_number)
            checkpoint.last_synced_at = utcnow()
            checkpoint.last_error = None
            checkpoint.last_error_at = None
            await session.flush()
            return checkpoint.last_block

    async def record_deposit_sync_error(self, user_id: str, error: str) -> None:
        """Store the last sync failure without touching the block height."""
        async with self.session() as session:
            result = await session.execute(
                select(DepositCheckpoint).where(DepositCheckpoint.user_id == user_id)
            )
            checkpoint = result.scalar_one_or_none()
            if checkpoint is None:
                max_block = await session.execute(
                    select(func.max(Deposit.block_number)).where(Deposit.user_id == user_id)
                )
                checkpoint = DepositCheckpoint(user_id=user_id, last_block=max_block.scalar_one_or_none() or 0)
                session.add(checkpoint)

            checkpoint.last_error = error
            checkpoint.last_error_at = utcnow()
