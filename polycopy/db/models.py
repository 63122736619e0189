"""
SQLAlchemy database models for the copy-trading order pipeline.
Covers users, copied trades through their lifecycle, and USDC.e deposits.
"""

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional

from sqlalchemy import (
    BigInteger,
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    Enum as SQLEnum,
    func,
)
from sqlalchemy.ext.asyncio import AsyncAttrs
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


class Base(AsyncAttrs, DeclarativeBase):
    """Base class for all models."""
    pass


# ===================
# Enums
# ===================

class OrderSide(str, Enum):
    """Order sides."""
    BUY = "buy"
    SELL = "sell"


class OrderStatus(str, Enum):
    """Exchange-side order lifecycle. Only SUBMITTED is non-terminal."""
    SUBMITTED = "submitted"
    SETTLED = "settled"
    CANCELLED = "cancelled"
    REJECTED = "rejected"

    @property
    def is_terminal(self) -> bool:
        return self is not OrderStatus.SUBMITTED


class TradeStatus(str, Enum):
    """Copy-trade processing status."""
    PENDING = "pending"
    SUBMITTED = "submitted"
    SETTLED = "settled"
    FAILED = "failed"
    SKIPPED = "skipped"


class TradeStage(str, Enum):
    """Lifecycle stages of a trade record, in order."""
    DETECTED = "detected"
    SUBMITTED = "submitted"
    SETTLED = "settled"
    RESOLVED = "resolved"
    REDEEMED = "redeemed"


class DepositStatus(str, Enum):
    """Deposit completion status."""
    PENDING = "pending"
    PROCESSING = "processing"
    BRIDGING = "bridging"
    COMPLETED = "completed"
    FAILED = "failed"


# Statuses counted as "pending" in deposit history stats
IN_FLIGHT_DEPOSIT_STATUSES = (
    DepositStatus.PENDING,
    DepositStatus.PROCESSING,
    DepositStatus.BRIDGING,
)


class StageOrderError(ValueError):
    """Raised when a trade stage is filled before its predecessor."""

    def __init__(self, trade_id: str, stage: TradeStage, missing: TradeStage):
        self.trade_id = trade_id
        self.stage = stage
        self.missing = missing
        super().__init__(
            f"Trade {trade_id} cannot reach stage '{stage.value}' before '{missing.value}'"
        )


# ===================
# Models
# ===================

class User(Base):
    """End user whose proxy wallet funds copied orders."""

    __tablename__ = "users"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    address: Mapped[str] = mapped_column(String(42), unique=True, index=True)  # lowercase EOA

    # Gnosis Safe that holds collateral and outcome tokens
    proxy_wallet: Mapped[Optional[str]] = mapped_column(String(42), nullable=True)

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now()
    )

    # Relationships
    trades: Mapped[list["TradeRecord"]] = relationship(back_populates="user", cascade="all, delete-orphan")
    deposits: Mapped[list["Deposit"]] = relationship(back_populates="user", cascade="all, delete-orphan")


class TradeRecord(Base):
    """A copied trade, from detection of the original through redemption."""

    __tablename__ = "trade_records"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    user_id: Mapped[str] = mapped_column(String(36), ForeignKey("users.id", ondelete="CASCADE"))

    # Market information
    market_id: Mapped[str] = mapped_column(String(255))
    outcome_index: Mapped[int] = mapped_column(Integer, default=0)
    token_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    side: Mapped[OrderSide] = mapped_column(SQLEnum(OrderSide))
    slippage_tolerance: Mapped[Optional[Decimal]] = mapped_column(Numeric(8, 6), nullable=True)

    # Stage: detected
    original_trader: Mapped[Optional[str]] = mapped_column(String(42), nullable=True)
    original_tx_hash: Mapped[Optional[str]] = mapped_column(String(66), nullable=True)
    original_price: Mapped[Decimal] = mapped_column(Numeric(18, 8))
    original_size: Mapped[Decimal] = mapped_column(Numeric(24, 8))
    detected_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now()
    )

    # Stage: submitted
    order_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True, index=True)
    order_status: Mapped[Optional[OrderStatus]] = mapped_column(SQLEnum(OrderStatus), nullable=True)
    copied_price: Mapped[Optional[Decimal]] = mapped_column(Numeric(18, 8), nullable=True)
    copied_size: Mapped[Optional[Decimal]] = mapped_column(Numeric(24, 8), nullable=True)
    submitted_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    # Stage: settled
    tx_hash: Mapped[Optional[str]] = mapped_column(String(66), nullable=True)
    settled_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    # Stage: resolved
    outcome: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    realized_pnl: Mapped[Optional[Decimal]] = mapped_column(Numeric(24, 8), nullable=True)
    resolved_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    # Stage: redeemed
    redemption_status: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    redeemed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    # Processing status and classified failure
    status: Mapped[TradeStatus] = mapped_column(
        SQLEnum(TradeStatus),
        default=TradeStatus.PENDING
    )
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    failure_reason: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    failure_category: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)  # permanent / transient
    remediation: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now()
    )

    # Relationships
    user: Mapped["User"] = relationship(back_populates="trades")

    __table_args__ = (
        Index("ix_trade_records_user_status", "user_id", "status"),
    )

    def has_reached(self, stage: TradeStage) -> bool:
        """Whether the given stage has been recorded."""
        return {
            TradeStage.DETECTED: self.original_price is not None,
            TradeStage.SUBMITTED: self.submitted_at is not None,
            TradeStage.SETTLED: self.settled_at is not None,
            TradeStage.RESOLVED: self.resolved_at is not None,
            TradeStage.REDEEMED: self.redeemed_at is not None,
        }[stage]

    def ensure_can_enter(self, stage: TradeStage) -> None:
        """Raise StageOrderError unless every earlier stage is filled."""
        stages = list(TradeStage)
        for earlier in stages[:stages.index(stage)]:
            if not self.has_reached(earlier):
                raise StageOrderError(self.id, stage, earlier)


class Deposit(Base):
    """An incoming token transfer to a user's proxy wallet."""

    __tablename__ = "deposits"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    user_id: Mapped[str] = mapped_column(String(36), ForeignKey("users.id", ondelete="CASCADE"))

    transaction_hash: Mapped[str] = mapped_column(String(66))  # lowercase
    block_number: Mapped[int] = mapped_column(BigInteger)
    timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True))

    amount: Mapped[Decimal] = mapped_column(Numeric(30, 6))
    amount_raw: Mapped[str] = mapped_column(String(78))
    token_symbol: Mapped[str] = mapped_column(String(16))
    token_address: Mapped[str] = mapped_column(String(42))
    from_address: Mapped[str] = mapped_column(String(42))
    to_address: Mapped[str] = mapped_column(String(42))

    status: Mapped[DepositStatus] = mapped_column(
        SQLEnum(DepositStatus),
        default=DepositStatus.COMPLETED
    )
    is_historical: Mapped[bool] = mapped_column(Boolean, default=True)  # found by scanning, not a webhook

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now()
    )

    # Relationships
    user: Mapped["User"] = relationship(back_populates="deposits")

    __table_args__ = (
        Index("ix_deposits_user_tx", "user_id", "transaction_hash", unique=True),
        Index("ix_deposits_user_block", "user_id", "block_number"),
    )


class DepositCheckpoint(Base):
    """Last scanned block per user. Never moves backwards."""

    __tablename__ = "deposit_checkpoints"

    user_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("users.id", ondelete="CASCADE"),
        primary_key=True
    )
    last_block: Mapped[int] = mapped_column(BigInteger, default=0)
    last_synced_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    # Last sync failure, surfaced without re-querying the explorer
    last_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    last_error_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
