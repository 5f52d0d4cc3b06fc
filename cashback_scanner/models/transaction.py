"""
TransactionRecord model - one row per observed target-contract transaction.
"""

from datetime import datetime
from decimal import Decimal
from typing import Optional
from enum import Enum

from sqlalchemy import (
    String, BigInteger, Boolean, Numeric, Text, Index, Enum as SQLEnum
)
from sqlalchemy.orm import Mapped, mapped_column

from .base import BaseModel, TimestampMixin


class SettlementStatus(Enum):
    """Settlement status of a recorded transaction."""
    UNREWARDED = "unrewarded"
    PAID = "paid"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self is not SettlementStatus.UNREWARDED


class SwapType(Enum):
    """Best-effort direction tag derived from the native value only."""
    BUY = "buy"
    TRANSFER = "transfer"


class TransactionRecord(BaseModel, TimestampMixin):
    """Transaction sent to a rewarded contract, with its reward and payout."""

    __tablename__ = "transactions"

    # Natural key; uniqueness is the idempotency boundary
    hash: Mapped[str] = mapped_column(
        String(66),
        primary_key=True,
        comment="Transaction hash"
    )

    sender: Mapped[str] = mapped_column(
        String(42),
        comment="Originating address (lower-case)"
    )

    recipient: Mapped[str] = mapped_column(
        String(42),
        comment="Nominal recipient (lower-case)"
    )

    effective_target: Mapped[Optional[str]] = mapped_column(
        String(42),
        comment="Contract actually invoked, from the receipt"
    )

    value: Mapped[str] = mapped_column(
        String(80),
        comment="Raw value in smallest units"
    )

    value_native: Mapped[Decimal] = mapped_column(
        Numeric(38, 18),
        comment="Value in native units"
    )

    block_height: Mapped[int] = mapped_column(BigInteger)

    block_time: Mapped[datetime] = mapped_column()

    rule_id: Mapped[Optional[str]] = mapped_column(
        String(42),
        comment="Matched rule contract address"
    )

    rule_name: Mapped[Optional[str]] = mapped_column(
        String(100),
        comment="Matched rule display name"
    )

    swap_type: Mapped[SwapType] = mapped_column(
        SQLEnum(SwapType),
        default=SwapType.TRANSFER
    )

    reward_amount: Mapped[Decimal] = mapped_column(
        Numeric(38, 6),
        default=Decimal("0"),
        comment="Computed reward in native units"
    )

    reward_rate: Mapped[Decimal] = mapped_column(
        Numeric(12, 6),
        default=Decimal("0"),
        comment="Base rate used for the reward"
    )

    boost_applied: Mapped[bool] = mapped_column(Boolean, default=False)

    status: Mapped[SettlementStatus] = mapped_column(
        SQLEnum(SettlementStatus),
        default=SettlementStatus.UNREWARDED
    )

    settlement_ref: Mapped[Optional[str]] = mapped_column(
        String(66),
        comment="Payout transaction hash"
    )

    settled_at: Mapped[Optional[datetime]] = mapped_column()

    error_message: Mapped[Optional[str]] = mapped_column(Text)

    __table_args__ = (
        Index("idx_tx_sender_status", "sender", "status"),
        Index("idx_tx_rule_status", "rule_name", "status"),
        Index("idx_tx_height_time", "block_height", "block_time"),
        Index("idx_tx_status", "status"),
    )

    def __repr__(self) -> str:
        return f"<TransactionRecord(hash={self.hash[:10]}..., status={self.status.value})>"

    @property
    def has_reward(self) -> bool:
        return self.reward_amount is not None and self.reward_amount > 0

    @property
    def is_settled(self) -> bool:
        return self.status.is_terminal
