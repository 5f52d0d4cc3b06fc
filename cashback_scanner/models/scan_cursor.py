"""
ScanCursor model - durable record of scan progress.
"""

from datetime import datetime
from decimal import Decimal

from sqlalchemy import String, Integer, BigInteger, Boolean, Numeric
from sqlalchemy.orm import Mapped, mapped_column

from .base import BaseModel, TimestampMixin, utcnow


class ScanCursor(BaseModel, TimestampMixin):
    """One row per scanner name; only the orchestrator writes it."""

    __tablename__ = "scan_cursors"

    name: Mapped[str] = mapped_column(
        String(64),
        primary_key=True,
        comment="Logical scanner name"
    )

    last_confirmed_height: Mapped[int] = mapped_column(
        BigInteger,
        default=0,
        comment="Last fully processed ledger height"
    )

    total_qualifying: Mapped[int] = mapped_column(
        Integer,
        default=0,
        comment="Transactions that earned a positive reward"
    )

    total_reward_paid: Mapped[Decimal] = mapped_column(
        Numeric(38, 6),
        default=Decimal("0"),
        comment="Sum of confirmed payouts in native units"
    )

    last_scan_time: Mapped[datetime] = mapped_column(
        default=utcnow,
        comment="End of the last successful scan cycle"
    )

    is_active: Mapped[bool] = mapped_column(
        Boolean,
        default=True
    )

    def __repr__(self) -> str:
        return f"<ScanCursor(name={self.name}, height={self.last_confirmed_height})>"

    def seconds_since_last_scan(self, now: datetime) -> float:
        return (now - self.last_scan_time).total_seconds()
