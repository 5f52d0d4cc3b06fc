"""
Database models for the cashback scanner.

Contains the scan cursor and the transaction ledger tables.
"""

from .base import Base, BaseModel, TimestampMixin, utcnow
from .scan_cursor import ScanCursor
from .transaction import TransactionRecord, SettlementStatus, SwapType

__all__ = [
    "Base",
    "BaseModel",
    "TimestampMixin",
    "utcnow",
    "ScanCursor",
    "TransactionRecord",
    "SettlementStatus",
    "SwapType",
]
