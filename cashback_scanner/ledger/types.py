"""
Core types exchanged with the ledger client.
"""

from datetime import datetime, timezone
from dataclasses import dataclass, field
from typing import List, Optional


@dataclass(frozen=True)
class LedgerTransaction:
    """A transaction as reported by the ledger, with its execution target."""
    hash: str
    sender: str
    recipient: str
    value: int
    effective_target: Optional[str] = None

    @property
    def target(self) -> str:
        """Contract actually invoked; the nominal recipient when unknown."""
        return self.effective_target or self.recipient


@dataclass(frozen=True)
class LedgerBlock:
    """A block with its transactions in ledger order."""
    height: int
    timestamp: int
    transactions: List[LedgerTransaction] = field(default_factory=list)

    @property
    def block_time(self) -> datetime:
        """Naive UTC datetime of the block timestamp."""
        return datetime.fromtimestamp(self.timestamp, tz=timezone.utc).replace(tzinfo=None)
