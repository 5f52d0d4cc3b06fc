"""Ledger access: block reads and treasury payouts."""

from .types import LedgerBlock, LedgerTransaction

__all__ = ["LedgerBlock", "LedgerTransaction"]
