"""
Cashback transaction scanner.

Scans ledger blocks for transactions sent to rewarded DEX contracts,
computes cashback per transaction and pays it out exactly once.
"""

__version__ = "1.0.0"
