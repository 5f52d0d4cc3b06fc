"""
Custom exception classes for the scanner.
Provides structured error handling across all modules.
"""

from typing import Any, Optional, Dict


class ScannerException(Exception):
    """Base exception class for the cashback scanner."""

    def __init__(
        self,
        message: str,
        code: str = "UNKNOWN_ERROR",
        details: Optional[Dict[str, Any]] = None
    ):
        self.message = message
        self.code = code
        self.details = details or {}
        super().__init__(self.message)


class ConfigurationError(ScannerException):
    """Raised when required configuration is missing or invalid."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, "CONFIGURATION_ERROR", details)


class ValidationError(ScannerException):
    """Raised when data validation fails."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, "VALIDATION_ERROR", details)


class TransientSourceError(ScannerException):
    """
    Raised when the ledger or the store is temporarily unavailable.

    Aborts the current scan cycle without advancing the cursor; the next
    timer tick retries the same range.
    """

    def __init__(
        self,
        message: str,
        details: Optional[Dict[str, Any]] = None,
        code: str = "TRANSIENT_SOURCE_ERROR"
    ):
        super().__init__(message, code, details)


class BlockNotFoundError(TransientSourceError):
    """Raised when the ledger reports that a block does not exist (yet)."""

    def __init__(self, height: int):
        super().__init__(
            f"Block not found: {height}",
            {"height": height},
            code="BLOCK_NOT_FOUND"
        )
        self.height = height


class DuplicateRecordError(ScannerException):
    """Raised when a transaction record with the same hash already exists."""

    def __init__(self, tx_hash: str):
        super().__init__(
            f"Transaction already recorded: {tx_hash}",
            "DUPLICATE_RECORD",
            {"tx_hash": tx_hash}
        )
        self.tx_hash = tx_hash


class SettlementError(ScannerException):
    """Base class for payout failures. The record ends up as failed."""

    def __init__(
        self,
        message: str,
        code: str = "SETTLEMENT_ERROR",
        details: Optional[Dict[str, Any]] = None
    ):
        super().__init__(message, code, details)


class SettlementSubmissionError(SettlementError):
    """Raised when the payout transaction could not be submitted."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, "SETTLEMENT_SUBMISSION_ERROR", details)


class SettlementConfirmationTimeout(SettlementError):
    """Raised when a submitted payout is not confirmed in time."""

    def __init__(self, settlement_ref: str, timeout: float):
        super().__init__(
            f"Payout {settlement_ref} not confirmed within {timeout}s",
            "SETTLEMENT_CONFIRMATION_TIMEOUT",
            {"settlement_ref": settlement_ref, "timeout": timeout}
        )
        self.settlement_ref = settlement_ref


class SettlementConfirmationFailed(SettlementError):
    """Raised when the payout was mined but reverted."""

    def __init__(self, settlement_ref: str):
        super().__init__(
            f"Payout {settlement_ref} failed on-chain",
            "SETTLEMENT_CONFIRMATION_FAILED",
            {"settlement_ref": settlement_ref}
        )
        self.settlement_ref = settlement_ref
