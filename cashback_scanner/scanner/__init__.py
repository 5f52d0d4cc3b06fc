"""Scan pipeline: classification, orchestration and settlement."""

from .classifier import Classification, TransactionClassifier
from .orchestrator import CycleReport, ScanOrchestrator, ScannerState, TxOutcome, TxResult
from .settlement import PayoutGateway, SettlementExecutor, SettlementResult

__all__ = [
    "Classification",
    "TransactionClassifier",
    "CycleReport",
    "ScanOrchestrator",
    "ScannerState",
    "TxOutcome",
    "TxResult",
    "PayoutGateway",
    "SettlementExecutor",
    "SettlementResult",
]
