"""
Settlement executor - the only component that moves funds.

Protocol per record:
1. The record is already stored with its reward and status `unrewarded`
   (done by the orchestrator before calling settle()).
2. Submit the payout to the originating address.
3. Wait until the payout is final.
4. Mark the record `paid` with the payout reference, or `failed`.

A failed payout is terminal and is never retried automatically.
"""

from dataclasses import dataclass
from decimal import Decimal
from typing import Optional, Protocol

import structlog

from cashback_scanner.core.exceptions import (
    SettlementConfirmationFailed,
    SettlementError,
    SettlementSubmissionError,
    TransientSourceError,
)
from cashback_scanner.models import SettlementStatus, TransactionRecord, utcnow
from cashback_scanner.services.store import ScanStore


logger = structlog.get_logger(__name__)


class PayoutGateway(Protocol):
    """External payout capability."""

    async def payout(self, recipient: str, amount: Decimal) -> str:
        ...

    async def await_confirmation(self, settlement_ref: str, timeout: float) -> bool:
        ...


@dataclass
class SettlementResult:
    """Outcome of one settlement attempt."""
    tx_hash: str
    status: SettlementStatus
    amount: Decimal
    settlement_ref: Optional[str] = None
    error: Optional[str] = None

    @property
    def paid(self) -> bool:
        return self.status == SettlementStatus.PAID


class SettlementExecutor:
    """Pays out computed rewards and records the outcome."""

    def __init__(
        self,
        store: ScanStore,
        gateway: PayoutGateway,
        confirmation_timeout: float = 300,
    ):
        self.store = store
        self.gateway = gateway
        self.confirmation_timeout = confirmation_timeout
        self.logger = logger.bind(service="settlement_executor")

    async def settle(self, record: TransactionRecord) -> SettlementResult:
        """
        Pay the reward for a stored, unrewarded record.

        Raises:
            SettlementError: The record is not eligible (terminal or zero reward)
            TransientSourceError: The outcome could not be stored
        """
        if record.is_settled:
            raise SettlementError(
                f"Record {record.hash} already settled as {record.status.value}",
                details={"tx_hash": record.hash}
            )
        if not record.has_reward:
            raise SettlementError(
                f"Record {record.hash} has no reward to pay",
                details={"tx_hash": record.hash}
            )

        amount = record.reward_amount
        settlement_ref: Optional[str] = None
        try:
            settlement_ref = await self.gateway.payout(record.sender, amount)
            confirmed = await self.gateway.await_confirmation(
                settlement_ref, self.confirmation_timeout
            )
            if not confirmed:
                raise SettlementConfirmationFailed(settlement_ref)
        except SettlementError as e:
            return await self._mark_failed(record, amount, settlement_ref, e)
        except Exception as e:
            if settlement_ref is None:
                error = SettlementSubmissionError(str(e), {"tx_hash": record.hash})
            else:
                error = SettlementError(
                    f"Payout {settlement_ref} outcome unknown: {e}",
                    details={"tx_hash": record.hash, "settlement_ref": settlement_ref}
                )
            return await self._mark_failed(record, amount, settlement_ref, error)

        await self._store_outcome(
            record.hash,
            SettlementStatus.PAID,
            settlement_ref=settlement_ref,
        )
        record.status = SettlementStatus.PAID
        record.settlement_ref = settlement_ref

        self.logger.info(
            "Cashback paid",
            tx_hash=record.hash,
            recipient=record.sender,
            amount=str(amount),
            settlement_ref=settlement_ref,
            rule=record.rule_name
        )
        return SettlementResult(
            tx_hash=record.hash,
            status=SettlementStatus.PAID,
            amount=amount,
            settlement_ref=settlement_ref,
        )

    async def _mark_failed(
        self,
        record: TransactionRecord,
        amount: Decimal,
        settlement_ref: Optional[str],
        error: SettlementError,
    ) -> SettlementResult:
        self.logger.error(
            "Cashback payout failed, manual reconciliation required",
            tx_hash=record.hash,
            recipient=record.sender,
            amount=str(amount),
            settlement_ref=settlement_ref,
            code=error.code,
            error=error.message
        )
        await self._store_outcome(
            record.hash,
            SettlementStatus.FAILED,
            settlement_ref=settlement_ref,
            error_message=f"{error.code}: {error.message}",
        )
        record.status = SettlementStatus.FAILED
        record.settlement_ref = settlement_ref
        return SettlementResult(
            tx_hash=record.hash,
            status=SettlementStatus.FAILED,
            amount=amount,
            settlement_ref=settlement_ref,
            error=error.message,
        )

    async def _store_outcome(
        self,
        tx_hash: str,
        status: SettlementStatus,
        settlement_ref: Optional[str] = None,
        error_message: Optional[str] = None,
    ) -> None:
        try:
            await self.store.update_record_status(
                tx_hash,
                status,
                settlement_ref=settlement_ref,
                settled_at=utcnow(),
                error_message=error_message,
            )
        except TransientSourceError:
            self.logger.critical(
                "Settlement outcome not stored",
                tx_hash=tx_hash,
                status=status.value,
                settlement_ref=settlement_ref
            )
            raise
