"""
Scan orchestrator - drives incremental, crash-safe scan cycles.

A cycle reads the cursor, scans every height from the cursor to the chain
tip in ascending order, records and settles qualifying transactions, and
only then advances the cursor in one write. A transaction that errors holds
the cursor below its block so the next cycle retries it. Re-scanning a
range is safe: hashes already in the store are skipped before
classification.
"""

import asyncio
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Callable, List, Optional

import structlog

from cashback_scanner.core.exceptions import (
    DuplicateRecordError,
    TransientSourceError,
    ValidationError,
)
from cashback_scanner.ledger.client import LedgerClient
from cashback_scanner.ledger.types import LedgerBlock, LedgerTransaction
from cashback_scanner.models import (
    ScanCursor,
    SettlementStatus,
    TransactionRecord,
    utcnow,
)
from cashback_scanner.rewards.engine import (
    BoostContext,
    NullReputationSource,
    ReputationSource,
    RewardEngine,
    RewardResult,
    to_native,
)
from cashback_scanner.services.store import ScanStore
from .classifier import Classification, TransactionClassifier
from .settlement import SettlementExecutor, SettlementResult


logger = structlog.get_logger(__name__)


class ScannerState(Enum):
    """Orchestrator state."""
    IDLE = "idle"
    SCANNING = "scanning"


class TxOutcome(Enum):
    """What happened to a single transaction during a cycle."""
    IGNORED = "ignored"
    DUPLICATE = "duplicate"
    RECORDED = "recorded"
    SETTLED = "settled"
    SETTLEMENT_FAILED = "settlement_failed"
    ERRORED = "errored"


@dataclass
class TxResult:
    """Per-transaction result aggregated into the cycle report."""
    tx_hash: str
    height: int
    outcome: TxOutcome
    reward: Decimal = Decimal("0")
    rule_name: Optional[str] = None
    settlement_ref: Optional[str] = None
    error: Optional[str] = None

    @property
    def qualifying(self) -> bool:
        return self.reward > 0 and self.outcome in (
            TxOutcome.RECORDED,
            TxOutcome.SETTLED,
            TxOutcome.SETTLEMENT_FAILED,
        )


@dataclass
class CycleReport:
    """Inspectable summary of one scan cycle."""
    started_at: datetime
    start_height: Optional[int] = None
    end_height: Optional[int] = None
    last_completed_height: Optional[int] = None
    first_errored_height: Optional[int] = None
    confirmed_height: Optional[int] = None
    finished_at: Optional[datetime] = None
    results: List[TxResult] = field(default_factory=list)
    cursor_advanced: bool = False
    stopped_early: bool = False
    aborted: bool = False
    abort_reason: Optional[str] = None

    def count(self, outcome: TxOutcome) -> int:
        return sum(1 for result in self.results if result.outcome == outcome)

    @property
    def succeeded(self) -> bool:
        return not self.aborted

    @property
    def qualifying_count(self) -> int:
        return sum(1 for result in self.results if result.qualifying)

    @property
    def reward_paid(self) -> Decimal:
        return sum(
            (r.reward for r in self.results if r.outcome == TxOutcome.SETTLED),
            Decimal("0")
        )

    @property
    def blocks_scanned(self) -> int:
        if self.start_height is None or self.last_completed_height is None:
            return 0
        return self.last_completed_height - self.start_height + 1

    def abort(self, reason: str) -> None:
        self.aborted = True
        self.abort_reason = reason

    def summary(self) -> dict:
        return {
            "start_height": self.start_height,
            "end_height": self.end_height,
            "last_completed_height": self.last_completed_height,
            "first_errored_height": self.first_errored_height,
            "confirmed_height": self.confirmed_height,
            "blocks_scanned": self.blocks_scanned,
            "transactions": len(self.results),
            **{outcome.value: self.count(outcome) for outcome in TxOutcome},
            "reward_paid": str(self.reward_paid),
            "cursor_advanced": self.cursor_advanced,
            "stopped_early": self.stopped_early,
            "aborted": self.aborted,
            "abort_reason": self.abort_reason,
        }


class ScanOrchestrator:
    """
    Owns the Idle/Scanning state machine and the scan cursor.

    trigger() is single-flight: a trigger that arrives while a cycle is
    running is dropped, not queued.
    """

    def __init__(
        self,
        ledger: LedgerClient,
        store: ScanStore,
        classifier: TransactionClassifier,
        engine: RewardEngine,
        executor: Optional[SettlementExecutor] = None,
        scanner_name: str = "main-scanner",
        backfill_window: int = 10,
        max_blocks_per_cycle: int = 0,
        reputation: Optional[ReputationSource] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.ledger = ledger
        self.store = store
        self.classifier = classifier
        self.engine = engine
        self.executor = executor
        self.scanner_name = scanner_name
        self.backfill_window = backfill_window
        self.max_blocks_per_cycle = max_blocks_per_cycle
        self.reputation = reputation or NullReputationSource()
        self.clock = clock

        self._state = ScannerState.IDLE
        self._stop_requested = False
        self._needs_reconcile = False

        self.last_success_at: Optional[datetime] = None
        self.last_report: Optional[CycleReport] = None
        self.dropped_triggers = 0
        self.logger = logger.bind(service="scan_orchestrator", scanner=scanner_name)

    @property
    def state(self) -> ScannerState:
        return self._state

    @property
    def is_scanning(self) -> bool:
        return self._state is ScannerState.SCANNING

    @property
    def settlement_enabled(self) -> bool:
        return self.executor is not None

    def request_stop(self) -> None:
        """Ask the running cycle to stop after the current height."""
        self._stop_requested = True

    def resume(self) -> None:
        """Allow cycles to run to completion again after request_stop()."""
        self._stop_requested = False

    # Cursor lifecycle

    async def ensure_cursor(self) -> ScanCursor:
        """Load the cursor, creating it behind the chain tip on first run."""
        cursor = await self.store.get_cursor(self.scanner_name)
        if cursor:
            self.logger.info(
                "Scanner state loaded",
                last_confirmed_height=cursor.last_confirmed_height
            )
            return cursor

        latest = await self.ledger.latest_height()
        start = max(latest - self.backfill_window, 0)
        cursor = await self.store.create_cursor(self.scanner_name, start)
        self.logger.info(
            "Initialized scanner state",
            last_confirmed_height=cursor.last_confirmed_height,
            latest_height=latest
        )
        return cursor

    async def reconcile_totals(self) -> bool:
        """
        Recompute cursor totals from the stored records.

        Counter increments of a cycle that crashed after paying are lost;
        this restores total_reward_paid == sum of paid rewards.

        Returns:
            True when the cursor was rewritten
        """
        cursor = await self.store.get_cursor(self.scanner_name)
        if not cursor:
            return False

        paid = (await self.store.sum_paid_rewards()).quantize(Decimal("0.000001"))
        qualifying = await self.store.count_qualifying()
        if cursor.total_reward_paid == paid and cursor.total_qualifying == qualifying:
            return False

        self.logger.warning(
            "Cursor totals drifted from records, reconciling",
            recorded_paid=str(cursor.total_reward_paid),
            actual_paid=str(paid),
            recorded_qualifying=cursor.total_qualifying,
            actual_qualifying=qualifying
        )
        cursor.total_reward_paid = paid
        cursor.total_qualifying = qualifying
        await self.store.put_cursor(cursor)
        return True

    # Scan cycle

    async def trigger(self) -> Optional[CycleReport]:
        """Run one scan cycle unless one is already running."""
        if self._state is ScannerState.SCANNING:
            self.dropped_triggers += 1
            self.logger.warning("Scanner already running, skipping this cycle")
            return None

        self._state = ScannerState.SCANNING
        try:
            report = await self._run_cycle()
        finally:
            self._state = ScannerState.IDLE

        self.last_report = report
        if report.succeeded:
            self.last_success_at = report.finished_at
        return report

    async def _run_cycle(self) -> CycleReport:
        report = CycleReport(started_at=self.clock())
        try:
            await self._scan(report)
        except TransientSourceError as e:
            self._needs_reconcile = True
            report.abort(e.message)
            self.logger.error(
                "Scan cycle aborted, cursor not advanced",
                code=e.code,
                error=e.message,
                start_height=report.start_height,
                last_completed_height=report.last_completed_height
            )
        except ValidationError as e:
            self._needs_reconcile = True
            report.abort(e.message)
            self.logger.error("Scan cycle rejected", error=e.message, details=e.details)
        report.finished_at = self.clock()

        if report.succeeded and report.start_height is not None:
            self.logger.info("Scan complete", **report.summary())
        return report

    async def _scan(self, report: CycleReport) -> None:
        cursor = await self.store.get_cursor(self.scanner_name)
        if not cursor:
            self.logger.error("Scanner state not found")
            report.abort("cursor missing")
            return
        if not cursor.is_active:
            self.logger.info("Scanner is paused")
            return

        latest = await self.ledger.latest_height()
        start = cursor.last_confirmed_height + 1
        end = latest
        if self.max_blocks_per_cycle > 0:
            end = min(end, start + self.max_blocks_per_cycle - 1)

        if start > end:
            self.logger.debug("No new blocks to scan", latest_height=latest)
            cursor.last_scan_time = self.clock()
            await self.store.put_cursor(cursor)
            return

        report.start_height = start
        report.end_height = end
        self.logger.info("Scanning blocks", start_height=start, end_height=end)

        for height in range(start, end + 1):
            if self._stop_requested:
                report.stopped_early = True
                self.logger.info("Stop requested, ending cycle early", next_height=height)
                break
            block = await self.ledger.block_at(height)
            for tx in block.transactions:
                result = await self._process_transaction(tx, block, report.started_at)
                if result.outcome is TxOutcome.ERRORED and report.first_errored_height is None:
                    report.first_errored_height = height
                report.results.append(result)
            report.last_completed_height = height

        if report.last_completed_height is None:
            return
        await self._advance_cursor(cursor, report)

    async def _advance_cursor(self, cursor: ScanCursor, report: CycleReport) -> None:
        confirmed = report.last_completed_height
        # Hold the cursor below a block whose transaction has no stored outcome
        if report.first_errored_height is not None:
            confirmed = min(confirmed, report.first_errored_height - 1)
            self.logger.warning(
                "Cursor held before errored block",
                errored_height=report.first_errored_height,
                confirmed_height=confirmed
            )
        cursor.last_confirmed_height = confirmed
        report.confirmed_height = confirmed
        cursor.total_qualifying += report.qualifying_count
        cursor.total_reward_paid += report.reward_paid
        cursor.last_scan_time = self.clock()
        await self.store.put_cursor(cursor)
        report.cursor_advanced = True

        if self._needs_reconcile:
            await self.reconcile_totals()
            self._needs_reconcile = False

    # Per-transaction pipeline

    async def _process_transaction(
        self,
        tx: LedgerTransaction,
        block: LedgerBlock,
        cycle_time: datetime,
    ) -> TxResult:
        try:
            if await self.store.exists_record(tx.hash):
                return TxResult(tx.hash, block.height, TxOutcome.DUPLICATE)

            classification = self.classifier.classify(tx)
            if classification is None:
                return TxResult(tx.hash, block.height, TxOutcome.IGNORED)

            context = BoostContext(
                evaluated_at=cycle_time,
                sender_high_volume=await self._is_high_volume(tx.sender),
            )
            reward = self.engine.compute(tx, classification.rule, context)
            record = self._build_record(tx, block, classification, reward)

            try:
                await self.store.insert_record(record)
            except DuplicateRecordError:
                return TxResult(tx.hash, block.height, TxOutcome.DUPLICATE)

            result = TxResult(
                tx.hash,
                block.height,
                TxOutcome.RECORDED,
                reward=record.reward_amount,
                rule_name=record.rule_name,
            )
            if not record.has_reward:
                return result

            if self.executor is None:
                self.logger.info(
                    "Settlement disabled, reward left pending",
                    tx_hash=tx.hash,
                    amount=str(record.reward_amount)
                )
                return result

            settlement = await self._settle(record)
            result.outcome = TxOutcome.SETTLED if settlement.paid else TxOutcome.SETTLEMENT_FAILED
            result.settlement_ref = settlement.settlement_ref
            result.error = settlement.error
            return result

        except TransientSourceError:
            raise
        except Exception as e:
            self.logger.error(
                "Failed to process transaction",
                tx_hash=tx.hash,
                height=block.height,
                error=str(e)
            )
            return TxResult(tx.hash, block.height, TxOutcome.ERRORED, error=str(e))

    async def _settle(self, record: TransactionRecord) -> SettlementResult:
        """Run the payout so that cancellation cannot abandon it mid-flight."""
        task = asyncio.ensure_future(self.executor.settle(record))
        try:
            return await asyncio.shield(task)
        except asyncio.CancelledError:
            self.logger.warning("Cancelled during payout, awaiting its outcome", tx_hash=record.hash)
            await task
            raise

    async def _is_high_volume(self, address: str) -> bool:
        try:
            return bool(await self.reputation.is_high_volume(address))
        except Exception as e:
            self.logger.warning("Reputation lookup failed", address=address, error=str(e))
            return False

    def _build_record(
        self,
        tx: LedgerTransaction,
        block: LedgerBlock,
        classification: Classification,
        reward: Optional[RewardResult],
    ) -> TransactionRecord:
        return TransactionRecord(
            hash=tx.hash,
            sender=tx.sender.lower(),
            recipient=tx.recipient.lower(),
            effective_target=tx.effective_target.lower() if tx.effective_target else None,
            value=str(tx.value),
            value_native=to_native(tx.value, self.engine.native_decimals),
            block_height=block.height,
            block_time=block.block_time,
            rule_id=classification.rule_id,
            rule_name=classification.rule.name,
            swap_type=classification.swap_type,
            reward_amount=reward.amount if reward else Decimal("0"),
            reward_rate=reward.rate if reward else Decimal("0"),
            boost_applied=reward.boosted if reward else False,
            status=SettlementStatus.UNREWARDED,
        )
