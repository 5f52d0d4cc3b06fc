"""
Scanner runner - wires components from settings and schedules scan cycles.
"""

import asyncio
from datetime import datetime
from typing import Any, Dict, Optional

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from cashback_scanner.core.config import Settings, settings as default_settings
from cashback_scanner.core.exceptions import ConfigurationError
from cashback_scanner.ledger.client import LedgerClient, Web3LedgerClient
from cashback_scanner.models import utcnow
from cashback_scanner.rewards.engine import RewardEngine
from cashback_scanner.rewards.rules import RuleRegistry
from cashback_scanner.services.store import SqlAlchemyScanStore
from .classifier import TransactionClassifier
from .orchestrator import ScanOrchestrator
from .settlement import PayoutGateway, SettlementExecutor


logger = structlog.get_logger(__name__)


def build_payout_gateway(config: Settings) -> Optional[PayoutGateway]:
    """Treasury gateway, or None to run in detect-only mode."""
    from cashback_scanner.ledger.web3_gateway import Web3PayoutGateway

    try:
        return Web3PayoutGateway(config.private_key, config.treasury_contract)
    except ConfigurationError as e:
        logger.warning(
            "Settlement disabled, running in detect-only mode",
            error=e.message
        )
        return None


def build_orchestrator(
    session_maker: async_sessionmaker[AsyncSession],
    config: Settings = default_settings,
    ledger: Optional[LedgerClient] = None,
    gateway: Optional[PayoutGateway] = None,
    registry: Optional[RuleRegistry] = None,
) -> ScanOrchestrator:
    """Assemble the scan pipeline from settings."""
    registry = registry or RuleRegistry.from_config(config.reward_rules)
    store = SqlAlchemyScanStore(session_maker)
    gateway = gateway if gateway is not None else build_payout_gateway(config)

    executor = None
    if gateway is not None:
        executor = SettlementExecutor(
            store,
            gateway,
            confirmation_timeout=config.confirmation_timeout_seconds,
        )

    return ScanOrchestrator(
        ledger=ledger or Web3LedgerClient(),
        store=store,
        classifier=TransactionClassifier(registry),
        engine=RewardEngine(
            large_transaction_threshold=config.large_transaction_threshold,
            boost_weekdays=config.boost_weekdays,
            native_decimals=config.native_decimals,
        ),
        executor=executor,
        scanner_name=config.scanner_name,
        backfill_window=config.backfill_window,
        max_blocks_per_cycle=config.max_blocks_per_cycle,
    )


class ScanScheduler:
    """
    Fixed-interval timer for scan cycles.

    Each tick calls trigger() in its own task, so a tick that lands while a
    cycle is running is dropped by the orchestrator rather than queued.
    """

    def __init__(self, orchestrator: ScanOrchestrator, interval_seconds: float):
        self.orchestrator = orchestrator
        self.interval_seconds = interval_seconds
        self.running = False
        self.started_at: Optional[datetime] = None
        self.tick_count = 0
        self._stop_event = asyncio.Event()
        self._cycle_task: Optional[asyncio.Task] = None

    async def start(self) -> None:
        """Run until stop() is called."""
        logger.info("Starting scan scheduler", interval_seconds=self.interval_seconds)
        self.running = True
        self.started_at = utcnow()
        self._stop_event.clear()

        while self.running:
            self.tick()
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self.interval_seconds)
            except asyncio.TimeoutError:
                continue

        logger.info("Scan scheduler stopped")

    def tick(self) -> None:
        self.tick_count += 1
        task = asyncio.ensure_future(self.orchestrator.trigger())
        task.add_done_callback(self._log_cycle_failure)
        # A tick landing on a running cycle still calls trigger() so the
        # orchestrator drops and counts it
        if self._cycle_task is None or self._cycle_task.done():
            self._cycle_task = task

    @staticmethod
    def _log_cycle_failure(task: asyncio.Task) -> None:
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error("Scan cycle failed", error=str(error), error_type=type(error).__name__)

    async def stop(self) -> None:
        """Stop ticking and wait for the in-flight cycle to finish."""
        logger.info("Stopping scan scheduler")
        self.running = False
        self._stop_event.set()
        self.orchestrator.request_stop()

        if self._cycle_task and not self._cycle_task.done():
            logger.info("Waiting for in-flight scan cycle")
            await asyncio.gather(self._cycle_task, return_exceptions=True)

    def health_check(self, threshold_seconds: float) -> Dict[str, Any]:
        """In-process health: time since the last successful cycle."""
        last_success = self.orchestrator.last_success_at
        since = (utcnow() - last_success).total_seconds() if last_success else None
        return {
            "healthy": self.running and since is not None and since < threshold_seconds,
            "running": self.running,
            "state": self.orchestrator.state.value,
            "last_success_at": last_success.isoformat() if last_success else None,
            "seconds_since_success": since,
            "ticks": self.tick_count,
            "dropped_triggers": self.orchestrator.dropped_triggers,
            "settlement_enabled": self.orchestrator.settlement_enabled,
        }
