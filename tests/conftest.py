"""
Shared fixtures: in-memory database, fake ledger and fake payout gateway.
"""

import asyncio
from datetime import datetime
from decimal import Decimal
from typing import Callable, Dict, List, Optional, Set, Tuple

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from cashback_scanner.core.database import DatabaseManager
from cashback_scanner.core.exceptions import (
    BlockNotFoundError,
    SettlementConfirmationTimeout,
    SettlementSubmissionError,
    TransientSourceError,
)
from cashback_scanner.ledger.types import LedgerBlock, LedgerTransaction
from cashback_scanner.rewards.engine import RewardEngine
from cashback_scanner.rewards.rules import RewardRule, RuleRegistry
from cashback_scanner.scanner.classifier import TransactionClassifier
from cashback_scanner.scanner.orchestrator import ScanOrchestrator
from cashback_scanner.scanner.settlement import SettlementExecutor
from cashback_scanner.services.store import SqlAlchemyScanStore


DEX_ADDRESS = "0x1111111111111111111111111111111111111111"
BOOST_DEX_ADDRESS = "0x2222222222222222222222222222222222222222"
RELAY_ADDRESS = "0x3333333333333333333333333333333333333333"
OTHER_ADDRESS = "0x4444444444444444444444444444444444444444"
USER_A = "0xaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaa"
USER_B = "0xbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbb"

# 2024-01-03 is a Wednesday, 2024-01-06 a Saturday
WEDNESDAY = datetime(2024, 1, 3, 12, 0, 0)
SATURDAY = datetime(2024, 1, 6, 12, 0, 0)

WEI = 10 ** 18


def wei(amount: str) -> int:
    return int(Decimal(amount) * WEI)


def make_tx(
    tx_hash: str,
    value: str,
    to: str = DEX_ADDRESS,
    sender: str = USER_A,
    effective_target: Optional[str] = None,
) -> LedgerTransaction:
    return LedgerTransaction(
        hash=tx_hash,
        sender=sender,
        recipient=to,
        value=wei(value),
        effective_target=effective_target if effective_target is not None else to,
    )


class FakeLedger:
    """In-memory ledger with failure injection."""

    def __init__(self, latest: int = 100):
        self.latest = latest
        self.blocks: Dict[int, LedgerBlock] = {}
        self.fetched: List[int] = []
        self.fail_heights: Set[int] = set()
        self.missing_heights: Set[int] = set()
        self.fail_latest = False
        self.gate: Optional[asyncio.Event] = None
        self.on_fetch: Optional[Callable[[int], None]] = None

    def add_block(self, height: int, transactions: List[LedgerTransaction], timestamp: int = 1704283200):
        self.blocks[height] = LedgerBlock(height=height, timestamp=timestamp, transactions=transactions)
        self.latest = max(self.latest, height)

    async def latest_height(self) -> int:
        if self.fail_latest:
            raise TransientSourceError("rpc down")
        return self.latest

    async def block_at(self, height: int) -> LedgerBlock:
        if self.gate is not None:
            await self.gate.wait()
        self.fetched.append(height)
        if self.on_fetch:
            self.on_fetch(height)
        if height in self.fail_heights:
            raise TransientSourceError(f"timeout fetching {height}", {"height": height})
        if height in self.missing_heights:
            raise BlockNotFoundError(height)
        return self.blocks.get(height, LedgerBlock(height=height, timestamp=1704283200))


class FakeGateway:
    """Payout gateway recording every call."""

    def __init__(self):
        self.payouts: List[Tuple[str, Decimal]] = []
        self.confirmations: List[str] = []
        self.fail_submit_for: Set[str] = set()
        self.reject_for: Set[str] = set()
        self.timeout_for: Set[str] = set()

    async def payout(self, recipient: str, amount: Decimal) -> str:
        if recipient in self.fail_submit_for:
            raise SettlementSubmissionError("nonce too low")
        self.payouts.append((recipient, amount))
        return f"0xpayout{len(self.payouts):058d}"

    async def await_confirmation(self, settlement_ref: str, timeout: float) -> bool:
        self.confirmations.append(settlement_ref)
        recipient = self.payouts[int(settlement_ref[-58:]) - 1][0]
        if recipient in self.timeout_for:
            raise SettlementConfirmationTimeout(settlement_ref, timeout)
        return recipient not in self.reject_for


@pytest.fixture
async def db_engine():
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    await DatabaseManager.create_tables(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_maker(db_engine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(db_engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
def store(session_maker) -> SqlAlchemyScanStore:
    return SqlAlchemyScanStore(session_maker)


@pytest.fixture
def basic_rule() -> RewardRule:
    return RewardRule(
        contract_address=DEX_ADDRESS,
        name="Test DEX",
        base_rate=Decimal("0.05"),
        max_cashback=Decimal("10"),
        min_transaction=Decimal("1"),
    )


@pytest.fixture
def boosted_rule() -> RewardRule:
    return RewardRule(
        contract_address=BOOST_DEX_ADDRESS,
        name="Boost DEX",
        base_rate=Decimal("0.05"),
        max_cashback=Decimal("500"),
        min_transaction=Decimal("1"),
        boost_multiplier=Decimal("1.5"),
    )


@pytest.fixture
def registry(basic_rule, boosted_rule) -> RuleRegistry:
    return RuleRegistry([basic_rule, boosted_rule])


@pytest.fixture
def engine() -> RewardEngine:
    return RewardEngine()


@pytest.fixture
def ledger() -> FakeLedger:
    return FakeLedger(latest=100)


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def make_orchestrator(ledger, store, registry, engine, gateway):
    def _make(with_settlement: bool = True, **kwargs) -> ScanOrchestrator:
        executor = SettlementExecutor(store, gateway, confirmation_timeout=5) if with_settlement else None
        return ScanOrchestrator(
            ledger=kwargs.pop("ledger", ledger),
            store=store,
            classifier=TransactionClassifier(registry),
            engine=kwargs.pop("engine", engine),
            executor=executor,
            scanner_name="test-scanner",
            backfill_window=10,
            clock=kwargs.pop("clock", lambda: WEDNESDAY),
            **kwargs,
        )
    return _make


def tx_hash(n: int) -> str:
    return "0x" + f"{n:064x}"


def make_record(
    n: int,
    reward: str = "2.5",
    sender: str = USER_A,
    status=None,
    rule_name: str = "Test DEX",
    height: int = 95,
    value: str = "50",
    block_time: datetime = WEDNESDAY,
):
    from cashback_scanner.models import SettlementStatus, SwapType, TransactionRecord

    return TransactionRecord(
        hash=tx_hash(n),
        sender=sender,
        recipient=DEX_ADDRESS,
        effective_target=DEX_ADDRESS,
        value=str(wei(value)),
        value_native=Decimal(value),
        block_height=height,
        block_time=block_time,
        rule_id=DEX_ADDRESS,
        rule_name=rule_name,
        swap_type=SwapType.BUY,
        reward_amount=Decimal(reward),
        reward_rate=Decimal("0.05"),
        boost_applied=False,
        status=status or SettlementStatus.UNREWARDED,
    )
