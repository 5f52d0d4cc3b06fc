"""
Deterministic cashback calculation.

The engine is a pure function of the transaction, the matched rule and a
BoostContext captured once per transaction by the scanner. It never reads
the clock, the ledger or the store, so identical inputs always give the
identical amount.
"""

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal, ROUND_HALF_UP
from typing import FrozenSet, Iterable, Optional, Protocol

import structlog

from cashback_scanner.ledger.types import LedgerTransaction
from .rules import RewardRule


logger = structlog.get_logger(__name__)

REWARD_QUANTUM = Decimal("0.000001")
DEFAULT_LARGE_TRANSACTION_THRESHOLD = Decimal("100")
DEFAULT_BOOST_WEEKDAYS = frozenset({5, 6})  # Saturday, Sunday


class ReputationSource(Protocol):
    """Extension point for flagging high-volume senders."""

    async def is_high_volume(self, address: str) -> bool:
        ...


class NullReputationSource:
    """Default reputation source: nobody is high-volume."""

    async def is_high_volume(self, address: str) -> bool:
        return False


@dataclass(frozen=True)
class BoostContext:
    """Boost predicate inputs, fixed at classification time."""
    evaluated_at: datetime
    sender_high_volume: bool = False


@dataclass(frozen=True)
class RewardResult:
    """Computed cashback with the inputs needed to audit it."""
    amount: Decimal
    rate: Decimal
    rule_id: str
    boosted: bool = False


def to_native(value: int, decimals: int = 18) -> Decimal:
    """Convert a raw ledger value to native units."""
    return Decimal(value) / (Decimal(10) ** decimals)


class RewardEngine:
    """Computes the cashback for a classified transaction."""

    def __init__(
        self,
        large_transaction_threshold: Decimal = DEFAULT_LARGE_TRANSACTION_THRESHOLD,
        boost_weekdays: Iterable[int] = DEFAULT_BOOST_WEEKDAYS,
        native_decimals: int = 18,
    ):
        self.large_transaction_threshold = Decimal(large_transaction_threshold)
        self.boost_weekdays: FrozenSet[int] = frozenset(boost_weekdays)
        self.native_decimals = native_decimals

    def compute(
        self,
        tx: LedgerTransaction,
        rule: Optional[RewardRule],
        context: BoostContext,
    ) -> Optional[RewardResult]:
        """
        Compute the reward for a transaction.

        Returns:
            RewardResult, or None when the rule is missing/inactive or the
            value is below the rule's floor
        """
        if rule is None or not rule.is_active:
            return None

        value = to_native(tx.value, self.native_decimals)

        if rule.min_transaction is not None and value < rule.min_transaction:
            logger.debug(
                "Transaction below minimum",
                tx_hash=tx.hash,
                value=str(value),
                minimum=str(rule.min_transaction)
            )
            return None

        amount = value * rule.base_rate

        boosted = False
        if rule.boost_multiplier is not None and self.should_boost(value, context):
            amount *= rule.boost_multiplier
            boosted = True

        if rule.max_cashback is not None and amount > rule.max_cashback:
            amount = rule.max_cashback

        return RewardResult(
            amount=amount.quantize(REWARD_QUANTUM, rounding=ROUND_HALF_UP),
            rate=rule.base_rate,
            rule_id=rule.rule_id,
            boosted=boosted,
        )

    def should_boost(self, value: Decimal, context: BoostContext) -> bool:
        """Large transaction, high-volume sender, or a boost weekday."""
        if value >= self.large_transaction_threshold:
            return True
        if context.sender_high_volume:
            return True
        return context.evaluated_at.weekday() in self.boost_weekdays
