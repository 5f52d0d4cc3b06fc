"""
Transaction classifier - decides whether a transaction hit a rewarded contract.
"""

from dataclasses import dataclass
from typing import Optional

import structlog

from cashback_scanner.ledger.types import LedgerTransaction
from cashback_scanner.models import SwapType
from cashback_scanner.rewards.rules import RewardRule, RuleRegistry


logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class Classification:
    """A qualifying transaction tagged with the rule it matched."""
    rule: RewardRule
    target: str
    swap_type: SwapType

    @property
    def rule_id(self) -> str:
        return self.rule.rule_id


class TransactionClassifier:
    """
    Matches transactions against the rule registry.

    The effective target reported by the receipt wins over the nominal
    recipient, so calls relayed through another address are attributed to
    the contract that actually executed.
    """

    def __init__(self, registry: RuleRegistry):
        self.registry = registry
        self._targets = registry.addresses

    def classify(self, tx: LedgerTransaction) -> Optional[Classification]:
        target = tx.target.lower()
        if target not in self._targets:
            return None

        rule = self.registry.get(target)
        if tx.effective_target and tx.recipient and tx.effective_target.lower() != tx.recipient.lower():
            logger.debug(
                "Classified by effective target",
                tx_hash=tx.hash,
                recipient=tx.recipient,
                effective_target=tx.effective_target
            )
        return Classification(rule=rule, target=target, swap_type=self.swap_type(tx))

    @staticmethod
    def swap_type(tx: LedgerTransaction) -> SwapType:
        """Native value sent means a buy; everything else is a transfer."""
        if tx.value > 0:
            return SwapType.BUY
        return SwapType.TRANSFER
