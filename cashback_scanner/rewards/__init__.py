"""Reward rules and the cashback calculation engine."""

from .rules import RewardRule, RuleRegistry
from .engine import (
    BoostContext,
    NullReputationSource,
    ReputationSource,
    RewardEngine,
    RewardResult,
)

__all__ = [
    "RewardRule",
    "RuleRegistry",
    "BoostContext",
    "NullReputationSource",
    "ReputationSource",
    "RewardEngine",
    "RewardResult",
]
