"""
Reward rules and the read-only registry that resolves them by contract.
"""

from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Iterable, Iterator, List, Mapping, Optional

import structlog

from cashback_scanner.core.exceptions import ConfigurationError


logger = structlog.get_logger(__name__)


def _decimal(value: Any, field_name: str) -> Optional[Decimal]:
    if value is None:
        return None
    try:
        return Decimal(str(value))
    except InvalidOperation:
        raise ConfigurationError(
            f"Invalid decimal for reward rule field {field_name}: {value!r}",
            {"field": field_name, "value": value}
        )


@dataclass(frozen=True)
class RewardRule:
    """Cashback policy for one target contract."""
    contract_address: str
    name: str
    base_rate: Decimal
    max_cashback: Optional[Decimal] = None
    min_transaction: Optional[Decimal] = None
    is_active: bool = True
    boost_multiplier: Optional[Decimal] = None
    description: Optional[str] = None

    @property
    def rule_id(self) -> str:
        return self.contract_address.lower()

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "RewardRule":
        """Build a rule from a settings entry."""
        try:
            address = data["contract_address"]
            name = data["name"]
            base_rate = data["base_rate"]
        except KeyError as e:
            raise ConfigurationError(
                f"Reward rule is missing required field {e.args[0]}",
                {"rule": dict(data)}
            )

        rate = _decimal(base_rate, "base_rate")
        if rate < 0:
            raise ConfigurationError("Reward rule base_rate must not be negative", {"rule": name})

        return cls(
            contract_address=str(address),
            name=str(name),
            base_rate=rate,
            max_cashback=_decimal(data.get("max_cashback"), "max_cashback"),
            min_transaction=_decimal(data.get("min_transaction"), "min_transaction"),
            is_active=bool(data.get("is_active", True)),
            boost_multiplier=_decimal(data.get("boost_multiplier"), "boost_multiplier"),
            description=data.get("description"),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "contract_address": self.contract_address,
            "name": self.name,
            "base_rate": str(self.base_rate),
            "max_cashback": str(self.max_cashback) if self.max_cashback is not None else None,
            "min_transaction": str(self.min_transaction) if self.min_transaction is not None else None,
            "is_active": self.is_active,
            "boost_multiplier": str(self.boost_multiplier) if self.boost_multiplier is not None else None,
            "description": self.description,
        }


class RuleRegistry:
    """
    Read-only mapping from contract address to reward rule.

    Lookups are case-insensitive; two rules for the same contract are a
    configuration error.
    """

    def __init__(self, rules: Iterable[RewardRule]):
        by_address: Dict[str, RewardRule] = {}
        for rule in rules:
            if rule.rule_id in by_address:
                raise ConfigurationError(
                    f"Duplicate reward rule for contract {rule.contract_address}",
                    {"contract_address": rule.contract_address}
                )
            by_address[rule.rule_id] = rule
        self._rules = by_address
        self._addresses = frozenset(by_address)

    @classmethod
    def from_config(cls, entries: Iterable[Mapping[str, Any]]) -> "RuleRegistry":
        registry = cls(RewardRule.from_dict(entry) for entry in entries)
        logger.info(
            "Reward rules loaded",
            total=len(registry),
            active=len(registry.active_rules())
        )
        return registry

    @property
    def addresses(self) -> frozenset:
        return self._addresses

    def get(self, address: Optional[str]) -> Optional[RewardRule]:
        if not address:
            return None
        return self._rules.get(address.lower())

    def __contains__(self, address: object) -> bool:
        return isinstance(address, str) and address.lower() in self._addresses

    def __iter__(self) -> Iterator[RewardRule]:
        return iter(self._rules.values())

    def __len__(self) -> int:
        return len(self._rules)

    def active_rules(self) -> List[RewardRule]:
        return [rule for rule in self._rules.values() if rule.is_active]
