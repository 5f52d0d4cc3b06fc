"""
Test transaction classification against the rule registry.
"""

from cashback_scanner.models import SwapType
from cashback_scanner.scanner.classifier import TransactionClassifier
from tests.conftest import DEX_ADDRESS, OTHER_ADDRESS, RELAY_ADDRESS, make_tx


def test_matches_target_contract(registry, basic_rule):
    classifier = TransactionClassifier(registry)

    result = classifier.classify(make_tx("0x01", "50"))

    assert result is not None
    assert result.rule == basic_rule
    assert result.rule_id == DEX_ADDRESS
    assert result.swap_type == SwapType.BUY


def test_ignores_other_contracts(registry):
    classifier = TransactionClassifier(registry)

    assert classifier.classify(make_tx("0x02", "50", to=OTHER_ADDRESS)) is None


def test_matching_is_case_insensitive(registry):
    classifier = TransactionClassifier(registry)
    mixed_case = "0x" + DEX_ADDRESS[2:].upper()

    result = classifier.classify(make_tx("0x03", "50", to=mixed_case))

    assert result is not None
    assert result.target == DEX_ADDRESS


def test_effective_target_wins_over_recipient(registry):
    classifier = TransactionClassifier(registry)

    # Relayed call that executed on the DEX
    relayed = make_tx("0x04", "50", to=RELAY_ADDRESS, effective_target=DEX_ADDRESS)
    assert classifier.classify(relayed).target == DEX_ADDRESS

    # Sent to the DEX address but executed elsewhere
    redirected = make_tx("0x05", "50", to=DEX_ADDRESS, effective_target=OTHER_ADDRESS)
    assert classifier.classify(redirected) is None


def test_zero_value_is_transfer(registry):
    classifier = TransactionClassifier(registry)

    result = classifier.classify(make_tx("0x06", "0"))

    assert result.swap_type == SwapType.TRANSFER
