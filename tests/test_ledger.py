"""
Test ledger reads and the treasury gateway against a stubbed web3 client.
"""

from decimal import Decimal
from types import SimpleNamespace

import pytest
from web3.exceptions import BlockNotFound, TimeExhausted

from cashback_scanner.core.exceptions import (
    BlockNotFoundError,
    ConfigurationError,
    SettlementConfirmationTimeout,
    SettlementSubmissionError,
    TransientSourceError,
)
from cashback_scanner.ledger.client import Web3LedgerClient
from cashback_scanner.ledger.types import LedgerBlock
from cashback_scanner.ledger.web3_gateway import Web3PayoutGateway, from_base_units, to_base_units
from tests.conftest import DEX_ADDRESS, RELAY_ADDRESS, USER_A, wei


TEST_KEY = "0x" + "11" * 32
TREASURY = "0x1DC6CEE4D32Cc8B06fC4Cea268ccd774451E08b4"


class StubEth:
    def __init__(self):
        self.height = 42
        self.blocks = {}
        self.receipts = {}
        self.fail = False
        self.sent = []
        self.receipt_status = 1
        self.receipt_timeout = False

    @property
    def block_number(self):
        async def _height():
            if self.fail:
                raise ConnectionError("rpc down")
            return self.height
        return _height()

    async def get_block(self, height, full_transactions=False):
        if self.fail:
            raise ConnectionError("rpc down")
        if height not in self.blocks:
            raise BlockNotFound(f"Block {height} not found")
        return self.blocks[height]

    async def get_transaction_receipt(self, tx_hash):
        return self.receipts[tx_hash]

    async def get_transaction_count(self, address, block_identifier):
        return 7

    async def send_raw_transaction(self, raw):
        if self.fail:
            raise ValueError("nonce too low")
        self.sent.append(raw)
        return bytes.fromhex("ab" * 32)

    async def wait_for_transaction_receipt(self, tx_hash, timeout, poll_latency):
        if self.receipt_timeout:
            raise TimeExhausted(f"{tx_hash} not in chain after {timeout}s")
        return {"status": self.receipt_status, "blockNumber": 43}

    def contract(self, address, abi):
        eth = self

        class _Call:
            def __init__(self, *args):
                self.args = args

            async def build_transaction(self, params):
                return {
                    "to": address,
                    "value": 0,
                    "gas": 100_000,
                    "gasPrice": 1_000_000_000,
                    "nonce": params["nonce"],
                    "chainId": 146,
                    "data": "0x",
                }

            async def call(self):
                return wei("250")

        eth.calls = []

        def transfer(recipient, amount):
            eth.calls.append((recipient, amount))
            return _Call(recipient, amount)

        return SimpleNamespace(
            functions=SimpleNamespace(transferToWallet=transfer, getBalance=lambda: _Call())
        )


@pytest.fixture
def stub_eth() -> StubEth:
    return StubEth()


@pytest.fixture
def w3(stub_eth):
    return SimpleNamespace(eth=stub_eth, provider=SimpleNamespace())


@pytest.mark.asyncio
async def test_latest_height(w3, stub_eth):
    client = Web3LedgerClient(w3=w3)

    assert await client.latest_height() == 42

    stub_eth.fail = True
    with pytest.raises(TransientSourceError):
        await client.latest_height()


@pytest.mark.asyncio
async def test_block_with_effective_targets(w3, stub_eth):
    stub_eth.blocks[40] = {
        "number": 40,
        "timestamp": 1704283200,
        "transactions": [
            {"hash": b"\x01" * 32, "from": USER_A.upper().replace("0X", "0x"), "to": RELAY_ADDRESS, "value": wei("50")},
            {"hash": b"\x02" * 32, "from": USER_A, "to": None, "value": 0},
        ],
    }
    stub_eth.receipts["0x" + "01" * 32] = {"to": DEX_ADDRESS.upper().replace("0X", "0x")}
    stub_eth.receipts["0x" + "02" * 32] = {"to": None, "contractAddress": None}

    block = await Web3LedgerClient(w3=w3).block_at(40)

    assert block.height == 40
    first, deploy = block.transactions
    assert first.sender == USER_A
    assert first.recipient == RELAY_ADDRESS
    assert first.effective_target == DEX_ADDRESS
    assert first.target == DEX_ADDRESS
    assert first.value == wei("50")
    assert deploy.effective_target is None
    assert deploy.target == ""


@pytest.mark.asyncio
async def test_block_errors(w3, stub_eth):
    client = Web3LedgerClient(w3=w3)

    with pytest.raises(BlockNotFoundError) as exc_info:
        await client.block_at(99)
    assert exc_info.value.height == 99

    stub_eth.fail = True
    with pytest.raises(TransientSourceError):
        await client.block_at(40)


def test_block_time_is_naive_utc():
    block = LedgerBlock(height=1, timestamp=1704283200)

    assert block.block_time.tzinfo is None
    assert block.block_time.isoformat() == "2024-01-03T12:00:00"


def test_base_unit_conversion():
    assert to_base_units(Decimal("2.5"), 18) == wei("2.5")
    assert from_base_units(wei("2.5"), 18) == Decimal("2.5")


def test_gateway_requires_key(w3):
    with pytest.raises(ConfigurationError):
        Web3PayoutGateway(private_key="not-a-key", treasury_contract=TREASURY, w3=w3)


@pytest.mark.asyncio
async def test_gateway_payout(w3, stub_eth):
    gateway = Web3PayoutGateway(private_key=TEST_KEY, treasury_contract=TREASURY, w3=w3, decimals=18)

    ref = await gateway.payout(USER_A, Decimal("2.5"))

    assert ref == "0x" + "ab" * 32
    assert len(stub_eth.sent) == 1
    recipient, amount = stub_eth.calls[0]
    assert recipient.lower() == USER_A
    assert amount == wei("2.5")
    assert await gateway.await_confirmation(ref, timeout=5) is True
    assert await gateway.get_treasury_balance() == Decimal("250")


@pytest.mark.asyncio
async def test_gateway_failures(w3, stub_eth):
    gateway = Web3PayoutGateway(private_key=TEST_KEY, treasury_contract=TREASURY, w3=w3, decimals=18)

    stub_eth.receipt_status = 0
    assert await gateway.await_confirmation("0xref", timeout=5) is False

    stub_eth.receipt_timeout = True
    with pytest.raises(SettlementConfirmationTimeout):
        await gateway.await_confirmation("0xref", timeout=5)

    stub_eth.fail = True
    with pytest.raises(SettlementSubmissionError):
        await gateway.payout(USER_A, Decimal("1"))
