"""
Treasury payout gateway - sends cashback through the treasury contract.
"""

from decimal import Decimal
from typing import Optional

import structlog
from eth_account import Account
from web3 import AsyncWeb3
from web3.exceptions import TimeExhausted
from web3.middleware import ExtraDataToPOAMiddleware

from cashback_scanner.core.config import settings, LedgerConfig
from cashback_scanner.core.exceptions import (
    ConfigurationError,
    SettlementConfirmationTimeout,
    SettlementSubmissionError,
)


logger = structlog.get_logger(__name__)


def to_base_units(amount: Decimal, decimals: int) -> int:
    """Convert a native-unit amount to integer base units."""
    return int(amount * (Decimal(10) ** decimals))


def from_base_units(amount: int, decimals: int) -> Decimal:
    return Decimal(amount) / (Decimal(10) ** decimals)


class Web3PayoutGateway:
    """Submits `transferToWallet` calls and waits for their receipts."""

    def __init__(
        self,
        private_key: Optional[str] = None,
        treasury_contract: Optional[str] = None,
        w3: Optional[AsyncWeb3] = None,
        decimals: Optional[int] = None,
    ):
        private_key = private_key or settings.private_key
        treasury_contract = treasury_contract or settings.treasury_contract
        if not private_key or not treasury_contract:
            raise ConfigurationError(
                "PRIVATE_KEY and TREASURY_CONTRACT are required for payouts",
                {"treasury_contract": treasury_contract}
            )

        if w3 is None:
            rpc_config = LedgerConfig.get_rpc_config()
            w3 = AsyncWeb3(
                AsyncWeb3.AsyncHTTPProvider(
                    rpc_config["endpoint"],
                    request_kwargs={"timeout": rpc_config["timeout"]}
                )
            )
            w3.middleware_onion.inject(ExtraDataToPOAMiddleware, layer=0)

        try:
            self.account = Account.from_key(private_key)
        except Exception as e:
            raise ConfigurationError(f"Invalid PRIVATE_KEY: {e}")

        self.w3 = w3
        self.decimals = decimals if decimals is not None else settings.native_decimals
        self.treasury = w3.eth.contract(
            address=AsyncWeb3.to_checksum_address(treasury_contract),
            abi=LedgerConfig.TREASURY_ABI
        )
        self.logger = logger.bind(service="payout_gateway", payer=self.account.address)

    async def payout(self, recipient: str, amount: Decimal) -> str:
        """Submit a treasury transfer and return its transaction hash."""
        try:
            amount_units = to_base_units(amount, self.decimals)
            nonce = await self.w3.eth.get_transaction_count(self.account.address, "pending")
            tx = await self.treasury.functions.transferToWallet(
                AsyncWeb3.to_checksum_address(recipient), amount_units
            ).build_transaction({
                "from": self.account.address,
                "nonce": nonce,
            })
            signed = self.account.sign_transaction(tx)
            tx_hash = await self.w3.eth.send_raw_transaction(signed.raw_transaction)
        except Exception as e:
            self.logger.error(
                "Payout submission failed",
                recipient=recipient,
                amount=str(amount),
                error=str(e)
            )
            raise SettlementSubmissionError(
                f"Payout submission failed: {e}",
                {"recipient": recipient, "amount": str(amount)}
            )

        ref = tx_hash.to_0x_hex() if hasattr(tx_hash, "to_0x_hex") else "0x" + bytes(tx_hash).hex()
        self.logger.info("Payout submitted", recipient=recipient, amount=str(amount), ref=ref)
        return ref

    async def await_confirmation(self, settlement_ref: str, timeout: float) -> bool:
        """Wait for the payout receipt; True when it succeeded on-chain."""
        try:
            receipt = await self.w3.eth.wait_for_transaction_receipt(
                settlement_ref,
                timeout=timeout,
                poll_latency=settings.confirmation_poll_latency
            )
        except TimeExhausted:
            raise SettlementConfirmationTimeout(settlement_ref, timeout)

        confirmed = receipt["status"] == 1
        self.logger.info(
            "Payout receipt received",
            ref=settlement_ref,
            confirmed=confirmed,
            block=receipt.get("blockNumber")
        )
        return confirmed

    async def get_treasury_balance(self) -> Decimal:
        """Treasury balance in native units."""
        balance = await self.treasury.functions.getBalance().call()
        return from_base_units(balance, self.decimals)
