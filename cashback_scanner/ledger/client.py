"""
Ledger client for reading blocks from an EVM-compatible chain.
Provides the latest height and blocks with their effective call targets.
"""

from typing import Any, Optional, Protocol

import structlog
from web3 import AsyncWeb3
from web3.exceptions import BlockNotFound, TransactionNotFound
from web3.middleware import ExtraDataToPOAMiddleware

from cashback_scanner.core.config import LedgerConfig
from cashback_scanner.core.exceptions import BlockNotFoundError, TransientSourceError
from .types import LedgerBlock, LedgerTransaction


logger = structlog.get_logger(__name__)


class LedgerClient(Protocol):
    """Read capability the scanner needs from the ledger."""

    async def latest_height(self) -> int:
        ...

    async def block_at(self, height: int) -> LedgerBlock:
        ...


def _hex(value: Any) -> str:
    if isinstance(value, (bytes, bytearray)):
        return "0x" + bytes(value).hex()
    if hasattr(value, "to_0x_hex"):
        return value.to_0x_hex()
    return str(value)


def _address(value: Optional[str]) -> str:
    return value.lower() if value else ""


class Web3LedgerClient:
    """
    Async web3 client for ledger reads.

    Provides:
    - Current chain height
    - Blocks with full transactions, each resolved to its effective
      target through the transaction receipt
    """

    def __init__(self, w3: Optional[AsyncWeb3] = None):
        rpc_config = LedgerConfig.get_rpc_config()
        self.w3 = w3 or AsyncWeb3(
            AsyncWeb3.AsyncHTTPProvider(
                rpc_config["endpoint"],
                request_kwargs={"timeout": rpc_config["timeout"]}
            )
        )
        if w3 is None:
            self.w3.middleware_onion.inject(ExtraDataToPOAMiddleware, layer=0)
        self.logger = logger.bind(service="ledger_client")

    async def latest_height(self) -> int:
        """Get the current block number."""
        try:
            return int(await self.w3.eth.block_number)
        except Exception as e:
            self.logger.error("Failed to get latest block number", error=str(e))
            raise TransientSourceError(f"Failed to get latest block number: {e}")

    async def block_at(self, height: int) -> LedgerBlock:
        """
        Fetch a block and its transactions.

        Raises:
            BlockNotFoundError: The ledger has no block at this height
            TransientSourceError: Any RPC failure
        """
        try:
            block = await self.w3.eth.get_block(height, full_transactions=True)
        except BlockNotFound:
            raise BlockNotFoundError(height)
        except Exception as e:
            self.logger.error("Failed to fetch block", height=height, error=str(e))
            raise TransientSourceError(
                f"Failed to fetch block {height}: {e}", {"height": height}
            )

        if block is None:
            raise BlockNotFoundError(height)

        transactions = []
        for tx in block["transactions"]:
            if isinstance(tx, (str, bytes)):
                continue
            tx_hash = _hex(tx["hash"])
            effective_target = await self._effective_target(tx_hash, height)
            transactions.append(
                LedgerTransaction(
                    hash=tx_hash,
                    sender=_address(tx["from"]),
                    recipient=_address(tx.get("to")),
                    value=int(tx["value"]),
                    effective_target=effective_target,
                )
            )

        self.logger.debug(
            "Block fetched",
            height=height,
            transactions=len(transactions)
        )
        return LedgerBlock(
            height=int(block["number"]),
            timestamp=int(block["timestamp"]),
            transactions=transactions,
        )

    async def _effective_target(self, tx_hash: str, height: int) -> Optional[str]:
        """Contract invoked according to the receipt, if the receipt has one."""
        try:
            receipt = await self.w3.eth.get_transaction_receipt(tx_hash)
        except TransactionNotFound:
            return None
        except Exception as e:
            self.logger.error("Failed to fetch receipt", tx_hash=tx_hash, error=str(e))
            raise TransientSourceError(
                f"Failed to fetch receipt {tx_hash}: {e}",
                {"height": height, "tx_hash": tx_hash}
            )
        target = receipt.get("to") or receipt.get("contractAddress")
        return _address(target) or None

    async def close(self) -> None:
        provider = self.w3.provider
        if hasattr(provider, "disconnect"):
            await provider.disconnect()
