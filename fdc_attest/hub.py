"""
Hub contract client — the on-chain network boundary.

Defines the interface that SubmissionGateway depends on, not a concrete
implementation. This keeps the gateway testable and keeps web3 calls out
of the confirmation/timeout logic.

Concrete implementations:
    - Web3HubClient (real, web3.AsyncWeb3 + eth_account signing)
    - FakeHubClient (tests)

The hub exposes one state-changing entry point:

    function requestAttestation(bytes calldata _encodedRequest)
        external payable returns (bool)

Secrets (the signer's private key) stay inside the client. Only the
sender address is exposed.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Protocol, runtime_checkable

import aiohttp
from eth_account import Account
from web3 import AsyncWeb3, Web3
from web3.exceptions import ContractLogicError, TransactionNotFound, Web3Exception

from fdc_attest.errors import (
    AttestationError,
    ConfigError,
    InsufficientFundsError,
    RejectedError,
    TransportError,
)

logger = logging.getLogger(__name__)

FDC_HUB_ABI: list[dict[str, Any]] = [
    {
        "type": "function",
        "name": "requestAttestation",
        "stateMutability": "payable",
        "inputs": [{"name": "_encodedRequest", "type": "bytes", "internalType": "bytes"}],
        "outputs": [{"name": "", "type": "bool", "internalType": "bool"}],
    },
]

DEFAULT_RPC_TIMEOUT_S = 30.0


# =========================================================================
# Result types
# =========================================================================


@dataclass(frozen=True)
class HubReceipt:
    """Mined transaction receipt, reduced to what the gateway needs.

    Attributes:
        tx_hash: 0x-prefixed transaction hash.
        block_number: Block the transaction was included in.
        succeeded: False when the transaction reverted (status 0).
    """

    tx_hash: str
    block_number: int
    succeeded: bool


# =========================================================================
# Protocol
# =========================================================================


@runtime_checkable
class HubClient(Protocol):
    """Interface for hub-contract operations.

    Methods are async because chain I/O is inherently asynchronous.
    Implementations raise the client error taxonomy, never raw web3 or
    aiohttp exceptions.
    """

    @property
    def sender_address(self) -> str:
        """Address paying the fee (safe for logging)."""
        ...

    async def get_balance(self) -> int:
        """Sender balance in wei."""
        ...

    async def get_gas_price(self) -> int:
        """Current gas price in wei."""
        ...

    async def send_request(self, request_bytes: bytes, fee_wei: int, gas_limit: int) -> str:
        """Sign and broadcast ``requestAttestation``; return the tx hash.

        Raises:
            InsufficientFundsError: Node rejected for lack of funds.
            RejectedError: The call would revert or the node refused it.
            TransportError: The RPC endpoint could not be reached.
        """
        ...

    async def get_receipt(self, tx_hash: str) -> HubReceipt | None:
        """Receipt for ``tx_hash``, or None while still pending."""
        ...

    async def get_block_timestamp(self, block_number: int) -> int:
        """Unix timestamp of a block."""
        ...


# =========================================================================
# Error classification
# =========================================================================


def classify_send_error(exc: Exception) -> AttestationError:
    """Map a web3/node exception raised while sending to the taxonomy."""
    text = str(exc).lower()
    if "insufficient funds" in text:
        return InsufficientFundsError(
            "node rejected transaction: insufficient funds",
            details={"error": str(exc)},
        )
    if isinstance(exc, (aiohttp.ClientError, TimeoutError)):
        return TransportError(
            f"RPC request failed: {exc}",
            details={"error": type(exc).__name__},
        )
    return RejectedError(
        f"hub rejected request: {exc}",
        details={"error": type(exc).__name__},
    )


def classify_read_error(exc: Exception) -> TransportError:
    """Map a failed read-only RPC call (balance, receipt, block) to TransportError.

    Reads change no chain state, so every failure is retryable.
    """
    return TransportError(
        f"RPC request failed: {exc}",
        details={"error": type(exc).__name__},
    )


# =========================================================================
# Web3 implementation
# =========================================================================


class Web3HubClient:
    """HubClient backed by web3.AsyncWeb3.

    Args:
        rpc_url: JSON-RPC endpoint of the chain hosting the hub.
        hub_address: Hub contract address.
        private_key: Signer key, with or without 0x prefix. Never logged.
        timeout: Per-RPC-call timeout in seconds.
    """

    def __init__(
        self,
        rpc_url: str,
        hub_address: str,
        private_key: str,
        *,
        timeout: float = DEFAULT_RPC_TIMEOUT_S,
    ) -> None:
        if not private_key:
            raise ConfigError("private key is required to submit requests")
        if not private_key.startswith("0x"):
            private_key = "0x" + private_key
        if not Web3.is_address(hub_address):
            raise ConfigError(
                f"invalid hub address {hub_address!r}",
                details={"hub_address": hub_address},
            )

        self._private_key = private_key
        self._account = Account.from_key(private_key)
        self._w3 = AsyncWeb3(
            AsyncWeb3.AsyncHTTPProvider(
                rpc_url,
                request_kwargs={"timeout": aiohttp.ClientTimeout(total=timeout)},
            )
        )
        self._hub = self._w3.eth.contract(
            address=Web3.to_checksum_address(hub_address),
            abi=FDC_HUB_ABI,
        )

    @property
    def sender_address(self) -> str:
        return self._account.address

    async def get_balance(self) -> int:
        try:
            return int(await self._w3.eth.get_balance(self.sender_address))
        except (Web3Exception, ValueError, aiohttp.ClientError, TimeoutError) as exc:
            raise classify_read_error(exc) from exc

    async def get_gas_price(self) -> int:
        try:
            return int(await self._w3.eth.gas_price)
        except (Web3Exception, ValueError, aiohttp.ClientError, TimeoutError) as exc:
            raise classify_read_error(exc) from exc

    async def send_request(self, request_bytes: bytes, fee_wei: int, gas_limit: int) -> str:
        fn = self._hub.functions.requestAttestation(request_bytes)
        sender = self.sender_address

        try:
            # Preflight surfaces contract reverts before spending gas.
            await fn.estimate_gas({"from": sender, "value": fee_wei})
        except ContractLogicError as exc:
            raise RejectedError(
                f"hub would revert: {exc}",
                details={"reason": str(exc)},
            ) from exc
        except (Web3Exception, ValueError, aiohttp.ClientError, TimeoutError) as exc:
            raise classify_send_error(exc) from exc

        try:
            nonce = await self._w3.eth.get_transaction_count(sender, "pending")
            gas_price = await self._w3.eth.gas_price
            chain_id = await self._w3.eth.chain_id
            tx = await fn.build_transaction({
                "from": sender,
                "value": fee_wei,
                "gas": gas_limit,
                "gasPrice": gas_price,
                "nonce": nonce,
                "chainId": chain_id,
            })
            signed = Account.sign_transaction(tx, self._private_key)
            tx_hash = await self._w3.eth.send_raw_transaction(signed.raw_transaction)
        except (Web3Exception, ValueError, aiohttp.ClientError, TimeoutError) as exc:
            raise classify_send_error(exc) from exc

        return Web3.to_hex(tx_hash)

    async def get_receipt(self, tx_hash: str) -> HubReceipt | None:
        try:
            receipt = await self._w3.eth.get_transaction_receipt(tx_hash)
        except TransactionNotFound:
            return None
        except (Web3Exception, ValueError, aiohttp.ClientError, TimeoutError) as exc:
            raise classify_read_error(exc) from exc

        return HubReceipt(
            tx_hash=tx_hash,
            block_number=int(receipt["blockNumber"]),
            succeeded=int(receipt["status"]) == 1,
        )

    async def get_block_timestamp(self, block_number: int) -> int:
        try:
            block = await self._w3.eth.get_block(block_number)
        except (Web3Exception, ValueError, aiohttp.ClientError, TimeoutError) as exc:
            raise classify_read_error(exc) from exc
        return int(block["timestamp"])
