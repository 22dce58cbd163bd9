"""
Chain client utility for read and write access to one EVM chain.

Every call carries a bounded timeout. Transport failures surface as
TransientRpcError so callers can back off without inspecting provider
internals; definitive refusals surface as DestinationRejectedError.
"""

import asyncio
import logging
from collections.abc import Awaitable
from typing import Any, TypeVar

import aiohttp
from hexbytes import HexBytes
from web3 import AsyncHTTPProvider, AsyncWeb3, Web3
from web3.exceptions import (
    ContractLogicError,
    TimeExhausted,
    TransactionNotFound,
    Web3RPCError,
)
from web3.types import LogReceipt, TxParams, TxReceipt

from ..errors import DestinationRejectedError, TransientRpcError

T = TypeVar("T")

TRANSPORT_ERRORS = (asyncio.TimeoutError, aiohttp.ClientError, ConnectionError, OSError)

# send_raw_transaction errors after which the transaction may still be mined
AMBIGUOUS_SEND_ERRORS = ("already known", "nonce too low", "replacement transaction underpriced")


class ChainClient:
    """
    Async access to one chain over HTTP JSON-RPC.

    """

    def __init__(
        self,
        rpc_url: str,
        name: str = "",
        request_timeout: int = 30,
        w3: AsyncWeb3 | None = None,
    ):
        """
        Initialize the chain client.

        Args:
            rpc_url: HTTP RPC endpoint URL
            name: Chain name used in log messages
            request_timeout: Upper bound in seconds for a single RPC call
            w3: Preconfigured AsyncWeb3 instance (tests)
        """
        self.rpc_url = rpc_url
        self.name = name or rpc_url
        self.request_timeout = request_timeout
        self.w3 = w3 or AsyncWeb3(
            AsyncHTTPProvider(rpc_url, request_kwargs={"timeout": request_timeout})
        )
        self.logger = logging.getLogger(f"{__name__}.{self.__class__.__name__}")

    async def _rpc(self, label: str, call: Awaitable[T]) -> T:
        try:
            return await asyncio.wait_for(call, timeout=self.request_timeout)
        except ContractLogicError:
            raise
        except TRANSPORT_ERRORS as e:
            raise TransientRpcError(f"{self.name} {label} failed: {e}") from e
        except Web3RPCError as e:
            raise TransientRpcError(f"{self.name} {label} RPC error: {e}") from e

    async def chain_id(self) -> int:
        return int(await self._rpc("eth_chainId", self.w3.eth.chain_id))

    async def current_height(self) -> int:
        """Current head block number of the chain."""
        return int(await self._rpc("eth_blockNumber", self.w3.eth.block_number))

    async def get_logs(
        self,
        from_block: int,
        to_block: int,
        address: str,
        topics: list[Any],
    ) -> list[LogReceipt]:
        """Fetch logs for one contract and topic filter in an inclusive block range."""
        params = {
            "fromBlock": from_block,
            "toBlock": to_block,
            "address": Web3.to_checksum_address(address),
            "topics": topics,
        }
        return list(await self._rpc("eth_getLogs", self.w3.eth.get_logs(params)))

    async def get_receipt(self, tx_hash: str) -> TxReceipt | None:
        """Receipt of a mined transaction, None when not (yet) mined."""
        try:
            return await self._rpc(
                "eth_getTransactionReceipt",
                self.w3.eth.get_transaction_receipt(HexBytes(tx_hash)),
            )
        except TransactionNotFound:
            return None

    async def wait_for_receipt(
        self, tx_hash: str, timeout: float, poll_latency: float = 2.0
    ) -> TxReceipt | None:
        """Wait for inclusion; None when the timeout elapses first."""
        try:
            return await self.w3.eth.wait_for_transaction_receipt(
                HexBytes(tx_hash), timeout=timeout, poll_latency=poll_latency
            )
        except TimeExhausted:
            return None
        except TRANSPORT_ERRORS as e:
            raise TransientRpcError(f"{self.name} receipt wait failed: {e}") from e

    async def send_raw_transaction(self, raw_tx: bytes) -> str:
        """
        Broadcast a signed transaction.

        Raises:
            TransientRpcError: Broadcast outcome unknown, the tx may be mined
            DestinationRejectedError: The node refused the transaction
        """
        try:
            tx_hash = await asyncio.wait_for(
                self.w3.eth.send_raw_transaction(raw_tx), timeout=self.request_timeout
            )
        except TRANSPORT_ERRORS as e:
            raise TransientRpcError(f"{self.name} broadcast failed: {e}") from e
        except ContractLogicError as e:
            raise DestinationRejectedError(f"broadcast refused: {e}") from e
        except Web3RPCError as e:
            message = str(e).lower()
            if any(marker in message for marker in AMBIGUOUS_SEND_ERRORS):
                raise TransientRpcError(f"{self.name} broadcast ambiguous: {e}") from e
            raise DestinationRejectedError(f"broadcast refused: {e}") from e
        return Web3.to_hex(tx_hash)

    async def call(self, to: str, data: str) -> bytes:
        """eth_call against the latest block."""
        tx: TxParams = {"to": Web3.to_checksum_address(to), "data": data}
        return bytes(await self._rpc("eth_call", self.w3.eth.call(tx)))

    async def estimate_gas(self, tx: TxParams) -> int:
        """
        Estimate gas for a transaction.

        Raises:
            DestinationRejectedError: The call reverts on the destination
        """
        try:
            return int(await self._rpc("eth_estimateGas", self.w3.eth.estimate_gas(tx)))
        except ContractLogicError as e:
            raise DestinationRejectedError(str(e)) from e

    async def gas_price(self) -> int:
        return int(await self._rpc("eth_gasPrice", self.w3.eth.gas_price))

    async def get_transaction_count(self, address: str, block: str = "pending") -> int:
        return int(await self._rpc(
            "eth_getTransactionCount",
            self.w3.eth.get_transaction_count(Web3.to_checksum_address(address), block),
        ))

    async def get_balance(self, address: str) -> int:
        return int(await self._rpc(
            "eth_getBalance",
            self.w3.eth.get_balance(Web3.to_checksum_address(address)),
        ))

    async def is_connected(self) -> bool:
        try:
            return bool(await asyncio.wait_for(self.w3.is_connected(), timeout=self.request_timeout))
        except TRANSPORT_ERRORS:
            return False

    def get_status(self) -> dict[str, Any]:
        return {"name": self.name, "rpc_url": self.rpc_url}
