"""
Execution of finalized transfers on the destination bridge.

A transfer is submitted at most once per ledger SUBMITTED transition. The
destination's own ``processedTransfers`` check is consulted before every
submission, the signed transaction is recorded in the ledger before it is
broadcast, and an ambiguous outcome (timeout, transport error) always leaves
the transfer SUBMITTED for reconciliation instead of resubmitting.
"""

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

import httpx
from eth_account import Account
from eth_account.signers.local import LocalAccount
from hexbytes import HexBytes
from web3 import Web3
from web3.types import TxParams, TxReceipt, Wei

from .attestation import Attestor
from .errors import (
    DestinationRejectedError,
    TransferNotFoundError,
    TransientRpcError,
    TransitionConflictError,
)
from .ledger import TransferLedger
from .models import (
    ExecutionOutcome,
    ExecutionRecord,
    TransferIntent,
    TransferRecord,
    TransferState,
)
from .utils.chain_client import ChainClient
from .utils.contract_utility import BridgeContract
from .utils.retry import retry_with_backoff
from .utils.rofl_utility import RoflUtility

logger = logging.getLogger(__name__)

ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"

GAS_LIMIT_MULTIPLIER = 1.2


@dataclass(frozen=True, slots=True)
class PreparedTx:
    """A destination transaction after signing, before broadcast."""
    tx_hash: str | None
    nonce: int | None


BeforeBroadcast = Callable[[PreparedTx], Awaitable[None]]


class LocalSubmitter:
    """Signs with the relayer key and broadcasts raw transactions."""

    provides_tx_hash = True

    def __init__(self, client: ChainClient, private_key: str, chain_id: int):
        self.client = client
        self.chain_id = chain_id
        self.account: LocalAccount = Account.from_key(private_key)
        self._nonce_lock = asyncio.Lock()

    @property
    def address(self) -> str:
        return self.account.address

    async def submit(self, tx: TxParams, before_broadcast: BeforeBroadcast) -> str:
        """
        Sign and broadcast ``tx``.

        Nonce allocation through broadcast runs under a lock so that concurrent
        submissions from this process never reuse a nonce.

        Returns:
            Destination transaction hash
        """
        async with self._nonce_lock:
            nonce = await self.client.get_transaction_count(self.address, "pending")

            unsigned = dict(tx)
            unsigned.pop("from", None)
            unsigned["nonce"] = nonce
            unsigned["chainId"] = self.chain_id

            signed = self.account.sign_transaction(unsigned)
            tx_hash = Web3.to_hex(signed.hash)

            await before_broadcast(PreparedTx(tx_hash=tx_hash, nonce=nonce))
            await self.client.send_raw_transaction(signed.raw_transaction)

        logger.info(f"Transaction broadcast: {tx_hash} (nonce {nonce})")
        return tx_hash


class RoflSubmitter:
    """Hands transactions to the ROFL appd, which signs and submits them."""

    provides_tx_hash = False

    def __init__(self, rofl_util: RoflUtility, sender: str = ZERO_ADDRESS):
        self.rofl_util = rofl_util
        # The appd overrides the sender; used for gas estimation only
        self.address = Web3.to_checksum_address(sender)

    async def submit(self, tx: TxParams, before_broadcast: BeforeBroadcast) -> None:
        await before_broadcast(PreparedTx(tx_hash=None, nonce=None))
        try:
            await self.rofl_util.submit_tx(tx)
        except httpx.HTTPError as e:
            raise TransientRpcError(f"ROFL submission outcome unknown: {e}") from e
        logger.info("Transaction submitted via ROFL")
        return None


class ExecutionEngine:
    """
    Submits finalized transfers to one destination bridge.

    This class is responsible for:
    - Skipping transfers the destination has already processed
    - Claiming a transfer in the ledger before anything is sent
    - Building, signing and broadcasting the mint or unlock call
    - Settling receipts into EXECUTED or FAILED
    - Reconciling SUBMITTED transfers whose outcome is unknown
    """

    def __init__(
        self,
        client: ChainClient,
        contract: BridgeContract,
        ledger: TransferLedger,
        attestor: Attestor,
        submitter: LocalSubmitter | RoflSubmitter,
        dest_chain_id: int,
        target_function: str = "mint",
        target_event: str = "Mint",
        receipt_timeout: float = 120,
        retry_count: int = 3,
        retry_base_delay: float = 1.0,
        max_block_range: int = 1000,
        confirm_poll_interval: float = 2.0,
    ):
        self.client = client
        self.contract = contract
        self.ledger = ledger
        self.attestor = attestor
        self.submitter = submitter
        self.dest_chain_id = dest_chain_id
        self.target_function = target_function
        self.target_event = target_event
        self.target_topic = contract.event_topic(target_event)
        self.receipt_timeout = receipt_timeout
        self.retry_count = retry_count
        self.retry_base_delay = retry_base_delay
        self.max_block_range = max_block_range
        self.confirm_poll_interval = confirm_poll_interval

        self.in_flight: set[str] = set()

        self.executed_count = 0
        self.failed_count = 0
        self.duplicate_count = 0
        self.pending_count = 0

    async def _retry(self, fn: Callable[[], Awaitable[Any]]) -> Any:
        return await retry_with_backoff(
            fn, max_retries=self.retry_count, base_delay=self.retry_base_delay
        )

    async def is_processed(self, transfer_id: str) -> bool:
        """Destination-side idempotency check."""
        data = self.contract.encode_call("processedTransfers", [HexBytes(transfer_id)])
        raw = await self._retry(lambda: self.client.call(self.contract.address, data))
        (processed,) = self.contract.decode_output("processedTransfers", raw)
        return bool(processed)

    async def execute(self, intent: TransferIntent) -> ExecutionRecord:
        """
        Execute one FINALIZED transfer.

        Raises:
            TransferNotFoundError: The intent was never recorded
            TransientRpcError: Pre-submission reads kept failing; the transfer
                stays FINALIZED and can be retried
        """
        transfer_id = intent.transfer_id

        record = await self.ledger.get(transfer_id)
        if record is None:
            raise TransferNotFoundError(f"Transfer {transfer_id} not found")

        if record.state is not TransferState.FINALIZED:
            logger.debug(f"Transfer {transfer_id[:10]}... is {record.state.value}, skipping")
            return ExecutionRecord(
                transfer_id, ExecutionOutcome.CONFLICT, reason=f"state is {record.state.value}"
            )

        if transfer_id in self.in_flight:
            return ExecutionRecord(transfer_id, ExecutionOutcome.CONFLICT, reason="in flight")

        self.in_flight.add(transfer_id)
        try:
            return await self._execute(intent)
        finally:
            self.in_flight.discard(transfer_id)

    async def _execute(self, intent: TransferIntent) -> ExecutionRecord:
        transfer_id = intent.transfer_id

        if await self.is_processed(transfer_id):
            try:
                await self.ledger.transition_to(
                    transfer_id,
                    TransferState.FINALIZED,
                    TransferState.REJECTED_DUPLICATE,
                    reason="already processed on destination",
                )
            except TransitionConflictError as e:
                logger.debug(f"Duplicate check lost race: {e}")
                return ExecutionRecord(transfer_id, ExecutionOutcome.CONFLICT, reason=str(e))
            self.duplicate_count += 1
            return ExecutionRecord(
                transfer_id, ExecutionOutcome.DUPLICATE, reason="already processed on destination"
            )

        signature = self.attestor.sign(intent, self.dest_chain_id, self.contract.address)
        data = self.contract.encode_call(
            self.target_function,
            [intent.recipient, intent.amount, HexBytes(transfer_id), signature],
        )
        tx: TxParams = {
            "from": self.submitter.address,
            "to": self.contract.address,
            "value": Wei(0),
            "data": data,
        }

        # Estimation is read-only; a revert is a definitive rejection
        rejection: str | None = None
        try:
            gas = await self._retry(lambda: self.client.estimate_gas(tx))
            tx["gas"] = int(gas * GAS_LIMIT_MULTIPLIER)
            tx["gasPrice"] = Wei(await self._retry(self.client.gas_price))
        except DestinationRejectedError as e:
            rejection = e.reason

        start_height = await self._retry(self.client.current_height)

        try:
            await self.ledger.transition_to(
                transfer_id,
                TransferState.FINALIZED,
                TransferState.SUBMITTED,
                record=ExecutionRecord(
                    transfer_id, ExecutionOutcome.PENDING, submitted_at_height=start_height
                ),
            )
        except TransitionConflictError as e:
            logger.debug(f"Transfer {transfer_id[:10]}... claimed elsewhere: {e}")
            return ExecutionRecord(transfer_id, ExecutionOutcome.CONFLICT, reason=str(e))

        if rejection is not None:
            return await self._reject(intent, f"rejected during estimation: {rejection}", start_height)

        async def write_ahead(prepared: PreparedTx) -> None:
            await self.ledger.record_submission(
                transfer_id, prepared.tx_hash, prepared.nonce, start_height
            )

        logger.info(
            f"Submitting {self.target_function} for {intent} on chain {self.dest_chain_id}"
        )
        try:
            tx_hash = await self.submitter.submit(tx, write_ahead)
        except DestinationRejectedError as e:
            return await self._reject(intent, f"rejected on broadcast: {e.reason}", start_height)
        except TransientRpcError as e:
            logger.warning(f"Broadcast of {transfer_id[:10]}... ambiguous, left for reconciliation: {e}")
            return self._pending(transfer_id, str(e))

        if tx_hash is None:
            return await self._await_processed(intent, start_height)

        try:
            receipt = await self.client.wait_for_receipt(tx_hash, timeout=self.receipt_timeout)
        except TransientRpcError as e:
            logger.warning(f"Receipt wait for {tx_hash} failed, left for reconciliation: {e}")
            return self._pending(transfer_id, str(e), tx_hash)

        if receipt is None:
            logger.warning(f"No receipt for {tx_hash} after {self.receipt_timeout}s")
            return self._pending(transfer_id, "receipt timeout", tx_hash)

        return await self._settle_receipt(intent, receipt, start_height)

    async def _reject(
        self, intent: TransferIntent, reason: str, start_height: int | None
    ) -> ExecutionRecord:
        """Fail a claimed transfer unless the destination already processed it."""
        try:
            processed = await self.is_processed(intent.transfer_id)
        except TransientRpcError as e:
            logger.warning(
                f"Cannot confirm rejection of {intent.transfer_id[:10]}..., left for reconciliation: {e}"
            )
            return self._pending(intent.transfer_id, reason)

        if processed:
            logger.info(f"Transfer {intent.transfer_id[:10]}... was executed by another submitter")
            return await self._settle_processed(intent, start_height)
        return await self._fail(intent.transfer_id, reason)

    async def _await_processed(self, intent: TransferIntent, start_height: int) -> ExecutionRecord:
        """Confirm a hash-less submission by polling the destination."""
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.receipt_timeout
        while loop.time() < deadline:
            await asyncio.sleep(self.confirm_poll_interval)
            try:
                if await self.is_processed(intent.transfer_id):
                    return await self._settle_processed(intent, start_height)
            except TransientRpcError as e:
                logger.debug(f"Confirmation poll failed: {e}")

        return self._pending(intent.transfer_id, "not confirmed before timeout")

    async def _settle_receipt(
        self, intent: TransferIntent, receipt: TxReceipt, start_height: int | None
    ) -> ExecutionRecord:
        transfer_id = intent.transfer_id
        tx_hash = Web3.to_hex(receipt["transactionHash"])

        if receipt["status"] == 1:
            fee = int(receipt["gasUsed"]) * int(receipt.get("effectiveGasPrice", 0))
            return await self._succeed(ExecutionRecord(
                transfer_id,
                ExecutionOutcome.EXECUTED,
                tx_hash=tx_hash,
                fee_paid=fee,
                block_height=receipt["blockNumber"],
            ))

        # A revert can mean another submitter got there first
        if await self.is_processed(transfer_id):
            return await self._settle_processed(intent, start_height)

        return await self._fail(
            transfer_id, f"reverted in {tx_hash} at block {receipt['blockNumber']}"
        )

    async def _settle_processed(
        self, intent: TransferIntent, from_block: int | None
    ) -> ExecutionRecord:
        """Move a SUBMITTED transfer the destination reports as processed to EXECUTED."""
        log = await self.find_execution_log(intent.transfer_id, from_block or 0)
        if log is None:
            return await self._succeed(ExecutionRecord(
                intent.transfer_id,
                ExecutionOutcome.EXECUTED,
                reason="processed on destination",
            ))

        tx_hash = Web3.to_hex(log["transactionHash"])
        fee = None
        receipt = await self._retry(lambda: self.client.get_receipt(tx_hash))
        if receipt is not None:
            fee = int(receipt["gasUsed"]) * int(receipt.get("effectiveGasPrice", 0))

        return await self._succeed(ExecutionRecord(
            intent.transfer_id,
            ExecutionOutcome.EXECUTED,
            tx_hash=tx_hash,
            fee_paid=fee,
            block_height=log["blockNumber"],
        ))

    async def find_execution_log(self, transfer_id: str, from_block: int) -> Any | None:
        """Search the destination for the Mint/Unlock log of ``transfer_id``."""
        head = await self._retry(self.client.current_height)
        id_topic = Web3.to_hex(HexBytes(transfer_id))

        start = max(0, from_block)
        while start <= head:
            end = min(start + self.max_block_range - 1, head)
            logs = await self._retry(lambda: self.client.get_logs(
                from_block=start,
                to_block=end,
                address=self.contract.address,
                topics=[self.target_topic, None, id_topic],
            ))
            for log in logs:
                if not log.get("removed"):
                    return log
            start = end + 1
        return None

    async def reconcile_submitted(self, record: TransferRecord) -> ExecutionRecord | None:
        """
        Resolve a SUBMITTED transfer from destination state. Never resubmits.

        Returns:
            The settled record, or None if the outcome is still unknown
        """
        transfer_id = record.transfer_id
        if record.state is not TransferState.SUBMITTED or transfer_id in self.in_flight:
            return None

        execution = record.execution
        tx_hash = execution.tx_hash if execution else None
        nonce = execution.nonce if execution else None
        from_block = execution.submitted_at_height if execution else None

        # Read the account nonce before the receipt so a late inclusion is not
        # mistaken for a drop
        confirmed_nonce = None
        if nonce is not None and self.submitter.provides_tx_hash:
            confirmed_nonce = await self._retry(
                lambda: self.client.get_transaction_count(self.submitter.address, "latest")
            )

        if tx_hash:
            receipt = await self._retry(lambda: self.client.get_receipt(tx_hash))
            if receipt is not None:
                logger.info(f"Reconciled {transfer_id[:10]}... from receipt {tx_hash}")
                return await self._settle_receipt(record.intent, receipt, from_block)

        if await self.is_processed(transfer_id):
            logger.info(f"Reconciled {transfer_id[:10]}... from destination state")
            return await self._settle_processed(record.intent, from_block)

        if confirmed_nonce is not None and confirmed_nonce > nonce:
            return await self._fail(transfer_id, f"dropped: nonce {nonce} used by another transaction")

        stale = time.time() - record.updated_at > self.receipt_timeout
        if tx_hash is None and nonce is None and self.submitter.provides_tx_hash and stale:
            # Local submissions are recorded before broadcast
            return await self._fail(transfer_id, "never broadcast")

        logger.info(f"Transfer {transfer_id[:10]}... still pending on destination")
        return None

    async def _succeed(self, execution: ExecutionRecord) -> ExecutionRecord:
        try:
            await self.ledger.transition_to(
                execution.transfer_id,
                TransferState.SUBMITTED,
                TransferState.EXECUTED,
                reason=execution.reason,
                record=execution,
            )
        except TransitionConflictError as e:
            logger.debug(f"Settlement lost race: {e}")
            return ExecutionRecord(execution.transfer_id, ExecutionOutcome.CONFLICT, reason=str(e))

        self.executed_count += 1
        logger.info(
            f"Transfer {execution.transfer_id[:10]}... executed"
            + (f" in {execution.tx_hash}" if execution.tx_hash else "")
            + (f" (fee {execution.fee_paid} wei)" if execution.fee_paid is not None else "")
        )
        return execution

    async def _fail(self, transfer_id: str, reason: str) -> ExecutionRecord:
        execution = ExecutionRecord(transfer_id, ExecutionOutcome.REVERTED, reason=reason)
        try:
            await self.ledger.transition_to(
                transfer_id,
                TransferState.SUBMITTED,
                TransferState.FAILED,
                reason=reason,
                record=execution,
            )
        except TransitionConflictError as e:
            logger.debug(f"Failure record lost race: {e}")
            return ExecutionRecord(transfer_id, ExecutionOutcome.CONFLICT, reason=str(e))

        self.failed_count += 1
        logger.error(f"Transfer {transfer_id[:10]}... failed: {reason}")
        return execution

    def _pending(self, transfer_id: str, reason: str, tx_hash: str | None = None) -> ExecutionRecord:
        self.pending_count += 1
        return ExecutionRecord(
            transfer_id, ExecutionOutcome.PENDING, tx_hash=tx_hash, reason=reason
        )

    def get_stats(self) -> dict[str, int]:
        return {
            "executed": self.executed_count,
            "failed": self.failed_count,
            "duplicates": self.duplicate_count,
            "pending": self.pending_count,
            "in_flight": len(self.in_flight),
        }
