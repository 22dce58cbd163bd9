"""
Event processing module for the bridge relayer.

This module turns raw source-chain logs into TransferIntent objects. Decoding
is driven by the event layout in the contract ABI with explicit types; a log
that does not match the layout is skipped and counted, never best-effort
parsed.
"""

import logging
from collections.abc import Iterable, Mapping
from typing import Any

from eth_abi import decode
from eth_abi.exceptions import DecodingError
from hexbytes import HexBytes
from web3 import Web3

from .errors import MalformedLogError
from .models import TransferIntent, derive_transfer_id
from .utils.contract_utility import BridgeContract

logger = logging.getLogger(__name__)

ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"

REQUIRED_FIELDS = ("from", "to", "amount", "timestamp", "nonce", "targetChain")


def _as_bytes(value: Any) -> bytes:
    match value:
        case bytes() | bytearray():
            return bytes(value)
        case str():
            return bytes(HexBytes(value))
        case _:
            raise MalformedLogError(f"Unexpected hex value type: {type(value).__name__}")


class EventProcessor:
    """Decodes transfer-initiated logs emitted by one source bridge contract.

    This class is responsible for:
    - Checking that a log comes from the configured contract and event
    - Decoding indexed topics and data with the ABI types
    - Validating amounts and addresses
    - Deriving the transfer id from on-chain fields only
    - Maintaining metrics on decoded and skipped logs
    """

    def __init__(
        self,
        source_chain_id: int,
        contract: BridgeContract,
        event_name: str = "Lock",
    ) -> None:
        """Initialize the EventProcessor.

        Args:
            source_chain_id: Chain id of the chain the logs come from
            contract: Source bridge contract (address and ABI)
            event_name: Transfer-initiated event to decode
        """
        self.source_chain_id = source_chain_id
        self.contract = contract
        self.event_name = event_name
        self.topic = contract.event_topic(event_name)
        self.indexed_fields, self.data_fields = contract.event_layout(event_name)

        names = {name for name, _ in self.indexed_fields + self.data_fields}
        missing = [f for f in REQUIRED_FIELDS if f not in names]
        if missing:
            raise ValueError(f"Event {event_name} is missing fields: {', '.join(missing)}")

        self.events_decoded = 0
        self.events_invalid = 0
        self.events_duplicated = 0

    def decode(self, log: Mapping[str, Any]) -> TransferIntent:
        """
        Decode one raw log into a TransferIntent.

        Raises:
            MalformedLogError: If the log does not match the event schema
        """
        if log.get("removed"):
            raise MalformedLogError("Log was removed by a chain reorganization")

        address = log.get("address")
        if not address or not Web3.is_address(address):
            raise MalformedLogError(f"Log has no valid emitter address: {address!r}")
        if Web3.to_checksum_address(address) != self.contract.address:
            raise MalformedLogError(f"Log emitted by unexpected contract {address}")

        topics = [_as_bytes(t) for t in log.get("topics") or []]
        if not topics or topics[0] != self.topic:
            raise MalformedLogError(f"Log is not a {self.event_name} event")
        if len(topics) != 1 + len(self.indexed_fields):
            raise MalformedLogError(
                f"Expected {1 + len(self.indexed_fields)} topics, got {len(topics)}"
            )

        try:
            values: dict[str, Any] = {}
            for (name, typ), topic in zip(self.indexed_fields, topics[1:]):
                values[name] = decode([typ], topic)[0]

            data = _as_bytes(log.get("data") or b"")
            data_types = [typ for _, typ in self.data_fields]
            for (name, _), value in zip(self.data_fields, decode(data_types, data)):
                values[name] = value
        except (DecodingError, OverflowError, ValueError) as e:
            raise MalformedLogError(f"Undecodable {self.event_name} log: {e}") from e

        block_number = log.get("blockNumber")
        log_index = log.get("logIndex")
        if not isinstance(block_number, int) or not isinstance(log_index, int):
            raise MalformedLogError("Log is missing blockNumber or logIndex")

        tx_hash = log.get("transactionHash")
        if tx_hash is None:
            raise MalformedLogError("Log is missing transactionHash")
        tx_hash = Web3.to_hex(_as_bytes(tx_hash))

        amount: int = values["amount"]
        if amount <= 0:
            raise MalformedLogError(f"Non-positive amount {amount}")

        recipient = Web3.to_checksum_address(values["to"])
        if recipient == ZERO_ADDRESS:
            raise MalformedLogError("Recipient is the zero address")

        sequence: int = values["nonce"]

        return TransferIntent(
            transfer_id=derive_transfer_id(self.source_chain_id, self.contract.address, sequence),
            source_chain_id=self.source_chain_id,
            source_contract=self.contract.address,
            source_sequence=sequence,
            sender=Web3.to_checksum_address(values["from"]),
            recipient=recipient,
            amount=amount,
            created_at=values["timestamp"],
            source_block_height=block_number,
            log_index=log_index,
            source_tx_hash=tx_hash,
            auxiliary_payload=bytes(values["targetChain"]),
            event_name=self.event_name,
        )

    def process_logs(self, logs: Iterable[Mapping[str, Any]]) -> list[TransferIntent]:
        """
        Decode a batch of logs, skipping malformed ones.

        Returns:
            Intents in ascending (block, logIndex) order, one per transfer id
        """
        intents: dict[str, TransferIntent] = {}
        for log in logs:
            try:
                intent = self.decode(log)
            except MalformedLogError as e:
                self.events_invalid += 1
                logger.warning(
                    f"Skipping malformed {self.event_name} log "
                    f"(block={log.get('blockNumber')}, logIndex={log.get('logIndex')}): {e}"
                )
                continue

            if intent.transfer_id in intents:
                self.events_duplicated += 1
                logger.debug(f"Duplicate log for transfer {intent.transfer_id[:10]}... in batch")
                continue

            intents[intent.transfer_id] = intent
            self.events_decoded += 1

        return sorted(intents.values(), key=lambda i: i.order_key)

    def get_metrics(self) -> dict[str, int]:
        """Get current decoding metrics."""
        return {
            "events_decoded": self.events_decoded,
            "events_invalid": self.events_invalid,
            "events_duplicated": self.events_duplicated,
        }

    def log_metrics(self) -> None:
        """Log current decoding metrics."""
        metrics = self.get_metrics()
        logger.info(
            f"EventProcessor Metrics ({self.event_name}): "
            f"Decoded={metrics['events_decoded']}, "
            f"Invalid={metrics['events_invalid']}, "
            f"Duplicates={metrics['events_duplicated']}"
        )
