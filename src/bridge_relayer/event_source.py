"""
Polling event source for transfer-initiated events.

The event source is a pure projection of on-chain log state: scanning the same
block range twice yields the same intents with the same transfer ids. It keeps
no cursor of its own; the caller passes the durable checkpoint in and decides
when to persist the returned height.
"""

import logging
from collections.abc import AsyncIterator
from typing import Any

from .event_processor import EventProcessor
from .models import TransferIntent
from .utils.chain_client import ChainClient


class EventSource:
    """
    Reads transfer-initiated events from one source bridge via eth_getLogs.

    """

    def __init__(
        self,
        client: ChainClient,
        processor: EventProcessor,
        max_block_range: int = 1000,
    ):
        """
        Initialize the event source.

        Args:
            client: Chain client for the source chain
            processor: Decoder for the source bridge's event
            max_block_range: Largest block span requested in one eth_getLogs call
        """
        self.client = client
        self.processor = processor
        self.max_block_range = max_block_range
        self.contract_address = processor.contract.address
        self.event_name = processor.event_name

        self.logger = logging.getLogger(f"{__name__}.{self.__class__.__name__}")

    async def scan(self, from_block: int, to_block: int) -> AsyncIterator[TransferIntent]:
        """
        Yield intents in the inclusive range, ascending by (block, logIndex).

        Args:
            from_block: First block to scan
            to_block: Last block to scan
        """
        start = max(0, from_block)
        while start <= to_block:
            end = min(start + self.max_block_range - 1, to_block)

            logs = await self.client.get_logs(
                from_block=start,
                to_block=end,
                address=self.contract_address,
                topics=[self.processor.topic],
            )

            intents = self.processor.process_logs(logs)
            if intents:
                self.logger.info(
                    f"Found {len(intents)} {self.event_name} events in blocks {start}-{end}"
                )
            for intent in intents:
                yield intent

            start = end + 1

    async def poll_once(
        self, last_checkpoint: int, max_blocks: int | None = None
    ) -> tuple[list[TransferIntent], int]:
        """
        Collect intents emitted after ``last_checkpoint``.

        Args:
            last_checkpoint: Highest block already fully recorded
            max_blocks: Cap on the number of blocks covered by this call

        Returns:
            (intents, new_height) where new_height is the last block covered
        """
        head = await self.client.current_height()
        if head <= last_checkpoint:
            return [], last_checkpoint

        to_block = head
        if max_blocks is not None:
            to_block = min(head, last_checkpoint + max_blocks)

        intents = [intent async for intent in self.scan(last_checkpoint + 1, to_block)]
        return intents, to_block

    def get_status(self) -> dict[str, Any]:
        """
        Get current status of the event source.

        Returns:
            Dictionary with status information
        """
        return {
            "contract_address": self.contract_address,
            "event_name": self.event_name,
            "chain": self.client.name,
            **self.processor.get_metrics(),
        }
