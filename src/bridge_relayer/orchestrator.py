"""
Per-route orchestration of the transfer pipeline.

One orchestrator drives one route (source chain, contract and event to a
destination chain, contract and function): it records observed intents and
advances the route checkpoint, promotes intents that pass the finality gate,
hands finalized intents to the execution engine, and periodically reconciles
ambiguous submissions. All progress lives in the ledger, so a restarted
process resumes exactly where the last one stopped.
"""

import asyncio
import logging
from enum import Enum
from typing import Any

from .config import MonitoringConfig, RouteConfig
from .errors import (
    CheckpointError,
    ConservationViolationError,
    MissingCheckpointError,
    RelayerHaltError,
    TransientRpcError,
    TransitionConflictError,
)
from .event_source import EventSource
from .execution import ExecutionEngine
from .finality import FinalityGate
from .ledger import TransferLedger
from .models import TransferIntent, TransferRecord, TransferState, checkpoint_key
from .utils.chain_client import ChainClient
from .utils.retry import retry_with_backoff

logger = logging.getLogger(__name__)


class OrchestratorState(str, Enum):
    IDLE = "idle"
    POLLING = "polling"
    PROCESSING = "processing"
    RECOVERING = "recovering"


class TransferOrchestrator:
    """
    Drives one route from source events to destination executions.

    """

    def __init__(
        self,
        route: RouteConfig,
        source: EventSource,
        source_client: ChainClient,
        ledger: TransferLedger,
        gate: FinalityGate,
        engine: ExecutionEngine,
        monitoring: MonitoringConfig | None = None,
    ):
        """
        Initialize the orchestrator.

        Args:
            route: Route configuration (source chain id must be known)
            source: Event source for the route's source event
            source_client: Chain client of the source chain
            ledger: Shared transfer ledger
            gate: Finality policy of the source chain
            engine: Execution engine for the route's destination
            monitoring: Polling and submission settings
        """
        if route.source.chain_id is None:
            raise ValueError(f"Source chain id of {route.name} is not resolved")

        self.route = route
        self.source = source
        self.source_client = source_client
        self.ledger = ledger
        self.gate = gate
        self.engine = engine
        self.monitoring = monitoring or MonitoringConfig()

        self.key = checkpoint_key(
            route.source.chain_id, route.source.bridge_address, route.source_event
        )
        self.state = OrchestratorState.IDLE
        self.last_checkpoint: int | None = None
        self.orphaned_count = 0

    async def _retry(self, fn):
        return await retry_with_backoff(
            fn,
            max_retries=self.monitoring.retry_count,
            base_delay=self.monitoring.retry_base_delay,
        )

    async def _load_checkpoint(self) -> int:
        checkpoint = await self.ledger.get_checkpoint(self.key)
        if checkpoint is None:
            raise MissingCheckpointError(
                f"No checkpoint for {self.key}; run recovery first"
            )
        return checkpoint

    async def recover(self) -> None:
        """
        Resume the route after a (re)start.

        Raises:
            MissingCheckpointError: No checkpoint and no configured start height
        """
        self.state = OrchestratorState.RECOVERING
        try:
            checkpoint = await self.ledger.get_checkpoint(self.key)
            if checkpoint is None:
                start_height = self.route.source.start_height
                if start_height is None:
                    raise MissingCheckpointError(
                        f"No checkpoint for {self.key} and no start height configured "
                        f"for {self.route.source.name}"
                    )
                # The checkpoint is the last block already covered
                checkpoint = await self.ledger.initialize_checkpoint(
                    self.key, max(start_height - 1, 0)
                )

            logger.info(f"Recovering {self.route.name} from block {checkpoint}")

            head = await self._retry(self.source_client.current_height)
            while checkpoint < head:
                advanced = await self._poll_step(checkpoint)
                if advanced == checkpoint:
                    break
                checkpoint = advanced
            logger.info(f"Backlog of {self.route.name} drained up to block {checkpoint}")

            await self.process_pending()
            await self.reconcile_submitted()
        finally:
            self.state = OrchestratorState.IDLE

    async def _poll_step(self, checkpoint: int) -> int:
        """Record one bounded batch of intents and advance the checkpoint."""
        intents, new_height = await self._retry(
            lambda: self.source.poll_once(checkpoint, max_blocks=self.monitoring.max_block_range)
        )

        for intent in intents:
            await self.ledger.record_observed(intent)

        if new_height > checkpoint:
            await self.ledger.advance_checkpoint(
                self.key, new_height, [i.transfer_id for i in intents]
            )
        self.last_checkpoint = new_height
        return new_height

    async def tick(self) -> None:
        """One poll-and-process cycle."""
        self.state = OrchestratorState.POLLING
        try:
            checkpoint = await self._load_checkpoint()
            await self._poll_step(checkpoint)

            self.state = OrchestratorState.PROCESSING
            await self.process_pending()
        finally:
            self.state = OrchestratorState.IDLE

    async def process_pending(self) -> None:
        """Promote final OBSERVED intents and execute FINALIZED ones."""
        head = await self._retry(self.source_client.current_height)

        for record in await self.ledger.list_by_state(TransferState.OBSERVED, source_key=self.key):
            await self._promote(record, head)

        finalized = await self.ledger.list_by_state(TransferState.FINALIZED, source_key=self.key)
        if not finalized:
            return

        if self.monitoring.max_parallel_submissions == 1:
            for record in finalized:
                await self._execute(record.intent)
            return

        semaphore = asyncio.Semaphore(self.monitoring.max_parallel_submissions)

        async def bounded(intent: TransferIntent) -> None:
            async with semaphore:
                await self._execute(intent)

        await asyncio.gather(*(bounded(r.intent) for r in finalized))

    async def _promote(self, record: TransferRecord, head: int) -> None:
        intent = record.intent
        if not self.gate.is_final(intent, head):
            logger.debug(
                f"{intent} has {self.gate.confirmations(intent, head)}/"
                f"{self.gate.required_confirmations} confirmations"
            )
            return

        if self.monitoring.verify_source_receipts:
            receipt = await self._retry(
                lambda: self.source_client.get_receipt(intent.source_tx_hash)
            )
            if receipt is None or receipt["status"] != 1:
                await self._orphan(record, "source transaction no longer on chain")
                return
            if receipt["blockNumber"] != intent.source_block_height:
                # Re-included in a later block; wait for that block to be final
                if head - receipt["blockNumber"] < self.gate.required_confirmations:
                    logger.info(
                        f"{intent} moved to block {receipt['blockNumber']}, waiting for finality"
                    )
                    return

        try:
            await self.ledger.transition_to(
                intent.transfer_id, TransferState.OBSERVED, TransferState.FINALIZED
            )
        except TransitionConflictError as e:
            logger.debug(f"Promotion lost race: {e}")

    async def _orphan(self, record: TransferRecord, reason: str) -> None:
        try:
            await self.ledger.transition_to(
                record.transfer_id, TransferState.OBSERVED, TransferState.ORPHANED, reason=reason
            )
        except TransitionConflictError as e:
            logger.debug(f"Orphaning lost race: {e}")
            return
        self.orphaned_count += 1
        logger.warning(f"{record.intent} orphaned: {reason}")

    async def _execute(self, intent: TransferIntent) -> None:
        try:
            result = await self.engine.execute(intent)
        except TransientRpcError as e:
            logger.warning(f"Execution of {intent} deferred: {e}")
            return
        logger.debug(f"Execution of {intent}: {result.outcome.value}")

    async def reconcile_submitted(self) -> None:
        for record in await self.ledger.list_by_state(TransferState.SUBMITTED, source_key=self.key):
            try:
                await self.engine.reconcile_submitted(record)
            except TransientRpcError as e:
                logger.warning(f"Reconciliation of {record.intent} deferred: {e}")

    async def reconcile(self) -> dict[str, int]:
        """
        Re-scan recent source blocks, settle ambiguous submissions and audit.

        Raises:
            ConservationViolationError: Executed value exceeds observed value
        """
        checkpoint = await self._load_checkpoint()
        from_block = max(0, checkpoint - self.monitoring.rescan_depth)

        async for intent in self.source.scan(from_block, checkpoint):
            if await self.ledger.record_observed(intent):
                logger.warning(f"Rescan recovered missed {intent}")
                continue
            existing = await self.ledger.get(intent.transfer_id)
            if existing is not None and existing.state is TransferState.ORPHANED:
                logger.warning(
                    f"Orphaned {intent} is back on chain; retry it with "
                    f"`retry {intent.transfer_id}`"
                )

        await self.reconcile_submitted()

        if self.monitoring.verify_source_receipts:
            await self._audit_source_backing(from_block)

        report = await self.ledger.audit_conservation(self.key)
        logger.info(
            f"Audit {self.route.name}: observed={report['observed_total']} "
            f"finalized={report['finalized_total']} executed={report['executed_total']}"
        )
        return report

    async def _audit_source_backing(self, from_block: int) -> None:
        """
        Check that recently executed transfers are still backed on the source.

        Raises:
            ConservationViolationError: A source transaction behind an executed
                transfer was reorganized away
        """
        for record in await self.ledger.list_by_state(TransferState.EXECUTED, source_key=self.key):
            intent = record.intent
            if intent.source_block_height < from_block:
                continue
            receipt = await self._retry(
                lambda: self.source_client.get_receipt(intent.source_tx_hash)
            )
            if receipt is None or receipt["status"] != 1:
                logger.critical(f"Executed {intent} lost its source transaction")
                raise ConservationViolationError(
                    f"Transfer {intent.transfer_id} executed without a source "
                    f"transaction (reorganization deeper than "
                    f"{self.gate.required_confirmations} blocks)"
                )

    async def run(self, shutdown_event: asyncio.Event) -> None:
        """
        Tick every polling interval until ``shutdown_event`` is set.

        Raises:
            RelayerHaltError: An invariant is threatened
            CheckpointError: The ledger checkpoint is inconsistent
        """
        logger.info(
            f"Starting {self.route.name} every {self.monitoring.polling_interval} seconds"
        )
        while not shutdown_event.is_set():
            try:
                await self.tick()
            except (RelayerHaltError, CheckpointError):
                raise
            except Exception as e:
                logger.error(f"Error in {self.route.name} loop: {e}", exc_info=True)

            try:
                await asyncio.wait_for(
                    shutdown_event.wait(), timeout=self.monitoring.polling_interval
                )
            except asyncio.TimeoutError:
                pass

        logger.info(f"Stopped {self.route.name}")

    def get_status(self) -> dict[str, Any]:
        return {
            "route": self.route.name,
            "state": self.state.value,
            "checkpoint_key": self.key,
            "last_checkpoint": self.last_checkpoint,
            "orphaned": self.orphaned_count,
            "source": self.source.get_status(),
            "execution": self.engine.get_stats(),
        }
