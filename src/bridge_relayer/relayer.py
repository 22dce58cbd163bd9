"""
Bridge relayer implementation.

This module contains the relayer service that wires chain clients, the
transfer ledger and one orchestrator per route together, and manages their
lifecycle: recovery on startup, polling and reconciliation tasks, health
watching and graceful shutdown.
"""

import asyncio
import logging
from typing import Any

from .attestation import Attestor
from .config import ChainConfig, RelayerConfig, RouteConfig
from .errors import RelayerHaltError
from .event_processor import EventProcessor
from .event_source import EventSource
from .execution import ExecutionEngine, LocalSubmitter, RoflSubmitter
from .finality import FinalityGate
from .ledger import TransferLedger
from .orchestrator import TransferOrchestrator
from .utils.chain_client import ChainClient
from .utils.contract_utility import BridgeContract, ContractUtility
from .utils.rofl_utility import RoflUtility

logger = logging.getLogger(__name__)


class BridgeRelayer:
    """
    Main relayer service for the lock/mint and burn/unlock routes.

    This class focuses on coordination and lifecycle management, delegating
    transfer handling to one TransferOrchestrator per route.
    """

    def __init__(self, config: RelayerConfig):
        """
        Initialize the Bridge Relayer.

        Args:
            config: Relayer configuration
        """
        self.config = config
        self.local_mode = config.local_mode
        self.running = False

        self.clients: dict[str, ChainClient] = {
            chain.name: ChainClient(
                chain.rpc_url,
                name=chain.name,
                request_timeout=config.monitoring.request_timeout,
            )
            for chain in (config.chain1, config.chain2)
        }
        self.contract_util = ContractUtility()
        self.bridge_abi = self.contract_util.get_contract_abi("Bridge")
        self.rofl_util = None if self.local_mode else RoflUtility()
        self.ledger = TransferLedger(config.ledger_path)

        self.attestor: Attestor | None = None
        self.submitters: dict[str, LocalSubmitter | RoflSubmitter] = {}
        self.orchestrators: list[TransferOrchestrator] = []

        self.shutdown_event = asyncio.Event()

    @classmethod
    def from_env(cls, local_mode: bool = False) -> "BridgeRelayer":
        """
        Create a BridgeRelayer instance from environment variables.

        Raises:
            ValueError: If required environment variables are missing
        """
        config = RelayerConfig.from_env(local_mode=local_mode)
        config.log_config()
        return cls(config)

    async def initialize(self) -> None:
        """Resolve chain ids, load the signing key, open the ledger and build routes."""
        chain1_id = await self.clients[self.config.chain1.name].chain_id()
        chain2_id = await self.clients[self.config.chain2.name].chain_id()
        self.config = self.config.with_chain_ids(chain1_id, chain2_id)
        logger.info(
            f"Connected to {self.config.chain1.name} (chain {chain1_id}) and "
            f"{self.config.chain2.name} (chain {chain2_id})"
        )

        match self.rofl_util:
            case None:
                key = self.config.private_key
            case rofl_util:
                key = await rofl_util.fetch_key(self.config.rofl_key_id)
        self.attestor = Attestor(key)
        logger.info(f"Attester address: {self.attestor.address}")

        await self.ledger.open()

        self.orchestrators = [self._build_orchestrator(route) for route in self.config.routes()]
        await self._check_balances()

    def _submitter_for(self, chain: ChainConfig) -> LocalSubmitter | RoflSubmitter:
        # One submitter per destination chain so nonces are serialised per account
        if chain.name not in self.submitters:
            if self.rofl_util is None:
                self.submitters[chain.name] = LocalSubmitter(
                    self.clients[chain.name], self.config.private_key, chain.chain_id
                )
            else:
                self.submitters[chain.name] = RoflSubmitter(self.rofl_util)
        return self.submitters[chain.name]

    def _build_orchestrator(self, route: RouteConfig) -> TransferOrchestrator:
        monitoring = self.config.monitoring
        source_client = self.clients[route.source.name]
        target_client = self.clients[route.target.name]

        source_contract = BridgeContract(route.source.bridge_address, self.bridge_abi)
        target_contract = BridgeContract(route.target.bridge_address, self.bridge_abi)

        processor = EventProcessor(route.source.chain_id, source_contract, route.source_event)
        source = EventSource(source_client, processor, max_block_range=monitoring.max_block_range)

        engine = ExecutionEngine(
            client=target_client,
            contract=target_contract,
            ledger=self.ledger,
            attestor=self.attestor,
            submitter=self._submitter_for(route.target),
            dest_chain_id=route.target.chain_id,
            target_function=route.target_function,
            target_event=route.target_event,
            receipt_timeout=monitoring.receipt_timeout,
            retry_count=monitoring.retry_count,
            retry_base_delay=monitoring.retry_base_delay,
            max_block_range=monitoring.max_block_range,
        )

        logger.info(f"Route ready: {route.name}")
        return TransferOrchestrator(
            route=route,
            source=source,
            source_client=source_client,
            ledger=self.ledger,
            gate=FinalityGate(route.source.required_confirmations),
            engine=engine,
            monitoring=monitoring,
        )

    async def _check_balances(self) -> None:
        """Warn when a destination account cannot pay for gas."""
        for name, submitter in self.submitters.items():
            if not submitter.provides_tx_hash:
                logger.debug(f"Skipping balance check on {name} (ROFL-managed account)")
                continue
            balance = await self.clients[name].get_balance(submitter.address)
            if balance == 0:
                logger.warning(f"Relayer account {submitter.address} has no funds on {name}")
            else:
                logger.info(f"Relayer balance on {name}: {balance} wei")

    async def _reconcile_loop(self) -> None:
        """Reconcile every route each reconcile interval."""
        interval = self.config.monitoring.reconcile_interval
        while not self.shutdown_event.is_set():
            try:
                await asyncio.wait_for(self.shutdown_event.wait(), timeout=interval)
                break
            except asyncio.TimeoutError:
                pass

            for orchestrator in self.orchestrators:
                try:
                    await orchestrator.reconcile()
                except RelayerHaltError:
                    raise
                except Exception as e:
                    logger.error(
                        f"Reconciliation of {orchestrator.route.name} failed: {e}", exc_info=True
                    )

    async def _periodic_status_logger(self) -> None:
        """Log status periodically while running."""
        interval = self.config.monitoring.status_log_interval
        while self.running:
            try:
                await asyncio.wait_for(self.shutdown_event.wait(), timeout=interval)
                break
            except asyncio.TimeoutError:
                pass
            counts = await self.ledger.count_by_state()
            summary = ", ".join(f"{state}={n}" for state, n in counts.items() if n)
            logger.info(f"Status: {summary or 'no transfers'}")
            for orchestrator in self.orchestrators:
                stats = orchestrator.engine.get_stats()
                logger.info(
                    f"  {orchestrator.route.name}: checkpoint={orchestrator.last_checkpoint}, "
                    f"executed={stats['executed']}, failed={stats['failed']}, "
                    f"duplicates={stats['duplicates']}, pending={stats['pending']}"
                )
                orchestrator.source.processor.log_metrics()

    async def health_check(self) -> dict[str, Any]:
        """Connectivity and pipeline snapshot for monitoring tooling."""
        return {
            "running": self.running,
            "chains": {
                name: await client.is_connected() for name, client in self.clients.items()
            },
            "routes": [orchestrator.get_status() for orchestrator in self.orchestrators],
            "ledger": await self.ledger.count_by_state() if self.ledger.connection else None,
        }

    async def _check_task_health(self, tasks: dict[str, asyncio.Task]) -> BaseException | None:
        """Return the failure of a finished critical task, if any."""
        for name, task in tasks.items():
            if task.done() and name != "status":
                if task.cancelled():
                    return RelayerHaltError(f"{name} task was cancelled")
                error = task.exception()
                if error is not None:
                    logger.critical(f"{name} task failed: {error}", exc_info=error)
                    return error
                if not self.shutdown_event.is_set():
                    return RelayerHaltError(f"{name} task exited unexpectedly")
        return None

    async def _cleanup_tasks(self, tasks: dict[str, asyncio.Task]) -> None:
        """Give loops the shutdown grace period, then cancel what is left."""
        self.shutdown_event.set()
        if not tasks:
            return

        pending = [task for task in tasks.values() if not task.done()]
        if pending:
            _, pending = await asyncio.wait(
                pending, timeout=self.config.monitoring.shutdown_grace
            )
        for task in pending:
            task.cancel()
        await asyncio.gather(*tasks.values(), return_exceptions=True)

    async def run(self) -> None:
        """
        Main loop of the relayer service.

        Raises:
            RelayerHaltError: A critical task failed; the relayer stopped
        """
        self.running = True
        logger.info("Bridge Relayer starting...")

        tasks: dict[str, asyncio.Task] = {}
        failure: BaseException | None = None
        try:
            await self.initialize()

            for orchestrator in self.orchestrators:
                await orchestrator.recover()

            tasks = {
                orchestrator.route.name: asyncio.create_task(
                    orchestrator.run(self.shutdown_event)
                )
                for orchestrator in self.orchestrators
            }
            tasks["reconcile"] = asyncio.create_task(self._reconcile_loop())
            tasks["status"] = asyncio.create_task(self._periodic_status_logger())

            logger.info("Relaying started, waiting for transfers...")

            while self.running:
                try:
                    await asyncio.wait_for(self.shutdown_event.wait(), timeout=1.0)
                    break
                except asyncio.TimeoutError:
                    pass

                failure = await self._check_task_health(tasks)
                if failure is not None:
                    logger.critical("Critical task failure, halting relayer")
                    break

        except RelayerHaltError as e:
            logger.critical(f"Relayer halted: {e}")
            raise
        except Exception as e:
            logger.error(f"Error in main loop: {e}", exc_info=True)
            raise
        finally:
            self.running = False
            await self._cleanup_tasks(tasks)
            await self.ledger.close()
            logger.info("Bridge Relayer stopped")

        if failure is not None:
            raise RelayerHaltError(f"Critical task failure: {failure}") from failure

    def stop(self) -> None:
        """Stop the relayer service."""
        logger.info("Shutdown requested")
        self.running = False
        self.shutdown_event.set()
