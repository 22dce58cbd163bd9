"""
Configuration module for the bridge relayer.

This module provides type-safe configuration dataclasses with validation.
Configuration is loaded from environment variables with sensible defaults
where a default cannot lose transfers. Start heights are never defaulted.
"""

import logging
import os
from dataclasses import dataclass, field
from urllib.parse import urlparse

from web3 import Web3

logger = logging.getLogger(__name__)


def _env_int(name: str, default: int | None = None) -> int | None:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {raw!r}") from None


def _env_bool(name: str, default: bool) -> bool:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


@dataclass(frozen=True, slots=True)
class ChainConfig:
    """Configuration for one chain and its bridge contract.

    Attributes:
        name: Human readable chain name
        rpc_url: HTTP(S) RPC endpoint
        bridge_address: Checksummed bridge contract address
        chain_id: Expected chain id (verified against the RPC on startup)
        required_confirmations: Confirmation depth before an event is final
        start_height: First block to scan when no checkpoint exists
    """

    name: str
    rpc_url: str
    bridge_address: str
    chain_id: int | None = None
    required_confirmations: int = 12
    start_height: int | None = None

    def __post_init__(self) -> None:
        """Validate chain configuration."""
        if not self.rpc_url:
            raise ValueError(f"RPC URL is required for {self.name}")

        parsed = urlparse(self.rpc_url)
        if parsed.scheme not in ("http", "https"):
            raise ValueError(
                f"Invalid RPC URL scheme for {self.name}: {parsed.scheme}. "
                "Expected http or https"
            )

        if not self.bridge_address:
            raise ValueError(f"Bridge address is required for {self.name}")

        if not Web3.is_address(self.bridge_address):
            raise ValueError(
                f"Invalid bridge address for {self.name}: {self.bridge_address}"
            )

        checksummed = Web3.to_checksum_address(self.bridge_address)
        if checksummed != self.bridge_address:
            object.__setattr__(self, "bridge_address", checksummed)

        if self.required_confirmations < 0:
            raise ValueError(
                f"Required confirmations must be non-negative, got {self.required_confirmations}"
            )

        if self.start_height is not None and self.start_height < 0:
            raise ValueError(f"Start height must be non-negative, got {self.start_height}")


@dataclass(frozen=True, slots=True)
class MonitoringConfig:
    """Configuration for polling, retries and submission."""
    polling_interval: int = 12  # seconds between polls
    reconcile_interval: int = 300  # seconds between reconciliation passes
    request_timeout: int = 30  # per RPC call
    receipt_timeout: int = 120  # wait for inclusion before declaring ambiguity
    retry_count: int = 3
    retry_base_delay: float = 1.0  # seconds, doubled per attempt
    max_block_range: int = 1000  # blocks per eth_getLogs call
    rescan_depth: int = 64  # blocks below the checkpoint re-scanned on reconcile
    max_parallel_submissions: int = 1
    verify_source_receipts: bool = True
    status_log_interval: int = 60
    shutdown_grace: int = 30

    def __post_init__(self) -> None:
        """Validate monitoring configuration."""
        if self.polling_interval <= 0:
            raise ValueError(f"Polling interval must be positive, got {self.polling_interval}")
        if self.polling_interval > 300:
            raise ValueError(f"Polling interval too long (max 300s), got {self.polling_interval}")

        if self.reconcile_interval < self.polling_interval:
            raise ValueError(
                f"Reconcile interval ({self.reconcile_interval}s) must not be shorter "
                f"than the polling interval ({self.polling_interval}s)"
            )

        if self.request_timeout <= 0:
            raise ValueError(f"Request timeout must be positive, got {self.request_timeout}")
        if self.request_timeout > 120:
            raise ValueError(f"Request timeout too long (max 120s), got {self.request_timeout}")

        if self.receipt_timeout <= 0:
            raise ValueError(f"Receipt timeout must be positive, got {self.receipt_timeout}")

        if self.retry_count < 0:
            raise ValueError(f"Retry count must be non-negative, got {self.retry_count}")
        if self.retry_count > 10:
            raise ValueError(f"Retry count too high (max 10), got {self.retry_count}")

        if self.retry_base_delay < 0:
            raise ValueError(f"Retry base delay must be non-negative, got {self.retry_base_delay}")

        if not 1 <= self.max_block_range <= 10_000:
            raise ValueError(f"Max block range must be in [1, 10000], got {self.max_block_range}")

        if self.rescan_depth < 0:
            raise ValueError(f"Rescan depth must be non-negative, got {self.rescan_depth}")

        if not 1 <= self.max_parallel_submissions <= 64:
            raise ValueError(
                f"Max parallel submissions must be in [1, 64], got {self.max_parallel_submissions}"
            )


@dataclass(frozen=True, slots=True)
class RouteConfig:
    """One direction of the bridge: a source event mapped to a destination call."""
    source: ChainConfig
    target: ChainConfig
    source_event: str
    target_function: str
    target_event: str

    @property
    def name(self) -> str:
        return f"{self.source.name}:{self.source_event} -> {self.target.name}:{self.target_function}"


@dataclass(frozen=True, slots=True)
class RelayerConfig:
    """Main configuration for the bridge relayer.

    Attributes:
        chain1: Chain where native funds are locked
        chain2: Chain where wrapped funds are minted
        monitoring: Polling and submission settings
        ledger_path: SQLite file backing the transfer ledger
        enable_return_route: Also relay Burn on chain2 to unlock on chain1
        local_mode: Sign locally instead of through the ROFL appd
        private_key: Relayer key (local mode only)
        rofl_key_id: Key id requested from the ROFL appd
    """

    chain1: ChainConfig
    chain2: ChainConfig
    monitoring: MonitoringConfig = field(default_factory=MonitoringConfig)
    ledger_path: str = "data/ledger.sqlite3"
    enable_return_route: bool = True
    local_mode: bool = False
    private_key: str | None = None
    rofl_key_id: str = "bridge-relayer"

    def __post_init__(self) -> None:
        """Validate relayer configuration."""
        if self.chain1.chain_id is not None and self.chain1.chain_id == self.chain2.chain_id:
            raise ValueError("chain1 and chain2 must have different chain ids")

        depth = max(self.chain1.required_confirmations, self.chain2.required_confirmations)
        if self.monitoring.rescan_depth < depth:
            raise ValueError(
                f"Rescan depth ({self.monitoring.rescan_depth}) must cover the "
                f"confirmation depth ({depth})"
            )

        if not self.ledger_path:
            raise ValueError("Ledger path is required (LEDGER_PATH)")

        if self.local_mode and not self.private_key:
            raise ValueError(
                "Local mode requires RELAYER_PRIVATE_KEY environment variable"
            )

        if self.private_key:
            key = self.private_key
            if key.startswith("0x"):
                key = key[2:]

            if len(key) != 64:
                raise ValueError(
                    f"Invalid private key length. Expected 64 hex characters, got {len(key)}"
                )

            try:
                int(key, 16)
            except ValueError:
                raise ValueError(
                    "Invalid private key format. Must be hexadecimal"
                ) from None

    @classmethod
    def from_env(cls, local_mode: bool = False) -> "RelayerConfig":
        """
        Load configuration from environment variables.

        Args:
            local_mode: Sign with RELAYER_PRIVATE_KEY instead of a ROFL key

        Returns:
            RelayerConfig: Validated configuration

        Raises:
            ValueError: If required environment variables are missing or invalid
        """
        chains = []
        for prefix, default_name in (("CHAIN1", "chain1"), ("CHAIN2", "chain2")):
            rpc_url = os.environ.get(f"{prefix}_RPC", "")
            if not rpc_url:
                raise ValueError(
                    f"{prefix}_RPC environment variable is required. "
                    "Example: http://127.0.0.1:8545"
                )

            bridge_address = os.environ.get(f"{prefix}_BRIDGE_ADDRESS", "")
            if not bridge_address:
                raise ValueError(
                    f"{prefix}_BRIDGE_ADDRESS environment variable is required. "
                    "This is the bridge contract deployed on that chain"
                )

            chains.append(ChainConfig(
                name=os.environ.get(f"{prefix}_NAME", default_name),
                rpc_url=rpc_url,
                bridge_address=bridge_address,
                chain_id=_env_int(f"{prefix}_CHAIN_ID"),
                required_confirmations=_env_int(f"{prefix}_CONFIRMATIONS", 12),
                start_height=_env_int(f"{prefix}_START_HEIGHT"),
            ))

        monitoring = MonitoringConfig(
            polling_interval=_env_int("POLLING_INTERVAL", 12),
            reconcile_interval=_env_int("RECONCILE_INTERVAL", 300),
            request_timeout=_env_int("REQUEST_TIMEOUT", 30),
            receipt_timeout=_env_int("RECEIPT_TIMEOUT", 120),
            retry_count=_env_int("RETRY_COUNT", 3),
            retry_base_delay=float(os.environ.get("RETRY_BASE_DELAY", "1.0")),
            max_block_range=_env_int("MAX_BLOCK_RANGE", 1000),
            rescan_depth=_env_int("RESCAN_DEPTH", 64),
            max_parallel_submissions=_env_int("MAX_PARALLEL_SUBMISSIONS", 1),
            verify_source_receipts=_env_bool("VERIFY_SOURCE_RECEIPTS", True),
            status_log_interval=_env_int("STATUS_LOG_INTERVAL", 60),
            shutdown_grace=_env_int("SHUTDOWN_GRACE", 30),
        )

        private_key = os.environ.get("RELAYER_PRIVATE_KEY") if local_mode else None

        return cls(
            chain1=chains[0],
            chain2=chains[1],
            monitoring=monitoring,
            ledger_path=os.environ.get("LEDGER_PATH", "data/ledger.sqlite3"),
            enable_return_route=_env_bool("ENABLE_RETURN_ROUTE", True),
            local_mode=local_mode,
            private_key=private_key,
            rofl_key_id=os.environ.get("ROFL_KEY_ID", "bridge-relayer"),
        )

    def routes(self) -> list[RouteConfig]:
        """Routes relayed by this process, lock/mint first."""
        routes = [
            RouteConfig(
                source=self.chain1,
                target=self.chain2,
                source_event="Lock",
                target_function="mint",
                target_event="Mint",
            )
        ]
        if self.enable_return_route:
            routes.append(RouteConfig(
                source=self.chain2,
                target=self.chain1,
                source_event="Burn",
                target_function="unlock",
                target_event="Unlock",
            ))
        return routes

    def log_config(self) -> None:
        """Log the configuration, hiding secrets."""
        logger.info("=" * 60)
        logger.info("Bridge Relayer Configuration")
        logger.info("=" * 60)

        for chain in (self.chain1, self.chain2):
            logger.info(f"{chain.name}:")
            logger.info(f"  RPC URL: {chain.rpc_url}")
            logger.info(f"  Bridge: {chain.bridge_address}")
            if chain.chain_id is not None:
                logger.info(f"  Chain ID: {chain.chain_id}")
            logger.info(f"  Confirmations: {chain.required_confirmations}")
            if chain.start_height is not None:
                logger.info(f"  Start Height Override: {chain.start_height}")

        logger.info("Routes:")
        for route in self.routes():
            logger.info(f"  {route.name}")

        logger.info("Monitoring Settings:")
        logger.info(f"  Polling Interval: {self.monitoring.polling_interval} seconds")
        logger.info(f"  Reconcile Interval: {self.monitoring.reconcile_interval} seconds")
        logger.info(f"  Request Timeout: {self.monitoring.request_timeout} seconds")
        logger.info(f"  Receipt Timeout: {self.monitoring.receipt_timeout} seconds")
        logger.info(f"  Retry Count: {self.monitoring.retry_count}")
        logger.info(f"  Max Block Range: {self.monitoring.max_block_range}")
        logger.info(f"  Parallel Submissions: {self.monitoring.max_parallel_submissions}")

        logger.info(f"Ledger: {self.ledger_path}")
        logger.info(f"Mode: {'LOCAL' if self.local_mode else 'ROFL'}")
        logger.info(f"Private Key: {'[SET]' if self.private_key else '[NOT SET]'}")
        logger.info("=" * 60)

    def with_chain_ids(self, chain1_id: int, chain2_id: int) -> "RelayerConfig":
        """
        Create a new config with chain ids filled in from the RPC endpoints.

        Raises:
            ValueError: If a configured chain id disagrees with its RPC
        """
        updated = []
        for chain, actual in ((self.chain1, chain1_id), (self.chain2, chain2_id)):
            if chain.chain_id is not None and chain.chain_id != actual:
                raise ValueError(
                    f"{chain.name} RPC reports chain id {actual}, "
                    f"configured {chain.chain_id}"
                )
            updated.append(ChainConfig(
                name=chain.name,
                rpc_url=chain.rpc_url,
                bridge_address=chain.bridge_address,
                chain_id=actual,
                required_confirmations=chain.required_confirmations,
                start_height=chain.start_height,
            ))

        return RelayerConfig(
            chain1=updated[0],
            chain2=updated[1],
            monitoring=self.monitoring,
            ledger_path=self.ledger_path,
            enable_return_route=self.enable_return_route,
            local_mode=self.local_mode,
            private_key=self.private_key,
            rofl_key_id=self.rofl_key_id,
        )
