"""
Shared data models for the bridge relayer.

This module contains the transfer intent decoded from the source chain, the
transfer state machine, and the records persisted by the transfer ledger.
"""

from dataclasses import dataclass, field
from enum import Enum

from web3 import Web3


class TransferState(str, Enum):
    """Lifecycle state of a transfer intent."""
    OBSERVED = "observed"
    FINALIZED = "finalized"
    SUBMITTED = "submitted"
    EXECUTED = "executed"
    FAILED = "failed"
    REJECTED_DUPLICATE = "rejected_duplicate"
    ORPHANED = "orphaned"


# Edges the pipeline may take on its own
PIPELINE_TRANSITIONS: dict[TransferState, frozenset[TransferState]] = {
    TransferState.OBSERVED: frozenset({TransferState.FINALIZED, TransferState.ORPHANED}),
    TransferState.FINALIZED: frozenset({TransferState.SUBMITTED, TransferState.REJECTED_DUPLICATE}),
    TransferState.SUBMITTED: frozenset({TransferState.EXECUTED, TransferState.FAILED}),
}

# Edges only an operator retry may take
OPERATOR_TRANSITIONS: dict[TransferState, TransferState] = {
    TransferState.FAILED: TransferState.FINALIZED,
    TransferState.ORPHANED: TransferState.OBSERVED,
}


def is_allowed_transition(
    from_state: TransferState, to_state: TransferState, operator: bool = False
) -> bool:
    """Check whether an edge belongs to the transfer state machine."""
    if to_state in PIPELINE_TRANSITIONS.get(from_state, frozenset()):
        return True
    return operator and OPERATOR_TRANSITIONS.get(from_state) == to_state


class ExecutionOutcome(str, Enum):
    """Result of one execution attempt on the destination chain."""
    EXECUTED = "executed"
    REVERTED = "reverted"
    DUPLICATE = "duplicate"
    CONFLICT = "conflict"
    PENDING = "pending"


def derive_transfer_id(chain_id: int, contract_address: str, sequence: int) -> str:
    """
    Derive the global transfer id from on-chain data only.

    keccak256(abi.encodePacked(uint256 chainId, address contract, uint256 sequence))

    Args:
        chain_id: Source chain id
        contract_address: Source bridge contract address
        sequence: Nonce emitted by the source bridge

    Returns:
        0x-prefixed bytes32 hex string
    """
    digest = Web3.solidity_keccak(
        ["uint256", "address", "uint256"],
        [chain_id, Web3.to_checksum_address(contract_address), sequence],
    )
    return Web3.to_hex(digest)


@dataclass(frozen=True, slots=True)
class TransferIntent:
    """Represents a transfer-initiated event decoded from the source chain.

    Attributes:
        transfer_id: Deterministic id derived from chain id, contract and nonce
        source_chain_id: Chain id of the source chain
        source_contract: Checksummed source bridge address
        source_sequence: Nonce assigned by the source bridge
        sender: Address that locked or burned the funds
        recipient: Address to credit on the destination chain
        amount: Amount in the smallest indivisible unit
        created_at: Timestamp emitted with the event
        source_block_height: Block containing the event
        log_index: Position of the log within the block
        source_tx_hash: Transaction that emitted the event
        auxiliary_payload: Opaque extension bytes (target chain selector)
        event_name: Source event name (Lock or Burn)
    """
    transfer_id: str
    source_chain_id: int
    source_contract: str
    source_sequence: int
    sender: str
    recipient: str
    amount: int
    created_at: int
    source_block_height: int
    log_index: int
    source_tx_hash: str
    auxiliary_payload: bytes = b""
    event_name: str = "Lock"

    def __str__(self) -> str:
        return (
            f"TransferIntent(id={self.transfer_id[:10]}..., "
            f"seq={self.source_sequence}, "
            f"block={self.source_block_height}, "
            f"amount={self.amount})"
        )

    @property
    def order_key(self) -> tuple[int, int]:
        """Ordering key within a single source chain."""
        return (self.source_block_height, self.log_index)

    @property
    def source_key(self) -> str:
        return checkpoint_key(self.source_chain_id, self.source_contract, self.event_name)


@dataclass(frozen=True, slots=True)
class ExecutionRecord:
    """Outcome of executing a transfer on the destination chain.

    Attributes:
        transfer_id: Transfer this record belongs to
        outcome: What happened to the attempt
        tx_hash: Destination transaction hash, if known
        nonce: Destination account nonce consumed, if known
        fee_paid: gasUsed * effectiveGasPrice in wei
        block_height: Destination block of inclusion
        reason: Revert reason or note
        submitted_at_height: Destination head when the attempt started
    """
    transfer_id: str
    outcome: ExecutionOutcome
    tx_hash: str | None = None
    nonce: int | None = None
    fee_paid: int | None = None
    block_height: int | None = None
    reason: str | None = None
    submitted_at_height: int | None = None


@dataclass(frozen=True, slots=True)
class TransferRecord:
    """A transfer intent together with its persisted lifecycle state."""
    intent: TransferIntent
    state: TransferState
    reason: str | None = None
    execution: ExecutionRecord | None = None
    updated_at: float = field(default=0.0)

    @property
    def transfer_id(self) -> str:
        return self.intent.transfer_id


@dataclass(frozen=True, slots=True)
class Checkpoint:
    """Highest source block fully recorded as at least observed."""
    key: str
    height: int


def checkpoint_key(chain_id: int, contract_address: str, event_name: str) -> str:
    """Checkpoint key for one source route."""
    return f"{chain_id}:{Web3.to_checksum_address(contract_address)}:{event_name}"
