"""
Exception hierarchy for the bridge relayer.

Errors are grouped by how the relayer reacts to them: transient infrastructure
errors are retried, malformed input is skipped, ledger conflicts are dropped,
destination rejections are recorded, and halt errors stop the process.
"""


class RelayerError(Exception):
    """Base class for all relayer errors."""


class TransientRpcError(RelayerError):
    """RPC timeout, connection reset or similar. Safe to retry."""


class MalformedLogError(RelayerError):
    """A source log does not match the expected event schema."""


class DestinationRejectedError(RelayerError):
    """The destination chain definitively refused a transaction."""

    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason


class LedgerError(RelayerError):
    """Base class for transfer ledger errors."""


class TransferNotFoundError(LedgerError):
    """No record exists for the requested transfer id."""


class TransitionConflictError(LedgerError):
    """Compare-and-swap failed because the persisted state moved on."""

    def __init__(self, transfer_id: str, expected: str, actual: str):
        super().__init__(
            f"Transfer {transfer_id} is {actual}, expected {expected}"
        )
        self.transfer_id = transfer_id
        self.expected = expected
        self.actual = actual


class InvalidTransitionError(LedgerError):
    """The requested edge is not part of the transfer state machine."""


class CheckpointError(LedgerError):
    """Base class for checkpoint errors."""


class MissingCheckpointError(CheckpointError):
    """No durable checkpoint and no explicit start height configured."""


class CheckpointRegressionError(CheckpointError):
    """Attempt to move a checkpoint backwards."""


class CheckpointCoverageError(CheckpointError):
    """Attempt to advance past intents that are not durably observed."""


class RelayerHaltError(RelayerError):
    """An invariant is threatened; the relayer must stop and alert."""


class ConservationViolationError(RelayerHaltError):
    """Executed value exceeds observed value."""
