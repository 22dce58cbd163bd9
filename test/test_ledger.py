"""Tests for the SQLite TransferLedger."""

import asyncio

import pytest

from bridge_relayer.errors import (
    CheckpointCoverageError,
    CheckpointError,
    CheckpointRegressionError,
    ConservationViolationError,
    InvalidTransitionError,
    TransferNotFoundError,
    TransitionConflictError,
)
from bridge_relayer.ledger import TransferLedger
from bridge_relayer.models import Checkpoint, ExecutionOutcome, ExecutionRecord, TransferState


@pytest.fixture
def intents(processor, source_chain):
    logs = [
        source_chain.add_transfer_event(sequence=1, block=12, log_index=0, amount=100),
        source_chain.add_transfer_event(sequence=2, block=10, log_index=1, amount=200),
        source_chain.add_transfer_event(sequence=3, block=10, log_index=0, amount=2**100),
    ]
    return [processor.decode(log) for log in logs]


class TestTransfers:
    """Observed records and compare-and-swap transitions."""

    @pytest.mark.asyncio
    async def test_record_observed_is_idempotent(self, ledger, intents):
        """Test that recording the same intent twice is a no-op."""
        assert await ledger.record_observed(intents[0]) is True
        assert await ledger.record_observed(intents[0]) is False

        record = await ledger.get(intents[0].transfer_id)
        assert record.state is TransferState.OBSERVED
        assert record.intent == intents[0]
        assert len(await ledger.history(intents[0].transfer_id)) == 1

    @pytest.mark.asyncio
    async def test_large_amount_round_trips(self, ledger, intents):
        """Test that amounts beyond 64 bits are stored exactly."""
        await ledger.record_observed(intents[2])

        record = await ledger.get(intents[2].transfer_id)
        assert record.intent.amount == 2**100

    @pytest.mark.asyncio
    async def test_get_unknown(self, ledger):
        """Test that an unknown transfer id returns None."""
        assert await ledger.get("0x" + "00" * 32) is None

    @pytest.mark.asyncio
    async def test_transition_compare_and_swap(self, ledger, intents):
        """Test that a transition only applies from the expected state."""
        transfer_id = intents[0].transfer_id
        await ledger.record_observed(intents[0])

        await ledger.transition_to(transfer_id, TransferState.OBSERVED, TransferState.FINALIZED)

        with pytest.raises(TransitionConflictError) as excinfo:
            await ledger.transition_to(
                transfer_id, TransferState.OBSERVED, TransferState.ORPHANED
            )
        assert excinfo.value.actual == TransferState.FINALIZED.value
        assert (await ledger.get(transfer_id)).state is TransferState.FINALIZED

    @pytest.mark.asyncio
    async def test_transition_unknown_transfer(self, ledger):
        """Test that transitioning a missing transfer raises TransferNotFoundError."""
        with pytest.raises(TransferNotFoundError):
            await ledger.transition_to(
                "0x" + "ab" * 32, TransferState.OBSERVED, TransferState.FINALIZED
            )

    @pytest.mark.asyncio
    async def test_transition_outside_state_machine(self, ledger, intents):
        """Test that edges outside the state machine are refused."""
        await ledger.record_observed(intents[0])

        with pytest.raises(InvalidTransitionError):
            await ledger.transition_to(
                intents[0].transfer_id, TransferState.OBSERVED, TransferState.EXECUTED
            )
        with pytest.raises(InvalidTransitionError):
            await ledger.transition_to(
                intents[0].transfer_id, TransferState.EXECUTED, TransferState.SUBMITTED
            )

    @pytest.mark.asyncio
    async def test_concurrent_claims_have_one_winner(self, ledger, intents):
        """Test that racing FINALIZED -> SUBMITTED swaps succeed exactly once."""
        transfer_id = intents[0].transfer_id
        await ledger.record_observed(intents[0])
        await ledger.transition_to(transfer_id, TransferState.OBSERVED, TransferState.FINALIZED)

        results = await asyncio.gather(
            *(
                ledger.transition_to(
                    transfer_id, TransferState.FINALIZED, TransferState.SUBMITTED
                )
                for _ in range(5)
            ),
            return_exceptions=True,
        )

        assert results.count(None) == 1
        assert all(isinstance(r, TransitionConflictError) for r in results if r is not None)

    @pytest.mark.asyncio
    async def test_claims_across_connections(self, ledger, ledger_path, intents):
        """Test that a second process sharing the file loses the swap."""
        transfer_id = intents[0].transfer_id
        await ledger.record_observed(intents[0])
        await ledger.transition_to(transfer_id, TransferState.OBSERVED, TransferState.FINALIZED)

        other = await TransferLedger.create(ledger_path)
        try:
            await other.transition_to(
                transfer_id, TransferState.FINALIZED, TransferState.SUBMITTED
            )
            with pytest.raises(TransitionConflictError):
                await ledger.transition_to(
                    transfer_id, TransferState.FINALIZED, TransferState.SUBMITTED
                )
        finally:
            await other.close()

    @pytest.mark.asyncio
    async def test_execution_record_persisted(self, ledger, intents):
        """Test that submission and execution details are stored."""
        transfer_id = intents[0].transfer_id
        await ledger.record_observed(intents[0])
        await ledger.transition_to(transfer_id, TransferState.OBSERVED, TransferState.FINALIZED)
        await ledger.transition_to(
            transfer_id,
            TransferState.FINALIZED,
            TransferState.SUBMITTED,
            record=ExecutionRecord(transfer_id, ExecutionOutcome.PENDING, submitted_at_height=77),
        )
        await ledger.record_submission(transfer_id, "0x" + "cd" * 32, 4, 77)
        await ledger.transition_to(
            transfer_id,
            TransferState.SUBMITTED,
            TransferState.EXECUTED,
            record=ExecutionRecord(
                transfer_id, ExecutionOutcome.EXECUTED, fee_paid=10**15, block_height=80
            ),
        )

        execution = (await ledger.get(transfer_id)).execution
        assert execution.outcome is ExecutionOutcome.EXECUTED
        assert execution.tx_hash == "0x" + "cd" * 32
        assert execution.nonce == 4
        assert execution.submitted_at_height == 77
        assert execution.fee_paid == 10**15
        assert execution.block_height == 80

        history = await ledger.history(transfer_id)
        assert [h["to_state"] for h in history] == [
            "observed", "finalized", "submitted", "executed",
        ]

    @pytest.mark.asyncio
    async def test_record_submission_requires_submitted(self, ledger, intents):
        """Test that the write-ahead record needs a claimed transfer."""
        await ledger.record_observed(intents[0])

        with pytest.raises(TransitionConflictError):
            await ledger.record_submission(intents[0].transfer_id, "0x" + "cd" * 32, 0, 1)

    @pytest.mark.asyncio
    async def test_list_by_state_in_source_order(self, ledger, intents):
        """Test that listings follow (block, logIndex)."""
        for intent in intents:
            await ledger.record_observed(intent)

        records = await ledger.list_by_state(TransferState.OBSERVED)

        assert [r.intent.source_sequence for r in records] == [3, 2, 1]
        assert await ledger.list_by_state(TransferState.OBSERVED, source_key="other") == []
        assert len(await ledger.list_by_state(
            TransferState.OBSERVED, source_key=intents[0].source_key, limit=2
        )) == 2

    @pytest.mark.asyncio
    async def test_state_survives_reopen(self, ledger_path, intents):
        """Test that committed transitions are visible after a restart."""
        first = await TransferLedger.create(ledger_path)
        await first.record_observed(intents[0])
        await first.transition_to(
            intents[0].transfer_id, TransferState.OBSERVED, TransferState.FINALIZED
        )
        await first.close()

        second = await TransferLedger.create(ledger_path)
        try:
            record = await second.get(intents[0].transfer_id)
            assert record.state is TransferState.FINALIZED
        finally:
            await second.close()


class TestOperatorRetry:
    """Manual retry of failed and orphaned transfers."""

    @pytest.mark.asyncio
    async def test_retry_failed(self, ledger, intents):
        """Test that a failed transfer goes back to FINALIZED without its old attempt."""
        transfer_id = intents[0].transfer_id
        await ledger.record_observed(intents[0])
        await ledger.transition_to(transfer_id, TransferState.OBSERVED, TransferState.FINALIZED)
        await ledger.transition_to(transfer_id, TransferState.FINALIZED, TransferState.SUBMITTED)
        await ledger.record_submission(transfer_id, "0x" + "cd" * 32, 3, 50)
        await ledger.transition_to(
            transfer_id, TransferState.SUBMITTED, TransferState.FAILED, reason="dropped"
        )

        assert await ledger.retry(transfer_id) is TransferState.FINALIZED

        record = await ledger.get(transfer_id)
        assert record.state is TransferState.FINALIZED
        assert record.execution is None
        assert "dropped" in record.reason

    @pytest.mark.asyncio
    async def test_retry_orphaned(self, ledger, intents):
        """Test that an orphaned transfer goes back to OBSERVED."""
        transfer_id = intents[0].transfer_id
        await ledger.record_observed(intents[0])
        await ledger.transition_to(transfer_id, TransferState.OBSERVED, TransferState.ORPHANED)

        assert await ledger.retry(transfer_id) is TransferState.OBSERVED

    @pytest.mark.asyncio
    async def test_retry_refused_for_other_states(self, ledger, intents):
        """Test that only failed or orphaned transfers can be retried."""
        await ledger.record_observed(intents[0])

        with pytest.raises(InvalidTransitionError):
            await ledger.retry(intents[0].transfer_id)
        with pytest.raises(TransferNotFoundError):
            await ledger.retry("0x" + "00" * 32)

    @pytest.mark.asyncio
    async def test_operator_edges_not_available_to_pipeline(self, ledger, intents):
        """Test that FAILED -> FINALIZED requires the operator flag."""
        transfer_id = intents[0].transfer_id
        await ledger.record_observed(intents[0])
        await ledger.transition_to(transfer_id, TransferState.OBSERVED, TransferState.ORPHANED)

        with pytest.raises(InvalidTransitionError):
            await ledger.transition_to(
                transfer_id, TransferState.ORPHANED, TransferState.OBSERVED
            )


class TestCheckpoints:
    """Durable per-route checkpoints."""

    @pytest.mark.asyncio
    async def test_initialize_once(self, ledger):
        """Test that initialization never overwrites an existing checkpoint."""
        assert await ledger.get_checkpoint("route") is None
        assert await ledger.initialize_checkpoint("route", 10) == 10
        assert await ledger.initialize_checkpoint("route", 3) == 10

    @pytest.mark.asyncio
    async def test_advance_and_regress(self, ledger):
        """Test that checkpoints move forward only."""
        await ledger.initialize_checkpoint("route", 10)
        await ledger.advance_checkpoint("route", 20)
        await ledger.advance_checkpoint("route", 20)

        with pytest.raises(CheckpointRegressionError):
            await ledger.advance_checkpoint("route", 19)
        assert await ledger.get_checkpoint("route") == 20

    @pytest.mark.asyncio
    async def test_advance_requires_observed_coverage(self, ledger, intents):
        """Test that a checkpoint cannot pass intents that were not recorded."""
        await ledger.initialize_checkpoint("route", 0)
        await ledger.record_observed(intents[1])

        with pytest.raises(CheckpointCoverageError):
            await ledger.advance_checkpoint(
                "route", 12, [intents[0].transfer_id, intents[1].transfer_id]
            )
        assert await ledger.get_checkpoint("route") == 0

        await ledger.record_observed(intents[0])
        await ledger.advance_checkpoint(
            "route", 12, [intents[0].transfer_id, intents[1].transfer_id]
        )
        assert await ledger.get_checkpoint("route") == 12

    @pytest.mark.asyncio
    async def test_advance_uninitialized(self, ledger):
        """Test that advancing an unknown checkpoint is an error."""
        with pytest.raises(CheckpointError):
            await ledger.advance_checkpoint("missing", 5)

    @pytest.mark.asyncio
    async def test_list_checkpoints(self, ledger):
        await ledger.initialize_checkpoint("b", 7)
        await ledger.initialize_checkpoint("a", 3)

        assert await ledger.get_checkpoints() == [Checkpoint("a", 3), Checkpoint("b", 7)]


class TestAudit:
    """Conservation audit and status report."""

    @pytest.mark.asyncio
    async def test_conservation_totals(self, ledger, intents):
        """Test executed and observed totals, excluding orphaned intents."""
        for intent in intents:
            await ledger.record_observed(intent)
        executed, orphaned, _ = intents
        await ledger.transition_to(executed.transfer_id, TransferState.OBSERVED, TransferState.FINALIZED)
        await ledger.transition_to(executed.transfer_id, TransferState.FINALIZED, TransferState.SUBMITTED)
        await ledger.transition_to(executed.transfer_id, TransferState.SUBMITTED, TransferState.EXECUTED)
        await ledger.transition_to(orphaned.transfer_id, TransferState.OBSERVED, TransferState.ORPHANED)

        report = await ledger.audit_conservation()

        assert report == {
            "observed_total": 100 + 2**100,
            "finalized_total": 100,
            "executed_total": 100,
        }

    @pytest.mark.asyncio
    async def test_repeated_execution_halts(self, ledger, intents):
        """Test that a transfer executed twice in the audit trail raises."""
        transfer_id = intents[0].transfer_id
        await ledger.record_observed(intents[0])
        await ledger.transition_to(transfer_id, TransferState.OBSERVED, TransferState.FINALIZED)
        await ledger.transition_to(transfer_id, TransferState.FINALIZED, TransferState.SUBMITTED)
        await ledger.transition_to(transfer_id, TransferState.SUBMITTED, TransferState.EXECUTED)
        await ledger.connection.execute(
            "INSERT INTO transitions (transfer_id, from_state, to_state, reason, ts) "
            "VALUES (?, 'submitted', 'executed', NULL, 0)",
            (transfer_id,),
        )

        with pytest.raises(ConservationViolationError, match="more than once"):
            await ledger.audit_conservation()

    @pytest.mark.asyncio
    async def test_executed_without_finalization_halts(self, ledger, intents):
        """Test that executed value with no finalized history raises."""
        await ledger.record_observed(intents[0])
        await ledger.connection.execute(
            "UPDATE transfers SET state = 'executed' WHERE transfer_id = ?",
            (intents[0].transfer_id,),
        )

        with pytest.raises(ConservationViolationError, match="exceeds finalized 0"):
            await ledger.audit_conservation()

    @pytest.mark.asyncio
    async def test_orphaned_value_not_counted(self, ledger, intents):
        """Test that orphaned amounts do not back executed value."""
        executed, orphaned, _ = intents
        await ledger.record_observed(executed)
        await ledger.record_observed(orphaned)
        await ledger.transition_to(orphaned.transfer_id, TransferState.OBSERVED, TransferState.FINALIZED)
        await ledger.connection.execute(
            "UPDATE transfers SET state = 'orphaned' WHERE transfer_id = ?", (orphaned.transfer_id,)
        )
        await ledger.connection.execute(
            "UPDATE transfers SET state = 'executed' WHERE transfer_id = ?", (executed.transfer_id,)
        )

        with pytest.raises(ConservationViolationError, match="Executed 100 exceeds finalized 0"):
            await ledger.audit_conservation()
        with pytest.raises(ConservationViolationError):
            await ledger.audit_conservation(executed.source_key)

    @pytest.mark.asyncio
    async def test_status_report(self, ledger, intents):
        """Test the operator status snapshot."""
        await ledger.initialize_checkpoint("route", 10)
        await ledger.record_observed(intents[0])
        await ledger.transition_to(intents[0].transfer_id, TransferState.OBSERVED, TransferState.FINALIZED)
        await ledger.transition_to(intents[0].transfer_id, TransferState.FINALIZED, TransferState.SUBMITTED)
        await ledger.transition_to(
            intents[0].transfer_id, TransferState.SUBMITTED, TransferState.FAILED, reason="reverted"
        )

        status = await ledger.status()

        assert status["checkpoints"] == {"route": 10}
        assert status["counts"]["failed"] == 1
        assert status["counts"]["executed"] == 0
        assert status["failed"][0]["transfer_id"] == intents[0].transfer_id
        assert status["failed"][0]["reason"] == "reverted"
        assert status["conservation"] == {
            "observed_total": "100",
            "finalized_total": "100",
            "executed_total": "0",
        }
