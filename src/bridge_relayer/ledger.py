"""
Durable transfer ledger backed by SQLite.

The ledger is the single source of truth for idempotency. It stores one row per
transfer id (never deleted), one checkpoint per source route, and an
append-only trail of every state transition. State changes are
compare-and-swap updates inside an immediate transaction, so several relayer
processes may share one ledger file safely: a second writer racing on the same
transfer loses the swap instead of double-executing.
"""

import asyncio
import logging
import os
import time
from collections.abc import AsyncIterator, Iterable
from contextlib import asynccontextmanager
from typing import Any

import aiosqlite
from web3 import Web3

from .errors import (
    CheckpointCoverageError,
    CheckpointError,
    CheckpointRegressionError,
    ConservationViolationError,
    InvalidTransitionError,
    TransferNotFoundError,
    TransitionConflictError,
)
from .models import (
    OPERATOR_TRANSITIONS,
    Checkpoint,
    ExecutionOutcome,
    ExecutionRecord,
    TransferIntent,
    TransferRecord,
    TransferState,
    is_allowed_transition,
)

logger = logging.getLogger(__name__)

# SQLite's default limit on bound parameters is 999
_ID_CHUNK = 500

SCHEMA = """
CREATE TABLE IF NOT EXISTS transfers (
    transfer_id TEXT PRIMARY KEY,
    source_key TEXT NOT NULL,
    source_chain_id INTEGER NOT NULL,
    source_contract TEXT NOT NULL,
    source_sequence TEXT NOT NULL,
    sender TEXT NOT NULL,
    recipient TEXT NOT NULL,
    amount TEXT NOT NULL,
    created_at TEXT NOT NULL,
    source_block_height INTEGER NOT NULL,
    log_index INTEGER NOT NULL,
    source_tx_hash TEXT NOT NULL,
    auxiliary_payload TEXT NOT NULL,
    event_name TEXT NOT NULL,
    state TEXT NOT NULL,
    reason TEXT,
    exec_outcome TEXT,
    exec_tx_hash TEXT,
    exec_nonce INTEGER,
    exec_fee_paid TEXT,
    exec_block_height INTEGER,
    exec_submitted_at_height INTEGER,
    observed_ts REAL NOT NULL,
    updated_ts REAL NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_transfers_state
    ON transfers(state, source_key, source_block_height, log_index);

CREATE TABLE IF NOT EXISTS checkpoints (
    key TEXT PRIMARY KEY,
    height INTEGER NOT NULL,
    updated_ts REAL NOT NULL
);

CREATE TABLE IF NOT EXISTS transitions (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    transfer_id TEXT NOT NULL,
    from_state TEXT,
    to_state TEXT NOT NULL,
    reason TEXT,
    ts REAL NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_transitions_transfer ON transitions(transfer_id);
"""


class TransferLedger:
    """SQLite transfer ledger with compare-and-swap state transitions."""

    def __init__(self, db_path: str):
        self.db_path = db_path
        self.connection: aiosqlite.Connection | None = None
        self._write_lock = asyncio.Lock()

    @staticmethod
    async def create(db_path: str) -> "TransferLedger":
        """Open (creating if needed) the ledger at ``db_path``."""
        self = TransferLedger(db_path)
        await self.open()
        return self

    async def open(self) -> None:
        directory = os.path.dirname(self.db_path)
        if directory:
            os.makedirs(directory, exist_ok=True)

        # Autocommit mode; transactions are opened explicitly with BEGIN IMMEDIATE
        self.connection = await aiosqlite.connect(self.db_path, isolation_level=None)
        self.connection.row_factory = aiosqlite.Row

        await self.connection.execute("PRAGMA journal_mode=WAL")
        # FULL: a committed transition survives power loss
        await self.connection.execute("PRAGMA synchronous=FULL")
        await self.connection.execute("PRAGMA busy_timeout=10000")
        await self.connection.executescript(SCHEMA)

        logger.info(f"Transfer ledger opened: {self.db_path}")

    async def close(self) -> None:
        if self.connection:
            await self.connection.close()
            self.connection = None
            logger.info("Transfer ledger closed")

    @property
    def _conn(self) -> aiosqlite.Connection:
        if self.connection is None:
            raise RuntimeError("Transfer ledger is not open")
        return self.connection

    @asynccontextmanager
    async def _transaction(self) -> AsyncIterator[aiosqlite.Connection]:
        async with self._write_lock:
            conn = self._conn
            await conn.execute("BEGIN IMMEDIATE")
            try:
                yield conn
            except BaseException:
                await conn.execute("ROLLBACK")
                raise
            else:
                await conn.execute("COMMIT")

    # ------------------------------------------------------------------
    # Transfers

    async def record_observed(self, intent: TransferIntent) -> bool:
        """
        Insert an intent in OBSERVED state if it is not already present.

        Returns:
            True if the intent was new, False if it was already recorded
        """
        now = time.time()

        async def _insert() -> bool:
            async with self._transaction() as conn:
                cursor = await conn.execute(
                    """
                    INSERT OR IGNORE INTO transfers (
                        transfer_id, source_key, source_chain_id, source_contract,
                        source_sequence, sender, recipient, amount, created_at,
                        source_block_height, log_index, source_tx_hash,
                        auxiliary_payload, event_name, state, observed_ts, updated_ts
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        intent.transfer_id,
                        intent.source_key,
                        intent.source_chain_id,
                        intent.source_contract,
                        str(intent.source_sequence),
                        intent.sender,
                        intent.recipient,
                        str(intent.amount),
                        str(intent.created_at),
                        intent.source_block_height,
                        intent.log_index,
                        intent.source_tx_hash,
                        Web3.to_hex(intent.auxiliary_payload),
                        intent.event_name,
                        TransferState.OBSERVED.value,
                        now,
                        now,
                    ),
                )
                inserted = cursor.rowcount == 1
                if inserted:
                    await self._append_transition(
                        conn, intent.transfer_id, None, TransferState.OBSERVED, None, now
                    )
                return inserted

        inserted = await asyncio.shield(_insert())
        if inserted:
            logger.info(f"Observed {intent}")
        else:
            logger.debug(f"Transfer {intent.transfer_id[:10]}... already recorded")
        return inserted

    async def transition_to(
        self,
        transfer_id: str,
        from_state: TransferState,
        to_state: TransferState,
        reason: str | None = None,
        record: ExecutionRecord | None = None,
        operator: bool = False,
    ) -> None:
        """
        Compare-and-swap the state of a transfer.

        Raises:
            InvalidTransitionError: The edge is not in the state machine
            TransferNotFoundError: No such transfer
            TransitionConflictError: The persisted state is not ``from_state``
        """
        if not is_allowed_transition(from_state, to_state, operator=operator):
            raise InvalidTransitionError(
                f"Transition {from_state.value} -> {to_state.value} is not allowed"
            )

        # Shielded so that cancelling the caller never aborts a half-written swap
        await asyncio.shield(
            self._swap(transfer_id, from_state, to_state, reason, record, operator)
        )
        logger.info(
            f"Transfer {transfer_id[:10]}... {from_state.value} -> {to_state.value}"
            + (f" ({reason})" if reason else "")
        )

    async def _swap(
        self,
        transfer_id: str,
        from_state: TransferState,
        to_state: TransferState,
        reason: str | None,
        record: ExecutionRecord | None,
        operator: bool,
    ) -> None:
        now = time.time()
        async with self._transaction() as conn:
            assignments = ["state = ?", "reason = ?", "updated_ts = ?"]
            params: list[Any] = [to_state.value, reason, now]

            if record is not None:
                assignments += [
                    "exec_outcome = ?",
                    "exec_tx_hash = COALESCE(?, exec_tx_hash)",
                    "exec_nonce = COALESCE(?, exec_nonce)",
                    "exec_fee_paid = ?",
                    "exec_block_height = ?",
                    "exec_submitted_at_height = COALESCE(?, exec_submitted_at_height)",
                ]
                params += [
                    record.outcome.value,
                    record.tx_hash,
                    record.nonce,
                    str(record.fee_paid) if record.fee_paid is not None else None,
                    record.block_height,
                    record.submitted_at_height,
                ]
            elif operator:
                # Operator retry starts a fresh attempt
                assignments += [
                    "exec_outcome = NULL",
                    "exec_tx_hash = NULL",
                    "exec_nonce = NULL",
                    "exec_fee_paid = NULL",
                    "exec_block_height = NULL",
                    "exec_submitted_at_height = NULL",
                ]

            cursor = await conn.execute(
                f"UPDATE transfers SET {', '.join(assignments)} "
                "WHERE transfer_id = ? AND state = ?",
                (*params, transfer_id, from_state.value),
            )

            if cursor.rowcount != 1:
                current = await self._current_state(conn, transfer_id)
                if current is None:
                    raise TransferNotFoundError(f"Transfer {transfer_id} not found")
                raise TransitionConflictError(transfer_id, from_state.value, current)

            await self._append_transition(conn, transfer_id, from_state, to_state, reason, now)

    async def record_submission(
        self,
        transfer_id: str,
        tx_hash: str | None,
        nonce: int | None,
        submitted_at_height: int | None,
    ) -> None:
        """
        Persist the signed destination transaction before it is broadcast.

        Raises:
            TransitionConflictError: The transfer is not SUBMITTED
        """
        async def _write() -> None:
            async with self._transaction() as conn:
                cursor = await conn.execute(
                    """
                    UPDATE transfers
                    SET exec_tx_hash = ?, exec_nonce = ?, exec_submitted_at_height = ?,
                        exec_outcome = ?, updated_ts = ?
                    WHERE transfer_id = ? AND state = ?
                    """,
                    (
                        tx_hash,
                        nonce,
                        submitted_at_height,
                        ExecutionOutcome.PENDING.value,
                        time.time(),
                        transfer_id,
                        TransferState.SUBMITTED.value,
                    ),
                )
                if cursor.rowcount != 1:
                    current = await self._current_state(conn, transfer_id)
                    if current is None:
                        raise TransferNotFoundError(f"Transfer {transfer_id} not found")
                    raise TransitionConflictError(
                        transfer_id, TransferState.SUBMITTED.value, current
                    )

        await asyncio.shield(_write())

    async def get(self, transfer_id: str) -> TransferRecord | None:
        cursor = await self._conn.execute(
            "SELECT * FROM transfers WHERE transfer_id = ?", (transfer_id,)
        )
        row = await cursor.fetchone()
        return self._row_to_record(row) if row else None

    async def list_by_state(
        self,
        state: TransferState,
        source_key: str | None = None,
        limit: int | None = None,
    ) -> list[TransferRecord]:
        """Transfers in ``state``, ascending by (block, logIndex)."""
        query = "SELECT * FROM transfers WHERE state = ?"
        params: list[Any] = [state.value]
        if source_key is not None:
            query += " AND source_key = ?"
            params.append(source_key)
        query += " ORDER BY source_block_height, log_index"
        if limit is not None:
            query += " LIMIT ?"
            params.append(limit)

        cursor = await self._conn.execute(query, params)
        return [self._row_to_record(row) for row in await cursor.fetchall()]

    async def count_by_state(self) -> dict[str, int]:
        counts = {state.value: 0 for state in TransferState}
        cursor = await self._conn.execute(
            "SELECT state, COUNT(*) AS n FROM transfers GROUP BY state"
        )
        for row in await cursor.fetchall():
            counts[row["state"]] = row["n"]
        return counts

    async def failed_transfers(self) -> list[TransferRecord]:
        return await self.list_by_state(TransferState.FAILED)

    async def history(self, transfer_id: str) -> list[dict[str, Any]]:
        """Audit trail of one transfer, oldest first."""
        cursor = await self._conn.execute(
            "SELECT from_state, to_state, reason, ts FROM transitions "
            "WHERE transfer_id = ? ORDER BY id",
            (transfer_id,),
        )
        return [dict(row) for row in await cursor.fetchall()]

    async def retry(self, transfer_id: str) -> TransferState:
        """
        Operator retry: FAILED -> FINALIZED or ORPHANED -> OBSERVED.

        Returns:
            The state the transfer was moved to

        Raises:
            TransferNotFoundError: No such transfer
            InvalidTransitionError: The transfer is not in a retryable state
        """
        record = await self.get(transfer_id)
        if record is None:
            raise TransferNotFoundError(f"Transfer {transfer_id} not found")

        target = OPERATOR_TRANSITIONS.get(record.state)
        if target is None:
            raise InvalidTransitionError(
                f"Transfer {transfer_id} is {record.state.value}; only failed or "
                "orphaned transfers can be retried"
            )

        await self.transition_to(
            transfer_id,
            record.state,
            target,
            reason=f"operator retry (was: {record.reason or record.state.value})",
            operator=True,
        )
        return target

    # ------------------------------------------------------------------
    # Checkpoints

    async def get_checkpoint(self, key: str) -> int | None:
        cursor = await self._conn.execute(
            "SELECT height FROM checkpoints WHERE key = ?", (key,)
        )
        row = await cursor.fetchone()
        return row["height"] if row else None

    async def get_checkpoints(self) -> list[Checkpoint]:
        cursor = await self._conn.execute("SELECT key, height FROM checkpoints ORDER BY key")
        return [Checkpoint(row["key"], row["height"]) for row in await cursor.fetchall()]

    async def initialize_checkpoint(self, key: str, height: int) -> int:
        """
        Create the checkpoint for a route if it does not exist yet.

        Returns:
            The persisted checkpoint height
        """
        if height < 0:
            raise CheckpointError(f"Checkpoint height must be non-negative, got {height}")

        async def _init() -> int:
            async with self._transaction() as conn:
                await conn.execute(
                    "INSERT OR IGNORE INTO checkpoints (key, height, updated_ts) VALUES (?, ?, ?)",
                    (key, height, time.time()),
                )
                return await self._checkpoint_in(conn, key)

        persisted = await asyncio.shield(_init())
        logger.info(f"Checkpoint {key} initialized at {persisted}")
        return persisted

    async def advance_checkpoint(
        self, key: str, height: int, covered_ids: Iterable[str] = ()
    ) -> None:
        """
        Move a checkpoint forward after the covered range is durably observed.

        Raises:
            CheckpointError: The checkpoint does not exist
            CheckpointRegressionError: ``height`` is below the current checkpoint
            CheckpointCoverageError: Some covered transfer is not in the ledger
        """
        ids = list(dict.fromkeys(covered_ids))

        async def _advance() -> None:
            async with self._transaction() as conn:
                current = await self._checkpoint_in(conn, key)
                if current is None:
                    raise CheckpointError(f"Checkpoint {key} has not been initialized")
                if height < current:
                    raise CheckpointRegressionError(
                        f"Checkpoint {key} cannot move back from {current} to {height}"
                    )

                for start in range(0, len(ids), _ID_CHUNK):
                    chunk = ids[start:start + _ID_CHUNK]
                    placeholders = ",".join("?" * len(chunk))
                    cursor = await conn.execute(
                        f"SELECT COUNT(*) AS n FROM transfers WHERE transfer_id IN ({placeholders})",
                        chunk,
                    )
                    row = await cursor.fetchone()
                    if row["n"] != len(chunk):
                        raise CheckpointCoverageError(
                            f"Checkpoint {key} cannot advance to {height}: "
                            f"{len(chunk) - row['n']} intents are not recorded"
                        )

                if height > current:
                    await conn.execute(
                        "UPDATE checkpoints SET height = ?, updated_ts = ? WHERE key = ?",
                        (height, time.time(), key),
                    )

        await asyncio.shield(_advance())
        logger.debug(f"Checkpoint {key} at {height}")

    # ------------------------------------------------------------------
    # Audit and status

    async def amount_totals(self, source_key: str | None = None) -> dict[str, int]:
        """Sum of amounts per state, as exact integers."""
        totals = {state.value: 0 for state in TransferState}
        query = "SELECT state, amount FROM transfers"
        params: list[Any] = []
        if source_key is not None:
            query += " WHERE source_key = ?"
            params.append(source_key)

        cursor = await self._conn.execute(query, params)
        async for row in cursor:
            totals[row["state"]] += int(row["amount"])
        return totals

    async def audit_conservation(self, source_key: str | None = None) -> dict[str, int]:
        """
        Check that executed value never exceeds finalized source value.

        Every transfer may reach EXECUTED at most once in the audit trail, and
        the executed total may not exceed the total of non-orphaned intents
        whose audit trail shows they reached FINALIZED.

        Raises:
            ConservationViolationError: Either check fails
        """
        query = (
            "SELECT t.transfer_id, COUNT(*) AS n FROM transitions t "
            "JOIN transfers r ON r.transfer_id = t.transfer_id "
            "WHERE t.to_state = ?"
        )
        params: list[Any] = [TransferState.EXECUTED.value]
        if source_key is not None:
            query += " AND r.source_key = ?"
            params.append(source_key)
        query += " GROUP BY t.transfer_id HAVING COUNT(*) > 1"

        cursor = await self._conn.execute(query, params)
        repeated = await cursor.fetchall()
        if repeated:
            ids = ", ".join(row["transfer_id"] for row in repeated)
            raise ConservationViolationError(f"Transfers executed more than once: {ids}")

        totals = await self.amount_totals(source_key)
        observed = sum(
            amount for state, amount in totals.items()
            if state != TransferState.ORPHANED.value
        )
        executed = totals[TransferState.EXECUTED.value]

        query = (
            "SELECT r.amount FROM transfers r WHERE r.state != ? AND EXISTS ("
            "SELECT 1 FROM transitions t WHERE t.transfer_id = r.transfer_id AND t.to_state = ?)"
        )
        params = [TransferState.ORPHANED.value, TransferState.FINALIZED.value]
        if source_key is not None:
            query += " AND r.source_key = ?"
            params.append(source_key)

        finalized = 0
        cursor = await self._conn.execute(query, params)
        async for row in cursor:
            finalized += int(row["amount"])

        if executed > finalized:
            raise ConservationViolationError(
                f"Executed {executed} exceeds finalized {finalized}"
                + (f" for {source_key}" if source_key else "")
            )
        return {
            "observed_total": observed,
            "finalized_total": finalized,
            "executed_total": executed,
        }

    async def status(self) -> dict[str, Any]:
        """Operational snapshot for monitoring and the status command."""
        failed = await self.failed_transfers()
        return {
            "checkpoints": {c.key: c.height for c in await self.get_checkpoints()},
            "counts": await self.count_by_state(),
            "failed": [
                {
                    "transfer_id": r.transfer_id,
                    "source_sequence": r.intent.source_sequence,
                    "amount": str(r.intent.amount),
                    "reason": r.reason,
                }
                for r in failed
            ],
            "conservation": {k: str(v) for k, v in (await self.audit_conservation()).items()},
        }

    # ------------------------------------------------------------------
    # Helpers

    @staticmethod
    async def _current_state(conn: aiosqlite.Connection, transfer_id: str) -> str | None:
        cursor = await conn.execute(
            "SELECT state FROM transfers WHERE transfer_id = ?", (transfer_id,)
        )
        row = await cursor.fetchone()
        return row["state"] if row else None

    @staticmethod
    async def _checkpoint_in(conn: aiosqlite.Connection, key: str) -> int | None:
        cursor = await conn.execute("SELECT height FROM checkpoints WHERE key = ?", (key,))
        row = await cursor.fetchone()
        return row["height"] if row else None

    @staticmethod
    async def _append_transition(
        conn: aiosqlite.Connection,
        transfer_id: str,
        from_state: TransferState | None,
        to_state: TransferState,
        reason: str | None,
        ts: float,
    ) -> None:
        await conn.execute(
            "INSERT INTO transitions (transfer_id, from_state, to_state, reason, ts) "
            "VALUES (?, ?, ?, ?, ?)",
            (transfer_id, from_state.value if from_state else None, to_state.value, reason, ts),
        )

    @staticmethod
    def _row_to_record(row: aiosqlite.Row) -> TransferRecord:
        intent = TransferIntent(
            transfer_id=row["transfer_id"],
            source_chain_id=row["source_chain_id"],
            source_contract=row["source_contract"],
            source_sequence=int(row["source_sequence"]),
            sender=row["sender"],
            recipient=row["recipient"],
            amount=int(row["amount"]),
            created_at=int(row["created_at"]),
            source_block_height=row["source_block_height"],
            log_index=row["log_index"],
            source_tx_hash=row["source_tx_hash"],
            auxiliary_payload=bytes(Web3.to_bytes(hexstr=row["auxiliary_payload"])),
            event_name=row["event_name"],
        )

        execution = None
        if row["exec_outcome"] is not None:
            execution = ExecutionRecord(
                transfer_id=row["transfer_id"],
                outcome=ExecutionOutcome(row["exec_outcome"]),
                tx_hash=row["exec_tx_hash"],
                nonce=row["exec_nonce"],
                fee_paid=int(row["exec_fee_paid"]) if row["exec_fee_paid"] is not None else None,
                block_height=row["exec_block_height"],
                submitted_at_height=row["exec_submitted_at_height"],
            )

        return TransferRecord(
            intent=intent,
            state=TransferState(row["state"]),
            reason=row["reason"],
            execution=execution,
            updated_at=row["updated_ts"],
        )
