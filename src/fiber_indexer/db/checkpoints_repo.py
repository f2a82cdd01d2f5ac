"""Checkpoint-layer record persistence.

The confirmation poller writes one row per metagraph height the checkpoint
layer has committed. The table is the poller's memory of the hash chain, so a
height stays resolvable after the checkpoint layer's "latest" has moved on.
"""

from __future__ import annotations

from typing import NoReturn

from fiber_indexer.db.connection import connection_scope
from fiber_indexer.db.errors import (
    DatabaseError,
    DatabaseOperationContext,
    DatabaseReadError,
    DatabaseWriteError,
)
from fiber_indexer.db.types import CheckpointRecord


def _raise_read_error(operation: str, exc: Exception, *, details: str | None = None) -> NoReturn:
    """Raise a typed repository read error while preserving chained cause."""
    if isinstance(exc, DatabaseError):
        raise exc
    raise DatabaseReadError(
        context=DatabaseOperationContext(operation=operation, details=details),
        cause=exc,
    ) from exc


def _raise_write_error(operation: str, exc: Exception, *, details: str | None = None) -> NoReturn:
    """Raise a typed repository write error while preserving chained cause."""
    if isinstance(exc, DatabaseError):
        raise exc
    raise DatabaseWriteError(
        context=DatabaseOperationContext(operation=operation, details=details),
        cause=exc,
    ) from exc


def record_checkpoint(ledger_ordinal: int, snapshot_hash: str, checkpoint_ordinal: int) -> bool:
    """Store what the checkpoint layer committed at ``ledger_ordinal``.

    The first record for a height wins; the checkpoint layer is final, so a
    later observation of the same height carries no new information.

    Returns:
        True if a new record was written.
    """
    try:
        with connection_scope(write=True) as conn:
            cursor = conn.cursor()
            cursor.execute(
                """
                INSERT OR IGNORE INTO checkpoint_records
                    (ledger_ordinal, hash, checkpoint_ordinal)
                VALUES (?, ?, ?)
                """,
                (ledger_ordinal, snapshot_hash, checkpoint_ordinal),
            )
            return cursor.rowcount > 0
    except Exception as exc:
        _raise_write_error(
            "checkpoints.record_checkpoint",
            exc,
            details=f"ledger_ordinal={ledger_ordinal} checkpoint_ordinal={checkpoint_ordinal}",
        )


def get_checkpoint(ledger_ordinal: int) -> CheckpointRecord | None:
    """Return the checkpoint record for a metagraph height."""
    try:
        with connection_scope() as conn:
            cursor = conn.cursor()
            cursor.execute(
                """
                SELECT ledger_ordinal, hash, checkpoint_ordinal, observed_at
                FROM checkpoint_records WHERE ledger_ordinal = ?
                """,
                (ledger_ordinal,),
            )
            row = cursor.fetchone()
        if row is None:
            return None
        return CheckpointRecord(
            ledger_ordinal=int(row["ledger_ordinal"]),
            hash=row["hash"],
            checkpoint_ordinal=int(row["checkpoint_ordinal"]),
            observed_at=row["observed_at"],
        )
    except Exception as exc:
        _raise_read_error(
            "checkpoints.get_checkpoint", exc, details=f"ledger_ordinal={ledger_ordinal}"
        )


def get_frontier() -> tuple[int | None, int | None]:
    """Return ``(highest ledger ordinal, highest checkpoint ordinal)`` recorded."""
    try:
        with connection_scope() as conn:
            cursor = conn.cursor()
            cursor.execute(
                "SELECT MAX(ledger_ordinal), MAX(checkpoint_ordinal) FROM checkpoint_records"
            )
            row = cursor.fetchone()
        return row[0], row[1]
    except Exception as exc:
        _raise_read_error("checkpoints.get_frontier", exc)
