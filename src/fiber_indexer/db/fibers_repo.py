"""Fiber record and transition persistence.

Fiber rows are only ever written by the materializer. An upsert never lowers a
fiber's ``sequence_number``: replaying an older snapshot after a newer one is a
no-op for that fiber, which is what makes materialization idempotent and
order-independent across ordinals.
"""

from __future__ import annotations

import json
import sqlite3
from collections.abc import Iterable
from typing import Any, NoReturn

from fiber_indexer.db.connection import connection_scope
from fiber_indexer.db.errors import (
    DatabaseError,
    DatabaseOperationContext,
    DatabaseReadError,
    DatabaseWriteError,
)
from fiber_indexer.db.types import FiberRecord, FiberTransition

_FIBER_COLUMNS = """
    fiber_id, workflow_type, sequence_number, current_state, status, owners,
    state_data, definition, creation_ordinal, last_observed_ordinal, updated_at
"""

_UPSERT_FIBER_SQL = """
    INSERT INTO fiber_records (
        fiber_id, workflow_type, sequence_number, current_state, status, owners,
        state_data, definition, creation_ordinal, last_observed_ordinal, updated_at
    )
    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, CURRENT_TIMESTAMP)
    ON CONFLICT(fiber_id) DO UPDATE SET
        workflow_type = excluded.workflow_type,
        sequence_number = excluded.sequence_number,
        current_state = excluded.current_state,
        status = excluded.status,
        owners = excluded.owners,
        state_data = excluded.state_data,
        definition = COALESCE(excluded.definition, fiber_records.definition),
        creation_ordinal = COALESCE(fiber_records.creation_ordinal, excluded.creation_ordinal),
        last_observed_ordinal = MAX(
            COALESCE(fiber_records.last_observed_ordinal, 0),
            COALESCE(excluded.last_observed_ordinal, 0)
        ),
        updated_at = CURRENT_TIMESTAMP
    WHERE excluded.sequence_number >= fiber_records.sequence_number
"""

_INSERT_TRANSITION_SQL = """
    INSERT OR IGNORE INTO fiber_transitions (
        fiber_id, event_name, from_state, to_state, success, gas_used, payload,
        snapshot_ordinal
    )
    VALUES (?, ?, ?, ?, ?, ?, ?, ?)
"""


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


def _fiber_params(record: FiberRecord) -> tuple[Any, ...]:
    return (
        record.fiber_id,
        record.workflow_type,
        record.sequence_number,
        record.current_state,
        record.status,
        json.dumps(sorted(set(record.owners))),
        json.dumps(record.state_data, sort_keys=True),
        json.dumps(record.definition, sort_keys=True) if record.definition is not None else None,
        record.creation_ordinal,
        record.last_observed_ordinal,
    )


def _transition_params(transition: FiberTransition) -> tuple[Any, ...]:
    return (
        transition.fiber_id,
        transition.event_name,
        transition.from_state,
        transition.to_state,
        1 if transition.success else 0,
        transition.gas_used,
        json.dumps(transition.payload, sort_keys=True) if transition.payload is not None else None,
        transition.snapshot_ordinal,
    )


def _row_to_fiber(row: sqlite3.Row) -> FiberRecord:
    return FiberRecord(
        fiber_id=row["fiber_id"],
        workflow_type=row["workflow_type"],
        sequence_number=int(row["sequence_number"]),
        current_state=row["current_state"],
        status=row["status"],
        owners=json.loads(row["owners"]),
        state_data=json.loads(row["state_data"]),
        definition=json.loads(row["definition"]) if row["definition"] else None,
        creation_ordinal=row["creation_ordinal"],
        last_observed_ordinal=row["last_observed_ordinal"],
        updated_at=row["updated_at"],
    )


def _row_to_transition(row: sqlite3.Row) -> FiberTransition:
    return FiberTransition(
        id=int(row["id"]),
        fiber_id=row["fiber_id"],
        event_name=row["event_name"],
        from_state=row["from_state"],
        to_state=row["to_state"],
        success=bool(row["success"]),
        gas_used=int(row["gas_used"]),
        payload=json.loads(row["payload"]) if row["payload"] else None,
        snapshot_ordinal=int(row["snapshot_ordinal"]),
        created_at=row["created_at"],
    )


# ── Writes ───────────────────────────────────────────────────────────────────


def apply_snapshot_fibers(
    records: Iterable[FiberRecord],
    transitions: Iterable[FiberTransition],
    *,
    ordinal: int,
) -> int:
    """Write a snapshot's fibers and transitions in one transaction.

    Either every row derived from the snapshot lands or none does, so a
    cancelled or failed materialization never leaves a half-applied snapshot.

    Returns:
        Number of fiber rows actually written (stale replays excluded).
    """
    try:
        written = 0
        with connection_scope(write=True) as conn:
            cursor = conn.cursor()
            for record in records:
                cursor.execute(_UPSERT_FIBER_SQL, _fiber_params(record))
                written += cursor.rowcount
            for transition in transitions:
                cursor.execute(_INSERT_TRANSITION_SQL, _transition_params(transition))
        return written
    except Exception as exc:
        _raise_write_error("fibers.apply_snapshot_fibers", exc, details=f"ordinal={ordinal}")


# ── Reads ────────────────────────────────────────────────────────────────────


def get_fiber(fiber_id: str) -> FiberRecord | None:
    """Return one materialized fiber."""
    try:
        with connection_scope() as conn:
            cursor = conn.cursor()
            cursor.execute(
                f"SELECT {_FIBER_COLUMNS} FROM fiber_records WHERE fiber_id = ?",
                (fiber_id,),
            )
            row = cursor.fetchone()
        return _row_to_fiber(row) if row else None
    except Exception as exc:
        _raise_read_error("fibers.get_fiber", exc, details=f"fiber_id={fiber_id!r}")


def list_fibers(
    *,
    workflow_type: str | None = None,
    status: str | None = None,
    limit: int = 50,
    offset: int = 0,
) -> tuple[list[FiberRecord], int]:
    """List fibers most recently observed first.

    Returns:
        ``(rows, total)`` where ``total`` ignores limit/offset.
    """
    conditions: list[str] = []
    params: list[Any] = []
    if workflow_type is not None:
        conditions.append("workflow_type = ?")
        params.append(workflow_type)
    if status is not None:
        conditions.append("status = ?")
        params.append(status)
    where = f" WHERE {' AND '.join(conditions)}" if conditions else ""

    try:
        with connection_scope() as conn:
            cursor = conn.cursor()
            cursor.execute(f"SELECT COUNT(*) FROM fiber_records{where}", params)
            total = int(cursor.fetchone()[0])
            cursor.execute(
                f"""
                SELECT {_FIBER_COLUMNS} FROM fiber_records{where}
                ORDER BY last_observed_ordinal DESC, fiber_id ASC
                LIMIT ? OFFSET ?
                """,
                [*params, limit, offset],
            )
            rows = cursor.fetchall()
        return [_row_to_fiber(row) for row in rows], total
    except Exception as exc:
        _raise_read_error(
            "fibers.list_fibers",
            exc,
            details=f"workflow_type={workflow_type!r} status={status!r}",
        )


def list_transitions(fiber_id: str, *, limit: int = 50) -> list[FiberTransition]:
    """Return a fiber's transitions, newest ordinal first."""
    try:
        with connection_scope() as conn:
            cursor = conn.cursor()
            cursor.execute(
                """
                SELECT id, fiber_id, event_name, from_state, to_state, success, gas_used,
                       payload, snapshot_ordinal, created_at
                FROM fiber_transitions
                WHERE fiber_id = ?
                ORDER BY snapshot_ordinal DESC, id DESC
                LIMIT ?
                """,
                (fiber_id, limit),
            )
            rows = cursor.fetchall()
        return [_row_to_transition(row) for row in rows]
    except Exception as exc:
        _raise_read_error("fibers.list_transitions", exc, details=f"fiber_id={fiber_id!r}")


def count_fibers() -> int:
    """Count materialized fibers."""
    try:
        with connection_scope() as conn:
            cursor = conn.cursor()
            cursor.execute("SELECT COUNT(*) FROM fiber_records")
            return int(cursor.fetchone()[0])
    except Exception as exc:
        _raise_read_error("fibers.count_fibers", exc)
