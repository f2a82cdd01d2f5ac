"""Snapshot repository operations for the SQLite backend.

This module owns the ``indexed_snapshots`` table. Every status change is a
single conditional ``UPDATE ... WHERE status = 'PENDING'`` so the webhook path,
the confirmation poller and the fallback poller can interleave freely without
a global lock.
"""

from __future__ import annotations

import sqlite3
from typing import Any, NoReturn

from fiber_indexer.db.connection import connection_scope
from fiber_indexer.db.constants import (
    SNAPSHOT_STATUSES,
    SOURCE_WEBHOOK,
    STATUS_CONFIRMED,
    STATUS_ORPHANED,
    STATUS_PENDING,
)
from fiber_indexer.db.errors import (
    DatabaseError,
    DatabaseOperationContext,
    DatabaseReadError,
    DatabaseWriteError,
)
from fiber_indexer.db.types import IndexedSnapshot, SnapshotTotals

_SNAPSHOT_COLUMNS = """
    id, ordinal, hash, status, parent_checkpoint_ordinal, source, ledger_timestamp,
    created_at, confirmed_at, materialized_at, fibers_updated, agents_updated,
    contracts_updated
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


def _row_to_snapshot(row: sqlite3.Row) -> IndexedSnapshot:
    return IndexedSnapshot(
        id=int(row["id"]),
        ordinal=int(row["ordinal"]),
        hash=row["hash"],
        status=row["status"],
        parent_checkpoint_ordinal=row["parent_checkpoint_ordinal"],
        source=row["source"],
        ledger_timestamp=row["ledger_timestamp"],
        created_at=row["created_at"],
        confirmed_at=row["confirmed_at"],
        materialized_at=row["materialized_at"],
        fibers_updated=row["fibers_updated"],
        agents_updated=row["agents_updated"],
        contracts_updated=row["contracts_updated"],
    )


# ── Ingestion ────────────────────────────────────────────────────────────────


def insert_pending(
    ordinal: int,
    snapshot_hash: str,
    *,
    source: str = SOURCE_WEBHOOK,
    ledger_timestamp: str | None = None,
) -> tuple[IndexedSnapshot, bool]:
    """Insert a PENDING row for ``(ordinal, hash)`` unless it already exists.

    First writer wins: a second insert for the same pair leaves the existing
    row untouched, whatever its status.

    Returns:
        ``(snapshot, created)`` where ``created`` is False when the row
        already existed.
    """
    try:
        with connection_scope(write=True) as conn:
            cursor = conn.cursor()
            cursor.execute(
                """
                INSERT OR IGNORE INTO indexed_snapshots
                    (ordinal, hash, status, source, ledger_timestamp)
                VALUES (?, ?, ?, ?, ?)
                """,
                (ordinal, snapshot_hash, STATUS_PENDING, source, ledger_timestamp),
            )
            created = cursor.rowcount > 0
            cursor.execute(
                f"SELECT {_SNAPSHOT_COLUMNS} FROM indexed_snapshots WHERE ordinal = ? AND hash = ?",
                (ordinal, snapshot_hash),
            )
            row = cursor.fetchone()
        return _row_to_snapshot(row), created
    except Exception as exc:
        _raise_write_error(
            "snapshots.insert_pending",
            exc,
            details=f"ordinal={ordinal} hash={snapshot_hash!r}",
        )


# ── Lookups ──────────────────────────────────────────────────────────────────


def get_snapshot(ordinal: int, snapshot_hash: str) -> IndexedSnapshot | None:
    """Return the row for ``(ordinal, hash)`` if present."""
    try:
        with connection_scope() as conn:
            cursor = conn.cursor()
            cursor.execute(
                f"SELECT {_SNAPSHOT_COLUMNS} FROM indexed_snapshots WHERE ordinal = ? AND hash = ?",
                (ordinal, snapshot_hash),
            )
            row = cursor.fetchone()
        return _row_to_snapshot(row) if row else None
    except Exception as exc:
        _raise_read_error("snapshots.get_snapshot", exc, details=f"ordinal={ordinal}")


def get_snapshot_by_id(snapshot_id: int) -> IndexedSnapshot | None:
    """Return a row by primary key."""
    try:
        with connection_scope() as conn:
            cursor = conn.cursor()
            cursor.execute(
                f"SELECT {_SNAPSHOT_COLUMNS} FROM indexed_snapshots WHERE id = ?",
                (snapshot_id,),
            )
            row = cursor.fetchone()
        return _row_to_snapshot(row) if row else None
    except Exception as exc:
        _raise_read_error("snapshots.get_snapshot_by_id", exc, details=f"id={snapshot_id}")


def get_snapshots_at_ordinal(ordinal: int) -> list[IndexedSnapshot]:
    """Return every row recorded at ``ordinal`` (competing hashes included)."""
    try:
        with connection_scope() as conn:
            cursor = conn.cursor()
            cursor.execute(
                f"SELECT {_SNAPSHOT_COLUMNS} FROM indexed_snapshots WHERE ordinal = ? ORDER BY id",
                (ordinal,),
            )
            rows = cursor.fetchall()
        return [_row_to_snapshot(row) for row in rows]
    except Exception as exc:
        _raise_read_error("snapshots.get_snapshots_at_ordinal", exc, details=f"ordinal={ordinal}")


def list_snapshots(*, status: str | None = None, limit: int = 20) -> list[IndexedSnapshot]:
    """List snapshots newest ordinal first, optionally filtered by status."""
    if status is not None and status not in SNAPSHOT_STATUSES:
        raise ValueError(f"Unknown snapshot status: {status!r}")
    query = f"SELECT {_SNAPSHOT_COLUMNS} FROM indexed_snapshots"
    params: list[Any] = []
    if status is not None:
        query += " WHERE status = ?"
        params.append(status)
    query += " ORDER BY ordinal DESC, id DESC LIMIT ?"
    params.append(limit)
    try:
        with connection_scope() as conn:
            cursor = conn.cursor()
            cursor.execute(query, params)
            rows = cursor.fetchall()
        return [_row_to_snapshot(row) for row in rows]
    except Exception as exc:
        _raise_read_error("snapshots.list_snapshots", exc, details=f"status={status!r}")


def count_snapshots(*, status: str | None = None) -> int:
    """Count snapshot rows, optionally by status."""
    try:
        with connection_scope() as conn:
            cursor = conn.cursor()
            if status is None:
                cursor.execute("SELECT COUNT(*) FROM indexed_snapshots")
            else:
                cursor.execute("SELECT COUNT(*) FROM indexed_snapshots WHERE status = ?", (status,))
            return int(cursor.fetchone()[0])
    except Exception as exc:
        _raise_read_error("snapshots.count_snapshots", exc, details=f"status={status!r}")


def get_totals() -> SnapshotTotals:
    """Return row counts per status plus the count of live rows never materialized."""
    try:
        with connection_scope() as conn:
            cursor = conn.cursor()
            cursor.execute("SELECT status, COUNT(*) FROM indexed_snapshots GROUP BY status")
            by_status = {row[0]: int(row[1]) for row in cursor.fetchall()}
            cursor.execute(
                """
                SELECT COUNT(*) FROM indexed_snapshots
                WHERE fibers_updated IS NULL AND status != ?
                """,
                (STATUS_ORPHANED,),
            )
            unmaterialized = int(cursor.fetchone()[0])
        return SnapshotTotals(
            pending=by_status.get(STATUS_PENDING, 0),
            confirmed=by_status.get(STATUS_CONFIRMED, 0),
            orphaned=by_status.get(STATUS_ORPHANED, 0),
            unmaterialized=unmaterialized,
        )
    except Exception as exc:
        _raise_read_error("snapshots.get_totals", exc)


def get_last_indexed() -> IndexedSnapshot | None:
    """Return the row with the highest ordinal (latest insert on ties)."""
    try:
        with connection_scope() as conn:
            cursor = conn.cursor()
            cursor.execute(
                f"""
                SELECT {_SNAPSHOT_COLUMNS} FROM indexed_snapshots
                ORDER BY ordinal DESC, id DESC LIMIT 1
                """
            )
            row = cursor.fetchone()
        return _row_to_snapshot(row) if row else None
    except Exception as exc:
        _raise_read_error("snapshots.get_last_indexed", exc)


def get_last_confirmed() -> IndexedSnapshot | None:
    """Return the CONFIRMED row with the highest ordinal."""
    try:
        with connection_scope() as conn:
            cursor = conn.cursor()
            cursor.execute(
                f"""
                SELECT {_SNAPSHOT_COLUMNS} FROM indexed_snapshots
                WHERE status = ?
                ORDER BY ordinal DESC LIMIT 1
                """,
                (STATUS_CONFIRMED,),
            )
            row = cursor.fetchone()
        return _row_to_snapshot(row) if row else None
    except Exception as exc:
        _raise_read_error("snapshots.get_last_confirmed", exc)


def list_pending(*, max_ordinal: int | None = None) -> list[IndexedSnapshot]:
    """List PENDING rows oldest first, optionally capped at ``max_ordinal``."""
    query = f"SELECT {_SNAPSHOT_COLUMNS} FROM indexed_snapshots WHERE status = ?"
    params: list[Any] = [STATUS_PENDING]
    if max_ordinal is not None:
        query += " AND ordinal <= ?"
        params.append(max_ordinal)
    query += " ORDER BY ordinal ASC, id ASC"
    try:
        with connection_scope() as conn:
            cursor = conn.cursor()
            cursor.execute(query, params)
            rows = cursor.fetchall()
        return [_row_to_snapshot(row) for row in rows]
    except Exception as exc:
        _raise_read_error("snapshots.list_pending", exc, details=f"max_ordinal={max_ordinal}")


def list_unmaterialized(*, limit: int = 50) -> list[IndexedSnapshot]:
    """List rows whose materialization never succeeded, oldest first.

    CONFIRMED rows are included: confirmation does not wait for
    materialization, and a confirmed snapshot still has to be applied.
    ORPHANED rows are skipped.
    """
    try:
        with connection_scope() as conn:
            cursor = conn.cursor()
            cursor.execute(
                f"""
                SELECT {_SNAPSHOT_COLUMNS} FROM indexed_snapshots
                WHERE fibers_updated IS NULL AND status != ?
                ORDER BY ordinal ASC, id ASC
                LIMIT ?
                """,
                (STATUS_ORPHANED, limit),
            )
            rows = cursor.fetchall()
        return [_row_to_snapshot(row) for row in rows]
    except Exception as exc:
        _raise_read_error("snapshots.list_unmaterialized", exc)


def get_indexed_ordinals(low: int, high: int) -> set[int]:
    """Return the distinct ordinals present in ``[low, high]``."""
    try:
        with connection_scope() as conn:
            cursor = conn.cursor()
            cursor.execute(
                "SELECT DISTINCT ordinal FROM indexed_snapshots WHERE ordinal BETWEEN ? AND ?",
                (low, high),
            )
            return {int(row[0]) for row in cursor.fetchall()}
    except Exception as exc:
        _raise_read_error(
            "snapshots.get_indexed_ordinals",
            exc,
            details=f"low={low} high={high}",
        )


# ── Status transitions ───────────────────────────────────────────────────────


def confirm_snapshot(snapshot_id: int, checkpoint_ordinal: int) -> bool:
    """Promote a PENDING row to CONFIRMED.

    Returns:
        True if this call made the transition, False if the row was no longer
        PENDING (another poller got there first) or does not exist.
    """
    try:
        with connection_scope(write=True) as conn:
            cursor = conn.cursor()
            cursor.execute(
                """
                UPDATE indexed_snapshots
                SET status = ?,
                    parent_checkpoint_ordinal = ?,
                    confirmed_at = CURRENT_TIMESTAMP
                WHERE id = ? AND status = ?
                """,
                (STATUS_CONFIRMED, checkpoint_ordinal, snapshot_id, STATUS_PENDING),
            )
            return cursor.rowcount > 0
    except Exception as exc:
        _raise_write_error(
            "snapshots.confirm_snapshot",
            exc,
            details=f"id={snapshot_id} checkpoint_ordinal={checkpoint_ordinal}",
        )


def orphan_snapshot(snapshot_id: int) -> bool:
    """Mark a PENDING row ORPHANED. Same conditional contract as confirm."""
    try:
        with connection_scope(write=True) as conn:
            cursor = conn.cursor()
            cursor.execute(
                "UPDATE indexed_snapshots SET status = ? WHERE id = ? AND status = ?",
                (STATUS_ORPHANED, snapshot_id, STATUS_PENDING),
            )
            return cursor.rowcount > 0
    except Exception as exc:
        _raise_write_error("snapshots.orphan_snapshot", exc, details=f"id={snapshot_id}")


def record_materialization(
    snapshot_id: int,
    *,
    fibers_updated: int,
    agents_updated: int,
    contracts_updated: int,
) -> bool:
    """Store materialization counters. Status is left untouched."""
    try:
        with connection_scope(write=True) as conn:
            cursor = conn.cursor()
            cursor.execute(
                """
                UPDATE indexed_snapshots
                SET fibers_updated = ?,
                    agents_updated = ?,
                    contracts_updated = ?,
                    materialized_at = CURRENT_TIMESTAMP
                WHERE id = ?
                """,
                (fibers_updated, agents_updated, contracts_updated, snapshot_id),
            )
            return cursor.rowcount > 0
    except Exception as exc:
        _raise_write_error(
            "snapshots.record_materialization",
            exc,
            details=f"id={snapshot_id}",
        )
