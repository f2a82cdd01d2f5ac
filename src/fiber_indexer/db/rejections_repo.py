"""Rejected transaction persistence.

Rows are insert-if-absent on ``update_hash`` and never updated afterwards.
Benign/critical classification is not stored; it is recomputed from
``error_codes`` on read.
"""

from __future__ import annotations

import json
import sqlite3
from typing import Any, NoReturn

from fiber_indexer.db.connection import connection_scope
from fiber_indexer.db.errors import (
    DatabaseError,
    DatabaseOperationContext,
    DatabaseReadError,
    DatabaseWriteError,
)
from fiber_indexer.db.types import RejectedTransaction, RejectionPage

_REJECTION_COLUMNS = """
    id, update_hash, ordinal, timestamp, update_type, fiber_id,
    target_sequence_number, error_codes, errors, signers, raw_payload, created_at
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


def _row_to_rejection(row: sqlite3.Row) -> RejectedTransaction:
    return RejectedTransaction(
        id=int(row["id"]),
        update_hash=row["update_hash"],
        ordinal=int(row["ordinal"]),
        timestamp=row["timestamp"],
        update_type=row["update_type"],
        fiber_id=row["fiber_id"],
        target_sequence_number=row["target_sequence_number"],
        error_codes=json.loads(row["error_codes"]),
        errors=json.loads(row["errors"]),
        signers=json.loads(row["signers"]),
        raw_payload=json.loads(row["raw_payload"]) if row["raw_payload"] else None,
        created_at=row["created_at"],
    )


def insert_rejection(rejection: RejectedTransaction) -> bool:
    """Store a rejection unless its update hash is already recorded.

    Returns:
        True if a new row was written.
    """
    try:
        with connection_scope(write=True) as conn:
            cursor = conn.cursor()
            cursor.execute(
                """
                INSERT OR IGNORE INTO rejected_transactions (
                    update_hash, ordinal, timestamp, update_type, fiber_id,
                    target_sequence_number, error_codes, errors, signers, raw_payload
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    rejection.update_hash,
                    rejection.ordinal,
                    rejection.timestamp,
                    rejection.update_type,
                    rejection.fiber_id,
                    rejection.target_sequence_number,
                    json.dumps(rejection.error_codes),
                    json.dumps(rejection.errors),
                    json.dumps(rejection.signers),
                    (
                        json.dumps(rejection.raw_payload)
                        if rejection.raw_payload is not None
                        else None
                    ),
                ),
            )
            return cursor.rowcount > 0
    except Exception as exc:
        _raise_write_error(
            "rejections.insert_rejection",
            exc,
            details=f"update_hash={rejection.update_hash!r}",
        )


def get_rejection(update_hash: str) -> RejectedTransaction | None:
    """Return a rejection by update hash."""
    try:
        with connection_scope() as conn:
            cursor = conn.cursor()
            cursor.execute(
                f"SELECT {_REJECTION_COLUMNS} FROM rejected_transactions WHERE update_hash = ?",
                (update_hash,),
            )
            row = cursor.fetchone()
        return _row_to_rejection(row) if row else None
    except Exception as exc:
        _raise_read_error("rejections.get_rejection", exc, details=f"update_hash={update_hash!r}")


def query_rejections(
    *,
    fiber_id: str | None = None,
    update_type: str | None = None,
    signer: str | None = None,
    error_code: str | None = None,
    from_ordinal: int | None = None,
    to_ordinal: int | None = None,
    limit: int = 50,
    offset: int = 0,
) -> RejectionPage:
    """Filter rejections, newest ordinal first.

    ``signer`` and ``error_code`` match elements of the stored JSON arrays.
    """
    conditions: list[str] = []
    params: list[Any] = []
    if fiber_id is not None:
        conditions.append("fiber_id = ?")
        params.append(fiber_id)
    if update_type is not None:
        conditions.append("update_type = ?")
        params.append(update_type)
    if signer is not None:
        conditions.append("EXISTS (SELECT 1 FROM json_each(signers) WHERE json_each.value = ?)")
        params.append(signer)
    if error_code is not None:
        conditions.append(
            "EXISTS (SELECT 1 FROM json_each(error_codes) WHERE json_each.value = ?)"
        )
        params.append(error_code)
    if from_ordinal is not None:
        conditions.append("ordinal >= ?")
        params.append(from_ordinal)
    if to_ordinal is not None:
        conditions.append("ordinal <= ?")
        params.append(to_ordinal)
    where = f" WHERE {' AND '.join(conditions)}" if conditions else ""

    try:
        with connection_scope() as conn:
            cursor = conn.cursor()
            cursor.execute(f"SELECT COUNT(*) FROM rejected_transactions{where}", params)
            total = int(cursor.fetchone()[0])
            cursor.execute(
                f"""
                SELECT {_REJECTION_COLUMNS} FROM rejected_transactions{where}
                ORDER BY ordinal DESC, id DESC
                LIMIT ? OFFSET ?
                """,
                [*params, limit, offset],
            )
            rows = cursor.fetchall()
        return RejectionPage(
            rows=[_row_to_rejection(row) for row in rows],
            total=total,
            limit=limit,
            offset=offset,
        )
    except Exception as exc:
        _raise_read_error(
            "rejections.query_rejections",
            exc,
            details=f"fiber_id={fiber_id!r} update_type={update_type!r}",
        )


def count_rejections() -> int:
    """Count stored rejections."""
    try:
        with connection_scope() as conn:
            cursor = conn.cursor()
            cursor.execute("SELECT COUNT(*) FROM rejected_transactions")
            return int(cursor.fetchone()[0])
    except Exception as exc:
        _raise_read_error("rejections.count_rejections", exc)
