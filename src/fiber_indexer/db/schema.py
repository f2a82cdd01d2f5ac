"""Schema creation and invariant trigger wiring for the SQLite backend.

The schema layer is isolated from query code so schema changes are reviewable
without wading through repository logic.
"""

from __future__ import annotations

import sqlite3

from fiber_indexer.db.connection import get_connection

# Hot-path index rationale:
# 1. the confirmation poller selects PENDING rows by status and ordinal on
#    every tick.
# 2. the reprocess sweep looks for non-orphaned rows that were never materialized.
# 3. rejection queries filter by fiber, update type and ordinal range.
# 4. fiber transition history is always fiber scoped and ordered by ordinal.
HOT_PATH_INDEX_STATEMENTS = (
    "CREATE INDEX IF NOT EXISTS idx_snapshots_ordinal ON indexed_snapshots(ordinal)",
    (
        "CREATE INDEX IF NOT EXISTS idx_snapshots_status_ordinal "
        "ON indexed_snapshots(status, ordinal)"
    ),
    (
        "CREATE INDEX IF NOT EXISTS idx_snapshots_materialization "
        "ON indexed_snapshots(fibers_updated, status, ordinal)"
    ),
    "CREATE INDEX IF NOT EXISTS idx_rejections_fiber ON rejected_transactions(fiber_id)",
    "CREATE INDEX IF NOT EXISTS idx_rejections_type ON rejected_transactions(update_type)",
    "CREATE INDEX IF NOT EXISTS idx_rejections_ordinal ON rejected_transactions(ordinal)",
    (
        "CREATE INDEX IF NOT EXISTS idx_transitions_fiber_ordinal "
        "ON fiber_transitions(fiber_id, snapshot_ordinal)"
    ),
    "CREATE INDEX IF NOT EXISTS idx_fibers_workflow ON fiber_records(workflow_type)",
)


def create_snapshot_invariant_triggers(conn: sqlite3.Connection) -> None:
    """Create triggers that keep snapshot and fiber invariants at the SQL level.

    Invariant model:
    - A snapshot leaves PENDING at most once; CONFIRMED and ORPHANED are terminal.
    - ``parent_checkpoint_ordinal`` is set once and never rewritten.
    - A fiber's ``sequence_number`` never decreases.
    """
    cursor = conn.cursor()
    cursor.execute("DROP TRIGGER IF EXISTS enforce_snapshot_terminal_status")
    cursor.execute("DROP TRIGGER IF EXISTS enforce_snapshot_parent_once")
    cursor.execute("DROP TRIGGER IF EXISTS enforce_fiber_sequence_monotone")

    cursor.execute("""
        CREATE TRIGGER enforce_snapshot_terminal_status
        BEFORE UPDATE OF status ON indexed_snapshots
        WHEN OLD.status != 'PENDING' AND NEW.status != OLD.status
        BEGIN
            SELECT RAISE(ABORT, 'snapshot invariant violated: terminal status cannot change');
        END
    """)

    cursor.execute("""
        CREATE TRIGGER enforce_snapshot_parent_once
        BEFORE UPDATE OF parent_checkpoint_ordinal ON indexed_snapshots
        WHEN OLD.parent_checkpoint_ordinal IS NOT NULL
         AND NEW.parent_checkpoint_ordinal IS NOT OLD.parent_checkpoint_ordinal
        BEGIN
            SELECT RAISE(ABORT, 'snapshot invariant violated: parent checkpoint already set');
        END
    """)

    cursor.execute("""
        CREATE TRIGGER enforce_fiber_sequence_monotone
        BEFORE UPDATE OF sequence_number ON fiber_records
        WHEN NEW.sequence_number < OLD.sequence_number
        BEGIN
            SELECT RAISE(ABORT, 'fiber invariant violated: sequence number decreased');
        END
    """)


def init_database() -> None:
    """Initialize the SQLite database schema and invariant triggers.

    Behavior:
    - Creates required tables and indexes if missing.
    - Installs snapshot and fiber invariant triggers.
    """
    conn = get_connection()
    cursor = conn.cursor()

    # One row per (ordinal, hash). A competing hash at the same ordinal is a
    # second row that the confirmation poller resolves.
    cursor.execute("""
        CREATE TABLE IF NOT EXISTS indexed_snapshots (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            ordinal INTEGER NOT NULL CHECK (ordinal >= 0),
            hash TEXT NOT NULL,
            status TEXT NOT NULL DEFAULT 'PENDING'
                CHECK (status IN ('PENDING', 'CONFIRMED', 'ORPHANED')),
            parent_checkpoint_ordinal INTEGER,
            source TEXT NOT NULL DEFAULT 'webhook',
            ledger_timestamp TEXT,
            created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
            confirmed_at TIMESTAMP,
            materialized_at TIMESTAMP,
            fibers_updated INTEGER,
            agents_updated INTEGER,
            contracts_updated INTEGER,
            UNIQUE(ordinal, hash)
        )
    """)

    cursor.execute("""
        CREATE TABLE IF NOT EXISTS checkpoint_records (
            ledger_ordinal INTEGER PRIMARY KEY,
            hash TEXT NOT NULL,
            checkpoint_ordinal INTEGER NOT NULL,
            observed_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
        )
    """)

    cursor.execute("""
        CREATE TABLE IF NOT EXISTS fiber_records (
            fiber_id TEXT PRIMARY KEY,
            workflow_type TEXT NOT NULL DEFAULT 'unknown',
            sequence_number INTEGER NOT NULL DEFAULT 0,
            current_state TEXT NOT NULL DEFAULT '',
            status TEXT NOT NULL DEFAULT 'ACTIVE'
                CHECK (status IN ('ACTIVE', 'ARCHIVED', 'FAILED')),
            owners TEXT NOT NULL DEFAULT '[]',
            state_data TEXT NOT NULL DEFAULT '{}',
            definition TEXT,
            creation_ordinal INTEGER,
            last_observed_ordinal INTEGER,
            updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
        )
    """)

    cursor.execute("""
        CREATE TABLE IF NOT EXISTS fiber_transitions (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            fiber_id TEXT NOT NULL,
            event_name TEXT NOT NULL,
            from_state TEXT NOT NULL,
            to_state TEXT NOT NULL,
            success INTEGER NOT NULL DEFAULT 1 CHECK (success IN (0, 1)),
            gas_used INTEGER NOT NULL DEFAULT 0,
            payload TEXT,
            snapshot_ordinal INTEGER NOT NULL,
            created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
            UNIQUE(fiber_id, snapshot_ordinal, event_name)
        )
    """)

    cursor.execute("""
        CREATE TABLE IF NOT EXISTS rejected_transactions (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            update_hash TEXT NOT NULL UNIQUE,
            ordinal INTEGER NOT NULL,
            timestamp TEXT NOT NULL,
            update_type TEXT NOT NULL,
            fiber_id TEXT NOT NULL,
            target_sequence_number INTEGER,
            error_codes TEXT NOT NULL DEFAULT '[]',
            errors TEXT NOT NULL DEFAULT '[]',
            signers TEXT NOT NULL DEFAULT '[]',
            raw_payload TEXT,
            created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
        )
    """)

    # Replaced by idx_snapshots_materialization.
    cursor.execute("DROP INDEX IF EXISTS idx_snapshots_unmaterialized")
    for statement in HOT_PATH_INDEX_STATEMENTS:
        cursor.execute(statement)

    create_snapshot_invariant_triggers(conn)
    conn.commit()
    conn.close()
