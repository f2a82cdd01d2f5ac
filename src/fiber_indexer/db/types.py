"""Shared DB-layer dataclasses for repository contracts."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from fiber_indexer.db.constants import STATUS_PENDING


@dataclass(slots=True)
class IndexedSnapshot:
    """
    One ledger snapshot observed by the indexer.

    Attributes:
        id: Row id. Two rows may share an ordinal when the ledger reported
            competing hashes at the same height.
        ordinal: Ledger snapshot ordinal.
        hash: Snapshot hash as reported by the ledger.
        status: PENDING, CONFIRMED or ORPHANED.
        parent_checkpoint_ordinal: Checkpoint-layer ordinal that confirmed
            this snapshot. Set once, on confirmation.
        source: ``webhook`` or ``poller``.
        ledger_timestamp: Timestamp carried by the notification, if any.
        created_at: When the row was first written.
        confirmed_at: When the status became terminal.
        materialized_at: When materialization last succeeded.
        fibers_updated: Materialization counters. ``None`` until the snapshot
            has been materialized.
    """

    id: int
    ordinal: int
    hash: str
    status: str = STATUS_PENDING
    parent_checkpoint_ordinal: int | None = None
    source: str = "webhook"
    ledger_timestamp: str | None = None
    created_at: str | None = None
    confirmed_at: str | None = None
    materialized_at: str | None = None
    fibers_updated: int | None = None
    agents_updated: int | None = None
    contracts_updated: int | None = None

    @property
    def is_materialized(self) -> bool:
        return self.fibers_updated is not None


@dataclass(slots=True)
class SnapshotTotals:
    """Row counts per snapshot status."""

    pending: int = 0
    confirmed: int = 0
    orphaned: int = 0
    unmaterialized: int = 0

    @property
    def total(self) -> int:
        return self.pending + self.confirmed + self.orphaned


@dataclass(slots=True)
class CheckpointRecord:
    """
    What the checkpoint layer reported for one metagraph height.

    Attributes:
        ledger_ordinal: Metagraph snapshot ordinal.
        hash: Metagraph snapshot hash the checkpoint layer committed.
        checkpoint_ordinal: Checkpoint-layer (global) snapshot ordinal.
        observed_at: When the indexer first saw this record.
    """

    ledger_ordinal: int
    hash: str
    checkpoint_ordinal: int
    observed_at: str | None = None


@dataclass(slots=True)
class FiberRecord:
    """
    Materialized view of one fiber (ledger state-machine instance).

    Attributes:
        fiber_id: Stable fiber identifier.
        workflow_type: Name from the state machine definition metadata.
        sequence_number: Count of accepted transitions; never decreases.
        current_state: Current state label.
        status: ACTIVE, ARCHIVED or FAILED.
        owners: Owner addresses, sorted.
        state_data: Opaque state payload.
        definition: Opaque state machine definition, when delivered.
        creation_ordinal: Ordinal at which the fiber was first observed.
        last_observed_ordinal: Ordinal of the snapshot that last wrote it.
        updated_at: Bookkeeping timestamp of the last write.
    """

    fiber_id: str
    workflow_type: str
    sequence_number: int
    current_state: str
    status: str
    owners: list[str] = field(default_factory=list)
    state_data: dict[str, Any] = field(default_factory=dict)
    definition: dict[str, Any] | None = None
    creation_ordinal: int | None = None
    last_observed_ordinal: int | None = None
    updated_at: str | None = None


@dataclass(slots=True)
class FiberTransition:
    """One transition receipt observed for a fiber."""

    fiber_id: str
    event_name: str
    from_state: str
    to_state: str
    success: bool
    snapshot_ordinal: int
    gas_used: int = 0
    payload: dict[str, Any] | None = None
    id: int | None = None
    created_at: str | None = None


@dataclass(slots=True)
class RejectedTransaction:
    """
    A transaction the ledger rejected, stored once per update hash.

    Attributes:
        update_hash: Dedup key.
        ordinal: Ledger ordinal reported with the rejection.
        timestamp: Rejection timestamp.
        update_type: Kind of update (for example ``TransitionStateMachine``).
        fiber_id: Target fiber.
        target_sequence_number: Sequence number the update was built for.
        error_codes: Error codes in the order the ledger reported them.
        errors: ``{code, message}`` pairs.
        signers: Addresses that signed the update.
        raw_payload: Full notification as received.
    """

    update_hash: str
    ordinal: int
    timestamp: str
    update_type: str
    fiber_id: str
    error_codes: list[str]
    errors: list[dict[str, str]] = field(default_factory=list)
    signers: list[str] = field(default_factory=list)
    target_sequence_number: int | None = None
    raw_payload: dict[str, Any] | None = None
    id: int | None = None
    created_at: str | None = None


@dataclass(slots=True)
class RejectionPage:
    """One page of a rejection query."""

    rows: list[RejectedTransaction]
    total: int
    limit: int
    offset: int

    @property
    def has_more(self) -> bool:
        return self.offset + len(self.rows) < self.total
