"""
Snapshot materialization: ledger state payload -> fiber records.

The materializer turns one indexed snapshot into fiber rows and transition
history. It supports the two delivery modes a metagraph node can offer:

``full``
    Fetch the node's complete checkpoint state and upsert every fiber in it.
    This is the default and matches what current nodes serve.

``diff``
    Fetch the snapshot body for the row's ordinal and patch only the fibers it
    lists under ``updates.stateMachines``.

Idempotence does not depend on the mode. Every value written is derived from
the payload, and a fiber upsert is a no-op unless the payload's sequence
number is at least the stored one, so replaying a snapshot (or replaying an
older one after a newer one) cannot move a fiber backwards.

All rows derived from one snapshot are written in a single transaction. A
failure leaves the snapshot PENDING with NULL counters so the reprocess sweep
can pick it up again.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Literal

from fiber_indexer.core.events import Events, IndexerEventBus
from fiber_indexer.core.events import bus as default_bus
from fiber_indexer.db import fibers_repo, snapshots_repo
from fiber_indexer.db.constants import (
    AGENT_WORKFLOW_TYPE,
    CONTRACT_WORKFLOW_TYPE,
    FIBER_ACTIVE,
    FIBER_ARCHIVED,
    FIBER_FAILED,
)
from fiber_indexer.db.types import FiberRecord, FiberTransition, IndexedSnapshot
from fiber_indexer.ledger.client import LedgerClient

logger = logging.getLogger(__name__)

DeliveryMode = Literal["full", "diff"]


class MaterializationError(RuntimeError):
    """The payload for a snapshot could not be obtained or does not match it."""


# ── Result ───────────────────────────────────────────────────────────────────


@dataclass(frozen=True, slots=True)
class MaterializationResult:
    """Counts reported for one materialized snapshot."""

    snapshot_id: int
    ordinal: int
    state_ordinal: int
    fibers_updated: int
    agents_updated: int
    contracts_updated: int
    fibers_written: int = 0

    def to_counts(self) -> dict[str, int]:
        return {
            "fibersUpdated": self.fibers_updated,
            "agentsUpdated": self.agents_updated,
            "contractsUpdated": self.contracts_updated,
        }


@dataclass(frozen=True, slots=True)
class DerivedState:
    """Rows derived from one state payload, before they are written."""

    records: list[FiberRecord]
    transitions: list[FiberTransition]
    agents: int
    contracts: int


# ── Payload decoding ─────────────────────────────────────────────────────────


def _label(value: Any, default: str = "unknown") -> str:
    """State labels arrive either bare or wrapped as ``{"value": label}``."""
    if isinstance(value, dict):
        value = value.get("value")
    return str(value) if value not in (None, "") else default


def _fiber_status(raw: Any) -> str:
    lowered = str(raw or "").lower()
    if lowered == "archived":
        return FIBER_ARCHIVED
    if lowered == "failed":
        return FIBER_FAILED
    return FIBER_ACTIVE


def _workflow_type(fiber: dict[str, Any]) -> str:
    metadata = (fiber.get("definition") or {}).get("metadata") or {}
    return str(metadata.get("name") or "Unknown")


def _matches_schema(fiber: dict[str, Any], workflow_type: str, schema: str) -> bool:
    state_data = fiber.get("stateData") or {}
    return workflow_type == schema or state_data.get("schema") == schema


def derive_state(state_machines: dict[str, Any], ordinal: int) -> DerivedState:
    """Derive fiber rows and transitions from a ``stateMachines`` mapping.

    Pure function of its inputs. ``ordinal`` is the ledger ordinal the state
    belongs to; it tags transitions and the fibers' last observed ordinal.
    """
    records: list[FiberRecord] = []
    transitions: list[FiberTransition] = []
    agents = contracts = 0

    for fiber_id in sorted(state_machines):
        fiber = state_machines[fiber_id] or {}
        workflow_type = _workflow_type(fiber)
        creation = fiber.get("creationOrdinal")
        if isinstance(creation, dict):
            creation = creation.get("value")

        records.append(
            FiberRecord(
                fiber_id=fiber_id,
                workflow_type=workflow_type,
                sequence_number=int(fiber.get("sequenceNumber") or 0),
                current_state=_label(fiber.get("currentState")),
                status=_fiber_status(fiber.get("status")),
                owners=sorted(set(fiber.get("owners") or [])),
                state_data=dict(fiber.get("stateData") or {}),
                definition=fiber.get("definition"),
                creation_ordinal=int(creation) if creation is not None else ordinal,
                last_observed_ordinal=ordinal,
            )
        )

        receipt = fiber.get("lastReceipt")
        if isinstance(receipt, dict) and receipt.get("eventName"):
            transitions.append(
                FiberTransition(
                    fiber_id=fiber_id,
                    event_name=str(receipt["eventName"]),
                    from_state=_label(receipt.get("fromState")),
                    to_state=_label(receipt.get("toState")),
                    success=bool(receipt.get("success", True)),
                    gas_used=int(receipt.get("gasUsed") or 0),
                    payload=receipt.get("payload"),
                    snapshot_ordinal=ordinal,
                )
            )

        if _matches_schema(fiber, workflow_type, AGENT_WORKFLOW_TYPE):
            agents += 1
        if _matches_schema(fiber, workflow_type, CONTRACT_WORKFLOW_TYPE):
            contracts += 1

    return DerivedState(
        records=records, transitions=transitions, agents=agents, contracts=contracts
    )


# ── Materializer ─────────────────────────────────────────────────────────────


class Materializer:
    """
    Fetches a snapshot's state payload and writes the derived fiber rows.

    Args:
        ledger: Open client for the metagraph L0 node.
        delivery_mode: ``full`` or ``diff``.
        bus: Event bus for ``snapshot:materialized`` events.
    """

    def __init__(
        self,
        ledger: LedgerClient,
        *,
        delivery_mode: DeliveryMode = "full",
        bus: IndexerEventBus | None = None,
    ) -> None:
        if delivery_mode not in ("full", "diff"):
            raise ValueError(f"Unknown delivery mode: {delivery_mode!r}")
        self.ledger = ledger
        self.delivery_mode = delivery_mode
        self.bus = bus or default_bus

    async def _fetch_full(self, snapshot: IndexedSnapshot) -> tuple[int, dict[str, Any]]:
        checkpoint = await self.ledger.get_checkpoint()
        state_ordinal = int(checkpoint["ordinal"])
        if state_ordinal < snapshot.ordinal:
            # Node state has not caught up with the notification yet
            raise MaterializationError(
                f"checkpoint ordinal {state_ordinal} is behind snapshot {snapshot.ordinal}"
            )
        state = checkpoint.get("state") or {}
        return state_ordinal, dict(state.get("stateMachines") or {})

    async def _fetch_diff(self, snapshot: IndexedSnapshot) -> tuple[int, dict[str, Any]]:
        body = await self.ledger.get_snapshot(snapshot.ordinal)
        if body is None:
            raise MaterializationError(f"node has no snapshot at ordinal {snapshot.ordinal}")
        value = body.get("value") if isinstance(body.get("value"), dict) else body
        body_hash = body.get("hash") or value.get("hash")
        if body_hash and body_hash != snapshot.hash:
            raise MaterializationError(
                f"node snapshot {snapshot.ordinal} has hash {body_hash}, expected {snapshot.hash}"
            )
        updates = value.get("updates") or {}
        return snapshot.ordinal, dict(updates.get("stateMachines") or {})

    async def materialize(self, snapshot: IndexedSnapshot) -> MaterializationResult:
        """
        Materialize one snapshot and record its counters.

        Raises:
            MaterializationError: Payload missing, stale, or for another hash.
            LedgerError: The node could not be queried.
            DatabaseError: The rows could not be written.
        """
        if self.delivery_mode == "diff":
            state_ordinal, state_machines = await self._fetch_diff(snapshot)
        else:
            state_ordinal, state_machines = await self._fetch_full(snapshot)

        derived = derive_state(state_machines, state_ordinal)
        written = await asyncio.to_thread(
            fibers_repo.apply_snapshot_fibers,
            derived.records,
            derived.transitions,
            ordinal=snapshot.ordinal,
        )
        result = MaterializationResult(
            snapshot_id=snapshot.id,
            ordinal=snapshot.ordinal,
            state_ordinal=state_ordinal,
            fibers_updated=len(derived.records),
            agents_updated=derived.agents,
            contracts_updated=derived.contracts,
            fibers_written=written,
        )
        await asyncio.to_thread(
            snapshots_repo.record_materialization,
            snapshot.id,
            fibers_updated=result.fibers_updated,
            agents_updated=result.agents_updated,
            contracts_updated=result.contracts_updated,
        )

        logger.info(
            "Materialized snapshot %s (state %s): %s fibers, %s agents, %s contracts",
            snapshot.ordinal,
            state_ordinal,
            result.fibers_updated,
            result.agents_updated,
            result.contracts_updated,
        )
        self.bus.emit(
            Events.SNAPSHOT_MATERIALIZED,
            {"ordinal": snapshot.ordinal, "hash": snapshot.hash, **result.to_counts()},
            source="materializer",
        )
        return result
