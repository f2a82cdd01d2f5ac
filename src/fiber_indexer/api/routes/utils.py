"""Shared helpers for API route modules."""

from typing import Any

from fastapi.responses import JSONResponse
from pydantic import ValidationError

from fiber_indexer.db.types import (
    FiberRecord,
    FiberTransition,
    IndexedSnapshot,
    RejectedTransaction,
)
from fiber_indexer.indexing.rejections import classify

MAX_PAGE_SIZE = 100


def clamp_limit(limit: int, default: int) -> int:
    """Clamp a page size into ``1..MAX_PAGE_SIZE`` (``default`` when not positive)."""
    if limit <= 0:
        return default
    return min(limit, MAX_PAGE_SIZE)


def invalid_payload(
    exc: ValidationError | None = None, *, message: str | None = None
) -> JSONResponse:
    """400 response for a webhook body that failed validation."""
    if exc is not None:
        details = [
            {"loc": list(error["loc"]), "msg": error["msg"], "type": error["type"]}
            for error in exc.errors()
        ]
    else:
        details = [{"loc": [], "msg": message or "Invalid body", "type": "value_error"}]
    return JSONResponse(status_code=400, content={"error": "Invalid payload", "details": details})


def snapshot_to_dict(snapshot: IndexedSnapshot) -> dict[str, Any]:
    return {
        "ordinal": snapshot.ordinal,
        "hash": snapshot.hash,
        "status": snapshot.status,
        "parentCheckpointOrdinal": snapshot.parent_checkpoint_ordinal,
        "source": snapshot.source,
        "ledgerTimestamp": snapshot.ledger_timestamp,
        "createdAt": snapshot.created_at,
        "confirmedAt": snapshot.confirmed_at,
        "materializedAt": snapshot.materialized_at,
        "fibersUpdated": snapshot.fibers_updated,
        "agentsUpdated": snapshot.agents_updated,
        "contractsUpdated": snapshot.contracts_updated,
    }


def fiber_to_dict(fiber: FiberRecord) -> dict[str, Any]:
    return {
        "fiberId": fiber.fiber_id,
        "workflowType": fiber.workflow_type,
        "sequenceNumber": fiber.sequence_number,
        "currentState": fiber.current_state,
        "status": fiber.status,
        "owners": fiber.owners,
        "stateData": fiber.state_data,
        "definition": fiber.definition,
        "creationOrdinal": fiber.creation_ordinal,
        "lastObservedOrdinal": fiber.last_observed_ordinal,
        "updatedAt": fiber.updated_at,
    }


def transition_to_dict(transition: FiberTransition) -> dict[str, Any]:
    return {
        "id": transition.id,
        "fiberId": transition.fiber_id,
        "eventName": transition.event_name,
        "fromState": transition.from_state,
        "toState": transition.to_state,
        "success": transition.success,
        "gasUsed": transition.gas_used,
        "payload": transition.payload,
        "snapshotOrdinal": transition.snapshot_ordinal,
        "createdAt": transition.created_at,
    }


def rejection_to_dict(
    rejection: RejectedTransaction, *, include_raw: bool = False
) -> dict[str, Any]:
    data: dict[str, Any] = {
        "id": rejection.id,
        "updateHash": rejection.update_hash,
        "ordinal": rejection.ordinal,
        "timestamp": rejection.timestamp,
        "updateType": rejection.update_type,
        "fiberId": rejection.fiber_id,
        "targetSequenceNumber": rejection.target_sequence_number,
        "errorCodes": rejection.error_codes,
        "errors": rejection.errors,
        "signers": rejection.signers,
        "classification": classify(rejection.error_codes),
        "createdAt": rejection.created_at,
    }
    if include_raw:
        data["rawPayload"] = rejection.raw_payload
    return data
