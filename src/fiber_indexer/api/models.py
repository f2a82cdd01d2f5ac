"""
Pydantic models for the notifications the ledger pushes to the indexer.

The ledger speaks camelCase JSON. Models use snake_case attributes with
camelCase aliases, and ``model_dump(by_alias=True)`` gives back the wire form.

Models are organized into two categories:
1. Snapshot notifications (``snapshot.finalized``)
2. Rejection notifications (``transaction.rejected``)
"""

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

REJECTION_EVENT = "transaction.rejected"
SNAPSHOT_EVENT = "snapshot.finalized"


class WireModel(BaseModel):
    """Base for camelCase wire models. Accepts either field name form."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# ============================================================================
# SNAPSHOT NOTIFICATIONS
# ============================================================================


class SnapshotStats(WireModel):
    """Optional counters the ledger attaches to a snapshot notification."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="allow")

    updates_processed: int | None = None
    state_machines_active: int | None = None


class SnapshotNotification(WireModel):
    """
    A finalized metagraph snapshot.

    Attributes:
        event: Discriminator. Anything other than ``transaction.rejected`` is
            treated as a snapshot notification.
        ordinal: Snapshot ordinal.
        hash: Snapshot hash.
        timestamp: Ledger timestamp of the snapshot.
        stats: Optional counters, stored nowhere and only logged.
    """

    event: str | None = SNAPSHOT_EVENT
    ordinal: int = Field(ge=0)
    hash: str = Field(min_length=1)
    timestamp: str
    stats: SnapshotStats | None = None


# ============================================================================
# REJECTION NOTIFICATIONS
# ============================================================================


class ValidationErrorItem(WireModel):
    """One validation error the ledger reported for a rejected update."""

    code: str = Field(min_length=1)
    message: str = ""


class RejectedUpdate(WireModel):
    """The update the ledger refused."""

    update_type: str
    fiber_id: str
    target_sequence_number: int | None = None
    errors: list[ValidationErrorItem] = Field(default_factory=list)
    signers: list[str] = Field(default_factory=list)
    update_hash: str = Field(min_length=1)


class RejectionNotification(WireModel):
    """A ``transaction.rejected`` notification."""

    event: Literal["transaction.rejected"] = REJECTION_EVENT
    ordinal: int = Field(ge=0)
    timestamp: str
    metagraph_id: str | None = None
    rejection: RejectedUpdate

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True)
