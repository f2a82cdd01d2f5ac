"""
Rejection ledger: dedup store and classification for ledger rejections.

The ledger reports rejected updates through the same webhook as snapshots.
Each distinct ``updateHash`` is stored once. Classification is recomputed from
the stored error codes on every read, so the benign/critical rules can change
without touching stored rows.

Benign rejections are ordering races: the update was built against a sequence
number the ledger had already moved past, or arrived before the transition it
depends on. The caller's next natural retry resolves them. Everything else
(guard failures, malformed payloads, unauthorized signers) is critical.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import Any, Literal

from fiber_indexer.core.events import Events, IndexerEventBus
from fiber_indexer.core.events import bus as default_bus
from fiber_indexer.db import rejections_repo
from fiber_indexer.db.types import RejectedTransaction, RejectionPage

logger = logging.getLogger(__name__)

Classification = Literal["benign", "critical"]

BENIGN = "benign"
CRITICAL = "critical"

# Ordering-race codes reported by the ledger.
BENIGN_ERROR_CODES = frozenset({"SequenceNumberMismatch", "NoTransitionForEvent"})


def classify(error_codes: Iterable[str]) -> Classification:
    """Classify a rejection from its error codes.

    A rejection is benign only when it carries at least one code and every
    code is an ordering-race code.
    """
    codes = list(error_codes)
    if codes and all(code in BENIGN_ERROR_CODES for code in codes):
        return BENIGN
    return CRITICAL


def rejection_from_notification(
    notification: dict[str, Any], *, raw_payload: dict[str, Any] | None = None
) -> RejectedTransaction:
    """Build a storable rejection from a ``transaction.rejected`` notification.

    Args:
        notification: Validated notification in wire (camelCase) form.
        raw_payload: Body as received. Defaults to ``notification``.
    """
    rejection = notification["rejection"]
    errors = [
        {"code": str(error["code"]), "message": str(error.get("message", ""))}
        for error in rejection.get("errors", [])
    ]
    return RejectedTransaction(
        update_hash=rejection["updateHash"],
        ordinal=int(notification["ordinal"]),
        timestamp=str(notification["timestamp"]),
        update_type=rejection["updateType"],
        fiber_id=rejection["fiberId"],
        target_sequence_number=rejection.get("targetSequenceNumber"),
        error_codes=[error["code"] for error in errors],
        errors=errors,
        signers=list(rejection.get("signers", [])),
        raw_payload=raw_payload if raw_payload is not None else notification,
    )


@dataclass(frozen=True, slots=True)
class RecordResult:
    """Outcome of recording one rejection."""

    created: bool
    rejection: RejectedTransaction
    classification: Classification


@dataclass
class RejectionLedger:
    """Records and queries rejections. Stateless apart from the database."""

    bus: IndexerEventBus = field(default_factory=lambda: default_bus)

    async def record(self, rejection: RejectedTransaction) -> RecordResult:
        """Insert-if-absent keyed by update hash. The insert runs in a worker thread."""
        created = await asyncio.to_thread(rejections_repo.insert_rejection, rejection)
        classification = classify(rejection.error_codes)
        if not created:
            logger.debug("Rejection %s already recorded", rejection.update_hash)
            return RecordResult(False, rejection, classification)

        if classification == CRITICAL:
            logger.warning(
                "Critical rejection %s on fiber %s: %s",
                rejection.update_hash,
                rejection.fiber_id,
                ", ".join(rejection.error_codes) or "no error codes",
            )
        else:
            logger.info(
                "Benign rejection %s on fiber %s: %s",
                rejection.update_hash,
                rejection.fiber_id,
                ", ".join(rejection.error_codes),
            )
        self.bus.emit(
            Events.REJECTION_RECORDED,
            {
                "updateHash": rejection.update_hash,
                "fiberId": rejection.fiber_id,
                "ordinal": rejection.ordinal,
                "classification": classification,
            },
            source="rejections",
        )
        return RecordResult(True, rejection, classification)

    def get(self, update_hash: str) -> RejectedTransaction | None:
        return rejections_repo.get_rejection(update_hash)

    def query(
        self,
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
        return rejections_repo.query_rejections(
            fiber_id=fiber_id,
            update_type=update_type,
            signer=signer,
            error_code=error_code,
            from_ordinal=from_ordinal,
            to_ordinal=to_ordinal,
            limit=limit,
            offset=offset,
        )

    def has_critical(self, *, fiber_id: str | None = None, update_type: str | None = None) -> bool:
        """True if any stored rejection in scope classifies as critical."""
        offset = 0
        while True:
            page = self.query(fiber_id=fiber_id, update_type=update_type, limit=100, offset=offset)
            if any(classify(row.error_codes) == CRITICAL for row in page.rows):
                return True
            if not page.has_more:
                return False
            offset += len(page.rows)
