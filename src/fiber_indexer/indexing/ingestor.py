"""
Snapshot ingestion: the acknowledge half of the webhook path.

``ingest`` does only what must happen before the ledger's delivery timeout:
an idempotency check, a PENDING insert, and a non-blocking hand off to the
materialization queue. The database work runs in a worker thread; events
and the queue hand off stay on the event loop. The fallback poller uses the
same entry point for snapshots the webhook never delivered, so both paths
share the first-writer-wins insert contract.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass

from fiber_indexer.core.events import Events, IndexerEventBus
from fiber_indexer.core.events import bus as default_bus
from fiber_indexer.db import snapshots_repo
from fiber_indexer.db.constants import SOURCE_WEBHOOK
from fiber_indexer.db.types import IndexedSnapshot
from fiber_indexer.indexing.queue import MaterializationQueue

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class IngestResult:
    """
    Outcome of one ingest call.

    Attributes:
        snapshot: The row for (ordinal, hash), new or pre-existing.
        created: False when the notification was a duplicate.
        competing: True when another hash was already recorded at the ordinal.
        queued: True when materialization was handed off.
    """

    snapshot: IndexedSnapshot
    created: bool
    competing: bool = False
    queued: bool = False

    @property
    def already_indexed(self) -> bool:
        return not self.created


class SnapshotIngestor:
    """
    Records snapshot notifications and triggers materialization.

    Args:
        queue: Materialization queue. When None, rows are recorded and left
            for the reprocess sweep.
        bus: Event bus.
    """

    def __init__(
        self,
        queue: MaterializationQueue | None = None,
        *,
        bus: IndexerEventBus | None = None,
    ) -> None:
        self.queue = queue
        self.bus = bus or default_bus

    async def ingest(
        self,
        ordinal: int,
        snapshot_hash: str,
        *,
        source: str = SOURCE_WEBHOOK,
        ledger_timestamp: str | None = None,
    ) -> IngestResult:
        """Record ``(ordinal, hash)`` as PENDING unless already present."""
        snapshot, created, rivals = await asyncio.to_thread(
            _record_pending, ordinal, snapshot_hash, source, ledger_timestamp
        )
        if not created:
            return IngestResult(snapshot=snapshot, created=False)

        if rivals:
            logger.warning(
                "Competing snapshot at ordinal %s: %s vs %s (left for confirmation)",
                ordinal,
                snapshot_hash,
                ", ".join(row.hash for row in rivals),
            )
            self.bus.emit(
                Events.SNAPSHOT_COMPETING,
                {
                    "ordinal": ordinal,
                    "hash": snapshot_hash,
                    "rivalHashes": [row.hash for row in rivals],
                    "source": source,
                },
                source="ingestor",
            )

        logger.info("Indexed snapshot %s (%s) from %s", ordinal, snapshot_hash, source)
        self.bus.emit(
            Events.SNAPSHOT_INGESTED,
            {"ordinal": ordinal, "hash": snapshot_hash, "source": source},
            source="ingestor",
        )

        queued = self.queue.submit(snapshot) if self.queue is not None else False
        return IngestResult(snapshot=snapshot, created=True, competing=bool(rivals), queued=queued)


def _record_pending(
    ordinal: int, snapshot_hash: str, source: str, ledger_timestamp: str | None
) -> tuple[IndexedSnapshot, bool, list[IndexedSnapshot]]:
    """Insert the PENDING row. Returns ``(row, created, rivals at the ordinal)``."""
    existing = snapshots_repo.get_snapshot(ordinal, snapshot_hash)
    if existing is not None:
        logger.debug("Snapshot %s (%s) already indexed", ordinal, snapshot_hash)
        return existing, False, []

    rivals = [
        row for row in snapshots_repo.get_snapshots_at_ordinal(ordinal)
        if row.hash != snapshot_hash
    ]
    snapshot, created = snapshots_repo.insert_pending(
        ordinal,
        snapshot_hash,
        source=source,
        ledger_timestamp=ledger_timestamp,
    )
    if not created:
        # Lost a race with a concurrent insert of the same pair
        return snapshot, False, []
    return snapshot, True, rivals
