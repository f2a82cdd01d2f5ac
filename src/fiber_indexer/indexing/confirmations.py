"""
Confirmation poller: resolves PENDING snapshots against the checkpoint layer.

Each tick:

1. Fetch the checkpoint layer's latest global snapshot, then walk forward from
   the last walked global ordinal (a bounded batch per tick). Every metagraph
   height a global snapshot commits is persisted as a checkpoint record.
2. The confirmed frontier is the highest metagraph ordinal on record.
3. Each PENDING snapshot at or below the frontier is compared with the record
   at its height: same hash -> CONFIRMED, different hash -> ORPHANED, no
   record -> left PENDING.

A snapshot is never orphaned because the checkpoint layer is unreachable or
lagging; only an explicit, differing record at the same height does that.
Status changes go through the PENDING-only conditional updates in
``snapshots_repo``, so a concurrent fallback poller tick cannot double-apply.
Database work runs in a worker thread; events are emitted on the event loop.

Without a configured metagraph id the poller cannot tell which state channel
is ours. It then records only channels whose hash matches a PENDING row.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any

from fiber_indexer.core.events import Events, IndexerEventBus
from fiber_indexer.core.events import bus as default_bus
from fiber_indexer.db import checkpoints_repo, snapshots_repo
from fiber_indexer.db.constants import STATUS_CONFIRMED, STATUS_ORPHANED, STATUS_PENDING
from fiber_indexer.db.types import CheckpointRecord, IndexedSnapshot
from fiber_indexer.indexing.periodic import PeriodicTask
from fiber_indexer.ledger.checkpoint import CheckpointLayerClient, GlobalSnapshot
from fiber_indexer.ledger.errors import LedgerError

logger = logging.getLogger(__name__)

# (status, snapshot, checkpoint record) for a row moved out of PENDING
_Settled = tuple[str, IndexedSnapshot, CheckpointRecord]


@dataclass(frozen=True, slots=True)
class ConfirmationReport:
    """What one confirmation tick did."""

    available: bool
    checkpoint_ordinal: int | None = None
    frontier: int | None = None
    records_added: int = 0
    confirmed: int = 0
    orphaned: int = 0
    still_pending: int = 0


class ConfirmationPoller:
    """
    Periodically promotes or demotes PENDING snapshots.

    Args:
        checkpoint: Open checkpoint-layer client.
        metagraph_id: State channel id of this metagraph. Empty selects the
            hash-matching mode described in the module docstring.
        interval: Seconds between ticks.
        batch: Maximum global snapshots walked per tick.
        bus: Event bus for confirmed/orphaned events.
    """

    def __init__(
        self,
        checkpoint: CheckpointLayerClient,
        *,
        metagraph_id: str = "",
        interval: float = 15.0,
        batch: int = 25,
        bus: IndexerEventBus | None = None,
    ) -> None:
        self.checkpoint = checkpoint
        self.metagraph_id = metagraph_id
        self.batch = max(batch, 0)
        self.bus = bus or default_bus
        self.task = PeriodicTask("confirmation-poller", interval, self._tick)
        self._walk_cursor: int | None = None
        self.last_checkpoint_ordinal: int | None = None
        self.last_error: str | None = None
        self.last_report: ConfirmationReport | None = None

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    def start(self) -> None:
        if not self.metagraph_id:
            logger.warning(
                "No metagraph id configured; confirming any state channel that matches a "
                "PENDING hash"
            )
        self.task.start()

    async def stop(self) -> None:
        await self.task.stop()

    @property
    def is_running(self) -> bool:
        return self.task.is_running

    async def _tick(self) -> None:
        await self.poll_once()

    # -------------------------------------------------------------------------
    # Tick
    # -------------------------------------------------------------------------

    async def poll_once(self) -> ConfirmationReport:
        """Run one confirmation pass."""
        try:
            latest = await self.checkpoint.get_latest()
        except LedgerError as e:
            self.last_error = str(e)
            logger.warning("Checkpoint layer unavailable, skipping confirmation: %s", e)
            report = ConfirmationReport(available=False)
            self.last_report = report
            return report

        self.last_error = None
        self.last_checkpoint_ordinal = latest.ordinal
        added = 0
        for global_snapshot in await self._walk(latest):
            added += await asyncio.to_thread(self._record, global_snapshot)
        added += await asyncio.to_thread(self._record, latest)

        report = await self._resolve(latest.ordinal, added)
        self.last_report = report
        return report

    async def _walk(self, latest: GlobalSnapshot) -> list[GlobalSnapshot]:
        """Fetch global snapshots between the walk cursor and ``latest``."""
        if self._walk_cursor is None:
            self._walk_cursor = max(latest.ordinal - self.batch, -1)
        start = self._walk_cursor + 1
        stop = min(latest.ordinal, start + self.batch)

        walked: list[GlobalSnapshot] = []
        for ordinal in range(start, stop):
            try:
                global_snapshot = await self.checkpoint.get_by_ordinal(ordinal)
            except LedgerError as e:
                logger.warning("Stopped checkpoint walk at %s: %s", ordinal, e)
                break
            self._walk_cursor = ordinal
            if global_snapshot is not None:
                walked.append(global_snapshot)
        if stop >= latest.ordinal and self._walk_cursor == latest.ordinal - 1:
            self._walk_cursor = latest.ordinal
        return walked

    def _record(self, global_snapshot: GlobalSnapshot) -> int:
        """Persist the metagraph heights this global snapshot commits. Runs in a worker thread."""
        if self.metagraph_id:
            channel = global_snapshot.channel(self.metagraph_id)
            channels = [channel] if channel is not None else []
        else:
            pending_hashes = {row.hash: row.ordinal for row in snapshots_repo.list_pending()}
            channels = []
            for channel in global_snapshot.channels.values():
                if channel.hash not in pending_hashes:
                    continue
                if pending_hashes[channel.hash] != channel.ordinal:
                    logger.warning(
                        "Channel %s commits hash %s at %s but it was indexed at %s",
                        channel.metagraph_id,
                        channel.hash,
                        channel.ordinal,
                        pending_hashes[channel.hash],
                    )
                    continue
                channels.append(channel)

        added = 0
        for channel in channels:
            if checkpoints_repo.record_checkpoint(
                channel.ordinal, channel.hash, global_snapshot.ordinal
            ):
                added += 1
        return added

    async def _resolve(self, checkpoint_ordinal: int, records_added: int) -> ConfirmationReport:
        frontier, settled, still_pending = await asyncio.to_thread(_settle_pending)
        if frontier is None:
            return ConfirmationReport(
                available=True,
                checkpoint_ordinal=checkpoint_ordinal,
                records_added=records_added,
                still_pending=still_pending,
            )

        confirmed = orphaned = 0
        for status, snapshot, record in settled:
            if status == STATUS_CONFIRMED:
                confirmed += 1
                self.bus.emit(
                    Events.SNAPSHOT_CONFIRMED,
                    {
                        "ordinal": snapshot.ordinal,
                        "hash": snapshot.hash,
                        "checkpointOrdinal": record.checkpoint_ordinal,
                    },
                    source="confirmations",
                )
            else:
                orphaned += 1
                self.bus.emit(
                    Events.SNAPSHOT_ORPHANED,
                    {
                        "ordinal": snapshot.ordinal,
                        "hash": snapshot.hash,
                        "winningHash": record.hash,
                        "checkpointOrdinal": record.checkpoint_ordinal,
                    },
                    source="confirmations",
                )

        return ConfirmationReport(
            available=True,
            checkpoint_ordinal=checkpoint_ordinal,
            frontier=frontier,
            records_added=records_added,
            confirmed=confirmed,
            orphaned=orphaned,
            still_pending=still_pending,
        )

    # -------------------------------------------------------------------------
    # Stats
    # -------------------------------------------------------------------------

    def stats(self) -> dict[str, Any]:
        totals = snapshots_repo.get_totals()
        latest_confirmed = snapshots_repo.get_last_confirmed()
        frontier, _ = checkpoints_repo.get_frontier()
        return {
            "pending": totals.pending,
            "confirmed": totals.confirmed,
            "orphaned": totals.orphaned,
            "latestConfirmedOrdinal": latest_confirmed.ordinal if latest_confirmed else None,
            "latestConfirmedAt": latest_confirmed.confirmed_at if latest_confirmed else None,
            "lastCheckpointOrdinal": self.last_checkpoint_ordinal,
            "confirmedFrontier": frontier,
            "lastError": self.last_error,
            "isRunning": self.is_running,
        }


def _settle_pending() -> tuple[int | None, list[_Settled], int]:
    """
    Compare PENDING rows at or below the frontier with their checkpoint records.

    Returns:
        ``(frontier, settled, still_pending)`` where ``settled`` holds the
        rows this call moved to CONFIRMED or ORPHANED. Rows another tick
        already settled are left out.
    """
    frontier, _ = checkpoints_repo.get_frontier()
    if frontier is None:
        return None, [], snapshots_repo.count_snapshots(status=STATUS_PENDING)

    settled: list[_Settled] = []
    still_pending = 0
    for snapshot in snapshots_repo.list_pending(max_ordinal=frontier):
        record = checkpoints_repo.get_checkpoint(snapshot.ordinal)
        if record is None:
            still_pending += 1
            continue

        if record.hash == snapshot.hash:
            if snapshots_repo.confirm_snapshot(snapshot.id, record.checkpoint_ordinal):
                logger.info(
                    "Confirmed snapshot %s (%s) at checkpoint %s",
                    snapshot.ordinal,
                    snapshot.hash,
                    record.checkpoint_ordinal,
                )
                settled.append((STATUS_CONFIRMED, snapshot, record))
        elif snapshots_repo.orphan_snapshot(snapshot.id):
            logger.warning(
                "Orphaned snapshot %s (%s): checkpoint %s committed %s",
                snapshot.ordinal,
                snapshot.hash,
                record.checkpoint_ordinal,
                record.hash,
            )
            settled.append((STATUS_ORPHANED, snapshot, record))
    return frontier, settled, still_pending
