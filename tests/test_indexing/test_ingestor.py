"""Tests for snapshot ingestion (the acknowledge half of the webhook path)."""

from __future__ import annotations

import threading
from unittest.mock import patch

import pytest

from fiber_indexer.core.events import Events
from fiber_indexer.db import snapshots_repo
from fiber_indexer.db.constants import SOURCE_POLLER
from fiber_indexer.indexing.ingestor import SnapshotIngestor
from fiber_indexer.indexing.queue import MaterializationQueue


class NullMaterializer:
    async def materialize(self, snapshot) -> None:
        return None


@pytest.mark.unit
@pytest.mark.db
class TestIngest:
    async def test_second_delivery_is_already_indexed(self, test_db, event_bus):
        ingestor = SnapshotIngestor(bus=event_bus)

        first = await ingestor.ingest(100, "h100", ledger_timestamp="2026-01-01T00:00:00Z")
        second = await ingestor.ingest(100, "h100")

        assert first.created is True
        assert second.already_indexed is True
        assert second.snapshot.id == first.snapshot.id
        assert snapshots_repo.count_snapshots() == 1
        assert len(event_bus.get_event_log(event_type=Events.SNAPSHOT_INGESTED)) == 1

    async def test_competing_hash_is_recorded_and_flagged(self, test_db, event_bus):
        ingestor = SnapshotIngestor(bus=event_bus)
        await ingestor.ingest(100, "h100-a")

        result = await ingestor.ingest(100, "h100-b", source=SOURCE_POLLER)

        assert result.created is True
        assert result.competing is True
        assert result.snapshot.source == "poller"
        assert len(snapshots_repo.get_snapshots_at_ordinal(100)) == 2
        (event,) = event_bus.get_event_log(event_type=Events.SNAPSHOT_COMPETING)
        assert event.detail["rivalHashes"] == ["h100-a"]

    async def test_without_queue_rows_wait_for_reprocess(self, test_db, event_bus):
        result = await SnapshotIngestor(bus=event_bus).ingest(7, "h7")

        assert result.queued is False
        assert [s.id for s in snapshots_repo.list_unmaterialized()] == [result.snapshot.id]

    async def test_hands_off_to_queue(self, test_db, event_bus):
        queue = MaterializationQueue(NullMaterializer(), queue_size=1)
        ingestor = SnapshotIngestor(queue, bus=event_bus)

        assert (await ingestor.ingest(1, "h1")).queued is True
        shed = await ingestor.ingest(2, "h2")

        assert shed.created is True
        assert shed.queued is False
        assert queue.shed == 1

    async def test_insert_runs_off_the_event_loop(self, test_db, event_bus):
        loop_thread = threading.get_ident()
        insert_threads: list[int] = []
        insert_pending = snapshots_repo.insert_pending

        def tracking_insert(*args, **kwargs):
            insert_threads.append(threading.get_ident())
            return insert_pending(*args, **kwargs)

        with patch.object(snapshots_repo, "insert_pending", side_effect=tracking_insert):
            result = await SnapshotIngestor(bus=event_bus).ingest(5, "h5")

        assert result.created is True
        assert len(insert_threads) == 1
        assert insert_threads[0] != loop_thread
        (event,) = event_bus.get_event_log(event_type=Events.SNAPSHOT_INGESTED)
        assert event.detail["ordinal"] == 5
