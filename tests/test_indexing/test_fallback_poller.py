"""Tests for the fallback poller's catch-up, fork signals and reprocess sweep."""

from __future__ import annotations

import httpx
import pytest
import respx

from fiber_indexer.core.events import Events
from fiber_indexer.db import snapshots_repo
from fiber_indexer.db.constants import STATUS_PENDING
from fiber_indexer.indexing.fallback import FallbackPoller
from fiber_indexer.indexing.ingestor import SnapshotIngestor
from fiber_indexer.indexing.queue import MaterializationQueue
from fiber_indexer.ledger import LedgerClient
from tests.builders import ML0_URL

PEER_URL = "http://peer2.test:9200"


class NullMaterializer:
    async def materialize(self, snapshot) -> None:
        return None


def _latest(ordinal: int, snapshot_hash: str) -> dict:
    return {"value": {"ordinal": ordinal}, "hash": snapshot_hash}


@pytest.mark.unit
def test_needs_a_peer():
    with pytest.raises(ValueError):
        FallbackPoller([], SnapshotIngestor())


@pytest.mark.unit
@pytest.mark.db
class TestCatchUp:
    async def test_dropped_ordinal_is_recreated_in_one_tick(self, test_db, event_bus):
        ingestor = SnapshotIngestor(bus=event_bus)
        await ingestor.ingest(100, "h100")
        await ingestor.ingest(102, "h102")

        with respx.mock() as mock:
            mock.get(f"{ML0_URL}/snapshots/latest").respond(json=_latest(102, "h102"))
            mock.get(f"{ML0_URL}/snapshots/101").respond(json=_latest(101, "h101"))
            async with LedgerClient(ML0_URL) as ml0:
                poller = FallbackPoller([ml0], ingestor, catchup_window=3, bus=event_bus)
                report = await poller.poll_once()

        assert report.created == (101,)
        recovered = snapshots_repo.get_snapshot(101, "h101")
        assert recovered.status == STATUS_PENDING
        assert recovered.source == "poller"
        assert poller.stats()["lastPolledOrdinal"] == 102

    async def test_peer_reported_tip_is_ingested_without_fetch(self, test_db, event_bus):
        ingestor = SnapshotIngestor(bus=event_bus)

        with respx.mock() as mock:
            mock.get(f"{ML0_URL}/snapshots/latest").respond(json=_latest(50, "h50"))
            async with LedgerClient(ML0_URL) as ml0:
                report = await FallbackPoller(
                    [ml0], ingestor, catchup_window=1, bus=event_bus
                ).poll_once()

        assert report.created == (50,)
        assert snapshots_repo.get_snapshot(50, "h50") is not None

    async def test_unavailable_snapshot_is_skipped(self, test_db, event_bus):
        ingestor = SnapshotIngestor(bus=event_bus)
        await ingestor.ingest(10, "h10")

        with respx.mock() as mock:
            mock.get(f"{ML0_URL}/snapshots/latest").respond(json=_latest(10, "h10"))
            mock.get(f"{ML0_URL}/snapshots/9").respond(404)
            async with LedgerClient(ML0_URL) as ml0:
                report = await FallbackPoller(
                    [ml0], ingestor, catchup_window=2, bus=event_bus
                ).poll_once()

        assert report.created == ()
        assert snapshots_repo.count_snapshots() == 1


@pytest.mark.unit
@pytest.mark.db
class TestPeers:
    async def test_fork_is_signalled_once_and_both_hashes_recorded(self, test_db, event_bus):
        ingestor = SnapshotIngestor(bus=event_bus)

        with respx.mock() as mock:
            mock.get(f"{ML0_URL}/snapshots/latest").respond(json=_latest(70, "h70-a"))
            mock.get(f"{PEER_URL}/snapshots/latest").respond(json=_latest(70, "h70-b"))
            async with LedgerClient(ML0_URL) as ml0, LedgerClient(PEER_URL) as peer:
                poller = FallbackPoller([ml0, peer], ingestor, catchup_window=1, bus=event_bus)
                first = await poller.poll_once()
                second = await poller.poll_once()

        assert len(first.forks) == 1
        assert first.forks[0].hashes_by_peer == {ML0_URL: "h70-a", PEER_URL: "h70-b"}
        assert len(second.forks) == 1
        assert len(event_bus.get_event_log(event_type=Events.FORK_DETECTED)) == 1
        rows = snapshots_repo.get_snapshots_at_ordinal(70)
        assert {row.status for row in rows} == {STATUS_PENDING}
        assert len(rows) == 2
        assert poller.stats()["lastFork"]["ordinal"] == 70

    async def test_unreachable_peer_is_recorded(self, test_db, event_bus):
        ingestor = SnapshotIngestor(bus=event_bus)

        with respx.mock() as mock:
            mock.get(f"{ML0_URL}/snapshots/latest").respond(json=_latest(5, "h5"))
            mock.get(f"{PEER_URL}/snapshots/latest").mock(side_effect=httpx.ConnectError)
            async with LedgerClient(ML0_URL) as ml0, LedgerClient(PEER_URL) as peer:
                poller = FallbackPoller([ml0, peer], ingestor, catchup_window=1, bus=event_bus)
                report = await poller.poll_once()

        assert report.peers_reached == 1
        peers = {state["url"]: state for state in poller.stats()["peers"]}
        assert peers[PEER_URL]["lastError"] is not None
        assert peers[ML0_URL]["ordinal"] == 5

    async def test_no_peer_reachable_still_sweeps(self, test_db, event_bus):
        snapshots_repo.insert_pending(3, "h3")
        queue = MaterializationQueue(NullMaterializer())

        with respx.mock() as mock:
            mock.get(f"{ML0_URL}/snapshots/latest").respond(503)
            async with LedgerClient(ML0_URL) as ml0:
                report = await FallbackPoller(
                    [ml0], SnapshotIngestor(bus=event_bus), queue=queue, bus=event_bus
                ).poll_once()

        assert report.peers_reached == 0
        assert report.max_ordinal is None
        assert report.reprocessed == 1
        assert queue.depth == 1
