"""Tests for resolving PENDING snapshots against the checkpoint layer."""

from __future__ import annotations

import threading
from unittest.mock import patch

import pytest
import respx

from fiber_indexer.core.events import Events
from fiber_indexer.db import checkpoints_repo, snapshots_repo
from fiber_indexer.db.constants import STATUS_CONFIRMED, STATUS_ORPHANED, STATUS_PENDING
from fiber_indexer.indexing.confirmations import ConfirmationPoller
from fiber_indexer.ledger import CheckpointLayerClient
from tests.builders import CHECKPOINT_URL, METAGRAPH_ID, make_global_snapshot


async def _poll(
    latest: dict,
    *,
    metagraph_id: str = METAGRAPH_ID,
    batch: int = 0,
    bus=None,
    history: dict[int, dict] | None = None,
):
    with respx.mock(base_url=CHECKPOINT_URL, assert_all_called=False) as mock:
        mock.get("/global-snapshots/latest").respond(json=latest)
        for ordinal, body in (history or {}).items():
            mock.get(f"/global-snapshots/{ordinal}").respond(json=body)
        async with CheckpointLayerClient(CHECKPOINT_URL) as gl0:
            poller = ConfirmationPoller(gl0, metagraph_id=metagraph_id, batch=batch, bus=bus)
            return poller, await poller.poll_once()


@pytest.mark.unit
@pytest.mark.db
class TestConfirmation:
    async def test_matching_hash_is_confirmed_with_parent(self, test_db, event_bus):
        snapshot, _ = snapshots_repo.insert_pending(100, "h100")

        _, report = await _poll(
            make_global_snapshot(900, {METAGRAPH_ID: (100, "h100")}), bus=event_bus
        )

        stored = snapshots_repo.get_snapshot_by_id(snapshot.id)
        assert stored.status == STATUS_CONFIRMED
        assert stored.parent_checkpoint_ordinal == 900
        assert (report.confirmed, report.orphaned, report.frontier) == (1, 0, 100)
        assert len(event_bus.get_event_log(event_type=Events.SNAPSHOT_CONFIRMED)) == 1

    async def test_competing_rows_resolve_to_one_winner(self, test_db, event_bus):
        winner, _ = snapshots_repo.insert_pending(100, "h100-a")
        loser, _ = snapshots_repo.insert_pending(100, "h100-b")

        _, report = await _poll(
            make_global_snapshot(900, {METAGRAPH_ID: (100, "h100-a")}), bus=event_bus
        )

        assert snapshots_repo.get_snapshot_by_id(winner.id).status == STATUS_CONFIRMED
        orphan = snapshots_repo.get_snapshot_by_id(loser.id)
        assert orphan.status == STATUS_ORPHANED
        assert orphan.parent_checkpoint_ordinal is None
        assert (report.confirmed, report.orphaned) == (1, 1)
        (event,) = event_bus.get_event_log(event_type=Events.SNAPSHOT_ORPHANED)
        assert event.detail["winningHash"] == "h100-a"

    async def test_heights_without_record_stay_pending(self, test_db, event_bus):
        below, _ = snapshots_repo.insert_pending(99, "h99")
        above, _ = snapshots_repo.insert_pending(101, "h101")

        _, report = await _poll(
            make_global_snapshot(900, {METAGRAPH_ID: (100, "h100")}), bus=event_bus
        )

        assert snapshots_repo.get_snapshot_by_id(below.id).status == STATUS_PENDING
        assert snapshots_repo.get_snapshot_by_id(above.id).status == STATUS_PENDING
        assert report.still_pending == 1

    async def test_other_channels_are_ignored(self, test_db, event_bus):
        snapshots_repo.insert_pending(100, "h100")

        _, report = await _poll(
            make_global_snapshot(900, {"DAG0other": (100, "different")}), bus=event_bus
        )

        assert report.records_added == 0
        assert report.frontier is None
        assert snapshots_repo.get_snapshot(100, "h100").status == STATUS_PENDING

    async def test_terminal_rows_are_not_revisited(self, test_db, event_bus):
        snapshot, _ = snapshots_repo.insert_pending(100, "h100")
        snapshots_repo.confirm_snapshot(snapshot.id, 800)

        _, report = await _poll(
            make_global_snapshot(900, {METAGRAPH_ID: (100, "h100")}), bus=event_bus
        )

        assert report.confirmed == 0
        assert snapshots_repo.get_snapshot_by_id(snapshot.id).parent_checkpoint_ordinal == 800

    async def test_database_work_runs_off_the_event_loop(self, test_db, event_bus):
        snapshots_repo.insert_pending(100, "h100")
        loop_thread = threading.get_ident()
        write_threads: list[int] = []
        record_checkpoint = checkpoints_repo.record_checkpoint
        confirm_snapshot = snapshots_repo.confirm_snapshot

        def tracking(write):
            def call(*args, **kwargs):
                write_threads.append(threading.get_ident())
                return write(*args, **kwargs)

            return call

        with (
            patch.object(checkpoints_repo, "record_checkpoint", tracking(record_checkpoint)),
            patch.object(snapshots_repo, "confirm_snapshot", tracking(confirm_snapshot)),
        ):
            _, report = await _poll(
                make_global_snapshot(900, {METAGRAPH_ID: (100, "h100")}), bus=event_bus
            )

        assert report.confirmed == 1
        assert len(write_threads) == 2
        assert loop_thread not in write_threads
        assert len(event_bus.get_event_log(event_type=Events.SNAPSHOT_CONFIRMED)) == 1


@pytest.mark.unit
@pytest.mark.db
class TestAvailability:
    async def test_unreachable_layer_changes_nothing(self, test_db, event_bus):
        snapshots_repo.insert_pending(100, "h100")

        with respx.mock(base_url=CHECKPOINT_URL) as mock:
            mock.get("/global-snapshots/latest").respond(503)
            async with CheckpointLayerClient(CHECKPOINT_URL) as gl0:
                poller = ConfirmationPoller(gl0, metagraph_id=METAGRAPH_ID, bus=event_bus)
                report = await poller.poll_once()

        assert report.available is False
        assert poller.last_error is not None
        assert snapshots_repo.get_totals().pending == 1

    async def test_walk_records_heights_from_earlier_global_snapshots(self, test_db, event_bus):
        first, _ = snapshots_repo.insert_pending(101, "h101")
        second, _ = snapshots_repo.insert_pending(102, "h102")

        poller, report = await _poll(
            make_global_snapshot(905, {METAGRAPH_ID: (102, "h102")}),
            batch=3,
            bus=event_bus,
            history={
                903: make_global_snapshot(903),
                904: make_global_snapshot(904, {METAGRAPH_ID: (101, "h101")}),
            },
        )

        assert report.records_added == 2
        assert snapshots_repo.get_snapshot_by_id(first.id).parent_checkpoint_ordinal == 904
        assert snapshots_repo.get_snapshot_by_id(second.id).parent_checkpoint_ordinal == 905
        assert poller.stats()["confirmedFrontier"] == 102
        assert poller.stats()["lastCheckpointOrdinal"] == 905

    async def test_without_metagraph_id_matches_pending_hashes(self, test_db, event_bus):
        snapshot, _ = snapshots_repo.insert_pending(100, "h100")

        _, report = await _poll(
            make_global_snapshot(900, {"DAG0a": (100, "h100"), "DAG0b": (55, "unrelated")}),
            metagraph_id="",
            bus=event_bus,
        )

        assert report.confirmed == 1
        assert checkpoints_repo.get_checkpoint(55) is None
        assert snapshots_repo.get_snapshot_by_id(snapshot.id).status == STATUS_CONFIRMED
