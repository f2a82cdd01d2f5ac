"""Tests for the bounded materialization worker pool."""

from __future__ import annotations

import asyncio

import pytest

from fiber_indexer.db import snapshots_repo
from fiber_indexer.db.types import IndexedSnapshot
from fiber_indexer.indexing.queue import MaterializationQueue


class RecordingMaterializer:
    """Records what it was asked to materialize; fails for chosen ordinals."""

    def __init__(self, *, fail: set[int] | None = None, delay: float = 0.0) -> None:
        self.fail = fail or set()
        self.delay = delay
        self.seen: list[int] = []
        self.active = 0
        self.peak = 0

    async def materialize(self, snapshot: IndexedSnapshot) -> None:
        self.active += 1
        self.peak = max(self.peak, self.active)
        try:
            await asyncio.sleep(self.delay)
            self.seen.append(snapshot.ordinal)
            if snapshot.ordinal in self.fail:
                raise RuntimeError("payload unavailable")
        finally:
            self.active -= 1


def _snapshot(ordinal: int) -> IndexedSnapshot:
    return IndexedSnapshot(id=ordinal, ordinal=ordinal, hash=f"h{ordinal}")


@pytest.mark.unit
def test_submit_dedups_and_sheds_when_full():
    queue = MaterializationQueue(RecordingMaterializer(), queue_size=2)

    assert queue.submit(_snapshot(1)) is True
    assert queue.submit(_snapshot(1)) is True
    assert queue.submit(_snapshot(2)) is True
    assert queue.submit(_snapshot(3)) is False

    assert queue.depth == 2
    assert queue.shed == 1


@pytest.mark.unit
def test_max_concurrency_must_be_positive():
    with pytest.raises(ValueError):
        MaterializationQueue(RecordingMaterializer(), max_concurrency=0)


@pytest.mark.unit
async def test_workers_drain_and_count_failures():
    materializer = RecordingMaterializer(fail={2}, delay=0.01)
    queue = MaterializationQueue(materializer, max_concurrency=2)
    queue.start()
    try:
        for ordinal in (1, 2, 3, 4):
            queue.submit(_snapshot(ordinal))
        await asyncio.wait_for(queue.join(), timeout=2)
    finally:
        await queue.stop()

    assert sorted(materializer.seen) == [1, 2, 3, 4]
    assert materializer.peak <= 2
    stats = queue.stats()
    assert (stats["completed"], stats["failed"], stats["inFlight"]) == (3, 1, 0)
    assert stats["isRunning"] is False


@pytest.mark.unit
async def test_stop_drops_queued_jobs():
    queue = MaterializationQueue(RecordingMaterializer(), queue_size=4)
    queue.submit(_snapshot(1))
    queue.submit(_snapshot(2))

    await queue.stop()

    assert queue.depth == 0
    assert queue.submit(_snapshot(1)) is True


@pytest.mark.unit
@pytest.mark.db
async def test_reprocess_pending_queues_unmaterialized_rows(test_db):
    done, _ = snapshots_repo.insert_pending(1, "h1")
    snapshots_repo.record_materialization(
        done.id, fibers_updated=0, agents_updated=0, contracts_updated=0
    )
    snapshots_repo.insert_pending(2, "h2")
    snapshots_repo.insert_pending(3, "h3")
    materializer = RecordingMaterializer()
    queue = MaterializationQueue(materializer)

    assert await queue.reprocess_pending() == 2
    assert await queue.reprocess_pending() == 0

    queue.start()
    try:
        await asyncio.wait_for(queue.join(), timeout=2)
    finally:
        await queue.stop()
    assert sorted(materializer.seen) == [2, 3]


@pytest.mark.unit
@pytest.mark.db
async def test_confirmed_before_materialization_is_still_reprocessed(test_db):
    confirmed, _ = snapshots_repo.insert_pending(100, "h100")
    snapshots_repo.confirm_snapshot(confirmed.id, 900)
    orphan, _ = snapshots_repo.insert_pending(101, "h101-b")
    snapshots_repo.orphan_snapshot(orphan.id)
    materializer = RecordingMaterializer()
    queue = MaterializationQueue(materializer)

    assert snapshots_repo.get_totals().unmaterialized == 1
    assert await queue.reprocess_pending() == 1

    queue.start()
    try:
        await asyncio.wait_for(queue.join(), timeout=2)
    finally:
        await queue.stop()
    assert materializer.seen == [100]
