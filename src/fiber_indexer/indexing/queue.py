"""
Bounded materialization worker pool.

The webhook handler must return before the ledger's delivery timeout, so it
only enqueues. A fixed number of workers drain the queue. When the queue is
full the job is shed: the snapshot row stays PENDING with NULL counters and
the reprocess sweep enqueues it again later, so every ordinal is eventually
materialized without letting detached work pile up under load.
"""

from __future__ import annotations

import asyncio
import logging

from fiber_indexer.db import snapshots_repo
from fiber_indexer.db.types import IndexedSnapshot
from fiber_indexer.indexing.materializer import Materializer

logger = logging.getLogger(__name__)


class MaterializationQueue:
    """
    Fixed-size queue drained by ``max_concurrency`` worker tasks.

    Args:
        materializer: Does the work for each snapshot.
        max_concurrency: Number of workers, hence concurrent materializations.
        queue_size: Jobs held before ``submit`` starts shedding.
    """

    def __init__(
        self,
        materializer: Materializer,
        *,
        max_concurrency: int = 4,
        queue_size: int = 256,
    ) -> None:
        if max_concurrency < 1:
            raise ValueError("max_concurrency must be at least 1")
        self.materializer = materializer
        self.max_concurrency = max_concurrency
        self._queue: asyncio.Queue[IndexedSnapshot] = asyncio.Queue(maxsize=queue_size)
        self._queued_ids: set[int] = set()
        self._workers: list[asyncio.Task[None]] = []
        self.completed = 0
        self.failed = 0
        self.shed = 0
        self.in_flight = 0

    @property
    def is_running(self) -> bool:
        return any(not worker.done() for worker in self._workers)

    @property
    def depth(self) -> int:
        return self._queue.qsize()

    def start(self) -> None:
        if self.is_running:
            return
        self._workers = [
            asyncio.create_task(self._worker(n), name=f"materializer-{n}")
            for n in range(self.max_concurrency)
        ]
        logger.info("Started %s materialization workers", self.max_concurrency)

    async def stop(self) -> None:
        """Cancel workers. Queued jobs are dropped and left for the reprocess sweep."""
        workers, self._workers = self._workers, []
        for worker in workers:
            worker.cancel()
        await asyncio.gather(*workers, return_exceptions=True)
        dropped = self._queue.qsize()
        while not self._queue.empty():
            self._queue.get_nowait()
            self._queue.task_done()
        self._queued_ids.clear()
        if workers:
            logger.info(
                "Stopped materialization workers (%s queued jobs left for reprocess)", dropped
            )

    def submit(self, snapshot: IndexedSnapshot) -> bool:
        """
        Enqueue a snapshot without waiting.

        Returns:
            True if queued (or already queued), False if the job was shed.
        """
        if snapshot.id in self._queued_ids:
            return True
        try:
            self._queue.put_nowait(snapshot)
        except asyncio.QueueFull:
            self.shed += 1
            logger.warning(
                "Materialization queue full, shedding snapshot %s (left for reprocess)",
                snapshot.ordinal,
            )
            return False
        self._queued_ids.add(snapshot.id)
        return True

    async def reprocess_pending(self, *, limit: int = 50) -> int:
        """Enqueue PENDING or CONFIRMED snapshots that were never materialized.

        The lookup runs in a worker thread; enqueueing stays on the event loop.

        Returns:
            Number of snapshots queued.
        """
        queued = 0
        unmaterialized = await asyncio.to_thread(snapshots_repo.list_unmaterialized, limit=limit)
        for snapshot in unmaterialized:
            if snapshot.id in self._queued_ids:
                continue
            if not self.submit(snapshot):
                break
            queued += 1
        if queued:
            logger.info("Queued %s unmaterialized snapshots for reprocessing", queued)
        return queued

    async def join(self) -> None:
        """Wait until every queued job has been processed."""
        await self._queue.join()

    async def _worker(self, number: int) -> None:
        while True:
            snapshot = await self._queue.get()
            self.in_flight += 1
            try:
                await self.materializer.materialize(snapshot)
                self.completed += 1
            except asyncio.CancelledError:
                raise
            except Exception:
                self.failed += 1
                logger.exception(
                    "Materialization failed for snapshot %s (worker %s); left for reprocess",
                    snapshot.ordinal,
                    number,
                )
            finally:
                self.in_flight -= 1
                self._queued_ids.discard(snapshot.id)
                self._queue.task_done()

    def stats(self) -> dict[str, int | bool]:
        return {
            "isRunning": self.is_running,
            "workers": self.max_concurrency,
            "queued": self.depth,
            "inFlight": self.in_flight,
            "completed": self.completed,
            "failed": self.failed,
            "shed": self.shed,
        }
