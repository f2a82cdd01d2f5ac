"""
Fallback poller: catches snapshots the webhook never delivered.

Each tick:

1. Ask every configured peer for its latest snapshot ``(ordinal, hash)``.
2. If two peers report the same ordinal with different hashes, emit a
   ``fork:detected`` signal. Forks are resolved only by the confirmation
   poller; the snapshot store is not touched here.
3. For each ordinal missing from the store within ``catchup_window`` of the
   highest ordinal seen, record a PENDING row through the ingestor (the same
   first-writer-wins contract the webhook uses).
4. Re-enqueue non-orphaned snapshots whose materialization never succeeded.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any

from fiber_indexer.core.events import Events, IndexerEventBus
from fiber_indexer.core.events import bus as default_bus
from fiber_indexer.db import snapshots_repo
from fiber_indexer.db.constants import SOURCE_POLLER
from fiber_indexer.indexing.ingestor import SnapshotIngestor
from fiber_indexer.indexing.periodic import PeriodicTask
from fiber_indexer.indexing.queue import MaterializationQueue
from fiber_indexer.ledger.client import LedgerClient, SnapshotInfo, parse_snapshot_info
from fiber_indexer.ledger.errors import LedgerError

logger = logging.getLogger(__name__)


@dataclass
class PeerState:
    """Last observation of one peer."""

    url: str
    ordinal: int | None = None
    hash: str | None = None
    last_seen: float | None = None
    last_error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "url": self.url,
            "ordinal": self.ordinal,
            "hash": self.hash,
            "lastSeen": self.last_seen,
            "lastError": self.last_error,
        }


@dataclass(frozen=True, slots=True)
class ForkSignal:
    """Peers disagreeing about the snapshot at one ordinal."""

    ordinal: int
    hashes_by_peer: dict[str, str]
    detected_at: float = field(default_factory=time.time)

    def to_dict(self) -> dict[str, Any]:
        return {
            "ordinal": self.ordinal,
            "hashesByPeer": dict(self.hashes_by_peer),
            "detectedAt": self.detected_at,
        }


@dataclass(frozen=True, slots=True)
class FallbackReport:
    """What one fallback tick did."""

    peers_reached: int
    max_ordinal: int | None = None
    created: tuple[int, ...] = ()
    forks: tuple[ForkSignal, ...] = ()
    reprocessed: int = 0


class FallbackPoller:
    """
    Low-frequency direct poll of the ledger peers.

    Args:
        peers: Open clients, one per peer. The first is used to fetch
            snapshots that no peer reported directly.
        ingestor: Records missed snapshots.
        queue: Materialization queue for the reprocess sweep.
        interval: Seconds between ticks.
        catchup_window: How many ordinals below the highest one to backfill.
        peer_timeout: Per-peer request timeout in seconds.
        reprocess_batch: Maximum unmaterialized snapshots re-enqueued per tick.
        bus: Event bus for fork signals.
    """

    def __init__(
        self,
        peers: list[LedgerClient],
        ingestor: SnapshotIngestor,
        *,
        queue: MaterializationQueue | None = None,
        interval: float = 60.0,
        catchup_window: int = 10,
        peer_timeout: float = 5.0,
        reprocess_batch: int = 50,
        bus: IndexerEventBus | None = None,
    ) -> None:
        if not peers:
            raise ValueError("FallbackPoller needs at least one peer")
        self.peers = peers
        self.ingestor = ingestor
        self.queue = queue
        self.catchup_window = max(catchup_window, 1)
        self.peer_timeout = peer_timeout
        self.reprocess_batch = reprocess_batch
        self.bus = bus or default_bus
        self.task = PeriodicTask("fallback-poller", interval, self._tick)
        self.peer_state: dict[str, PeerState] = {
            peer.base_url: PeerState(peer.base_url) for peer in peers
        }
        self.last_polled_ordinal: int | None = None
        self.last_fork: ForkSignal | None = None
        self._reported_forks: set[tuple[int, frozenset[str]]] = set()

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    def start(self) -> None:
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

    async def _poll_peer(self, peer: LedgerClient) -> SnapshotInfo | None:
        state = self.peer_state[peer.base_url]
        try:
            info = await peer.get_latest_snapshot(timeout=self.peer_timeout)
        except LedgerError as e:
            state.last_error = str(e)
            logger.warning("Peer %s unavailable: %s", peer.base_url, e)
            return None
        state.ordinal = info.ordinal
        state.hash = info.hash
        state.last_seen = time.time()
        state.last_error = None
        return info

    def _detect_forks(self, observed: dict[str, SnapshotInfo]) -> list[ForkSignal]:
        by_ordinal: dict[int, dict[str, str]] = {}
        for url, info in observed.items():
            by_ordinal.setdefault(info.ordinal, {})[url] = info.hash

        forks: list[ForkSignal] = []
        for ordinal, hashes_by_peer in sorted(by_ordinal.items()):
            distinct = frozenset(hashes_by_peer.values())
            if len(distinct) < 2:
                continue
            signal = ForkSignal(ordinal=ordinal, hashes_by_peer=hashes_by_peer)
            forks.append(signal)
            self.last_fork = signal
            key = (ordinal, distinct)
            if key in self._reported_forks:
                continue
            self._reported_forks.add(key)
            logger.error(
                "Fork detected at ordinal %s: %s",
                ordinal,
                ", ".join(f"{url}={h}" for url, h in sorted(hashes_by_peer.items())),
            )
            self.bus.emit(Events.FORK_DETECTED, signal.to_dict(), source="fallback")
        return forks

    async def _fetch_missing(self, ordinal: int) -> SnapshotInfo | None:
        try:
            body = await self.peers[0].get_snapshot(ordinal)
            return parse_snapshot_info(body) if body is not None else None
        except LedgerError as e:
            logger.debug("Cannot fetch snapshot %s for catch-up: %s", ordinal, e)
            return None

    async def _catch_up(self, observed: dict[str, SnapshotInfo], max_ordinal: int) -> list[int]:
        peer_hashes: dict[int, set[str]] = {}
        for info in observed.values():
            peer_hashes.setdefault(info.ordinal, set()).add(info.hash)

        low = max(max_ordinal - self.catchup_window + 1, 0)
        present = await asyncio.to_thread(snapshots_repo.get_indexed_ordinals, low, max_ordinal)
        created: list[int] = []
        for ordinal in range(low, max_ordinal + 1):
            if ordinal in present:
                continue
            hashes = peer_hashes.get(ordinal)
            if not hashes:
                info = await self._fetch_missing(ordinal)
                if info is None:
                    continue
                hashes = {info.hash}
            for snapshot_hash in sorted(hashes):
                result = await self.ingestor.ingest(ordinal, snapshot_hash, source=SOURCE_POLLER)
                if result.created:
                    created.append(ordinal)
        if created:
            logger.info("Fallback poller recovered missed snapshots: %s", created)
        return created

    async def poll_once(self) -> FallbackReport:
        """Run one fallback pass."""
        infos = await asyncio.gather(*(self._poll_peer(peer) for peer in self.peers))
        observed = {
            peer.base_url: info
            for peer, info in zip(self.peers, infos, strict=True)
            if info is not None
        }

        forks = self._detect_forks(observed)
        created: list[int] = []
        max_ordinal = max((info.ordinal for info in observed.values()), default=None)
        if max_ordinal is not None:
            self.last_polled_ordinal = max_ordinal
            created = await self._catch_up(observed, max_ordinal)

        reprocessed = 0
        if self.queue is not None:
            reprocessed = await self.queue.reprocess_pending(limit=self.reprocess_batch)

        return FallbackReport(
            peers_reached=len(observed),
            max_ordinal=max_ordinal,
            created=tuple(created),
            forks=tuple(forks),
            reprocessed=reprocessed,
        )

    # -------------------------------------------------------------------------
    # Stats
    # -------------------------------------------------------------------------

    def stats(self) -> dict[str, Any]:
        return {
            "lastPolledOrdinal": self.last_polled_ordinal,
            "isRunning": self.is_running,
            "peers": [state.to_dict() for state in self.peer_state.values()],
            "lastFork": self.last_fork.to_dict() if self.last_fork else None,
        }
