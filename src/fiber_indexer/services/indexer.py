"""
Indexer service wiring.

``IndexerServices`` owns every long-lived component (ledger clients, the
materialization queue, both pollers, the sequence coordinator) and starts and
stops them together. The API builds one from configuration and drives it from
the FastAPI lifespan; tests build one by hand with only the parts they need.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

from fiber_indexer.config import IndexerConfig
from fiber_indexer.core.events import IndexerEventBus
from fiber_indexer.core.events import bus as default_bus
from fiber_indexer.indexing.confirmations import ConfirmationPoller
from fiber_indexer.indexing.fallback import FallbackPoller
from fiber_indexer.indexing.ingestor import SnapshotIngestor
from fiber_indexer.indexing.materializer import Materializer
from fiber_indexer.indexing.queue import MaterializationQueue
from fiber_indexer.indexing.rejections import RejectionLedger
from fiber_indexer.ledger.checkpoint import CheckpointLayerClient
from fiber_indexer.ledger.client import LedgerClient
from fiber_indexer.ledger.errors import LedgerError
from fiber_indexer.ledger.http import JsonHttpClient
from fiber_indexer.sequencing.coordinator import SequenceCoordinator

logger = logging.getLogger(__name__)


@dataclass
class IndexerServices:
    """
    Container for the running indexer.

    Attributes:
        bus: Operational event bus shared by every component.
        rejections: Rejection ledger.
        ingestor: Snapshot ingestor used by the webhook and the fallback poller.
        queue: Materialization worker pool.
        confirmations: Confirmation poller, None when disabled.
        fallback: Fallback poller, None when disabled.
        coordinator: Sequence coordinator for write-path callers.
        subscriber: Node to register the webhook callback with.
        callback_url: Callback URL to register. Empty skips registration.
        clients: HTTP clients opened on ``start`` and closed on ``stop``.
        reprocess_batch: Rows re-enqueued by ``reprocess``.
        webhook_subscription: Subscription id returned by the node, if any.
    """

    bus: IndexerEventBus = field(default_factory=lambda: default_bus)
    rejections: RejectionLedger | None = None
    ingestor: SnapshotIngestor | None = None
    queue: MaterializationQueue | None = None
    confirmations: ConfirmationPoller | None = None
    fallback: FallbackPoller | None = None
    coordinator: SequenceCoordinator | None = None
    subscriber: LedgerClient | None = None
    callback_url: str = ""
    clients: list[JsonHttpClient] = field(default_factory=list)
    reprocess_batch: int = 50
    webhook_subscription: str | None = None

    def __post_init__(self) -> None:
        if self.rejections is None:
            self.rejections = RejectionLedger(self.bus)
        if self.ingestor is None:
            self.ingestor = SnapshotIngestor(self.queue, bus=self.bus)

    @classmethod
    def from_config(
        cls, cfg: IndexerConfig, *, bus: IndexerEventBus | None = None
    ) -> IndexerServices:
        """Build every component described by ``cfg``. Nothing is started."""
        bus = bus or default_bus
        ledger = cfg.ledger
        timeout = ledger.request_timeout

        # One client per distinct node URL
        node_clients: dict[str, LedgerClient] = {}
        clients: list[JsonHttpClient] = []

        def ledger_client(url: str) -> LedgerClient:
            client = node_clients.get(url)
            if client is None:
                client = node_clients[url] = LedgerClient(url, timeout)
                clients.append(client)
            return client

        ml0 = ledger_client(ledger.ml0_url)
        dl1 = ledger_client(ledger.data_l1_url)

        materializer = Materializer(ml0, delivery_mode=cfg.materializer.delivery_mode, bus=bus)
        queue = MaterializationQueue(
            materializer,
            max_concurrency=cfg.materializer.max_concurrency,
            queue_size=cfg.materializer.queue_size,
        )
        ingestor = SnapshotIngestor(queue, bus=bus)

        confirmations = None
        if cfg.pollers.confirmation_enabled and ledger.checkpoint_url:
            checkpoint = CheckpointLayerClient(ledger.checkpoint_url, timeout)
            clients.append(checkpoint)
            confirmations = ConfirmationPoller(
                checkpoint,
                metagraph_id=ledger.metagraph_id,
                interval=cfg.pollers.confirmation_interval,
                batch=cfg.pollers.checkpoint_batch,
                bus=bus,
            )

        fallback = None
        if cfg.pollers.fallback_enabled:
            fallback = FallbackPoller(
                [ledger_client(url) for url in ledger.peer_urls],
                ingestor,
                queue=queue,
                interval=cfg.pollers.fallback_interval,
                catchup_window=cfg.pollers.catchup_window,
                peer_timeout=cfg.pollers.peer_timeout,
                reprocess_batch=cfg.materializer.reprocess_batch,
                bus=bus,
            )

        coordinator = SequenceCoordinator(
            dl1,
            ml0 if dl1 is not ml0 else None,
            wait_timeout=cfg.sequencing.wait_timeout,
            poll_interval=cfg.sequencing.poll_interval,
        )

        return cls(
            bus=bus,
            rejections=RejectionLedger(bus),
            ingestor=ingestor,
            queue=queue,
            confirmations=confirmations,
            fallback=fallback,
            coordinator=coordinator,
            subscriber=ml0,
            callback_url=ledger.callback_url,
            clients=clients,
            reprocess_batch=cfg.materializer.reprocess_batch,
        )

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def start(self) -> None:
        """Open clients, start workers and pollers, register the webhook."""
        for client in self.clients:
            await client.open()
        if self.queue is not None:
            self.queue.start()
            await self.queue.reprocess_pending(limit=self.reprocess_batch)
        await self.subscribe()
        if self.confirmations is not None:
            self.confirmations.start()
        if self.fallback is not None:
            self.fallback.start()

    async def stop(self) -> None:
        """Stop pollers and workers, then close clients."""
        if self.fallback is not None:
            await self.fallback.stop()
        if self.confirmations is not None:
            await self.confirmations.stop()
        if self.queue is not None:
            await self.queue.stop()
        for client in self.clients:
            await client.aclose()

    async def subscribe(self) -> str | None:
        """
        Register the webhook callback with the node.

        Failure is logged and tolerated: the fallback poller covers snapshots
        that are never pushed.
        """
        if not self.callback_url or self.subscriber is None:
            return None
        try:
            result = await self.subscriber.subscribe_webhook(self.callback_url)
        except LedgerError as e:
            logger.warning("Webhook registration with %s failed: %s", self.subscriber.base_url, e)
            return None
        subscription = result.get("id")
        self.webhook_subscription = str(subscription) if subscription is not None else None
        return self.webhook_subscription

    async def reprocess(self, limit: int | None = None) -> int:
        """Enqueue non-orphaned snapshots that were never materialized."""
        if self.queue is None:
            return 0
        return await self.queue.reprocess_pending(limit=limit or self.reprocess_batch)
