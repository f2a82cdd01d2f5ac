"""Aggregate indexer status."""

from typing import Any

from fastapi import APIRouter

from fiber_indexer.db import fibers_repo, rejections_repo, snapshots_repo
from fiber_indexer.services.indexer import IndexerServices


def router(services: IndexerServices) -> APIRouter:
    """Build the status router."""
    api = APIRouter()

    @api.get("/status")
    def status():
        """Last indexed and confirmed snapshots plus poller and worker health."""
        last = snapshots_repo.get_last_indexed()
        last_confirmed = snapshots_repo.get_last_confirmed()
        totals = snapshots_repo.get_totals()

        confirmations: dict[str, Any]
        if services.confirmations is not None:
            confirmations = services.confirmations.stats()
        else:
            confirmations = {
                "pending": totals.pending,
                "confirmed": totals.confirmed,
                "orphaned": totals.orphaned,
                "isRunning": False,
            }

        return {
            "lastIndexedOrdinal": last.ordinal if last else None,
            "lastIndexedAt": last.created_at if last else None,
            "lastIndexedStatus": last.status if last else None,
            "lastConfirmedOrdinal": last_confirmed.ordinal if last_confirmed else None,
            "lastConfirmedAt": last_confirmed.confirmed_at if last_confirmed else None,
            "confirmations": confirmations,
            "poller": services.fallback.stats() if services.fallback is not None else None,
            "materializer": services.queue.stats() if services.queue is not None else None,
            "webhookSubscription": services.webhook_subscription,
            "totals": {
                "snapshots": totals.total,
                "pending": totals.pending,
                "confirmed": totals.confirmed,
                "orphaned": totals.orphaned,
                "unmaterialized": totals.unmaterialized,
                "fibers": fibers_repo.count_fibers(),
                "rejections": rejections_repo.count_rejections(),
            },
        }

    return api
