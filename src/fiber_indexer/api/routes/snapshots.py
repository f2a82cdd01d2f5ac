"""Snapshot store query and maintenance endpoints."""

from fastapi import APIRouter, HTTPException

from fiber_indexer.api.routes.utils import clamp_limit, snapshot_to_dict
from fiber_indexer.db import snapshots_repo
from fiber_indexer.db.constants import SNAPSHOT_STATUSES
from fiber_indexer.services.indexer import IndexerServices


def router(services: IndexerServices) -> APIRouter:
    """Build the snapshot router."""
    api = APIRouter()

    @api.get("/snapshots")
    def list_snapshots(status: str | None = None, limit: int = 20):
        """Snapshots newest ordinal first, optionally filtered by status."""
        if status is not None:
            status = status.upper()
            if status not in SNAPSHOT_STATUSES:
                raise HTTPException(
                    status_code=400,
                    detail=f"status must be one of {', '.join(SNAPSHOT_STATUSES)}",
                )
        rows = snapshots_repo.list_snapshots(status=status, limit=clamp_limit(limit, 20))
        return {
            "snapshots": [snapshot_to_dict(row) for row in rows],
            "total": snapshots_repo.count_snapshots(status=status),
        }

    @api.get("/snapshots/{ordinal}")
    def get_snapshot(ordinal: int):
        """Every row recorded at ``ordinal`` (more than one after a fork)."""
        rows = snapshots_repo.get_snapshots_at_ordinal(ordinal)
        if not rows:
            raise HTTPException(status_code=404, detail="Snapshot not found")
        return {"ordinal": ordinal, "snapshots": [snapshot_to_dict(row) for row in rows]}

    @api.post("/snapshots/reprocess")
    async def reprocess(limit: int | None = None):
        """Queue non-orphaned snapshots whose materialization never succeeded."""
        queued = await services.reprocess(limit if limit and limit > 0 else None)
        return {"queued": queued}

    return api
