"""Materialized fiber queries."""

from fastapi import APIRouter, HTTPException, Query

from fiber_indexer.api.routes.utils import (
    clamp_limit,
    fiber_to_dict,
    rejection_to_dict,
    transition_to_dict,
)
from fiber_indexer.db import fibers_repo
from fiber_indexer.services.indexer import IndexerServices


def router(services: IndexerServices) -> APIRouter:
    """Build the fiber router."""
    api = APIRouter()

    @api.get("/fibers")
    def list_fibers(
        workflow_type: str | None = Query(None, alias="workflowType"),
        status: str | None = None,
        limit: int = 50,
        offset: int = 0,
    ):
        """Fibers most recently observed first."""
        limit = clamp_limit(limit, 50)
        offset = max(offset, 0)
        rows, total = fibers_repo.list_fibers(
            workflow_type=workflow_type,
            status=status.upper() if status else None,
            limit=limit,
            offset=offset,
        )
        return {
            "fibers": [fiber_to_dict(row) for row in rows],
            "total": total,
            "hasMore": offset + len(rows) < total,
        }

    @api.get("/fibers/{fiber_id}")
    def get_fiber(fiber_id: str):
        fiber = fibers_repo.get_fiber(fiber_id)
        if fiber is None:
            raise HTTPException(status_code=404, detail="Fiber not found")
        return fiber_to_dict(fiber)

    @api.get("/fibers/{fiber_id}/transitions")
    def list_transitions(fiber_id: str, limit: int = 50):
        """Transition receipts for one fiber, newest ordinal first."""
        rows = fibers_repo.list_transitions(fiber_id, limit=clamp_limit(limit, 50))
        return {"fiberId": fiber_id, "transitions": [transition_to_dict(row) for row in rows]}

    @api.get("/fibers/{fiber_id}/rejections")
    def list_fiber_rejections(fiber_id: str, limit: int = 50):
        """Rejections recorded against one fiber, newest ordinal first."""
        page = services.rejections.query(fiber_id=fiber_id, limit=clamp_limit(limit, 50))
        return {
            "fiberId": fiber_id,
            "rejections": [rejection_to_dict(row) for row in page.rows],
            "total": page.total,
            "hasMore": page.has_more,
        }

    return api
