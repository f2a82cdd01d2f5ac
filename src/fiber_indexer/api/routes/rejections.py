"""Rejection ledger queries."""

from fastapi import APIRouter, HTTPException, Query

from fiber_indexer.api.routes.utils import clamp_limit, rejection_to_dict
from fiber_indexer.services.indexer import IndexerServices


def router(services: IndexerServices) -> APIRouter:
    """Build the rejection router."""
    api = APIRouter()

    @api.get("/rejections")
    def list_rejections(
        fiber_id: str | None = Query(None, alias="fiberId"),
        update_type: str | None = Query(None, alias="updateType"),
        signer: str | None = None,
        error_code: str | None = Query(None, alias="errorCode"),
        from_ordinal: int | None = Query(None, alias="fromOrdinal"),
        to_ordinal: int | None = Query(None, alias="toOrdinal"),
        limit: int = 50,
        offset: int = 0,
    ):
        """Filtered rejections, newest ordinal first, each with its classification."""
        page = services.rejections.query(
            fiber_id=fiber_id,
            update_type=update_type,
            signer=signer,
            error_code=error_code,
            from_ordinal=from_ordinal,
            to_ordinal=to_ordinal,
            limit=clamp_limit(limit, 50),
            offset=max(offset, 0),
        )
        return {
            "rejections": [rejection_to_dict(row) for row in page.rows],
            "total": page.total,
            "hasMore": page.has_more,
        }

    @api.get("/rejections/{update_hash}")
    def get_rejection(update_hash: str):
        rejection = services.rejections.get(update_hash)
        if rejection is None:
            raise HTTPException(status_code=404, detail="Rejection not found")
        return rejection_to_dict(rejection, include_raw=True)

    return api
