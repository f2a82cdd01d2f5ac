"""Recent operational events."""

from fastapi import APIRouter

from fiber_indexer.api.routes.utils import clamp_limit
from fiber_indexer.services.indexer import IndexerServices


def router(services: IndexerServices) -> APIRouter:
    """Build the events router."""
    api = APIRouter()

    @api.get("/events")
    async def list_events(limit: int = 50, type: str | None = None):
        """Most recent events, oldest first, optionally of one type."""
        events = services.bus.get_event_log(clamp_limit(limit, 50), event_type=type)
        return {
            "events": [event.to_dict() for event in events],
            "sequence": services.bus.get_sequence(),
        }

    return api
