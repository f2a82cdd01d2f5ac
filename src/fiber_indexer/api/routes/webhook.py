"""
Webhook endpoints the ledger pushes notifications to.

The ledger sends snapshot and rejection notifications to the same callback
URL and tells them apart with the ``event`` field. Handlers only validate,
record and enqueue, so they answer well inside the ledger's delivery timeout.
Materialization problems are never reported back to the ledger.
"""

import json
import logging
from typing import Any

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse
from pydantic import ValidationError

from fiber_indexer.api.models import REJECTION_EVENT, RejectionNotification, SnapshotNotification
from fiber_indexer.api.routes.utils import invalid_payload
from fiber_indexer.db.constants import SOURCE_WEBHOOK
from fiber_indexer.indexing.rejections import rejection_from_notification
from fiber_indexer.services.indexer import IndexerServices

logger = logging.getLogger(__name__)


async def _read_body(request: Request) -> Any:
    raw = await request.body()
    return json.loads(raw) if raw else None


def router(services: IndexerServices) -> APIRouter:
    """Build the webhook router around the running services."""
    api = APIRouter()

    async def record_rejection(body: Any) -> JSONResponse:
        try:
            notification = RejectionNotification.model_validate(body)
        except ValidationError as e:
            logger.warning("Invalid rejection notification: %s", e.error_count())
            return invalid_payload(e)

        rejection = rejection_from_notification(notification.to_wire(), raw_payload=body)
        result = await services.rejections.record(rejection)
        if not result.created:
            return JSONResponse(
                status_code=200,
                content={
                    "accepted": True,
                    "updateHash": rejection.update_hash,
                    "alreadyIndexed": True,
                },
            )
        return JSONResponse(
            status_code=201,
            content={"accepted": True, "updateHash": rejection.update_hash},
        )

    @api.post("/webhook/snapshot")
    async def snapshot_webhook(request: Request):
        """
        Receive a snapshot notification (or a rejection routed by ``event``).

        Returns 202 when a new PENDING row was recorded, 200 with
        ``alreadyIndexed`` for a repeat delivery, 400 for an invalid body.
        """
        try:
            body = await _read_body(request)
        except ValueError:
            return invalid_payload(message="Body is not valid JSON")

        if isinstance(body, dict) and body.get("event") == REJECTION_EVENT:
            return await record_rejection(body)

        try:
            notification = SnapshotNotification.model_validate(body)
        except ValidationError as e:
            logger.warning("Invalid snapshot notification: %s", e.error_count())
            return invalid_payload(e)

        logger.debug(
            "Snapshot notification %s (%s) stats=%s",
            notification.ordinal,
            notification.hash,
            notification.stats,
        )
        result = await services.ingestor.ingest(
            notification.ordinal,
            notification.hash,
            source=SOURCE_WEBHOOK,
            ledger_timestamp=notification.timestamp,
        )
        if result.already_indexed:
            return JSONResponse(
                status_code=200,
                content={
                    "accepted": True,
                    "ordinal": notification.ordinal,
                    "status": result.snapshot.status,
                    "alreadyIndexed": True,
                },
            )
        return JSONResponse(
            status_code=202,
            content={
                "accepted": True,
                "ordinal": notification.ordinal,
                "status": result.snapshot.status,
            },
        )

    @api.post("/webhook/rejection")
    async def rejection_webhook(request: Request):
        """Receive a rejection notification directly."""
        try:
            body = await _read_body(request)
        except ValueError:
            return invalid_payload(message="Body is not valid JSON")
        return await record_rejection(body)

    return api
