"""
Async client for a metagraph node (metagraph L0 or data L1).

Data-application routes live under ``/data-application/v1``; snapshot and
transaction routes are served at the node root.

    async with LedgerClient(config.ledger.ml0_url) as ml0:
        checkpoint = await ml0.get_checkpoint()
        latest = await ml0.get_latest_snapshot()
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from fiber_indexer.ledger.errors import LedgerError, LedgerNotFoundError
from fiber_indexer.ledger.http import JsonHttpClient

logger = logging.getLogger(__name__)

DATA_APP_PREFIX = "/data-application/v1"


@dataclass(frozen=True, slots=True)
class SnapshotInfo:
    """Ordinal and hash of one metagraph snapshot as reported by a node."""

    ordinal: int
    hash: str


def parse_snapshot_info(data: Any) -> SnapshotInfo:
    """Read ``{ordinal, hash}`` from a node snapshot response.

    Accepts a flat ``{ordinal, hash}`` body or a signed envelope
    ``{value: {ordinal, ...}, hash}``.

    Raises:
        LedgerError: When the body carries no ordinal or no hash.
    """
    if not isinstance(data, dict):
        raise LedgerError(message="Snapshot response is not an object", detail=repr(data)[:200])
    value = data.get("value") if isinstance(data.get("value"), dict) else data
    ordinal = value.get("ordinal", data.get("ordinal"))
    snapshot_hash = data.get("hash") or value.get("hash")
    if ordinal is None or not snapshot_hash:
        raise LedgerError(
            message="Snapshot response missing ordinal or hash", detail=repr(data)[:200]
        )
    return SnapshotInfo(ordinal=int(ordinal), hash=str(snapshot_hash))


@dataclass
class LedgerClient(JsonHttpClient):
    """
    Async HTTP client for one metagraph node.

    Example:
        async with LedgerClient("http://dl1:9400") as dl1:
            seq = await dl1.get_fiber_sequence(fiber_id)
    """

    # -------------------------------------------------------------------------
    # State queries
    # -------------------------------------------------------------------------

    async def get_checkpoint(self) -> dict[str, Any]:
        """Full materialized state: ``{ordinal, state: {stateMachines, ...}}``."""
        data = await self._request("GET", f"{DATA_APP_PREFIX}/checkpoint")
        if not isinstance(data, dict) or "ordinal" not in data:
            raise LedgerError(
                message="Checkpoint response missing ordinal", detail=repr(data)[:200]
            )
        return data

    async def get_state_machine(self, fiber_id: str) -> dict[str, Any] | None:
        """Query-layer view of one fiber, or None when the node does not know it."""
        try:
            data = await self._request("GET", f"{DATA_APP_PREFIX}/state-machines/{fiber_id}")
        except LedgerNotFoundError:
            return None
        return data if isinstance(data, dict) else None

    async def get_onchain(self) -> dict[str, Any]:
        """Authoritative on-chain commit index: ``{fiberCommits: {...}}``."""
        data = await self._request("GET", f"{DATA_APP_PREFIX}/onchain")
        return data if isinstance(data, dict) else {}

    async def get_fiber_sequence(self, fiber_id: str) -> int | None:
        """Committed sequence number of a fiber, or None when it has no commits."""
        onchain = await self.get_onchain()
        commit = (onchain.get("fiberCommits") or {}).get(fiber_id)
        if commit is None:
            return None
        return int(commit.get("sequenceNumber") or 0)

    # -------------------------------------------------------------------------
    # Snapshots
    # -------------------------------------------------------------------------

    async def get_latest_snapshot(self, *, timeout: float | None = None) -> SnapshotInfo:
        """Latest snapshot this node has produced."""
        data = await self._request("GET", "/snapshots/latest", timeout=timeout)
        return parse_snapshot_info(data)

    async def get_snapshot(self, ordinal: int) -> dict[str, Any] | None:
        """Raw snapshot body at ``ordinal``, or None when the node does not have it."""
        try:
            data = await self._request("GET", f"/snapshots/{ordinal}")
        except LedgerNotFoundError:
            return None
        return data if isinstance(data, dict) else None

    # -------------------------------------------------------------------------
    # Writes
    # -------------------------------------------------------------------------

    async def submit_data(self, body: dict[str, Any]) -> dict[str, Any]:
        """Submit a signed update ``{value, proofs}``. Returns the node response."""
        data = await self._request("POST", "/data", json=body)
        return data if isinstance(data, dict) else {}

    async def subscribe_webhook(self, callback_url: str) -> dict[str, Any]:
        """Register ``callback_url`` for snapshot and rejection notifications."""
        data = await self._request(
            "POST",
            f"{DATA_APP_PREFIX}/webhooks/subscribe",
            json={"callbackUrl": callback_url},
        )
        result = data if isinstance(data, dict) else {}
        logger.info("Registered webhook %s (subscription %s)", callback_url, result.get("id"))
        return result
