"""
Async client for the checkpoint layer (global L0).

A global snapshot lists, per metagraph, the metagraph snapshot it committed:

    {"value": {"ordinal": 5012,
               "stateChannelSnapshots": {
                   "<metagraphId>": {"snapshotInfo": {"ordinal": 100, "hash": "..."}}}}}

A flat ``{"ordinal": 100, "hash": "..."}`` entry per metagraph is accepted too.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from fiber_indexer.ledger.errors import LedgerError, LedgerNotFoundError
from fiber_indexer.ledger.http import JsonHttpClient


@dataclass(frozen=True, slots=True)
class ChannelSnapshot:
    """A metagraph snapshot committed by a global snapshot."""

    metagraph_id: str
    ordinal: int
    hash: str


@dataclass(frozen=True, slots=True)
class GlobalSnapshot:
    """One checkpoint-layer snapshot and the metagraph snapshots it commits."""

    ordinal: int
    channels: dict[str, ChannelSnapshot] = field(default_factory=dict)

    def channel(self, metagraph_id: str) -> ChannelSnapshot | None:
        return self.channels.get(metagraph_id)


def _parse_channel(metagraph_id: str, entry: Any) -> ChannelSnapshot | None:
    if not isinstance(entry, dict):
        return None
    info = entry.get("snapshotInfo") if isinstance(entry.get("snapshotInfo"), dict) else entry
    ordinal = info.get("ordinal")
    snapshot_hash = info.get("hash")
    if ordinal is None or not snapshot_hash:
        return None
    return ChannelSnapshot(metagraph_id=metagraph_id, ordinal=int(ordinal), hash=str(snapshot_hash))


def parse_global_snapshot(data: Any) -> GlobalSnapshot:
    """Decode a global snapshot response.

    Raises:
        LedgerError: When the body has no ordinal.
    """
    if not isinstance(data, dict):
        raise LedgerError(message="Global snapshot is not an object", detail=repr(data)[:200])
    value = data.get("value") if isinstance(data.get("value"), dict) else data
    if value.get("ordinal") is None:
        raise LedgerError(message="Global snapshot missing ordinal", detail=repr(data)[:200])

    channels: dict[str, ChannelSnapshot] = {}
    for metagraph_id, entry in (value.get("stateChannelSnapshots") or {}).items():
        channel = _parse_channel(metagraph_id, entry)
        if channel is not None:
            channels[metagraph_id] = channel
    return GlobalSnapshot(ordinal=int(value["ordinal"]), channels=channels)


@dataclass
class CheckpointLayerClient(JsonHttpClient):
    """Async HTTP client for the checkpoint layer."""

    async def get_latest(self) -> GlobalSnapshot:
        """Latest global snapshot."""
        return parse_global_snapshot(await self._request("GET", "/global-snapshots/latest"))

    async def get_by_ordinal(self, ordinal: int) -> GlobalSnapshot | None:
        """Global snapshot at ``ordinal``, or None if the layer does not have it."""
        try:
            data = await self._request("GET", f"/global-snapshots/{ordinal}")
        except LedgerNotFoundError:
            return None
        return parse_global_snapshot(data)
