"""HTTP clients for the metagraph nodes and the checkpoint layer."""

from fiber_indexer.ledger.checkpoint import CheckpointLayerClient, ChannelSnapshot, GlobalSnapshot
from fiber_indexer.ledger.client import LedgerClient, SnapshotInfo
from fiber_indexer.ledger.errors import LedgerError, LedgerNotFoundError, LedgerUnavailableError

__all__ = [
    "ChannelSnapshot",
    "CheckpointLayerClient",
    "GlobalSnapshot",
    "LedgerClient",
    "LedgerError",
    "LedgerNotFoundError",
    "LedgerUnavailableError",
    "SnapshotInfo",
]
