"""Write-path sequence coordination for fiber transitions."""

from fiber_indexer.sequencing.coordinator import (
    SequenceCoordinator,
    SequenceCursor,
    SubmissionResult,
)
from fiber_indexer.sequencing.errors import SyncTimeout

__all__ = ["SequenceCoordinator", "SequenceCursor", "SubmissionResult", "SyncTimeout"]
