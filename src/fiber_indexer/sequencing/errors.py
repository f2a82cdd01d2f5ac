"""Sequence coordination errors."""

from __future__ import annotations


class SyncTimeout(TimeoutError):
    """
    The ledger did not report a fiber at the target sequence in time.

    Do not retry with a guessed sequence number: a stale guess reproduces the
    collision this wait exists to prevent. Re-read with ``next_sequence``.

    Attributes:
        fiber_id: Fiber being waited on.
        target: Sequence number that was expected.
        observed: Last sequence number the ledger reported (None if never seen).
        elapsed: Seconds spent waiting.
    """

    def __init__(self, fiber_id: str, target: int, observed: int | None, elapsed: float) -> None:
        super().__init__(
            f"fiber {fiber_id} did not reach sequence {target} after {elapsed:.1f}s "
            f"(last observed {observed})"
        )
        self.fiber_id = fiber_id
        self.target = target
        self.observed = observed
        self.elapsed = elapsed
