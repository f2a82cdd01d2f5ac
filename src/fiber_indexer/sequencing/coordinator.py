"""
Sequence coordination for fiber writes.

The ledger rejects a transition whose target sequence number is not exactly
one above the fiber's committed sequence. Reading the fiber and submitting
the next number is racy: two writers that read before either commit pick the
same target and one is rejected with ``SequenceNumberMismatch``.

The coordinator serializes writers per fiber and never guesses. It reads the
sequence live from the on-chain commit index, and when it has submitted a
target that the ledger has not reported yet, it waits for that target before
handing out the next one.

    async with LedgerClient(config.ledger.data_l1_url) as dl1:
        coordinator = SequenceCoordinator(dl1)
        result = await coordinator.submit_transition(fiber_id, build_update)
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, replace
from typing import Any

from fiber_indexer.ledger.client import LedgerClient
from fiber_indexer.ledger.errors import LedgerUnavailableError
from fiber_indexer.sequencing.errors import SyncTimeout

logger = logging.getLogger(__name__)

UpdateBuilder = Callable[[int], dict[str, Any] | Awaitable[dict[str, Any]]]


@dataclass
class SequenceCursor:
    """What this coordinator submitted for one fiber, and what it saw confirmed."""

    fiber_id: str
    last_submitted_target: int | None = None
    last_confirmed_observed: int | None = None

    @property
    def awaiting(self) -> bool:
        """True while a submitted target has not been observed on the ledger."""
        if self.last_submitted_target is None:
            return False
        observed = self.last_confirmed_observed
        return observed is None or observed < self.last_submitted_target


@dataclass(frozen=True, slots=True)
class SubmissionResult:
    """Outcome of ``submit_transition``."""

    fiber_id: str
    target: int
    observed: int | None
    response: dict[str, Any]

    @property
    def update_hash(self) -> str | None:
        value = self.response.get("hash")
        return str(value) if value else None


class SequenceCoordinator:
    """
    Hands out target sequence numbers that cannot collide with this
    instance's own in-flight writes.

    Args:
        onchain: Client for the node serving the authoritative commit index
            (data L1). Also receives ``POST /data`` submissions.
        mirror: Optional query-layer client (metagraph L0) consulted when the
            commit index does not know a fiber yet.
        wait_timeout: Default seconds ``wait_for_sequence`` waits.
        poll_interval: Seconds between ledger reads while waiting.
    """

    def __init__(
        self,
        onchain: LedgerClient,
        mirror: LedgerClient | None = None,
        *,
        wait_timeout: float = 60.0,
        poll_interval: float = 1.0,
    ) -> None:
        if poll_interval <= 0:
            raise ValueError("poll_interval must be positive")
        self.onchain = onchain
        self.mirror = mirror
        self.wait_timeout = wait_timeout
        self.poll_interval = poll_interval
        self._locks: dict[str, asyncio.Lock] = {}
        self._cursors: dict[str, SequenceCursor] = {}

    def _lock(self, fiber_id: str) -> asyncio.Lock:
        lock = self._locks.get(fiber_id)
        if lock is None:
            lock = self._locks[fiber_id] = asyncio.Lock()
        return lock

    def _cursor(self, fiber_id: str) -> SequenceCursor:
        cursor = self._cursors.get(fiber_id)
        if cursor is None:
            cursor = self._cursors[fiber_id] = SequenceCursor(fiber_id)
        return cursor

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    async def observe(self, fiber_id: str) -> int:
        """Current committed sequence number of a fiber (0 when unknown)."""
        sequence = await self.onchain.get_fiber_sequence(fiber_id)
        if sequence is None and self.mirror is not None:
            machine = await self.mirror.get_state_machine(fiber_id)
            if machine is not None:
                sequence = int(machine.get("sequenceNumber") or 0)
        observed = sequence or 0
        self._note_observed(fiber_id, observed)
        return observed

    def _note_observed(self, fiber_id: str, observed: int) -> None:
        cursor = self._cursors.get(fiber_id)
        if cursor is None:
            return
        previous = cursor.last_confirmed_observed
        if previous is None or observed > previous:
            cursor.last_confirmed_observed = observed

    async def wait_for_sequence(
        self, fiber_id: str, target: int, timeout: float | None = None
    ) -> int:
        """
        Poll until the ledger reports ``fiber_id`` at ``target`` or beyond.

        A read that fails because the node is unavailable is logged and
        polled again; only the deadline ends the wait.

        Returns:
            The observed sequence number.

        Raises:
            SyncTimeout: The target was not reached within ``timeout``.
        """
        limit = self.wait_timeout if timeout is None else timeout
        loop = asyncio.get_running_loop()
        started = loop.time()
        last_observed: int | None = None
        while True:
            try:
                observed = await self.observe(fiber_id)
            except LedgerUnavailableError as e:
                logger.warning("Reading sequence of fiber %s failed, retrying: %s", fiber_id, e)
            else:
                if observed >= target:
                    return observed
                last_observed = observed
            elapsed = loop.time() - started
            if elapsed >= limit:
                logger.warning(
                    "Fiber %s still at sequence %s after %.1fs (waiting for %s)",
                    fiber_id,
                    last_observed,
                    elapsed,
                    target,
                )
                raise SyncTimeout(fiber_id, target, last_observed, elapsed)
            await asyncio.sleep(min(self.poll_interval, limit - elapsed))

    async def _next_sequence(self, fiber_id: str) -> int:
        cursor = self._cursors.get(fiber_id)
        if cursor is not None and cursor.awaiting:
            pending = cursor.last_submitted_target or 0
            logger.debug(
                "Fiber %s has unobserved target %s; waiting before next read", fiber_id, pending
            )
            await self.wait_for_sequence(fiber_id, pending)
        return await self.observe(fiber_id) + 1

    async def next_sequence(self, fiber_id: str) -> int:
        """Target sequence number for the next transition on ``fiber_id``."""
        async with self._lock(fiber_id):
            return await self._next_sequence(fiber_id)

    # -------------------------------------------------------------------------
    # Writes
    # -------------------------------------------------------------------------

    def record_submission(self, fiber_id: str, target: int) -> None:
        """Remember that ``target`` was submitted for ``fiber_id``."""
        cursor = self._cursor(fiber_id)
        previous = cursor.last_submitted_target
        if previous is None or target > previous:
            cursor.last_submitted_target = target

    async def submit_transition(
        self,
        fiber_id: str,
        build: UpdateBuilder,
        *,
        wait: bool = True,
        timeout: float | None = None,
    ) -> SubmissionResult:
        """
        Submit one update for ``fiber_id`` at the next free sequence number.

        ``build`` receives the target sequence number and returns the signed
        ``{value, proofs}`` body (or an awaitable of it).

        Raises:
            SyncTimeout: ``wait`` was set and the ledger did not report the
                target in time. The cursor keeps the target, so the next call
                waits for it again; call ``reset`` to discard it.
            LedgerError: The node rejected or did not accept the submission.
        """
        async with self._lock(fiber_id):
            target = await self._next_sequence(fiber_id)
            body = build(target)
            if inspect.isawaitable(body):
                body = await body
            response = await self.onchain.submit_data(body)
            self.record_submission(fiber_id, target)
            logger.info("Submitted update for fiber %s at sequence %s", fiber_id, target)

            observed = None
            if wait:
                observed = await self.wait_for_sequence(fiber_id, target, timeout)
            return SubmissionResult(
                fiber_id=fiber_id, target=target, observed=observed, response=response
            )

    # -------------------------------------------------------------------------
    # Cursor management
    # -------------------------------------------------------------------------

    def reset(self, fiber_id: str | None = None) -> None:
        """Forget submitted targets for one fiber (or all of them)."""
        if fiber_id is None:
            self._cursors.clear()
        else:
            self._cursors.pop(fiber_id, None)

    def cursor(self, fiber_id: str) -> SequenceCursor | None:
        cursor = self._cursors.get(fiber_id)
        return replace(cursor) if cursor is not None else None
