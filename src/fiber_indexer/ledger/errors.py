"""
Upstream ledger errors.

Every failure talking to a metagraph node or to the checkpoint layer surfaces
as a ``LedgerError``. The pollers treat ``LedgerUnavailableError`` as "try
again next tick" and never change snapshot status because of it.
"""

from __future__ import annotations

from dataclasses import dataclass


@dataclass
class LedgerError(Exception):
    """
    Exception raised when a ledger request fails.

    Attributes:
        message: Human-readable error message.
        status_code: HTTP status code, 0 for transport failures.
        detail: Additional detail from the response or the transport.
        url: Request URL.
    """

    message: str
    status_code: int = 0
    detail: str = ""
    url: str = ""

    def __str__(self) -> str:
        """Return a formatted error message."""
        if self.detail:
            return f"{self.message}: {self.detail}"
        return self.message


class LedgerUnavailableError(LedgerError):
    """The node could not be reached, timed out, or answered with a 5xx."""


class LedgerNotFoundError(LedgerError):
    """The node answered 404 for the requested resource."""
