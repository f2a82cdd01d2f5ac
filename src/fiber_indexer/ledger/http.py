"""
Shared async JSON-over-HTTP plumbing for the ledger clients.

The clients are designed to be used as async context managers so the
underlying connection pool is always closed:

    async with LedgerClient("http://ml0:9200") as client:
        checkpoint = await client.get_checkpoint()
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

import httpx

from fiber_indexer.ledger.errors import LedgerError, LedgerNotFoundError, LedgerUnavailableError

logger = logging.getLogger(__name__)


@dataclass
class JsonHttpClient:
    """
    Base class for the async ledger clients.

    Attributes:
        base_url: Node base URL, without trailing slash.
        timeout: Per-request timeout in seconds.
    """

    base_url: str
    timeout: float = 10.0

    _http_client: httpx.AsyncClient | None = field(default=None, repr=False)

    # -------------------------------------------------------------------------
    # Context Manager Protocol
    # -------------------------------------------------------------------------

    async def __aenter__(self) -> JsonHttpClient:
        await self.open()
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        """Close the underlying HTTP client connection pool."""
        await self.aclose()

    async def open(self) -> None:
        """Create the underlying httpx.AsyncClient. No-op if already open."""
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(
                base_url=self.base_url.rstrip("/"),
                timeout=self.timeout,
            )

    async def aclose(self) -> None:
        if self._http_client:
            await self._http_client.aclose()
            self._http_client = None

    @property
    def http_client(self) -> httpx.AsyncClient:
        """
        Get the HTTP client, ensuring it's been initialized.

        Raises:
            RuntimeError: If accessed outside of async context manager.
        """
        if self._http_client is None:
            raise RuntimeError(
                f"{type(self).__name__} must be used as an async context manager. "
                f"Use 'async with {type(self).__name__}(url) as client:'"
            )
        return self._http_client

    # -------------------------------------------------------------------------
    # Requests
    # -------------------------------------------------------------------------

    async def _request(
        self,
        method: str,
        path: str,
        *,
        json: Any = None,
        timeout: float | None = None,
    ) -> Any:
        """
        Send a request and decode the JSON body.

        Raises:
            LedgerUnavailableError: Transport failure, timeout, or 5xx.
            LedgerNotFoundError: 404.
            LedgerError: Any other non-2xx status or a non-JSON body.
        """
        url = f"{self.base_url.rstrip('/')}{path}"
        kwargs: dict[str, Any] = {}
        if json is not None:
            kwargs["json"] = json
        if timeout is not None:
            kwargs["timeout"] = timeout

        try:
            response = await self.http_client.request(method, path, **kwargs)
        except httpx.TimeoutException as e:
            raise LedgerUnavailableError(
                message=f"{method} {path} timed out",
                detail=str(e),
                url=url,
            ) from e
        except httpx.HTTPError as e:
            raise LedgerUnavailableError(
                message=f"{method} {path} failed",
                detail=f"Cannot connect to {self.base_url}: {e}",
                url=url,
            ) from e

        if response.status_code == 404:
            raise LedgerNotFoundError(
                message=f"{method} {path} not found",
                status_code=404,
                url=url,
            )
        if response.status_code >= 500:
            raise LedgerUnavailableError(
                message=f"{method} {path} failed",
                status_code=response.status_code,
                detail=response.text[:200],
                url=url,
            )
        if response.status_code >= 400:
            raise LedgerError(
                message=f"{method} {path} rejected",
                status_code=response.status_code,
                detail=response.text[:200],
                url=url,
            )

        if not response.content:
            return None
        try:
            return response.json()
        except ValueError as e:
            raise LedgerError(
                message=f"{method} {path} returned invalid JSON",
                status_code=response.status_code,
                detail=response.text[:200],
                url=url,
            ) from e
