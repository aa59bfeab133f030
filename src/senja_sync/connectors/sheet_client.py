"""
Spreadsheet Web App Client.

Provides the two remote operations the sync core needs:
- Fetch every collection in one GET
- Overwrite one collection (sheet) in one POST

The backend is a spreadsheet script published as a web app, so it only
understands flat rows of scalar cells and answers through a redirect.
There is no retry by default; ``max_retries`` enables bounded exponential
backoff. Pushes are safe to repeat because the remote replaces the whole
sheet instead of appending to it.
"""

from __future__ import annotations

import asyncio
from typing import Any

import httpx

from senja_sync.config import Settings, TransportOptions
from senja_sync.core.schema import Collection
from senja_sync.errors import TransportError
from senja_sync.utils.logger import get_logger

logger = get_logger(__name__)

RETRYABLE_STATUSES = frozenset({429, 500, 502, 503, 504})


class SheetClient:
    """
    Spreadsheet backend client.

    Example:
        async with SheetClient("https://script.google.com/macros/s/.../exec") as client:
            payload = await client.pull_all()
            await client.push_collection(Collection.ROSTER, rows)
    """

    def __init__(
        self,
        endpoint_url: str,
        options: TransportOptions | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        """
        Initialize the client.

        Args:
            endpoint_url: Web app URL of the backend
            options: Timeout and retry options (defaults: 30s, no retry)
            transport: Custom httpx transport, e.g. httpx.MockTransport in tests
        """
        self.endpoint_url = endpoint_url
        self.options = options or TransportOptions()
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._client is None:
            self._client = httpx.AsyncClient(
                transport=self._transport,
                timeout=httpx.Timeout(self.options.timeout_seconds),
                follow_redirects=True,
                headers={"Accept": "application/json"},
            )
        return self._client

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._client:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self) -> "SheetClient":
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.close()

    def _backoff(self, attempt: int) -> float:
        delay = self.options.retry_backoff_seconds * (2**attempt)
        return min(delay, self.options.max_backoff_seconds)

    async def _request(self, method: str, **kwargs: Any) -> httpx.Response:
        """
        Make a request, retrying transient failures if configured.

        Raises:
            TransportError: on connection failure or a non-2xx status
        """
        if not self.endpoint_url:
            raise TransportError("No endpoint configured")

        client = await self._get_client()
        attempts = self.options.max_retries + 1

        for attempt in range(attempts):
            last = attempt == attempts - 1
            try:
                response = await client.request(method, self.endpoint_url, **kwargs)
            except httpx.HTTPError as e:
                if not last:
                    delay = self._backoff(attempt)
                    logger.debug("%s failed (%s); retrying in %.1fs", method, e, delay)
                    await asyncio.sleep(delay)
                    continue
                raise TransportError(f"Connection error: {e}") from e

            if response.is_success:
                return response

            if response.status_code in RETRYABLE_STATUSES and not last:
                delay = self._backoff(attempt)
                logger.debug(
                    "%s returned %d; retrying in %.1fs", method, response.status_code, delay
                )
                await asyncio.sleep(delay)
                continue

            raise TransportError(
                f"{method} returned HTTP {response.status_code}",
                status=response.status_code,
            )

        raise TransportError("Max retries exceeded")

    async def pull_all(self) -> dict[str, Any]:
        """
        Fetch every collection.

        Returns:
            The decoded JSON object, keyed by lower-cased collection name.
            Values are not validated here.

        Raises:
            TransportError: on any failure, including a body that is not a
                JSON object; no partial data is returned
        """
        response = await self._request("GET", params={"action": "getAll"})
        try:
            data = response.json()
        except ValueError as e:
            raise TransportError(
                f"Response is not JSON: {e}", status=response.status_code
            ) from e

        if not isinstance(data, dict):
            raise TransportError(
                f"Expected a JSON object, got {type(data).__name__}",
                status=response.status_code,
            )
        return data

    async def push_collection(
        self,
        collection: Collection,
        records: list[dict[str, Any]],
    ) -> None:
        """
        Overwrite one collection on the remote.

        Args:
            collection: Target collection (sheet)
            records: Flat, already chunk-encoded rows

        Raises:
            TransportError: on connection failure or a non-2xx status
        """
        body = {"action": "save", "sheet": collection.value, "data": records}
        await self._request("POST", json=body)
        logger.debug("Pushed %d %s rows", len(records), collection.value)


# Convenience function for creating client from settings
def create_sheet_client(
    settings: Settings,
    transport: httpx.AsyncBaseTransport | None = None,
) -> SheetClient:
    """Create a SheetClient from settings."""
    return SheetClient(
        endpoint_url=settings.endpoint_url,
        options=settings.transport,
        transport=transport,
    )
