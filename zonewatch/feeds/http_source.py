"""
ZoneWatch HTTP Incident Source

Reads incident documents from a REST endpoint:

    GET <base_url>/<collection>?start=<iso>&end=<iso>
    -> [ {...}, ... ]  or  {"documents": [ {...}, ... ]}

Live queries are implemented by polling; a snapshot is delivered on the first
successful poll and then only when the payload changes.

HTTP failures are translated into SourceError codes so the subscription layer
can tell network trouble (retry) from authorization/validation problems
(give up).
"""

from __future__ import annotations

import asyncio
import hashlib
import json
import logging
from typing import Any, Dict, List, Optional

import httpx

from ..models import QuerySpec
from .source import (
    ErrorCallback,
    IncidentSource,
    ListenerRegistration,
    SnapshotCallback,
    SourceError,
)


logger = logging.getLogger(__name__)


_STATUS_CODES = {
    400: "invalid-argument",
    401: "permission-denied",
    403: "permission-denied",
    404: "not-found",
    422: "invalid-argument",
    429: "resource-exhausted",
}


def status_to_code(status_code: int) -> str:
    if status_code in _STATUS_CODES:
        return _STATUS_CODES[status_code]
    if status_code >= 500:
        return "unavailable"
    return "unknown"


def to_source_error(exc: httpx.HTTPError) -> SourceError:
    """Translate an httpx exception into a classified SourceError."""
    if isinstance(exc, httpx.HTTPStatusError):
        return SourceError(status_to_code(exc.response.status_code), str(exc))
    if isinstance(exc, httpx.TimeoutException):
        return SourceError("deadline-exceeded", str(exc))
    if isinstance(exc, httpx.TransportError):
        return SourceError("unavailable", str(exc))
    return SourceError("unknown", str(exc))


def _fingerprint(documents: List[Dict[str, Any]]) -> str:
    encoded = json.dumps(documents, sort_keys=True, default=str).encode()
    return hashlib.sha256(encoded).hexdigest()


class HttpIncidentSource(IncidentSource):
    """
    Polling REST client for incident documents.

    This client implements:
        - Time-range queries via start/end parameters
        - Change detection by payload fingerprint
        - Bearer-token authentication when an API key is configured
    """

    def __init__(
        self,
        base_url: str,
        api_key: Optional[str] = None,
        poll_interval_seconds: float = 5.0,
        timeout_seconds: float = 5.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        """
        Initialize the HTTP source.

        Args:
            base_url: API root; collections are paths below it
            api_key: Sent as a bearer token if given
            poll_interval_seconds: Delay between polls of a live query
            timeout_seconds: Request timeout
            client: Pre-built client (tests inject one with a mock transport)
        """
        self._base_url = base_url.rstrip("/")
        self._api_key = api_key
        self._poll_interval = poll_interval_seconds
        self._timeout = timeout_seconds
        self._client = client
        self._owns_client = client is None
        self._tasks: set[asyncio.Task] = set()

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._client is None:
            headers = {"Accept": "application/json"}
            if self._api_key:
                headers["Authorization"] = f"Bearer {self._api_key}"
            self._client = httpx.AsyncClient(
                base_url=self._base_url,
                timeout=self._timeout,
                headers=headers,
            )
        return self._client

    async def fetch(self, query: QuerySpec) -> List[Dict[str, Any]]:
        params = {}
        if query.start is not None:
            params["start"] = query.start.isoformat()
        if query.end is not None:
            params["end"] = query.end.isoformat()

        try:
            client = await self._get_client()
            response = await client.get(f"/{query.collection}", params=params)
            response.raise_for_status()
            data = response.json()
        except httpx.HTTPError as e:
            logger.error(f"Incident API error on {query.collection}: {e}")
            raise to_source_error(e) from e
        except ValueError as e:
            raise SourceError("data-loss", f"Response is not valid JSON: {e}") from e

        if isinstance(data, dict):
            data = data.get("documents", [])
        if not isinstance(data, list):
            raise SourceError("data-loss", "Expected a list of documents")

        return [d for d in data if isinstance(d, dict)]

    async def health_check(self) -> bool:
        """Check incident API availability."""
        try:
            client = await self._get_client()
            response = await client.get("/health")
            return response.status_code == 200
        except httpx.HTTPError:
            return False

    def listen(
        self,
        query: QuerySpec,
        on_snapshot: SnapshotCallback,
        on_error: ErrorCallback,
    ) -> ListenerRegistration:
        loop = asyncio.get_running_loop()
        task = loop.create_task(self._poll_loop(query, on_snapshot, on_error))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

        def detach() -> None:
            task.cancel()

        return detach

    async def _poll_loop(
        self,
        query: QuerySpec,
        on_snapshot: SnapshotCallback,
        on_error: ErrorCallback,
    ) -> None:
        last_fingerprint: Optional[str] = None

        while True:
            try:
                documents = await self.fetch(query)
                fingerprint = _fingerprint(documents)
                if fingerprint != last_fingerprint:
                    last_fingerprint = fingerprint
                    on_snapshot(documents)
            except SourceError as e:
                error = e
                break
            except Exception as e:
                # Includes failures raised by the snapshot consumer
                logger.error(f"Poller for {query.collection} crashed: {e!r}")
                error = SourceError("unknown", repr(e))
                break

            await asyncio.sleep(self._poll_interval)

        on_error(error)

    async def close(self) -> None:
        """Stop pollers and close the HTTP client."""
        for task in list(self._tasks):
            task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None
