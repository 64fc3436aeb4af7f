"""
ZoneWatch Incident Sources

The boundary to the external incident store. A source offers two things:

    - listen(): a push-style live query. Each delivery is the full current
      result set (a snapshot), or an error.
    - fetch(): a one-shot query, used for historical trend windows.

The interface is abstracted to allow:
    - An in-memory implementation for development and testing
    - Redis and HTTP adapters for deployed services
    - Easy addition of new backends

Errors cross the boundary as `SourceError` with a short machine-readable code
("aborted", "unavailable", "permission-denied", ...). The subscription layer
decides from that code whether a failure is worth retrying.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, List, Optional

from ..models import QuerySpec
from .normalizer import TIMESTAMP_FIELDS, parse_timestamp


logger = logging.getLogger(__name__)


SnapshotCallback = Callable[[List[Dict[str, Any]]], None]
ErrorCallback = Callable[[BaseException], None]

# Calling the registration detaches the listener. Must be idempotent.
ListenerRegistration = Callable[[], None]


class SourceError(Exception):
    """
    A delivery or query failure reported by an incident source.

    Attributes:
        code: Machine-readable failure code (e.g. "unavailable")
        message: Human-readable detail
    """

    def __init__(self, code: str, message: str = ""):
        super().__init__(f"{code}: {message}" if message else code)
        self.code = code
        self.message = message


def document_timestamp(document: Dict[str, Any]) -> Optional[datetime]:
    """Creation time of a raw document, if it has a parseable one."""
    for field_name in TIMESTAMP_FIELDS:
        parsed = parse_timestamp(document.get(field_name))
        if parsed is not None:
            return parsed
    return None


def matches_query(document: Dict[str, Any], query: QuerySpec) -> bool:
    """Whether a raw document falls inside the query's time bounds."""
    if query.start is None and query.end is None:
        return True

    created_at = document_timestamp(document)
    if created_at is None:
        return False
    if query.start is not None and created_at < query.start:
        return False
    if query.end is not None and created_at > query.end:
        return False
    return True


class IncidentSource(ABC):
    """
    Abstract base class for incident data sources.

    All backends (in-memory, Redis, HTTP) implement this interface.
    """

    @abstractmethod
    def listen(
        self,
        query: QuerySpec,
        on_snapshot: SnapshotCallback,
        on_error: ErrorCallback,
    ) -> ListenerRegistration:
        """
        Attach a live listener.

        Args:
            query: What to watch
            on_snapshot: Called with the full result set on every change
            on_error: Called once if the listener fails; the listener is dead
                afterwards

        Returns:
            Callable that detaches the listener

        Raises:
            SourceError: If the listener cannot be attached at all
        """
        pass

    @abstractmethod
    async def fetch(self, query: QuerySpec) -> List[Dict[str, Any]]:
        """
        Run a one-shot query.

        Raises:
            SourceError: If the query fails
        """
        pass

    @abstractmethod
    async def health_check(self) -> bool:
        """
        Check if the source is reachable.

        Returns:
            True if healthy, False otherwise
        """
        pass

    async def close(self) -> None:
        """Release connections held by the source."""
        return None


class InMemoryIncidentSource(IncidentSource):
    """
    In-memory incident source for development and testing.

    Listeners only receive data when the owner pushes it, which makes
    delivery order fully deterministic:

        source = InMemoryIncidentSource()
        detach = source.listen(QuerySpec(), on_snapshot, on_error)
        source.add_documents({"location": {...}, "incidentType": "Robo"})
        source.emit_error(SourceError("aborted"))
    """

    def __init__(self, documents: Optional[Iterable[Dict[str, Any]]] = None):
        self._documents: List[Dict[str, Any]] = list(documents or [])
        self._listeners: Dict[int, Dict[str, Any]] = {}
        self._next_listener_id = 0
        self._listen_failures: List[SourceError] = []
        self._fetch_failures: List[SourceError] = []
        self._healthy = True

        # Instrumentation for tests
        self.listen_count = 0
        self.fetch_count = 0

    @property
    def documents(self) -> List[Dict[str, Any]]:
        return list(self._documents)

    @property
    def active_listener_count(self) -> int:
        return len(self._listeners)

    def listen(
        self,
        query: QuerySpec,
        on_snapshot: SnapshotCallback,
        on_error: ErrorCallback,
    ) -> ListenerRegistration:
        self.listen_count += 1
        if self._listen_failures:
            raise self._listen_failures.pop(0)

        listener_id = self._next_listener_id
        self._next_listener_id += 1
        self._listeners[listener_id] = {
            "query": query,
            "on_snapshot": on_snapshot,
            "on_error": on_error,
        }

        def detach() -> None:
            self._listeners.pop(listener_id, None)

        return detach

    async def fetch(self, query: QuerySpec) -> List[Dict[str, Any]]:
        self.fetch_count += 1
        if self._fetch_failures:
            raise self._fetch_failures.pop(0)
        return [dict(d) for d in self._documents if matches_query(d, query)]

    async def health_check(self) -> bool:
        return self._healthy

    # -------------------------------------------------------------------------
    # Test controls
    # -------------------------------------------------------------------------

    def add_documents(self, *documents: Dict[str, Any], notify: bool = True) -> None:
        """Store documents and, by default, push a snapshot to listeners."""
        self._documents.extend(documents)
        if notify:
            self.emit_snapshot()

    def clear(self, notify: bool = False) -> None:
        self._documents.clear()
        if notify:
            self.emit_snapshot()

    def emit_snapshot(self) -> None:
        """Deliver the current result set to every attached listener."""
        for listener in list(self._listeners.values()):
            query = listener["query"]
            snapshot = [dict(d) for d in self._documents if matches_query(d, query)]
            listener["on_snapshot"](snapshot)

    def emit_error(self, error: BaseException) -> None:
        """Fail every attached listener. Failed listeners are dropped."""
        listeners = list(self._listeners.values())
        self._listeners.clear()
        for listener in listeners:
            listener["on_error"](error)

    def fail_next_listen(self, error: SourceError) -> None:
        """Make the next listen() call raise instead of attaching."""
        self._listen_failures.append(error)

    def fail_next_fetch(self, error: SourceError) -> None:
        """Make the next fetch() call raise."""
        self._fetch_failures.append(error)

    def set_healthy(self, healthy: bool) -> None:
        """Enable/disable the source (for testing failure scenarios)."""
        self._healthy = healthy
        logger.debug(f"In-memory source health set to {healthy}")
