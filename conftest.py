"""
ZoneWatch - pytest Configuration

Shared fixtures and configuration for all tests.
"""

from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Tuple

import pytest


# =============================================================================
# SCHEDULER FIXTURES
# =============================================================================

class ManualTimer:
    """Handle returned by ManualScheduler.call_later()."""

    def __init__(self, when: float, callback: Callable[..., Any], args: Tuple[Any, ...]):
        self.when = when
        self.callback = callback
        self.args = args
        self.cancelled = False

    def cancel(self) -> None:
        self.cancelled = True


class ManualScheduler:
    """
    Deterministic stand-in for the event loop's call_later().

    Timers only fire when the test advances them. With
    `honor_cancel=False` cancelled timers still fire, to check that
    late callbacks are ignored by their receiver.
    """

    def __init__(self, honor_cancel: bool = True):
        self.honor_cancel = honor_cancel
        self.now = 0.0
        self.timers: List[ManualTimer] = []
        self.delays: List[float] = []

    def call_later(self, delay: float, callback: Callable[..., Any], *args: Any) -> ManualTimer:
        timer = ManualTimer(self.now + delay, callback, args)
        self.timers.append(timer)
        self.delays.append(delay)
        return timer

    @property
    def pending(self) -> List[ManualTimer]:
        return [t for t in self.timers if not (t.cancelled and self.honor_cancel)]

    def run_next(self) -> bool:
        """Fire the earliest pending timer. Returns False if none is pending."""
        pending = self.pending
        if not pending:
            return False
        timer = min(pending, key=lambda t: t.when)
        self.timers.remove(timer)
        self.now = max(self.now, timer.when)
        timer.callback(*timer.args)
        return True

    def run_all(self, limit: int = 100) -> int:
        fired = 0
        while fired < limit and self.run_next():
            fired += 1
        return fired


@pytest.fixture
def scheduler() -> ManualScheduler:
    return ManualScheduler()


@pytest.fixture
def leaky_scheduler() -> ManualScheduler:
    """A scheduler whose cancel() does nothing."""
    return ManualScheduler(honor_cancel=False)


# =============================================================================
# DATA FIXTURES
# =============================================================================

FIXED_NOW = datetime(2024, 3, 15, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def fixed_now() -> datetime:
    return FIXED_NOW


@pytest.fixture
def clock() -> Callable[[], datetime]:
    return lambda: FIXED_NOW


def make_document(
    latitude: float,
    longitude: float,
    incident_type: str = "Ruido",
    status: str = "Atendido",
    priority: str = "normal",
    created_at: datetime = FIXED_NOW,
    **extra: Any,
) -> Dict[str, Any]:
    """Raw report document in the shape the live feed delivers."""
    return {
        "location": {"latitude": latitude, "longitude": longitude},
        "incidentType": incident_type,
        "status": status,
        "priority": priority,
        "createdAt": created_at.isoformat(),
        **extra,
    }


@pytest.fixture
def bogota_documents() -> List[Dict[str, Any]]:
    """Three reports within a few hundred meters of each other in Bogota."""
    return [
        make_document(4.711, -74.072, incident_type="Robo", id="r1"),
        make_document(4.7115, -74.0725, incident_type="Robo", id="r2"),
        make_document(4.712, -74.073, incident_type="Vandalismo", id="r3"),
    ]


@pytest.fixture(name="make_document")
def make_document_fixture() -> Callable[..., Dict[str, Any]]:
    return make_document
