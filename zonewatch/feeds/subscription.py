"""
ZoneWatch Resilient Subscription Manager

Keeps a live listener on an incident source alive across transient failures.

State machine (per subscription):

    IDLE --attached--> SUBSCRIBED --transient error--> RETRYING --timer--> SUBSCRIBED
      |                    |                              |
      +------ permanent error / retries exhausted / cancel() ----> TERMINATED

    - Transient errors (network aborts, cancellations, unavailability) are
      retried with linear backoff: retry_delay_ms * attempt_count.
    - Permanent errors (permission denied, invalid argument, anything
      unrecognized) terminate immediately.
    - A transient error after max_retries retries terminates with that error.
    - on_error fires at most once per subscription, always on termination.
    - Any delivered snapshot resets the attempt counter.

Invariants:
    - At most one underlying listener is attached per subscription.
    - Callbacks from a detached listener are ignored.
    - Once cancel() returns, no on_data/on_error call happens for that
      subscription, including from a retry timer already scheduled.
"""

from __future__ import annotations

import asyncio
import itertools
import logging
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Protocol, Tuple

from ..config import SubscriptionConfig
from ..models import QuerySpec
from .normalizer import IncidentNormalizer
from .source import IncidentSource, ListenerRegistration, SourceError


logger = logging.getLogger(__name__)


# =============================================================================
# STATE MACHINE
# =============================================================================

class SubscriptionState(str, Enum):
    IDLE = "idle"
    SUBSCRIBED = "subscribed"
    RETRYING = "retrying"
    TERMINATED = "terminated"


class SubscriptionEvent(str, Enum):
    ATTACHED = "attached"
    DATA_RECEIVED = "data_received"
    RETRY_SCHEDULED = "retry_scheduled"
    RETRY_EXHAUSTED = "retry_exhausted"
    PERMANENT_FAILURE = "permanent_failure"
    CANCELLED = "cancelled"


class InvalidTransitionError(ValueError):
    """Raised for an event the current state does not accept."""


_LIVE_STATES = (SubscriptionState.IDLE, SubscriptionState.SUBSCRIBED, SubscriptionState.RETRYING)

_TRANSITIONS: Dict[Tuple[SubscriptionState, SubscriptionEvent], SubscriptionState] = {}
for _state in _LIVE_STATES:
    # A source may deliver (or fail) from inside listen(), before it returns
    _TRANSITIONS[(_state, SubscriptionEvent.ATTACHED)] = SubscriptionState.SUBSCRIBED
    _TRANSITIONS[(_state, SubscriptionEvent.DATA_RECEIVED)] = SubscriptionState.SUBSCRIBED
    _TRANSITIONS[(_state, SubscriptionEvent.RETRY_SCHEDULED)] = SubscriptionState.RETRYING
    _TRANSITIONS[(_state, SubscriptionEvent.RETRY_EXHAUSTED)] = SubscriptionState.TERMINATED
    _TRANSITIONS[(_state, SubscriptionEvent.PERMANENT_FAILURE)] = SubscriptionState.TERMINATED
    _TRANSITIONS[(_state, SubscriptionEvent.CANCELLED)] = SubscriptionState.TERMINATED
_TRANSITIONS[(SubscriptionState.TERMINATED, SubscriptionEvent.CANCELLED)] = SubscriptionState.TERMINATED
del _state


def transition(state: SubscriptionState, event: SubscriptionEvent) -> SubscriptionState:
    """
    Next state for (state, event).

    Raises:
        InvalidTransitionError: If the event is not accepted in this state
    """
    try:
        return _TRANSITIONS[(state, event)]
    except KeyError:
        raise InvalidTransitionError(
            f"Event {event.value} not allowed in state {state.value}"
        ) from None


# =============================================================================
# ERROR CLASSIFICATION
# =============================================================================

class ErrorKind(str, Enum):
    TRANSIENT = "transient"
    PERMANENT = "permanent"


TRANSIENT_ERROR_CODES = frozenset({
    "aborted",
    "cancelled",
    "unavailable",
    "deadline-exceeded",
})

# Browser/network stacks sometimes only surface the abort in the message
TRANSIENT_MESSAGE_MARKERS = ("ERR_ABORTED",)


def classify_error(error: BaseException) -> ErrorKind:
    """
    Decide whether a delivery failure is worth retrying.

    Transient: a recognized network-abort/cancellation/unavailable code, or an
    abort marker in the message. Everything else is permanent.
    """
    code = getattr(error, "code", None)
    if isinstance(code, str) and code.strip().lower() in TRANSIENT_ERROR_CODES:
        return ErrorKind.TRANSIENT

    message = str(error)
    if any(marker in message for marker in TRANSIENT_MESSAGE_MARKERS):
        return ErrorKind.TRANSIENT

    return ErrorKind.PERMANENT


# =============================================================================
# SUBSCRIPTION
# =============================================================================

class TimerHandle(Protocol):
    def cancel(self) -> None: ...


class Scheduler(Protocol):
    """Anything with asyncio's call_later() shape (an event loop qualifies)."""

    def call_later(self, delay: float, callback: Callable[..., Any], *args: Any) -> TimerHandle: ...


DataCallback = Callable[[List[Any]], None]
ErrorHandler = Callable[[BaseException], None]


class Subscription:
    """
    Handle for one resilient live query.

    Created by `ResilientSubscriptionManager.subscribe()`. Callers observe
    `state`, `attempt_count` and `pending_retry`, and stop it with `cancel()`.
    """

    def __init__(
        self,
        subscription_id: int,
        source: IncidentSource,
        query: QuerySpec,
        on_data: DataCallback,
        on_error: Optional[ErrorHandler],
        options: SubscriptionConfig,
        scheduler: Scheduler,
        normalizer: Optional[IncidentNormalizer] = None,
        on_terminated: Optional[Callable[["Subscription"], None]] = None,
    ):
        self.id = subscription_id
        self._source = source
        self._query = query
        self._on_data = on_data
        self._on_error = on_error
        self._options = options
        self._scheduler = scheduler
        self._normalizer = normalizer
        self._on_terminated = on_terminated

        self.state = SubscriptionState.IDLE
        self.attempt_count = 0
        self.attach_count = 0
        self.last_error: Optional[BaseException] = None

        self._registration: Optional[ListenerRegistration] = None
        self._retry_timer: Optional[TimerHandle] = None
        # Bumped whenever the current listener dies; stale callbacks compare against it
        self._generation = 0

    @property
    def pending_retry(self) -> bool:
        return self._retry_timer is not None

    @property
    def is_active(self) -> bool:
        return self.state is not SubscriptionState.TERMINATED

    def _apply(self, event: SubscriptionEvent) -> None:
        previous = self.state
        self.state = transition(previous, event)
        if previous is not self.state:
            logger.info(
                f"Subscription {self.id}: {previous.value} -> {self.state.value} ({event.value})",
                extra={"subscription_id": self.id, "attempt": self.attempt_count},
            )

    def _is_current(self, generation: int) -> bool:
        return self.is_active and generation == self._generation

    # -------------------------------------------------------------------------
    # Listener lifecycle
    # -------------------------------------------------------------------------

    def start(self) -> None:
        """Attach the first listener. Called once by the manager."""
        self._attach()

    def _attach(self) -> None:
        generation = self._generation
        self.attach_count += 1

        try:
            registration = self._source.listen(
                self._query,
                lambda documents: self._handle_snapshot(generation, documents),
                lambda error: self._handle_error(generation, error),
            )
        except SourceError as e:
            self._handle_error(generation, e)
            return

        if not self._is_current(generation):
            # Failed or cancelled from inside listen()
            registration()
            return

        self._registration = registration
        self._apply(SubscriptionEvent.ATTACHED)

    def _detach(self) -> None:
        self._generation += 1
        registration, self._registration = self._registration, None
        if registration is not None:
            registration()

    def _cancel_timer(self) -> None:
        timer, self._retry_timer = self._retry_timer, None
        if timer is not None:
            timer.cancel()

    # -------------------------------------------------------------------------
    # Source callbacks
    # -------------------------------------------------------------------------

    def _handle_snapshot(self, generation: int, documents: List[Any]) -> None:
        if not self._is_current(generation):
            return

        self.attempt_count = 0
        self._apply(SubscriptionEvent.DATA_RECEIVED)

        payload = self._normalizer.normalize(documents) if self._normalizer else list(documents)
        self._on_data(payload)

    def _handle_error(self, generation: int, error: BaseException) -> None:
        if not self._is_current(generation):
            return

        self.last_error = error
        self._detach()
        kind = classify_error(error)
        code = getattr(error, "code", None)

        if kind is ErrorKind.TRANSIENT and self.attempt_count < self._options.max_retries:
            self.attempt_count += 1
            delay_ms = self._options.retry_delay_ms * self.attempt_count
            self._apply(SubscriptionEvent.RETRY_SCHEDULED)
            logger.warning(
                f"Subscription {self.id}: transient error ({error}); "
                f"retry {self.attempt_count}/{self._options.max_retries} in {delay_ms}ms",
                extra={"subscription_id": self.id, "attempt": self.attempt_count, "error_code": code},
            )
            self._retry_timer = self._scheduler.call_later(
                delay_ms / 1000, self._fire_retry, self._generation
            )
            return

        event = (
            SubscriptionEvent.RETRY_EXHAUSTED
            if kind is ErrorKind.TRANSIENT
            else SubscriptionEvent.PERMANENT_FAILURE
        )
        self._terminate(event, error)

    def _fire_retry(self, generation: int) -> None:
        if not self._is_current(generation) or self.state is not SubscriptionState.RETRYING:
            return
        self._retry_timer = None
        self._attach()

    def _terminate(self, event: SubscriptionEvent, error: BaseException) -> None:
        self._cancel_timer()
        self._apply(event)
        if self._on_terminated is not None:
            self._on_terminated(self)

        logger.error(
            f"Subscription {self.id} terminated after {self.attach_count} attach(es): {error}",
            extra={"subscription_id": self.id, "error_code": getattr(error, "code", None)},
        )
        if self._on_error is not None:
            self._on_error(error)

    # -------------------------------------------------------------------------
    # Public API
    # -------------------------------------------------------------------------

    def cancel(self) -> None:
        """
        Stop the subscription. Idempotent.

        Detaches the listener and clears any pending retry. No callback fires
        after this returns.
        """
        was_active = self.is_active
        self._cancel_timer()
        self._detach()
        self._apply(SubscriptionEvent.CANCELLED)
        if was_active:
            if self._on_terminated is not None:
                self._on_terminated(self)
            logger.debug(f"Subscription {self.id} cancelled")


class ResilientSubscriptionManager:
    """
    Creates and tracks resilient subscriptions on one incident source.

    Example:
        manager = ResilientSubscriptionManager(source, normalizer=IncidentNormalizer())
        subscription = manager.subscribe(
            QuerySpec(collection="reports"),
            on_data=handle_incidents,
            on_error=handle_failure,
            options=SubscriptionConfig(max_retries=3, retry_delay_ms=1000),
        )
        ...
        subscription.cancel()
    """

    def __init__(
        self,
        source: IncidentSource,
        scheduler: Optional[Scheduler] = None,
        normalizer: Optional[IncidentNormalizer] = None,
    ):
        """
        Initialize the manager.

        Args:
            source: Incident source to listen on
            scheduler: Retry timer scheduler (default: the running event loop)
            normalizer: If given, on_data receives normalized incidents
                instead of raw documents
        """
        self._source = source
        self._scheduler = scheduler
        self._normalizer = normalizer
        self._subscriptions: Dict[int, Subscription] = {}
        self._ids = itertools.count(1)

    @property
    def active_subscriptions(self) -> List[Subscription]:
        return list(self._subscriptions.values())

    def subscribe(
        self,
        query: QuerySpec,
        on_data: DataCallback,
        on_error: Optional[ErrorHandler] = None,
        options: Optional[SubscriptionConfig] = None,
    ) -> Subscription:
        """
        Start a resilient live query.

        Args:
            query: What to watch
            on_data: Called with each snapshot (normalized if the manager has
                a normalizer)
            on_error: Called once on terminal failure
            options: Retry policy (defaults: 3 retries, 1000ms base delay)

        Returns:
            The Subscription handle

        Raises:
            RuntimeError: If no scheduler was given and no event loop is running
        """
        options = options or SubscriptionConfig()
        if options.max_retries < 0 or options.retry_delay_ms < 0:
            raise ValueError("max_retries and retry_delay_ms must be >= 0")
        scheduler = self._scheduler or asyncio.get_running_loop()

        subscription = Subscription(
            subscription_id=next(self._ids),
            source=self._source,
            query=query,
            on_data=on_data,
            on_error=on_error,
            options=options,
            scheduler=scheduler,
            normalizer=self._normalizer,
            on_terminated=self._forget,
        )
        self._subscriptions[subscription.id] = subscription
        subscription.start()
        return subscription

    def cancel_all(self) -> None:
        """Cancel every live subscription (service shutdown)."""
        for subscription in list(self._subscriptions.values()):
            subscription.cancel()

    def _forget(self, subscription: Subscription) -> None:
        self._subscriptions.pop(subscription.id, None)
