"""
ZoneWatch Feeds Package

Incident sources, record normalization and resilient live subscriptions.
"""

from .source import IncidentSource, InMemoryIncidentSource, SourceError
from .normalizer import IncidentNormalizer
from .subscription import (
    ResilientSubscriptionManager,
    Subscription,
    SubscriptionState,
    ErrorKind,
    classify_error,
)

__all__ = [
    "IncidentSource",
    "InMemoryIncidentSource",
    "SourceError",
    "IncidentNormalizer",
    "ResilientSubscriptionManager",
    "Subscription",
    "SubscriptionState",
    "ErrorKind",
    "classify_error",
]
