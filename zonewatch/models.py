"""
ZoneWatch Core Data Models

This module defines the data structures that flow through the aggregation
pipeline, from normalized incidents to the views handed to the map/UI layer.

Design Philosophy:
    - Immutability everywhere (frozen models); every pass builds fresh objects
    - Validation at the boundary, so clustering never sees bad geometry
    - Output models serialize with camelCase aliases for the UI collaborator
"""

from __future__ import annotations

from datetime import date, datetime, time, timedelta, timezone
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel


_Date = date


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


# =============================================================================
# ENUMS
# =============================================================================

class RiskLevel(str, Enum):
    """
    Severity classification of a zone.

    Ordered: LOW < MEDIUM < HIGH < CRITICAL. Zones are presented to operators
    highest rank first.
    """
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return _RISK_RANKS[self]


_RISK_RANKS = {
    RiskLevel.LOW: 1,
    RiskLevel.MEDIUM: 2,
    RiskLevel.HIGH: 3,
    RiskLevel.CRITICAL: 4,
}


# =============================================================================
# INPUT MODELS
# =============================================================================

class Incident(BaseModel):
    """
    A validated citizen report, projected from one source document.

    Attributes:
        id: Source document id, when the source exposes one
        latitude: WGS84 latitude (-90 to 90)
        longitude: WGS84 longitude (-180 to 180)
        incident_type: Report category (e.g. "Robo")
        status: Workflow status (e.g. "Pendiente")
        priority: Reporter/operator priority (e.g. "urgent")
        urgent: Explicit urgent flag set on some reports
        timestamp: Creation time, UTC
    """
    model_config = ConfigDict(frozen=True)

    id: Optional[str] = None
    latitude: float = Field(..., ge=-90, le=90)
    longitude: float = Field(..., ge=-180, le=180)
    incident_type: str
    status: str
    priority: str
    urgent: bool = False
    timestamp: datetime

    _utc_timestamp = field_validator("timestamp")(_as_utc)


class QuerySpec(BaseModel):
    """
    What to read from the data source.

    The time bounds filter on the incident creation time and are inclusive.
    """
    model_config = ConfigDict(frozen=True)

    collection: str = "reports"
    start: Optional[datetime] = None
    end: Optional[datetime] = None

    _utc_bounds = field_validator("start", "end")(_as_utc)

    @classmethod
    def last_days(
        cls,
        days: int,
        now: Optional[datetime] = None,
        collection: str = "reports",
    ) -> "QuerySpec":
        """
        Build the query for a trailing window of `days` calendar days.

        The window starts at midnight UTC of the first day and ends at `now`,
        so today counts as one of the days.
        """
        if days < 1:
            raise ValueError(f"days must be >= 1, got {days}")
        now = now or datetime.now(timezone.utc)
        first_day = now.astimezone(timezone.utc).date() - timedelta(days=days - 1)
        start = datetime.combine(first_day, time.min, tzinfo=timezone.utc)
        return cls(collection=collection, start=start, end=now)


# =============================================================================
# OUTPUT MODELS
# =============================================================================

class _OutputModel(BaseModel):
    """Base for models handed to the rendering layer (camelCase on the wire)."""
    model_config = ConfigDict(
        frozen=True,
        alias_generator=to_camel,
        populate_by_name=True,
    )


class HeatmapPoint(_OutputModel):
    """A single incident projected to a weighted map coordinate."""
    latitude: float = Field(..., ge=-90, le=90)
    longitude: float = Field(..., ge=-180, le=180)
    weight: float = Field(..., ge=1.0, le=5.0)
    incident_type: str
    timestamp: datetime


class Centroid(_OutputModel):
    latitude: float = Field(..., ge=-90, le=90)
    longitude: float = Field(..., ge=-180, le=180)


class IncidentTypeCount(_OutputModel):
    type: str
    count: int = Field(..., ge=1)


class Zone(_OutputModel):
    """
    A cluster of nearby incidents with an aggregate risk classification.

    Zones are rebuilt from scratch on every aggregation pass; the id is only
    stable within one pass.
    """
    id: str
    risk_level: RiskLevel
    incident_count: int = Field(..., ge=3)
    centroid: Centroid
    radius_meters: float = Field(..., gt=0)
    total_weight: float = Field(..., ge=0)
    average_weight: float = Field(..., ge=0)
    top_incident_types: List[IncidentTypeCount] = Field(default_factory=list, max_length=3)


class DailyCount(_OutputModel):
    date: _Date
    count: int = Field(default=0, ge=0)


class TrendSeries(_OutputModel):
    """Per-day incident counts inside one zone, oldest day first."""
    zone_id: str
    daily_counts: List[DailyCount]

    @field_validator("daily_counts")
    @classmethod
    def _consecutive_days(cls, value: List[DailyCount]) -> List[DailyCount]:
        for previous, current in zip(value, value[1:]):
            if current.date - previous.date != timedelta(days=1):
                raise ValueError("daily_counts must cover consecutive ascending days")
        return value


class AggregationResult(_OutputModel):
    """Everything derived from one snapshot."""
    incidents: List[Incident] = Field(default_factory=list)
    heatmap_points: List[HeatmapPoint] = Field(default_factory=list)
    zones: List[Zone] = Field(default_factory=list)
    generated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
