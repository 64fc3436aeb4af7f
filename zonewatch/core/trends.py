"""
ZoneWatch Trend Aggregator

Per-zone daily incident counts over a trailing window of N days, for charting.

Buckets are the N UTC calendar dates ending today. An incident is counted into
every zone whose centroid lies within that zone's radius of it; zones may
overlap, and overlapping counts are not deduplicated.
"""

from __future__ import annotations

import logging
import time
from datetime import date, datetime, timedelta, timezone
from typing import Callable, Dict, List, Optional, Sequence

import numpy as np

from ..feeds.normalizer import IncidentNormalizer
from ..feeds.source import IncidentSource
from ..models import DailyCount, Incident, QuerySpec, TrendSeries, Zone
from .geo import haversine_distances


logger = logging.getLogger(__name__)


def window_dates(days: int, today: date) -> List[date]:
    """The `days` consecutive dates ending at `today`, oldest first."""
    if days < 1:
        raise ValueError(f"days must be >= 1, got {days}")
    first_day = today - timedelta(days=days - 1)
    return [first_day + timedelta(days=offset) for offset in range(days)]


def compute_trends(
    zones: Sequence[Zone],
    incidents: Sequence[Incident],
    days: int,
    today: date,
) -> List[TrendSeries]:
    """
    Count incidents per zone per day.

    Args:
        zones: Zones to build series for (output keeps this order)
        incidents: Historical incidents; those dated outside the window are ignored
        days: Window length in days (>= 1)
        today: Last day of the window (UTC date)

    Returns:
        One TrendSeries per zone with exactly `days` zero-filled buckets
    """
    dates = window_dates(days, today)
    if not zones:
        return []

    incident_dates = [i.timestamp.astimezone(timezone.utc).date() for i in incidents]
    lats = np.fromiter((i.latitude for i in incidents), dtype=float, count=len(incidents))
    lons = np.fromiter((i.longitude for i in incidents), dtype=float, count=len(incidents))

    series: List[TrendSeries] = []
    for zone in zones:
        buckets: Dict[date, int] = {d: 0 for d in dates}

        if len(incidents):
            distances = haversine_distances(
                zone.centroid.latitude, zone.centroid.longitude, lats, lons
            )
            for index in np.flatnonzero(distances <= zone.radius_meters):
                incident_date = incident_dates[index]
                if incident_date in buckets:
                    buckets[incident_date] += 1

        series.append(
            TrendSeries(
                zone_id=zone.id,
                daily_counts=[DailyCount(date=d, count=buckets[d]) for d in sorted(buckets)],
            )
        )

    return series


class TrendAggregator:
    """
    Builds trend series from a historical query against the incident source.

    The query covers the same window as the buckets; the source result goes
    through the same normalizer as the live feed.
    """

    def __init__(
        self,
        source: IncidentSource,
        normalizer: Optional[IncidentNormalizer] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        """
        Initialize the aggregator.

        Args:
            source: Incident source to query
            normalizer: Record normalizer (default IncidentNormalizer)
            clock: Returns the current UTC time (for testing)
        """
        self._source = source
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._normalizer = normalizer or IncidentNormalizer(clock=self._clock)

    async def aggregate(
        self,
        zones: Sequence[Zone],
        days: int = 30,
        collection: str = "reports",
    ) -> List[TrendSeries]:
        """
        Query the last `days` days and compute one series per zone.

        Raises:
            SourceError: If the historical query fails
            ValueError: If days < 1
        """
        now = self._clock()
        query = QuerySpec.last_days(days, now=now, collection=collection)
        if not zones:
            return []

        start_time = time.perf_counter()
        documents = await self._source.fetch(query)
        incidents = self._normalizer.normalize(documents)

        series = compute_trends(zones, incidents, days, now.astimezone(timezone.utc).date())

        elapsed_ms = (time.perf_counter() - start_time) * 1000
        logger.info(
            f"Trend aggregation: zones={len(zones)}, incidents={len(incidents)}, "
            f"days={days}, elapsed_ms={elapsed_ms:.1f}"
        )
        return series

