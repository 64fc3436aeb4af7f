"""
ZoneWatch - Main Aggregation Pipeline

This module ties the layers together:
    - Feeds: resilient live subscription + record normalization
    - Core: heatmap weighting, greedy zone clustering, risk scoring
    - Trends: per-zone daily series from a historical query

Every snapshot is normalized and fully re-aggregated; nothing is carried over
between passes except the latest result, kept for late readers.

Example:
    config = ZoneWatchConfig.from_env()
    monitor = IncidentMonitor.from_config(config)

    subscription = monitor.start(on_update=render, on_error=show_offline_banner)
    ...
    trends = await monitor.trends(monitor.latest.zones, days=7)
    await monitor.close()
"""

from __future__ import annotations

import logging
import time
from datetime import datetime, timezone
from typing import Callable, List, Optional, Sequence

from .config import SourceBackend, SourceConfig, ZoneWatchConfig
from .core.clustering import ZoneClusterer
from .core.trends import TrendAggregator
from .core.weighting import build_heatmap_points
from .feeds.normalizer import IncidentNormalizer
from .feeds.source import IncidentSource, InMemoryIncidentSource
from .feeds.subscription import ResilientSubscriptionManager, Scheduler, Subscription
from .models import AggregationResult, HeatmapPoint, Incident, QuerySpec, TrendSeries, Zone


logger = logging.getLogger(__name__)


def create_source(config: SourceConfig) -> IncidentSource:
    """Build the incident source selected by configuration."""
    if config.backend == SourceBackend.REDIS:
        from .feeds.redis_source import RedisIncidentSource
        return RedisIncidentSource(
            redis_url=config.redis_url,
            key_prefix=config.redis_key_prefix,
        )
    if config.backend == SourceBackend.HTTP:
        from .feeds.http_source import HttpIncidentSource
        return HttpIncidentSource(
            base_url=config.http_base_url,
            api_key=config.http_api_key,
            poll_interval_seconds=config.poll_interval_seconds,
            timeout_seconds=config.timeout_seconds,
        )
    return InMemoryIncidentSource()


class IncidentMonitor:
    """
    Live incident aggregation for operator dashboards.

    Produces, for every snapshot of the incident feed:
        - HeatmapPoint list (one per valid incident)
        - Zone list sorted by risk (critical first)
    and on demand, TrendSeries per zone.
    """

    def __init__(
        self,
        source: IncidentSource,
        config: Optional[ZoneWatchConfig] = None,
        scheduler: Optional[Scheduler] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        """
        Initialize the monitor.

        Args:
            source: Incident source shared by live and historical queries
            config: Configuration (defaults if not provided)
            scheduler: Retry timer scheduler (default: running event loop)
            clock: Returns the current UTC time (for testing)
        """
        self._config = config or ZoneWatchConfig()
        self._source = source
        self._clock = clock or (lambda: datetime.now(timezone.utc))

        self._normalizer = IncidentNormalizer(clock=self._clock)
        self._clusterer = ZoneClusterer(
            radius_meters=self._config.clustering.radius_meters,
            min_cluster_size=self._config.clustering.min_cluster_size,
            weights=self._config.weights,
        )
        self._subscriptions = ResilientSubscriptionManager(
            source,
            scheduler=scheduler,
            normalizer=self._normalizer,
        )
        self._trends = TrendAggregator(source, normalizer=self._normalizer, clock=self._clock)

        self.latest: Optional[AggregationResult] = None

    @classmethod
    def from_config(
        cls,
        config: ZoneWatchConfig,
        scheduler: Optional[Scheduler] = None,
    ) -> "IncidentMonitor":
        """Build a monitor and its configured source."""
        return cls(create_source(config.source), config=config, scheduler=scheduler)

    @property
    def source(self) -> IncidentSource:
        return self._source

    @property
    def subscriptions(self) -> ResilientSubscriptionManager:
        return self._subscriptions

    def _default_query(self) -> QuerySpec:
        return QuerySpec(collection=self._config.source.collection)

    # -------------------------------------------------------------------------
    # Aggregation
    # -------------------------------------------------------------------------

    def aggregate(self, incidents: Sequence[Incident]) -> AggregationResult:
        """
        Derive heatmap points and zones from one incident set.

        Synchronous and CPU-only; safe to call from a delivery callback.
        """
        start_time = time.perf_counter()

        heatmap_points = build_heatmap_points(incidents, self._config.weights)
        zones = self._clusterer.cluster(incidents)

        elapsed_ms = (time.perf_counter() - start_time) * 1000
        logger.info(
            f"Aggregated {len(incidents)} incidents into {len(zones)} zones, "
            f"elapsed_ms={elapsed_ms:.1f}",
            extra={
                "incident_count": len(incidents),
                "zone_count": len(zones),
                "duration_ms": round(elapsed_ms, 1),
            },
        )

        return AggregationResult(
            incidents=list(incidents),
            heatmap_points=heatmap_points,
            zones=zones,
            generated_at=self._clock(),
        )

    def start(
        self,
        on_update: Callable[[AggregationResult], None],
        on_error: Optional[Callable[[BaseException], None]] = None,
        query: Optional[QuerySpec] = None,
    ) -> Subscription:
        """
        Subscribe to the incident feed and re-aggregate on every snapshot.

        Args:
            on_update: Receives each fresh AggregationResult
            on_error: Receives the terminal error, once
            query: What to watch (default: the configured collection)

        Returns:
            Subscription handle; call cancel() to stop
        """
        def handle_incidents(incidents: List[Incident]) -> None:
            result = self.aggregate(incidents)
            self.latest = result
            on_update(result)

        return self._subscriptions.subscribe(
            query or self._default_query(),
            on_data=handle_incidents,
            on_error=on_error,
            options=self._config.subscription,
        )

    # -------------------------------------------------------------------------
    # One-shot queries
    # -------------------------------------------------------------------------

    async def fetch_incidents(self, query: Optional[QuerySpec] = None) -> List[Incident]:
        """
        Read and normalize the current incident set once.

        Raises:
            SourceError: If the query fails
        """
        documents = await self._source.fetch(query or self._default_query())
        return self._normalizer.normalize(documents)

    async def fetch_heatmap_points(self, query: Optional[QuerySpec] = None) -> List[HeatmapPoint]:
        """One-shot heatmap points, optionally restricted to a time range."""
        incidents = await self.fetch_incidents(query)
        return build_heatmap_points(incidents, self._config.weights)

    async def fetch_zones(
        self,
        query: Optional[QuerySpec] = None,
        radius_meters: Optional[float] = None,
    ) -> List[Zone]:
        """One-shot zones, optionally with a radius other than the configured one."""
        incidents = await self.fetch_incidents(query)
        clusterer = self._clusterer
        if radius_meters is not None and radius_meters != clusterer.radius_meters:
            clusterer = ZoneClusterer(
                radius_meters=radius_meters,
                min_cluster_size=self._config.clustering.min_cluster_size,
                weights=self._config.weights,
            )
        return clusterer.cluster(incidents)

    async def trends(
        self,
        zones: Sequence[Zone],
        days: Optional[int] = None,
    ) -> List[TrendSeries]:
        """
        Daily incident counts per zone over the last `days` days.

        Raises:
            SourceError: If the historical query fails
        """
        return await self._trends.aggregate(
            zones,
            days=self._config.trends.default_days if days is None else days,
            collection=self._config.source.collection,
        )

    async def close(self) -> None:
        """Cancel all subscriptions and release the source."""
        self._subscriptions.cancel_all()
        await self._source.close()
        logger.info("IncidentMonitor closed")
