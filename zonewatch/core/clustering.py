"""
ZoneWatch Clustering Module

Groups the current incident set into risk zones with a single greedy pass:

    for each seed in list order (skipping already-clustered incidents):
        neighbors = other unclustered incidents within radius of the seed
        if 1 + len(neighbors) >= min_cluster_size:
            emit a zone from seed + neighbors, mark them clustered

The pass is order-dependent: reordering the input can move cluster
boundaries. It is not a density-based algorithm and makes no DBSCAN-style
guarantees. Every snapshot is clustered from scratch.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import List, Optional, Sequence

import numpy as np

from ..config import WeightConfig
from ..models import Centroid, Incident, Zone
from .geo import haversine_distances
from .scoring import RiskScorer
from .weighting import calculate_weight


logger = logging.getLogger(__name__)


MIN_ZONE_SIZE = 3


@dataclass
class ClusterCandidate:
    """
    A group of incidents collected around one seed.

    The seed is always the first member.
    """
    members: List[Incident] = field(default_factory=list)
    weights: List[float] = field(default_factory=list)

    @property
    def size(self) -> int:
        """Number of incidents in the cluster."""
        return len(self.members)

    @property
    def total_weight(self) -> float:
        """Sum of all member weights."""
        return float(sum(self.weights))

    @property
    def centroid(self) -> Centroid:
        """Arithmetic mean of member coordinates."""
        return Centroid(
            latitude=sum(m.latitude for m in self.members) / self.size,
            longitude=sum(m.longitude for m in self.members) / self.size,
        )

    @property
    def incident_types(self) -> List[str]:
        return [m.incident_type for m in self.members]


class ZoneClusterer:
    """
    Greedy radius clustering of incidents into Zones.

    Example:
        clusterer = ZoneClusterer(radius_meters=1000)
        zones = clusterer.cluster(incidents)
        for zone in zones:  # highest risk first
            ...
    """

    def __init__(
        self,
        radius_meters: float = 1000.0,
        min_cluster_size: int = MIN_ZONE_SIZE,
        weights: Optional[WeightConfig] = None,
        scorer: Optional[RiskScorer] = None,
    ):
        """
        Initialize the clusterer.

        Args:
            radius_meters: Max great-circle distance from the seed to a member
            min_cluster_size: Smallest group that forms a zone (>= 3)
            weights: Weight configuration for member severity
            scorer: Risk scorer (a default RiskScorer if not provided)
        """
        if radius_meters <= 0:
            raise ValueError(f"radius_meters must be positive, got {radius_meters}")
        if min_cluster_size < MIN_ZONE_SIZE:
            raise ValueError(
                f"min_cluster_size must be at least {MIN_ZONE_SIZE}, got {min_cluster_size}"
            )
        self._radius = radius_meters
        self._min_size = min_cluster_size
        self._weights = weights or WeightConfig()
        self._scorer = scorer or RiskScorer()

    @property
    def radius_meters(self) -> float:
        return self._radius

    def find_candidates(self, incidents: Sequence[Incident]) -> List[ClusterCandidate]:
        """
        Run the greedy pass and return the accepted groups in emission order.

        Args:
            incidents: Validated incidents, in source order

        Returns:
            One ClusterCandidate per emitted zone
        """
        count = len(incidents)
        if count == 0:
            return []

        lats = np.fromiter((i.latitude for i in incidents), dtype=float, count=count)
        lons = np.fromiter((i.longitude for i in incidents), dtype=float, count=count)
        processed = np.zeros(count, dtype=bool)

        candidates: List[ClusterCandidate] = []

        for seed_index in range(count):
            if processed[seed_index]:
                continue

            distances = haversine_distances(lats[seed_index], lons[seed_index], lats, lons)
            within = (distances <= self._radius) & ~processed
            within[seed_index] = False
            neighbor_indices = np.flatnonzero(within)

            # Too small: the seed stays unclustered and may still join a later seed
            if 1 + len(neighbor_indices) < self._min_size:
                continue

            member_indices = [seed_index, *neighbor_indices.tolist()]
            processed[member_indices] = True

            members = [incidents[i] for i in member_indices]
            candidates.append(
                ClusterCandidate(
                    members=members,
                    weights=[calculate_weight(m, self._weights) for m in members],
                )
            )

        return candidates

    def build_zone(self, candidate: ClusterCandidate, zone_number: int) -> Zone:
        """Score one candidate and freeze it into a Zone."""
        risk_level, top_types = self._scorer.score(candidate.incident_types, candidate.weights)
        total_weight = candidate.total_weight

        return Zone(
            id=f"zone-{zone_number}",
            risk_level=risk_level,
            incident_count=candidate.size,
            centroid=candidate.centroid,
            radius_meters=self._radius,
            total_weight=total_weight,
            average_weight=total_weight / candidate.size,
            top_incident_types=top_types,
        )

    def cluster(self, incidents: Sequence[Incident]) -> List[Zone]:
        """
        Cluster incidents into zones, highest risk first.

        Zones with equal risk keep their emission order.
        """
        candidates = self.find_candidates(incidents)
        zones = [
            self.build_zone(candidate, zone_number)
            for zone_number, candidate in enumerate(candidates, start=1)
        ]
        zones.sort(key=lambda z: z.risk_level.rank, reverse=True)

        logger.debug(
            f"Clustered {len(incidents)} incidents into {len(zones)} zones "
            f"(radius={self._radius}m)"
        )
        return zones
