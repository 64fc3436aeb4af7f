"""
ZoneWatch Risk Scorer

Classifies a candidate cluster from its size and aggregate weight, and builds
the per-type breakdown shown on zone cards.

Thresholds (avg = total_weight / incident_count):
    CRITICAL: count >= 10 AND avg >= 3
    HIGH:     count >= 7  OR  avg >= 2.5
    MEDIUM:   count >= 4  OR  avg >= 2
    LOW:      anything else
"""

from __future__ import annotations

from collections import Counter
from typing import Iterable, List, Sequence, Tuple

from ..models import IncidentTypeCount, RiskLevel


class RiskScorer:
    """
    Risk classification for clusters of incidents.

    Stateless; a single instance can be shared by every aggregation pass.
    """

    CRITICAL_MIN_COUNT = 10
    CRITICAL_MIN_AVG_WEIGHT = 3.0
    HIGH_MIN_COUNT = 7
    HIGH_MIN_AVG_WEIGHT = 2.5
    MEDIUM_MIN_COUNT = 4
    MEDIUM_MIN_AVG_WEIGHT = 2.0

    TOP_TYPES_LIMIT = 3

    def classify(self, incident_count: int, total_weight: float) -> RiskLevel:
        """
        Map cluster size and summed weight to a RiskLevel.

        Args:
            incident_count: Number of incidents in the cluster (> 0)
            total_weight: Sum of the members' weights

        Returns:
            RiskLevel, monotonic in both count and average weight
        """
        if incident_count <= 0:
            raise ValueError(f"incident_count must be positive, got {incident_count}")

        avg_weight = total_weight / incident_count

        if incident_count >= self.CRITICAL_MIN_COUNT and avg_weight >= self.CRITICAL_MIN_AVG_WEIGHT:
            return RiskLevel.CRITICAL
        elif incident_count >= self.HIGH_MIN_COUNT or avg_weight >= self.HIGH_MIN_AVG_WEIGHT:
            return RiskLevel.HIGH
        elif incident_count >= self.MEDIUM_MIN_COUNT or avg_weight >= self.MEDIUM_MIN_AVG_WEIGHT:
            return RiskLevel.MEDIUM
        else:
            return RiskLevel.LOW

    def top_incident_types(
        self,
        incident_types: Iterable[str],
        limit: int = TOP_TYPES_LIMIT,
    ) -> List[IncidentTypeCount]:
        """
        Most frequent incident types, highest count first.

        Ties keep the order in which each type was first seen.
        """
        # Counter.most_common keeps first-insertion order among equal counts
        counts = Counter(incident_types)
        return [
            IncidentTypeCount(type=incident_type, count=count)
            for incident_type, count in counts.most_common(limit)
        ]

    def score(
        self,
        incident_types: Sequence[str],
        weights: Sequence[float],
    ) -> Tuple[RiskLevel, List[IncidentTypeCount]]:
        """Risk level and top types for one cluster's members."""
        risk_level = self.classify(len(weights), float(sum(weights)))
        return risk_level, self.top_incident_types(incident_types)
