"""
ZoneWatch Core Package

Distance and weight primitives, greedy zone clustering, risk scoring and
trend aggregation.
"""

from .geo import haversine_distance, haversine_distances
from .weighting import calculate_weight, build_heatmap_points
from .clustering import ZoneClusterer
from .scoring import RiskScorer
from .trends import TrendAggregator, compute_trends

__all__ = [
    "haversine_distance",
    "haversine_distances",
    "calculate_weight",
    "build_heatmap_points",
    "ZoneClusterer",
    "RiskScorer",
    "TrendAggregator",
    "compute_trends",
]
