"""
ZoneWatch Severity Weights

Every incident gets a weight in [1, 5] that drives both the heatmap intensity
and the zone risk score:

    weight = min(5, 1 + priority_bonus + type_bonus + status_bonus)

    priority_bonus = 2.0  if the report is urgent
    type_bonus     = 1.5  if the category is in the high-risk set
    status_bonus   = 0.5  if the report is still pending
"""

from __future__ import annotations

from typing import Iterable, List, Optional

from ..config import WeightConfig
from ..models import HeatmapPoint, Incident


BASE_WEIGHT = 1.0
MAX_WEIGHT = 5.0

URGENT_BONUS = 2.0
HIGH_RISK_TYPE_BONUS = 1.5
PENDING_STATUS_BONUS = 0.5


def calculate_weight(incident: Incident, config: Optional[WeightConfig] = None) -> float:
    """
    Calculate the severity weight of one incident.

    Pure function of the incident's priority, type and status.
    """
    config = config or WeightConfig()
    weight = BASE_WEIGHT

    if incident.urgent or incident.priority == config.urgent_priority:
        weight += URGENT_BONUS

    if incident.incident_type in config.high_risk_types:
        weight += HIGH_RISK_TYPE_BONUS

    if incident.status == config.pending_status:
        weight += PENDING_STATUS_BONUS

    return min(weight, MAX_WEIGHT)


def build_heatmap_points(
    incidents: Iterable[Incident],
    config: Optional[WeightConfig] = None,
) -> List[HeatmapPoint]:
    """Project incidents to weighted heatmap points, preserving order."""
    config = config or WeightConfig()
    return [
        HeatmapPoint(
            latitude=incident.latitude,
            longitude=incident.longitude,
            weight=calculate_weight(incident, config),
            incident_type=incident.incident_type,
            timestamp=incident.timestamp,
        )
        for incident in incidents
    ]
