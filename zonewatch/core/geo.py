"""
ZoneWatch Distance Primitives

Great-circle distances on a spherical Earth (Haversine formula).

Given two points P1(phi1, lambda1) and P2(phi2, lambda2):

    a = sin^2(dphi / 2) + cos(phi1) * cos(phi2) * sin^2(dlambda / 2)
    c = 2 * atan2(sqrt(a), sqrt(1 - a))
    d = R * c

The scalar version is the reference primitive. The vectorized version computes
distances from one point to many in a single numpy pass and is what the
clustering and trend code use on every snapshot.
"""

from __future__ import annotations

import math
from typing import Sequence, Union

import numpy as np


EARTH_RADIUS_METERS = 6_371_000.0


def haversine_distance(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """
    Calculate the great-circle distance between two points.

    Args:
        lat1, lon1: First point coordinates (degrees)
        lat2, lon2: Second point coordinates (degrees)

    Returns:
        Distance in meters
    """
    phi1 = math.radians(lat1)
    phi2 = math.radians(lat2)
    delta_phi = math.radians(lat2 - lat1)
    delta_lambda = math.radians(lon2 - lon1)

    a = (
        math.sin(delta_phi / 2) ** 2 +
        math.cos(phi1) * math.cos(phi2) * math.sin(delta_lambda / 2) ** 2
    )
    a = min(a, 1.0)
    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))

    return EARTH_RADIUS_METERS * c


def haversine_distances(
    lat: float,
    lon: float,
    lats: Union[Sequence[float], np.ndarray],
    lons: Union[Sequence[float], np.ndarray],
) -> np.ndarray:
    """
    Distances in meters from one point to each point of (lats, lons).

    Same formula as `haversine_distance`, evaluated elementwise.
    """
    lats = np.asarray(lats, dtype=float)
    lons = np.asarray(lons, dtype=float)

    phi1 = np.radians(lat)
    phi2 = np.radians(lats)
    delta_phi = np.radians(lats - lat)
    delta_lambda = np.radians(lons - lon)

    a = np.sin(delta_phi / 2) ** 2 + np.cos(phi1) * np.cos(phi2) * np.sin(delta_lambda / 2) ** 2
    # Rounding can push `a` a hair outside [0, 1] for antipodal points
    a = np.clip(a, 0.0, 1.0)
    c = 2 * np.arctan2(np.sqrt(a), np.sqrt(1 - a))

    return EARTH_RADIUS_METERS * c
