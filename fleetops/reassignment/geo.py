from __future__ import annotations
import math
from dataclasses import dataclass
from typing import Callable, Iterable, Sequence, Tuple

import numpy as np

EARTH_RADIUS_M = 6_371_008.8

# (latitude, longitude) in decimal degrees
GeoPoint = Tuple[float, float]


@dataclass(frozen=True)
class RouteMetrics:
    distance_meters: float
    duration_seconds: float


RouteMetricsProvider = Callable[[Sequence[GeoPoint]], RouteMetrics]


def round_half_up(value: float) -> float:
    return float(math.floor(value + 0.5))


def leg_distances_meters(points: Sequence[GeoPoint]) -> np.ndarray:
    """Haversine length of every consecutive leg (len(points) - 1 values)."""
    if len(points) < 2:
        return np.zeros(0, dtype=float)
    arr = np.radians(np.asarray(points, dtype=float))
    lat, lon = arr[:, 0], arr[:, 1]
    dlat = np.diff(lat)
    dlon = np.diff(lon)
    a = np.sin(dlat / 2) ** 2 + np.cos(lat[:-1]) * np.cos(lat[1:]) * np.sin(dlon / 2) ** 2
    return 2 * EARTH_RADIUS_M * np.arcsin(np.sqrt(np.clip(a, 0.0, 1.0)))


def haversine_route_metrics(average_speed_kmh: float = 40.0) -> RouteMetricsProvider:
    """
    Build a provider that sums straight-line legs and converts to travel time
    at a flat average speed. Deterministic for a fixed point order.
    """
    speed_mps = max(float(average_speed_kmh), 1e-6) * 1000.0 / 3600.0

    def compute(points: Sequence[GeoPoint]) -> RouteMetrics:
        total = float(leg_distances_meters(points).sum())
        return RouteMetrics(distance_meters=total, duration_seconds=round_half_up(total / speed_mps))

    return compute


compute_route_metrics: RouteMetricsProvider = haversine_route_metrics()


def points_of(stops: Iterable) -> list[GeoPoint]:
    return [(float(s.latitude), float(s.longitude)) for s in stops]


def format_duration(seconds: float) -> str:
    seconds = int(max(0, seconds))
    hours = seconds // 3600
    minutes = (seconds % 3600) // 60
    if hours > 0:
        return f"{hours}h {minutes}m"
    return f"{minutes}m"
