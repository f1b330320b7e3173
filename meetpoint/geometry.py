"""
Geometric helpers for the midpoint search: centroid, geometric median and
candidate sampling around a seed point.
"""

import math
from typing import List, Sequence

import numpy as np
from geopy.distance import geodesic

from .models import Coordinate

EARTH_RADIUS_M = 6371008.8


def distance_m(a: Coordinate, b: Coordinate) -> float:
    return geodesic(a.as_tuple(), b.as_tuple()).meters


def centroid(points: Sequence[Coordinate]) -> Coordinate:
    """Spherical centroid (mean of unit vectors), safe across the antimeridian."""
    if not points:
        raise ValueError("centroid of an empty point set")
    lat = np.radians([p.lat for p in points])
    lng = np.radians([p.lng for p in points])
    x = np.mean(np.cos(lat) * np.cos(lng))
    y = np.mean(np.cos(lat) * np.sin(lng))
    z = np.mean(np.sin(lat))
    hyp = math.hypot(x, y)
    if hyp < 1e-12 and abs(z) < 1e-12:
        # Antipodal inputs have no meaningful mean; fall back to the first point
        return points[0]
    return Coordinate(math.degrees(math.atan2(z, hyp)), math.degrees(math.atan2(y, x)))


def _project(points: Sequence[Coordinate], origin: Coordinate) -> np.ndarray:
    """Local equirectangular projection in meters around ``origin``."""
    lat0 = math.radians(origin.lat)
    lat = np.radians([p.lat for p in points])
    dlng = np.radians([((p.lng - origin.lng + 540.0) % 360.0) - 180.0 for p in points])
    return np.column_stack((EARTH_RADIUS_M * dlng * math.cos(lat0), EARTH_RADIUS_M * (lat - lat0)))


def _unproject(xy: np.ndarray, origin: Coordinate) -> Coordinate:
    lat0 = math.radians(origin.lat)
    lat = origin.lat + math.degrees(xy[1] / EARTH_RADIUS_M)
    lng = origin.lng + math.degrees(xy[0] / (EARTH_RADIUS_M * max(math.cos(lat0), 1e-9)))
    lng = ((lng + 540.0) % 360.0) - 180.0
    return Coordinate(max(-90.0, min(90.0, lat)), lng)


def geometric_median(points: Sequence[Coordinate], tolerance_m: float = 0.5, max_iterations: int = 200) -> Coordinate:
    """Point minimizing the sum of distances to ``points`` (Weiszfeld iteration).

    Computed on a local planar projection, which is accurate at the
    city/metro scale meeting points are searched at.
    """
    if not points:
        raise ValueError("geometric median of an empty point set")
    if len(points) <= 2:
        return centroid(points)
    origin = centroid(points)
    xy = _project(points, origin)
    estimate = xy.mean(axis=0)
    for _ in range(max_iterations):
        dist = np.linalg.norm(xy - estimate, axis=1)
        if np.any(dist < 1e-9):
            # Estimate sits on an input point, which is then the median
            estimate = xy[int(np.argmin(dist))]
            break
        weights = 1.0 / dist
        updated = (xy * weights[:, None]).sum(axis=0) / weights.sum()
        if np.linalg.norm(updated - estimate) < tolerance_m:
            estimate = updated
            break
        estimate = updated
    return _unproject(estimate, origin)


def destination(start: Coordinate, bearing_deg: float, distance_meters: float) -> Coordinate:
    point = geodesic(meters=distance_meters).destination(start.as_tuple(), bearing_deg)
    return Coordinate(point.latitude, point.longitude)


def ring(center: Coordinate, radius_m: float, bearings: int = 8, phase_deg: float = 0.0) -> List[Coordinate]:
    """``bearings`` points evenly spaced on a circle around ``center``."""
    if radius_m <= 0 or bearings <= 0:
        return []
    step = 360.0 / bearings
    return [destination(center, phase_deg + i * step, radius_m) for i in range(bearings)]


def spread_m(points: Sequence[Coordinate], center: Coordinate) -> float:
    """Largest distance from ``center`` to any of ``points``."""
    return max((distance_m(center, p) for p in points), default=0.0)


def dedupe(points: Sequence[Coordinate], min_spacing_m: float = 1.0) -> List[Coordinate]:
    kept: List[Coordinate] = []
    for p in points:
        if all(distance_m(p, k) >= min_spacing_m for k in kept):
            kept.append(p)
    return kept
