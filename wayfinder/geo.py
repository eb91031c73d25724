"""Geographic utility functions.

Everything here works on plain degree values and never raises for numeric
input: a non-finite coordinate produces a non-finite result.
"""

import math
from typing import Iterable, Sequence

from .models import Location

EARTH_RADIUS = 6371000  # meters

# Local equirectangular scale, good enough at pedestrian distances
METERS_PER_DEG_LAT = 111132.92
METERS_PER_DEG_LON = 111412.84


def _finite(*values: float) -> bool:
    return all(math.isfinite(v) for v in values)


def haversine_distance(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Calculate distance between two points in meters using Haversine formula"""
    if not _finite(lat1, lon1, lat2, lon2):
        return math.nan

    phi1 = math.radians(lat1)
    phi2 = math.radians(lat2)
    delta_phi = math.radians(lat2 - lat1)
    delta_lambda = math.radians(lon2 - lon1)

    a = (math.sin(delta_phi / 2) ** 2 +
         math.cos(phi1) * math.cos(phi2) * math.sin(delta_lambda / 2) ** 2)
    a = min(1.0, a)
    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))

    return EARTH_RADIUS * c


def bearing_between(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Calculate bearing from point 1 to point 2 in degrees (0-360, 0=North)"""
    if not _finite(lat1, lon1, lat2, lon2):
        return math.nan

    phi1 = math.radians(lat1)
    phi2 = math.radians(lat2)
    delta_lambda = math.radians(lon2 - lon1)

    x = math.sin(delta_lambda) * math.cos(phi2)
    y = (math.cos(phi1) * math.sin(phi2) -
         math.sin(phi1) * math.cos(phi2) * math.cos(delta_lambda))

    bearing = math.degrees(math.atan2(x, y))
    return (bearing + 360) % 360


def normalize_bearing(bearing: float) -> float:
    """Wrap a bearing into [0, 360)"""
    if not math.isfinite(bearing):
        return math.nan
    return bearing % 360


def bearing_difference(a: float, b: float) -> float:
    """Smallest angle between two bearings, 0-180"""
    diff = abs(normalize_bearing(a) - normalize_bearing(b))
    return 360 - diff if diff > 180 else diff


def project_position(lat: float, lon: float, bearing: float, distance: float) -> tuple[float, float]:
    """Point reached by travelling `distance` meters from (lat, lon) along `bearing`"""
    if not _finite(lat, lon, bearing, distance):
        return math.nan, math.nan

    angular = distance / EARTH_RADIUS
    theta = math.radians(bearing)
    phi1 = math.radians(lat)
    lambda1 = math.radians(lon)

    sin_phi2 = (math.sin(phi1) * math.cos(angular) +
                math.cos(phi1) * math.sin(angular) * math.cos(theta))
    phi2 = math.asin(max(-1.0, min(1.0, sin_phi2)))
    lambda2 = lambda1 + math.atan2(
        math.sin(theta) * math.sin(angular) * math.cos(phi1),
        math.cos(angular) - math.sin(phi1) * math.sin(phi2),
    )
    return math.degrees(phi2), math.degrees(lambda2)


def point_to_segment_distance(plat: float, plon: float,
                              alat: float, alon: float,
                              blat: float, blon: float) -> float:
    """Distance in meters from point P to segment AB.

    Uses a flat projection centred on A, which is accurate for the short
    segments of a walking route.
    """
    if not _finite(plat, plon, alat, alon, blat, blon):
        return math.nan

    lon_scale = METERS_PER_DEG_LON * math.cos(math.radians(alat))
    px = (plon - alon) * lon_scale
    py = (plat - alat) * METERS_PER_DEG_LAT
    bx = (blon - alon) * lon_scale
    by = (blat - alat) * METERS_PER_DEG_LAT

    seg_len_sq = bx * bx + by * by
    if seg_len_sq == 0:
        return math.hypot(px, py)

    t = (px * bx + py * by) / seg_len_sq
    t = max(0.0, min(1.0, t))
    return math.hypot(px - bx * t, py - by * t)


def point_to_polyline_distance(lat: float, lon: float,
                               polyline: Sequence[Location]) -> float:
    """Minimum distance from a point to any segment of the polyline"""
    if len(polyline) < 2:
        return math.inf
    if not _finite(lat, lon):
        return math.nan

    min_dist = math.inf
    for a, b in zip(polyline, polyline[1:]):
        d = point_to_segment_distance(lat, lon, a.lat, a.lon, b.lat, b.lon)
        if math.isnan(d):
            return d
        if d < min_dist:
            min_dist = d
    return min_dist


def path_length(path: Iterable[Location]) -> float:
    """Sum of great-circle lengths along a path"""
    points = list(path)
    return sum(
        haversine_distance(a.lat, a.lon, b.lat, b.lon)
        for a, b in zip(points, points[1:])
    )


def bearing_to_compass(bearing: float) -> str:
    """Convert bearing to compass direction"""
    directions = ["north", "northeast", "east", "southeast",
                  "south", "southwest", "west", "northwest"]
    index = round(bearing / 45) % 8
    return directions[index]
