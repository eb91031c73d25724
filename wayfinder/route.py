"""Route model: normalizes provider legs/steps and computes progress."""

import re
from typing import Iterable, Optional, Union

from .geo import bearing_between, haversine_distance
from .models import ErrorCode, Location, RouteData, RouteError, RouteStep

PointLike = Union[Location, tuple, list, dict]

_TAG_RE = re.compile(r"<[^>]+>")
_SPACE_RE = re.compile(r"\s+")


def to_location(point: PointLike) -> Location:
    """Accept a Location, (lat, lon) pair or {"lat", "lon"/"lng"} dict"""
    if isinstance(point, Location):
        return point
    if isinstance(point, dict):
        return Location(float(point["lat"]), float(point.get("lon", point.get("lng"))))
    lat, lon = point
    return Location(float(lat), float(lon))


def strip_markup(text: str) -> str:
    """Remove HTML tags from an instruction so it can be spoken"""
    # Tags like <div> separate phrases, so keep a space where they were
    return _SPACE_RE.sub(" ", _TAG_RE.sub(" ", text or "")).strip()


def _step_path(step: dict) -> list[Location]:
    return [to_location(p) for p in step.get("path") or []]


def flatten_route_polyline(legs: Iterable[dict]) -> list[Location]:
    """Concatenate step paths, dropping the vertex shared by consecutive steps"""
    result: list[Location] = []
    for leg in legs:
        for step in leg.get("steps", []):
            points = _step_path(step)
            if not points:
                continue
            if result and result[-1] == points[0]:
                points = points[1:]
            result.extend(points)
    return result


def extract_route_data(legs: list[dict]) -> RouteData:
    """Build RouteData from ordered legs, each with an ordered list of steps.

    Each step is a dict with "path", "instruction", "distance" (m),
    "duration" (s) and optionally "start"/"end" (default: path endpoints).
    Steps with fewer than two path points are dropped.
    """
    polyline = flatten_route_polyline(legs)
    steps: list[RouteStep] = []
    total_distance = 0.0
    total_duration = 0.0

    for leg in legs:
        for raw in leg.get("steps", []):
            path = _step_path(raw)
            if len(path) < 2:
                continue

            start = to_location(raw["start"]) if raw.get("start") is not None else path[0]
            end = to_location(raw["end"]) if raw.get("end") is not None else path[-1]
            distance = float(raw.get("distance") or 0)
            duration = float(raw.get("duration") or 0)

            total_distance += distance
            total_duration += duration
            steps.append(RouteStep(
                index=len(steps),
                start=start,
                end=end,
                path=tuple(path),
                instruction=raw.get("instruction") or "",
                distance=distance,
                duration=duration,
                bearing=bearing_between(start.lat, start.lon, end.lat, end.lon),
            ))

    if not steps:
        raise RouteError(ErrorCode.NO_ROUTE, "Route has no usable steps.")

    return RouteData(
        polyline=tuple(polyline),
        steps=tuple(steps),
        total_distance=total_distance,
        total_duration=total_duration,
    )


def compute_remaining_distance_and_eta(route: RouteData, step_index: int,
                                       covered: float, speed: Optional[float]) -> tuple[float, float]:
    """Return (remaining meters, eta seconds) from a point inside a step.

    The part left of the current step is floored at 0, so a `covered` value
    overshooting the step length never eats into later steps. Falls back to
    the route's total duration when no usable speed is known.
    """
    remaining = 0.0
    if 0 <= step_index < len(route.steps):
        remaining += max(0.0, route.steps[step_index].distance - covered)
    for step in route.steps[step_index + 1:]:
        remaining += step.distance

    if speed and speed > 0:
        eta = remaining / speed
    else:
        eta = route.total_duration
    return remaining, eta


def distance_along_step(step: RouteStep, lat: float, lon: float) -> float:
    """Approximate meters already walked along a step.

    Picks the path segment whose midpoint is nearest the position, sums the
    segments before it, and adds a partial length derived from the distances
    to the segment's endpoints. This is not a true projection and can jump
    around on sharply bent paths.
    """
    path = step.path
    if len(path) < 2:
        return 0.0

    segments = list(zip(path, path[1:]))
    best_index = 0
    best_dist = float("inf")
    for i, (a, b) in enumerate(segments):
        mid_lat = (a.lat + b.lat) / 2
        mid_lon = (a.lon + b.lon) / 2
        d = haversine_distance(lat, lon, mid_lat, mid_lon)
        if d < best_dist:
            best_dist = d
            best_index = i

    distance = sum(
        haversine_distance(a.lat, a.lon, b.lat, b.lon)
        for a, b in segments[:best_index]
    )

    a, b = segments[best_index]
    seg_len = haversine_distance(a.lat, a.lon, b.lat, b.lon)
    dist_a = haversine_distance(lat, lon, a.lat, a.lon)
    dist_b = haversine_distance(lat, lon, b.lat, b.lon)
    partial = max(0.0, min(seg_len, (seg_len + dist_a - dist_b) / 2))
    return distance + partial
