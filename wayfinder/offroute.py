"""Off-route detection with hysteresis."""

from dataclasses import dataclass
from typing import Optional, Sequence

from .config import CONFIG
from .geo import point_to_polyline_distance
from .models import Location


@dataclass(frozen=True)
class OffRouteState:
    is_off_route: bool
    should_reroute: bool
    distance: Optional[float] = None  # meters to the polyline


class OffRouteDetector:
    """Flags departure from the route and decides when to ask for a new one.

    `is_off_route` only looks at the current sample. A reroute needs
    `consecutive_limit` off-route samples in a row and at least
    `min_reroute_interval` seconds since the previous reroute.
    """

    def __init__(self, threshold: Optional[float] = None,
                 consecutive_limit: Optional[int] = None,
                 min_reroute_interval: Optional[float] = None):
        self.threshold = threshold if threshold is not None else CONFIG["off_route_threshold"]
        self.consecutive_limit = (consecutive_limit if consecutive_limit is not None
                                  else CONFIG["off_route_consecutive_limit"])
        self.min_reroute_interval = (min_reroute_interval if min_reroute_interval is not None
                                     else CONFIG["min_reroute_interval"])
        self.consecutive_off_route = 0
        self.last_reroute: Optional[float] = None

    def update(self, lat: float, lon: float, polyline: Sequence[Location],
               timestamp: float) -> OffRouteState:
        if len(polyline) < 2:
            return OffRouteState(is_off_route=False, should_reroute=False)

        distance = point_to_polyline_distance(lat, lon, polyline)
        is_off = distance > self.threshold

        if is_off:
            self.consecutive_off_route += 1
        else:
            self.consecutive_off_route = 0

        enough_samples = self.consecutive_off_route >= self.consecutive_limit
        enough_time = (self.last_reroute is None or
                       timestamp - self.last_reroute >= self.min_reroute_interval)
        should_reroute = is_off and enough_samples and enough_time

        if should_reroute:
            self.last_reroute = timestamp
            self.consecutive_off_route = 0

        return OffRouteState(is_off_route=is_off, should_reroute=should_reroute, distance=distance)

    def reset(self):
        """Clear the counter; the last reroute time is kept"""
        self.consecutive_off_route = 0
