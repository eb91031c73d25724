"""Position smoothing with one scalar Kalman filter per axis.

Latitude and longitude are filtered independently. That ignores the coupling
between the axes and the curvature of the earth, which is fine for walking
distances but should not be reused at vehicle scale.
"""

from typing import Optional

from .config import CONFIG
from .geo import haversine_distance
from .models import FilteredPosition, Location


class Kalman1D:
    """Constant-value Kalman filter for a single coordinate"""

    def __init__(self, process_noise: float, measurement_noise: float, initial_error: float):
        self.process_noise = process_noise
        self.measurement_noise = measurement_noise
        self.initial_error = initial_error
        self.value: Optional[float] = None
        self.error: Optional[float] = None

    def update(self, measurement: float) -> float:
        # First sample passes straight through
        if self.value is None:
            self.value = measurement
            self.error = self.initial_error
            return self.value

        predicted_error = self.error + self.process_noise
        gain = predicted_error / (predicted_error + self.measurement_noise)
        self.value = self.value + gain * (measurement - self.value)
        self.error = (1 - gain) * predicted_error
        return self.value


def merge_kalman_config(overrides: Optional[dict] = None) -> dict:
    """Lay per-axis overrides over the defaults, one parameter at a time"""
    overrides = overrides or {}
    return {
        axis: {**CONFIG["kalman"][axis], **overrides.get(axis, {})}
        for axis in ("lat", "lon")
    }


class PositionFilter:
    """Smooths raw fixes into a filtered position plus speed estimate"""

    def __init__(self, config: Optional[dict] = None):
        settings = merge_kalman_config(config)
        self.lat_filter = Kalman1D(**settings["lat"])
        self.lon_filter = Kalman1D(**settings["lon"])
        self.last_output: Optional[FilteredPosition] = None

    def update(self, lat: float, lon: float, timestamp: float) -> FilteredPosition:
        """Feed one accepted fix, returns the new filtered position"""
        location = Location(self.lat_filter.update(lat), self.lon_filter.update(lon))

        velocity = 0.0
        if self.last_output:
            dt = timestamp - self.last_output.timestamp
            if dt > 0:
                prev = self.last_output.location
                velocity = haversine_distance(prev.lat, prev.lon, location.lat, location.lon) / dt

        self.last_output = FilteredPosition(location=location, velocity=velocity, timestamp=timestamp)
        return self.last_output
