"""Wayfinder - Live turn-by-turn walking navigation."""

from .config import CONFIG
from .models import (
    Location,
    RawFix,
    FilteredPosition,
    RouteStep,
    RouteData,
    NavigationStatus,
    ErrorCode,
    NavigationError,
    NavigationState,
    RouteError,
    LocationError,
)
from .logger import Logger
from .geo import (
    haversine_distance,
    bearing_between,
    bearing_difference,
    bearing_to_compass,
    point_to_segment_distance,
    point_to_polyline_distance,
)
from .kalman import Kalman1D, PositionFilter
from .route import (
    extract_route_data,
    flatten_route_polyline,
    compute_remaining_distance_and_eta,
    strip_markup,
)
from .offroute import OffRouteDetector, OffRouteState
from .directions import CancelToken, GoogleDirections, decode_polyline
from .gps import GPSStream, GPSRecorder, GPSPlayback
from .audio import Audio, SpeechEngine, Haptics
from .navigator import Navigator
from .app import Wayfinder
from .__main__ import main

__all__ = [
    "CONFIG",
    "Location",
    "RawFix",
    "FilteredPosition",
    "RouteStep",
    "RouteData",
    "NavigationStatus",
    "ErrorCode",
    "NavigationError",
    "NavigationState",
    "RouteError",
    "LocationError",
    "Logger",
    "haversine_distance",
    "bearing_between",
    "bearing_difference",
    "bearing_to_compass",
    "point_to_segment_distance",
    "point_to_polyline_distance",
    "Kalman1D",
    "PositionFilter",
    "extract_route_data",
    "flatten_route_polyline",
    "compute_remaining_distance_and_eta",
    "strip_markup",
    "OffRouteDetector",
    "OffRouteState",
    "CancelToken",
    "GoogleDirections",
    "decode_polyline",
    "GPSStream",
    "GPSRecorder",
    "GPSPlayback",
    "Audio",
    "SpeechEngine",
    "Haptics",
    "Navigator",
    "Wayfinder",
    "main",
]
