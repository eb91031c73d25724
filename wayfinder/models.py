"""Data classes for Wayfinder."""

from dataclasses import dataclass, asdict
from enum import Enum
from typing import Optional


@dataclass(frozen=True)
class Location:
    lat: float
    lon: float

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, d: dict) -> "Location":
        return cls(lat=d["lat"], lon=d["lon"])


@dataclass(frozen=True)
class RawFix:
    """One sample from the location source"""
    location: Location
    timestamp: float
    accuracy: Optional[float] = None  # meters
    heading: Optional[float] = None  # degrees
    speed: Optional[float] = None  # m/s

    def to_dict(self) -> dict:
        return {
            "lat": self.location.lat,
            "lon": self.location.lon,
            "accuracy": self.accuracy,
            "heading": self.heading,
            "speed": self.speed,
            "timestamp": self.timestamp,
        }

    @classmethod
    def from_dict(cls, d: dict) -> "RawFix":
        return cls(
            location=Location(d["lat"], d["lon"]),
            timestamp=d.get("timestamp") or 0.0,
            accuracy=d.get("accuracy"),
            heading=d.get("heading"),
            speed=d.get("speed"),
        )


@dataclass(frozen=True)
class FilteredPosition:
    location: Location
    velocity: float  # m/s
    timestamp: float


@dataclass(frozen=True)
class RouteStep:
    """One atomic instruction of a route"""
    index: int
    start: Location
    end: Location
    path: tuple[Location, ...]
    instruction: str  # may contain markup
    distance: float  # meters
    duration: float  # seconds
    bearing: float  # degrees, start -> end


@dataclass(frozen=True)
class RouteData:
    polyline: tuple[Location, ...]
    steps: tuple[RouteStep, ...]
    total_distance: float
    total_duration: float


class NavigationStatus(Enum):
    IDLE = "idle"
    LOCATING = "locating"
    ROUTING = "routing"
    NAVIGATING = "navigating"
    OFF_ROUTE = "off-route"
    REROUTING = "rerouting"
    ERROR = "error"


class ErrorCode(Enum):
    PERMISSION_DENIED = "permission_denied"
    POSITION_UNAVAILABLE = "position_unavailable"
    TIMEOUT = "timeout"
    NO_ROUTE = "no_route"
    API_ERROR = "api_error"
    UNKNOWN = "unknown"


@dataclass(frozen=True)
class NavigationError:
    code: ErrorCode
    message: str


class RouteError(Exception):
    """Raised by route providers when no usable route comes back"""

    def __init__(self, code: ErrorCode, message: str):
        super().__init__(message)
        self.code = code
        self.message = message


class LocationError(Exception):
    """Raised (or reported) by location sources"""

    def __init__(self, code: ErrorCode, message: str):
        super().__init__(message)
        self.code = code
        self.message = message


@dataclass
class NavigationState:
    """Snapshot published after every processed sample or transition"""
    status: NavigationStatus = NavigationStatus.IDLE
    error: Optional[NavigationError] = None
    raw_fix: Optional[RawFix] = None
    filtered_position: Optional[FilteredPosition] = None
    heading: Optional[float] = None
    route: Optional[RouteData] = None
    current_step: Optional[RouteStep] = None
    next_step: Optional[RouteStep] = None
    distance_to_step_end: Optional[float] = None
    distance_to_next_turn: Optional[float] = None
    remaining_distance: Optional[float] = None
    eta: Optional[float] = None
    voice_enabled: bool = True
    last_update: Optional[float] = None

    def to_dict(self) -> dict:
        """Compact summary for logging"""
        d = {
            "status": self.status.value,
            "heading": round(self.heading, 1) if self.heading is not None else None,
            "step": self.current_step.index if self.current_step else None,
            "distance_to_next_turn": _rounded(self.distance_to_next_turn),
            "remaining_distance": _rounded(self.remaining_distance),
            "eta": _rounded(self.eta),
        }
        if self.filtered_position:
            d["location"] = self.filtered_position.location.to_dict()
            d["velocity"] = round(self.filtered_position.velocity, 2)
        if self.error:
            d["error"] = {"code": self.error.code.value, "message": self.error.message}
        return d


def _rounded(value: Optional[float]) -> Optional[float]:
    return round(value, 1) if value is not None else None
