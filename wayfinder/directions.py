"""Walking directions via the Google Directions web service."""

import itertools
import os
import threading
from typing import Optional

import requests

from .config import CONFIG
from .geo import path_length
from .models import ErrorCode, Location, RouteData, RouteError
from .route import extract_route_data

NO_ROUTE_STATUSES = {"ZERO_RESULTS", "NOT_FOUND"}


class CancelToken:
    """Identifies one route request; cancelling it invalidates its response"""

    _ids = itertools.count(1)

    def __init__(self):
        self.id = next(self._ids)
        self._cancelled = threading.Event()

    def cancel(self):
        self._cancelled.set()

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    def __repr__(self) -> str:
        return f"CancelToken({self.id}{', cancelled' if self.cancelled else ''})"


def decode_polyline(encoded: str, precision: int = 5) -> list[Location]:
    """Decode an encoded polyline string into Locations"""
    coordinates: list[Location] = []
    index = 0
    lat = 0
    lon = 0
    factor = 10 ** -precision

    while index < len(encoded):
        lat_change, index = _decode_value(encoded, index)
        lon_change, index = _decode_value(encoded, index)
        lat += lat_change
        lon += lon_change
        coordinates.append(Location(round(lat * factor, precision), round(lon * factor, precision)))

    return coordinates


def _decode_value(encoded: str, index: int) -> tuple[int, int]:
    result = 0
    shift = 0

    while True:
        if index >= len(encoded):
            raise ValueError("Invalid polyline: buffer exhausted.")
        b = ord(encoded[index]) - 63
        index += 1
        result |= (b & 0x1F) << shift
        shift += 5
        if b < 0x20:
            break

    delta = ~(result >> 1) if (result & 1) else (result >> 1)
    return delta, index


class GoogleDirections:
    """Single-shot walking route provider"""

    def __init__(self, api_key: Optional[str] = None, session: Optional[requests.Session] = None,
                 url: Optional[str] = None, timeout: Optional[float] = None):
        self.api_key = api_key or os.getenv("GOOGLE_MAPS_API_KEY")
        if not self.api_key:
            raise ValueError(
                "Google Maps API key is required. "
                "Set GOOGLE_MAPS_API_KEY environment variable or pass api_key=..."
            )
        self.url = url or CONFIG["directions_url"]
        self.timeout = timeout or CONFIG["directions_timeout"]
        self.session = session or requests.Session()

    def route(self, origin: Location, destination: Location,
              token: Optional[CancelToken] = None) -> RouteData:
        """Request a walking route, raising RouteError on failure"""
        params = {
            "origin": f"{origin.lat},{origin.lon}",
            "destination": f"{destination.lat},{destination.lon}",
            "mode": "walking",
            "key": self.api_key,
        }
        try:
            response = self.session.get(self.url, params=params, timeout=self.timeout)
            response.raise_for_status()
            payload = response.json()
        except requests.RequestException as e:
            raise RouteError(ErrorCode.API_ERROR, f"Directions request failed: {e}") from e
        except ValueError as e:
            raise RouteError(ErrorCode.API_ERROR, "Directions service returned invalid JSON.") from e

        if token is not None and token.cancelled:
            # Nobody is waiting for this one
            raise RouteError(ErrorCode.UNKNOWN, "Route request cancelled.")

        status = payload.get("status")
        if status in NO_ROUTE_STATUSES:
            raise RouteError(ErrorCode.NO_ROUTE, "No route found for walking directions.")
        if status != "OK":
            detail = payload.get("error_message") or status or "unknown status"
            raise RouteError(ErrorCode.API_ERROR, f"Directions service error: {detail}")

        try:
            return extract_route_data(self.parse_legs(payload))
        except (KeyError, IndexError, TypeError, ValueError) as e:
            raise RouteError(ErrorCode.NO_ROUTE, "Could not parse route.") from e

    @staticmethod
    def parse_legs(payload: dict) -> list[dict]:
        """Convert the first route of a Directions response into generic legs"""
        routes = payload.get("routes") or []
        if not routes:
            raise RouteError(ErrorCode.NO_ROUTE, "No routes in directions response.")

        legs = []
        for leg in routes[0].get("legs", []):
            steps = []
            for step in leg.get("steps", []):
                path = decode_polyline(step["polyline"]["points"])
                distance = (step.get("distance") or {}).get("value")
                steps.append({
                    "path": path,
                    "start": step["start_location"],
                    "end": step["end_location"],
                    "instruction": step.get("html_instructions", ""),
                    "distance": distance if distance is not None else path_length(path),
                    "duration": (step.get("duration") or {}).get("value", 0),
                })
            legs.append({"steps": steps})
        return legs
