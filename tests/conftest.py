"""
Shared fixtures for Wayfinder tests
"""

import os
import sys
import threading

import pytest

# Add project root to path
project_root = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
sys.path.append(project_root)

from wayfinder.logger import Logger
from wayfinder.models import Location, RawFix
from wayfinder.route import extract_route_data

# Near-zero measurement noise so filtered positions follow raw fixes exactly
PASS_THROUGH_KALMAN = {
    "lat": {"process_noise": 1e-5, "measurement_noise": 1e-12, "initial_error": 1.0},
    "lon": {"process_noise": 1e-5, "measurement_noise": 1e-12, "initial_error": 1.0},
}

DESTINATION = Location(0.002, 0.001)


class FakeClock:
    def __init__(self, start: float = 1000.0):
        self.t = start

    def __call__(self) -> float:
        return self.t

    def advance(self, seconds: float):
        self.t += seconds


class FakeVoice:
    def __init__(self):
        self.spoken = []
        self.cancels = 0

    def speak(self, text):
        self.spoken.append(text)

    def cancel(self):
        self.cancels += 1


class FakeHaptics:
    def __init__(self):
        self.patterns = []

    def vibrate(self, pattern):
        self.patterns.append(list(pattern))


class FakeProvider:
    """Returns queued results in order; the last one repeats"""

    def __init__(self, *results, gate: threading.Event = None, gate_after: int = 0):
        self.results = list(results)
        self.calls = []
        self.gate = gate
        self.gate_after = gate_after

    def route(self, origin, destination, token=None):
        self.calls.append((origin, destination, token))
        if self.gate is not None and len(self.calls) > self.gate_after:
            self.gate.wait(5)
        result = self.results.pop(0) if len(self.results) > 1 else self.results[0]
        if isinstance(result, Exception):
            raise result
        return result


class FakeSource:
    def __init__(self):
        self.on_fix = None
        self.on_error = None
        self.started = 0
        self.stopped = 0

    def start(self, on_fix, on_error):
        self.on_fix = on_fix
        self.on_error = on_error
        self.started += 1

    def stop(self):
        self.stopped += 1


def make_fix(lat, lon, accuracy=5.0, heading=None, speed=None, timestamp=0.0):
    return RawFix(Location(lat, lon), timestamp, accuracy=accuracy, heading=heading, speed=speed)


def make_route(instructions=("Head <b>north</b>", "Turn <b>right</b>", "Turn <b>left</b>")):
    """Three ~111m steps near the equator: north, east, north"""
    corners = [(0.0, 0.0), (0.001, 0.0), (0.001, 0.001), (0.002, 0.001)]
    steps = []
    for i, instruction in enumerate(instructions):
        a, b = corners[i], corners[i + 1]
        steps.append({
            "path": [a, b],
            "instruction": instruction,
            "distance": 111.0,
            "duration": 80.0,
        })
    return extract_route_data([{"steps": steps}])


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def voice():
    return FakeVoice()


@pytest.fixture
def haptics():
    return FakeHaptics()


@pytest.fixture
def route():
    return make_route()


@pytest.fixture
def quiet_logger():
    messages = []
    logger = Logger(echo=False, callback=lambda message, data: messages.append((message, data)))
    logger.messages = messages
    return logger
