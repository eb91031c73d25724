"""
Unit tests for the navigation session
"""

import threading
import time
from unittest.mock import Mock

import pytest

from wayfinder.geo import haversine_distance
from wayfinder.logger import Logger
from wayfinder.models import (
    ErrorCode,
    Location,
    LocationError,
    NavigationStatus,
    RouteError,
)
from wayfinder.navigator import Navigator
from wayfinder.route import extract_route_data

from conftest import (
    DESTINATION,
    PASS_THROUGH_KALMAN,
    FakeProvider,
    FakeSource,
    make_fix,
    make_route,
)

Status = NavigationStatus


def _navigator(provider, clock, background=False, logger=None, **kwargs):
    return Navigator(
        provider,
        logger=logger or Logger(echo=False),
        config={"kalman": PASS_THROUGH_KALMAN},
        clock=clock,
        background_routing=background,
        **kwargs,
    )


def feed(nav, clock, lat, lon, dt=2.0, **kwargs):
    clock.advance(dt)
    nav.on_fix(make_fix(lat, lon, timestamp=clock.t, **kwargs))


def walk_north(nav, clock, *lats):
    for lat in lats:
        feed(nav, clock, lat, 0.0)


def wait_until(nav, condition, timeout=2.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        nav.poll(timeout=0.05)
        if condition():
            return True
    return False


def _messages(logger):
    return [message for message, _ in logger.messages]


class TestStartAndRouting:
    """Session start and the first route request"""

    def test_start_enters_locating(self, clock, route):
        nav = _navigator(FakeProvider(route), clock)
        assert nav.state.status == Status.IDLE
        nav.start(DESTINATION)
        assert nav.state.status == Status.LOCATING
        assert nav.is_active

    def test_first_fix_requests_route(self, clock, route, voice):
        provider = FakeProvider(route)
        nav = _navigator(provider, clock, voice=voice)
        nav.start(DESTINATION)
        feed(nav, clock, 0.0, 0.0, dt=0)

        state = nav.state
        assert len(provider.calls) == 1
        assert provider.calls[0][0] == Location(0.0, 0.0)
        assert provider.calls[0][1] == DESTINATION
        assert state.status == Status.NAVIGATING
        assert state.route is route
        assert state.current_step.index == 0
        assert state.next_step.index == 1
        assert state.distance_to_next_turn == pytest.approx(111.2, abs=0.5)
        assert state.remaining_distance == pytest.approx(333, abs=0.1)
        assert voice.spoken == ["Head north"]

    def test_eta_uses_walking_speed_when_stationary(self, clock, route):
        nav = _navigator(FakeProvider(route), clock)
        nav.start(DESTINATION)
        feed(nav, clock, 0.0, 0.0, dt=0)
        state = nav.state
        assert state.filtered_position.velocity == 0
        assert state.eta == pytest.approx(state.remaining_distance / 1.4)

    def test_positions_update_while_route_outstanding(self, clock, route):
        gate = threading.Event()
        provider = FakeProvider(route, gate=gate)
        nav = _navigator(provider, clock, background=True)
        nav.start(DESTINATION)

        feed(nav, clock, 0.0, 0.0, dt=0)
        assert nav.state.status == Status.ROUTING
        feed(nav, clock, 0.0001, 0.0)
        assert nav.state.filtered_position.location.lat == pytest.approx(0.0001)
        assert nav.state.route is None

        gate.set()
        assert wait_until(nav, lambda: nav.state.route is not None)
        assert len(provider.calls) == 1
        assert nav.state.status == Status.NAVIGATING


class TestSampleFiltering:
    """Throttling and noise rejection"""

    def test_throttle(self, clock, route):
        nav = _navigator(FakeProvider(route), clock)
        nav.start(DESTINATION)
        feed(nav, clock, 0.0, 0.0, dt=0)

        feed(nav, clock, 0.0001, 0.0, dt=1)
        assert nav.state.raw_fix.location == Location(0.0, 0.0)

        feed(nav, clock, 0.0001, 0.0, dt=1)
        assert nav.state.raw_fix.location == Location(0.0001, 0.0)

    def test_first_fix_is_accepted_regardless_of_accuracy(self, clock, route):
        nav = _navigator(FakeProvider(route), clock)
        nav.start(DESTINATION)
        feed(nav, clock, 0.0, 0.0, dt=0, accuracy=200)
        assert nav.state.filtered_position is not None

    def test_low_accuracy_rejected(self, clock, route, quiet_logger):
        nav = _navigator(FakeProvider(route), clock, logger=quiet_logger)
        nav.start(DESTINATION)
        feed(nav, clock, 0.0, 0.0, dt=0)
        before = nav.state.filtered_position

        feed(nav, clock, 0.00005, 0.0, accuracy=200)

        assert nav.state.filtered_position == before
        assert nav.state.raw_fix.location == Location(0.0, 0.0)
        assert ("Dropped fix", {"reason": "low accuracy", "accuracy": 200}) in quiet_logger.messages

    def test_teleport_rejected(self, clock, route):
        nav = _navigator(FakeProvider(route), clock)
        nav.start(DESTINATION)
        feed(nav, clock, 0.0, 0.0, dt=0)

        # ~150m in 2s
        feed(nav, clock, 0.00135, 0.0)
        assert nav.state.raw_fix.location == Location(0.0, 0.0)

    def test_long_slow_move_is_not_a_teleport(self, clock, route):
        nav = _navigator(FakeProvider(route), clock)
        nav.start(DESTINATION)
        feed(nav, clock, 0.0, 0.0, dt=0)

        # ~150m in 62s
        feed(nav, clock, 0.00135, 0.0, dt=62)
        assert nav.state.raw_fix.location == Location(0.00135, 0.0)


class TestHeading:
    """Heading from the device or from displacement"""

    def test_device_heading_wins(self, clock, route):
        nav = _navigator(FakeProvider(route), clock)
        nav.start(DESTINATION)
        feed(nav, clock, 0.0, 0.0, dt=0, heading=45.0)
        assert nav.state.heading == 45.0

    def test_heading_from_displacement(self, clock, route):
        nav = _navigator(FakeProvider(route), clock)
        nav.start(DESTINATION)
        feed(nav, clock, 0.0, 0.0, dt=0)
        assert nav.state.heading is None

        feed(nav, clock, 0.0001, 0.0)
        assert nav.state.heading == pytest.approx(0, abs=0.01)

    def test_small_displacement_keeps_previous_heading(self, clock, route):
        nav = _navigator(FakeProvider(route), clock)
        nav.start(DESTINATION)
        feed(nav, clock, 0.0, 0.0, dt=0)
        feed(nav, clock, 0.0001, 0.0)

        # ~0.16m to the north-east
        feed(nav, clock, 0.000101, 0.000001)
        assert nav.state.heading == pytest.approx(0, abs=0.01)


class TestStepProgress:
    """Step advancement and announcements"""

    def _navigating(self, clock, route, **kwargs):
        nav = _navigator(FakeProvider(route), clock, **kwargs)
        nav.start(DESTINATION)
        feed(nav, clock, 0.0, 0.0, dt=0)
        return nav

    def test_advance_near_step_end_with_aligned_heading(self, clock, route, voice, haptics):
        nav = self._navigating(clock, route, voice=voice, haptics=haptics)
        walk_north(nav, clock, 0.0002, 0.0004, 0.0006, 0.0008)
        assert nav.state.current_step.index == 0

        feed(nav, clock, 0.00095, 0.0)
        state = nav.state
        assert state.current_step.index == 1
        assert state.next_step.index == 2
        assert voice.spoken == ["Head north", "Turn right"]
        assert haptics.patterns == []

    def test_pre_announce_with_haptic_pulse(self, clock, route, voice, haptics):
        nav = self._navigating(clock, route, voice=voice, haptics=haptics)
        walk_north(nav, clock, 0.0002, 0.0004, 0.0006, 0.0008, 0.00085)

        assert nav.state.current_step.index == 0
        assert voice.spoken == ["Head north", "Turn right"]
        assert haptics.patterns == [[150, 80, 150]]

        # Reaching the turn doesn't repeat the same instruction
        feed(nav, clock, 0.00095, 0.0)
        assert nav.state.current_step.index == 1
        assert voice.spoken == ["Head north", "Turn right"]

    def test_heading_mismatch_blocks_advance(self, clock, route):
        nav = self._navigating(clock, route)
        walk_north(nav, clock, 0.0002, 0.0004, 0.0006, 0.0008)
        feed(nav, clock, 0.00095, 0.0, heading=180.0)
        assert nav.state.current_step.index == 0

    def test_advances_at_most_one_step_per_pass(self, clock):
        route = extract_route_data([{"steps": [
            {"path": [(0.0, 0.0), (0.001, 0.0)], "instruction": "Head north",
             "distance": 111, "duration": 80},
            {"path": [(0.001, 0.0), (0.00105, 0.0)], "instruction": "Keep going",
             "distance": 5.6, "duration": 4},
            {"path": [(0.00105, 0.0), (0.002, 0.0)], "instruction": "Continue",
             "distance": 105, "duration": 75},
        ]}])
        nav = self._navigating(clock, route)
        walk_north(nav, clock, 0.0002, 0.0004, 0.0006, 0.0008, 0.00102)
        assert nav.state.current_step.index == 1

        feed(nav, clock, 0.00102, 0.0)
        assert nav.state.current_step.index == 2

    def test_never_advances_past_last_step(self, clock):
        route = extract_route_data([{"steps": [
            {"path": [(0.0, 0.0), (0.001, 0.0)], "instruction": "Head north",
             "distance": 111.19, "duration": 80},
        ]}])
        nav = self._navigating(clock, route)
        walk_north(nav, clock, 0.0002, 0.0004, 0.0006, 0.0008, 0.00095)

        state = nav.state
        assert state.current_step.index == 0
        assert state.next_step is None
        assert state.distance_to_next_turn == state.distance_to_step_end
        assert state.remaining_distance == pytest.approx(5.56, abs=0.2)

        feed(nav, clock, 0.001, 0.0)
        assert nav.state.current_step.index == 0
        assert nav.state.remaining_distance == pytest.approx(0, abs=0.1)


class TestRerouting:
    """Off-route detection feeding route requests"""

    def test_off_route_triggers_reroute(self, clock, route, voice, quiet_logger):
        rerouted = make_route(("Walk back", "Turn right", "Turn left"))
        provider = FakeProvider(route, rerouted)
        nav = _navigator(provider, clock, voice=voice, logger=quiet_logger)
        nav.start(DESTINATION)
        feed(nav, clock, 0.0, 0.0, dt=0)

        # ~56m east of the first step
        feed(nav, clock, 0.0, 0.0005)
        assert nav.state.status == Status.OFF_ROUTE
        feed(nav, clock, 0.0, 0.0005)
        assert len(provider.calls) == 1

        feed(nav, clock, 0.0, 0.0005)
        state = nav.state
        assert len(provider.calls) == 2
        assert provider.calls[1][0].lon == pytest.approx(0.0005)
        assert state.status == Status.NAVIGATING
        assert state.route is rerouted
        assert state.current_step.index == 0
        assert voice.cancels >= 1
        assert ("Status", {"from": "off-route", "to": "rerouting"}) in quiet_logger.messages

        # The new route is announced from its first step
        feed(nav, clock, 0.0, 0.0005)
        assert voice.spoken[-1] == "Walk back"

    def test_rerouting_keeps_progress_but_skips_detector(self, clock, route):
        rerouted = make_route(("Walk back", "Turn right", "Turn left"))
        gate = threading.Event()
        provider = FakeProvider(route, rerouted, gate=gate, gate_after=1)
        nav = _navigator(provider, clock, background=True)
        nav.start(DESTINATION)
        feed(nav, clock, 0.0, 0.0, dt=0)
        assert wait_until(nav, lambda: nav.state.route is not None)

        for _ in range(3):
            feed(nav, clock, 0.0, 0.0005)
        assert nav.state.status == Status.REROUTING
        assert wait_until(nav, lambda: len(provider.calls) == 2)

        for _ in range(3):
            feed(nav, clock, 0.0, 0.0005)
            assert nav.state.status == Status.REROUTING
            assert nav.state.remaining_distance is not None
        assert len(provider.calls) == 2

        gate.set()
        assert wait_until(nav, lambda: nav.state.route is rerouted)
        assert nav.state.status == Status.NAVIGATING

    def test_stale_response_from_previous_session_is_ignored(self, clock, quiet_logger):
        route_a = make_route(("Old route", "b", "c"))
        route_b = make_route(("New route", "b", "c"))
        dest_a = Location(0.002, 0.001)
        dest_b = Location(0.003, 0.001)
        routes = {dest_a: route_a, dest_b: route_b}

        provider = Mock()
        provider.route.side_effect = lambda origin, destination, token: routes[destination]
        nav = _navigator(provider, clock, background=True, logger=quiet_logger)

        nav.start(dest_a)
        feed(nav, clock, 0.0, 0.0, dt=0)
        nav.stop()
        nav.start(dest_b)
        feed(nav, clock, 0.0, 0.0)

        assert wait_until(nav, lambda: "Ignored stale route response" in _messages(quiet_logger))
        assert wait_until(nav, lambda: nav.state.route is not None)
        assert nav.state.route is route_b
        assert provider.route.call_count == 2


class TestErrors:
    """Route and location failures"""

    def test_route_failure_then_retry(self, clock, route):
        provider = FakeProvider(RouteError(ErrorCode.NO_ROUTE, "No route found"), route)
        nav = _navigator(provider, clock)
        nav.start(DESTINATION)
        feed(nav, clock, 0.0, 0.0, dt=0)

        state = nav.state
        assert state.status == Status.ERROR
        assert state.error.code == ErrorCode.NO_ROUTE

        # Further fixes are ignored
        feed(nav, clock, 0.0001, 0.0)
        assert nav.state.raw_fix.location == Location(0.0, 0.0)

        assert nav.retry()
        assert nav.state.status == Status.NAVIGATING
        assert nav.state.error is None
        assert nav.state.route is route
        assert len(provider.calls) == 2

    def test_unexpected_provider_exception(self, clock):
        nav = _navigator(FakeProvider(RuntimeError("boom")), clock)
        nav.start(DESTINATION)
        feed(nav, clock, 0.0, 0.0, dt=0)
        assert nav.state.status == Status.ERROR
        assert nav.state.error.code == ErrorCode.UNKNOWN
        assert "boom" in nav.state.error.message

    def test_retry_refused_when_not_failed(self, clock, route):
        nav = _navigator(FakeProvider(route), clock)
        assert not nav.retry()
        nav.start(DESTINATION)
        feed(nav, clock, 0.0, 0.0, dt=0)
        assert not nav.retry()

    def test_location_error_from_source(self, clock, route):
        source = FakeSource()
        nav = _navigator(FakeProvider(route), clock, location_source=source)
        nav.start(DESTINATION)
        assert source.started == 1

        source.on_error(LocationError(ErrorCode.PERMISSION_DENIED, "Location permission denied"))
        assert nav.state.status == Status.LOCATING
        assert nav.poll() == 1

        state = nav.state
        assert state.status == Status.ERROR
        assert state.error.code == ErrorCode.PERMISSION_DENIED
        assert not nav.retry()


class TestLifecycle:
    """Event intake, stop/start, voice toggle and dead reckoning"""

    def test_fixes_from_source_are_processed_on_poll(self, clock, route):
        source = FakeSource()
        nav = _navigator(FakeProvider(route), clock, location_source=source)
        nav.start(DESTINATION)

        source.on_fix(make_fix(0.0, 0.0))
        assert nav.state.raw_fix is None
        assert nav.poll() == 1
        assert nav.state.raw_fix is not None
        assert nav.poll() == 0

    def test_events_from_old_session_are_ignored(self, clock, route):
        source = FakeSource()
        nav = _navigator(FakeProvider(route), clock, location_source=source)
        nav.start(DESTINATION)
        old_on_fix = source.on_fix
        nav.stop()
        nav.start(DESTINATION)

        old_on_fix(make_fix(0.0, 0.0))
        nav.poll()
        assert nav.state.raw_fix is None

    def test_stop_resets_and_restart_is_fresh(self, clock, route):
        source = FakeSource()
        provider = FakeProvider(route)
        nav = _navigator(provider, clock, location_source=source)
        nav.start(DESTINATION)
        feed(nav, clock, 0.0, 0.0, dt=0)
        nav.stop()

        state = nav.state
        assert source.stopped == 1
        assert state.status == Status.IDLE
        assert state.route is None
        assert state.filtered_position is None
        assert not nav.is_active

        # 1.5km away: no teleport memory and no smoothing lag
        nav.start(DESTINATION)
        feed(nav, clock, 0.01, 0.01)
        assert nav.state.filtered_position.location == Location(0.01, 0.01)
        assert len(provider.calls) == 2

    def test_fixes_without_session_are_ignored(self, clock, route):
        nav = _navigator(FakeProvider(route), clock)
        nav.on_fix(make_fix(0.0, 0.0))
        assert nav.state.raw_fix is None

    def test_muted_session_speaks_after_unmute(self, clock, route, voice):
        nav = _navigator(FakeProvider(route), clock, voice=voice)
        nav.set_voice_enabled(False)
        nav.start(DESTINATION)
        feed(nav, clock, 0.0, 0.0, dt=0)
        assert voice.spoken == []
        assert not nav.state.voice_enabled

        nav.set_voice_enabled(True)
        feed(nav, clock, 0.0001, 0.0)
        assert voice.spoken == ["Head north"]

    def test_mute_cancels_current_speech(self, clock, route, voice):
        nav = _navigator(FakeProvider(route), clock, voice=voice)
        nav.start(DESTINATION)
        feed(nav, clock, 0.0, 0.0, dt=0)
        cancels = voice.cancels
        nav.set_voice_enabled(False)
        assert voice.cancels == cancels + 1

    def test_subscribe_and_snapshot_copy(self, clock, route):
        nav = _navigator(FakeProvider(route), clock)
        seen = []
        unsubscribe = nav.subscribe(seen.append)
        nav.start(DESTINATION)
        assert seen[-1].status == Status.LOCATING

        snapshot = nav.state
        snapshot.status = Status.ERROR
        assert nav.state.status == Status.LOCATING

        unsubscribe()
        count = len(seen)
        feed(nav, clock, 0.0, 0.0, dt=0)
        assert len(seen) == count

    def test_predicted_position(self, clock, route):
        nav = _navigator(FakeProvider(route), clock)
        assert nav.predicted_position() is None

        nav.start(DESTINATION)
        feed(nav, clock, 0.0, 0.0, dt=0)
        # No heading yet
        assert nav.predicted_position() == nav.state.filtered_position.location

        feed(nav, clock, 0.0001, 0.0)
        here = nav.state.filtered_position.location
        velocity = nav.state.filtered_position.velocity
        assert velocity == pytest.approx(5.56, abs=0.01)

        ahead = nav.predicted_position(now=clock.t + 1)
        assert haversine_distance(here.lat, here.lon, ahead.lat, ahead.lon) == pytest.approx(velocity, rel=1e-3)
        assert ahead.lat > here.lat

        # Capped at the dead-reckoning horizon
        far = nav.predicted_position(now=clock.t + 10)
        assert haversine_distance(here.lat, here.lon, far.lat, far.lon) == pytest.approx(2 * velocity, rel=1e-3)

        # Never extrapolates backwards
        behind = nav.predicted_position(now=clock.t - 5)
        assert haversine_distance(here.lat, here.lon, behind.lat, behind.lon) == pytest.approx(0, abs=1e-6)


class TestSampleTime:
    """Queued fixes timed by their own timestamps"""

    def _queue_walk(self, clock, source):
        # Five fixes 2s apart, all waiting in the inbox; the clock has moved
        # on to the time of the last one
        for i in range(5):
            source.on_fix(make_fix(i * 0.0001, 0.0, timestamp=clock.t + i * 2.0))
        clock.advance(8.0)

    def test_backlog_is_processed_on_sample_times(self, clock, route):
        source = FakeSource()
        seen = []

        def collect(state):
            if state.raw_fix is not None and state.raw_fix not in seen:
                seen.append(state.raw_fix)

        nav = _navigator(FakeProvider(route), clock, location_source=source, sample_time=True)
        nav.subscribe(collect)
        nav.start(DESTINATION)
        start = clock.t
        self._queue_walk(clock, source)

        nav.poll()

        assert [fix.timestamp - start for fix in seen] == [0.0, 2.0, 4.0, 6.0, 8.0]
        state = nav.state
        assert state.last_update == clock.t
        assert state.filtered_position.velocity == pytest.approx(5.56, abs=0.01)

    def test_backlog_on_processing_time_is_throttled(self, clock, route):
        source = FakeSource()
        nav = _navigator(FakeProvider(route), clock, location_source=source)
        nav.start(DESTINATION)
        self._queue_walk(clock, source)

        nav.poll()

        assert nav.state.raw_fix.location == Location(0.0, 0.0)


class TestFilterSettings:
    """Per-axis filter overrides"""

    def test_partial_kalman_override(self, clock, route):
        nav = Navigator(FakeProvider(route), logger=Logger(echo=False), clock=clock,
                        background_routing=False,
                        config={"kalman": {"lat": {"process_noise": 1e-4}}})
        nav.start(DESTINATION)
        feed(nav, clock, 0.0, 0.0, dt=0)

        assert nav.settings["kalman"]["lat"] == {"process_noise": 1e-4, "measurement_noise": 1e-3,
                                                 "initial_error": 1.0}
        assert nav.settings["kalman"]["lon"] == {"process_noise": 1e-5, "measurement_noise": 1e-3,
                                                 "initial_error": 1.0}
        assert nav.state.filtered_position.location == Location(0.0, 0.0)
