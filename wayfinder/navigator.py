"""Live navigation session.

The Navigator owns the session state machine. It turns raw fixes into a
filtered position, follows the route step by step, watches for the user
leaving the route and asks the route provider for a new one when needed.

All session state is mutated on the thread that calls on_fix()/poll().
Location sources and route workers only ever put events on the inbox.
"""

import dataclasses
import itertools
import math
import queue
import threading
import time
from typing import Callable, Optional

from .audio import SpeechEngine
from .config import CONFIG
from .directions import CancelToken
from .geo import (
    bearing_between,
    bearing_difference,
    haversine_distance,
    project_position,
)
from .kalman import PositionFilter, merge_kalman_config
from .logger import Logger
from .models import (
    ErrorCode,
    FilteredPosition,
    Location,
    NavigationError,
    NavigationState,
    NavigationStatus,
    RawFix,
    RouteData,
    RouteError,
    RouteStep,
)
from .offroute import OffRouteDetector
from .route import compute_remaining_distance_and_eta, distance_along_step, strip_markup

Status = NavigationStatus

_session_ids = itertools.count(1)


class _Session:
    """Everything that lives from start() to stop()"""

    def __init__(self, destination: Location, settings: dict, voice, voice_enabled: bool):
        self.id = next(_session_ids)
        self.destination = destination
        self.filter = PositionFilter(settings["kalman"])
        self.detector = OffRouteDetector(
            threshold=settings["off_route_threshold"],
            consecutive_limit=settings["off_route_consecutive_limit"],
            min_reroute_interval=settings["min_reroute_interval"],
        )
        self.speech = SpeechEngine(voice, voice_enabled=voice_enabled)
        self.step_index = 0
        self.spoken_step: Optional[int] = None
        self.active_token: Optional[CancelToken] = None
        self.last_accepted: Optional[RawFix] = None
        self.last_accepted_at: Optional[float] = None
        self.last_pass: Optional[float] = None
        self.route_failed = False


class Navigator:
    """Turn-by-turn navigation towards one destination at a time.

    Args:
        route_provider: object with route(origin, destination, token) -> RouteData
        voice: voice sink with speak(text) and cancel()
        haptics: haptic sink with vibrate(pattern)
        location_source: push source with start(on_fix, on_error) and stop()
        logger: Logger for session events
        config: overrides merged over CONFIG
        clock: time source in seconds
        background_routing: run route requests on a worker thread; when
            False they run inline inside the call that issues them
        sample_time: time each fix by its own timestamp instead of the clock
            reading when it is processed; for sources whose timestamps are
            on the same timeline as `clock`, such as a replayed trace
    """

    def __init__(self, route_provider, voice=None, haptics=None, location_source=None,
                 logger: Optional[Logger] = None, config: Optional[dict] = None,
                 clock: Callable[[], float] = time.time, background_routing: bool = True,
                 sample_time: bool = False):
        config = config or {}
        self.settings = {**CONFIG, **config}
        self.settings["kalman"] = merge_kalman_config(config.get("kalman"))
        self.route_provider = route_provider
        self.voice = voice
        self.haptics = haptics
        self.location_source = location_source
        self.logger = logger or Logger(echo=False)
        self._clock = clock
        self.background_routing = background_routing
        self.sample_time = sample_time

        self._state = NavigationState(voice_enabled=self.settings["voice_enabled"])
        self._session: Optional[_Session] = None
        self._subscribers: list[Callable[[NavigationState], None]] = []
        self._inbox: queue.Queue = queue.Queue()

    # ------------------------------------------------------------------
    # Read side
    # ------------------------------------------------------------------

    @property
    def state(self) -> NavigationState:
        """Copy of the current state; nested values are immutable"""
        return dataclasses.replace(self._state)

    @property
    def is_active(self) -> bool:
        return self._session is not None

    def subscribe(self, callback: Callable[[NavigationState], None]) -> Callable[[], None]:
        """Call `callback` with a snapshot after every update. Returns an unsubscribe function."""
        self._subscribers.append(callback)

        def unsubscribe():
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe

    def predicted_position(self, now: Optional[float] = None) -> Optional[Location]:
        """Dead-reckoned position for display only.

        Extrapolates from the last filtered position along the heading for at
        most `dead_reckoning_horizon` seconds. Nothing here feeds back into
        the filter or the route logic.
        """
        filtered = self._state.filtered_position
        if filtered is None:
            return None
        heading = self._state.heading
        if heading is None:
            return filtered.location

        now = self._clock() if now is None else now
        last_update = self._state.last_update if self._state.last_update is not None else now
        elapsed = max(0.0, min(self.settings["dead_reckoning_horizon"], now - last_update))
        speed = max(filtered.velocity, self.settings["walking_speed"])

        lat, lon = project_position(filtered.location.lat, filtered.location.lon,
                                    heading, speed * elapsed)
        return Location(lat, lon)

    # ------------------------------------------------------------------
    # Session control
    # ------------------------------------------------------------------

    def start(self, destination: Location):
        """Begin a new session towards `destination`"""
        if self._session:
            self.stop()

        voice_enabled = self._state.voice_enabled
        session = _Session(destination, self.settings, self.voice, voice_enabled)
        self._session = session
        self._state = NavigationState(voice_enabled=voice_enabled)
        self.logger.log("Navigation started", {"session": session.id,
                                               "destination": destination.to_dict()})
        self._set_status(Status.LOCATING)
        self._emit()

        if self.location_source:
            session_id = session.id
            self.location_source.start(
                lambda fix: self._inbox.put(("fix", session_id, fix)),
                lambda error: self._inbox.put(("location_error", session_id, error)),
            )

    def stop(self):
        """End the session and discard all of its state"""
        session = self._session
        if session is None:
            return

        if self.location_source:
            self.location_source.stop()
        if session.active_token:
            session.active_token.cancel()
        session.speech.cancel()

        self._session = None
        self._state = NavigationState(voice_enabled=self._state.voice_enabled)
        self.logger.log("Navigation stopped", {"session": session.id})
        self._emit()

    def set_voice_enabled(self, enabled: bool):
        self._state.voice_enabled = enabled
        if self._session:
            self._session.speech.set_voice_enabled(enabled)
        self.logger.log("Voice " + ("enabled" if enabled else "disabled"))
        self._emit()

    def retry(self) -> bool:
        """Ask for a route again after a routing failure.

        Location-source failures can't be retried this way; the session has
        to be restarted. Returns True if a new request was issued.
        """
        session = self._session
        state = self._state
        if (session is None or state.status != Status.ERROR or not session.route_failed
                or state.filtered_position is None):
            return False

        session.route_failed = False
        state.error = None
        self._set_status(Status.REROUTING if state.route else Status.ROUTING)
        self._emit()
        self._request_route(session, state.filtered_position.location)
        return True

    # ------------------------------------------------------------------
    # Event intake
    # ------------------------------------------------------------------

    def poll(self, timeout: float = 0.0) -> int:
        """Process queued events from the location source and route workers.

        Waits up to `timeout` seconds for the first event, then drains the
        rest without blocking. Returns the number of events handled.
        """
        try:
            event = self._inbox.get(timeout=timeout) if timeout > 0 else self._inbox.get_nowait()
        except queue.Empty:
            return 0

        handled = 0
        while True:
            self._dispatch(*event)
            handled += 1
            try:
                event = self._inbox.get_nowait()
            except queue.Empty:
                return handled

    def _dispatch(self, kind: str, session_id: int, payload):
        if kind == "route":
            self._apply_route_result(session_id, *payload)
            return
        if self._session is None or self._session.id != session_id:
            return
        if kind == "fix":
            self.on_fix(payload)
        elif kind == "location_error":
            self.on_location_error(payload.code, payload.message)

    def on_location_error(self, code: ErrorCode, message: str):
        """Failure reported by the location source; halts the session"""
        if self._session is None or self._state.status == Status.ERROR:
            return
        self.logger.log("Location error", {"code": code.value, "message": message})
        self._fail(NavigationError(code, message))

    def on_fix(self, fix: RawFix):
        """Run the update pipeline for one raw fix"""
        session = self._session
        if session is None or self._state.status == Status.ERROR:
            return

        now = fix.timestamp if self.sample_time else self._clock()
        if session.last_pass is not None and now - session.last_pass < self.settings["update_interval"]:
            return
        session.last_pass = now

        if not self._accept(session, fix, now):
            return

        previous = session.filter.last_output
        filtered = session.filter.update(fix.location.lat, fix.location.lon, now)
        session.last_accepted = fix
        session.last_accepted_at = now

        state = self._state
        state.raw_fix = fix
        state.filtered_position = filtered
        state.heading = self._derive_heading(fix, previous, filtered)
        state.last_update = now

        if state.route is None and state.status == Status.LOCATING:
            self._set_status(Status.ROUTING)
            self._request_route(session, filtered.location)

        # An inline route request may have finished (or failed) above
        if self._session is session and self._state.route is not None \
                and self._state.status != Status.ERROR:
            self._update_navigation(session, filtered, now)

        self._emit()

    # ------------------------------------------------------------------
    # Pipeline stages
    # ------------------------------------------------------------------

    def _accept(self, session: _Session, fix: RawFix, now: float) -> bool:
        """Noise rejection. The first fix of a session is always accepted."""
        last = session.last_accepted
        if last is None:
            return True

        if fix.accuracy is not None and fix.accuracy > self.settings["low_accuracy_threshold"]:
            self.logger.log("Dropped fix", {"reason": "low accuracy", "accuracy": fix.accuracy})
            return False

        distance = haversine_distance(last.location.lat, last.location.lon,
                                      fix.location.lat, fix.location.lon)
        dt = now - session.last_accepted_at
        if dt > 0:
            speed = distance / dt
            if distance > self.settings["teleport_distance"] and speed > self.settings["teleport_speed"]:
                self.logger.log("Dropped fix", {"reason": "teleport",
                                                "distance": round(distance, 1),
                                                "speed": round(speed, 1)})
                return False
        return True

    def _derive_heading(self, fix: RawFix, previous: Optional[FilteredPosition],
                        filtered: FilteredPosition) -> Optional[float]:
        if isinstance(fix.heading, (int, float)) and math.isfinite(fix.heading):
            return float(fix.heading)

        if previous is not None:
            a, b = previous.location, filtered.location
            if haversine_distance(a.lat, a.lon, b.lat, b.lon) > self.settings["heading_min_displacement"]:
                return bearing_between(a.lat, a.lon, b.lat, b.lon)

        return self._state.heading

    def _update_navigation(self, session: _Session, filtered: FilteredPosition, now: float):
        state = self._state
        route = state.route
        steps = route.steps
        here = filtered.location

        index = session.step_index
        step = steps[index]
        dist_to_end = haversine_distance(here.lat, here.lon, step.end.lat, step.end.lon)

        # Needs both proximity and heading so looping paths don't skip ahead
        if (dist_to_end < self.settings["step_arrival_radius"]
                and state.heading is not None
                and bearing_difference(state.heading, step.bearing) < self.settings["step_heading_threshold"]
                and index < len(steps) - 1):
            index += 1
            session.step_index = index
            step = steps[index]
            dist_to_end = haversine_distance(here.lat, here.lon, step.end.lat, step.end.lon)
            self.logger.log("Advanced step", {"step": index, "of": len(steps)})

        next_step = steps[index + 1] if index + 1 < len(steps) else None
        if next_step is not None:
            dist_to_turn = haversine_distance(here.lat, here.lon, next_step.start.lat, next_step.start.lon)
        else:
            dist_to_turn = dist_to_end

        speed = filtered.velocity
        if speed <= self.settings["min_measured_speed"]:
            speed = self.settings["walking_speed"]
        covered = distance_along_step(step, here.lat, here.lon)
        remaining, eta = compute_remaining_distance_and_eta(route, index, covered, speed)

        state.current_step = step
        state.next_step = next_step
        state.distance_to_step_end = dist_to_end
        state.distance_to_next_turn = dist_to_turn
        state.remaining_distance = remaining
        state.eta = eta

        # While a reroute is in flight the old route only drives progress
        off_route = None
        if state.status != Status.REROUTING:
            off_route = session.detector.update(here.lat, here.lon, route.polyline, now)
            self._set_status(Status.OFF_ROUTE if off_route.is_off_route else Status.NAVIGATING)

        self._announce(session, step, next_step, dist_to_turn)

        if off_route is not None and off_route.should_reroute:
            self.logger.log("Off route, rerouting", {"distance": round(off_route.distance, 1)})
            session.speech.cancel()
            self._set_status(Status.REROUTING)
            self._request_route(session, here)

    def _announce(self, session: _Session, step: RouteStep, next_step: Optional[RouteStep],
                  dist_to_turn: float):
        if not session.speech.voice_enabled:
            return

        if session.spoken_step != step.index:
            self._speak(session, strip_markup(step.instruction))
            session.spoken_step = step.index

        if next_step is not None and dist_to_turn < self.settings["turn_announce_distance"]:
            if self._speak(session, strip_markup(next_step.instruction)) and self.haptics:
                self.haptics.vibrate(self.settings["turn_vibration_pattern"])

    def _speak(self, session: _Session, text: str) -> bool:
        if session.speech.speak(text):
            self.logger.log(f"AUDIO: {text}")
            return True
        return False

    # ------------------------------------------------------------------
    # Routing
    # ------------------------------------------------------------------

    def _request_route(self, session: _Session, origin: Location):
        """Issue a route request, invalidating any request still in flight"""
        if session.active_token:
            session.active_token.cancel()
        token = CancelToken()
        session.active_token = token
        self.logger.log("Requesting route", {"token": token.id, "origin": origin.to_dict(),
                                             "destination": session.destination.to_dict()})

        if self.background_routing:
            worker = threading.Thread(
                target=self._route_worker,
                args=(session.id, token, origin, session.destination),
                daemon=True,
            )
            worker.start()
        else:
            route, error = self._fetch_route(token, origin, session.destination)
            self._apply_route_result(session.id, token, route, error)

    def _route_worker(self, session_id: int, token: CancelToken, origin: Location,
                      destination: Location):
        route, error = self._fetch_route(token, origin, destination)
        self._inbox.put(("route", session_id, (token, route, error)))

    def _fetch_route(self, token: CancelToken, origin: Location,
                     destination: Location) -> tuple[Optional[RouteData], Optional[NavigationError]]:
        try:
            return self.route_provider.route(origin, destination, token), None
        except RouteError as e:
            return None, NavigationError(e.code, e.message)
        except Exception as e:
            # Surface provider bugs as a session error instead of losing them in a thread
            return None, NavigationError(ErrorCode.UNKNOWN, f"{type(e).__name__}: {e}")

    def _apply_route_result(self, session_id: int, token: CancelToken,
                            route: Optional[RouteData], error: Optional[NavigationError]):
        session = self._session
        if (session is None or session.id != session_id
                or token is not session.active_token or token.cancelled):
            self.logger.log("Ignored stale route response", {"token": token.id})
            return
        session.active_token = None

        if error is not None:
            self.logger.log("Route request failed", {"code": error.code.value, "message": error.message})
            session.route_failed = True
            self._fail(error)
            return

        rerouted = self._state.route is not None
        session.step_index = 0
        session.spoken_step = None
        session.speech.forget()
        session.detector.reset()

        state = self._state
        state.route = route
        state.error = None
        state.current_step = route.steps[0]
        state.next_step = route.steps[1] if len(route.steps) > 1 else None
        state.distance_to_step_end = None
        state.distance_to_next_turn = None
        state.remaining_distance = route.total_distance
        state.eta = route.total_duration

        self.logger.log("Rerouted" if rerouted else "Route ready", {
            "steps": len(route.steps),
            "distance": round(route.total_distance, 1),
            "duration": round(route.total_duration, 1),
        })
        self._set_status(Status.NAVIGATING)
        self._emit()

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _fail(self, error: NavigationError):
        session = self._session
        if session is not None:
            if session.active_token:
                session.active_token.cancel()
                session.active_token = None
            session.speech.cancel()
        self._state.error = error
        self._set_status(Status.ERROR)
        self._emit()

    def _set_status(self, status: NavigationStatus):
        if self._state.status != status:
            self.logger.log("Status", {"from": self._state.status.value, "to": status.value})
            self._state.status = status

    def _emit(self):
        snapshot = self.state
        for callback in list(self._subscribers):
            callback(snapshot)
