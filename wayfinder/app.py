"""Main Wayfinder application."""

import time
from typing import Optional

from .audio import Audio, Haptics
from .config import CONFIG
from .directions import GoogleDirections
from .geo import bearing_to_compass
from .gps import GPSStream, GPSRecorder, GPSPlayback
from .logger import Logger
from .models import Location, NavigationState, NavigationStatus
from .navigator import Navigator
from .route import strip_markup
from .trace_map import create_session_map


class Wayfinder:
    """Main application"""

    def __init__(self, destination: Location, log_path: Optional[str] = None,
                 api_key: Optional[str] = None, voice_enabled: bool = True,
                 map_output: Optional[str] = None, provider=None):
        self.destination = destination
        self.map_output = map_output
        self.voice_enabled = voice_enabled
        self.provider = provider or GoogleDirections(api_key=api_key)
        self.audio = Audio()
        self.haptics = Haptics()
        self.logger = Logger(log_path, context={"destination": destination.to_dict(),
                                                "voice": voice_enabled})

        # GPS source (can be swapped for recording/playback)
        self.gps_source = GPSStream()
        self.navigator: Optional[Navigator] = None

        # Collected from state snapshots for the summary and map
        self.trace: list[dict] = []
        self.track: list[Location] = []
        self.reroutes = 0
        self.finished_reason: Optional[str] = None
        self._last_fix = None
        self._last_filtered = None
        self._last_status = NavigationStatus.IDLE
        self._last_line = ""

        self.start_time = 0.0
        self.last_log_update = 0.0

    def set_gps_source(self, source):
        """Set GPS source (GPSStream, GPSRecorder, or GPSPlayback)"""
        self.gps_source = source

    def clock(self) -> float:
        if isinstance(self.gps_source, GPSPlayback):
            return self.gps_source.clock()
        return time.time()

    def is_playback_finished(self) -> bool:
        """Check if playback is complete"""
        if isinstance(self.gps_source, GPSPlayback):
            return self.gps_source.is_finished()
        return False

    def get_poll_interval(self) -> float:
        """How long to block waiting for events, respecting playback speed"""
        if isinstance(self.gps_source, GPSPlayback):
            return self.gps_source.get_poll_interval()
        return CONFIG["update_interval"] / 4

    def build_navigator(self) -> Navigator:
        navigator = Navigator(
            self.provider,
            voice=self.audio,
            haptics=self.haptics,
            location_source=self.gps_source,
            logger=self.logger,
            config={"voice_enabled": self.voice_enabled},
            clock=self.clock,
            # Queued playback fixes keep the trace time they were sampled at
            sample_time=isinstance(self.gps_source, GPSPlayback),
        )
        navigator.subscribe(self.on_state)
        return navigator

    def get_state(self) -> dict:
        """Get current state as dict for logging"""
        state = self.navigator.state.to_dict() if self.navigator else {}
        predicted = self.navigator.predicted_position() if self.navigator else None
        state["predicted_position"] = predicted.to_dict() if predicted else None
        state["gps_status"] = self.gps_source.get_status()
        state["reroutes"] = self.reroutes
        return state

    def status_line(self, state: NavigationState) -> str:
        """One-line human summary of a snapshot"""
        if state.status == NavigationStatus.ERROR and state.error:
            return f"Error ({state.error.code.value}): {state.error.message}"
        if not state.current_step:
            return f"{state.status.value.capitalize()}..."

        parts = [strip_markup(state.current_step.instruction) or "Continue"]
        if state.distance_to_next_turn is not None:
            label = "next turn" if state.next_step else "destination"
            parts.append(f"{state.distance_to_next_turn:.0f}m to {label}")
        if state.heading is not None:
            parts.append(f"heading {bearing_to_compass(state.heading)}")
        if state.remaining_distance is not None:
            parts.append(f"{state.remaining_distance:.0f}m left")
        if state.eta is not None:
            parts.append(f"ETA {state.eta / 60:.1f} min")
        if state.status != NavigationStatus.NAVIGATING:
            parts.append(state.status.value)
        return " | ".join(parts)

    def on_state(self, state: NavigationState):
        """Subscriber: collect the trace and decide when the walk is over"""
        if state.raw_fix is not None and state.raw_fix is not self._last_fix:
            self._last_fix = state.raw_fix
            self.trace.append({
                "elapsed": self.clock() - self.start_time,
                "timestamp": state.raw_fix.timestamp,
                "location": state.raw_fix.to_dict(),
                "status": state.status.value,
            })
        if state.filtered_position is not None and state.filtered_position is not self._last_filtered:
            self._last_filtered = state.filtered_position
            self.track.append(state.filtered_position.location)

        if state.status != self._last_status:
            if state.status == NavigationStatus.REROUTING:
                self.reroutes += 1
            self._last_status = state.status

        line = self.status_line(state)
        if line != self._last_line:
            print(line)
            self._last_line = line

        if self.finished_reason:
            return
        if state.status == NavigationStatus.ERROR:
            self.finished_reason = "error"
            if state.error:
                self.logger.log("Navigation error", {"code": state.error.code.value,
                                                     "message": state.error.message})
        elif (state.status == NavigationStatus.NAVIGATING and state.current_step
              and state.next_step is None and state.distance_to_step_end is not None
              and state.distance_to_step_end < CONFIG["step_arrival_radius"]):
            self.finished_reason = "arrived"
            print("You have arrived!")
            if state.voice_enabled:
                self.audio.speak("You have arrived")
            self.logger.log("Arrived", {"remaining_distance": state.remaining_distance})

    def periodic_update(self):
        """Handle periodic status updates"""
        now = time.time()
        if now - self.last_log_update >= CONFIG["log_interval"]:
            self.logger.log("STATE", self.get_state())
            self.last_log_update = now

    def run(self):
        """Navigate to the destination"""

        print(f"\n=== Wayfinder ===")
        print(f"Destination: {self.destination.lat:.6f}, {self.destination.lon:.6f}")
        if isinstance(self.gps_source, GPSPlayback):
            print(f"Playback mode: {self.gps_source.speed}x speed")
        print("Press Ctrl+C to stop")
        print()

        self.navigator = self.build_navigator()
        wall_start = time.time()
        self.start_time = self.clock()
        self.navigator.start(self.destination)

        try:
            while not self.finished_reason:
                self.navigator.poll(timeout=self.get_poll_interval())
                self.periodic_update()
                if self.is_playback_finished():
                    # Drain fixes still queued from the last entries
                    self.navigator.poll()
                    if not self.finished_reason:
                        self.finished_reason = "playback finished"
                        print("\nPlayback finished")
                        self.logger.log("Playback finished")
        except KeyboardInterrupt:
            self.finished_reason = "interrupted"
            print("\nNavigation interrupted")
            self.logger.log("Navigation interrupted by user")
        finally:
            final_state = self.navigator.state
            self.navigator.stop()

            if isinstance(self.gps_source, GPSRecorder):
                self.gps_source.save()

            summary = {
                "result": self.finished_reason,
                "status": final_state.status.value,
                "remaining_distance": final_state.remaining_distance,
                "reroutes": self.reroutes,
                "fixes": len(self.trace),
                "duration": time.time() - wall_start,
            }
            self.logger.log("Navigation summary", summary)

            print(f"\nNavigation summary:")
            print(f"  Result: {summary['result']}")
            if summary["remaining_distance"] is not None:
                print(f"  Remaining: {summary['remaining_distance']:.0f}m")
            print(f"  Reroutes: {summary['reroutes']}")
            print(f"  Fixes: {summary['fixes']}")
            print(f"  Duration: {summary['duration']/60:.1f} minutes")

            if self.map_output:
                create_session_map(final_state.route, self.trace, self.map_output, track=self.track)

            self.logger.close()
