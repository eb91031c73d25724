"""Push-based location sources and trace recording/playback.

Every source exposes start(on_fix, on_error) and stop(). Callbacks fire on
the source's own thread; the navigator queues them and processes them on the
caller's thread.
"""

import json
import subprocess
import threading
import time
from datetime import datetime
from typing import Callable, Optional

from .config import CONFIG
from .models import ErrorCode, Location, LocationError, RawFix

FixCallback = Callable[[RawFix], None]
ErrorCallback = Callable[[LocationError], None]


def fix_from_termux(data: dict, timestamp: Optional[float] = None) -> RawFix:
    """Build a RawFix from one termux-location JSON object"""
    speed = data.get("speed")
    heading = data.get("bearing")
    # Android reports bearing 0 while standing still
    if not speed:
        heading = None
    return RawFix(
        location=Location(float(data["latitude"]), float(data["longitude"])),
        timestamp=timestamp if timestamp is not None else time.time(),
        accuracy=data.get("accuracy"),
        heading=heading,
        speed=speed,
    )


def error_from_termux(text: str) -> LocationError:
    """Map termux-location error output onto an error kind"""
    lowered = text.lower()
    if "permission" in lowered:
        return LocationError(ErrorCode.PERMISSION_DENIED, text.strip() or "Location permission denied")
    if "timeout" in lowered or "timed out" in lowered:
        return LocationError(ErrorCode.TIMEOUT, text.strip())
    return LocationError(ErrorCode.POSITION_UNAVAILABLE, text.strip() or "Location unavailable")


class GPSStream:
    """Continuous GPS updates via Termux API"""

    def __init__(self, provider: str = "gps", fix_timeout: float = 30.0):
        self.provider = provider
        self.fix_timeout = fix_timeout
        self.last_fix: Optional[RawFix] = None
        self.fix_count = 0
        self._process: Optional[subprocess.Popen] = None
        self._reader: Optional[threading.Thread] = None
        self._watchdog: Optional[threading.Timer] = None
        self._on_fix: Optional[FixCallback] = None
        self._on_error: Optional[ErrorCallback] = None
        self._stopping = threading.Event()

    def start(self, on_fix: FixCallback, on_error: ErrorCallback):
        self._on_fix = on_fix
        self._on_error = on_error
        self._stopping.clear()
        try:
            self._process = subprocess.Popen(
                ["termux-location", "-p", self.provider, "-r", "updates"],
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
            )
        except FileNotFoundError:
            on_error(LocationError(ErrorCode.POSITION_UNAVAILABLE, "termux-location not found"))
            return

        self._watchdog = threading.Timer(self.fix_timeout, self._on_timeout)
        self._watchdog.daemon = True
        self._watchdog.start()

        self._reader = threading.Thread(target=self._read_loop, daemon=True)
        self._reader.start()

    def stop(self):
        self._stopping.set()
        if self._watchdog:
            self._watchdog.cancel()
            self._watchdog = None
        if self._process and self._process.poll() is None:
            self._process.terminate()
            try:
                self._process.wait(timeout=2)
            except subprocess.TimeoutExpired:
                self._process.kill()
        self._process = None

    def _on_timeout(self):
        if self.fix_count == 0 and not self._stopping.is_set():
            self._report(LocationError(ErrorCode.TIMEOUT, f"No GPS fix within {self.fix_timeout:.0f}s"))

    def _report(self, error: LocationError):
        if self._on_error:
            self._on_error(error)

    def _read_loop(self):
        """termux-location prints pretty-printed JSON objects back to back"""
        decoder = json.JSONDecoder()
        buffer = ""
        for line in self._process.stdout:
            if self._stopping.is_set():
                return
            buffer += line
            while True:
                stripped = buffer.lstrip()
                if not stripped:
                    buffer = ""
                    break
                try:
                    data, end = decoder.raw_decode(stripped)
                except json.JSONDecodeError:
                    # Object not complete yet
                    break
                buffer = stripped[end:]
                self._handle(data)

        if not self._stopping.is_set():
            stderr = self._process.stderr.read() if self._process and self._process.stderr else ""
            self._report(error_from_termux(stderr or "GPS stream ended"))

    def _handle(self, data):
        if not isinstance(data, dict):
            return
        if "latitude" not in data:
            self._report(error_from_termux(json.dumps(data)))
            return
        try:
            fix = fix_from_termux(data)
        except (TypeError, ValueError):
            return
        self.last_fix = fix
        self.fix_count += 1
        if self._watchdog:
            self._watchdog.cancel()
        if self._on_fix:
            self._on_fix(fix)

    def get_status(self) -> str:
        """Get GPS status string"""
        if not self.last_fix:
            return "GPS: waiting for fix"
        acc = f", accuracy {self.last_fix.accuracy:.0f}m" if self.last_fix.accuracy else ""
        return f"GPS OK ({self.fix_count} fixes{acc})"


class GPSRecorder:
    """Records every fix and error from another source to a trace file"""

    def __init__(self, source, record_path: str):
        self.source = source
        self.record_path = record_path
        self.trace: list[dict] = []
        self.start_time = time.time()

    def start(self, on_fix: FixCallback, on_error: ErrorCallback):
        def record_fix(fix: RawFix):
            self._append(fix.to_dict(), self.source.get_status())
            on_fix(fix)

        def record_error(error: LocationError):
            self._append(None, f"{error.code.value}: {error.message}")
            on_error(error)

        self.start_time = time.time()
        self.source.start(record_fix, record_error)

    def stop(self):
        self.source.stop()

    def _append(self, location: Optional[dict], status: str):
        self.trace.append({
            "elapsed": time.time() - self.start_time,
            "timestamp": time.time(),
            "location": location,
            "status": status,
        })

    def get_status(self) -> str:
        return self.source.get_status()

    def save(self):
        """Save trace to file"""
        with open(self.record_path, "w") as f:
            json.dump({
                "recorded_at": datetime.now().isoformat(),
                "trace": self.trace
            }, f, indent=2)
        print(f"GPS trace saved to {self.record_path} ({len(self.trace)} entries)")


class GPSPlayback:
    """Plays back a recorded trace with its original timing"""

    def __init__(self, playback_path: str, speed: float = 1.0,
                 sleep: Callable[[float], None] = time.sleep):
        self.playback_path = playback_path
        self.speed = speed
        self.sleep = sleep
        self.index = 0
        self.consecutive_failures = 0
        self._trace_time = 0.0
        self._thread: Optional[threading.Thread] = None
        self._stopping = threading.Event()
        self._finished = threading.Event()

        with open(playback_path) as f:
            data = json.load(f)
            self.trace: list[dict] = data["trace"]
        print(f"Loaded GPS trace from {playback_path} ({len(self.trace)} entries)")

    def start(self, on_fix: FixCallback, on_error: ErrorCallback):
        self._stopping.clear()
        self._finished.clear()
        self.index = 0
        self._thread = threading.Thread(target=self._run, args=(on_fix,), daemon=True)
        self._thread.start()

    def stop(self):
        self._stopping.set()

    def _run(self, on_fix: FixCallback):
        while self.index < len(self.trace) and not self._stopping.is_set():
            entry = self.trace[self.index]
            self.index += 1
            self._trace_time = entry.get("elapsed", self._trace_time)

            if entry.get("location"):
                self.consecutive_failures = 0
                fix = RawFix.from_dict({**entry["location"], "timestamp": self.clock()})
                on_fix(fix)
            else:
                self.consecutive_failures += 1

            if self.index < len(self.trace):
                self.sleep(self.get_poll_interval())
        self._finished.set()

    def clock(self) -> float:
        """Trace time of the most recent entry, usable as the navigator clock"""
        return self._trace_time

    def get_poll_interval(self) -> float:
        """Get the interval to wait before the next entry based on trace timing and speed"""
        if self.index <= 0 or self.index >= len(self.trace):
            return CONFIG["update_interval"] / self.speed

        prev_elapsed = self.trace[self.index - 1].get("elapsed", 0)
        curr_elapsed = self.trace[self.index].get("elapsed", 0)
        delta = curr_elapsed - prev_elapsed

        interval = delta / self.speed
        return max(0.1, min(interval, 5.0))

    def is_finished(self) -> bool:
        return self._finished.is_set()

    def wait(self, timeout: Optional[float] = None) -> bool:
        return self._finished.wait(timeout)

    def get_status(self) -> str:
        progress = f"{self.index}/{len(self.trace)}"
        if self.consecutive_failures == 0:
            return f"Playback OK ({progress})"
        else:
            return f"Playback: {self.consecutive_failures} failures ({progress})"
