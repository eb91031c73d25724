"""Voice and haptic output for Wayfinder."""

import subprocess
import threading
import time
from typing import Callable, Optional


class Audio:
    """Text-to-speech voice sink.

    Speaks through espeak (available in Termux). Only one utterance plays at
    a time: starting a new one terminates whatever is still playing.
    """

    def __init__(self, rate: int = 150, callback: Optional[Callable[[str], None]] = None):
        self.rate = rate
        self.callback = callback  # e.g. forward spoken text to a log
        self._process: Optional[subprocess.Popen] = None
        self._lock = threading.Lock()

    def speak(self, text: str):
        if self.callback:
            self.callback(text)

        with self._lock:
            self._stop_current()
            try:
                self._process = subprocess.Popen(
                    ["espeak", "-s", str(self.rate), text],
                    stdout=subprocess.DEVNULL,
                    stderr=subprocess.DEVNULL,
                )
            except FileNotFoundError:
                self._process = None
                self._speak_fallback(text)
            except OSError as e:
                self._process = None
                print(f"Audio error: {e}")
                print(f"[AUDIO] {text}")

    def cancel(self):
        with self._lock:
            self._stop_current()

    def _stop_current(self):
        if self._process and self._process.poll() is None:
            self._process.terminate()
        self._process = None

    @staticmethod
    def _speak_fallback(text: str):
        # Blocking, but only used on machines without espeak
        try:
            import pyttsx3
            engine = pyttsx3.init()
            engine.say(text)
            engine.runAndWait()
        except Exception:
            print(f"[AUDIO] {text}")


class SpeechEngine:
    """Voice toggle plus de-duplication in front of a voice sink"""

    def __init__(self, sink, voice_enabled: bool = True):
        self.sink = sink
        self.voice_enabled = voice_enabled
        self.last_spoken: Optional[str] = None

    def speak(self, text: str) -> bool:
        """Speak text unless muted, blank or identical to the last utterance.

        Returns True if the text was handed to the sink.
        """
        text = (text or "").strip()
        if not self.voice_enabled or not text or text == self.last_spoken:
            return False
        if self.sink:
            self.sink.cancel()
            self.sink.speak(text)
        self.last_spoken = text
        return True

    def cancel(self):
        if self.sink:
            self.sink.cancel()

    def set_voice_enabled(self, enabled: bool):
        self.voice_enabled = enabled
        if not enabled:
            self.cancel()

    def forget(self):
        """Drop the de-duplication memory"""
        self.last_spoken = None


class Haptics:
    """Vibration via termux-vibrate, fire-and-forget"""

    def vibrate(self, pattern: list[int]):
        """Pattern alternates on/off durations in milliseconds"""
        thread = threading.Thread(target=self._run_pattern, args=(list(pattern),), daemon=True)
        thread.start()

    @staticmethod
    def _run_pattern(pattern: list[int]):
        for i, duration in enumerate(pattern):
            if i % 2:
                time.sleep(duration / 1000)
                continue
            try:
                subprocess.run(
                    ["termux-vibrate", "-f", "-d", str(duration)],
                    capture_output=True,
                    timeout=5
                )
            except (FileNotFoundError, subprocess.TimeoutExpired):
                return
            # termux-vibrate returns before the motor stops
            time.sleep(duration / 1000)
