"""Session logging for Wayfinder."""

import json
from datetime import datetime
from typing import Optional, Callable


class Logger:
    """Logs navigation events to stdout and an optional file.

    `context` (destination, voice setting and so on) is written once under
    the file header so a log can be matched to the walk it came from.
    """

    def __init__(self, log_path: Optional[str] = None, callback: Optional[Callable] = None,
                 echo: bool = True, context: Optional[dict] = None):
        self.log_path = log_path
        self.callback = callback
        self.echo = echo
        self.context = context or {}
        self.file = None
        if log_path:
            self.file = open(log_path, "a")
            self._write_header()

    def _write_header(self):
        if self.file:
            self.file.write(f"\n{'='*60}\n")
            self.file.write(f"Wayfinder Log - {datetime.now().isoformat()}\n")
            for key, value in self.context.items():
                self.file.write(f"{key}: {json.dumps(value, default=str)}\n")
            self.file.write(f"{'='*60}\n\n")
            self.file.flush()

    def log(self, message: str, data: Optional[dict] = None):
        """Log a message with optional structured data"""
        line = f"[{datetime.now().isoformat()}] {message}"
        if data:
            line += f" | {json.dumps(data, default=str)}"
        if self.echo:
            print(line)
        if self.file:
            self.file.write(line + "\n")
            self.file.flush()
        if self.callback:
            self.callback(message, data)

    def close(self):
        if self.file:
            self.file.close()
            self.file = None
