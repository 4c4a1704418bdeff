"""
User-facing status channels and the on-screen event log.
"""
import logging
import time
from collections import deque
from dataclasses import dataclass
from datetime import datetime
from typing import Deque, Dict, List, Optional

logger = logging.getLogger(__name__)

MAX_LOG_ENTRIES = 200

CHANNELS = ("session", "gesture", "dials", "mic", "prompt", "image")


@dataclass
class LogEntry:
    """One line of the on-screen event log."""
    timestamp: str
    message: str
    level: str

    def formatted(self) -> str:
        return f"[{self.timestamp}] {self.message}"


class StatusBoard:
    """
    Latest message per channel plus a bounded event log (newest first).

    The gesture channel is debounced: idle messages only replace the current
    one once the last change is older than the idle delay, to avoid flicker.
    """

    def __init__(self, idle_delay_s: float = 1.0, max_entries: int = MAX_LOG_ENTRIES):
        self.idle_delay_s = idle_delay_s
        self.channels: Dict[str, str] = {name: "" for name in CHANNELS}
        self.channels["gesture"] = "Gestures inactive."
        self.entries: Deque[LogEntry] = deque(maxlen=max_entries)
        self._gesture_status_time = 0.0

    def set(self, channel: str, message: str) -> None:
        self.channels[channel] = message

    def get(self, channel: str) -> str:
        return self.channels.get(channel, "")

    def log_event(self, message: str, level: str = "info") -> None:
        """Write to the Python logger and to the event log."""
        if level == "error":
            logger.error(message)
        else:
            logger.info(message)
        timestamp = datetime.now().strftime("%H:%M:%S")
        self.entries.appendleft(LogEntry(timestamp=timestamp, message=message, level=level))

    def recent(self, count: int) -> List[LogEntry]:
        return list(self.entries)[:count]

    def set_gesture_status(self, message: str, t_now: Optional[float] = None) -> None:
        """Set the gesture status and restart the idle debounce."""
        t_now = time.time() if t_now is None else t_now
        self.channels["gesture"] = message
        self._gesture_status_time = t_now

    def set_gesture_idle(self, message: str, t_now: float) -> bool:
        """Set an idle gesture status if the debounce delay has elapsed."""
        if t_now - self._gesture_status_time > self.idle_delay_s:
            self.set_gesture_status(message, t_now)
            return True
        return False
