"""
Periodic refresh of the feed's head sequence, for lag display.
"""

import logging
import threading
from typing import Callable, Optional

from .models import Cursor, cursor_position

logger = logging.getLogger(__name__)


class SequenceTracker:
    """
    Polls ``fetch_head`` every ``interval`` seconds on a daemon thread.

    The tracker thread is the only writer of the head value. A failed
    refresh keeps the previous value until the next tick.
    """

    def __init__(self, fetch_head: Callable[[], Cursor], interval: float = 5.0):
        if interval <= 0:
            raise ValueError("interval must be positive")
        self.fetch_head = fetch_head
        self.interval = interval
        self._head: Optional[Cursor] = None
        self._lock = threading.Lock()
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def head(self) -> Optional[Cursor]:
        with self._lock:
            return self._head

    @property
    def total(self) -> int:
        """Head position as a number; 0 until the first successful refresh."""
        return cursor_position(self.head) or 0

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._loop, name="sequence-tracker", daemon=True)
        self._thread.start()

    def stop(self, timeout: Optional[float] = None) -> None:
        self._stop_event.set()
        if self._thread is not None and self._thread is not threading.current_thread():
            self._thread.join(timeout)

    def refresh(self) -> bool:
        """Query the head once; True if the value was updated."""
        try:
            head = self.fetch_head()
        except Exception as e:
            logger.debug(f"Head sequence refresh failed: {e}", extra={"error_type": type(e).__name__})
            return False
        with self._lock:
            self._head = head
        return True

    def _loop(self) -> None:
        # First tick fires after one interval, like a plain interval timer
        while not self._stop_event.wait(self.interval):
            self.refresh()
