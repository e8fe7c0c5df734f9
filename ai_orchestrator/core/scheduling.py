"""
Timers for delayed and periodic background work.
"""

import logging
import threading
from typing import Callable, List

logger = logging.getLogger(__name__)


class Scheduler:
    """Runs callbacks later or periodically on daemon threads.

    Components take a scheduler at construction so tests can substitute one
    that runs callbacks inline.
    """

    def __init__(self):
        self._timers: List[threading.Timer] = []
        self._lock = threading.Lock()
        self._stopped = threading.Event()

    def call_later(self, delay_seconds: float, callback: Callable[[], None]) -> None:
        """Run ``callback`` once after ``delay_seconds``."""
        if self._stopped.is_set():
            return
        timer = threading.Timer(max(delay_seconds, 0.0), self._run, args=(callback,))
        timer.daemon = True
        with self._lock:
            self._timers = [t for t in self._timers if t.is_alive()]
            self._timers.append(timer)
        timer.start()

    def every(self, interval_seconds: float, callback: Callable[[], None], name: str = "") -> None:
        """Run ``callback`` every ``interval_seconds`` until ``stop``."""
        def loop():
            while not self._stopped.wait(interval_seconds):
                self._run(callback)

        thread = threading.Thread(target=loop, name=name or None, daemon=True)
        thread.start()

    def stop(self) -> None:
        self._stopped.set()
        with self._lock:
            timers, self._timers = self._timers, []
        for timer in timers:
            timer.cancel()

    @staticmethod
    def _run(callback: Callable[[], None]) -> None:
        try:
            callback()
        except Exception:
            logger.exception("Scheduled task %s failed", getattr(callback, "__name__", callback))
