"""
Sliding-window rate limiting for job admission.

Every admitted job reserves a slot in its provider's window and in the global
window. A slot may lie in the future when the window is full, which is how
the ``delay`` admission policy spreads work out instead of rejecting it.
"""

import bisect
import threading
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Tuple

GLOBAL_KEY = "__global__"


class RateLimiter:
    """Per-provider plus global sliding-window limiter.

    Reservation lists are mutated only under the limiter's lock.
    """

    def __init__(
        self,
        provider_limits: Optional[Dict[str, int]] = None,
        default_limit: int = 30,
        global_limit: int = 200,
        window_seconds: float = 60.0,
    ):
        self.provider_limits = dict(provider_limits or {})
        self.default_limit = default_limit
        self.global_limit = global_limit
        self.window = timedelta(seconds=window_seconds)
        self._reservations: Dict[str, List[datetime]] = {}
        self._lock = threading.Lock()

    def limit_for(self, key: str) -> int:
        if key == GLOBAL_KEY:
            return self.global_limit
        return self.provider_limits.get(key, self.default_limit)

    def next_slot(self, provider_key: str, now: datetime, not_before: Optional[datetime] = None) -> datetime:
        """Earliest time a request for ``provider_key`` could be admitted."""
        with self._lock:
            return self._find_slot(provider_key, now, not_before)

    def reserve(self, provider_key: str, now: datetime, not_before: Optional[datetime] = None) -> datetime:
        """Reserve the earliest available slot at or after ``not_before``."""
        with self._lock:
            slot = self._find_slot(provider_key, now, not_before)
            self._hold(provider_key, slot)
            return slot

    def try_reserve(self, provider_key: str, now: datetime) -> Tuple[bool, datetime]:
        """Reserve a slot only if one is free right now.

        Returns:
            Tuple of (reserved, earliest slot)
        """
        with self._lock:
            slot = self._find_slot(provider_key, now, None)
            if slot > now:
                return False, slot
            self._hold(provider_key, slot)
            return True, slot

    def release(self, provider_key: str, slot: datetime) -> bool:
        """Give back a reservation, e.g. when a pending job is cancelled.

        Returns:
            True if the reservation was still held
        """
        with self._lock:
            released = False
            for key in (provider_key, GLOBAL_KEY):
                slots = self._reservations.get(key, [])
                index = bisect.bisect_left(slots, slot)
                if index < len(slots) and slots[index] == slot:
                    del slots[index]
                    released = True
            return released

    def in_window(self, provider_key: str, now: datetime) -> int:
        with self._lock:
            self._prune(now)
            return len(self._reservations.get(provider_key, []))

    def _hold(self, provider_key: str, slot: datetime) -> None:
        for key in (provider_key, GLOBAL_KEY):
            bisect.insort(self._reservations.setdefault(key, []), slot)

    def _find_slot(self, provider_key: str, now: datetime, not_before: Optional[datetime]) -> datetime:
        self._prune(now)
        slot = max(now, not_before) if not_before else now
        moved = True
        while moved:
            moved = False
            for key in (provider_key, GLOBAL_KEY):
                slots = self._reservations.get(key, [])
                start = bisect.bisect_right(slots, slot - self.window)
                active = len(slots) - start
                limit = self.limit_for(key)
                if active >= limit:
                    # Wait until enough of the oldest reservations leave the window.
                    slot = slots[start + active - limit] + self.window
                    moved = True
        return slot

    def _prune(self, now: datetime) -> None:
        cutoff = now - self.window
        for slots in self._reservations.values():
            del slots[:bisect.bisect_right(slots, cutoff)]
