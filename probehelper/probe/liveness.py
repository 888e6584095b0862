"""Liveness derived from the most recent successful round trip."""
import threading
import time
from typing import Any, Callable, Dict


class LivenessState:
    """Time of the last successful probe resolution."""

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._lock = threading.Lock()
        # Starts at "now" so a fresh process is not born stale
        self._last_success = clock()

    @property
    def last_success(self) -> float:
        with self._lock:
            return self._last_success

    def mark_success(self):
        now = self._clock()
        with self._lock:
            self._last_success = now

    def age(self) -> float:
        """Seconds since the last successful resolution."""
        return self._clock() - self.last_success


class LivenessMonitor:
    """
    Health check over a LivenessState.

    Healthy while the last successful round trip is at most
    ``stale_duration`` seconds old. If the platform stops delivering, every
    probe times out, nothing refreshes the state and the check flips.
    """

    def __init__(self, state: LivenessState, stale_duration: float):
        self.state = state
        self.stale_duration = stale_duration

    def healthy(self) -> bool:
        return self.state.age() <= self.stale_duration

    def report(self) -> Dict[str, Any]:
        age = self.state.age()
        return {
            "status": "ok" if age <= self.stale_duration else "stale",
            "last_success_age_seconds": round(age, 3),
            "stale_duration_seconds": self.stale_duration,
        }
