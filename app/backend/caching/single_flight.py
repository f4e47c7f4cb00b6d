import threading
from typing import Set


class SingleFlightGuard:
    """
    Tracks cache keys with a background refresh in progress, so a burst of
    stale reads on one key starts a single upstream refresh.
    """

    def __init__(self):
        self._in_flight: Set[str] = set()
        self._lock = threading.Lock()

    def try_acquire(self, key: str) -> bool:
        with self._lock:
            if key in self._in_flight:
                return False
            self._in_flight.add(key)
            return True

    def release(self, key: str):
        with self._lock:
            self._in_flight.discard(key)

    def __len__(self) -> int:
        with self._lock:
            return len(self._in_flight)
