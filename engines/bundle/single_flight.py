"""
Bundle Engine — Single-Flight Guard
====================================
At most one in-flight job per key. A second caller for the same key
while the first is running is skipped, not queued. Distinct keys run
in parallel.
"""

from __future__ import annotations

import threading
from contextlib import contextmanager
from typing import Iterator, Set


class SingleFlight:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._in_flight: Set[str] = set()

    def try_acquire(self, key: str) -> bool:
        with self._lock:
            if key in self._in_flight:
                return False
            self._in_flight.add(key)
            return True

    def release(self, key: str) -> None:
        with self._lock:
            self._in_flight.discard(key)

    def is_in_flight(self, key: str) -> bool:
        with self._lock:
            return key in self._in_flight

    @contextmanager
    def claim(self, key: str) -> Iterator[bool]:
        """
        Usage:
            with flights.claim(bundle_id) as acquired:
                if not acquired:
                    return SKIPPED
                ...
        """
        acquired = self.try_acquire(key)
        try:
            yield acquired
        finally:
            if acquired:
                self.release(key)
