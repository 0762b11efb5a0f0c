"""Process-wide bound on simultaneous ffmpeg/ffprobe invocations."""

import logging
import os
import threading
from contextlib import contextmanager
from typing import Optional

from .. import settings
from ..errors import ResourceTimeout

logger = logging.getLogger(__name__)


def default_capacity() -> int:
    if settings.FFMPEG_CONCURRENCY > 0:
        return settings.FFMPEG_CONCURRENCY
    return max(2, min(4, os.cpu_count() or 2))


class ConcurrencyGate:
    """Counting semaphore shared by every component that spawns ffmpeg.

    A full gate raises :class:`ResourceTimeout` after ``wait`` seconds instead
    of queueing forever, so contention shows up as a job error.
    """

    def __init__(self, capacity: Optional[int] = None, wait: Optional[float] = None):
        self.capacity = capacity or default_capacity()
        self.wait = settings.GATE_WAIT_SECONDS if wait is None else wait
        self._sem = threading.BoundedSemaphore(self.capacity)
        self._lock = threading.Lock()
        self.in_use = 0
        self.high_water = 0

    @contextmanager
    def slot(self, timeout: Optional[float] = None):
        wait = self.wait if timeout is None else min(timeout, self.wait)
        if not self._sem.acquire(timeout=max(0.0, wait)):
            raise ResourceTimeout(
                f"no ffmpeg slot free after {wait:.0f}s ({self.capacity} in use)"
            )
        with self._lock:
            self.in_use += 1
            self.high_water = max(self.high_water, self.in_use)
        try:
            yield self
        finally:
            with self._lock:
                self.in_use -= 1
            self._sem.release()

    def __repr__(self):
        return f"ConcurrencyGate(capacity={self.capacity}, in_use={self.in_use})"
