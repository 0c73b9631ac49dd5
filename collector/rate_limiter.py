"""Per-API-key admission control for incoming batches.

Sliding window: a key may have at most ``limit`` batches admitted within any
``window_seconds`` span. State lives in process memory and is shared by every
request handler, so all access goes through a single lock.
"""

import logging
import threading
import time
from collections import deque
from collections.abc import Callable

logger = logging.getLogger(__name__)


class SlidingWindowRateLimiter:
    def __init__(
        self,
        limit: int,
        window_seconds: float,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._limit = limit
        self._window = window_seconds
        self._clock = clock
        self._lock = threading.Lock()
        self._admitted: dict[str, deque[float]] = {}

    def admit(self, api_key: str) -> bool:
        """Record and allow a batch for ``api_key`` unless it is over its limit.

        Returns:
            True if the batch is admitted, False if the key is rate limited.
        """
        now = self._clock()
        with self._lock:
            timestamps = self._admitted.setdefault(api_key, deque())
            self._expire(timestamps, now)
            if len(timestamps) >= self._limit:
                return False
            timestamps.append(now)
            return True

    def usage(self, api_key: str) -> int:
        """Number of batches admitted for ``api_key`` in the current window."""
        now = self._clock()
        with self._lock:
            timestamps = self._admitted.get(api_key)
            if timestamps is None:
                return 0
            self._expire(timestamps, now)
            return len(timestamps)

    def sweep(self) -> int:
        """Forget keys with nothing admitted in the current window."""
        with self._lock:
            return self._sweep_locked(self._clock())

    def __len__(self) -> int:
        with self._lock:
            return len(self._admitted)

    def _expire(self, timestamps: deque[float], now: float) -> None:
        while timestamps and now - timestamps[0] >= self._window:
            timestamps.popleft()

    def _sweep_locked(self, now: float) -> int:
        stale = [
            key
            for key, timestamps in self._admitted.items()
            if not timestamps or now - timestamps[-1] >= self._window
        ]
        for key in stale:
            del self._admitted[key]
        if stale:
            logger.debug(f"Rate limiter swept {len(stale)} idle keys")
        return len(stale)
