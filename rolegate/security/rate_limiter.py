"""In-memory sliding window throttle for failed sign-in attempts."""

from __future__ import annotations

import time
from collections import deque
from threading import Lock
from typing import Callable, Deque, DefaultDict


class LoginThrottle:
    """Thread-safe per-key failure counter over a sliding window.

    Only failures are counted; a successful sign-in clears the key.
    """

    def __init__(
        self,
        max_failures: int,
        window_seconds: int,
        clock: Callable[[], float] = time.time,
    ) -> None:
        """Initialise limiter parameters and per-key storage."""
        self._max_failures = max_failures
        self._window = window_seconds
        self._clock = clock
        self._failures: DefaultDict[str, Deque[float]] = DefaultDict(deque)
        self._lock = Lock()

    def is_blocked(self, key: str) -> bool:
        """Return ``True`` when ``key`` has exhausted its failure budget."""
        now = self._clock()
        with self._lock:
            queue = self._prune(key, now)
            return len(queue) >= self._max_failures

    def record_failure(self, key: str) -> None:
        now = self._clock()
        with self._lock:
            self._prune(key, now).append(now)

    def reset(self, key: str) -> None:
        with self._lock:
            self._failures.pop(key, None)

    def _prune(self, key: str, now: float) -> Deque[float]:
        queue = self._failures[key]
        while queue and now - queue[0] > self._window:
            queue.popleft()
        return queue
