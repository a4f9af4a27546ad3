"""Token-bucket rate limiting for outgoing log records."""

import threading
import time


class TokenBucket:
    """Continuously refilling token bucket.

    Holds up to ``capacity`` tokens and gains ``rate`` tokens per second, so a
    burst of ``capacity`` is allowed after an idle period while the long-run
    average stays at ``rate``. The bucket starts full.
    """

    def __init__(self, rate: float, capacity: float | None = None, time_func=None):
        if rate <= 0:
            raise ValueError("rate must be > 0")
        self._rate = float(rate)
        self._capacity = float(capacity if capacity is not None else rate)
        if self._capacity <= 0:
            raise ValueError("capacity must be > 0")
        self._time_func = time_func or time.monotonic
        self._tokens = self._capacity
        self._last = self._time_func()
        self._lock = threading.Lock()

    @property
    def rate(self) -> float:
        return self._rate

    @property
    def capacity(self) -> float:
        return self._capacity

    @property
    def available(self) -> float:
        with self._lock:
            self._refill()
            return self._tokens

    def _refill(self):
        now = self._time_func()
        elapsed = now - self._last
        if elapsed > 0:
            self._tokens = min(self._capacity, self._tokens + elapsed * self._rate)
        self._last = now

    def acquire(self, n: int = 1) -> float:
        """Take *n* tokens if available.

        Returns 0.0 when the tokens were taken, otherwise the number of
        seconds until *n* tokens will be available (nothing is taken).
        """
        if n <= 0:
            return 0.0
        if n > self._capacity:
            raise ValueError(f"cannot acquire {n} tokens from a bucket of {self._capacity:g}")
        with self._lock:
            self._refill()
            if self._tokens >= n:
                self._tokens -= n
                return 0.0
            return (n - self._tokens) / self._rate

    def try_acquire(self, n: int = 1) -> bool:
        return self.acquire(n) == 0.0
