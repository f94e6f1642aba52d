"""Token bucket guarding the embedding endpoint.

One bucket is built per worker invocation and shared by every batch that
invocation embeds. Different invocations never share a bucket, so the limit
is per worker, not global.
"""

from __future__ import annotations

import threading
import time
from typing import Callable

from qualflow.errors import RateLimitTimeout

DEFAULT_CAPACITY = 60_000
DEFAULT_REFILL_PER_SECOND = 1_000
DEFAULT_POLL_INTERVAL = 0.1


class TokenBucket:
    """Blocking token bucket with a monotonic clock.

    Args:
        capacity: Maximum tokens held; the bucket starts full.
        refill_per_second: Tokens added per second of elapsed time.
        poll_interval: Sleep between checks while waiting for tokens.
        clock: Monotonic time source (seconds). Injected in tests.
        sleep: Sleep function. Injected in tests.
    """

    def __init__(
        self,
        capacity: float = DEFAULT_CAPACITY,
        refill_per_second: float = DEFAULT_REFILL_PER_SECOND,
        *,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        if capacity <= 0:
            raise ValueError("capacity must be > 0")
        if refill_per_second <= 0:
            raise ValueError("refill_per_second must be > 0")
        self.capacity = float(capacity)
        self.refill_per_second = float(refill_per_second)
        self.poll_interval = poll_interval
        self._clock = clock
        self._sleep = sleep
        self._tokens = float(capacity)
        self._last_refill = clock()
        self._lock = threading.Lock()

    @property
    def available(self) -> float:
        with self._lock:
            self._refill()
            return self._tokens

    def acquire(self, cost: float, timeout: float | None = None) -> None:
        """Block until *cost* tokens are available, then debit them.

        Raises:
            ValueError: If *cost* exceeds capacity and could never be satisfied.
            RateLimitTimeout: If *timeout* seconds pass before tokens are available.
        """
        if cost < 0:
            raise ValueError("cost must be >= 0")
        if cost > self.capacity:
            raise ValueError(f"cost {cost:g} exceeds bucket capacity {self.capacity:g}")

        deadline = None if timeout is None else self._clock() + timeout
        while True:
            with self._lock:
                self._refill()
                if self._tokens >= cost:
                    self._tokens -= cost
                    return
            if deadline is not None and self._clock() >= deadline:
                raise RateLimitTimeout(cost, timeout)
            self._sleep(self.poll_interval)

    def _refill(self) -> None:
        now = self._clock()
        elapsed = max(0.0, now - self._last_refill)
        self._tokens = min(self.capacity, self._tokens + elapsed * self.refill_per_second)
        self._last_refill = now
