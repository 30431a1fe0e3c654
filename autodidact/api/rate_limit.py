"""In-memory sliding-window rate limiter keyed by client IP.

Per process only; several workers each keep their own window.
"""

import time


class RateLimiter:
    """Allow at most *max_requests* per key within *window_seconds*."""

    _PRUNE_INTERVAL = 500  # drop idle keys every N calls

    def __init__(self, max_requests: int = 60, window_seconds: int = 60) -> None:
        self._max = max_requests
        self._window = window_seconds
        self._hits: dict[str, list[float]] = {}
        self._calls = 0

    def _prune_idle_keys(self, now: float) -> None:
        cutoff = now - self._window
        for key in [k for k, ts in self._hits.items() if not ts or ts[-1] <= cutoff]:
            del self._hits[key]

    def is_allowed(self, key: str) -> bool:
        """Record a hit for *key*; False if it exceeds the limit."""
        now = time.monotonic()
        cutoff = now - self._window

        self._calls += 1
        if self._calls % self._PRUNE_INTERVAL == 0:
            self._prune_idle_keys(now)

        timestamps = [t for t in self._hits.get(key, []) if t > cutoff]
        if len(timestamps) >= self._max:
            self._hits[key] = timestamps
            return False
        timestamps.append(now)
        self._hits[key] = timestamps
        return True

    def reset(self) -> None:
        self._hits.clear()


# 30 webhook deliveries per minute per source.
webhook_limiter = RateLimiter(max_requests=30, window_seconds=60)

# 20 task creations per minute per client.
task_limiter = RateLimiter(max_requests=20, window_seconds=60)
