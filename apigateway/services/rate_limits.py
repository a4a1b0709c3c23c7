from __future__ import annotations

import math
import time
from dataclasses import dataclass
from threading import Lock
from typing import Callable, Dict

from apigateway.errors import RateLimitExceeded


@dataclass
class _Window:
    started_at: float
    count: int = 0


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    limit: int
    remaining: int
    reset_after: int

    @property
    def retry_after(self) -> int:
        return 0 if self.allowed else self.reset_after


class FixedWindowRateLimiter:
    """At most ``max_requests`` per ``window_seconds`` for each client key."""

    def __init__(
        self,
        *,
        max_requests: int = 1000,
        window_seconds: int = 900,
        clock: Callable[[], float] = time.monotonic,
        prune_threshold: int = 10_000,
    ) -> None:
        self._max_requests = max(1, max_requests)
        self._window_seconds = max(1, window_seconds)
        self._clock = clock
        self._prune_threshold = prune_threshold
        self._windows: Dict[str, _Window] = {}
        self._lock = Lock()

    @property
    def max_requests(self) -> int:
        return self._max_requests

    @property
    def window_seconds(self) -> int:
        return self._window_seconds

    def consume(self, key: str) -> RateLimitDecision:
        now = self._clock()
        with self._lock:
            if len(self._windows) >= self._prune_threshold:
                self._prune(now)
            window = self._windows.get(key)
            if window is None or now - window.started_at >= self._window_seconds:
                window = _Window(started_at=now)
                self._windows[key] = window

            reset_after = max(1, int(math.ceil(window.started_at + self._window_seconds - now)))
            if window.count >= self._max_requests:
                return RateLimitDecision(
                    allowed=False,
                    limit=self._max_requests,
                    remaining=0,
                    reset_after=reset_after,
                )
            window.count += 1
            return RateLimitDecision(
                allowed=True,
                limit=self._max_requests,
                remaining=self._max_requests - window.count,
                reset_after=reset_after,
            )

    def enforce(self, key: str) -> RateLimitDecision:
        decision = self.consume(key)
        if not decision.allowed:
            raise RateLimitExceeded(key, decision)
        return decision

    def reset(self, key: str) -> None:
        with self._lock:
            self._windows.pop(key, None)

    def _prune(self, now: float) -> None:
        expired = [
            key
            for key, window in self._windows.items()
            if now - window.started_at >= self._window_seconds
        ]
        for key in expired:
            del self._windows[key]
