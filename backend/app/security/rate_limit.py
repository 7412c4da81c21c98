"""Query API rate limiting (conservative, cadence-aligned).

Design:
- Fixed window per hour, per client.
- No per-second burst logic; dataset consumers poll at block cadence.
"""

from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Callable

from fastapi import HTTPException, status


class RateLimitExceeded(HTTPException):
    pass


@dataclass(slots=True)
class _Window:
    start_hour: int
    count: int


class InMemoryHourlyRateLimiter:
    """Simple per-process limiter.

    Operational safeguard:
    - Intended for single-worker deployments next to the tracker.
    - If you run multiple workers, limits become per-worker.
    """

    def __init__(self, *, limit_per_hour: int, clock: Callable[[], float] = time.time) -> None:
        if limit_per_hour <= 0:
            raise ValueError("limit_per_hour must be > 0.")
        self._limit = limit_per_hour
        self._clock = clock
        self._windows: dict[str, _Window] = {}

    @property
    def limit_per_hour(self) -> int:
        return self._limit

    def check(self, key: str) -> None:
        now = int(self._clock())
        hour = now // 3600
        w = self._windows.get(key)
        if w is None or w.start_hour != hour:
            w = _Window(start_hour=hour, count=0)
            self._windows[key] = w
        w.count += 1
        if w.count > self._limit:
            raise RateLimitExceeded(
                status_code=status.HTTP_429_TOO_MANY_REQUESTS,
                detail="Rate limit exceeded. Please reduce request cadence.",
            )
