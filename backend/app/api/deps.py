"""API dependencies (read-only).

- Centralize access to the dataset store.
- Reject anything that is not a read.
"""

from __future__ import annotations

from fastapi import HTTPException, Request, status

from app.security.rate_limit import InMemoryHourlyRateLimiter
from tracker.core.store import DatasetStore


def get_store(request: Request) -> DatasetStore:
    """The dataset store attached to the application at startup."""
    return request.app.state.store


def enforce_read_only_access(request: Request) -> None:
    """Reject non-read methods."""
    if request.method not in ("GET", "HEAD", "OPTIONS"):
        raise HTTPException(status_code=status.HTTP_405_METHOD_NOT_ALLOWED, detail="Read-only API.")


def enforce_rate_limit(request: Request) -> None:
    """Enforce the per-client hourly request budget."""
    limiter: InMemoryHourlyRateLimiter = request.app.state.limiter
    client = request.client.host if request.client else "unknown"
    limiter.check(client)
